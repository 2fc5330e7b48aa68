"""
Storage contract shared by the Supabase and in-memory backends.

Mutable rows carry a version number. Updates that take an expected
version are compare-and-set: they return None when another writer got
there first, and the caller decides whether to retry or give up.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from models.appointment import Appointment
from models.doctor import DoctorProfile, SubscriptionPlan
from models.party import Party, Wallet


class AppointmentStore(ABC):
    """Persistence operations used by the ledger, engines and sweeper."""

    # ========== Parties ==========

    @abstractmethod
    async def get_party(self, party_id: str) -> Optional[Party]:
        """Get party by ID."""

    @abstractmethod
    async def create_party(self, party: Party) -> Party:
        """Create a party and return it with its assigned ID."""

    @abstractmethod
    async def update_party_wallet(
        self,
        party_id: str,
        expected_version: int,
        wallet: Wallet,
        total_earnings: Decimal,
    ) -> Optional[Party]:
        """Compare-and-set the wallet columns of a party."""

    # ========== Doctors & Plans ==========

    @abstractmethod
    async def get_doctor(self, doctor_id: str) -> Optional[DoctorProfile]:
        """Get doctor profile by party ID."""

    @abstractmethod
    async def save_doctor(self, profile: DoctorProfile) -> DoctorProfile:
        """Insert or replace a doctor profile."""

    @abstractmethod
    async def set_doctor_presence(
        self, doctor_id: str, is_active: bool, active_until: Optional[datetime]
    ) -> Optional[DoctorProfile]:
        """Update the doctor's active flag and its expiry."""

    @abstractmethod
    async def list_lapsed_active_doctors(self, now: datetime) -> List[DoctorProfile]:
        """Doctors flagged active whose active window ended before now."""

    @abstractmethod
    async def deactivate_doctor_if_lapsed(self, doctor_id: str, now: datetime) -> bool:
        """Clear the active flag only if the window is still lapsed."""

    @abstractmethod
    async def get_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        """Get subscription plan by ID."""

    @abstractmethod
    async def save_plan(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        """Insert or replace a subscription plan."""

    # ========== Appointments ==========

    @abstractmethod
    async def insert_appointment(
        self, appointment: Appointment, live_statuses: Iterable[str]
    ) -> Appointment:
        """
        Insert an appointment.

        Raises:
            SlotUnavailableError: If a live appointment already overlaps the slot
        """

    @abstractmethod
    async def get_appointment(
        self, modality: str, appointment_id: str
    ) -> Optional[Appointment]:
        """Get appointment by modality and ID."""

    @abstractmethod
    async def update_appointment(
        self, appointment: Appointment, expected_version: int
    ) -> Optional[Appointment]:
        """Compare-and-set an appointment; the stored version is bumped."""

    @abstractmethod
    async def find_overlapping(
        self,
        modality: str,
        doctor_id: str,
        clinic_id: Optional[str],
        start: datetime,
        end: datetime,
        statuses: Iterable[str],
    ) -> List[Appointment]:
        """Appointments whose slot strictly overlaps [start, end)."""

    @abstractmethod
    async def list_appointments(
        self,
        modality: str,
        statuses: Iterable[str],
        ended_before: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> List[Appointment]:
        """Appointments in the given statuses, optionally filtered by time."""

    @abstractmethod
    async def list_doctor_appointments(
        self,
        modality: str,
        doctor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Appointment]:
        """A doctor's appointments, optionally within [start, end) by slot or creation time."""

    @abstractmethod
    async def list_patient_appointments(
        self, modality: str, patient_id: str, statuses: Iterable[str]
    ) -> List[Appointment]:
        """A patient's appointments in the given statuses."""

    # ========== Payment events ==========

    @abstractmethod
    async def record_payment_event(self, event_id: str) -> bool:
        """Record a gateway event id; False if it was already recorded."""

"""
In-process store for development and tests.

A single asyncio lock serializes writes, so the overlap check and the
insert in ``insert_appointment`` happen as one step, matching the
exclusion constraint the Supabase schema enforces.
"""

import asyncio
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple

from db.store import AppointmentStore
from models.appointment import Appointment, Modality
from models.doctor import DoctorProfile, SubscriptionPlan
from models.party import Party, Wallet
from utils.datetime_utils import utc_now
from utils.exceptions import SlotUnavailableError


def _overlaps(appointment: Appointment, start: datetime, end: datetime) -> bool:
    slot = appointment.slot
    return slot is not None and slot.start < end and start < slot.end


class InMemoryStore(AppointmentStore):
    """Dictionary-backed store. Every read returns a copy."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._parties: Dict[str, Party] = {}
        self._doctors: Dict[str, DoctorProfile] = {}
        self._plans: Dict[str, SubscriptionPlan] = {}
        self._appointments: Dict[Tuple[str, str], Appointment] = {}
        self._payment_events: Set[str] = set()

    # ========== Party Operations ==========

    async def get_party(self, party_id: str) -> Optional[Party]:
        party = self._parties.get(party_id)
        return party.model_copy(deep=True) if party else None

    async def create_party(self, party: Party) -> Party:
        async with self._lock:
            now = utc_now()
            stored = party.model_copy(
                update={
                    "id": party.id or str(uuid.uuid4()),
                    "created_at": party.created_at or now,
                    "updated_at": now,
                },
                deep=True,
            )
            self._parties[stored.id] = stored
            return stored.model_copy(deep=True)

    async def update_party_wallet(
        self,
        party_id: str,
        expected_version: int,
        wallet: Wallet,
        total_earnings: Decimal,
    ) -> Optional[Party]:
        async with self._lock:
            current = self._parties.get(party_id)
            if current is None or current.version != expected_version:
                return None
            stored = current.model_copy(
                update={
                    "wallet": wallet.model_copy(),
                    "total_earnings": total_earnings,
                    "version": expected_version + 1,
                    "updated_at": utc_now(),
                },
                deep=True,
            )
            self._parties[party_id] = stored
            return stored.model_copy(deep=True)

    # ========== Doctor & Plan Operations ==========

    async def get_doctor(self, doctor_id: str) -> Optional[DoctorProfile]:
        doctor = self._doctors.get(doctor_id)
        return doctor.model_copy(deep=True) if doctor else None

    async def save_doctor(self, profile: DoctorProfile) -> DoctorProfile:
        async with self._lock:
            stored = profile.model_copy(update={"updated_at": utc_now()}, deep=True)
            self._doctors[stored.id] = stored
            return stored.model_copy(deep=True)

    async def set_doctor_presence(
        self, doctor_id: str, is_active: bool, active_until: Optional[datetime]
    ) -> Optional[DoctorProfile]:
        async with self._lock:
            current = self._doctors.get(doctor_id)
            if current is None:
                return None
            stored = current.model_copy(
                update={
                    "is_active": is_active,
                    "active_until": active_until,
                    "updated_at": utc_now(),
                }
            )
            self._doctors[doctor_id] = stored
            return stored.model_copy(deep=True)

    async def list_lapsed_active_doctors(self, now: datetime) -> List[DoctorProfile]:
        return [
            doctor.model_copy(deep=True)
            for doctor in self._doctors.values()
            if doctor.is_active and doctor.active_until and doctor.active_until < now
        ]

    async def deactivate_doctor_if_lapsed(self, doctor_id: str, now: datetime) -> bool:
        async with self._lock:
            current = self._doctors.get(doctor_id)
            if (
                current is None
                or not current.is_active
                or current.active_until is None
                or current.active_until >= now
            ):
                return False
            self._doctors[doctor_id] = current.model_copy(
                update={"is_active": False, "active_until": None, "updated_at": utc_now()}
            )
            return True

    async def get_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        plan = self._plans.get(plan_id)
        return plan.model_copy(deep=True) if plan else None

    async def save_plan(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        async with self._lock:
            stored = plan.model_copy(
                update={
                    "id": plan.id or str(uuid.uuid4()),
                    "created_at": plan.created_at or utc_now(),
                },
                deep=True,
            )
            self._plans[stored.id] = stored
            return stored.model_copy(deep=True)

    # ========== Appointment Operations ==========

    def _live_overlaps(
        self,
        modality: str,
        doctor_id: Optional[str],
        clinic_id: Optional[str],
        start: datetime,
        end: datetime,
        statuses: Iterable[str],
    ) -> List[Appointment]:
        wanted = set(statuses)
        return [
            appointment
            for (kind, _), appointment in self._appointments.items()
            if kind == modality
            and appointment.doctor_id == doctor_id
            and (clinic_id is None or appointment.clinic_id == clinic_id)
            and appointment.status in wanted
            and _overlaps(appointment, start, end)
        ]

    async def insert_appointment(
        self, appointment: Appointment, live_statuses: Iterable[str]
    ) -> Appointment:
        async with self._lock:
            modality = Modality(appointment.modality).value
            slot = appointment.slot
            if slot is not None and self._live_overlaps(
                modality,
                appointment.doctor_id,
                appointment.clinic_id,
                slot.start,
                slot.end,
                live_statuses,
            ):
                raise SlotUnavailableError(
                    "Slot is already booked", doctor_id=appointment.doctor_id
                )

            now = utc_now()
            stored = appointment.model_copy(
                update={
                    "id": str(uuid.uuid4()),
                    "version": 0,
                    "created_at": appointment.created_at or now,
                    "updated_at": now,
                },
                deep=True,
            )
            self._appointments[(modality, stored.id)] = stored
            return stored.model_copy(deep=True)

    async def get_appointment(
        self, modality: str, appointment_id: str
    ) -> Optional[Appointment]:
        appointment = self._appointments.get((Modality(modality).value, appointment_id))
        return appointment.model_copy(deep=True) if appointment else None

    async def update_appointment(
        self, appointment: Appointment, expected_version: int
    ) -> Optional[Appointment]:
        async with self._lock:
            key = (Modality(appointment.modality).value, appointment.id)
            current = self._appointments.get(key)
            if current is None or current.version != expected_version:
                return None
            stored = appointment.model_copy(
                update={
                    "version": expected_version + 1,
                    "created_at": current.created_at,
                    "updated_at": utc_now(),
                },
                deep=True,
            )
            self._appointments[key] = stored
            return stored.model_copy(deep=True)

    async def find_overlapping(
        self,
        modality: str,
        doctor_id: str,
        clinic_id: Optional[str],
        start: datetime,
        end: datetime,
        statuses: Iterable[str],
    ) -> List[Appointment]:
        return [
            appointment.model_copy(deep=True)
            for appointment in self._live_overlaps(
                Modality(modality).value, doctor_id, clinic_id, start, end, statuses
            )
        ]

    def _of_modality(self, modality: str) -> List[Appointment]:
        modality = Modality(modality).value
        found = [
            appointment
            for (kind, _), appointment in self._appointments.items()
            if kind == modality
        ]
        return sorted(found, key=lambda appointment: appointment.created_at)

    async def list_appointments(
        self,
        modality: str,
        statuses: Iterable[str],
        ended_before: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> List[Appointment]:
        wanted = set(statuses)
        found = []
        for appointment in self._of_modality(modality):
            if appointment.status not in wanted:
                continue
            if ended_before and (
                appointment.slot is None or appointment.slot.end >= ended_before
            ):
                continue
            if created_before and appointment.created_at >= created_before:
                continue
            found.append(appointment.model_copy(deep=True))
        return found

    async def list_doctor_appointments(
        self,
        modality: str,
        doctor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Appointment]:
        found = []
        for appointment in self._of_modality(modality):
            if appointment.doctor_id != doctor_id:
                continue
            moment = (
                appointment.slot.start if appointment.slot else appointment.created_at
            )
            if start and moment < start:
                continue
            if end and moment >= end:
                continue
            found.append(appointment.model_copy(deep=True))
        return found

    async def list_patient_appointments(
        self, modality: str, patient_id: str, statuses: Iterable[str]
    ) -> List[Appointment]:
        wanted = set(statuses)
        return [
            appointment.model_copy(deep=True)
            for appointment in self._of_modality(modality)
            if appointment.patient_id == patient_id and appointment.status in wanted
        ]

    # ========== Payment Event Operations ==========

    async def record_payment_event(self, event_id: str) -> bool:
        async with self._lock:
            if event_id in self._payment_events:
                return False
            self._payment_events.add(event_id)
            return True

"""
Supabase database client for parties, doctors, plans and appointments.

Each modality keeps its appointments in its own table. Mutable rows carry
a ``version`` column: updates filter on the version they read and bump it,
so an empty response means another writer won the race.

Row Level Security (RLS) Notes:
==============================
This client uses the service key, which bypasses RLS. Wallet columns must
never be writable with the anon key; see db/schema.sql for the policies
and for the exclusion constraint that rejects overlapping live slots.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from postgrest.exceptions import APIError
from supabase import Client as SupabaseClientType
from supabase import create_client

from config import settings
from db.store import AppointmentStore
from models.appointment import Appointment, Modality
from models.doctor import DoctorProfile, SubscriptionPlan
from models.party import Party, Wallet
from utils.datetime_utils import parse_iso_datetime, to_iso_string, utc_now
from utils.exceptions import DatabaseError, SlotUnavailableError
from utils.logging_config import setup_logging

logger = setup_logging(name=__name__, log_file="database.log")

APPOINTMENT_TABLES: Dict[str, str] = {
    Modality.ONLINE.value: "online_appointments",
    Modality.CLINIC.value: "clinic_appointments",
    Modality.HOME_VISIT.value: "home_visit_appointments",
    Modality.EMERGENCY.value: "emergency_appointments",
}

# unique_violation, exclusion_violation
_CONFLICT_CODES = {"23505", "23P01"}


class SupabaseClient(AppointmentStore):
    """
    Supabase database client wrapper.

    The supabase-py client is synchronous; every query is executed in a
    worker thread so the event loop is never blocked.
    """

    def __init__(self):
        """Initialize Supabase client from settings."""
        self.client: SupabaseClientType = create_client(
            settings.supabase_url, settings.supabase_key
        )

    async def _execute(self, query) -> Any:
        return await asyncio.to_thread(query.execute)

    def _appointments(self, modality: str):
        return self.client.table(APPOINTMENT_TABLES[Modality(modality).value])

    # ========== Party Operations ==========

    async def get_party(self, party_id: str) -> Optional[Party]:
        """Get party by ID."""
        try:
            response = await self._execute(
                self.client.table("parties").select("*").eq("id", party_id)
            )
            if response.data:
                return self._parse_party(response.data[0])
            return None
        except Exception as e:
            raise DatabaseError(f"Failed to get party: {e}") from e

    async def create_party(self, party: Party) -> Party:
        """Create a new party."""
        try:
            data = self._party_row(party)
            response = await self._execute(self.client.table("parties").insert(data))

            if not response.data:
                raise ValueError("Failed to create party: no data returned")

            return self._parse_party(response.data[0])
        except Exception as e:
            raise DatabaseError(f"Failed to create party: {e}") from e

    async def update_party_wallet(
        self,
        party_id: str,
        expected_version: int,
        wallet: Wallet,
        total_earnings: Decimal,
    ) -> Optional[Party]:
        """
        Compare-and-set the wallet columns of a party.

        Returns:
            Updated party, or None if the version no longer matches
        """
        try:
            update_data = {
                "wallet_balance": str(wallet.balance),
                "wallet_frozen": str(wallet.frozen),
                "total_earnings": str(total_earnings),
                "version": expected_version + 1,
                "updated_at": to_iso_string(utc_now()),
            }
            response = await self._execute(
                self.client.table("parties")
                .update(update_data)
                .eq("id", party_id)
                .eq("version", expected_version)
            )
            if not response.data:
                return None
            return self._parse_party(response.data[0])
        except Exception as e:
            raise DatabaseError(f"Failed to update wallet: {e}") from e

    # ========== Doctor & Plan Operations ==========

    async def get_doctor(self, doctor_id: str) -> Optional[DoctorProfile]:
        """Get doctor profile by party ID."""
        try:
            response = await self._execute(
                self.client.table("doctors").select("*").eq("id", doctor_id)
            )
            if response.data:
                return self._parse_doctor(response.data[0])
            return None
        except Exception as e:
            raise DatabaseError(f"Failed to get doctor: {e}") from e

    async def save_doctor(self, profile: DoctorProfile) -> DoctorProfile:
        """Insert or replace a doctor profile."""
        try:
            data = profile.model_dump(mode="json", exclude_none=True)
            data["updated_at"] = to_iso_string(utc_now())
            response = await self._execute(self.client.table("doctors").upsert(data))

            if not response.data:
                raise ValueError("Failed to save doctor: no data returned")

            return self._parse_doctor(response.data[0])
        except Exception as e:
            raise DatabaseError(f"Failed to save doctor: {e}") from e

    async def set_doctor_presence(
        self, doctor_id: str, is_active: bool, active_until: Optional[datetime]
    ) -> Optional[DoctorProfile]:
        """Update the doctor's active flag and its expiry."""
        try:
            update_data = {
                "is_active": is_active,
                "active_until": to_iso_string(active_until) if active_until else None,
                "updated_at": to_iso_string(utc_now()),
            }
            response = await self._execute(
                self.client.table("doctors").update(update_data).eq("id", doctor_id)
            )
            if not response.data:
                return None
            return self._parse_doctor(response.data[0])
        except Exception as e:
            raise DatabaseError(f"Failed to update doctor presence: {e}") from e

    async def list_lapsed_active_doctors(self, now: datetime) -> List[DoctorProfile]:
        """Doctors flagged active whose active window ended before now."""
        try:
            response = await self._execute(
                self.client.table("doctors")
                .select("*")
                .eq("is_active", True)
                .lt("active_until", to_iso_string(now))
            )
            return [self._parse_doctor(item) for item in response.data]
        except Exception as e:
            raise DatabaseError(f"Failed to list lapsed doctors: {e}") from e

    async def deactivate_doctor_if_lapsed(self, doctor_id: str, now: datetime) -> bool:
        """Clear the active flag only if the window is still lapsed."""
        try:
            response = await self._execute(
                self.client.table("doctors")
                .update(
                    {
                        "is_active": False,
                        "active_until": None,
                        "updated_at": to_iso_string(utc_now()),
                    }
                )
                .eq("id", doctor_id)
                .eq("is_active", True)
                .lt("active_until", to_iso_string(now))
            )
            return bool(response.data)
        except Exception as e:
            raise DatabaseError(f"Failed to deactivate doctor: {e}") from e

    async def get_plan(self, plan_id: str) -> Optional[SubscriptionPlan]:
        """Get subscription plan by ID."""
        try:
            response = await self._execute(
                self.client.table("subscription_plans").select("*").eq("id", plan_id)
            )
            if response.data:
                return SubscriptionPlan(**self._parse_timestamps(response.data[0]))
            return None
        except Exception as e:
            raise DatabaseError(f"Failed to get plan: {e}") from e

    async def save_plan(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        """Insert or replace a subscription plan."""
        try:
            data = plan.model_dump(mode="json", exclude_none=True)
            response = await self._execute(
                self.client.table("subscription_plans").upsert(data)
            )

            if not response.data:
                raise ValueError("Failed to save plan: no data returned")

            return SubscriptionPlan(**self._parse_timestamps(response.data[0]))
        except Exception as e:
            raise DatabaseError(f"Failed to save plan: {e}") from e

    # ========== Appointment Operations ==========

    async def insert_appointment(
        self, appointment: Appointment, live_statuses: Iterable[str]
    ) -> Appointment:
        """
        Insert an appointment.

        Overlap with live appointments is rejected by the table's exclusion
        constraint, so the check and the insert are a single statement.

        Raises:
            SlotUnavailableError: If the constraint rejects the row
            DatabaseError: For any other failure
        """
        try:
            data = self._appointment_row(appointment)
            data.pop("id", None)
            response = await self._execute(
                self._appointments(appointment.modality).insert(data)
            )

            if not response.data:
                raise ValueError("Failed to create appointment: no data returned")

            return self._parse_appointment(appointment.modality, response.data[0])
        except APIError as e:
            if e.code in _CONFLICT_CODES:
                raise SlotUnavailableError(
                    "Slot is already booked", doctor_id=appointment.doctor_id
                ) from e
            raise DatabaseError(f"Failed to create appointment: {e}") from e
        except Exception as e:
            raise DatabaseError(f"Failed to create appointment: {e}") from e

    async def get_appointment(
        self, modality: str, appointment_id: str
    ) -> Optional[Appointment]:
        """Get appointment by modality and ID."""
        try:
            response = await self._execute(
                self._appointments(modality).select("*").eq("id", appointment_id)
            )
            if response.data:
                return self._parse_appointment(modality, response.data[0])
            return None
        except Exception as e:
            raise DatabaseError(f"Failed to get appointment: {e}") from e

    async def update_appointment(
        self, appointment: Appointment, expected_version: int
    ) -> Optional[Appointment]:
        """
        Compare-and-set an appointment.

        Returns:
            Updated appointment, or None if the version no longer matches
        """
        try:
            data = self._appointment_row(appointment)
            data.pop("id", None)
            data.pop("created_at", None)
            data["version"] = expected_version + 1
            data["updated_at"] = to_iso_string(utc_now())

            response = await self._execute(
                self._appointments(appointment.modality)
                .update(data)
                .eq("id", appointment.id)
                .eq("version", expected_version)
            )
            if not response.data:
                return None
            return self._parse_appointment(appointment.modality, response.data[0])
        except Exception as e:
            raise DatabaseError(f"Failed to update appointment: {e}") from e

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
        try:
            query = (
                self._appointments(modality)
                .select("*")
                .eq("doctor_id", doctor_id)
                .in_("status", list(statuses))
                .lt("slot_start", to_iso_string(end))
                .gt("slot_end", to_iso_string(start))
            )
            if clinic_id:
                query = query.eq("clinic_id", clinic_id)

            response = await self._execute(query)
            return [self._parse_appointment(modality, item) for item in response.data]
        except Exception as e:
            raise DatabaseError(f"Failed to check slot overlap: {e}") from e

    async def list_appointments(
        self,
        modality: str,
        statuses: Iterable[str],
        ended_before: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> List[Appointment]:
        """Appointments in the given statuses, optionally filtered by time."""
        try:
            query = self._appointments(modality).select("*").in_("status", list(statuses))
            if ended_before:
                query = query.lt("slot_end", to_iso_string(ended_before))
            if created_before:
                query = query.lt("created_at", to_iso_string(created_before))

            response = await self._execute(query.order("created_at", desc=False))
            return [self._parse_appointment(modality, item) for item in response.data]
        except Exception as e:
            raise DatabaseError(f"Failed to list appointments: {e}") from e

    async def list_doctor_appointments(
        self,
        modality: str,
        doctor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Appointment]:
        """
        A doctor's appointments.

        Slot-based modalities are filtered on slot start; emergencies have
        no slot and are filtered on creation time.
        """
        try:
            column = "created_at" if modality == Modality.EMERGENCY.value else "slot_start"
            query = self._appointments(modality).select("*").eq("doctor_id", doctor_id)
            if start:
                query = query.gte(column, to_iso_string(start))
            if end:
                query = query.lt(column, to_iso_string(end))

            response = await self._execute(query.order(column, desc=False))
            return [self._parse_appointment(modality, item) for item in response.data]
        except Exception as e:
            raise DatabaseError(f"Failed to list doctor appointments: {e}") from e

    async def list_patient_appointments(
        self, modality: str, patient_id: str, statuses: Iterable[str]
    ) -> List[Appointment]:
        """A patient's appointments in the given statuses."""
        try:
            response = await self._execute(
                self._appointments(modality)
                .select("*")
                .eq("patient_id", patient_id)
                .in_("status", list(statuses))
            )
            return [self._parse_appointment(modality, item) for item in response.data]
        except Exception as e:
            raise DatabaseError(f"Failed to list patient appointments: {e}") from e

    # ========== Payment Event Operations ==========

    async def record_payment_event(self, event_id: str) -> bool:
        """Record a gateway event id; False if it was already recorded."""
        try:
            await self._execute(
                self.client.table("payment_events").insert(
                    {"id": event_id, "received_at": to_iso_string(utc_now())}
                )
            )
            return True
        except APIError as e:
            if e.code in _CONFLICT_CODES:
                return False
            raise DatabaseError(f"Failed to record payment event: {e}") from e
        except Exception as e:
            raise DatabaseError(f"Failed to record payment event: {e}") from e

    # ========== Helper Methods ==========

    def _parse_timestamps(self, item: dict, fields: Iterable[str] = ("created_at", "updated_at")) -> dict:
        item = item.copy()
        for field in fields:
            if item.get(field):
                item[field] = parse_iso_datetime(item[field])
        return item

    def _party_row(self, party: Party) -> dict:
        data = party.model_dump(mode="json", exclude_none=True, exclude={"wallet"})
        data["wallet_balance"] = str(party.wallet.balance)
        data["wallet_frozen"] = str(party.wallet.frozen)
        return data

    def _parse_party(self, item: dict) -> Party:
        """
        Parse party data from database response.

        Args:
            item: Raw party row with flat wallet columns

        Returns:
            Parsed Party object
        """
        item = self._parse_timestamps(item)
        item["wallet"] = Wallet(
            balance=item.pop("wallet_balance", None) or 0,
            frozen=item.pop("wallet_frozen", None) or 0,
        )
        return Party(**item)

    def _parse_doctor(self, item: dict) -> DoctorProfile:
        item = self._parse_timestamps(item, ("active_until", "updated_at"))
        return DoctorProfile(**item)

    def _appointment_row(self, appointment: Appointment) -> dict:
        data = appointment.model_dump(mode="json", exclude={"slot"})
        data.pop("modality", None)
        slot = appointment.slot
        data["slot_day"] = slot.day.isoformat() if slot else None
        data["slot_duration"] = slot.duration if slot else None
        data["slot_start"] = to_iso_string(slot.start) if slot else None
        data["slot_end"] = to_iso_string(slot.end) if slot else None
        if data.get("created_at") is None:
            data.pop("created_at", None)
        return data

    def _parse_appointment(self, modality: str, item: dict) -> Appointment:
        """
        Parse appointment data from database response.

        Args:
            modality: Modality the row's table belongs to
            item: Raw appointment row with flat slot columns

        Returns:
            Parsed Appointment object
        """
        item = self._parse_timestamps(
            item, ("created_at", "updated_at", "doctor_joined_at")
        )
        slot_start = item.pop("slot_start", None)
        slot_end = item.pop("slot_end", None)
        slot_day = item.pop("slot_day", None)
        slot_duration = item.pop("slot_duration", None)
        item.pop("resource_key", None)
        if slot_start and slot_end:
            item["slot"] = {
                "day": slot_day,
                "duration": slot_duration,
                "start": parse_iso_datetime(slot_start),
                "end": parse_iso_datetime(slot_end),
            }
        item["modality"] = modality
        return Appointment(**item)

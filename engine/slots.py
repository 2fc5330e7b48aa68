"""Slot conflict checks."""

from datetime import datetime
from typing import Iterable, List, Optional

from db.store import AppointmentStore
from models.appointment import Appointment, Slot


def overlaps(start: datetime, end: datetime, other_start: datetime, other_end: datetime) -> bool:
    """Strict overlap of half-open intervals; touching windows do not overlap."""
    return other_start < end and other_end > start


class SlotAvailabilityChecker:
    """
    Find live appointments that block a requested window.

    This is the read side only. The store's insert repeats the check
    atomically, so a free answer here is advisory.
    """

    def __init__(self, store: AppointmentStore):
        self.store = store

    async def conflicts(
        self,
        modality: str,
        doctor_id: str,
        slot: Slot,
        live_statuses: Iterable[str],
        clinic_id: Optional[str] = None,
    ) -> List[Appointment]:
        found = await self.store.find_overlapping(
            modality, doctor_id, clinic_id, slot.start, slot.end, live_statuses
        )
        return [
            appointment
            for appointment in found
            if appointment.slot
            and overlaps(slot.start, slot.end, appointment.slot.start, appointment.slot.end)
        ]

    async def is_available(
        self,
        modality: str,
        doctor_id: str,
        slot: Slot,
        live_statuses: Iterable[str],
        clinic_id: Optional[str] = None,
    ) -> bool:
        conflicts = await self.conflicts(
            modality, doctor_id, slot, live_statuses, clinic_id=clinic_id
        )
        return not conflicts

"""Doctor earnings summaries across all four modalities."""

from typing import Optional

from db.store import AppointmentStore
from models.appointment import EarningsSummary, Modality
from models.party import to_money
from utils.constants import ZERO
from utils.datetime_utils import month_bounds


async def summarize_doctor_earnings(
    store: AppointmentStore,
    doctor_id: str,
    year: Optional[int] = None,
    month: Optional[int] = None,
) -> EarningsSummary:
    """
    Total the recorded doctor earnings, optionally for one calendar month.

    Only settled appointments carry an earning; ``counts`` reports how many
    contributed per modality. Slot appointments are placed in a month by
    slot start, emergencies by creation time.

    Args:
        store: Appointment store
        doctor_id: Doctor party ID
        year: Four digit year, required with ``month``
        month: Month number 1-12, or None for all time

    Raises:
        ValueError: If month is out of range or given without a year
    """
    start = end = None
    period = "all"
    if month is not None:
        if year is None:
            raise ValueError("year is required when month is given")
        start, end = month_bounds(year, month)
        period = f"{year:04d}-{month:02d}"

    summary = EarningsSummary(doctor_id=doctor_id, period=period)
    for modality in Modality:
        appointments = await store.list_doctor_appointments(
            modality.value, doctor_id, start=start, end=end
        )
        earned = [
            appointment.payment.doctor_earning
            for appointment in appointments
            if appointment.payment.doctor_earning is not None
        ]
        subtotal = to_money(sum(earned, ZERO))
        summary.by_modality[modality.value] = subtotal
        summary.counts[modality.value] = len(earned)
        summary.total = to_money(summary.total + subtotal)

    return summary

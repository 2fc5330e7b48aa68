"""
Fee calculation for settlements.

The doctor's net earning is the gross amount less the plan's flat
platform fee and its operational-expense percentage, floored at zero.
Whatever is withheld is platform revenue and is not credited anywhere.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel

from db.store import AppointmentStore
from models.doctor import DoctorProfile, FeePair, SubscriptionPlan, SubscriptionRecord
from models.party import to_money
from utils.constants import ZERO
from utils.datetime_utils import ensure_aware
from utils.exceptions import NoActiveSubscriptionError, NotFoundError
from utils.logging_config import setup_logging

logger = setup_logging(name=__name__, log_file="engine.log")


class FeeBreakdown(BaseModel):
    """Split of a gross amount between platform and doctor."""

    gross: Decimal
    platform_fee: Decimal
    ops_expense: Decimal
    doctor_earning: Decimal


def calculate_doctor_earning(gross: Decimal, fees: FeePair) -> FeeBreakdown:
    """
    Compute ``max(0, gross - platform_fee - gross * ops_percent / 100)``.

    Args:
        gross: Amount charged to the patient
        fees: Fee pair for the appointment's modality

    Returns:
        FeeBreakdown with every component quantized to 0.01
    """
    gross = to_money(gross)
    platform_fee = to_money(fees.platform_fee)
    ops_expense = to_money(gross * fees.ops_expense_percent / Decimal(100))
    earning = max(ZERO, gross - platform_fee - ops_expense)
    return FeeBreakdown(
        gross=gross,
        platform_fee=platform_fee,
        ops_expense=ops_expense,
        doctor_earning=to_money(earning),
    )


def select_active_subscription(
    subscriptions: List[SubscriptionRecord], now: datetime
) -> Optional[SubscriptionRecord]:
    """
    Pick the subscription in force at ``now``.

    A record is active when it has started and its end date is empty or
    in the future. Among active records the latest start wins; on equal
    starts the record added last wins.
    """
    now = ensure_aware(now)
    chosen: Optional[SubscriptionRecord] = None
    for record in subscriptions:
        if ensure_aware(record.start_date) > now:
            continue
        if record.end_date is not None and ensure_aware(record.end_date) <= now:
            continue
        if chosen is None or ensure_aware(record.start_date) >= ensure_aware(chosen.start_date):
            chosen = record
    return chosen


class FeeCalculator:
    """Resolve a doctor's active plan and price a settlement."""

    def __init__(self, store: AppointmentStore):
        self.store = store

    async def active_plan(self, doctor: DoctorProfile, now: datetime) -> Optional[SubscriptionPlan]:
        """Get the plan behind the doctor's active subscription, if any."""
        record = select_active_subscription(doctor.subscriptions, now)
        if record is None:
            return None

        plan = await self.store.get_plan(record.plan_id)
        if plan is None:
            logger.error(
                f"Doctor {doctor.id} has subscription to missing plan {record.plan_id}"
            )
        return plan

    async def breakdown(
        self, doctor_id: str, modality: str, gross: Decimal, now: datetime
    ) -> FeeBreakdown:
        """
        Price a settlement for a doctor.

        Raises:
            NotFoundError: If the doctor does not exist
            NoActiveSubscriptionError: If no subscription is in force
        """
        doctor = await self.store.get_doctor(doctor_id)
        if doctor is None:
            raise NotFoundError("Doctor not found", doctor_id=doctor_id)

        plan = await self.active_plan(doctor, now)
        if plan is None:
            raise NoActiveSubscriptionError(
                "Doctor has no active subscription", doctor_id=doctor_id
            )

        return calculate_doctor_earning(gross, plan.fees_for(modality))

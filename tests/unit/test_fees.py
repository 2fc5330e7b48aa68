"""
Unit tests for fee calculation and subscription selection.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from engine.fees import FeeCalculator, calculate_doctor_earning, select_active_subscription
from models.doctor import FeePair, SubscriptionPlan, SubscriptionRecord
from utils.exceptions import NoActiveSubscriptionError, NotFoundError


class TestCalculateDoctorEarning:
    """Test the earning formula."""

    def test_standard_breakdown(self):
        """Test 1000 gross with 50 flat and 10 percent."""
        breakdown = calculate_doctor_earning(
            Decimal("1000"),
            FeePair(platform_fee=Decimal("50"), ops_expense_percent=Decimal("10")),
        )

        assert breakdown.platform_fee == Decimal("50.00")
        assert breakdown.ops_expense == Decimal("100.00")
        assert breakdown.doctor_earning == Decimal("850.00")

    def test_floored_at_zero(self):
        """Test fees larger than the gross never produce a negative earning."""
        breakdown = calculate_doctor_earning(
            Decimal("40"),
            FeePair(platform_fee=Decimal("50"), ops_expense_percent=Decimal("10")),
        )
        assert breakdown.doctor_earning == Decimal("0")

    def test_rounding(self):
        """Test the ops expense is quantized to two places."""
        breakdown = calculate_doctor_earning(
            Decimal("333.33"),
            FeePair(platform_fee=Decimal("0"), ops_expense_percent=Decimal("12.5")),
        )
        assert breakdown.ops_expense == Decimal("41.67")
        assert breakdown.doctor_earning == Decimal("291.66")


class TestSelectActiveSubscription:
    """Test the active subscription rule."""

    def test_ignores_future_and_ended(self, clock):
        """Test only records in force at now qualify."""
        now = clock()
        records = [
            SubscriptionRecord(plan_id="future", start_date=now + timedelta(days=1)),
            SubscriptionRecord(
                plan_id="ended",
                start_date=now - timedelta(days=60),
                end_date=now - timedelta(days=30),
            ),
        ]
        assert select_active_subscription(records, now) is None

    def test_latest_start_wins(self, clock):
        """Test the most recently started record is chosen regardless of order."""
        now = clock()
        records = [
            SubscriptionRecord(plan_id="newer", start_date=now - timedelta(days=5)),
            SubscriptionRecord(plan_id="older", start_date=now - timedelta(days=50)),
        ]
        assert select_active_subscription(records, now).plan_id == "newer"

    def test_tie_goes_to_last_added(self, clock):
        """Test equal start dates resolve to the record added last."""
        now = clock()
        start = now - timedelta(days=5)
        records = [
            SubscriptionRecord(plan_id="first", start_date=start),
            SubscriptionRecord(plan_id="second", start_date=start),
        ]
        assert select_active_subscription(records, now).plan_id == "second"


class TestFeeCalculator:
    """Test plan lookup for settlements."""

    @pytest.mark.asyncio
    async def test_breakdown_uses_modality_fees(self, store, doctor, clock):
        """Test the plan's fee pair for the modality is applied."""
        await store.save_plan(
            SubscriptionPlan(
                id="emergency-heavy",
                name="Emergency heavy",
                emergency=FeePair(platform_fee=Decimal("500"), ops_expense_percent=Decimal("0")),
            )
        )
        profile = await store.get_doctor(doctor.id)
        profile.subscriptions.append(
            SubscriptionRecord(plan_id="emergency-heavy", start_date=clock() - timedelta(days=1))
        )
        await store.save_doctor(profile)

        calculator = FeeCalculator(store)
        breakdown = await calculator.breakdown(doctor.id, "emergency", Decimal("2500"), clock())

        assert breakdown.doctor_earning == Decimal("2000.00")

    @pytest.mark.asyncio
    async def test_no_active_subscription(self, store, make_doctor, clock):
        """Test a doctor without a plan cannot be priced."""
        unsubscribed = await make_doctor()

        with pytest.raises(NoActiveSubscriptionError):
            await FeeCalculator(store).breakdown(unsubscribed.id, "online", Decimal("500"), clock())

    @pytest.mark.asyncio
    async def test_unknown_doctor(self, store, clock):
        """Test pricing an unknown doctor."""
        with pytest.raises(NotFoundError):
            await FeeCalculator(store).breakdown("missing", "online", Decimal("500"), clock())

"""
Pytest configuration and shared fixtures.
"""

import os

# Must be set before project modules read settings
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["LOG_TO_FILE"] = "false"
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_123")
os.environ.setdefault("CRON_SECRET", "cron-test-secret")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from db.memory_store import InMemoryStore
from engine.registry import build_engines
from ledger.wallet import WalletLedger
from models.appointment import Slot
from models.doctor import (
    Clinic,
    DoctorProfile,
    DurationPrice,
    FeePair,
    HomeVisitConfig,
    SubscriptionPlan,
    SubscriptionRecord,
)
from models.party import Actor, Party, Role, Wallet

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable time source for engines."""

    def __init__(self, now: datetime = START):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


def make_slot(start: datetime, minutes: int = 30) -> Slot:
    """Build a slot of ``minutes`` starting at ``start``."""
    return Slot(
        day=start.date(),
        duration=minutes,
        start=start,
        end=start + timedelta(minutes=minutes),
    )


@pytest.fixture
def clock():
    """Clock frozen at a Monday morning."""
    return FakeClock()


@pytest.fixture
def store():
    """Fresh in-memory store."""
    return InMemoryStore()


@pytest.fixture
def ledger(store):
    """Wallet ledger on the test store."""
    return WalletLedger(store)


@pytest.fixture
def notifier():
    """Mock notifier."""
    mock_notifier = MagicMock()
    mock_notifier.notify = AsyncMock(return_value=2)
    return mock_notifier


@pytest.fixture
def rooms():
    """Mock video room provisioner that echoes the requested name."""
    mock_rooms = MagicMock()
    mock_rooms.create_room = AsyncMock(side_effect=lambda name: name)
    return mock_rooms


@pytest.fixture
def engines(store, ledger, notifier, rooms, clock):
    """All engines wired to the test store and clock."""
    return build_engines(store, ledger, notifier=notifier, rooms=rooms, clock=clock)


@pytest.fixture
def plan_fees():
    """Fee pair used for every modality: 50 flat plus 10 percent."""
    return FeePair(platform_fee=Decimal("50"), ops_expense_percent=Decimal("10"))


@pytest.fixture
async def plan(store, plan_fees):
    """Standard subscription plan."""
    return await store.save_plan(
        SubscriptionPlan(
            name="Standard",
            price=Decimal("999"),
            online=plan_fees,
            clinic=plan_fees,
            home_visit=plan_fees,
            emergency=plan_fees,
        )
    )


@pytest.fixture
def make_patient(store):
    """Factory creating a patient with a given wallet balance."""

    async def factory(balance="3000", name: str = "Asha Rao", telegram_id: Optional[int] = None):
        return await store.create_party(
            Party(
                role=Role.PATIENT,
                full_name=name,
                telegram_id=telegram_id,
                wallet=Wallet(balance=Decimal(balance)),
            )
        )

    return factory


@pytest.fixture
def make_doctor(store, clock):
    """Factory creating a doctor party plus practice profile."""

    async def factory(
        subscriptions: Optional[List[SubscriptionRecord]] = None,
        name: str = "Dr. Meera Iyer",
        telegram_id: Optional[int] = None,
        emergency_enabled: bool = True,
    ):
        party = await store.create_party(
            Party(role=Role.DOCTOR, full_name=name, telegram_id=telegram_id)
        )
        await store.save_doctor(
            DoctorProfile(
                id=party.id,
                specialization=["General Medicine"],
                online_prices=[
                    DurationPrice(minutes=30, price=Decimal("500")),
                    DurationPrice(minutes=60, price=Decimal("900")),
                ],
                clinics=[
                    Clinic(id="clinic-1", name="City Clinic", consultation_fee=Decimal("1000")),
                    Clinic(id="clinic-2", name="Lake Clinic", consultation_fee=Decimal("700")),
                ],
                home_visit=HomeVisitConfig(is_active=True, fixed_price=Decimal("800")),
                emergency_enabled=emergency_enabled,
                subscriptions=subscriptions or [],
            )
        )
        return party

    return factory


@pytest.fixture
async def patient(make_patient):
    """Patient with 3000 available."""
    return await make_patient("3000")


@pytest.fixture
async def doctor(make_doctor, plan, clock):
    """Doctor subscribed to the standard plan since a month ago."""
    return await make_doctor(
        subscriptions=[
            SubscriptionRecord(plan_id=plan.id, start_date=clock() - timedelta(days=30))
        ]
    )


@pytest.fixture
def patient_actor(patient):
    return Actor(party_id=patient.id, role=Role.PATIENT)


@pytest.fixture
def doctor_actor(doctor):
    return Actor(party_id=doctor.id, role=Role.DOCTOR)


@pytest.fixture
def slot_at():
    """Slot factory: ``slot_at(start, minutes=30)``."""
    return make_slot


@pytest.fixture
def tomorrow(clock):
    """A slot at 10:00 the next day."""
    return make_slot(clock() + timedelta(days=1, hours=1))


@pytest.fixture
def mock_supabase_client():
    """Create a mock Supabase client."""
    mock_client = MagicMock()
    mock_table = MagicMock()
    mock_client.table.return_value = mock_table
    return mock_client, mock_table

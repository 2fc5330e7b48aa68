"""
Unit tests for the emergency appointment state machine.
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from engine.registry import build_engines
from models.party import Actor, Role, Wallet
from utils.exceptions import RoomProvisioningError


async def _in_progress(engines, patient_actor, doctor_actor):
    booked = await engines.emergency.book(patient_actor, "Chest pain", "Since morning", "+919812345678")
    assert booked.success, booked.message
    accepted = await engines.emergency.accept(doctor_actor, booked.appointment.id)
    assert accepted.success, accepted.message
    return accepted.appointment


class TestEmergencyBooking:
    """Test raising an emergency."""

    @pytest.mark.asyncio
    async def test_book_freezes_flat_fee(self, engines, ledger, patient, patient_actor):
        """Test the flat fee is frozen at booking."""
        result = await engines.emergency.book(patient_actor, "Chest pain")

        assert result.success
        assert result.appointment.status == "pending"
        assert result.appointment.doctor_id is None
        assert result.appointment.payment.payment_status == "frozen"
        assert (await ledger.get_wallet(patient.id)).frozen == Decimal("2500")

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, engines, ledger, make_patient):
        """Test booking with 2000 available against a 2500 fee is rejected untouched."""
        patient = await make_patient("2000")

        result = await engines.emergency.book(
            Actor(party_id=patient.id, role=Role.PATIENT), "Chest pain"
        )

        assert not result.success
        assert result.reason == "insufficient_funds"
        assert Decimal(result.data["shortfall"]) == Decimal("500")
        assert (await ledger.get_wallet(patient.id)) == Wallet(balance=Decimal("2000"))

    @pytest.mark.asyncio
    async def test_title_required(self, engines, patient_actor):
        """Test an empty title is a validation error."""
        result = await engines.emergency.book(patient_actor, "   ")
        assert result.reason == "validation_error"

    @pytest.mark.asyncio
    async def test_invalid_contact_number(self, engines, patient_actor):
        """Test a malformed contact number is rejected."""
        result = await engines.emergency.book(patient_actor, "Fever", contact_number="call me")
        assert result.reason == "validation_error"


class TestEmergencyLifecycle:
    """Test accept, join, final payment and cancel."""

    @pytest.mark.asyncio
    async def test_accept_assigns_doctor_and_room(self, engines, rooms, patient_actor, doctor_actor):
        """Test any doctor picks up a pending call and a room is opened."""
        appointment = await _in_progress(engines, patient_actor, doctor_actor)

        assert appointment.status == "in-progress"
        assert appointment.doctor_id == doctor_actor.party_id
        assert appointment.room_name == f"emergency_{appointment.id}"
        rooms.create_room.assert_awaited_once_with(f"emergency_{appointment.id}")

    @pytest.mark.asyncio
    async def test_second_doctor_cannot_accept(
        self, engines, make_doctor, patient_actor, doctor_actor
    ):
        """Test an emergency already in progress cannot be taken again."""
        appointment = await _in_progress(engines, patient_actor, doctor_actor)
        other = await make_doctor(name="Dr. Other")

        result = await engines.emergency.accept(
            Actor(party_id=other.id, role=Role.DOCTOR), appointment.id
        )

        assert result.reason == "invalid_status"

    @pytest.mark.asyncio
    async def test_patient_cannot_accept(self, engines, patient_actor):
        """Test a patient cannot pick up an emergency."""
        booked = await engines.emergency.book(patient_actor, "Chest pain")

        result = await engines.emergency.accept(patient_actor, booked.appointment.id)

        assert result.reason == "not_found"

    @pytest.mark.asyncio
    async def test_doctor_without_emergency_service(self, engines, make_doctor, patient_actor):
        """Test doctors who opted out of emergencies cannot accept."""
        booked = await engines.emergency.book(patient_actor, "Chest pain")
        opted_out = await make_doctor(emergency_enabled=False)

        result = await engines.emergency.accept(
            Actor(party_id=opted_out.id, role=Role.DOCTOR), booked.appointment.id
        )

        assert result.reason == "validation_error"

    @pytest.mark.asyncio
    async def test_room_failure_keeps_pending(self, engines, rooms, patient_actor, doctor_actor):
        """Test the call stays pending when no room can be created."""
        rooms.create_room.side_effect = RoomProvisioningError("Twilio unavailable")
        booked = await engines.emergency.book(patient_actor, "Chest pain")

        result = await engines.emergency.accept(doctor_actor, booked.appointment.id)

        assert result.reason == "room_provisioning_failed"
        assert (await engines.emergency.get(booked.appointment.id)).status == "pending"

    @pytest.mark.asyncio
    async def test_final_payment_requires_join(self, engines, patient_actor, doctor_actor):
        """Test payment is refused until the doctor has joined."""
        appointment = await _in_progress(engines, patient_actor, doctor_actor)

        result = await engines.emergency.final_payment(patient_actor, appointment.id)

        assert result.reason == "invalid_status"

    @pytest.mark.asyncio
    async def test_final_payment_settles_once(
        self, engines, store, ledger, patient, doctor, patient_actor, doctor_actor
    ):
        """Test the final payment settles and a repeat call moves no money."""
        appointment = await _in_progress(engines, patient_actor, doctor_actor)
        joined = await engines.emergency.mark_doctor_joined(doctor_actor, appointment.id)
        assert joined.appointment.doctor_joined_at is not None

        first = await engines.emergency.final_payment(patient_actor, appointment.id)
        second = await engines.emergency.final_payment(doctor_actor, appointment.id)

        assert first.success
        assert first.data["already_completed"] is False
        assert first.appointment.status == "completed"
        assert second.success
        assert second.data["already_completed"] is True

        wallet = await ledger.get_wallet(patient.id)
        assert wallet.balance == Decimal("500")
        assert wallet.frozen == Decimal("0")
        # 2500 - 50 - 250
        assert (await store.get_party(doctor.id)).wallet.balance == Decimal("2200")

    @pytest.mark.asyncio
    async def test_duplicate_final_payment_losing_claim(
        self, engines, store, ledger, patient, doctor, patient_actor, doctor_actor
    ):
        """Test a duplicate call that loses the claim reports the completed payment."""
        appointment = await _in_progress(engines, patient_actor, doctor_actor)
        joined = await engines.emergency.mark_doctor_joined(doctor_actor, appointment.id)
        stale = joined.appointment

        first = await engines.emergency.final_payment(patient_actor, appointment.id)
        with patch.object(
            engines.emergency, "_load_for_participant", AsyncMock(return_value=stale)
        ):
            second = await engines.emergency.final_payment(patient_actor, appointment.id)

        assert first.success
        assert second.success
        assert second.data["already_completed"] is True
        assert second.appointment.status == "completed"
        assert (await ledger.get_wallet(patient.id)).balance == Decimal("500")
        assert (await store.get_party(doctor.id)).wallet.balance == Decimal("2200")

    @pytest.mark.asyncio
    async def test_concurrent_final_payments_settle_once(
        self, engines, store, ledger, patient, doctor, patient_actor, doctor_actor
    ):
        """Test concurrent final payments both succeed and charge once."""
        appointment = await _in_progress(engines, patient_actor, doctor_actor)
        await engines.emergency.mark_doctor_joined(doctor_actor, appointment.id)

        results = await asyncio.gather(
            engines.emergency.final_payment(patient_actor, appointment.id),
            engines.emergency.final_payment(doctor_actor, appointment.id),
        )

        assert all(result.success for result in results)
        assert sorted(result.data["already_completed"] for result in results) == [False, True]
        assert (await ledger.get_wallet(patient.id)).balance == Decimal("500")
        assert (await store.get_party(doctor.id)).wallet.balance == Decimal("2200")

    @pytest.mark.asyncio
    async def test_accept_without_room_provider_names_room(
        self, store, ledger, clock, patient_actor, doctor, doctor_actor
    ):
        """Test accepting without a room provisioner still records the room name."""
        engines = build_engines(store, ledger, clock=clock)
        booked = await engines.emergency.book(patient_actor, "Chest pain")

        result = await engines.emergency.accept(doctor_actor, booked.appointment.id)

        assert result.success, result.message
        assert result.appointment.room_name == f"emergency_{booked.appointment.id}"

    @pytest.mark.asyncio
    async def test_mark_joined_is_idempotent(self, engines, patient_actor, doctor_actor):
        """Test repeated joins keep the first join time."""
        appointment = await _in_progress(engines, patient_actor, doctor_actor)

        first = await engines.emergency.mark_doctor_joined(doctor_actor, appointment.id)
        second = await engines.emergency.mark_doctor_joined(doctor_actor, appointment.id)

        assert second.appointment.doctor_joined_at == first.appointment.doctor_joined_at
        assert second.appointment.version == first.appointment.version

    @pytest.mark.asyncio
    async def test_cancel_pending(self, engines, ledger, patient, patient_actor):
        """Test the patient can withdraw a pending call and get the fee back."""
        booked = await engines.emergency.book(patient_actor, "Chest pain")

        result = await engines.emergency.cancel(patient_actor, booked.appointment.id)

        assert result.appointment.status == "cancelled"
        assert (await ledger.get_wallet(patient.id)).frozen == Decimal("0")

    @pytest.mark.asyncio
    async def test_cancel_in_progress_refused(self, engines, patient_actor, doctor_actor):
        """Test an accepted call cannot be cancelled."""
        appointment = await _in_progress(engines, patient_actor, doctor_actor)

        result = await engines.emergency.cancel(patient_actor, appointment.id)

        assert result.reason == "invalid_status"


class TestEmergencySweep:
    """Test expiry of unanswered emergencies."""

    @pytest.mark.asyncio
    async def test_stale_pending_expires(self, engines, ledger, patient, patient_actor, clock):
        """Test only calls older than the pending window expire."""
        booked = await engines.emergency.book(patient_actor, "Chest pain")

        clock.advance(minutes=10)
        assert (await engines.emergency.sweep(clock())).expired == 0

        clock.advance(minutes=25)
        counts = await engines.emergency.sweep(clock())

        assert counts.expired == 1
        assert (await engines.emergency.get(booked.appointment.id)).status == "expired"
        assert (await ledger.get_wallet(patient.id)).frozen == Decimal("0")

    @pytest.mark.asyncio
    async def test_joined_call_not_expired(self, engines, patient_actor, doctor_actor, clock):
        """Test calls the doctor joined are left for the final payment."""
        appointment = await _in_progress(engines, patient_actor, doctor_actor)
        await engines.emergency.mark_doctor_joined(doctor_actor, appointment.id)
        clock.advance(days=1)

        counts = await engines.emergency.sweep(clock())

        assert counts.total == 0
        assert (await engines.emergency.get(appointment.id)).status == "in-progress"

    @pytest.mark.asyncio
    async def test_unjoined_call_expires_after_join_window(
        self, engines, ledger, patient, patient_actor, doctor_actor, clock
    ):
        """Test an accepted call the doctor never joined releases the flat fee."""
        appointment = await _in_progress(engines, patient_actor, doctor_actor)

        clock.advance(hours=1)
        assert (await engines.emergency.sweep(clock())).total == 0
        assert (await ledger.get_wallet(patient.id)).frozen == Decimal("2500")

        clock.advance(days=30)
        counts = await engines.emergency.sweep(clock())

        assert counts.expired == 1
        expired = await engines.emergency.get(appointment.id)
        assert expired.status == "expired"
        assert expired.payment.payment_status == "failed"
        wallet = await ledger.get_wallet(patient.id)
        assert wallet.frozen == Decimal("0")
        assert wallet.balance == Decimal("3000")

        late = await engines.emergency.final_payment(patient_actor, appointment.id)
        assert late.reason == "invalid_status"

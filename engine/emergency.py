"""
Emergency calls.

pending -> in-progress | cancelled | expired ; in-progress -> completed

Emergencies have no slot and no price list: booking freezes the flat fee,
any doctor may pick up a pending call, and the final payment is a
separate call made once the doctor has joined the room.
"""

from datetime import datetime, timedelta
from typing import Optional

from config import settings
from engine.base import AppointmentEngine, logger, transition
from engine.policies import EMERGENCY_POLICY
from models.appointment import (
    Appointment,
    EmergencyDetails,
    PaymentDetails,
    PaymentStatus,
    S,
    status_set,
)
from models.party import Actor
from models.results import SweepCounts, TransitionResult
from utils.constants import MAX_TEXT_LENGTH
from utils.exceptions import (
    ConcurrentModificationError,
    InvalidStatusError,
    NotFoundError,
    ValidationError,
)
from utils.validation import sanitize_text, validate_phone


class EmergencyAppointments(AppointmentEngine):
    """State machine for emergency appointments."""

    policy = EMERGENCY_POLICY

    @property
    def flat_fee(self):
        return settings.emergency_flat_fee

    @transition("book")
    async def book(
        self,
        actor: Actor,
        title: str,
        description: Optional[str] = None,
        contact_number: Optional[str] = None,
    ) -> TransitionResult:
        """Raise an emergency call and freeze the flat fee."""
        self._require_patient(actor)

        title = sanitize_text(title, MAX_TEXT_LENGTH)
        if not title:
            raise ValidationError("Emergency title is required")
        if contact_number and not validate_phone(contact_number):
            raise ValidationError("Invalid contact number")

        fee = self.flat_fee
        appointment = await self._reserve_and_insert(
            Appointment(
                modality=self.modality,
                patient_id=actor.party_id,
                emergency=EmergencyDetails(
                    title=title,
                    description=sanitize_text(description, MAX_TEXT_LENGTH) or None,
                    contact_number=contact_number,
                ),
                payment=PaymentDetails(
                    amount=fee,
                    patient_wallet_frozen=fee,
                    payment_status=PaymentStatus.FROZEN,
                ),
            ),
            freeze_amount=fee,
        )
        logger.info(f"Emergency {appointment.id} raised by patient {actor.party_id}; froze {fee}")
        await self._notify("booked", appointment)
        return TransitionResult.ok(
            "Emergency appointment created successfully", appointment
        )

    @transition("accept")
    async def accept(self, actor: Actor, appointment_id: str) -> TransitionResult:
        """
        Pick up a pending emergency and open its video room.

        A room provisioning failure fails the accept; no money moves here.
        """
        if not actor.is_doctor:
            raise NotFoundError("Doctor not found")
        doctor = await self._require_doctor(actor.party_id)
        if not doctor.emergency_enabled:
            raise ValidationError("Doctor does not take emergency calls")

        appointment = await self._load(appointment_id)
        if appointment.status != S.PENDING.value:
            raise InvalidStatusError(
                "Emergency appointment is already accepted or completed",
                status=appointment.status,
            )

        room_name = await self._provision_room(appointment.id)

        accepted = await self._save(
            self._evolve(
                appointment,
                doctor_id=actor.party_id,
                status=S.IN_PROGRESS.value,
                room_name=room_name,
            ),
            appointment.version,
        )
        await self._notify("accepted", accepted)
        return TransitionResult.ok(
            "Emergency appointment accepted successfully",
            accepted,
            room_name=room_name,
        )

    @transition("cancel")
    async def cancel(self, actor: Actor, appointment_id: str) -> TransitionResult:
        """Withdraw a pending emergency and release the flat fee."""
        appointment = await self._load_for_patient(actor, appointment_id)
        self._require_status(appointment, S.PENDING)

        cancelled = await self._release(appointment, S.CANCELLED)
        await self._notify("cancelled", cancelled)
        return TransitionResult.ok("Emergency appointment cancelled", cancelled)

    @transition("join")
    async def mark_doctor_joined(self, actor: Actor, appointment_id: str) -> TransitionResult:
        """Record that the assigned doctor entered the room. Repeat calls are no-ops."""
        appointment = await self._load_for_doctor(actor, appointment_id)
        self._require_status(appointment, S.IN_PROGRESS)

        if appointment.doctor_joined_at is not None:
            return TransitionResult.ok("Doctor already joined", appointment)

        joined = await self._save(
            self._evolve(appointment, doctor_joined_at=self.now()),
            appointment.version,
        )
        return TransitionResult.ok("Doctor joined", joined, room_name=joined.room_name)

    @transition("final_payment")
    async def final_payment(self, actor: Actor, appointment_id: str) -> TransitionResult:
        """
        Settle the frozen fee once the doctor has joined.

        Calling this on an already completed emergency succeeds without
        moving money again.
        """
        appointment = await self._load_for_participant(actor, appointment_id)

        if appointment.status == S.COMPLETED.value:
            return self._already_paid(appointment)

        self._require_status(appointment, S.IN_PROGRESS)
        if appointment.doctor_joined_at is None:
            raise InvalidStatusError(
                "Doctor has not joined the call yet", status=appointment.status
            )

        breakdown = await self.fees.breakdown(
            appointment.doctor_id, self.modality, appointment.payment.amount, self.now()
        )
        try:
            completed = await self._settle_frozen(
                appointment, breakdown, rollback_status=S.IN_PROGRESS
            )
        except ConcurrentModificationError:
            # A duplicate call won the claim; nothing was charged by this one
            current = await self._load(appointment_id)
            if current.status != S.COMPLETED.value:
                raise
            return self._already_paid(current)
        await self._notify("completed", completed)
        return TransitionResult.ok(
            "Payment completed",
            completed,
            already_completed=False,
            doctor_earning=str(breakdown.doctor_earning),
        )

    @staticmethod
    def _already_paid(appointment: Appointment) -> TransitionResult:
        return TransitionResult.ok(
            "Payment already completed", appointment, already_completed=True
        )

    async def sweep(self, now: Optional[datetime] = None) -> SweepCounts:
        """
        Expire emergencies nobody attended to, releasing the flat fee.

        Pending calls expire after the pending time-to-live. Accepted calls
        the doctor never joined expire after the join time-to-live, both
        measured from when the call was raised.
        """
        now = now or self.now()
        pending_cutoff = now - timedelta(minutes=settings.emergency_pending_ttl_minutes)
        join_cutoff = now - timedelta(minutes=settings.emergency_join_ttl_minutes)

        stale = await self.store.list_appointments(
            self.modality, status_set(S.PENDING), created_before=pending_cutoff
        )
        abandoned = [
            appointment
            for appointment in await self.store.list_appointments(
                self.modality, status_set(S.IN_PROGRESS), created_before=join_cutoff
            )
            if appointment.doctor_joined_at is None
        ]

        async def expire(appointment: Appointment) -> Appointment:
            return await self._release(appointment, S.EXPIRED)

        return self._tally(await self._sweep_each(stale + abandoned, expire))

"""
Online (video) consultations.

pending -> accepted | rejected ; accepted -> completed | expired

Online bookings do not reserve funds. The patient is charged once, when
the doctor accepts, and the doctor is credited at the same moment.
"""

from datetime import datetime
from typing import Optional

from engine.base import AppointmentEngine, logger, transition
from engine.policies import ONLINE_POLICY
from models.appointment import Appointment, PaymentDetails, PaymentStatus, S, Slot
from models.party import Actor
from models.results import SweepCounts, TransitionResult
from utils.constants import ZERO
from utils.exceptions import InsufficientFundsError, ValidationError


class OnlineAppointments(AppointmentEngine):
    """State machine for online appointments."""

    policy = ONLINE_POLICY

    @transition("book")
    async def book(self, actor: Actor, doctor_id: str, slot: Slot) -> TransitionResult:
        """
        Book an online consultation.

        The doctor must list a price for the slot's duration and the
        patient's available balance must cover it. Nothing is frozen.
        """
        self._require_patient(actor)
        self._require_future_slot(slot)
        doctor = await self._require_doctor(doctor_id)

        price = doctor.online_price(slot.duration)
        if price is None:
            raise ValidationError(
                "Doctor does not support this appointment duration",
                duration=slot.duration,
            )

        await self._require_available(actor.party_id, price)

        appointment = await self._reserve_and_insert(
            Appointment(
                modality=self.modality,
                doctor_id=doctor_id,
                patient_id=actor.party_id,
                slot=slot,
                payment=PaymentDetails(amount=price),
            ),
            freeze_amount=ZERO,
        )
        logger.info(f"Booked online appointment {appointment.id} with doctor {doctor_id}")
        await self._notify("booked", appointment)
        return TransitionResult.ok("Appointment booked successfully", appointment)

    @transition("accept")
    async def accept(self, actor: Actor, appointment_id: str) -> TransitionResult:
        """
        Accept a pending appointment, provision its room and charge the patient.

        Order: subscription, balance, room, compare-and-set claim, debit,
        credit. A debit that fails after the claim restores ``pending``.
        """
        appointment = await self._load_for_doctor(actor, appointment_id)
        self._require_status(appointment, S.PENDING)

        price = appointment.payment.amount
        breakdown = await self.fees.breakdown(
            appointment.doctor_id, self.modality, price, self.now()
        )
        await self._require_available(appointment.patient_id, price)

        room_name = await self._provision_room(appointment.id)

        payment = appointment.payment.model_copy(
            update={
                "patient_wallet_deducted": price,
                "payment_status": PaymentStatus.COMPLETED.value,
                "doctor_platform_fee": breakdown.platform_fee,
                "doctor_ops_expense": breakdown.ops_expense,
                "doctor_earning": breakdown.doctor_earning,
            }
        )
        claimed = await self._save(
            self._evolve(
                appointment,
                status=S.ACCEPTED.value,
                payment=payment,
                room_name=room_name,
            ),
            appointment.version,
        )

        if not await self.ledger.debit(appointment.patient_id, price):
            await self._save(
                self._evolve(
                    claimed,
                    status=S.PENDING.value,
                    payment=appointment.payment,
                    room_name=None,
                ),
                claimed.version,
            )
            available = await self.ledger.available_balance(appointment.patient_id)
            raise InsufficientFundsError(
                "Patient has insufficient wallet balance",
                required=price,
                available=available,
            )

        await self.ledger.credit(appointment.doctor_id, breakdown.doctor_earning, earning=True)
        logger.info(
            f"Accepted online appointment {appointment.id}: charged {price}, "
            f"doctor earned {breakdown.doctor_earning}"
        )
        await self._notify("accepted", claimed)
        return TransitionResult.ok(
            "Appointment status updated to accepted successfully",
            claimed,
            room_name=room_name,
        )

    @transition("reject")
    async def reject(self, actor: Actor, appointment_id: str) -> TransitionResult:
        """Reject a pending appointment. No money has moved yet."""
        appointment = await self._load_for_doctor(actor, appointment_id)
        self._require_status(appointment, S.PENDING)

        rejected = await self._save(
            self._evolve(appointment, status=S.REJECTED.value), appointment.version
        )
        await self._notify("rejected", rejected)
        return TransitionResult.ok("Appointment status updated to rejected successfully", rejected)

    @transition("complete")
    async def complete(self, actor: Actor, appointment_id: str) -> TransitionResult:
        """Finish an accepted consultation; payment already settled at acceptance."""
        appointment = await self._load_for_doctor(actor, appointment_id)
        self._require_status(appointment, S.ACCEPTED)

        completed = await self._save(
            self._evolve(appointment, status=S.COMPLETED.value), appointment.version
        )
        await self._notify("completed", completed)
        return TransitionResult.ok("Appointment completed", completed)

    async def sweep(self, now: Optional[datetime] = None) -> SweepCounts:
        """Expire pending and accepted appointments whose slot has ended."""
        now = now or self.now()
        lapsed = await self.store.list_appointments(
            self.modality, self.policy.live_statuses, ended_before=now
        )

        async def expire(appointment: Appointment) -> Appointment:
            return await self._save(
                self._evolve(appointment, status=S.EXPIRED.value), appointment.version
            )

        return self._tally(await self._sweep_each(lapsed, expire))

"""
Home visits.

pending -> doctor_accepted | doctor_rejected | cancelled | expired
doctor_accepted -> patient_confirmed | doctor_rejected | cancelled | expired
patient_confirmed -> completed | cancelled | unattended

Pricing is settled in steps: the booking carries the doctor's fixed
price, the doctor adds travel cost on accept, and the patient's confirm
freezes the final total and issues a non-expiring OTP by default.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from engine.base import AppointmentEngine, logger, transition
from engine.policies import HOME_VISIT_POLICY
from models.appointment import (
    Appointment,
    HomeVisitPricing,
    PaymentDetails,
    PaymentStatus,
    S,
    Slot,
    status_set,
)
from models.party import Actor, to_money
from models.results import SweepCounts, TransitionResult
from utils.constants import MAX_TRAVEL_COST, ZERO
from utils.exceptions import OtpMissingError, ValidationError
from utils.validation import parse_amount


class HomeVisitAppointments(AppointmentEngine):
    """State machine for home visit appointments."""

    policy = HOME_VISIT_POLICY

    @transition("book")
    async def book(self, actor: Actor, doctor_id: str, slot: Slot) -> TransitionResult:
        """Book a home visit at the doctor's fixed price. Nothing is frozen yet."""
        self._require_patient(actor)
        self._require_future_slot(slot)
        doctor = await self._require_doctor(doctor_id)

        if not doctor.home_visit.is_active:
            raise ValidationError("Doctor does not offer home visits", doctor_id=doctor_id)

        fixed = doctor.home_visit.fixed_price
        await self._require_available(actor.party_id, fixed)

        appointment = await self._reserve_and_insert(
            Appointment(
                modality=self.modality,
                doctor_id=doctor_id,
                patient_id=actor.party_id,
                slot=slot,
                pricing=HomeVisitPricing(fixed_cost=fixed, total_cost=fixed),
                payment=PaymentDetails(amount=fixed),
            ),
            freeze_amount=ZERO,
        )
        logger.info(f"Booked home visit {appointment.id} with doctor {doctor_id}")
        await self._notify("booked", appointment)
        return TransitionResult.ok("Home visit appointment booked successfully", appointment)

    @transition("accept")
    async def accept(
        self, actor: Actor, appointment_id: str, travel_cost: Any
    ) -> TransitionResult:
        """Accept a pending visit and add the travel cost to its total."""
        travel = parse_amount(travel_cost)
        if travel is None or travel > MAX_TRAVEL_COST:
            raise ValidationError(
                f"Travel cost must be a number between 0 and {MAX_TRAVEL_COST}"
            )

        appointment = await self._load_for_doctor(actor, appointment_id)
        self._require_status(appointment, S.PENDING)

        fixed = appointment.pricing.fixed_cost
        travel = to_money(travel)
        total = to_money(fixed + travel)
        accepted = await self._save(
            self._evolve(
                appointment,
                status=S.DOCTOR_ACCEPTED.value,
                pricing=HomeVisitPricing(fixed_cost=fixed, travel_cost=travel, total_cost=total),
                payment=appointment.payment.model_copy(update={"amount": total}),
            ),
            appointment.version,
        )
        await self._notify("accepted", accepted)
        return TransitionResult.ok(
            "Home visit accepted", accepted, total_cost=str(total)
        )

    @transition("reject")
    async def reject(self, actor: Actor, appointment_id: str) -> TransitionResult:
        """Decline a visit before the patient has confirmed it."""
        appointment = await self._load_for_doctor(actor, appointment_id)
        self._require_status(appointment, S.PENDING, S.DOCTOR_ACCEPTED)

        rejected = await self._release(appointment, S.DOCTOR_REJECTED)
        await self._notify("rejected", rejected)
        return TransitionResult.ok("Home visit rejected", rejected)

    @transition("confirm")
    async def confirm(self, actor: Actor, appointment_id: str) -> TransitionResult:
        """
        Confirm the final price: freeze it on the patient's wallet and issue the OTP.

        The freeze happens first; if the appointment changed underneath us
        the freeze is released before the error is returned.
        """
        appointment = await self._load_for_patient(actor, appointment_id)
        self._require_status(appointment, S.DOCTOR_ACCEPTED)

        total = appointment.pricing.total_cost
        await self._freeze_or_raise(appointment.patient_id, total)

        otp = self.otp.issue(self.modality, self.now())
        try:
            confirmed = await self._save(
                self._evolve(
                    appointment,
                    status=S.PATIENT_CONFIRMED.value,
                    otp=otp,
                    payment=appointment.payment.model_copy(
                        update={
                            "amount": total,
                            "patient_wallet_frozen": total,
                            "payment_status": PaymentStatus.FROZEN.value,
                        }
                    ),
                ),
                appointment.version,
            )
        except Exception:
            await self.ledger.unfreeze(appointment.patient_id, total)
            raise

        await self._notify("confirmed", confirmed)
        return TransitionResult.ok(
            "Home visit confirmed", confirmed, frozen=str(total)
        )

    @transition("reveal_otp")
    async def reveal_otp(self, actor: Actor, appointment_id: str) -> TransitionResult:
        """Show the patient their OTP while it can still be used."""
        appointment = await self._load_for_patient(actor, appointment_id)
        self._require_status(appointment, S.PATIENT_CONFIRMED)

        otp = self.otp.reveal(appointment.otp, self.now())
        if otp is None:
            raise OtpMissingError("No usable OTP for this appointment")

        return TransitionResult.ok(
            "OTP retrieved",
            appointment,
            otp=otp.code,
            expires_at=otp.expires_at.isoformat() if otp.expires_at else None,
            remaining_attempts=otp.remaining_attempts,
        )

    @transition("complete")
    async def complete(self, actor: Actor, appointment_id: str, code: str) -> TransitionResult:
        """
        Validate the OTP at the patient's door and settle the frozen total.

        If the charge fails the visit returns to ``doctor_accepted`` with the
        OTP unused and the reservation released, so the patient can confirm
        again once their wallet allows it.
        """
        self._require_otp_format(code)
        appointment = await self._load_for_doctor(actor, appointment_id)
        self._require_status(appointment, S.PATIENT_CONFIRMED)

        now = self.now()
        breakdown = await self.fees.breakdown(
            appointment.doctor_id, self.modality, appointment.payment.amount, now
        )

        check = self.otp.validate(appointment.otp, code, now)
        if not check.ok:
            if check.attempt_counted:
                await self._count_failed_otp(appointment, check.otp)
            raise check.error

        completed = await self._settle_frozen(
            appointment,
            breakdown,
            rollback_status=S.DOCTOR_ACCEPTED,
            release_on_failure=True,
            otp=check.otp.model_copy(update={"is_used": True}),
        )
        await self._notify("completed", completed)
        return TransitionResult.ok(
            "Home visit completed",
            completed,
            doctor_earning=str(breakdown.doctor_earning),
        )

    @transition("cancel")
    async def cancel(self, actor: Actor, appointment_id: str) -> TransitionResult:
        """Cancel a live visit from either side, releasing any frozen total."""
        appointment = await self._load_for_participant(actor, appointment_id)
        self._require_status(appointment, S.PENDING, S.DOCTOR_ACCEPTED, S.PATIENT_CONFIRMED)

        released = appointment.payment.patient_wallet_frozen
        cancelled = await self._release(appointment, S.CANCELLED)
        await self._notify("cancelled", cancelled)
        return TransitionResult.ok(
            "Home visit cancelled", cancelled, released=str(released)
        )

    async def confirmed_frozen_total(self, patient_id: str) -> Decimal:
        """
        Sum of the totals held by a patient's confirmed visits.

        The wallet's ``frozen`` field is authoritative; this aggregate is a
        consistency check against it.
        """
        confirmed = await self.store.list_patient_appointments(
            self.modality, patient_id, status_set(S.PATIENT_CONFIRMED)
        )
        return sum(
            (appointment.payment.patient_wallet_frozen for appointment in confirmed),
            ZERO,
        )

    async def sweep(self, now: Optional[datetime] = None) -> SweepCounts:
        """
        Resolve visits whose slot has ended.

        Unconfirmed visits expire; confirmed ones become unattended and
        release the frozen total.
        """
        now = now or self.now()
        lapsed = await self.store.list_appointments(
            self.modality, self.policy.live_statuses, ended_before=now
        )

        async def resolve(appointment: Appointment) -> Appointment:
            if appointment.status == S.PATIENT_CONFIRMED.value:
                return await self._release(appointment, S.UNATTENDED)
            return await self._release(appointment, S.EXPIRED)

        return self._tally(await self._sweep_each(lapsed, resolve))

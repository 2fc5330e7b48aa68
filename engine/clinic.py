"""
In-clinic consultations.

pending -> accepted | rejected | expired
accepted -> completed | rejected | unattended

The consultation fee is frozen at booking. Accepting issues the OTP the
patient shows at the clinic; the doctor's OTP submission settles the fee.
"""

from datetime import datetime
from typing import Optional

from engine.base import AppointmentEngine, logger, transition
from engine.policies import CLINIC_POLICY
from models.appointment import Appointment, PaymentDetails, PaymentStatus, S, Slot
from models.party import Actor
from models.results import SweepCounts, TransitionResult
from utils.exceptions import NotFoundError, OtpMissingError


class ClinicAppointments(AppointmentEngine):
    """State machine for clinic appointments."""

    policy = CLINIC_POLICY

    @transition("book")
    async def book(
        self, actor: Actor, doctor_id: str, clinic_id: str, slot: Slot
    ) -> TransitionResult:
        """
        Book a clinic slot and freeze the clinic's consultation fee.

        Raises (as a failed result):
            SlotUnavailableError: If the doctor's slot at this clinic is taken
            InsufficientFundsError: If the fee exceeds the available balance
        """
        self._require_patient(actor)
        self._require_future_slot(slot)
        doctor = await self._require_doctor(doctor_id)

        clinic = doctor.clinic(clinic_id)
        if clinic is None or not clinic.is_active:
            raise NotFoundError("Clinic not found", clinic_id=clinic_id)

        fee = clinic.consultation_fee
        appointment = await self._reserve_and_insert(
            Appointment(
                modality=self.modality,
                doctor_id=doctor_id,
                patient_id=actor.party_id,
                clinic_id=clinic_id,
                slot=slot,
                payment=PaymentDetails(
                    amount=fee,
                    patient_wallet_frozen=fee,
                    payment_status=PaymentStatus.PENDING,
                ),
            ),
            freeze_amount=fee,
        )
        logger.info(
            f"Booked clinic appointment {appointment.id} at {clinic_id}; froze {fee}"
        )
        await self._notify("booked", appointment)
        return TransitionResult.ok("Clinic appointment booked successfully", appointment)

    @transition("accept")
    async def accept(self, actor: Actor, appointment_id: str) -> TransitionResult:
        """Accept a pending appointment and issue its OTP. No money moves."""
        appointment = await self._load_for_doctor(actor, appointment_id)
        self._require_status(appointment, S.PENDING)

        otp = self.otp.issue(self.modality, self.now())
        accepted = await self._save(
            self._evolve(appointment, status=S.ACCEPTED.value, otp=otp),
            appointment.version,
        )
        await self._notify("accepted", accepted)
        return TransitionResult.ok(
            "Appointment confirmed successfully",
            accepted,
            otp_expires_at=otp.expires_at.isoformat() if otp.expires_at else None,
        )

    @transition("reject")
    async def reject(self, actor: Actor, appointment_id: str) -> TransitionResult:
        """Reject a pending or accepted appointment and unfreeze the fee."""
        appointment = await self._load_for_doctor(actor, appointment_id)
        self._require_status(appointment, S.PENDING, S.ACCEPTED)

        refunded = appointment.payment.patient_wallet_frozen
        rejected = await self._release(appointment, S.REJECTED)
        await self._notify("rejected", rejected)
        return TransitionResult.ok(
            "Appointment rejected", rejected, refunded=str(refunded)
        )

    @transition("reveal_otp")
    async def reveal_otp(self, actor: Actor, appointment_id: str) -> TransitionResult:
        """Show the patient their OTP while it can still be used."""
        appointment = await self._load_for_patient(actor, appointment_id)
        self._require_status(appointment, S.ACCEPTED)

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
        Validate the visit OTP and settle the frozen fee.

        The subscription is checked before the OTP so a doctor without a
        plan cannot burn the patient's attempts. A wrong code is counted
        and persisted before the failure is returned.
        """
        self._require_otp_format(code)
        appointment = await self._load_for_doctor(actor, appointment_id)
        self._require_status(appointment, S.ACCEPTED)

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
            rollback_status=S.ACCEPTED,
            otp=check.otp.model_copy(update={"is_used": True}),
        )
        await self._notify("completed", completed)
        return TransitionResult.ok(
            "OTP validated, appointment completed",
            completed,
            doctor_earning=str(breakdown.doctor_earning),
        )

    async def sweep(self, now: Optional[datetime] = None) -> SweepCounts:
        """
        Resolve clinic appointments whose slot has ended.

        pending becomes expired and accepted becomes unattended, both
        releasing the frozen fee; an accepted appointment that was already
        paid is marked completed.
        """
        now = now or self.now()
        lapsed = await self.store.list_appointments(
            self.modality, self.policy.live_statuses, ended_before=now
        )

        async def resolve(appointment: Appointment) -> Appointment:
            if appointment.status == S.PENDING.value:
                return await self._release(appointment, S.EXPIRED)
            if appointment.payment.payment_status == PaymentStatus.COMPLETED.value:
                return await self._save(
                    self._evolve(appointment, status=S.COMPLETED.value),
                    appointment.version,
                )
            return await self._release(appointment, S.UNATTENDED)

        return self._tally(await self._sweep_each(lapsed, resolve))

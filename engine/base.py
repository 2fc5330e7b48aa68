"""
Shared appointment state machine.

Subclasses supply the modality-specific transitions; this module holds
the primitives they are assembled from:

- reservation: freeze then insert, releasing the freeze if the insert fails
- settlement: claim the appointment with a compare-and-set, then charge the
  patient and credit the doctor; a failed charge restores the appointment
- release: move to a terminal status, then unfreeze what was reserved

Public operations return a TransitionResult. Domain errors become failed
results; anything else propagates.
"""

import functools
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, List, Optional

from db.store import AppointmentStore
from engine.fees import FeeBreakdown, FeeCalculator
from engine.otp import OtpIssuer
from engine.policies import ModalityPolicy
from engine.slots import SlotAvailabilityChecker
from ledger.wallet import WalletLedger
from models.appointment import (
    Appointment,
    AppointmentEvent,
    OtpRecord,
    PaymentStatus,
    S,
    Slot,
)
from models.party import Actor
from models.results import SweepCounts, TransitionResult
from utils.constants import ZERO
from utils.datetime_utils import utc_now
from utils.exceptions import (
    AppointmentError,
    ConcurrentModificationError,
    InsufficientFundsError,
    InvalidStatusError,
    NotFoundError,
    SettlementError,
    SlotUnavailableError,
    ValidationError,
)
from utils.logging_config import setup_logging
from utils.validation import validate_otp_format

logger = setup_logging(name=__name__, log_file="engine.log")

PERMISSION_MESSAGE = "Appointment not found or you don't have permission to modify it"


def transition(operation: str):
    """
    Turn domain errors raised by an engine operation into a failed result.

    Args:
        operation: Name used in log lines
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs) -> TransitionResult:
            try:
                return await func(self, *args, **kwargs)
            except AppointmentError as e:
                logger.warning(
                    f"{self.modality} {operation} refused ({e.reason.value}): {e.message}"
                )
                return TransitionResult.fail(e.message, e.reason, **e.data)

        return wrapper

    return decorator


class AppointmentEngine:
    """Reservation plus OTP-gated settlement, parameterised by a ModalityPolicy."""

    policy: ModalityPolicy

    def __init__(
        self,
        store: AppointmentStore,
        ledger: WalletLedger,
        otp_issuer: Optional[OtpIssuer] = None,
        fees: Optional[FeeCalculator] = None,
        slots: Optional[SlotAvailabilityChecker] = None,
        notifier=None,
        rooms=None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.ledger = ledger
        self.otp = otp_issuer or OtpIssuer()
        self.fees = fees or FeeCalculator(store)
        self.slots = slots or SlotAvailabilityChecker(store)
        self.notifier = notifier
        self.rooms = rooms
        self.clock = clock

    @property
    def modality(self) -> str:
        return self.policy.modality

    def now(self) -> datetime:
        return self.clock()

    # ========== Loading & Guards ==========

    async def get(self, appointment_id: str) -> Optional[Appointment]:
        """Get appointment by ID."""
        return await self.store.get_appointment(self.modality, appointment_id)

    async def _load(self, appointment_id: str) -> Appointment:
        appointment = await self.get(appointment_id)
        if appointment is None:
            raise NotFoundError("Appointment not found", appointment_id=appointment_id)
        return appointment

    async def _load_for_doctor(self, actor: Actor, appointment_id: str) -> Appointment:
        appointment = await self._load(appointment_id)
        if not actor.is_doctor or appointment.doctor_id != actor.party_id:
            raise NotFoundError(PERMISSION_MESSAGE, appointment_id=appointment_id)
        return appointment

    async def _load_for_patient(self, actor: Actor, appointment_id: str) -> Appointment:
        appointment = await self._load(appointment_id)
        if not actor.is_patient or appointment.patient_id != actor.party_id:
            raise NotFoundError(PERMISSION_MESSAGE, appointment_id=appointment_id)
        return appointment

    async def _load_for_participant(self, actor: Actor, appointment_id: str) -> Appointment:
        appointment = await self._load(appointment_id)
        if actor.party_id not in (appointment.patient_id, appointment.doctor_id):
            raise NotFoundError(PERMISSION_MESSAGE, appointment_id=appointment_id)
        return appointment

    def _require_patient(self, actor: Actor) -> None:
        if not actor.is_patient:
            raise ValidationError("Only patients can book appointments")

    def _require_status(self, appointment: Appointment, *allowed: S) -> None:
        if appointment.status not in {status.value for status in allowed}:
            raise InvalidStatusError(
                f"Appointment is {appointment.status}; expected "
                f"{' or '.join(status.value for status in allowed)}",
                status=appointment.status,
            )

    def _require_otp_format(self, code: str) -> None:
        if not validate_otp_format(code, self.otp.length):
            raise ValidationError(
                f"OTP must be {self.otp.length} letters or digits"
            )

    def _require_future_slot(self, slot: Slot) -> None:
        if slot.end <= self.now():
            raise ValidationError("Cannot book a slot that has already ended")

    async def _require_doctor(self, doctor_id: str):
        doctor = await self.store.get_doctor(doctor_id)
        if doctor is None:
            raise NotFoundError("Doctor not found", doctor_id=doctor_id)
        return doctor

    # ========== Persistence ==========

    def _evolve(self, appointment: Appointment, **changes: Any) -> Appointment:
        """Copy an appointment with changes applied and re-validated."""
        data = appointment.model_dump()
        data.update(changes)
        return Appointment.model_validate(data)

    async def _save(self, appointment: Appointment, expected_version: int) -> Appointment:
        """
        Compare-and-set an appointment.

        Raises:
            ConcurrentModificationError: If another writer changed it first
        """
        saved = await self.store.update_appointment(appointment, expected_version)
        if saved is None:
            raise ConcurrentModificationError(
                "Appointment was modified concurrently, please retry",
                entity_id=appointment.id,
            )
        return saved

    async def _count_failed_otp(self, appointment: Appointment, otp: OtpRecord) -> None:
        await self._save(self._evolve(appointment, otp=otp), appointment.version)

    # ========== Money Primitives ==========

    async def _require_available(self, party_id: str, amount: Decimal) -> None:
        available = await self.ledger.available_balance(party_id)
        if available < amount:
            raise InsufficientFundsError(
                "Insufficient wallet balance", required=amount, available=available
            )

    async def _freeze_or_raise(self, party_id: str, amount: Decimal) -> None:
        if not await self.ledger.freeze(party_id, amount):
            available = await self.ledger.available_balance(party_id)
            raise InsufficientFundsError(
                "Insufficient wallet balance", required=amount, available=available
            )

    async def _reserve_and_insert(
        self, appointment: Appointment, freeze_amount: Decimal
    ) -> Appointment:
        """
        Freeze the patient's funds, then insert the appointment.

        The insert re-checks slot overlap atomically; if it fails for any
        reason the freeze is released before the error propagates.
        """
        if appointment.created_at is None:
            appointment = appointment.model_copy(update={"created_at": self.now()})

        if self.policy.requires_slot and appointment.slot is None:
            raise ValidationError("A time slot is required for this appointment")

        if appointment.slot is not None:
            conflicts = await self.slots.conflicts(
                self.modality,
                appointment.doctor_id,
                appointment.slot,
                self.policy.live_statuses,
                clinic_id=(
                    appointment.clinic_id if self.policy.uses_clinic_resource else None
                ),
            )
            if conflicts:
                raise SlotUnavailableError(
                    "Slot is already booked", doctor_id=appointment.doctor_id
                )

        if freeze_amount > 0:
            await self._freeze_or_raise(appointment.patient_id, freeze_amount)

        try:
            return await self.store.insert_appointment(
                appointment, self.policy.live_statuses
            )
        except Exception:
            if freeze_amount > 0:
                await self.ledger.unfreeze(appointment.patient_id, freeze_amount)
            raise

    async def _release(
        self, appointment: Appointment, status: S, **changes: Any
    ) -> Appointment:
        """
        Move to a terminal status, then unfreeze whatever the appointment held.

        The status change lands first, so a concurrent settlement that wins
        the compare-and-set leaves the reservation untouched.
        """
        held = appointment.payment.patient_wallet_frozen
        payment = appointment.payment.model_copy(
            update={
                "patient_wallet_frozen": ZERO,
                "payment_status": (
                    PaymentStatus.FAILED.value
                    if held > 0
                    else appointment.payment.payment_status
                ),
            }
        )
        released = await self._save(
            self._evolve(appointment, status=status.value, payment=payment, **changes),
            appointment.version,
        )
        if held > 0:
            await self.ledger.unfreeze(appointment.patient_id, held)
        return released

    async def _settle_frozen(
        self,
        appointment: Appointment,
        breakdown: FeeBreakdown,
        rollback_status: S,
        release_on_failure: bool = False,
        **changes: Any,
    ) -> Appointment:
        """
        Claim the appointment as completed, then settle the reservation.

        Raises:
            SettlementError: If the patient could not be charged; the
                appointment is restored to ``rollback_status`` with its
                original OTP (``is_used`` cleared) and payment details
        """
        amount = appointment.payment.patient_wallet_frozen
        payment = appointment.payment.model_copy(
            update={
                "patient_wallet_frozen": ZERO,
                "patient_wallet_deducted": appointment.payment.patient_wallet_deducted + amount,
                "payment_status": PaymentStatus.COMPLETED.value,
                "doctor_platform_fee": breakdown.platform_fee,
                "doctor_ops_expense": breakdown.ops_expense,
                "doctor_earning": breakdown.doctor_earning,
            }
        )
        claimed = await self._save(
            self._evolve(appointment, status=S.COMPLETED.value, payment=payment, **changes),
            appointment.version,
        )

        if not await self.ledger.deduct_frozen(appointment.patient_id, amount):
            restored_payment = appointment.payment
            if release_on_failure:
                restored_payment = appointment.payment.model_copy(
                    update={
                        "patient_wallet_frozen": ZERO,
                        "payment_status": PaymentStatus.PENDING.value,
                    }
                )
            otp = appointment.otp
            if otp is not None:
                otp = otp.model_copy(update={"is_used": False})
            await self._save(
                self._evolve(
                    claimed,
                    status=rollback_status.value,
                    payment=restored_payment,
                    otp=otp,
                ),
                claimed.version,
            )
            if release_on_failure and amount > 0:
                await self.ledger.unfreeze(appointment.patient_id, amount)
            logger.error(
                f"Settlement of {self.modality} appointment {appointment.id} failed; "
                f"restored to {rollback_status.value}"
            )
            raise SettlementError(
                "Patient wallet could not cover the payment; appointment restored",
                appointment_id=appointment.id,
                status=rollback_status.value,
            )

        await self.ledger.credit(appointment.doctor_id, breakdown.doctor_earning, earning=True)
        logger.info(
            f"Settled {self.modality} appointment {appointment.id}: charged {amount}, "
            f"doctor earned {breakdown.doctor_earning}"
        )
        return claimed

    async def _provision_room(self, appointment_id: str) -> str:
        """Create the appointment's video room; without a provisioner only the name is recorded."""
        room_name = self.policy.room_name(appointment_id)
        if self.rooms is None:
            return room_name
        return await self.rooms.create_room(room_name)

    # ========== Notifications ==========

    async def _notify(self, kind: str, appointment: Appointment) -> None:
        """Send a best-effort event; failures are logged, never raised."""
        if self.notifier is None:
            return
        event = AppointmentEvent(
            kind=kind,
            appointment_id=appointment.id,
            modality=appointment.modality,
            status=appointment.status,
            patient_id=appointment.patient_id,
            doctor_id=appointment.doctor_id,
        )
        try:
            await self.notifier.notify(event)
        except Exception as e:
            logger.error(
                f"Notification '{kind}' for appointment {appointment.id} failed: {e}",
                exc_info=True,
            )

    # ========== Sweep ==========

    async def sweep(self, now: Optional[datetime] = None) -> SweepCounts:
        """Move lapsed appointments to their terminal status."""
        raise NotImplementedError

    async def _sweep_each(
        self,
        appointments: Iterable[Appointment],
        apply: Callable[[Appointment], Any],
    ) -> List[str]:
        """
        Apply a sweep transition to each appointment.

        Appointments that another writer moved first are skipped.

        Returns:
            The resulting status of every appointment that was transitioned
        """
        outcomes = []
        for appointment in appointments:
            try:
                swept = await apply(appointment)
            except (ConcurrentModificationError, InvalidStatusError):
                logger.info(
                    f"Skipped {self.modality} appointment {appointment.id}: changed during sweep"
                )
                continue
            outcomes.append(swept.status)
        return outcomes

    def _tally(self, outcomes: Iterable[str]) -> SweepCounts:
        counts = SweepCounts()
        for status in outcomes:
            if status == S.EXPIRED.value:
                counts.expired += 1
            elif status == S.COMPLETED.value:
                counts.completed += 1
            elif status == S.UNATTENDED.value:
                counts.unattended += 1
        return counts

"""
Custom exception classes for better error handling.
Provides specific error types instead of generic exceptions.

Every appointment-level error carries a machine-readable reason code so
the engine can turn it into a structured result for the caller.
"""

from decimal import Decimal
from typing import Optional

from models.results import ReasonCode


class DatabaseError(Exception):
    """Base exception for database operations."""

    pass


class AppointmentError(Exception):
    """Base exception for business-rule failures in appointment transitions."""

    reason: ReasonCode = ReasonCode.INTERNAL_ERROR

    def __init__(self, message: str, **data):
        super().__init__(message)
        self.message = message
        self.data = data


class ValidationError(AppointmentError):
    """Raised when input validation fails."""

    reason = ReasonCode.VALIDATION_ERROR


class NotFoundError(AppointmentError):
    """Raised when a party, doctor, appointment or plan is absent."""

    reason = ReasonCode.NOT_FOUND


class InvalidStatusError(AppointmentError):
    """Raised when a transition is attempted from the wrong status."""

    reason = ReasonCode.INVALID_STATUS


class SlotUnavailableError(AppointmentError):
    """Raised when attempting to book an overlapping slot."""

    reason = ReasonCode.SLOT_UNAVAILABLE


class InsufficientFundsError(AppointmentError):
    """Raised when an available balance or frozen amount check fails."""

    reason = ReasonCode.INSUFFICIENT_FUNDS

    def __init__(
        self,
        message: str,
        required: Decimal = Decimal("0"),
        available: Decimal = Decimal("0"),
    ):
        shortfall = max(Decimal("0"), required - available)
        super().__init__(
            message,
            required=str(required),
            available=str(available),
            shortfall=str(shortfall),
        )
        self.required = required
        self.available = available
        self.shortfall = shortfall


class NoActiveSubscriptionError(AppointmentError):
    """Raised when settlement needs a subscription the doctor does not have."""

    reason = ReasonCode.NO_ACTIVE_SUBSCRIPTION


class OtpError(AppointmentError):
    """Base exception for OTP validation failures."""

    reason = ReasonCode.OTP_INVALID


class OtpMissingError(OtpError):
    """Raised when no OTP was issued for the appointment."""

    reason = ReasonCode.OTP_MISSING


class OtpAlreadyUsedError(OtpError):
    """Raised when the OTP was already consumed."""

    reason = ReasonCode.OTP_ALREADY_USED


class OtpLockedError(OtpError):
    """Raised when the maximum number of attempts has been reached."""

    reason = ReasonCode.OTP_LOCKED


class OtpExpiredError(OtpError):
    """Raised when the OTP is past its expiry."""

    reason = ReasonCode.OTP_EXPIRED


class OtpMismatchError(OtpError):
    """Raised when the supplied code does not match."""

    reason = ReasonCode.OTP_INVALID

    def __init__(self, message: str, remaining_attempts: int):
        super().__init__(message, remaining_attempts=remaining_attempts)
        self.remaining_attempts = remaining_attempts


class SettlementError(AppointmentError):
    """Raised when the final debit fails after the appointment was claimed."""

    reason = ReasonCode.SETTLEMENT_FAILED


class RoomProvisioningError(AppointmentError):
    """Raised when a video room cannot be created."""

    reason = ReasonCode.ROOM_PROVISIONING_FAILED


class ConcurrentModificationError(AppointmentError):
    """Raised when a compare-and-set update keeps losing to other writers."""

    reason = ReasonCode.CONCURRENT_MODIFICATION

    def __init__(self, message: str, entity_id: Optional[str] = None):
        super().__init__(message, entity_id=entity_id)


class PaymentError(Exception):
    """Base exception for payment operations."""

    pass


class PaymentIntentError(PaymentError):
    """Raised when payment intent creation/retrieval fails."""

    pass


class WebhookVerificationError(Exception):
    """Raised when webhook signature verification fails."""

    pass


class WebhookPayloadError(Exception):
    """Raised when a webhook payload is malformed."""

    pass


class NotificationError(Exception):
    """Raised when a notification cannot be delivered."""

    pass

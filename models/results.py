"""Structured results returned by engine operations and the expiry sweep."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from models.appointment import Appointment


class ReasonCode(str, Enum):
    """Machine-readable outcome codes."""

    OK = "ok"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    INVALID_STATUS = "invalid_status"
    SLOT_UNAVAILABLE = "slot_unavailable"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
    OTP_MISSING = "otp_missing"
    OTP_ALREADY_USED = "otp_already_used"
    OTP_LOCKED = "otp_locked"
    OTP_EXPIRED = "otp_expired"
    OTP_INVALID = "otp_invalid"
    SETTLEMENT_FAILED = "settlement_failed"
    ROOM_PROVISIONING_FAILED = "room_provisioning_failed"
    CONCURRENT_MODIFICATION = "concurrent_modification"
    INTERNAL_ERROR = "internal_error"


class TransitionResult(BaseModel):
    """Outcome of a booking or status transition."""

    success: bool
    message: str
    reason: ReasonCode = ReasonCode.OK
    appointment: Optional[Appointment] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        use_enum_values = True

    @classmethod
    def ok(
        cls,
        message: str,
        appointment: Optional[Appointment] = None,
        **data: Any,
    ) -> "TransitionResult":
        return cls(success=True, message=message, appointment=appointment, data=data)

    @classmethod
    def fail(
        cls,
        message: str,
        reason: ReasonCode,
        appointment: Optional[Appointment] = None,
        **data: Any,
    ) -> "TransitionResult":
        return cls(
            success=False,
            message=message,
            reason=reason,
            appointment=appointment,
            data=data,
        )


class SweepCounts(BaseModel):
    """Transitions applied to one modality in a sweep run."""

    expired: int = 0
    completed: int = 0
    unattended: int = 0

    @property
    def total(self) -> int:
        return self.expired + self.completed + self.unattended


class SweepReport(BaseModel):
    """Aggregate result of one expiry sweep run."""

    modalities: Dict[str, SweepCounts] = Field(default_factory=dict)
    doctors_deactivated: int = 0
    failed: List[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def total_transitions(self) -> int:
        return sum(counts.total for counts in self.modalities.values())

"""Appointment models shared by the four consultation modalities."""

from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from utils.constants import ALLOWED_SLOT_DURATIONS, ZERO
from utils.datetime_utils import ensure_aware


class Modality(str, Enum):
    """Appointment modality."""

    ONLINE = "online"
    CLINIC = "clinic"
    HOME_VISIT = "home_visit"
    EMERGENCY = "emergency"


class AppointmentStatus(str, Enum):
    """Union of every modality's statuses."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DOCTOR_ACCEPTED = "doctor_accepted"
    DOCTOR_REJECTED = "doctor_rejected"
    PATIENT_CONFIRMED = "patient_confirmed"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    UNATTENDED = "unattended"


class PaymentStatus(str, Enum):
    """Payment progress for an appointment."""

    PENDING = "pending"
    FROZEN = "frozen"
    COMPLETED = "completed"
    FAILED = "failed"


S = AppointmentStatus


def status_set(*statuses: AppointmentStatus) -> FrozenSet[str]:
    """Build a set of raw status values, as stored on models."""
    return frozenset(status.value for status in statuses)


MODALITY_STATUSES: Dict[str, FrozenSet[str]] = {
    Modality.ONLINE.value: status_set(
        S.PENDING, S.ACCEPTED, S.REJECTED, S.COMPLETED, S.EXPIRED
    ),
    Modality.CLINIC.value: status_set(
        S.PENDING, S.ACCEPTED, S.REJECTED, S.COMPLETED, S.EXPIRED, S.UNATTENDED
    ),
    Modality.HOME_VISIT.value: status_set(
        S.PENDING,
        S.DOCTOR_ACCEPTED,
        S.DOCTOR_REJECTED,
        S.PATIENT_CONFIRMED,
        S.COMPLETED,
        S.CANCELLED,
        S.EXPIRED,
        S.UNATTENDED,
    ),
    Modality.EMERGENCY.value: status_set(
        S.PENDING, S.IN_PROGRESS, S.COMPLETED, S.CANCELLED, S.EXPIRED
    ),
}

TERMINAL_STATUSES: FrozenSet[str] = status_set(
    S.REJECTED,
    S.DOCTOR_REJECTED,
    S.COMPLETED,
    S.CANCELLED,
    S.EXPIRED,
    S.UNATTENDED,
)

# Discriminator values used by prescriptions and ratings
APPOINTMENT_TYPE_REFS: Dict[str, str] = {
    Modality.ONLINE.value: "OnlineAppointment",
    Modality.CLINIC.value: "ClinicAppointment",
    Modality.HOME_VISIT.value: "HomeVisitAppointment",
    Modality.EMERGENCY.value: "EmergencyAppointment",
}


class Slot(BaseModel):
    """Scheduled time window."""

    day: date
    duration: int = Field(..., description="Slot length in minutes")
    start: datetime
    end: datetime

    @field_validator("duration")
    @classmethod
    def _check_duration(cls, value: int) -> int:
        if value not in ALLOWED_SLOT_DURATIONS:
            raise ValueError(
                f"Slot duration must be one of {ALLOWED_SLOT_DURATIONS}, got {value}"
            )
        return value

    @field_validator("start", "end")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # Times without an offset are read as UTC, as the store does
        return ensure_aware(value)

    @model_validator(mode="after")
    def _check_window(self) -> "Slot":
        if self.end <= self.start:
            raise ValueError("Slot end time must be after start time")
        if self.end - self.start != timedelta(minutes=self.duration):
            raise ValueError(
                f"Slot window {self.end - self.start} does not match duration "
                f"of {self.duration} minutes"
            )
        if self.day != self.start.date():
            raise ValueError(
                f"Slot day {self.day} does not match start date {self.start.date()}"
            )
        return self


class PaymentDetails(BaseModel):
    """Ledger copy of the money attached to an appointment."""

    amount: Decimal = Field(default=ZERO, ge=0)
    patient_wallet_frozen: Decimal = Field(default=ZERO, ge=0)
    patient_wallet_deducted: Decimal = Field(default=ZERO, ge=0)
    payment_status: PaymentStatus = PaymentStatus.PENDING
    doctor_platform_fee: Optional[Decimal] = None
    doctor_ops_expense: Optional[Decimal] = None
    doctor_earning: Optional[Decimal] = None

    class Config:
        use_enum_values = True


class OtpRecord(BaseModel):
    """One-time proof-of-visit code."""

    code: str
    generated_at: datetime
    expires_at: Optional[datetime] = None
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, gt=0)
    is_used: bool = False

    @property
    def remaining_attempts(self) -> int:
        return max(0, self.max_attempts - self.attempts)


class HomeVisitPricing(BaseModel):
    """Home visit price, completed in two steps."""

    fixed_cost: Decimal = Field(default=ZERO, ge=0)
    travel_cost: Decimal = Field(default=ZERO, ge=0)
    total_cost: Decimal = Field(default=ZERO, ge=0)


class EmergencyDetails(BaseModel):
    """Patient-supplied context for an emergency call."""

    title: str
    description: Optional[str] = None
    contact_number: Optional[str] = None


class Appointment(BaseModel):
    """Appointment in any modality."""

    id: Optional[str] = None
    modality: Modality
    doctor_id: Optional[str] = None  # unassigned while an emergency is pending
    patient_id: str
    clinic_id: Optional[str] = None
    slot: Optional[Slot] = None
    status: AppointmentStatus = AppointmentStatus.PENDING
    payment: PaymentDetails = Field(default_factory=PaymentDetails)
    otp: Optional[OtpRecord] = None
    pricing: Optional[HomeVisitPricing] = None
    emergency: Optional[EmergencyDetails] = None
    room_name: Optional[str] = None
    doctor_joined_at: Optional[datetime] = None
    prescription_id: Optional[str] = None
    rating_id: Optional[str] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        use_enum_values = True

    @model_validator(mode="after")
    def _check_status_for_modality(self) -> "Appointment":
        allowed = MODALITY_STATUSES[self.modality]
        if self.status not in allowed:
            raise ValueError(
                f"Status '{self.status}' is not valid for {self.modality} appointments"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def reference(self) -> Dict[str, Optional[str]]:
        """Identity and discriminator for prescriptions and ratings."""
        return {
            "appointmentId": self.id,
            "appointmentTypeRef": APPOINTMENT_TYPE_REFS[self.modality],
        }


class AppointmentEvent(BaseModel):
    """Best-effort notification payload."""

    kind: str
    appointment_id: str
    modality: Modality
    status: AppointmentStatus
    patient_id: str
    doctor_id: Optional[str] = None

    class Config:
        use_enum_values = True


class EarningsSummary(BaseModel):
    """Doctor earnings across modalities for a period."""

    doctor_id: str
    total: Decimal = ZERO
    by_modality: Dict[str, Decimal] = Field(default_factory=dict)
    counts: Dict[str, int] = Field(default_factory=dict)
    period: str = "all"

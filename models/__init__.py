"""Pydantic models for data validation and serialization."""

from .appointment import (
    Appointment,
    AppointmentEvent,
    AppointmentStatus,
    EarningsSummary,
    EmergencyDetails,
    HomeVisitPricing,
    Modality,
    OtpRecord,
    PaymentDetails,
    PaymentStatus,
    Slot,
)
from .doctor import (
    Clinic,
    DoctorProfile,
    DurationPrice,
    FeePair,
    HomeVisitConfig,
    SubscriptionPlan,
    SubscriptionRecord,
)
from .party import Actor, Party, Role, Wallet
from .results import ReasonCode, SweepCounts, SweepReport, TransitionResult

__all__ = [
    "Actor",
    "Appointment",
    "AppointmentEvent",
    "AppointmentStatus",
    "Clinic",
    "DoctorProfile",
    "DurationPrice",
    "EarningsSummary",
    "EmergencyDetails",
    "FeePair",
    "HomeVisitConfig",
    "HomeVisitPricing",
    "Modality",
    "OtpRecord",
    "Party",
    "PaymentDetails",
    "PaymentStatus",
    "ReasonCode",
    "Role",
    "Slot",
    "SubscriptionPlan",
    "SubscriptionRecord",
    "SweepCounts",
    "SweepReport",
    "TransitionResult",
    "Wallet",
]

"""Appointment lifecycle and escrow settlement engine."""

from .base import AppointmentEngine
from .clinic import ClinicAppointments
from .earnings import summarize_doctor_earnings
from .emergency import EmergencyAppointments
from .fees import FeeBreakdown, FeeCalculator, calculate_doctor_earning, select_active_subscription
from .home_visit import HomeVisitAppointments
from .online import OnlineAppointments
from .otp import OtpCheck, OtpIssuer
from .policies import POLICIES, ModalityPolicy
from .presence import DoctorPresence
from .registry import Engines, build_configured_engines, build_engines
from .slots import SlotAvailabilityChecker, overlaps

__all__ = [
    "AppointmentEngine",
    "ClinicAppointments",
    "DoctorPresence",
    "EmergencyAppointments",
    "Engines",
    "FeeBreakdown",
    "FeeCalculator",
    "HomeVisitAppointments",
    "ModalityPolicy",
    "OnlineAppointments",
    "OtpCheck",
    "OtpIssuer",
    "POLICIES",
    "SlotAvailabilityChecker",
    "build_configured_engines",
    "build_engines",
    "calculate_doctor_earning",
    "overlaps",
    "select_active_subscription",
    "summarize_doctor_earnings",
]

"""Per-modality descriptors consumed by the shared appointment engine."""

from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from config import settings
from models.appointment import MODALITY_STATUSES, Modality, S, status_set


@dataclass(frozen=True)
class ModalityPolicy:
    """
    What distinguishes one modality's state machine from another.

    Attributes:
        modality: Modality tag
        live_statuses: Statuses that hold a slot and block double booking
        requires_slot: Whether bookings carry a scheduled window
        uses_clinic_resource: Whether slots are scoped to a clinic
        room_prefix: Prefix for video room names, None when no room is used
    """

    modality: str
    live_statuses: FrozenSet[str]
    requires_slot: bool = True
    uses_clinic_resource: bool = False
    room_prefix: Optional[str] = None

    @property
    def statuses(self) -> FrozenSet[str]:
        return MODALITY_STATUSES[self.modality]

    @property
    def otp_ttl_hours(self) -> Optional[int]:
        return settings.otp_ttl_hours(self.modality)

    def room_name(self, appointment_id: str) -> str:
        return f"{self.room_prefix}_{appointment_id}"


ONLINE_POLICY = ModalityPolicy(
    modality=Modality.ONLINE.value,
    live_statuses=status_set(S.PENDING, S.ACCEPTED),
    room_prefix="online",
)

CLINIC_POLICY = ModalityPolicy(
    modality=Modality.CLINIC.value,
    live_statuses=status_set(S.PENDING, S.ACCEPTED),
    uses_clinic_resource=True,
)

HOME_VISIT_POLICY = ModalityPolicy(
    modality=Modality.HOME_VISIT.value,
    live_statuses=status_set(S.PENDING, S.DOCTOR_ACCEPTED, S.PATIENT_CONFIRMED),
)

EMERGENCY_POLICY = ModalityPolicy(
    modality=Modality.EMERGENCY.value,
    live_statuses=status_set(S.PENDING, S.IN_PROGRESS),
    requires_slot=False,
    room_prefix="emergency",
)

POLICIES: Dict[str, ModalityPolicy] = {
    policy.modality: policy
    for policy in (ONLINE_POLICY, CLINIC_POLICY, HOME_VISIT_POLICY, EMERGENCY_POLICY)
}

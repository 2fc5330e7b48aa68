"""
Telegram notifications for appointment events.

Delivery is best effort: a missing chat id or a Telegram failure is
logged and never reaches the transition that emitted the event.
"""

from typing import Dict, Optional

from aiogram import Bot

from db.store import AppointmentStore
from models.appointment import AppointmentEvent, Modality
from utils.exceptions import NotificationError
from utils.logging_config import setup_logging

logger = setup_logging(name=__name__, log_file="notifications.log")

MODALITY_LABELS: Dict[str, str] = {
    Modality.ONLINE.value: "Online consultation",
    Modality.CLINIC.value: "Clinic appointment",
    Modality.HOME_VISIT.value: "Home visit",
    Modality.EMERGENCY.value: "Emergency call",
}

EVENT_LABELS: Dict[str, str] = {
    "booked": "booked",
    "accepted": "accepted by the doctor",
    "rejected": "declined by the doctor",
    "confirmed": "confirmed",
    "completed": "completed",
    "cancelled": "cancelled",
}


def format_event(event: AppointmentEvent) -> str:
    """Render an event as a short chat message."""
    label = MODALITY_LABELS.get(event.modality, "Appointment")
    action = EVENT_LABELS.get(event.kind, event.kind)
    return (
        f"{label} {action}.\n\n"
        f"Appointment: {event.appointment_id}\n"
        f"Status: {event.status}"
    )


class TelegramNotifier:
    """Send appointment events to the patient and doctor over Telegram."""

    def __init__(self, bot: Bot, store: AppointmentStore):
        self.bot = bot
        self.store = store

    async def _chat_id(self, party_id: Optional[str]) -> Optional[int]:
        if not party_id:
            return None
        party = await self.store.get_party(party_id)
        return party.telegram_id if party else None

    async def notify(self, event: AppointmentEvent) -> int:
        """
        Send an event to every participant with a Telegram chat.

        Every participant is attempted even when an earlier send fails.

        Returns:
            Number of messages delivered

        Raises:
            NotificationError: If any send failed
        """
        text = format_event(event)
        delivered = 0
        failed = []
        for party_id in (event.patient_id, event.doctor_id):
            try:
                chat_id = await self._chat_id(party_id)
                if chat_id is None:
                    continue
                await self.bot.send_message(chat_id, text)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Failed to notify party {party_id} about {event.appointment_id}: {e}",
                    exc_info=True,
                )
                failed.append(party_id)
        if failed:
            raise NotificationError(
                f"Could not notify {len(failed)} party(ies) about {event.appointment_id}"
            )
        return delivered

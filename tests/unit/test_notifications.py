"""
Unit tests for Telegram appointment notifications.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from models.appointment import AppointmentEvent
from notifications import TelegramNotifier, format_event
from utils.exceptions import NotificationError


@pytest.fixture
def mock_bot():
    """Mock Telegram bot."""
    bot = MagicMock()
    bot.send_message = AsyncMock()
    return bot


def _event(patient_id, doctor_id=None, kind="accepted"):
    return AppointmentEvent(
        kind=kind,
        appointment_id="appt_123",
        modality="clinic",
        status="accepted",
        patient_id=patient_id,
        doctor_id=doctor_id,
    )


def test_format_event():
    """Test the message names the modality, action and status."""
    text = format_event(_event("p1"))

    assert text.startswith("Clinic appointment accepted by the doctor.")
    assert "Appointment: appt_123" in text
    assert "Status: accepted" in text


class TestTelegramNotifier:
    """Test delivery to participants."""

    @pytest.mark.asyncio
    async def test_notifies_both_parties(self, store, mock_bot, make_patient, make_doctor):
        """Test both participants with a chat receive the event."""
        patient = await make_patient(telegram_id=111)
        doctor = await make_doctor(telegram_id=222)

        delivered = await TelegramNotifier(mock_bot, store).notify(_event(patient.id, doctor.id))

        assert delivered == 2
        chat_ids = [call.args[0] for call in mock_bot.send_message.await_args_list]
        assert chat_ids == [111, 222]

    @pytest.mark.asyncio
    async def test_skips_parties_without_chat(self, store, mock_bot, make_patient):
        """Test participants without a Telegram chat are skipped."""
        patient = await make_patient()

        delivered = await TelegramNotifier(mock_bot, store).notify(_event(patient.id))

        assert delivered == 0
        mock_bot.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_still_attempts_others(
        self, store, mock_bot, make_patient, make_doctor
    ):
        """Test a failed send is reported after every participant was tried."""
        patient = await make_patient(telegram_id=111)
        doctor = await make_doctor(telegram_id=222)
        mock_bot.send_message.side_effect = [Exception("Forbidden: bot was blocked"), None]

        with pytest.raises(NotificationError):
            await TelegramNotifier(mock_bot, store).notify(_event(patient.id, doctor.id))

        assert mock_bot.send_message.await_count == 2

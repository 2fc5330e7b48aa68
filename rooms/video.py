"""
Twilio Video room provisioning over the REST API.

Rooms are keyed by a unique name derived from the appointment id, so a
retried request that finds the name already taken reuses that room.
"""

import asyncio
from typing import Optional

import httpx

from config import settings
from utils.exceptions import RoomProvisioningError
from utils.logging_config import setup_logging

logger = setup_logging(name=__name__, log_file="rooms.log")

TWILIO_ROOMS_URL = "https://video.twilio.com/v1/Rooms"

# Retry configuration
_MAX_RETRIES = 3
_RETRY_DELAY = 1.0  # seconds
_RETRY_BACKOFF = 2.0  # exponential backoff multiplier

# Twilio error code for "Room exists"
_ROOM_EXISTS_CODE = 53113


class TwilioVideoRooms:
    """Create two-party video rooms for online and emergency consultations."""

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        room_type: Optional[str] = None,
        max_participants: int = 2,
        timeout: float = 10.0,
    ):
        self.account_sid = account_sid or settings.twilio_account_sid
        self.auth_token = auth_token or settings.twilio_auth_token
        self.room_type = room_type or settings.twilio_room_type
        self.max_participants = max_participants
        self.timeout = timeout

    async def create_room(self, unique_name: str) -> str:
        """
        Create a room and return its unique name.

        Client errors are not retried; server errors and network failures
        are retried with exponential backoff.

        Raises:
            RoomProvisioningError: If the room cannot be created
        """
        if not self.account_sid or not self.auth_token:
            raise RoomProvisioningError("Twilio credentials are not configured")

        data = {
            "UniqueName": unique_name,
            "Type": self.room_type,
            "MaxParticipants": str(self.max_participants),
        }
        delay = _RETRY_DELAY

        for attempt in range(_MAX_RETRIES):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        TWILIO_ROOMS_URL,
                        data=data,
                        auth=(self.account_sid, self.auth_token),
                    )

                if response.status_code in (200, 201):
                    room_name = response.json().get("unique_name", unique_name)
                    logger.info(f"Created video room {room_name}")
                    return room_name

                if response.status_code == 400 and self._room_exists(response):
                    logger.info(f"Video room {unique_name} already exists; reusing it")
                    return unique_name

                if 400 <= response.status_code < 500:
                    logger.error(
                        f"Twilio rejected room {unique_name}: "
                        f"{response.status_code} {response.text}"
                    )
                    raise RoomProvisioningError(
                        f"Video room could not be created ({response.status_code})",
                        room_name=unique_name,
                    )

                error = f"HTTP {response.status_code}"
            except httpx.HTTPError as e:
                error = str(e)

            if attempt < _MAX_RETRIES - 1:
                logger.warning(
                    f"Twilio error (attempt {attempt + 1}/{_MAX_RETRIES}) creating room "
                    f"{unique_name}: {error}. Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                delay *= _RETRY_BACKOFF
            else:
                logger.error(
                    f"Failed to create room {unique_name} after {_MAX_RETRIES} attempts: {error}"
                )

        raise RoomProvisioningError(
            f"Video room could not be created after {_MAX_RETRIES} attempts",
            room_name=unique_name,
        )

    @staticmethod
    def _room_exists(response: httpx.Response) -> bool:
        try:
            return response.json().get("code") == _ROOM_EXISTS_CODE
        except ValueError:
            return False

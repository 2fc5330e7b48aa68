"""
Doctor availability toggle.

Going active stores an ``active_until`` deadline on the doctor record;
the expiry sweep clears flags whose deadline has passed, so the toggle
survives restarts and works across instances.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from config import settings
from db.store import AppointmentStore
from models.party import Actor
from models.results import TransitionResult
from utils.datetime_utils import utc_now
from utils.exceptions import AppointmentError, NotFoundError
from utils.logging_config import setup_logging

logger = setup_logging(name=__name__, log_file="engine.log")


class DoctorPresence:
    """Set and expire the doctor's "available now" flag."""

    def __init__(
        self,
        store: AppointmentStore,
        active_minutes: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.active_minutes = active_minutes or settings.doctor_active_minutes
        self.clock = clock

    async def set_active(self, actor: Actor, is_active: bool) -> TransitionResult:
        """Mark the calling doctor active for the configured window, or inactive now."""
        try:
            if not actor.is_doctor:
                raise NotFoundError("Doctor not found")

            active_until = None
            if is_active:
                active_until = self.clock() + timedelta(minutes=self.active_minutes)

            doctor = await self.store.set_doctor_presence(
                actor.party_id, is_active, active_until
            )
            if doctor is None:
                raise NotFoundError("Doctor not found", doctor_id=actor.party_id)
        except AppointmentError as e:
            logger.warning(f"Presence update refused: {e.message}")
            return TransitionResult.fail(e.message, e.reason, **e.data)

        logger.info(
            f"Doctor {actor.party_id} is now {'active' if is_active else 'inactive'}"
        )
        return TransitionResult.ok(
            f"Doctor status updated to {'active' if is_active else 'inactive'}",
            active_until=active_until.isoformat() if active_until else None,
        )

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Clear active flags whose window has lapsed.

        Returns:
            Number of doctors deactivated
        """
        now = now or self.clock()
        deactivated = 0
        for doctor in await self.store.list_lapsed_active_doctors(now):
            if await self.store.deactivate_doctor_if_lapsed(doctor.id, now):
                deactivated += 1
        if deactivated:
            logger.info(f"Deactivated {deactivated} doctors whose active window lapsed")
        return deactivated

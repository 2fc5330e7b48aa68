"""Wiring of the four modality engines around one store and one ledger."""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from aiogram import Bot

from config import settings
from db import get_db_client
from db.store import AppointmentStore
from engine.base import AppointmentEngine
from engine.clinic import ClinicAppointments
from engine.earnings import summarize_doctor_earnings
from engine.emergency import EmergencyAppointments
from engine.fees import FeeCalculator
from engine.home_visit import HomeVisitAppointments
from engine.online import OnlineAppointments
from engine.otp import OtpIssuer
from engine.presence import DoctorPresence
from engine.slots import SlotAvailabilityChecker
from ledger.wallet import WalletLedger
from models.appointment import EarningsSummary
from notifications import TelegramNotifier
from rooms import TwilioVideoRooms
from utils.datetime_utils import utc_now


@dataclass
class Engines:
    """Every state machine sharing the same store, ledger and collaborators."""

    store: AppointmentStore
    ledger: WalletLedger
    online: OnlineAppointments
    clinic: ClinicAppointments
    home_visit: HomeVisitAppointments
    emergency: EmergencyAppointments
    presence: DoctorPresence

    def by_modality(self) -> Dict[str, AppointmentEngine]:
        return {
            engine.modality: engine
            for engine in (self.online, self.clinic, self.home_visit, self.emergency)
        }

    async def summarize_doctor_earnings(
        self, doctor_id: str, year: Optional[int] = None, month: Optional[int] = None
    ) -> EarningsSummary:
        return await summarize_doctor_earnings(self.store, doctor_id, year, month)


def build_engines(
    store: AppointmentStore,
    ledger: Optional[WalletLedger] = None,
    notifier=None,
    rooms=None,
    clock: Callable[[], datetime] = utc_now,
) -> Engines:
    """
    Build all engines on a shared store.

    Args:
        store: Persistence backend
        ledger: Wallet ledger; one is created on the store if omitted
        notifier: Optional best-effort notifier with ``async notify(event)``
        rooms: Optional video room provisioner with ``async create_room(name)``
        clock: Source of the current time
    """
    ledger = ledger or WalletLedger(store)
    shared = dict(
        otp_issuer=OtpIssuer(),
        fees=FeeCalculator(store),
        slots=SlotAvailabilityChecker(store),
        notifier=notifier,
        rooms=rooms,
        clock=clock,
    )
    return Engines(
        store=store,
        ledger=ledger,
        online=OnlineAppointments(store, ledger, **shared),
        clinic=ClinicAppointments(store, ledger, **shared),
        home_visit=HomeVisitAppointments(store, ledger, **shared),
        emergency=EmergencyAppointments(store, ledger, **shared),
        presence=DoctorPresence(store, clock=clock),
    )


def build_configured_engines(store: Optional[AppointmentStore] = None) -> Engines:
    """
    Build engines on the configured store for a running service.

    Telegram notifications are enabled when BOT_TOKEN is set and video rooms
    when the Twilio credentials are set.
    """
    store = store or get_db_client()

    notifier = None
    if settings.bot_token:
        notifier = TelegramNotifier(Bot(token=settings.bot_token), store)

    rooms = None
    if settings.twilio_account_sid and settings.twilio_auth_token:
        rooms = TwilioVideoRooms()

    return build_engines(store, notifier=notifier, rooms=rooms)

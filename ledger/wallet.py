"""
Wallet ledger operations.

Every mutation of a party's ``balance``/``frozen`` goes through this
module. Operations on one party are serialized by an in-process lock and,
across processes, by a compare-and-set on the party's version.
"""

import asyncio
import weakref
from decimal import Decimal
from typing import Callable, Optional

from config import settings
from db.store import AppointmentStore
from models.party import Party, Wallet, to_money
from utils.constants import ZERO
from utils.exceptions import ConcurrentModificationError, NotFoundError
from utils.logging_config import setup_logging

logger = setup_logging(name=__name__, log_file="ledger.log")

WalletChange = Callable[[Wallet], Optional[Wallet]]


class WalletLedger:
    """
    Freeze, unfreeze, deduct and credit party wallets.

    Business failures (insufficient funds, negative amounts) return False
    so callers can abort their transition. Only a missing party or a
    compare-and-set that keeps losing raises.
    """

    def __init__(self, store: AppointmentStore, max_retries: Optional[int] = None):
        self.store = store
        self.max_retries = max_retries or settings.wallet_max_retries
        # Locks live only while some operation on the party holds or awaits them
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, party_id: str) -> asyncio.Lock:
        lock = self._locks.get(party_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[party_id] = lock
        return lock

    async def _load(self, party_id: str) -> Party:
        party = await self.store.get_party(party_id)
        if party is None:
            raise NotFoundError("Party not found", party_id=party_id)
        return party

    async def _apply(
        self,
        party_id: str,
        operation: str,
        change: WalletChange,
        earning: Decimal = ZERO,
    ) -> Optional[Party]:
        """
        Apply a wallet change with compare-and-set retries.

        Returns:
            Updated party, or None if ``change`` refused the current wallet

        Raises:
            NotFoundError: If the party does not exist
            ConcurrentModificationError: If every attempt lost the race
        """
        lock = self._lock_for(party_id)
        async with lock:
            for attempt in range(1, self.max_retries + 1):
                party = await self._load(party_id)
                wallet = change(party.wallet)
                if wallet is None:
                    return None

                updated = await self.store.update_party_wallet(
                    party_id,
                    party.version,
                    wallet,
                    to_money(party.total_earnings + earning),
                )
                if updated is not None:
                    return updated

                logger.warning(
                    f"Wallet {operation} for party {party_id} lost a concurrent "
                    f"update (attempt {attempt}/{self.max_retries})"
                )

        raise ConcurrentModificationError(
            f"Wallet {operation} failed after {self.max_retries} attempts",
            entity_id=party_id,
        )

    def _valid_amount(self, party_id: str, operation: str, amount: Decimal) -> bool:
        if amount < 0:
            logger.warning(
                f"Rejected {operation} of negative amount {amount} for party {party_id}"
            )
            return False
        return True

    async def available_balance(self, party_id: str) -> Decimal:
        """Get ``balance - frozen`` for a party."""
        party = await self._load(party_id)
        return party.wallet.available

    async def get_wallet(self, party_id: str) -> Wallet:
        party = await self._load(party_id)
        return party.wallet

    async def freeze(self, party_id: str, amount: Decimal) -> bool:
        """
        Reserve ``amount`` of the party's available balance.

        Returns:
            False without mutation if the available balance is insufficient
        """
        amount = to_money(amount)
        if not self._valid_amount(party_id, "freeze", amount):
            return False

        updated = await self._apply(party_id, "freeze", lambda w: w.freeze(amount))
        if updated is None:
            logger.info(f"Freeze of {amount} refused for party {party_id}: insufficient funds")
            return False

        logger.info(f"Froze {amount} for party {party_id} (frozen={updated.wallet.frozen})")
        return True

    async def unfreeze(self, party_id: str, amount: Decimal) -> bool:
        """
        Release ``amount`` of the party's reservation.

        If less than ``amount`` is frozen the reservation is clamped to zero,
        the discrepancy is logged as an error and False is returned.
        """
        amount = to_money(amount)
        if not self._valid_amount(party_id, "unfreeze", amount):
            return False

        clamped = False

        def change(wallet: Wallet) -> Optional[Wallet]:
            nonlocal clamped
            released = wallet.unfreeze(amount)
            if released is not None:
                clamped = False
                return released
            clamped = True
            return Wallet(balance=wallet.balance, frozen=ZERO)

        updated = await self._apply(party_id, "unfreeze", change)
        if clamped:
            logger.error(
                f"Unfreeze of {amount} for party {party_id} exceeded the frozen "
                f"amount; frozen clamped to zero"
            )
            return False

        logger.info(f"Unfroze {amount} for party {party_id} (frozen={updated.wallet.frozen})")
        return True

    async def deduct_frozen(self, party_id: str, amount: Decimal) -> bool:
        """
        Convert a reservation into a debit: ``frozen -= amount; balance -= amount``.

        Returns:
            False without mutation if frozen or balance is below ``amount``
        """
        amount = to_money(amount)
        if not self._valid_amount(party_id, "deduct", amount):
            return False

        updated = await self._apply(
            party_id, "deduct", lambda w: w.deduct_frozen(amount)
        )
        if updated is None:
            logger.warning(f"Deduct of {amount} refused for party {party_id}")
            return False

        logger.info(f"Deducted {amount} from party {party_id} (balance={updated.wallet.balance})")
        return True

    async def debit(self, party_id: str, amount: Decimal) -> bool:
        """
        Charge the available balance directly, without a prior reservation.

        Returns:
            False without mutation if the available balance is insufficient
        """
        amount = to_money(amount)
        if not self._valid_amount(party_id, "debit", amount):
            return False

        updated = await self._apply(party_id, "debit", lambda w: w.debit(amount))
        if updated is None:
            logger.info(f"Debit of {amount} refused for party {party_id}: insufficient funds")
            return False

        logger.info(f"Debited {amount} from party {party_id} (balance={updated.wallet.balance})")
        return True

    async def credit(self, party_id: str, amount: Decimal, earning: bool = False) -> bool:
        """
        Add ``amount`` to the party's balance.

        Args:
            party_id: Party to credit
            amount: Non-negative amount
            earning: Also add the amount to the party's cumulative earnings
        """
        amount = to_money(amount)
        if not self._valid_amount(party_id, "credit", amount):
            return False

        updated = await self._apply(
            party_id,
            "credit",
            lambda w: w.credit(amount),
            earning=amount if earning else ZERO,
        )
        logger.info(f"Credited {amount} to party {party_id} (balance={updated.wallet.balance})")
        return True

    async def top_up(self, party_id: str, amount: Decimal) -> bool:
        """Credit funds that arrived through a verified payment gateway event."""
        if amount <= 0:
            logger.warning(f"Ignoring non-positive top-up {amount} for party {party_id}")
            return False
        return await self.credit(party_id, amount)

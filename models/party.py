"""Party models: patients and doctors with their embedded wallet."""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from utils.constants import MONEY_QUANT, ZERO


def to_money(amount: Decimal) -> Decimal:
    """Quantize an amount to two decimal places."""
    return Decimal(amount).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


class Role(str, Enum):
    """Party role."""

    PATIENT = "patient"
    DOCTOR = "doctor"


class Wallet(BaseModel):
    """
    Spendable balance plus the amount reserved for unsettled appointments.

    Operations are pure: each returns a new wallet, or None when its
    precondition fails. Persisting the result is the ledger's job.
    """

    balance: Decimal = Field(default=ZERO, ge=0)
    frozen: Decimal = Field(default=ZERO, ge=0)

    @property
    def available(self) -> Decimal:
        return self.balance - self.frozen

    def freeze(self, amount: Decimal) -> Optional["Wallet"]:
        if amount < 0 or self.available < amount:
            return None
        return Wallet(balance=self.balance, frozen=to_money(self.frozen + amount))

    def unfreeze(self, amount: Decimal) -> Optional["Wallet"]:
        if amount < 0 or self.frozen < amount:
            return None
        return Wallet(balance=self.balance, frozen=to_money(self.frozen - amount))

    def deduct_frozen(self, amount: Decimal) -> Optional["Wallet"]:
        if amount < 0 or self.frozen < amount or self.balance < amount:
            return None
        return Wallet(
            balance=to_money(self.balance - amount),
            frozen=to_money(self.frozen - amount),
        )

    def debit(self, amount: Decimal) -> Optional["Wallet"]:
        if amount < 0 or self.available < amount:
            return None
        return Wallet(balance=to_money(self.balance - amount), frozen=self.frozen)

    def credit(self, amount: Decimal) -> Optional["Wallet"]:
        if amount < 0:
            return None
        return Wallet(balance=to_money(self.balance + amount), frozen=self.frozen)


class Party(BaseModel):
    """A patient or doctor account owning a wallet."""

    id: Optional[str] = None
    role: Role
    full_name: str
    telegram_id: Optional[int] = Field(default=None, description="Telegram chat for notifications")
    phone: Optional[str] = None
    wallet: Wallet = Field(default_factory=Wallet)
    total_earnings: Decimal = Field(default=ZERO, ge=0)
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "role": "patient",
                "full_name": "Asha Rao",
                "telegram_id": 123456789,
                "phone": "+919812345678",
                "wallet": {"balance": "3000.00", "frozen": "0.00"},
            }
        }


class Actor(BaseModel):
    """Authenticated caller identity, verified upstream."""

    party_id: str
    role: Role

    class Config:
        use_enum_values = True

    @property
    def is_doctor(self) -> bool:
        return self.role == Role.DOCTOR

    @property
    def is_patient(self) -> bool:
        return self.role == Role.PATIENT

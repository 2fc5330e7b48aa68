"""Doctor practice profile and subscription plan models."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from models.appointment import Modality
from utils.constants import ZERO


class FeePair(BaseModel):
    """Platform fee (flat) and operational expense (percent of gross) for one modality."""

    platform_fee: Decimal = Field(default=ZERO, ge=0)
    ops_expense_percent: Decimal = Field(default=ZERO, ge=0, le=100)


class SubscriptionPlan(BaseModel):
    """Doctor subscription plan carrying one fee pair per modality."""

    id: Optional[str] = None
    name: str
    price: Decimal = Field(default=ZERO, ge=0)
    duration: str = "1 month"
    is_active: bool = True
    online: FeePair = Field(default_factory=FeePair)
    clinic: FeePair = Field(default_factory=FeePair)
    home_visit: FeePair = Field(default_factory=FeePair)
    emergency: FeePair = Field(default_factory=FeePair)
    created_at: Optional[datetime] = None

    def fees_for(self, modality: str) -> FeePair:
        """Get the fee pair that applies to a modality."""
        return getattr(self, Modality(modality).value)


class SubscriptionRecord(BaseModel):
    """A plan purchase in the doctor's subscription history."""

    plan_id: str
    start_date: datetime
    end_date: Optional[datetime] = None
    amount_paid: Optional[Decimal] = None


class DurationPrice(BaseModel):
    """Online consultation price for one slot length."""

    minutes: int = Field(..., gt=0)
    price: Decimal = Field(..., ge=0)


class Clinic(BaseModel):
    """Clinic embedded in a doctor profile."""

    id: str
    name: str
    consultation_fee: Decimal = Field(..., ge=0)
    city: Optional[str] = None
    is_active: bool = True


class HomeVisitConfig(BaseModel):
    """Home visit offering."""

    is_active: bool = False
    fixed_price: Decimal = Field(default=ZERO, ge=0)


class DoctorProfile(BaseModel):
    """Practice settings for a doctor party (same id as the party)."""

    id: str
    specialization: List[str] = Field(default_factory=list)
    online_prices: List[DurationPrice] = Field(default_factory=list)
    clinics: List[Clinic] = Field(default_factory=list)
    home_visit: HomeVisitConfig = Field(default_factory=HomeVisitConfig)
    emergency_enabled: bool = True
    subscriptions: List[SubscriptionRecord] = Field(default_factory=list)
    is_active: bool = False
    active_until: Optional[datetime] = None
    version: int = 0
    updated_at: Optional[datetime] = None

    def online_price(self, minutes: int) -> Optional[Decimal]:
        for entry in self.online_prices:
            if entry.minutes == minutes:
                return entry.price
        return None

    def clinic(self, clinic_id: str) -> Optional[Clinic]:
        for clinic in self.clinics:
            if clinic.id == clinic_id:
                return clinic
        return None

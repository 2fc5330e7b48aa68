"""
Application-wide constants.
Centralizes magic numbers and configuration values.
"""

from decimal import Decimal

# Money
MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0")

# Slots
ALLOWED_SLOT_DURATIONS = (15, 30, 45, 60)  # minutes

# OTP
OTP_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
DEFAULT_OTP_LENGTH = 6

# Validation limits
MAX_TRAVEL_COST = Decimal("100000")
MAX_TOPUP_AMOUNT = Decimal("1000000")
MAX_TEXT_LENGTH = 1000

# Stripe amounts are in the smallest currency unit (paise for INR)
MINOR_UNITS_PER_MAJOR = 100

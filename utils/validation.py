"""
Input validation utilities for appointment and wallet inputs.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from utils.constants import DEFAULT_OTP_LENGTH


def validate_otp_format(otp: str, length: int = DEFAULT_OTP_LENGTH) -> bool:
    """
    Validate OTP format.

    Comparison is case-insensitive, so lowercase input is accepted here.

    Args:
        otp: OTP as typed by the doctor
        length: Expected code length

    Returns:
        True if valid format, False otherwise
    """
    if not otp or not isinstance(otp, str):
        return False

    pattern = rf"^[A-Z0-9]{{{length}}}$"
    return bool(re.match(pattern, otp.strip().upper()))


def parse_amount(value: Any) -> Optional[Decimal]:
    """
    Parse a monetary amount into a non-negative Decimal.

    Args:
        value: Number or numeric string

    Returns:
        Decimal amount, or None if the value is not a finite non-negative number
    """
    if value is None or isinstance(value, bool):
        return None

    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None

    if not amount.is_finite() or amount < 0:
        return None
    return amount


def validate_phone(phone: str) -> bool:
    """
    Validate phone number format.
    Accepts international format with optional + prefix.

    Args:
        phone: Phone number string

    Returns:
        True if valid format, False otherwise
    """
    if not phone or not isinstance(phone, str):
        return False

    # Remove spaces, dashes, parentheses
    cleaned = re.sub(r'[\s\-\(\)]', '', phone)

    pattern = r'^\+?[1-9]\d{6,14}$'
    return bool(re.match(pattern, cleaned))


def sanitize_text(text: str, max_length: Optional[int] = None) -> str:
    """
    Sanitize free text such as emergency descriptions.

    Args:
        text: Input text
        max_length: Optional maximum length

    Returns:
        Sanitized text
    """
    if not text:
        return ""

    # Remove control characters except newlines and tabs
    sanitized = re.sub(r'[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]', '', str(text))

    sanitized = sanitized.strip()

    if max_length and len(sanitized) > max_length:
        sanitized = sanitized[:max_length]

    return sanitized

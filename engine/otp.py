"""
One-time proof-of-visit codes.

Codes come from the ``secrets`` CSPRNG. Validation never mutates its
input; on a mismatch it hands back a copy with the attempt counted so the
caller can persist it before answering.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from config import settings
from models.appointment import OtpRecord
from utils.constants import OTP_ALPHABET
from utils.datetime_utils import ensure_aware
from utils.exceptions import (
    OtpAlreadyUsedError,
    OtpError,
    OtpExpiredError,
    OtpLockedError,
    OtpMismatchError,
    OtpMissingError,
)


@dataclass
class OtpCheck:
    """Outcome of an OTP validation."""

    ok: bool
    otp: Optional[OtpRecord]
    error: Optional[OtpError] = None

    @property
    def attempt_counted(self) -> bool:
        """True when ``otp`` carries a new failed attempt that must be saved."""
        return isinstance(self.error, OtpMismatchError)


class OtpIssuer:
    """Generate, issue and validate appointment OTPs."""

    def __init__(self, length: Optional[int] = None, max_attempts: Optional[int] = None):
        self.length = length or settings.otp_length
        self.max_attempts = max_attempts or settings.otp_max_attempts

    def generate(self) -> str:
        return "".join(secrets.choice(OTP_ALPHABET) for _ in range(self.length))

    def issue(self, modality: str, now: datetime) -> OtpRecord:
        """
        Build a fresh OTP for an appointment.

        Args:
            modality: Modality tag; selects the configured lifetime
            now: Issue time

        Returns:
            OtpRecord with zero attempts; ``expires_at`` is None when the
            modality's OTPs never expire
        """
        ttl_hours = settings.otp_ttl_hours(modality)
        expires_at = now + timedelta(hours=ttl_hours) if ttl_hours else None
        return OtpRecord(
            code=self.generate(),
            generated_at=now,
            expires_at=expires_at,
            attempts=0,
            max_attempts=self.max_attempts,
            is_used=False,
        )

    def validate(self, otp: Optional[OtpRecord], supplied: str, now: datetime) -> OtpCheck:
        """
        Check a supplied code.

        Order: exists, not used, attempts left, not expired, then a
        case-insensitive comparison. Marking the code used is the caller's
        job, as part of its completion update.
        """
        if otp is None:
            return OtpCheck(False, None, OtpMissingError("No OTP has been issued for this appointment"))

        if otp.is_used:
            return OtpCheck(False, otp, OtpAlreadyUsedError("OTP has already been used"))

        if otp.attempts >= otp.max_attempts:
            return OtpCheck(
                False,
                otp,
                OtpLockedError(
                    "Maximum OTP attempts exceeded",
                    max_attempts=otp.max_attempts,
                ),
            )

        if otp.expires_at is not None and ensure_aware(now) > ensure_aware(otp.expires_at):
            return OtpCheck(False, otp, OtpExpiredError("OTP has expired"))

        expected = otp.code.upper().encode()
        given = (supplied or "").strip().upper().encode()
        if not secrets.compare_digest(expected, given):
            counted = otp.model_copy(update={"attempts": otp.attempts + 1})
            return OtpCheck(
                False,
                counted,
                OtpMismatchError("Invalid OTP", remaining_attempts=counted.remaining_attempts),
            )

        return OtpCheck(True, otp)

    def reveal(self, otp: Optional[OtpRecord], now: datetime) -> Optional[OtpRecord]:
        """The OTP if it can still be used, otherwise None."""
        if otp is None or otp.is_used or otp.attempts >= otp.max_attempts:
            return None
        if otp.expires_at is not None and ensure_aware(now) > ensure_aware(otp.expires_at):
            return None
        return otp

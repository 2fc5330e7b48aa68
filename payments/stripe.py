"""
Stripe integration for wallet top-ups.

Patients add funds with a PaymentIntent; the ``payment_intent.succeeded``
webhook credits their wallet through the ledger exactly once per event.
"""

import asyncio
from decimal import Decimal
from typing import Optional

import stripe
from stripe import PaymentIntent
from stripe.error import StripeError

from config import settings
from db import get_db_client
from db.store import AppointmentStore
from ledger.wallet import WalletLedger
from utils.constants import MAX_TOPUP_AMOUNT, MINOR_UNITS_PER_MAJOR
from utils.exceptions import PaymentIntentError, WebhookPayloadError
from utils.logging_config import setup_logging
from utils.validation import parse_amount

logger = setup_logging(name=__name__, log_file="payments.log")

# Initialize Stripe
stripe.api_key = settings.stripe_secret_key

# Retry configuration
_MAX_RETRIES = 3
_RETRY_DELAY = 1.0  # seconds
_RETRY_BACKOFF = 2.0  # exponential backoff multiplier

TOPUP_PURPOSE = "wallet_topup"


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount (rupees) to Stripe's smallest unit (paise)."""
    return int((amount * MINOR_UNITS_PER_MAJOR).to_integral_value())


def from_minor_units(amount: int) -> Decimal:
    return Decimal(amount) / MINOR_UNITS_PER_MAJOR


async def create_topup_intent(
    party_id: str,
    amount,
    currency: Optional[str] = None,
) -> PaymentIntent:
    """
    Create a Stripe PaymentIntent that tops up a party's wallet.

    Uses async executor to avoid blocking the event loop.
    Includes retry logic for transient failures.

    Args:
        party_id: Party whose wallet receives the funds
        amount: Amount in major units (must be positive)
        currency: Currency code (default: settings.topup_currency)

    Returns:
        Stripe PaymentIntent object

    Raises:
        ValueError: If input validation fails
        PaymentIntentError: If the Stripe API call fails after retries
    """
    value = parse_amount(amount)
    if value is None or value <= 0:
        raise ValueError(f"Invalid amount: {amount} must be positive")
    if value > MAX_TOPUP_AMOUNT:
        raise ValueError(f"Invalid amount: {amount} exceeds maximum top-up {MAX_TOPUP_AMOUNT}")
    if not party_id:
        raise ValueError("Party ID is required")

    currency = currency or settings.topup_currency
    delay = _RETRY_DELAY

    for attempt in range(_MAX_RETRIES):
        try:
            # Run synchronous Stripe call in executor to avoid blocking
            payment_intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=to_minor_units(value),
                currency=currency,
                metadata={
                    "party_id": party_id,
                    "purpose": TOPUP_PURPOSE,
                },
                description=f"Wallet top-up - {party_id[:8]}",
                automatic_payment_methods={
                    "enabled": True,
                },
            )

            logger.info(
                f"Created payment intent {payment_intent.id} for top-up of {value} by {party_id}"
            )
            return payment_intent

        except StripeError as e:
            # Don't retry on client errors (4xx), only on server errors (5xx) or network issues
            if e.http_status and 400 <= e.http_status < 500:
                logger.error(
                    f"Stripe client error creating top-up for party {party_id}: {e}",
                    exc_info=True,
                )
                raise PaymentIntentError(f"Payment processing error: {e}") from e

            if attempt < _MAX_RETRIES - 1:
                logger.warning(
                    f"Stripe error (attempt {attempt + 1}/{_MAX_RETRIES}) for party {party_id}: {e}. Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                delay *= _RETRY_BACKOFF
            else:
                logger.error(
                    f"Stripe error creating top-up for party {party_id} after {_MAX_RETRIES} attempts: {e}",
                    exc_info=True,
                )
                raise PaymentIntentError(
                    f"Payment processing error after {_MAX_RETRIES} attempts: {e}"
                ) from e

    raise PaymentIntentError("Failed to create payment intent")


async def get_payment_intent(payment_intent_id: str) -> Optional[PaymentIntent]:
    """
    Get payment intent by ID.

    Args:
        payment_intent_id: Stripe payment intent ID

    Returns:
        PaymentIntent object or None if not found or unavailable

    Raises:
        ValueError: If payment_intent_id is empty
    """
    if not payment_intent_id:
        raise ValueError("Payment intent ID is required")

    delay = _RETRY_DELAY

    for attempt in range(_MAX_RETRIES):
        try:
            return await asyncio.to_thread(
                stripe.PaymentIntent.retrieve,
                payment_intent_id,
            )
        except StripeError as e:
            # Don't retry on 404 (not found) or client errors
            if e.http_status and 400 <= e.http_status < 500:
                logger.debug(
                    f"Payment intent {payment_intent_id} not found or client error: {e}"
                )
                return None

            if attempt < _MAX_RETRIES - 1:
                logger.warning(
                    f"Stripe error (attempt {attempt + 1}/{_MAX_RETRIES}) retrieving payment intent {payment_intent_id}: {e}. Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                delay *= _RETRY_BACKOFF
            else:
                logger.error(
                    f"Stripe error retrieving payment intent {payment_intent_id} after {_MAX_RETRIES} attempts: {e}",
                    exc_info=True,
                )
                return None

    return None


async def handle_webhook(
    event_data: dict,
    store: Optional[AppointmentStore] = None,
    ledger: Optional[WalletLedger] = None,
) -> dict:
    """
    Handle Stripe webhook events.

    A succeeded top-up credits the party's wallet. The event id is recorded
    in the store first, so a redelivered event is acknowledged without
    crediting twice.

    Args:
        event_data: Verified Stripe event
        store: Store to use (default: the configured store)
        ledger: Ledger to credit through (default: one on ``store``)

    Returns:
        Response dict

    Raises:
        WebhookPayloadError: If a top-up event lacks its amount
    """
    event_id = event_data.get("id")
    event_type = event_data.get("type")
    payment_intent = event_data.get("data", {}).get("object")

    if not payment_intent:
        return {"status": "error", "message": "Invalid webhook data"}

    metadata = payment_intent.get("metadata") or {}
    party_id = metadata.get("party_id")

    if not party_id or metadata.get("purpose") != TOPUP_PURPOSE:
        logger.warning(f"Webhook {event_id} is not a wallet top-up")
        return {"status": "ignored", "message": "Not a wallet top-up"}

    if event_type == "payment_intent.succeeded":
        amount_received = payment_intent.get("amount_received", payment_intent.get("amount"))
        if not isinstance(amount_received, int) or amount_received <= 0:
            raise WebhookPayloadError(f"Top-up event {event_id} has no amount")

        store = store or get_db_client()
        ledger = ledger or WalletLedger(store)

        if not await store.record_payment_event(event_id):
            logger.info(f"Top-up event {event_id} already credited")
            return {"status": "duplicate", "event_id": event_id}

        amount = from_minor_units(amount_received)
        await ledger.top_up(party_id, amount)
        logger.info(f"Wallet of party {party_id} topped up by {amount} ({event_id})")
        return {"status": "success", "party_id": party_id, "amount": str(amount)}

    elif event_type == "payment_intent.payment_failed":
        logger.warning(f"Top-up failed for party {party_id}")
        return {"status": "failed", "party_id": party_id}

    return {"status": "processed", "event_type": event_type}

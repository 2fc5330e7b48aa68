"""
Unit tests for Stripe wallet top-ups.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import stripe
from stripe import PaymentIntent

from payments import create_topup_intent, get_payment_intent, handle_webhook
from payments.stripe import TOPUP_PURPOSE, from_minor_units, to_minor_units
from utils.exceptions import PaymentIntentError, WebhookPayloadError


def _topup_event(party_id, event_id="evt_1", amount=150000, event_type="payment_intent.succeeded"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": "pi_test_123",
                "amount": amount,
                "amount_received": amount,
                "metadata": {"party_id": party_id, "purpose": TOPUP_PURPOSE},
            }
        },
    }


def test_minor_unit_conversion():
    """Test rupee amounts convert to paise and back."""
    assert to_minor_units(Decimal("1500.50")) == 150050
    assert from_minor_units(150050) == Decimal("1500.5")


class TestCreateTopupIntent:
    """Test top-up payment intent creation."""

    @pytest.mark.asyncio
    async def test_create_topup_intent_success(self):
        """Test successful payment intent creation."""
        mock_payment_intent = MagicMock(spec=PaymentIntent)
        mock_payment_intent.id = "pi_test_123"
        mock_payment_intent.client_secret = "pi_test_123_secret"

        with patch("payments.stripe.PaymentIntent.create") as mock_create:
            mock_create.return_value = mock_payment_intent

            result = await create_topup_intent("party_123", "1500")

            assert result.id == "pi_test_123"
            mock_create.assert_called_once()
            call_kwargs = mock_create.call_args[1]
            assert call_kwargs["amount"] == 150000
            assert call_kwargs["currency"] == "inr"
            assert call_kwargs["metadata"] == {
                "party_id": "party_123",
                "purpose": TOPUP_PURPOSE,
            }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, "-10", "abc", None])
    async def test_create_topup_intent_invalid_amount(self, amount):
        """Test payment intent with invalid amount."""
        with pytest.raises(ValueError, match="Invalid amount"):
            await create_topup_intent("party_123", amount)

    @pytest.mark.asyncio
    async def test_create_topup_intent_above_maximum(self):
        """Test top-ups above the maximum are refused."""
        with pytest.raises(ValueError, match="exceeds maximum"):
            await create_topup_intent("party_123", "1000000.01")

    @pytest.mark.asyncio
    async def test_create_topup_intent_missing_party(self):
        """Test payment intent with missing party ID."""
        with pytest.raises(ValueError, match="Party ID is required"):
            await create_topup_intent("", 100)

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        """Test a 4xx Stripe error fails immediately."""
        with patch("payments.stripe.PaymentIntent.create") as mock_create:
            mock_create.side_effect = stripe.error.InvalidRequestError(
                "Invalid request", "amount", http_status=400
            )

            with pytest.raises(PaymentIntentError, match="Payment processing error"):
                await create_topup_intent("party_123", 100)

            assert mock_create.call_count == 1

    @pytest.mark.asyncio
    async def test_transient_error_retried(self):
        """Test connection errors are retried before giving up."""
        with patch("payments.stripe.PaymentIntent.create") as mock_create, patch(
            "payments.stripe.asyncio.sleep", new=AsyncMock()
        ):
            mock_create.side_effect = stripe.error.APIConnectionError("Network down")

            with pytest.raises(PaymentIntentError, match="after 3 attempts"):
                await create_topup_intent("party_123", 100)

            assert mock_create.call_count == 3

    @pytest.mark.asyncio
    async def test_transient_error_then_success(self):
        """Test a retry that succeeds returns the intent."""
        mock_payment_intent = MagicMock(spec=PaymentIntent)
        mock_payment_intent.id = "pi_test_123"

        with patch("payments.stripe.PaymentIntent.create") as mock_create, patch(
            "payments.stripe.asyncio.sleep", new=AsyncMock()
        ):
            mock_create.side_effect = [
                stripe.error.APIConnectionError("Network down"),
                mock_payment_intent,
            ]

            result = await create_topup_intent("party_123", 100)

            assert result.id == "pi_test_123"
            assert mock_create.call_count == 2


class TestGetPaymentIntent:
    """Test payment intent retrieval."""

    @pytest.mark.asyncio
    async def test_get_payment_intent_success(self):
        """Test successful payment intent retrieval."""
        mock_payment_intent = MagicMock(spec=PaymentIntent)
        mock_payment_intent.id = "pi_test_123"

        with patch("payments.stripe.PaymentIntent.retrieve") as mock_retrieve:
            mock_retrieve.return_value = mock_payment_intent

            result = await get_payment_intent("pi_test_123")

            assert result.id == "pi_test_123"
            mock_retrieve.assert_called_once_with("pi_test_123")

    @pytest.mark.asyncio
    async def test_get_payment_intent_not_found(self):
        """Test payment intent retrieval when not found."""
        with patch("payments.stripe.PaymentIntent.retrieve") as mock_retrieve:
            mock_retrieve.side_effect = stripe.error.InvalidRequestError(
                "No such payment_intent", "id", http_status=404
            )

            assert await get_payment_intent("pi_missing") is None

    @pytest.mark.asyncio
    async def test_get_payment_intent_empty_id(self):
        """Test payment intent retrieval with empty ID."""
        with pytest.raises(ValueError, match="Payment intent ID is required"):
            await get_payment_intent("")


class TestHandleWebhook:
    """Test webhook handling."""

    @pytest.mark.asyncio
    async def test_succeeded_credits_wallet(self, store, ledger, patient):
        """Test a succeeded top-up credits the wallet."""
        result = await handle_webhook(_topup_event(patient.id), store=store, ledger=ledger)

        assert result["status"] == "success"
        assert result["party_id"] == patient.id
        assert Decimal(result["amount"]) == Decimal("1500")
        assert (await ledger.get_wallet(patient.id)).balance == Decimal("4500")

    @pytest.mark.asyncio
    async def test_redelivered_event_credits_once(self, store, ledger, patient):
        """Test a redelivered event is acknowledged without a second credit."""
        event = _topup_event(patient.id)

        await handle_webhook(event, store=store, ledger=ledger)
        result = await handle_webhook(event, store=store, ledger=ledger)

        assert result == {"status": "duplicate", "event_id": "evt_1"}
        assert (await ledger.get_wallet(patient.id)).balance == Decimal("4500")

    @pytest.mark.asyncio
    async def test_payment_failed(self, store, ledger, patient):
        """Test a failed top-up leaves the wallet alone."""
        result = await handle_webhook(
            _topup_event(patient.id, event_type="payment_intent.payment_failed"),
            store=store,
            ledger=ledger,
        )

        assert result["status"] == "failed"
        assert (await ledger.get_wallet(patient.id)).balance == Decimal("3000")

    @pytest.mark.asyncio
    async def test_not_a_topup(self, store, ledger):
        """Test intents without top-up metadata are ignored."""
        event = _topup_event("party_123")
        event["data"]["object"]["metadata"] = {"booking_id": "other"}

        result = await handle_webhook(event, store=store, ledger=ledger)

        assert result["status"] == "ignored"

    @pytest.mark.asyncio
    async def test_missing_amount(self, store, ledger, patient):
        """Test a succeeded top-up without an amount is rejected."""
        event = _topup_event(patient.id)
        event["data"]["object"]["amount_received"] = None

        with pytest.raises(WebhookPayloadError):
            await handle_webhook(event, store=store, ledger=ledger)

    @pytest.mark.asyncio
    async def test_invalid_data(self):
        """Test webhook handling with invalid data."""
        result = await handle_webhook({"type": "payment_intent.succeeded", "data": {}})

        assert result["status"] == "error"

    @pytest.mark.asyncio
    async def test_other_event_type(self, store, ledger, patient):
        """Test other event types are acknowledged."""
        result = await handle_webhook(
            _topup_event(patient.id, event_type="payment_intent.created"),
            store=store,
            ledger=ledger,
        )

        assert result == {"status": "processed", "event_type": "payment_intent.created"}

"""Wallet top-ups with Stripe."""

from .stripe import create_topup_intent, get_payment_intent, handle_webhook

__all__ = ["create_topup_intent", "get_payment_intent", "handle_webhook"]

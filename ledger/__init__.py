"""Wallet ledger: the only writer of party wallets."""

from .wallet import WalletLedger

__all__ = ["WalletLedger"]

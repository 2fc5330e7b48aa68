"""Best-effort appointment notifications."""

from .telegram import TelegramNotifier, format_event

__all__ = ["TelegramNotifier", "format_event"]

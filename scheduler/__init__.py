"""Scheduled expiry sweep for lapsed appointments."""

from .expiry import (
    ExpirySweeper,
    run_expiry_sweep,
    set_sweeper,
    setup_scheduler,
    shutdown_scheduler,
)

__all__ = [
    "ExpirySweeper",
    "run_expiry_sweep",
    "set_sweeper",
    "setup_scheduler",
    "shutdown_scheduler",
]

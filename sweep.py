"""
Batch entry point for the appointment expiry sweep.

Meant to be run by an external scheduler (cron, systemd timer). Takes no
arguments, prints the sweep report as JSON and exits 0 when every
modality swept cleanly, 1 otherwise.
"""

import asyncio
import sys

from config import settings
from engine.registry import build_configured_engines
from scheduler.expiry import ExpirySweeper
from utils.logging_config import setup_logging

logger = setup_logging(name=__name__, log_file="sweep.log")


async def run_sweep() -> int:
    """Run one sweep against the configured store and print its report."""
    engines = build_configured_engines()
    report = await ExpirySweeper(engines).run()
    print(report.model_dump_json())
    return 0 if report.success else 1


def main() -> None:
    try:
        settings.validate_all_required()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    try:
        exit_code = asyncio.run(run_sweep())
    except Exception as e:
        logger.error(f"Expiry sweep aborted: {e}", exc_info=True)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()

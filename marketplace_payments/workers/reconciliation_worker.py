"""
Reconciliation background worker.

Runs the reconciliation sweeps every ``reconciliation_interval_seconds`` and
the daily totals reconciliation once a day at ``reconciliation_hour`` (UTC).
"""
import asyncio
import signal
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

import structlog

from marketplace_payments.config import get_settings
from marketplace_payments.core.engine import PaymentsEngine
from marketplace_payments.database.connection import close_db
from marketplace_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_daily_reconciliation(engine: PaymentsEngine) -> None:
    """Run daily reconciliation for yesterday's orders."""
    logger.info("daily_reconciliation_started")

    result = await engine.reconciliation.reconcile_yesterday()

    logger.info(
        "daily_reconciliation_completed",
        date=result["date"],
        discrepancy_amount=result["discrepancy_amount"],
        discrepancy_count=result["discrepancy_count"],
    )
    if result["discrepancy_amount"] > 0 or result["discrepancy_count"] > 0:
        logger.warning(
            "reconciliation_discrepancies_detected",
            date=result["date"],
            discrepancy_amount=result["discrepancy_amount"],
            discrepancy_count=result["discrepancy_count"],
        )


def daily_run_due(now: datetime, target_hour: int, last_run: Optional[date]) -> bool:
    """True once per UTC day, from ``target_hour`` on."""
    return now.hour >= target_hour and last_run != now.date()


async def start_reconciliation_worker(
    target_hour: Optional[int] = None, once: bool = False
) -> None:
    """
    Start the reconciliation worker.

    Args:
        target_hour: Hour of day (UTC) for the totals reconciliation
        once: Run the sweeps a single time and exit
    """
    setup_logging()
    settings = get_settings()
    target_hour = settings.reconciliation_hour if target_hour is None else target_hour
    interval = settings.reconciliation_interval_seconds

    logger.info(
        "reconciliation_worker_starting",
        target_hour=target_hour,
        interval_seconds=interval,
    )

    engine = PaymentsEngine.from_settings(settings)
    running = True
    last_daily_run: Optional[date] = None

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            await engine.reconciliation.run_sweeps()

            now = datetime.now(timezone.utc)
            if daily_run_due(now, target_hour, last_daily_run):
                try:
                    await run_daily_reconciliation(engine)
                    last_daily_run = now.date()
                except Exception as e:
                    logger.error("daily_reconciliation_failed", error=str(e))

            if once:
                break

            # Sleep in short steps so a shutdown signal is honoured promptly
            deadline = datetime.now(timezone.utc) + timedelta(seconds=interval)
            while running and datetime.now(timezone.utc) < deadline:
                await asyncio.sleep(1)
    finally:
        await engine.close()
        await close_db()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Reconciliation worker")
    parser.add_argument(
        "--hour", type=int, default=None, help="Hour of day (UTC) for the totals reconciliation"
    )
    parser.add_argument("--once", action="store_true", help="Run the sweeps once and exit")
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(target_hour=args.hour, once=args.once))


if __name__ == "__main__":
    main()

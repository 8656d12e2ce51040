"""
Outbox publisher background worker.

Continuously polls the outbox table and dispatches order events to transfer
scheduling and the fulfillment webhook.
"""
import asyncio
import signal
from typing import Any

import structlog

from marketplace_payments.core.engine import PaymentsEngine
from marketplace_payments.database.connection import close_db
from marketplace_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_publisher() -> None:
    """
    Start the outbox publisher worker.

    Runs until SIGINT or SIGTERM; the batch in flight is finished first.
    """
    setup_logging()

    logger.info("outbox_publisher_worker_starting")

    engine = PaymentsEngine.from_settings()
    publisher = engine.outbox

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await engine.close()
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()

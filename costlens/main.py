"""
CostLens process entry point.

Runs the nightly cost pipeline scheduler until SIGINT/SIGTERM.
"""

import asyncio
import signal

import structlog

from costlens.core.config import get_settings
from costlens.core.logging import setup_logging
from costlens.db.session import async_session_maker, engine
from costlens.services.scheduler import SchedulerService

logger = structlog.get_logger()


async def run() -> None:
    settings = get_settings()
    logger.info("app_starting", app_name=settings.APP_NAME, version=settings.VERSION)

    scheduler = SchedulerService(async_session_maker, settings=settings)
    if settings.SCHEDULER_ENABLED:
        scheduler.start()
    else:
        logger.info("scheduler_disabled")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await stop_event.wait()
    finally:
        scheduler.stop()
        await engine.dispose()
        logger.info("app_stopped")


def main() -> None:
    setup_logging()
    asyncio.run(run())


if __name__ == "__main__":
    main()

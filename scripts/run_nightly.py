"""Run the nightly cost pipeline once, outside the cron schedule."""
import asyncio

from costlens.core.logging import setup_logging
from costlens.db.session import async_session_maker, engine
from costlens.services.scheduler import SchedulerService


async def run_once():
    scheduler = SchedulerService(async_session_maker)
    try:
        summary = await scheduler.run_nightly_processing()
        print(f"Nightly processing summary: {summary}")
    finally:
        await engine.dispose()

if __name__ == '__main__':
    setup_logging()
    asyncio.run(run_once())

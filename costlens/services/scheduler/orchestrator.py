from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import asyncio
import time
import uuid

import structlog
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from costlens.core.config import Settings, get_settings
from costlens.models.billing import LineItem
from costlens.services.anomalies.detector import AnomalyDetector
from costlens.services.costs.aggregator import AggregationService
from costlens.services.ingestion.jobs import IngestionJobProcessor
from costlens.services.recommendations.engine import RecommendationEngine
from costlens.services.scheduler.metrics import (
    SCHEDULER_JOB_DURATION,
    SCHEDULER_JOB_RUNS,
    SCHEDULER_USER_FAILURES,
)

logger = structlog.get_logger()

NIGHTLY_JOB_ID = "nightly_processing"


class SchedulerService:
    """
    Owns the APScheduler instance and the nightly cost pipeline.

    One instance per process, created by the entry point. Calling start()
    twice logs a warning instead of registering a second schedule.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.scheduler = AsyncIOScheduler()
        self.session_maker = session_maker
        self.semaphore = asyncio.Semaphore(self.settings.SCHEDULER_MAX_CONCURRENT_USERS)
        self._started = False
        self._last_run_success: bool | None = None
        self._last_run_time: str | None = None

    async def nightly_processing_job(self):
        """Cron entry point: runs the pipeline with a correlation id and records metrics."""
        job_name = NIGHTLY_JOB_ID
        correlation_id = str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id, job_type="scheduler_nightly")
        start_time = time.time()

        try:
            summary = await self.run_nightly_processing()
            SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="success").inc()
            self._last_run_success = summary["users_failed"] == 0
            logger.info("nightly_processing_succeeded", **summary)
        except Exception as e:
            SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="failure").inc()
            self._last_run_success = False
            logger.error("nightly_processing_failed", error=str(e))
        finally:
            self._last_run_time = datetime.now(timezone.utc).isoformat()
            SCHEDULER_JOB_DURATION.labels(job_name=job_name).observe(time.time() - start_time)
            structlog.contextvars.unbind_contextvars("correlation_id", "job_type")

    async def run_nightly_processing(self) -> Dict[str, Any]:
        """
        1. Drain pending ingestion jobs.
        2. For every user owning line items: rebuild aggregates, detect anomalies,
           generate recommendations.
        """
        start_time = time.time()

        async with self.session_maker() as db:
            job_stats = await IngestionJobProcessor(db, settings=self.settings).process_pending_jobs()
            result = await db.execute(sa.select(LineItem.user_id).distinct())
            user_ids = [row for row in result.scalars().all() if row is not None]

        logger.info("nightly_processing_users_found", count=len(user_ids))
        outcomes = await asyncio.gather(*(self._process_user(user_id) for user_id in user_ids))

        summary = {
            "jobs_processed": job_stats["processed"],
            "jobs_failed": job_stats["failed"],
            "users_processed": len(user_ids),
            "users_failed": sum(1 for outcome in outcomes if outcome is None),
            "anomalies": sum(outcome["anomalies"] for outcome in outcomes if outcome),
            "recommendations": sum(outcome["recommendations"] for outcome in outcomes if outcome),
            "duration_ms": int((time.time() - start_time) * 1000),
        }
        logger.info("nightly_processing_complete", **summary)
        return summary

    async def _process_user(self, user_id) -> Optional[Dict[str, int]]:
        """Run the analysis chain for one user in its own session. Returns None on failure."""
        async with self.semaphore:
            stage = "aggregation"
            try:
                async with self.session_maker() as db:
                    await AggregationService(db).rebuild_aggregates(user_id)

                    stage = "anomalies"
                    anomalies = await AnomalyDetector(db, settings=self.settings).detect(
                        user_id, lookback_days=self.settings.ANOMALY_LOOKBACK_DAYS
                    )

                    stage = "recommendations"
                    recommendations = await RecommendationEngine(db, settings=self.settings).generate(
                        user_id, lookback_days=self.settings.RECOMMENDATION_LOOKBACK_DAYS
                    )
            except Exception as e:
                SCHEDULER_USER_FAILURES.labels(stage=stage).inc()
                logger.error("nightly_user_processing_failed", user_id=str(user_id), stage=stage, error=str(e))
                return None

        return {"anomalies": len(anomalies), "recommendations": len(recommendations)}

    def start(self):
        """Registers the nightly cron job and starts APScheduler."""
        if self._started:
            logger.warning("scheduler_already_running")
            return

        self.scheduler.add_job(
            self.nightly_processing_job,
            trigger=CronTrigger(
                hour=self.settings.SCHEDULER_HOUR,
                minute=self.settings.SCHEDULER_MINUTE,
                timezone="UTC",
            ),
            id=NIGHTLY_JOB_ID,
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        self._started = True
        logger.info(
            "scheduler_started",
            hour=self.settings.SCHEDULER_HOUR,
            minute=self.settings.SCHEDULER_MINUTE,
        )

    def stop(self):
        if not self._started:
            return
        self.scheduler.shutdown(wait=False)
        self._started = False
        logger.info("scheduler_stopped")

    def get_status(self) -> dict:
        return {
            "running": self._started and self.scheduler.running,
            "last_run_success": self._last_run_success,
            "last_run_time": self._last_run_time,
            "jobs": [job.id for job in self.scheduler.get_jobs()]
        }

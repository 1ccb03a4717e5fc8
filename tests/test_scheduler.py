"""
Tests for SchedulerService

Tests cover:
- Scheduler instantiation and status
- Cron registration and the double-start guard
- Nightly pipeline summary with per-user failure isolation
- End-to-end nightly run against the test database
"""

import pytest
from unittest.mock import MagicMock, AsyncMock, patch
from uuid import uuid4

from structlog.testing import capture_logs

from costlens.models.ingestion_job import IngestionJob, IngestionStatus
from costlens.services.ingestion.jobs import create_ingestion_job
from costlens.services.scheduler import SchedulerService
from costlens.services.scheduler.orchestrator import NIGHTLY_JOB_ID

from factories import cur_row

ORCHESTRATOR = "costlens.services.scheduler.orchestrator"


def create_mock_session_maker(user_ids=()):
    """Create a mock session maker whose sessions report the given line item owners."""
    mock_session = AsyncMock()
    result = MagicMock()
    result.scalars.return_value.all.return_value = list(user_ids)
    mock_session.execute.return_value = result

    mock_session_maker = MagicMock()
    mock_cm = AsyncMock()
    mock_cm.__aenter__.return_value = mock_session
    mock_cm.__aexit__.return_value = None
    mock_session_maker.return_value = mock_cm
    return mock_session_maker


class TestSchedulerInstantiation:
    def test_stores_session_maker(self):
        mock_session_maker = create_mock_session_maker()
        scheduler = SchedulerService(session_maker=mock_session_maker)
        assert scheduler.session_maker is mock_session_maker

    def test_semaphore_uses_configured_limit(self, settings):
        limited = settings.model_copy(update={"SCHEDULER_MAX_CONCURRENT_USERS": 3})
        scheduler = SchedulerService(create_mock_session_maker(), settings=limited)
        assert scheduler.semaphore._value == 3

    def test_initial_status(self):
        scheduler = SchedulerService(create_mock_session_maker())
        status = scheduler.get_status()
        assert status == {
            "running": False,
            "last_run_success": None,
            "last_run_time": None,
            "jobs": [],
        }


class TestSchedulerLifecycle:
    @pytest.mark.asyncio
    async def test_start_registers_nightly_cron(self):
        scheduler = SchedulerService(create_mock_session_maker())
        try:
            scheduler.start()
            status = scheduler.get_status()
            assert status["running"] is True
            assert status["jobs"] == [NIGHTLY_JOB_ID]

            job = scheduler.scheduler.get_job(NIGHTLY_JOB_ID)
            assert job.max_instances == 1
            trigger = str(job.trigger)
            assert "hour='2'" in trigger
            assert "minute='0'" in trigger
        finally:
            scheduler.stop()

    @pytest.mark.asyncio
    async def test_second_start_warns_and_keeps_one_job(self):
        scheduler = SchedulerService(create_mock_session_maker())
        try:
            scheduler.start()
            with capture_logs() as logs:
                scheduler.start()
            assert any(entry["event"] == "scheduler_already_running" for entry in logs)
            assert len(scheduler.scheduler.get_jobs()) == 1
        finally:
            scheduler.stop()

    def test_stop_without_start_is_noop(self):
        scheduler = SchedulerService(create_mock_session_maker())
        scheduler.stop()
        assert scheduler.get_status()["running"] is False


class TestNightlyProcessing:
    @pytest.mark.asyncio
    async def test_summary_counts_and_failure_isolation(self):
        healthy, broken = uuid4(), uuid4()
        scheduler = SchedulerService(create_mock_session_maker([healthy, broken]))

        async def rebuild(user_id):
            if user_id == broken:
                raise RuntimeError("aggregation exploded")
            return {"daily": 1, "monthly": 1}

        with patch(f"{ORCHESTRATOR}.IngestionJobProcessor") as processor, \
             patch(f"{ORCHESTRATOR}.AggregationService") as aggregation, \
             patch(f"{ORCHESTRATOR}.AnomalyDetector") as detector, \
             patch(f"{ORCHESTRATOR}.RecommendationEngine") as engine:
            processor.return_value.process_pending_jobs = AsyncMock(
                return_value={"processed": 2, "succeeded": 1, "failed": 1}
            )
            aggregation.return_value.rebuild_aggregates = AsyncMock(side_effect=rebuild)
            detector.return_value.detect = AsyncMock(return_value=["a1", "a2"])
            engine.return_value.generate = AsyncMock(return_value=["r1"])

            summary = await scheduler.run_nightly_processing()

        assert summary["jobs_processed"] == 2
        assert summary["jobs_failed"] == 1
        assert summary["users_processed"] == 2
        assert summary["users_failed"] == 1
        assert summary["anomalies"] == 2
        assert summary["recommendations"] == 1
        assert summary["duration_ms"] >= 0
        detector.return_value.detect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_job_wrapper_records_failure(self):
        scheduler = SchedulerService(create_mock_session_maker())

        with patch.object(scheduler, "run_nightly_processing", AsyncMock(side_effect=RuntimeError("db down"))):
            await scheduler.nightly_processing_job()

        status = scheduler.get_status()
        assert status["last_run_success"] is False
        assert status["last_run_time"] is not None

    @pytest.mark.asyncio
    async def test_job_wrapper_records_partial_failure(self):
        scheduler = SchedulerService(create_mock_session_maker())
        summary = {
            "jobs_processed": 0, "jobs_failed": 0, "users_processed": 2, "users_failed": 1,
            "anomalies": 0, "recommendations": 0, "duration_ms": 5,
        }

        with patch.object(scheduler, "run_nightly_processing", AsyncMock(return_value=summary)):
            await scheduler.nightly_processing_job()

        assert scheduler.get_status()["last_run_success"] is False

    @pytest.mark.asyncio
    async def test_end_to_end_nightly_run(self, session_maker, settings, write_csv):
        """Pending upload -> line items -> aggregates -> analysis, in one nightly pass."""
        sequential = settings.model_copy(update={"SCHEDULER_MAX_CONCURRENT_USERS": 1})
        user_id = uuid4()
        path = write_csv([cur_row(cost="5.00", resource=f"i-{n}") for n in range(3)])
        async with session_maker() as db:
            job = await create_ingestion_job(db, "cur.csv", path, user_id)

        summary = await SchedulerService(session_maker, settings=sequential).run_nightly_processing()

        assert summary["jobs_processed"] == 1
        assert summary["jobs_failed"] == 0
        assert summary["users_processed"] == 1
        assert summary["users_failed"] == 0
        async with session_maker() as db:
            stored = await db.get(IngestionJob, job.id)
            assert stored.status == IngestionStatus.COMPLETED.value

"""
Ingestion Job Queue

Upload hand-off (`create_ingestion_job`) and the sweep that drains pending
jobs (`IngestionJobProcessor`). Only `pending` jobs are picked up; a job that
fails stays `failed` until someone re-queues it.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from costlens.core.config import Settings, get_settings
from costlens.core.ownership import require_user_id
from costlens.models.ingestion_job import IngestionJob, IngestionStatus
from costlens.services.ingestion.pipeline import IngestionService

logger = structlog.get_logger()


async def create_ingestion_job(
    db: AsyncSession,
    file_name: str,
    file_path: str,
    user_id: Any,
    file_size: Optional[int] = None,
    created_by: Optional[str] = None,
) -> IngestionJob:
    """Register an uploaded file for ingestion."""
    job = IngestionJob(
        user_id=require_user_id(user_id),
        file_name=file_name,
        file_path=file_path,
        file_size=file_size,
        status=IngestionStatus.PENDING.value,
        rows_processed=0,
        rows_total=0,
        rows_skipped=0,
        errors=[],
        created_by=created_by,
    )
    db.add(job)
    await db.commit()
    logger.info("ingestion_job_created", job_id=str(job.id), file_name=file_name, user_id=str(job.user_id))
    return job


class IngestionJobProcessor:
    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    async def process_pending_jobs(self) -> Dict[str, int]:
        """Run every pending job, oldest first. One job's failure does not stop the sweep."""
        result = await self.db.execute(
            select(IngestionJob.id)
            .where(IngestionJob.status == IngestionStatus.PENDING.value)
            .order_by(IngestionJob.created_at)
        )
        job_ids = result.scalars().all()
        logger.info("pending_ingestion_jobs_found", count=len(job_ids))

        stats = {"processed": 0, "succeeded": 0, "failed": 0}
        for job_id in job_ids:
            stats["processed"] += 1
            # Reload each time: a rollback in an earlier iteration expires loaded jobs
            job = await self.db.get(IngestionJob, job_id, populate_existing=True)

            if not job.file_path or not os.path.exists(job.file_path):
                logger.warning("ingestion_job_file_missing", job_id=str(job_id), file_path=job.file_path)
                await self._mark_failed(job, 0, f"File not found: {job.file_path}")
                stats["failed"] += 1
                continue

            try:
                await IngestionService(self.db, settings=self.settings).process_file(
                    job.file_path, job_id, user_id=job.user_id
                )
            except Exception as e:
                logger.error("ingestion_job_failed", job_id=str(job_id), error=str(e))
                await self.db.rollback()
                job = await self.db.get(IngestionJob, job_id, populate_existing=True)
                await self._mark_failed(job, 0, str(e))
                stats["failed"] += 1
                continue

            await self.db.refresh(job)
            if job.status == IngestionStatus.COMPLETED.value:
                stats["succeeded"] += 1
            else:
                stats["failed"] += 1

        logger.info("pending_ingestion_jobs_processed", **stats)
        return stats

    async def _mark_failed(self, job: IngestionJob, row: int, message: str) -> None:
        max_errors = self.settings.INGESTION_MAX_STORED_ERRORS
        entry = {"row": row, "message": message, "timestamp": datetime.now(timezone.utc).isoformat()}
        job.status = IngestionStatus.FAILED.value
        job.completed_at = job.completed_at or datetime.now(timezone.utc)
        job.errors = list(job.errors or [])[: max_errors - 1] + [entry]
        await self.db.commit()

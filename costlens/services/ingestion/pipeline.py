"""
CSV Ingestion Pipeline

Streams an AWS billing CSV into billing_line_items:
- pandas reads the file in chunks, so memory is bounded by chunk_size
- rows are normalized and validated one at a time; bad rows are skipped and recorded
- valid rows are written with INSERT ... ON CONFLICT (user_id, fingerprint) DO NOTHING,
  which makes re-ingesting the same file a no-op; identical rows repeated inside
  one file are numbered so each of them is kept
- every run that starts ends with the job completed or failed
- a successful run triggers an aggregate rebuild for the owning user
"""

import asyncio
import time
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

import pandas as pd
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from costlens.core.config import Settings, get_settings
from costlens.core.exceptions import IngestionError, JobNotFoundError, UserRequiredError
from costlens.core.ownership import require_user_id
from costlens.db.inserts import insert_ignore_conflicts
from costlens.models.billing import LineItem
from costlens.models.ingestion_job import IngestionJob, IngestionStatus
from costlens.schemas.costs import IngestionResult
from costlens.services.costs.aggregator import AggregationService
from costlens.services.ingestion.normalizer import compute_fingerprint, normalize_line_item
from costlens.core.ops_metrics import INGESTION_ROWS

logger = structlog.get_logger()

REQUIRED_FIELDS = ("account_id", "service", "cost")
LINE_ITEM_COLUMNS = [column.key for column in LineItem.__table__.columns]

ProgressCallback = Callable[[Dict[str, int]], Any]


def _error_entry(row: int, message: str) -> Dict[str, Any]:
    return {"row": row, "message": message, "timestamp": datetime.now(timezone.utc).isoformat()}


def _elapsed_ms(started_at: Optional[datetime], completed_at: datetime) -> Optional[int]:
    if started_at is None:
        return None
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    return int((completed_at - started_at).total_seconds() * 1000)


def read_csv_chunks(file_path: str, chunk_size: int) -> Iterator[pd.DataFrame]:
    """
    Yield DataFrame chunks of at most chunk_size rows.

    Every cell is read as a string. Blank lines are skipped and header names are
    trimmed. Rows with more fields than the header are truncated, and short rows
    are padded with NaN. A file with no header yields nothing.
    """
    try:
        header = pd.read_csv(file_path, nrows=0, dtype=str)
    except pd.errors.EmptyDataError:
        return
    width = len(header.columns)

    with pd.read_csv(
        file_path,
        dtype=str,
        index_col=False,
        keep_default_na=False,
        skip_blank_lines=True,
        chunksize=chunk_size,
        engine="python",
        on_bad_lines=lambda fields: fields[:width],
    ) as reader:
        for chunk in reader:
            chunk.columns = [str(column).strip() for column in chunk.columns]
            yield chunk


class IngestionService:
    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        aggregation_service: Optional[AggregationService] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.aggregation_service = aggregation_service or AggregationService(db)

    async def process_file(
        self,
        file_path: str,
        job_id: Any,
        chunk_size: Optional[int] = None,
        user_id: Any = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> IngestionResult:
        """
        Ingest one CSV file on behalf of an ingestion job.

        Raises:
            JobNotFoundError: job_id does not resolve.
            UserRequiredError: neither user_id nor the job names an owner.
            ValueError: chunk_size is not positive; the job is left untouched.
            IngestionError: the file or the database failed mid-stream; the job is marked failed.

        Any other error raised mid-stream also marks the job failed before it propagates.
        """
        job = await self.db.get(IngestionJob, job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        owner = user_id if user_id is not None else job.user_id
        if owner is None:
            raise UserRequiredError("User ID is required for data ingestion", details={"job_id": str(job_id)})
        owner = require_user_id(owner)

        if chunk_size is None:
            chunk_size = self.settings.INGESTION_CHUNK_SIZE
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        max_errors = self.settings.INGESTION_MAX_STORED_ERRORS

        job.status = IngestionStatus.PROCESSING.value
        job.started_at = datetime.now(timezone.utc)
        await self.db.commit()

        start_time = time.perf_counter()
        logger.info("ingestion_started", job_id=str(job.id), user_id=str(owner), file_path=file_path)

        row_count = 0
        processed = 0
        skipped = 0
        errors: List[Dict[str, Any]] = []
        batch: List[Dict[str, Any]] = []
        occurrences: Counter = Counter()

        def record_error(row: int, message: str) -> None:
            if len(errors) < max_errors:
                errors.append(_error_entry(row, message))

        async def flush() -> None:
            nonlocal processed, skipped, batch
            inserted = await self._write_batch(batch)
            duplicates = len(batch) - inserted
            processed += inserted
            skipped += duplicates
            if duplicates:
                logger.warning("ingestion_duplicates_skipped", job_id=str(job.id), count=duplicates)
            batch = []

            job.rows_processed = processed
            await self.db.commit()
            if on_progress:
                on_progress({"processed": processed, "total": row_count})

        chunks = read_csv_chunks(file_path, chunk_size)
        try:
            while True:
                # pandas parses off the event loop, one chunk at a time
                chunk = await asyncio.to_thread(next, chunks, None)
                if chunk is None:
                    break
                for raw in chunk.to_dict(orient="records"):
                    row_count += 1
                    try:
                        record = normalize_line_item(raw, job.id)
                        record["user_id"] = owner
                    except Exception as exc:
                        skipped += 1
                        record_error(row_count, str(exc))
                        continue

                    missing = [field for field in REQUIRED_FIELDS if record.get(field) is None]
                    if missing:
                        skipped += 1
                        record_error(row_count, "Missing required fields")
                        continue

                    seen = occurrences[record["fingerprint"]]
                    occurrences[record["fingerprint"]] += 1
                    if seen:
                        record["fingerprint"] = compute_fingerprint(raw, seen)

                    batch.append(record)
                    if len(batch) >= chunk_size:
                        await flush()

            if batch:
                await flush()

        except (OSError, UnicodeDecodeError, pd.errors.ParserError, SQLAlchemyError) as exc:
            await self._fail_job(job, row_count, exc, errors, processed, skipped)
            raise IngestionError(
                f"CSV ingestion failed: {exc}",
                details={"job_id": str(job_id), "row": row_count},
            ) from exc
        except Exception as exc:
            await self._fail_job(job, row_count, exc, errors, processed, skipped)
            raise
        finally:
            chunks.close()

        completed_at = datetime.now(timezone.utc)
        job.status = IngestionStatus.COMPLETED.value if processed > 0 else IngestionStatus.FAILED.value
        job.completed_at = completed_at
        job.duration_ms = _elapsed_ms(job.started_at, completed_at)
        job.rows_processed = processed
        job.rows_total = row_count
        job.rows_skipped = skipped
        job.errors = errors[:max_errors]
        await self.db.commit()

        INGESTION_ROWS.labels(outcome="processed").inc(processed)
        INGESTION_ROWS.labels(outcome="skipped").inc(skipped)

        if processed > 0:
            await self.aggregation_service.rebuild_aggregates(owner)

        logger.info(
            "ingestion_complete",
            job_id=str(job.id),
            status=job.status,
            processed=processed,
            skipped=skipped,
            total=row_count,
            duration_seconds=round(time.perf_counter() - start_time, 3),
        )
        return IngestionResult(processed=processed, skipped=skipped, total=row_count)

    async def _write_batch(self, batch: List[Dict[str, Any]]) -> int:
        """Insert normalized records, returning how many were new."""
        now = datetime.now(timezone.utc)
        values = []
        for record in batch:
            row = {name: record.get(name) for name in LINE_ITEM_COLUMNS}
            row.update(id=uuid.uuid4(), is_anomaly=False, created_at=now, updated_at=now)
            values.append(row)
        return await insert_ignore_conflicts(self.db, LineItem, values, ["user_id", "fingerprint"])

    async def _fail_job(
        self,
        job: IngestionJob,
        row: int,
        exc: Exception,
        errors: List[Dict[str, Any]],
        processed: int,
        skipped: int,
    ) -> None:
        """Roll back the open batch and persist the failure on the job."""
        logger.error("ingestion_stream_failed", job_id=str(job.id), row=row, error=str(exc))
        await self.db.rollback()
        await self.db.refresh(job)

        max_errors = self.settings.INGESTION_MAX_STORED_ERRORS
        job.status = IngestionStatus.FAILED.value
        job.completed_at = datetime.now(timezone.utc)
        job.rows_processed = processed
        job.rows_total = row
        job.rows_skipped = skipped
        job.errors = errors[: max_errors - 1] + [_error_entry(row, str(exc))]
        await self.db.commit()

"""
Tests for the pending ingestion job sweep.
"""

import uuid

import pytest
from sqlalchemy import func, select

from costlens.core.exceptions import UserRequiredError
from costlens.models.billing import LineItem
from costlens.models.ingestion_job import IngestionJob, IngestionStatus
from costlens.services.ingestion.jobs import IngestionJobProcessor, create_ingestion_job

from factories import cur_row


@pytest.mark.asyncio
async def test_create_job_is_pending(db, user_id):
    job = await create_ingestion_job(db, "cur.csv", "/data/cur.csv", user_id, file_size=1024, created_by="ops")

    stored = await db.get(IngestionJob, job.id)
    assert stored.status == IngestionStatus.PENDING.value
    assert stored.user_id == user_id
    assert stored.file_size == 1024
    assert stored.rows_processed == 0
    assert stored.errors == []


@pytest.mark.asyncio
async def test_create_job_requires_user(db):
    with pytest.raises(UserRequiredError):
        await create_ingestion_job(db, "cur.csv", "/data/cur.csv", None)


@pytest.mark.asyncio
async def test_processes_pending_jobs(db, user_id, write_csv):
    path = write_csv([cur_row(cost="2.00", resource="i-1"), cur_row(cost="3.00", resource="i-2")])
    job = await create_ingestion_job(db, "cur.csv", path, user_id)

    stats = await IngestionJobProcessor(db).process_pending_jobs()

    assert stats == {"processed": 1, "succeeded": 1, "failed": 0}
    await db.refresh(job)
    assert job.status == IngestionStatus.COMPLETED.value
    count = (await db.execute(select(func.count()).select_from(LineItem))).scalar()
    assert count == 2


@pytest.mark.asyncio
async def test_missing_file_marks_job_failed(db, user_id, tmp_path):
    job = await create_ingestion_job(db, "gone.csv", str(tmp_path / "gone.csv"), user_id)

    stats = await IngestionJobProcessor(db).process_pending_jobs()

    assert stats == {"processed": 1, "succeeded": 0, "failed": 1}
    await db.refresh(job)
    assert job.status == IngestionStatus.FAILED.value
    assert job.errors[-1]["row"] == 0
    assert job.errors[-1]["message"].startswith("File not found")


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_sweep(db, write_csv, tmp_path):
    good_path = write_csv([cur_row(cost="2.00")], name="good.csv")
    orphan = IngestionJob(
        file_name="orphan.csv",
        file_path=good_path,
        status=IngestionStatus.PENDING.value,
    )
    db.add(orphan)
    await db.commit()
    good = await create_ingestion_job(db, "good.csv", good_path, uuid.uuid4())

    stats = await IngestionJobProcessor(db).process_pending_jobs()

    assert stats == {"processed": 2, "succeeded": 1, "failed": 1}
    await db.refresh(orphan)
    await db.refresh(good)
    assert orphan.status == IngestionStatus.FAILED.value
    assert orphan.errors[-1]["row"] == 0
    assert good.status == IngestionStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_only_pending_jobs_are_picked_up(db, user_id, write_csv):
    path = write_csv([cur_row()])
    job = await create_ingestion_job(db, "cur.csv", path, user_id)
    job.status = IngestionStatus.FAILED.value
    await db.commit()

    stats = await IngestionJobProcessor(db).process_pending_jobs()

    assert stats["processed"] == 0


@pytest.mark.asyncio
async def test_failure_keeps_earliest_errors_when_list_is_full(db, user_id, tmp_path, settings):
    job = await create_ingestion_job(db, "gone.csv", str(tmp_path / "gone.csv"), user_id)
    job.errors = [{"row": 1, "message": "first"}, {"row": 2, "message": "second"}]
    await db.commit()
    capped = settings.model_copy(update={"INGESTION_MAX_STORED_ERRORS": 2})

    await IngestionJobProcessor(db, settings=capped).process_pending_jobs()

    await db.refresh(job)
    assert len(job.errors) == 2
    assert job.errors[0]["message"] == "first"
    assert job.errors[1]["message"].startswith("File not found")

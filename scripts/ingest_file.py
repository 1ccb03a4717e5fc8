"""Queue a local CUR CSV for a user and ingest it immediately.

Usage: python scripts/ingest_file.py <user_uuid> <path/to/billing.csv>
"""
import asyncio
import os
import sys

from costlens.core.logging import setup_logging
from costlens.db.session import async_session_maker, engine
from costlens.services.ingestion.jobs import create_ingestion_job
from costlens.services.ingestion.pipeline import IngestionService


async def ingest(user_id: str, file_path: str):
    try:
        async with async_session_maker() as db:
            job = await create_ingestion_job(
                db,
                file_name=os.path.basename(file_path),
                file_path=file_path,
                user_id=user_id,
                file_size=os.path.getsize(file_path),
                created_by="cli",
            )
            result = await IngestionService(db).process_file(file_path, job.id)
            print(f"Job {job.id}: {result.processed} processed, {result.skipped} skipped, {result.total} total")
    finally:
        await engine.dispose()

if __name__ == '__main__':
    if len(sys.argv) != 3:
        print(__doc__)
        sys.exit(1)
    setup_logging()
    asyncio.run(ingest(sys.argv[1], sys.argv[2]))

import os

# Set test environment before any costlens imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TESTING"] = "True"
os.environ["DB_SSL_MODE"] = "disable"

import uuid
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import StaticPool

import costlens.models  # noqa: F401  (registers every table on Base.metadata)
from costlens.core.config import get_settings
from costlens.db.base import Base
from costlens.db.session import build_engine, build_session_maker

from factories import CUR_HEADER


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
async def session_maker(settings):
    """Fresh in-memory database per test. StaticPool keeps every session on the same connection."""
    engine = build_engine(settings, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_maker(engine)

    await engine.dispose()


@pytest.fixture
async def db(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def write_csv(tmp_path):
    """Write a CUR-style CSV and return its path. Rows are lists of cell strings."""
    def _write(rows=(), header=CUR_HEADER, name="cur.csv", raw=None):
        path = tmp_path / name
        if raw is not None:
            path.write_text(raw)
        else:
            lines = [",".join(header)] + [",".join(row) for row in rows]
            path.write_text("\n".join(lines) + "\n")
        return str(path)
    return _write

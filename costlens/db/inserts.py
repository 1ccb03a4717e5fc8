"""
Dialect-aware INSERT helpers.

PostgreSQL and SQLite both support ON CONFLICT, but through separate
`insert()` constructs. Services call `dialect_insert()` and stay portable
between production (asyncpg) and tests (aiosqlite).
"""

from typing import Any, Dict, Iterator, List, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

# Keeps multi-row VALUES under SQLite's bound-parameter limit for wide tables.
INSERT_BATCH_SIZE = 500


def dialect_insert(db: AsyncSession, model: Any):
    """Return the ON CONFLICT-capable insert construct for the session's dialect."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"ON CONFLICT inserts are not supported for dialect '{dialect}'")


def batched(values: Sequence[Dict[str, Any]], size: int = INSERT_BATCH_SIZE) -> Iterator[List[Dict[str, Any]]]:
    for i in range(0, len(values), size):
        yield list(values[i : i + size])


async def insert_ignore_conflicts(
    db: AsyncSession,
    model: Any,
    values: Sequence[Dict[str, Any]],
    conflict_columns: List[str],
) -> int:
    """
    Bulk insert rows, silently skipping those that violate the given unique key.
    Returns the number of rows actually inserted.
    """
    inserted = 0
    for batch in batched(values):
        stmt = dialect_insert(db, model).values(batch)
        stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)
        result = await db.execute(stmt)
        inserted += max(result.rowcount or 0, 0)
    return inserted


async def upsert_rows(
    db: AsyncSession,
    model: Any,
    values: Sequence[Dict[str, Any]],
    conflict_columns: List[str],
    update_columns: List[str],
) -> int:
    """Insert-or-update each row keyed on `conflict_columns`."""
    upserted = 0
    for row in values:
        stmt = dialect_insert(db, model).values(row)
        stmt = stmt.on_conflict_do_update(
            index_elements=conflict_columns,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
        await db.execute(stmt)
        upserted += 1
    return upserted

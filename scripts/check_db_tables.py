import asyncio
from costlens.db.session import async_session_maker
from costlens.db.base import Base
import costlens.models  # noqa: F401
from sqlalchemy import inspect

async def check_tables():
    async with async_session_maker() as session:
        conn = await session.connection()
        tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        print(f"Tables found: {tables}")

        for name in Base.metadata.tables:
            print(f"{name} exists: {name in tables}")

if __name__ == '__main__':
    asyncio.run(check_tables())

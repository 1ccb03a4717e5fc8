import ssl
from typing import Any, Dict

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker

from costlens.core.config import Settings, get_settings
from costlens.core.exceptions import ConfigurationError

logger = structlog.get_logger()


def _connect_args(settings: Settings) -> Dict[str, Any]:
    """Driver connect arguments for the configured database and SSL mode."""
    if settings.DATABASE_URL.startswith("sqlite"):
        return {"check_same_thread": False}

    ssl_mode = settings.DB_SSL_MODE.lower()
    connect_args: Dict[str, Any] = {"statement_cache_size": 0}  # Required for pgbouncer/Supavisor

    if ssl_mode == "disable":
        # WARNING: Only for local development with no SSL
        logger.warning("database_ssl_disabled",
                       msg="SSL disabled - INSECURE, do not use in production!")
        connect_args["ssl"] = False

    elif ssl_mode == "require":
        # Encryption enforced, but no certificate verification
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        connect_args["ssl"] = ssl_context
        logger.info("database_ssl_require", msg="SSL enabled (encrypted, no cert verification)")

    elif ssl_mode in ("verify-ca", "verify-full"):
        ssl_context = ssl.create_default_context(cafile=settings.DB_SSL_CA_CERT_PATH)
        ssl_context.verify_mode = ssl.CERT_REQUIRED
        ssl_context.check_hostname = (ssl_mode == "verify-full")
        connect_args["ssl"] = ssl_context
        logger.info("database_ssl_verified", mode=ssl_mode, ca_cert=settings.DB_SSL_CA_CERT_PATH)

    return connect_args


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy own BEGIN on SQLite so SAVEPOINT (begin_nested) works.
    aiosqlite still emits COMMIT/ROLLBACK correctly.
    """
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(settings: Settings, **engine_kwargs: Any) -> AsyncEngine:
    """
    Create the async engine for the configured database.

    - pool_pre_ping: Checks if connection is alive before using
    - pool_recycle: Recycle connections after 5 min (pooler compatibility)
    - NullPool when TESTING to avoid connection leaks across event loops
    """
    if not settings.DATABASE_URL:
        raise ConfigurationError("DATABASE_URL is not set. Check your .env file.")

    is_sqlite = settings.DATABASE_URL.startswith("sqlite")
    kwargs: Dict[str, Any] = {
        "echo": settings.DEBUG,
        "connect_args": _connect_args(settings),
    }
    if "poolclass" not in engine_kwargs:
        if settings.TESTING:
            from sqlalchemy.pool import NullPool
            kwargs["poolclass"] = NullPool
        elif not is_sqlite:
            kwargs["pool_size"] = settings.DB_POOL_SIZE
            kwargs["max_overflow"] = settings.DB_MAX_OVERFLOW
            kwargs["pool_pre_ping"] = True
            kwargs["pool_recycle"] = 300
    kwargs.update(engine_kwargs)

    engine = create_async_engine(settings.DATABASE_URL, **kwargs)
    if is_sqlite:
        enable_sqlite_savepoints(engine)
    return engine


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory bound to an engine.
    expire_on_commit=False keeps objects readable after commit in async code.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


settings = get_settings()
engine = build_engine(settings)
async_session_maker = build_session_maker(engine)

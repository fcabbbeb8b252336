'''
Database engine and sessions for the billing backend.

- build_engine / build_session_factory: construct the async engine and its sessionmaker.
- init_db / close_db: called from the app lifespan to own the module-level engine.
- get_db_session: request-scoped session dependency (commit on success, rollback on error).
- atomic: unit-of-work boundary used by every mutating service operation.
- is_lock_contention / raise_for_contention: map driver lock errors to ConcurrencyConflictError.
'''
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine, async_sessionmaker

from ..common.config import settings
from ..common.exceptions import ConcurrencyConflictError
from ..common.logger import log

# Owned by the app lifespan; None until init_db runs.
engine: AsyncEngine | None = None
SessionFactory: async_sessionmaker[AsyncSession] | None = None

# Postgres SQLSTATEs raised by lock contention: lock_not_available, serialization_failure, deadlock_detected
_CONTENTION_SQLSTATES = {"55P03", "40001", "40P01"}


def build_engine(database_url: str) -> AsyncEngine:
    """
    Creates an async engine for the given URL.
    SQLite gets savepoint-capable transaction handling; Postgres gets a pool.
    """
    if database_url.startswith("sqlite"):
        new_engine = create_async_engine(database_url, echo=settings.SQL_ECHO)
        enable_sqlite_savepoints(new_engine)
        return new_engine

    return create_async_engine(
        database_url,
        echo=settings.SQL_ECHO,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=-1,
        pool_pre_ping=True
    )


def enable_sqlite_savepoints(sqlite_engine: AsyncEngine) -> None:
    """
    The sqlite driver issues its own BEGIN lazily, which breaks SAVEPOINT.
    Hand transaction control to SQLAlchemy instead.
    """
    @event.listens_for(sqlite_engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


def init_db() -> None:
    """Builds the module-level engine and session factory from settings."""
    global engine, SessionFactory

    target = "test database" if settings.TEST_MODE else "database"
    log.info(f"Connecting billing backend to the {target}...")
    try:
        engine = build_engine(settings.database_url)
        SessionFactory = build_session_factory(engine)
    except Exception as e:
        log.critical(f"Could not build the database engine: {e}", exc_info=True)
        raise
    log.info("Database engine ready.")


async def close_db() -> None:
    global engine, SessionFactory
    if engine is not None:
        await engine.dispose()
        log.info("Database engine closed.")
    engine = None
    SessionFactory = None


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    One session per request, shared by every service the route depends on.

    The request's writes are committed together once the route returns and
    rolled back together if anything raised (a BillingError included).
    """
    if SessionFactory is None:
        log.error("get_db_session called before init_db; is the app lifespan running?")
        raise RuntimeError("Database session factory is not available.")

    async with SessionFactory() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            log.warning(f"Request transaction rolled back: {e}")
            raise


@asynccontextmanager
async def atomic(session: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """
    All-or-nothing block for a multi-step write.

    Opens a SAVEPOINT when the session already has a transaction (the request
    transaction from get_db_session), otherwise a top-level transaction that
    commits on exit. Either way an exception undoes every write in the block.
    """
    if session.in_transaction():
        async with session.begin_nested():
            yield session
    else:
        async with session.begin():
            yield session


def is_lock_contention(error: DBAPIError) -> bool:
    """True when a driver error was caused by row-lock or serialization contention."""
    orig = getattr(error, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _CONTENTION_SQLSTATES:
        return True
    # sqlite reports contention as "database is locked"
    return isinstance(error, OperationalError) and "locked" in str(error).lower()


def raise_for_contention(error: DBAPIError, student_id) -> None:
    """Translates lock contention into ConcurrencyConflictError; other errors propagate unchanged."""
    if is_lock_contention(error):
        log.warning(f"Lock contention on ledger of student {student_id}: {error}")
        raise ConcurrencyConflictError(
            f"Another billing operation for student {student_id} is in progress. Retry the request."
        ) from error

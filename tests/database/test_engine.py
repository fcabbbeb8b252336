import pytest
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from lingua_school_backend.common.exceptions import ConcurrencyConflictError
from lingua_school_backend.database import models as db_models
from lingua_school_backend.database.engine import atomic, is_lock_contention, raise_for_contention
from tests.constants import UNKNOWN_ID
from tests.database.factories import StudentFactory


class FakeDriverError(Exception):
    def __init__(self, message: str, sqlstate: str):
        super().__init__(message)
        self.sqlstate = sqlstate


class TestLockContention:

    @pytest.mark.parametrize("sqlstate", ["55P03", "40001", "40P01"])
    def test_postgres_contention_codes(self, sqlstate):
        error = DBAPIError("SELECT 1", {}, FakeDriverError("could not obtain lock", sqlstate))
        assert is_lock_contention(error) is True
        with pytest.raises(ConcurrencyConflictError):
            raise_for_contention(error, UNKNOWN_ID)

    def test_sqlite_locked_database(self):
        error = OperationalError("SELECT 1", {}, Exception("database is locked"))
        assert is_lock_contention(error) is True

    def test_other_errors_pass_through(self):
        error = DBAPIError("SELECT 1", {}, FakeDriverError("syntax error", "42601"))
        assert is_lock_contention(error) is False
        # nothing raised, the caller re-raises the original
        assert raise_for_contention(error, UNKNOWN_ID) is None


@pytest.mark.anyio
class TestAtomic:

    async def count_students(self, db_session: AsyncSession) -> int:
        return len((await db_session.execute(select(db_models.Students))).scalars().all())

    async def test_failed_block_undoes_only_its_own_writes(self, db_session: AsyncSession, student):
        with pytest.raises(RuntimeError):
            async with atomic(db_session):
                StudentFactory()
                await db_session.flush()
                assert await self.count_students(db_session) == 2
                raise RuntimeError("boom")

        assert await self.count_students(db_session) == 1

    async def test_successful_block_keeps_writes(self, db_session: AsyncSession, student):
        async with atomic(db_session):
            StudentFactory()
            await db_session.flush()
        assert await self.count_students(db_session) == 2

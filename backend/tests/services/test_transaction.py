"""Tests for the transactional retry executor."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from app.crud import system_config as config_crud
from app.models.system_config import SystemConfig
from app.services.transaction import backoff_delay, is_transient_error, run_in_transaction, with_retry


class SerializationFailure(Exception):
    """Stand-in for a driver's serialization error class."""


class TestIsTransientError:
    """Test classification of retryable errors."""

    @pytest.mark.parametrize(
        "error",
        [
            RuntimeError("deadlock detected"),
            RuntimeError("could not serialize access due to concurrent update"),
            RuntimeError("Concurrent modification of row"),
            SerializationFailure("tx aborted"),
            OperationalError("UPDATE recommendations", {}, Exception("database is locked")),
        ],
    )
    def test_transient(self, error):
        """Test deadlock, serialization and contention errors are transient."""
        assert is_transient_error(error) is True

    @pytest.mark.parametrize(
        "error",
        [
            ValueError("bad input"),
            IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed")),
            KeyError("missing"),
        ],
    )
    def test_not_transient(self, error):
        """Test other errors are not retried."""
        assert is_transient_error(error) is False

    def test_wrapped_cause_is_inspected(self):
        """Test the exception chain is searched."""
        try:
            try:
                raise RuntimeError("deadlock detected")
            except RuntimeError as inner:
                raise ValueError("wrapper") from inner
        except ValueError as outer:
            assert is_transient_error(outer) is True


class TestWithRetry:
    """Test retry, backoff and exhaustion."""

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        """Test a transient failure is retried with exponential backoff."""
        unit = AsyncMock(side_effect=[RuntimeError("deadlock"), RuntimeError("deadlock"), "done"])
        sleep = AsyncMock()

        result = await with_retry(unit, max_retries=3, base_delay=0.1, max_delay=2.0, sleep=sleep)

        assert result == "done"
        assert unit.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_non_transient_propagates_immediately(self):
        """Test non-transient errors are not retried."""
        unit = AsyncMock(side_effect=ValueError("bad"))
        sleep = AsyncMock()

        with pytest.raises(ValueError):
            await with_retry(unit, max_retries=5, sleep=sleep)

        assert unit.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self):
        """Test the last error surfaces after max_retries attempts."""
        errors = [RuntimeError("deadlock 1"), RuntimeError("deadlock 2"), RuntimeError("deadlock 3")]
        unit = AsyncMock(side_effect=errors)

        with pytest.raises(RuntimeError, match="deadlock 3"):
            await with_retry(unit, max_retries=3, sleep=AsyncMock())

        assert unit.await_count == 3

    def test_backoff_is_capped(self):
        """Test delays double per attempt and stop at max_delay."""
        delays = [backoff_delay(attempt, 0.5, 3.0) for attempt in range(1, 6)]

        assert delays == [0.5, 1.0, 2.0, 3.0, 3.0]


class TestRunInTransaction:
    """Test all-or-nothing behaviour against a real session."""

    @pytest.mark.asyncio
    async def test_failed_attempt_leaves_no_partial_writes(self, session_factory):
        """Test a fault after the first write rolls the whole attempt back before retrying."""
        attempts = 0

        async def work(session):
            nonlocal attempts
            attempts += 1
            await config_crud.set_config_value(session, "t1", "agent.a", "1", updated_by="test")
            if attempts == 1:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            await config_crud.set_config_value(session, "t1", "agent.b", "2", updated_by="test")
            return attempts

        result = await run_in_transaction(session_factory, work, sleep=AsyncMock())

        assert result == 2
        async with session_factory() as session:
            values = await config_crud.get_config_values(session, "t1")
        assert values == {"agent.a": "1", "agent.b": "2"}

    @pytest.mark.asyncio
    async def test_exhausted_transaction_commits_nothing(self, session_factory):
        """Test nothing is persisted when every attempt fails."""

        async def work(session):
            await config_crud.set_config_value(session, "t1", "agent.a", "1", updated_by="test")
            raise OperationalError("INSERT", {}, Exception("deadlock detected"))

        with pytest.raises(OperationalError):
            await run_in_transaction(session_factory, work, max_retries=2, sleep=AsyncMock())

        async with session_factory() as session:
            count = await session.scalar(select(func.count(SystemConfig.id)))
        assert count == 0

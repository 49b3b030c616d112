"""
Tests for BackgroundDispatcher and OutboxWorker.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from conftest import added_objects, make_result
from consensus_audit.db.models import BackgroundTask
from consensus_audit.models.api import BackgroundTaskKind, BackgroundTaskStatus
from consensus_audit.services.dispatcher import BackgroundDispatcher, OutboxWorker, backoff_delay


def create_mock_task(
    kind: str = BackgroundTaskKind.LOW_BALANCE_EMAIL.value,
    attempts: int = 0,
    max_attempts: int = 5,
) -> MagicMock:
    task = MagicMock(spec=BackgroundTask)
    task.id = uuid4()
    task.kind = kind
    task.payload = {"user_id": "u1"}
    task.status = BackgroundTaskStatus.PENDING.value
    task.attempts = attempts
    task.max_attempts = max_attempts
    return task


def update_params(session: AsyncMock) -> dict:
    """Bound values of the last UPDATE issued on the session."""
    stmt = session.execute.await_args_list[-1].args[0]
    return stmt.compile().params


class TestBackoffDelay:
    """Tests for backoff_delay."""

    def test_doubles_per_attempt(self):
        assert backoff_delay(1) == timedelta(seconds=30)
        assert backoff_delay(2) == timedelta(seconds=60)
        assert backoff_delay(3) == timedelta(seconds=120)

    def test_capped(self):
        assert backoff_delay(12) == timedelta(seconds=3600)


class TestDispatch:
    """Tests for BackgroundDispatcher.dispatch."""

    @pytest.mark.asyncio
    async def test_persists_then_processes(self, db_session: AsyncMock, session_factory):
        dispatcher = BackgroundDispatcher({}, session_factory=session_factory)

        with patch.object(dispatcher, "process", new_callable=AsyncMock) as mock_process:
            mock_process.return_value = True
            task_id = await dispatcher.dispatch(BackgroundTaskKind.AUTO_RECHARGE, {"user_id": "u1"})
            await dispatcher.wait_idle()

        tasks = added_objects(db_session, BackgroundTask)
        assert len(tasks) == 1
        assert tasks[0].id == task_id
        assert tasks[0].kind == "auto_recharge"
        assert tasks[0].status == BackgroundTaskStatus.PENDING.value
        assert tasks[0].attempts == 0
        db_session.commit.assert_awaited_once()
        mock_process.assert_awaited_once_with(task_id)

    @pytest.mark.asyncio
    async def test_persist_failure_returns_none(self, db_session: AsyncMock, session_factory):
        """An unpersisted task is never run."""
        db_session.commit = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("down")))
        dispatcher = BackgroundDispatcher({}, session_factory=session_factory)

        with patch.object(dispatcher, "process", new_callable=AsyncMock) as mock_process:
            task_id = await dispatcher.dispatch(BackgroundTaskKind.VERDICT_EMAIL, {})
            await dispatcher.wait_idle()

        assert task_id is None
        mock_process.assert_not_awaited()


class TestProcess:
    """Tests for BackgroundDispatcher.process."""

    @pytest.mark.asyncio
    async def test_success_marks_succeeded(self, db_session: AsyncMock, session_factory):
        task = create_mock_task()
        db_session.execute = AsyncMock(side_effect=[make_result(scalar=task), make_result()])
        handler = AsyncMock()
        dispatcher = BackgroundDispatcher(
            {BackgroundTaskKind.LOW_BALANCE_EMAIL: handler}, session_factory=session_factory
        )

        assert await dispatcher.process(task.id) is True

        handler.assert_awaited_once_with(db_session, {"user_id": "u1"})
        assert task.attempts == 1
        assert update_params(db_session)["status"] == BackgroundTaskStatus.SUCCEEDED.value

    @pytest.mark.asyncio
    async def test_handler_failure_schedules_retry(self, db_session: AsyncMock, session_factory):
        task = create_mock_task(attempts=0)
        db_session.execute = AsyncMock(side_effect=[make_result(scalar=task), make_result()])
        handler = AsyncMock(side_effect=RuntimeError("smtp down"))
        dispatcher = BackgroundDispatcher(
            {BackgroundTaskKind.LOW_BALANCE_EMAIL: handler}, session_factory=session_factory
        )

        assert await dispatcher.process(task.id) is False

        db_session.rollback.assert_awaited_once()
        params = update_params(db_session)
        assert params["status"] == BackgroundTaskStatus.PENDING.value
        assert params["last_error"] == "RuntimeError: smtp down"

    @pytest.mark.asyncio
    async def test_final_attempt_marks_dead(self, db_session: AsyncMock, session_factory):
        task = create_mock_task(attempts=4, max_attempts=5)
        db_session.execute = AsyncMock(side_effect=[make_result(scalar=task), make_result()])
        handler = AsyncMock(side_effect=RuntimeError("still down"))
        dispatcher = BackgroundDispatcher(
            {BackgroundTaskKind.LOW_BALANCE_EMAIL: handler}, session_factory=session_factory
        )

        assert await dispatcher.process(task.id) is False

        assert update_params(db_session)["status"] == BackgroundTaskStatus.DEAD.value

    @pytest.mark.asyncio
    async def test_unknown_kind_is_a_failure(self, db_session: AsyncMock, session_factory):
        task = create_mock_task(kind="retired_kind")
        db_session.execute = AsyncMock(side_effect=[make_result(scalar=task), make_result()])
        dispatcher = BackgroundDispatcher({}, session_factory=session_factory)

        assert await dispatcher.process(task.id) is False

        params = update_params(db_session)
        assert params["status"] == BackgroundTaskStatus.PENDING.value
        assert params["last_error"].startswith("LookupError")

    @pytest.mark.asyncio
    async def test_unclaimable_task_skipped(self, db_session: AsyncMock, session_factory):
        """Already claimed, finished or not yet due."""
        handler = AsyncMock()
        dispatcher = BackgroundDispatcher(
            {BackgroundTaskKind.LOW_BALANCE_EMAIL: handler}, session_factory=session_factory
        )

        assert await dispatcher.process(uuid4()) is False

        handler.assert_not_awaited()
        db_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_claim_uses_skip_locked(self, db_session: AsyncMock, session_factory):
        from sqlalchemy.dialects import postgresql

        dispatcher = BackgroundDispatcher({}, session_factory=session_factory)

        await dispatcher.process(uuid4())

        stmt = db_session.execute.await_args.args[0]
        assert "FOR UPDATE SKIP LOCKED" in str(stmt.compile(dialect=postgresql.dialect()))

    @pytest.mark.asyncio
    async def test_bookkeeping_failure_returns_false(self, db_session: AsyncMock, session_factory):
        db_session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("down")))
        dispatcher = BackgroundDispatcher({}, session_factory=session_factory)

        assert await dispatcher.process(uuid4()) is False


class TestOutboxWorker:
    """Tests for OutboxWorker."""

    @pytest.mark.asyncio
    async def test_poll_once_counts_successes(self, db_session: AsyncMock, session_factory):
        due = [uuid4(), uuid4(), uuid4()]
        db_session.execute = AsyncMock(return_value=make_result(scalars=due))
        dispatcher = BackgroundDispatcher({}, session_factory=session_factory)
        worker = OutboxWorker(dispatcher, poll_interval_seconds=1, batch_size=10)

        with patch.object(dispatcher, "process", new_callable=AsyncMock) as mock_process:
            mock_process.side_effect = [True, False, True]
            succeeded = await worker.poll_once()

        assert succeeded == 2
        assert [c.args[0] for c in mock_process.await_args_list] == due

    @pytest.mark.asyncio
    async def test_poll_once_nothing_due(self, session_factory):
        dispatcher = BackgroundDispatcher({}, session_factory=session_factory)
        worker = OutboxWorker(dispatcher)

        assert await worker.poll_once() == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory):
        dispatcher = BackgroundDispatcher({}, session_factory=session_factory)
        worker = OutboxWorker(dispatcher, poll_interval_seconds=0.01)

        with patch.object(worker, "poll_once", new_callable=AsyncMock) as mock_poll:
            mock_poll.return_value = 0
            worker.start()
            await asyncio.sleep(0.05)
            await worker.stop()

        assert mock_poll.await_count >= 1
        assert worker._task is None

    @pytest.mark.asyncio
    async def test_poll_failure_keeps_running(self, session_factory):
        dispatcher = BackgroundDispatcher({}, session_factory=session_factory)
        worker = OutboxWorker(dispatcher, poll_interval_seconds=0.01)

        with patch.object(worker, "poll_once", new_callable=AsyncMock) as mock_poll:
            mock_poll.side_effect = OperationalError("SELECT", {}, Exception("down"))
            worker.start()
            await asyncio.sleep(0.05)
            await worker.stop()

        assert mock_poll.await_count >= 2

"""
Background Dispatcher - Outbox-backed detached side effects.

dispatch() persists a background_tasks row, then processes it immediately on
a detached asyncio task. The OutboxWorker re-polls rows that failed or were
abandoned and retries them with exponential backoff, so side effects survive
a process restart. Handler errors are logged and retried; they never reach
the request that dispatched them.
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from consensus_audit.config import settings
from consensus_audit.db.models import BackgroundTask
from consensus_audit.db.session import get_session
from consensus_audit.models.api import BackgroundTaskKind, BackgroundTaskStatus
from consensus_audit.observability import metrics, trace_operation

logger = get_logger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]
TaskHandler = Callable[[AsyncSession, dict[str, Any]], Awaitable[None]]

MAX_ERROR_CHARS = 2000


def backoff_delay(attempts: int) -> timedelta:
    """Delay before the next attempt, doubling per attempt up to the cap."""
    seconds = settings.outbox_backoff_base_seconds * (2 ** max(attempts - 1, 0))
    return timedelta(seconds=min(seconds, settings.outbox_backoff_max_seconds))


def _claimable(now: datetime) -> Any:
    """Rows due for a (re)try: pending and due, or processing past the lease."""
    lease_expired = now - timedelta(seconds=settings.outbox_processing_lease_seconds)
    return or_(
        and_(
            BackgroundTask.status == BackgroundTaskStatus.PENDING.value,
            BackgroundTask.next_attempt_at <= now,
        ),
        and_(
            BackgroundTask.status == BackgroundTaskStatus.PROCESSING.value,
            BackgroundTask.updated_at < lease_expired,
        ),
    )


class BackgroundDispatcher:
    """Persists and runs background tasks."""

    def __init__(
        self,
        handlers: Mapping[BackgroundTaskKind, TaskHandler],
        session_factory: SessionFactory = get_session,
        max_attempts: int | None = None,
    ) -> None:
        self.handlers = dict(handlers)
        self.session_factory = session_factory
        self.max_attempts = max_attempts or settings.outbox_max_attempts
        # Strong references keep detached tasks alive until they finish
        self._inflight: set[asyncio.Task[bool]] = set()

    async def dispatch(self, kind: BackgroundTaskKind, payload: dict[str, Any]) -> UUID | None:
        """
        Persist a task and start processing it in the background.

        Returns:
            Task ID, or None if the task could not be persisted
        """
        try:
            async with self.session_factory() as session:
                task = BackgroundTask(
                    id=uuid4(),
                    kind=kind.value,
                    payload=payload,
                    status=BackgroundTaskStatus.PENDING.value,
                    attempts=0,
                    max_attempts=self.max_attempts,
                    next_attempt_at=datetime.now(UTC),
                )
                session.add(task)
                await session.commit()
                task_id = task.id
        except SQLAlchemyError as exc:
            logger.error("background_task_persist_failed", task_kind=kind.value, error=str(exc))
            metrics.record_background_task(kind.value, "persist_failed")
            return None

        logger.info("background_task_dispatched", task_id=str(task_id), task_kind=kind.value)

        inflight = asyncio.create_task(self.process(task_id))
        self._inflight.add(inflight)
        inflight.add_done_callback(self._inflight.discard)
        return task_id

    async def process(self, task_id: UUID) -> bool:
        """
        Claim and run one task.

        Returns:
            True if the handler succeeded, False if the task was not
            claimable or the handler failed
        """
        try:
            async with self.session_factory() as session:
                claimed = await self._claim(session, task_id)
                if claimed is None:
                    return False
                kind, payload, attempts, max_attempts = claimed
                return await self._run_handler(
                    session, task_id, kind, payload, attempts, max_attempts
                )
        except SQLAlchemyError as exc:
            logger.error("background_task_bookkeeping_failed", task_id=str(task_id), error=str(exc))
            return False

    async def wait_idle(self) -> None:
        """Wait for all detached tasks started by this dispatcher."""
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def _claim(
        self, session: AsyncSession, task_id: UUID
    ) -> tuple[str, dict[str, Any], int, int] | None:
        now = datetime.now(UTC)
        stmt = (
            select(BackgroundTask)
            .where(BackgroundTask.id == task_id, _claimable(now))
            .with_for_update(skip_locked=True)
        )
        result = await session.execute(stmt)
        task = result.scalar_one_or_none()
        if task is None:
            return None

        task.status = BackgroundTaskStatus.PROCESSING.value
        task.attempts += 1
        task.updated_at = now
        claimed = (task.kind, dict(task.payload), task.attempts, task.max_attempts)
        await session.commit()
        return claimed

    async def _run_handler(
        self,
        session: AsyncSession,
        task_id: UUID,
        kind: str,
        payload: dict[str, Any],
        attempts: int,
        max_attempts: int,
    ) -> bool:
        try:
            handler = self.handlers.get(BackgroundTaskKind(kind))
        except ValueError:
            handler = None

        try:
            if handler is None:
                raise LookupError(f"No handler registered for task kind {kind}")
            with trace_operation("background_task", task_kind=kind, attempt=attempts):
                await handler(session, payload)
        except Exception as exc:
            await session.rollback()
            await self._record_failure(session, task_id, kind, attempts, max_attempts, exc)
            return False

        await session.execute(
            update(BackgroundTask)
            .where(BackgroundTask.id == task_id)
            .values(
                status=BackgroundTaskStatus.SUCCEEDED.value,
                last_error=None,
                updated_at=datetime.now(UTC),
            )
        )
        await session.commit()

        metrics.record_background_task(kind, "succeeded")
        logger.info("background_task_succeeded", task_id=str(task_id), task_kind=kind)
        return True

    async def _record_failure(
        self,
        session: AsyncSession,
        task_id: UUID,
        kind: str,
        attempts: int,
        max_attempts: int,
        exc: Exception,
    ) -> None:
        now = datetime.now(UTC)
        dead = attempts >= max_attempts
        status = BackgroundTaskStatus.DEAD if dead else BackgroundTaskStatus.PENDING

        await session.execute(
            update(BackgroundTask)
            .where(BackgroundTask.id == task_id)
            .values(
                status=status.value,
                next_attempt_at=now if dead else now + backoff_delay(attempts),
                last_error=f"{type(exc).__name__}: {exc}"[:MAX_ERROR_CHARS],
                updated_at=now,
            )
        )
        await session.commit()

        outcome = "dead" if dead else "retry"
        metrics.record_background_task(kind, outcome)
        log = logger.error if dead else logger.warning
        log(
            "background_task_failed",
            task_id=str(task_id),
            task_kind=kind,
            attempts=attempts,
            max_attempts=max_attempts,
            outcome=outcome,
            error=str(exc),
            error_type=type(exc).__name__,
        )


# ============================================================================
# Outbox Worker
# ============================================================================


class OutboxWorker:
    """Polls the outbox for due tasks; runs inside the application lifespan."""

    def __init__(
        self,
        dispatcher: BackgroundDispatcher,
        poll_interval_seconds: float | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.poll_interval_seconds = poll_interval_seconds or settings.outbox_poll_interval_seconds
        self.batch_size = batch_size or settings.outbox_batch_size
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        """Start polling in the background."""
        if self._task is None:
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())
            logger.info("outbox_worker_started", poll_interval=self.poll_interval_seconds)

    async def stop(self) -> None:
        """Stop polling and wait for in-flight work."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        await self.dispatcher.wait_idle()
        logger.info("outbox_worker_stopped")

    async def poll_once(self) -> int:
        """
        Process one batch of due tasks.

        Returns:
            Number of tasks that succeeded
        """
        async with self.dispatcher.session_factory() as session:
            stmt = (
                select(BackgroundTask.id)
                .where(_claimable(datetime.now(UTC)))
                .order_by(BackgroundTask.next_attempt_at)
                .limit(self.batch_size)
            )
            result = await session.execute(stmt)
            task_ids = list(result.scalars().all())

        succeeded = 0
        for task_id in task_ids:
            if await self.dispatcher.process(task_id):
                succeeded += 1

        if task_ids:
            logger.info("outbox_batch_processed", due=len(task_ids), succeeded=succeeded)
        return succeeded

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.poll_once()
            except SQLAlchemyError as exc:
                logger.error("outbox_poll_failed", error=str(exc))

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval_seconds)
            except TimeoutError:
                continue

"""
Broadcast Bot — Broadcast Scheduler.

Owns the lifecycle of scheduled broadcasts:

    pending ──sweep──▶ dispatching ──▶ sent | failed
       │
       └──cancel──▶ canceled

Tasks live in SQLite, so nothing is lost on restart. A periodic sweep
(registered on the Telegram JobQueue by the bot layer) claims every pending
task whose time has come and hands it to the dispatcher exactly once.
Finished tasks keep their terminal status for /list_scheduled history.

This module is provider-agnostic: it depends on the NotificationPort and
UserDirectory protocols (via the dispatcher), not on Telegram.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Callable

from src.core.errors import EmptyMessage, InvalidTimeFormat, TimeNotInFuture
from src.core.parser import latest_instant, now_ms
from src.data.models import Audience, ScheduledTask, TaskStatus

if TYPE_CHECKING:
    from src.core.dispatcher import BroadcastDispatcher, DispatchOutcome
    from src.data.db import BroadcastDB
    from src.ports.user_directory_port import UserDirectory

logger = logging.getLogger(__name__)


def new_task_id(now: int) -> str:
    return f"msg_{now}_{uuid.uuid4().hex[:6]}"


class BroadcastScheduler:
    """Task store facade plus the sweep trigger.

    schedule/cancel/claim run under one asyncio.Lock, so a sweep never sees a
    half-applied command. Dispatches of different tasks run concurrently;
    recipients within one task are always sent in sequence.
    """

    def __init__(
        self,
        db: BroadcastDB,
        directory: UserDirectory,
        dispatcher: BroadcastDispatcher,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._db = db
        self._directory = directory
        self._dispatcher = dispatcher
        self._clock = clock
        self._lock = asyncio.Lock()

    def now(self) -> int:
        return self._clock()

    async def schedule(
        self,
        content: str,
        scheduled_time: int,
        audience: Audience,
        created_by: int,
        parse_mode: str | None = "Markdown",
    ) -> ScheduledTask:
        """Persist a new pending task.

        Raises:
            TimeNotInFuture: ``scheduled_time`` is not after now.
            InvalidTimeFormat: ``scheduled_time`` is past the last representable date.
            EmptyMessage: ``content`` is blank.
        """
        if not content.strip():
            raise EmptyMessage("Message content cannot be empty.")
        if scheduled_time > latest_instant():
            raise InvalidTimeFormat("Scheduled time is too far in the future.")

        async with self._lock:
            now = self._clock()
            if scheduled_time <= now:
                raise TimeNotInFuture("Scheduled time must be in the future.")
            task = ScheduledTask(
                id=new_task_id(now),
                content=content,
                parse_mode=parse_mode,
                scheduled_time=scheduled_time,
                audience=audience,
                created_by=created_by,
                created_at=now,
            )
            self._db.add_task(task)

        logger.info(
            "Admin %d scheduled %s for %d → %s",
            created_by, task.id, scheduled_time, audience.describe(),
        )
        return task

    async def cancel(self, task_id: str) -> bool:
        """Cancel a pending task. False means unknown, already sent, or in flight."""
        async with self._lock:
            return self._db.cancel_task(task_id)

    def list_tasks(self, include_history: bool = False) -> list[ScheduledTask]:
        if include_history:
            return self._db.list_tasks()
        return self._db.list_tasks(status=TaskStatus.PENDING)

    async def sweep(self) -> list[DispatchOutcome]:
        """Claim all due tasks and dispatch them."""
        async with self._lock:
            due = self._db.claim_due_tasks(self._clock())
        if not due:
            return []

        logger.info("Sweep found %d due task(s)", len(due))
        results = await asyncio.gather(*(self._run(task) for task in due))
        return [r for r in results if r is not None]

    def interrupted_tasks(self) -> list[ScheduledTask]:
        """Tasks left mid-dispatch by the previous process.

        Only meaningful at startup, before the first sweep claims anything.
        """
        return self._db.list_tasks(status=TaskStatus.DISPATCHING)

    async def resume(self, tasks: list[ScheduledTask]) -> list[DispatchOutcome]:
        """Finish interrupted dispatches, sending only to recipients without an outcome."""
        if not tasks:
            return []
        logger.warning("Resuming %d interrupted broadcast(s)", len(tasks))
        results = await asyncio.gather(*(self._run(task) for task in tasks))
        return [r for r in results if r is not None]

    async def recover(self) -> list[DispatchOutcome]:
        """interrupted_tasks() + resume() in one call."""
        return await self.resume(self.interrupted_tasks())

    async def _run(self, task: ScheduledTask) -> DispatchOutcome | None:
        try:
            return await self._dispatcher.dispatch(task, self._directory)
        except Exception:
            # Task stays dispatching; recover() resumes it on the next start.
            logger.exception("Dispatch of task %s crashed", task.id)
            return None

"""
Broadcast Bot — Dispatcher.

Delivers one claimed task to its audience:

1. Snapshot the resolved audience into the delivery log (skipped when a
   snapshot already exists, i.e. when resuming after a restart).
2. Send to every recipient without a recorded outcome, one at a time, with a
   fixed pause between sends to stay under Telegram's rate limits.
3. Store the final status and report the counts to the task's creator.

A failing recipient is counted and skipped, never retried. Delivery and
audience-resolution failures end up in the task record and the report
rather than propagating.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from src.core.audience import resolve_audience
from src.data.models import ScheduledTask, TaskStatus

if TYPE_CHECKING:
    from src.data.db import BroadcastDB
    from src.ports.notification_port import NotificationPort
    from src.ports.user_directory_port import UserDirectory

logger = logging.getLogger(__name__)

REPORT_PREVIEW_CHARS = 100


@dataclass
class DispatchOutcome:
    task_id: str
    status: TaskStatus
    success_count: int
    failure_count: int
    error_summary: str | None = None

    @property
    def total(self) -> int:
        return self.success_count + self.failure_count


class BroadcastDispatcher:
    """Sends a task's content to its recipients and reports back."""

    def __init__(
        self,
        db: BroadcastDB,
        notifier: NotificationPort,
        send_delay: float = 0.05,
        timeout: float | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._db = db
        self._notifier = notifier
        self._send_delay = send_delay
        self._timeout = timeout or None
        self._monotonic = monotonic

    async def dispatch(self, task: ScheduledTask, directory: UserDirectory) -> DispatchOutcome:
        try:
            if task.recipient_count is None:
                recipients = resolve_audience(task.audience, directory)
                self._db.snapshot_recipients(task.id, recipients)
            pending = self._db.unattempted_recipients(task.id)
        except Exception as exc:
            logger.exception("Audience resolution failed for task %s", task.id)
            error = f"Audience resolution failed: {exc}"
            success, failure = self._db.delivery_counts(task.id)
            outcome = DispatchOutcome(task.id, TaskStatus.FAILED, success, failure, error)
            self._db.finish_task(task.id, outcome.status, success, failure, error)
            await self._report(task, outcome)
            return outcome

        logger.info("Dispatching task %s to %d recipients", task.id, len(pending))
        await self._deliver_all(task, pending)

        success, failure = self._db.delivery_counts(task.id)
        if success > 0 or failure == 0:
            status = TaskStatus.SENT
        else:
            status = TaskStatus.FAILED
        error = None
        if failure:
            error = f"Failed to send to {failure} of {success + failure} recipients"

        outcome = DispatchOutcome(task.id, status, success, failure, error)
        self._db.finish_task(task.id, status, success, failure, error)
        await self._report(task, outcome)
        return outcome

    async def _deliver_all(self, task: ScheduledTask, recipients: list[int]) -> None:
        deadline = self._monotonic() + self._timeout if self._timeout else None

        for idx, chat_id in enumerate(recipients):
            if deadline is not None and self._monotonic() >= deadline:
                skipped = recipients[idx:]
                logger.warning(
                    "Task %s hit its dispatch timeout; %d recipients not attempted",
                    task.id, len(skipped),
                )
                for remaining in skipped:
                    self._db.record_delivery(task.id, remaining, ok=False, error="timed out")
                return

            try:
                await self._notifier.send_message(chat_id, task.content, parse_mode=task.parse_mode)
            except Exception as exc:
                logger.warning("Task %s: delivery to %d failed: %s", task.id, chat_id, exc)
                self._db.record_delivery(task.id, chat_id, ok=False, error=str(exc)[:500])
            else:
                self._db.record_delivery(task.id, chat_id, ok=True)

            if idx < len(recipients) - 1 and self._send_delay > 0:
                await asyncio.sleep(self._send_delay)

    async def _report(self, task: ScheduledTask, outcome: DispatchOutcome) -> None:
        """Tell the creator how it went. A failed report is only logged."""
        try:
            await self._notifier.send_message(task.created_by, format_report(task, outcome))
        except Exception as exc:
            logger.error(
                "Failed to send completion report for task %s to %d: %s",
                task.id, task.created_by, exc,
            )


def format_report(task: ScheduledTask, outcome: DispatchOutcome) -> str:
    """Plain-text completion report for the admin who scheduled the task."""
    if outcome.status is TaskStatus.SENT:
        header = "✅ Scheduled message delivered"
    else:
        header = "❌ Scheduled message failed to deliver"
    lines = [
        header,
        "",
        f"Task ID: {task.id}",
        f"Successful: {outcome.success_count}",
        f"Failed: {outcome.failure_count}",
        f"Total recipients: {outcome.total}",
    ]
    if outcome.error_summary:
        lines.append(f"Error: {outcome.error_summary}")
    lines.append("----")
    lines.append(task.preview(REPORT_PREVIEW_CHARS))
    return "\n".join(lines)

"""Tests for src.core.dispatcher — sequential delivery, outcomes, reports."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.core.dispatcher import BroadcastDispatcher, DispatchOutcome, format_report
from src.data.models import Audience, AudienceKind, ScheduledTask, TaskStatus

ADMIN = 111


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _directory(all_ids=(), connected_ids=()):
    directory = MagicMock()
    directory.all_chat_ids.return_value = list(all_ids)
    directory.connected_chat_ids.return_value = list(connected_ids)
    return directory


def _claimed_task(broadcast_db, audience=None, content="Hello"):
    broadcast_db.add_task(ScheduledTask(
        id="msg_1",
        content=content,
        scheduled_time=1_000,
        audience=audience or Audience(AudienceKind.ALL),
        created_by=ADMIN,
    ))
    (task,) = broadcast_db.claim_due_tasks(now=1_000)
    return task


def _recipient_calls(notifier):
    return [c.args[0] for c in notifier.send_message.call_args_list if c.args[0] != ADMIN]


def _report_text(notifier):
    reports = [c.args[1] for c in notifier.send_message.call_args_list if c.args[0] == ADMIN]
    assert len(reports) == 1
    return reports[0]


# ---------------------------------------------------------------------------
# dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_rest(self, broadcast_db):
        notifier = AsyncMock()

        async def send(chat_id, text, parse_mode=None):
            if chat_id == 2:
                raise RuntimeError("Forbidden: bot was blocked by the user")

        notifier.send_message.side_effect = send
        task = _claimed_task(broadcast_db)
        dispatcher = BroadcastDispatcher(broadcast_db, notifier, send_delay=0)

        outcome = await dispatcher.dispatch(task, _directory([1, 2, 3]))

        assert _recipient_calls(notifier) == [1, 2, 3]
        assert outcome.success_count == 2
        assert outcome.failure_count == 1
        assert outcome.status is TaskStatus.SENT
        assert outcome.error_summary == "Failed to send to 1 of 3 recipients"
        report = _report_text(notifier)
        assert "Successful: 2" in report
        assert "Failed: 1" in report
        assert "Total recipients: 3" in report

        stored = broadcast_db.get_task("msg_1")
        assert stored.status is TaskStatus.SENT
        assert (stored.success_count, stored.failure_count) == (2, 1)

    @pytest.mark.asyncio
    async def test_content_sent_with_parse_mode(self, broadcast_db):
        notifier = AsyncMock()
        task = _claimed_task(broadcast_db, content="*Bold* news")
        dispatcher = BroadcastDispatcher(broadcast_db, notifier, send_delay=0)

        await dispatcher.dispatch(task, _directory([7]))

        notifier.send_message.assert_any_call(7, "*Bold* news", parse_mode="Markdown")

    @pytest.mark.asyncio
    async def test_empty_audience_is_sent_not_failed(self, broadcast_db):
        notifier = AsyncMock()
        task = _claimed_task(broadcast_db)
        dispatcher = BroadcastDispatcher(broadcast_db, notifier, send_delay=0)

        outcome = await dispatcher.dispatch(task, _directory([]))

        assert outcome == DispatchOutcome("msg_1", TaskStatus.SENT, 0, 0, None)
        assert "Total recipients: 0" in _report_text(notifier)

    @pytest.mark.asyncio
    async def test_every_recipient_failing_marks_failed(self, broadcast_db):
        notifier = AsyncMock()

        async def send(chat_id, text, parse_mode=None):
            if chat_id != ADMIN:
                raise RuntimeError("chat not found")

        notifier.send_message.side_effect = send
        task = _claimed_task(broadcast_db)
        dispatcher = BroadcastDispatcher(broadcast_db, notifier, send_delay=0)

        outcome = await dispatcher.dispatch(task, _directory([1, 2]))

        assert outcome.status is TaskStatus.FAILED
        assert broadcast_db.get_task("msg_1").status is TaskStatus.FAILED
        assert "failed to deliver" in _report_text(notifier)

    @pytest.mark.asyncio
    async def test_resolution_error_marks_failed_and_reports(self, broadcast_db):
        notifier = AsyncMock()
        directory = MagicMock()
        directory.all_chat_ids.side_effect = RuntimeError("store offline")
        task = _claimed_task(broadcast_db)
        dispatcher = BroadcastDispatcher(broadcast_db, notifier, send_delay=0)

        outcome = await dispatcher.dispatch(task, directory)

        assert outcome.status is TaskStatus.FAILED
        assert "store offline" in outcome.error_summary
        assert "store offline" in _report_text(notifier)
        assert broadcast_db.get_task("msg_1").status is TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_report_failure_is_swallowed(self, broadcast_db):
        notifier = AsyncMock()

        async def send(chat_id, text, parse_mode=None):
            if chat_id == ADMIN:
                raise RuntimeError("admin blocked the bot")

        notifier.send_message.side_effect = send
        task = _claimed_task(broadcast_db)
        dispatcher = BroadcastDispatcher(broadcast_db, notifier, send_delay=0)

        outcome = await dispatcher.dispatch(task, _directory([1]))

        assert outcome.status is TaskStatus.SENT
        # one delivery plus exactly one report attempt
        assert notifier.send_message.await_count == 2

    @pytest.mark.asyncio
    async def test_sleeps_between_sends_only(self, broadcast_db):
        notifier = AsyncMock()
        task = _claimed_task(broadcast_db)
        dispatcher = BroadcastDispatcher(broadcast_db, notifier, send_delay=0.05)

        with patch("src.core.dispatcher.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            await dispatcher.dispatch(task, _directory([1, 2, 3]))

        assert mock_sleep.await_count == 2
        mock_sleep.assert_awaited_with(0.05)

    @pytest.mark.asyncio
    async def test_timeout_marks_unattempted_as_failed(self, broadcast_db):
        notifier = AsyncMock()
        task = _claimed_task(broadcast_db)
        # deadline computed at t=0; first recipient sent at t=1, second check at t=10
        ticks = iter([0, 1, 10])
        dispatcher = BroadcastDispatcher(
            broadcast_db, notifier, send_delay=0, timeout=5, monotonic=lambda: next(ticks),
        )

        outcome = await dispatcher.dispatch(task, _directory([1, 2, 3]))

        assert _recipient_calls(notifier) == [1]
        assert (outcome.success_count, outcome.failure_count) == (1, 2)
        assert outcome.status is TaskStatus.SENT


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_skips_recipients_with_outcome(self, broadcast_db):
        task = _claimed_task(broadcast_db)
        broadcast_db.snapshot_recipients("msg_1", [1, 2, 3])
        broadcast_db.record_delivery("msg_1", 1, ok=True)
        task = broadcast_db.get_task("msg_1")

        notifier = AsyncMock()
        directory = _directory([1, 2, 3, 4])
        dispatcher = BroadcastDispatcher(broadcast_db, notifier, send_delay=0)

        outcome = await dispatcher.dispatch(task, directory)

        # recipient 4 joined after the snapshot and is not added
        assert _recipient_calls(notifier) == [2, 3]
        directory.all_chat_ids.assert_not_called()
        assert (outcome.success_count, outcome.failure_count) == (3, 0)


class TestFormatReport:
    def test_preview_truncated(self):
        task = ScheduledTask(
            id="msg_9", content="x" * 150, scheduled_time=0,
            audience=Audience(AudienceKind.ALL), created_by=ADMIN,
        )
        text = format_report(task, DispatchOutcome("msg_9", TaskStatus.SENT, 1, 0))
        assert "x" * 100 + "..." in text
        assert "x" * 101 not in text
        assert "Task ID: msg_9" in text

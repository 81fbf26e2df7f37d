"""Tests for src.data.db — BroadcastDB and TrackedUserDB (SQLite storage)."""

import sqlite3

import pytest

from src.data.models import Audience, AudienceKind, ScheduledTask, TaskStatus


def _task(task_id="msg_1", scheduled_time=1_000, audience=None, content="Hello"):
    return ScheduledTask(
        id=task_id,
        content=content,
        scheduled_time=scheduled_time,
        audience=audience or Audience(AudienceKind.ALL),
        created_by=111,
        created_at=500,
    )


# ---------------------------------------------------------------------------
# BroadcastDB — tasks
# ---------------------------------------------------------------------------


class TestBroadcastDBTasks:
    def test_add_and_get(self, broadcast_db):
        broadcast_db.add_task(_task(audience=Audience(AudienceKind.EXPLICIT, (5, 6))))
        fetched = broadcast_db.get_task("msg_1")
        assert fetched is not None
        assert fetched.content == "Hello"
        assert fetched.status is TaskStatus.PENDING
        assert fetched.audience == Audience(AudienceKind.EXPLICIT, (5, 6))
        assert fetched.parse_mode == "Markdown"
        assert fetched.recipient_count is None

    def test_get_missing(self, broadcast_db):
        assert broadcast_db.get_task("nope") is None

    def test_duplicate_id_rejected(self, broadcast_db):
        broadcast_db.add_task(_task())
        with pytest.raises(sqlite3.IntegrityError):
            broadcast_db.add_task(_task())

    def test_list_sorted_by_time(self, broadcast_db):
        broadcast_db.add_task(_task("b", scheduled_time=2_000))
        broadcast_db.add_task(_task("a", scheduled_time=1_000))
        assert [t.id for t in broadcast_db.list_tasks()] == ["a", "b"]

    def test_list_filtered_by_status(self, broadcast_db):
        broadcast_db.add_task(_task("a"))
        broadcast_db.add_task(_task("b"))
        broadcast_db.cancel_task("a")
        assert [t.id for t in broadcast_db.list_tasks(TaskStatus.PENDING)] == ["b"]
        assert [t.id for t in broadcast_db.list_tasks(TaskStatus.CANCELED)] == ["a"]

    def test_cancel_only_pending(self, broadcast_db):
        broadcast_db.add_task(_task())
        assert broadcast_db.cancel_task("msg_1") is True
        assert broadcast_db.cancel_task("msg_1") is False
        assert broadcast_db.cancel_task("unknown") is False

    def test_cancel_in_flight_is_noop(self, broadcast_db):
        broadcast_db.add_task(_task(scheduled_time=1_000))
        broadcast_db.claim_due_tasks(now=1_000)
        assert broadcast_db.cancel_task("msg_1") is False
        assert broadcast_db.get_task("msg_1").status is TaskStatus.DISPATCHING


class TestBroadcastDBClaim:
    def test_claims_only_due_pending(self, broadcast_db):
        broadcast_db.add_task(_task("due", scheduled_time=1_000))
        broadcast_db.add_task(_task("later", scheduled_time=5_000))
        broadcast_db.add_task(_task("canceled", scheduled_time=900))
        broadcast_db.cancel_task("canceled")

        claimed = broadcast_db.claim_due_tasks(now=1_000)

        assert [t.id for t in claimed] == ["due"]
        assert claimed[0].status is TaskStatus.DISPATCHING
        assert claimed[0].sent_time == 1_000
        stored = broadcast_db.get_task("due")
        assert stored.status is TaskStatus.DISPATCHING
        assert stored.sent_time == 1_000

    def test_claim_is_once_only(self, broadcast_db):
        broadcast_db.add_task(_task(scheduled_time=1_000))
        assert len(broadcast_db.claim_due_tasks(now=2_000)) == 1
        assert broadcast_db.claim_due_tasks(now=3_000) == []

    def test_finish_task(self, broadcast_db):
        broadcast_db.add_task(_task())
        broadcast_db.finish_task("msg_1", TaskStatus.FAILED, 0, 3, "Failed to send to 3 of 3 recipients")
        stored = broadcast_db.get_task("msg_1")
        assert stored.status is TaskStatus.FAILED
        assert stored.failure_count == 3
        assert stored.error_summary.startswith("Failed to send")


class TestBroadcastDBDeliveries:
    def test_snapshot_and_outcomes(self, broadcast_db):
        broadcast_db.add_task(_task())
        broadcast_db.snapshot_recipients("msg_1", [30, 10, 20])

        assert broadcast_db.get_task("msg_1").recipient_count == 3
        assert broadcast_db.unattempted_recipients("msg_1") == [30, 10, 20]

        broadcast_db.record_delivery("msg_1", 30, ok=True)
        broadcast_db.record_delivery("msg_1", 10, ok=False, error="Forbidden")

        assert broadcast_db.unattempted_recipients("msg_1") == [20]
        assert broadcast_db.delivery_counts("msg_1") == (1, 1)

    def test_empty_snapshot_is_recorded(self, broadcast_db):
        broadcast_db.add_task(_task())
        broadcast_db.snapshot_recipients("msg_1", [])
        assert broadcast_db.get_task("msg_1").recipient_count == 0
        assert broadcast_db.delivery_counts("msg_1") == (0, 0)


# ---------------------------------------------------------------------------
# TrackedUserDB
# ---------------------------------------------------------------------------


class TestTrackedUserDB:
    def test_track_new_user(self, user_db):
        user_db.track_interaction(42, display_name="Ann", username="ann")
        user = user_db.get_user(42)
        assert user is not None
        assert user.display_name == "Ann"
        assert user.wallet_connected is False
        assert user.first_seen == user.last_activity

    def test_track_again_keeps_first_seen_and_names(self, user_db):
        user_db.track_interaction(42, display_name="Ann", username="ann")
        first = user_db.get_user(42)
        user_db.track_interaction(42)
        again = user_db.get_user(42)
        assert again.first_seen == first.first_seen
        assert again.last_activity >= first.last_activity
        assert again.display_name == "Ann"
        assert again.username == "ann"

    def test_connected_ids(self, user_db):
        user_db.track_interaction(1)
        user_db.track_interaction(2)
        user_db.mark_wallet_connected(2, "EQabc")
        assert user_db.all_chat_ids() == [1, 2]
        assert user_db.connected_chat_ids() == [2]
        assert user_db.get_user(2).wallet_address == "EQabc"

    def test_connect_unknown_user_tracks_them(self, user_db):
        user_db.mark_wallet_connected(9, "EQxyz")
        assert user_db.all_chat_ids() == [9]
        assert user_db.connected_chat_ids() == [9]

    def test_disconnect(self, user_db):
        user_db.mark_wallet_connected(3, "EQ1")
        assert user_db.mark_wallet_disconnected(3) is True
        assert user_db.mark_wallet_disconnected(3) is False
        assert user_db.connected_chat_ids() == []
        assert user_db.get_user(3).wallet_address is None

    def test_empty_store(self, user_db):
        assert user_db.all_chat_ids() == []
        assert user_db.connected_chat_ids() == []
        assert user_db.list_users() == []

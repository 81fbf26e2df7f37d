"""
Broadcast Bot — SQLite storage.

Two stores share one database file:

- BroadcastDB: scheduled broadcast tasks plus a per-recipient delivery log.
  The delivery log is the audience snapshot taken when dispatch begins; it
  lets an interrupted dispatch resume without re-sending to anyone who
  already has a recorded outcome.
- TrackedUserDB: every chat that has interacted with the bot, and whether it
  has a wallet connected. Broadcast code only reads it.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from pathlib import Path

from src.data.models import Audience, ScheduledTask, TaskStatus, TrackedUser

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class BroadcastDB:
    """SQLite-backed storage for scheduled broadcasts."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Create the tasks and deliveries tables if they don't exist."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS scheduled_tasks (
                    id              TEXT    PRIMARY KEY,
                    content         TEXT    NOT NULL,
                    parse_mode      TEXT,
                    scheduled_time  INTEGER NOT NULL,
                    audience        TEXT    NOT NULL,
                    created_by      INTEGER NOT NULL,
                    status          TEXT    NOT NULL DEFAULT 'pending',
                    created_at      INTEGER NOT NULL,
                    sent_time       INTEGER,
                    error_summary   TEXT,
                    recipient_count INTEGER,
                    success_count   INTEGER NOT NULL DEFAULT 0,
                    failure_count   INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_status_time
                ON scheduled_tasks (status, scheduled_time)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS broadcast_deliveries (
                    task_id      TEXT    NOT NULL,
                    position     INTEGER NOT NULL,
                    chat_id      INTEGER NOT NULL,
                    outcome      INTEGER,
                    error        TEXT,
                    attempted_at INTEGER,
                    PRIMARY KEY (task_id, chat_id)
                )
            """)
        logger.debug("Broadcast tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> ScheduledTask:
        return ScheduledTask(
            id=row["id"],
            content=row["content"],
            parse_mode=row["parse_mode"],
            scheduled_time=row["scheduled_time"],
            audience=Audience.from_column(row["audience"]),
            created_by=row["created_by"],
            status=TaskStatus(row["status"]),
            created_at=row["created_at"],
            sent_time=row["sent_time"],
            error_summary=row["error_summary"],
            recipient_count=row["recipient_count"],
            success_count=row["success_count"],
            failure_count=row["failure_count"],
        )

    # -- tasks ---------------------------------------------------------------

    def add_task(self, task: ScheduledTask) -> ScheduledTask:
        """Insert a new task. Raises sqlite3.IntegrityError on a duplicate ID."""
        if not task.created_at:
            task.created_at = _now_ms()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO scheduled_tasks
                    (id, content, parse_mode, scheduled_time, audience,
                     created_by, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id, task.content, task.parse_mode, task.scheduled_time,
                    task.audience.to_column(), task.created_by,
                    task.status.value, task.created_at,
                ),
            )
        logger.info(
            "Task %s stored for %d (%s)",
            task.id, task.scheduled_time, task.audience.describe(),
        )
        return task

    def get_task(self, task_id: str) -> ScheduledTask | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_tasks(self, status: TaskStatus | None = None) -> list[ScheduledTask]:
        """List tasks ordered by scheduled time, optionally filtered by status."""
        query = "SELECT * FROM scheduled_tasks"
        params: list = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY scheduled_time, created_at"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(r) for r in rows]

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a pending task. Returns False if it isn't pending (or doesn't exist)."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE scheduled_tasks SET status = ? WHERE id = ? AND status = ?",
                (TaskStatus.CANCELED.value, task_id, TaskStatus.PENDING.value),
            )
        canceled = cursor.rowcount > 0
        if canceled:
            logger.info("Task %s canceled", task_id)
        return canceled

    def claim_due_tasks(self, now: int) -> list[ScheduledTask]:
        """Move every pending task due at or before ``now`` to dispatching.

        Each task is claimed with a conditional UPDATE, so a task can only be
        claimed once even if two sweeps overlap.
        """
        claimed: list[ScheduledTask] = []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM scheduled_tasks
                WHERE status = ? AND scheduled_time <= ?
                ORDER BY scheduled_time, created_at
                """,
                (TaskStatus.PENDING.value, now),
            ).fetchall()
            for row in rows:
                cursor = conn.execute(
                    """
                    UPDATE scheduled_tasks SET status = ?, sent_time = ?
                    WHERE id = ? AND status = ?
                    """,
                    (TaskStatus.DISPATCHING.value, now, row["id"], TaskStatus.PENDING.value),
                )
                if cursor.rowcount == 0:
                    continue
                task = self._row_to_task(row)
                task.status = TaskStatus.DISPATCHING
                task.sent_time = now
                claimed.append(task)
        if claimed:
            logger.info("Claimed %d due task(s)", len(claimed))
        return claimed

    def finish_task(
        self,
        task_id: str,
        status: TaskStatus,
        success_count: int,
        failure_count: int,
        error_summary: str | None = None,
    ) -> None:
        """Record the terminal outcome of a dispatch."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE scheduled_tasks
                SET status = ?, success_count = ?, failure_count = ?, error_summary = ?
                WHERE id = ?
                """,
                (status.value, success_count, failure_count, error_summary, task_id),
            )
        logger.info(
            "Task %s finished: %s (ok=%d, failed=%d)",
            task_id, status.value, success_count, failure_count,
        )

    # -- per-recipient delivery log -------------------------------------------

    def snapshot_recipients(self, task_id: str, chat_ids: list[int]) -> None:
        """Store the resolved audience for a task, in send order."""
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT OR IGNORE INTO broadcast_deliveries (task_id, position, chat_id)
                VALUES (?, ?, ?)
                """,
                [(task_id, pos, chat_id) for pos, chat_id in enumerate(chat_ids)],
            )
            conn.execute(
                "UPDATE scheduled_tasks SET recipient_count = ? WHERE id = ?",
                (len(chat_ids), task_id),
            )
        logger.debug("Task %s audience snapshot: %d recipients", task_id, len(chat_ids))

    def unattempted_recipients(self, task_id: str) -> list[int]:
        """Recipients in the snapshot that have no recorded outcome yet."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT chat_id FROM broadcast_deliveries
                WHERE task_id = ? AND outcome IS NULL
                ORDER BY position
                """,
                (task_id,),
            ).fetchall()
        return [r["chat_id"] for r in rows]

    def record_delivery(
        self, task_id: str, chat_id: int, ok: bool, error: str | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE broadcast_deliveries
                SET outcome = ?, error = ?, attempted_at = ?
                WHERE task_id = ? AND chat_id = ?
                """,
                (int(ok), error, _now_ms(), task_id, chat_id),
            )

    def delivery_counts(self, task_id: str) -> tuple[int, int]:
        """Return (successes, failures) recorded for a task."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COALESCE(SUM(CASE WHEN outcome = 1 THEN 1 ELSE 0 END), 0) AS ok,
                    COALESCE(SUM(CASE WHEN outcome = 0 THEN 1 ELSE 0 END), 0) AS failed
                FROM broadcast_deliveries WHERE task_id = ?
                """,
                (task_id,),
            ).fetchone()
        return row["ok"], row["failed"]


class TrackedUserDB:
    """SQLite-backed registry of every chat that has used the bot."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tracked_users (
                    chat_id          INTEGER PRIMARY KEY,
                    display_name     TEXT,
                    username         TEXT,
                    first_seen       INTEGER NOT NULL,
                    last_activity    INTEGER NOT NULL,
                    wallet_connected INTEGER NOT NULL DEFAULT 0,
                    wallet_address   TEXT
                )
            """)
        logger.debug("Tracked users table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> TrackedUser:
        return TrackedUser(
            chat_id=row["chat_id"],
            display_name=row["display_name"],
            username=row["username"],
            first_seen=row["first_seen"],
            last_activity=row["last_activity"],
            wallet_connected=bool(row["wallet_connected"]),
            wallet_address=row["wallet_address"],
        )

    def track_interaction(
        self,
        chat_id: int,
        display_name: str | None = None,
        username: str | None = None,
    ) -> None:
        """Record that a chat interacted with the bot.

        New chats get ``first_seen``; known chats only have their activity
        time refreshed (and names, when provided).
        """
        now = _now_ms()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tracked_users
                    (chat_id, display_name, username, first_seen, last_activity)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(chat_id) DO UPDATE SET
                    last_activity = excluded.last_activity,
                    display_name  = COALESCE(excluded.display_name, display_name),
                    username      = COALESCE(excluded.username, username)
                """,
                (chat_id, display_name, username, now, now),
            )
        logger.debug("Interaction tracked for chat %d", chat_id)

    def mark_wallet_connected(self, chat_id: int, wallet_address: str) -> None:
        now = _now_ms()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tracked_users
                    (chat_id, first_seen, last_activity, wallet_connected, wallet_address)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT(chat_id) DO UPDATE SET
                    last_activity = excluded.last_activity,
                    wallet_connected = 1,
                    wallet_address = excluded.wallet_address
                """,
                (chat_id, now, now, wallet_address),
            )
        logger.info("Wallet connected for chat %d", chat_id)

    def mark_wallet_disconnected(self, chat_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE tracked_users SET wallet_connected = 0, wallet_address = NULL
                WHERE chat_id = ? AND wallet_connected = 1
                """,
                (chat_id,),
            )
        disconnected = cursor.rowcount > 0
        if disconnected:
            logger.info("Wallet disconnected for chat %d", chat_id)
        return disconnected

    def get_user(self, chat_id: int) -> TrackedUser | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tracked_users WHERE chat_id = ?", (chat_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def list_users(self) -> list[TrackedUser]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tracked_users ORDER BY first_seen, chat_id"
            ).fetchall()
        return [self._row_to_user(r) for r in rows]

    def all_chat_ids(self) -> list[int]:
        """Every chat ever recorded, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT chat_id FROM tracked_users ORDER BY first_seen, chat_id"
            ).fetchall()
        return [r["chat_id"] for r in rows]

    def connected_chat_ids(self) -> list[int]:
        """Chats that currently have a wallet connected."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT chat_id FROM tracked_users
                WHERE wallet_connected = 1 ORDER BY first_seen, chat_id
                """
            ).fetchall()
        return [r["chat_id"] for r in rows]

"""
SQLite adapters for the control plane's collaborators.

One database file (WAL mode) backs:
- SqliteStatusStore: RemoteStatusStore with a per-test revision counter
  as the change snapshot
- SqliteMessageChannel: MessageChannel with visibility timeouts, so an
  unacked message is redelivered once its timeout lapses
- SqliteScheduleRepository: ScheduleRepository for pending items and history
- QueueTestLauncher: TestLauncher that publishes test messages to a queue

Any sqlite3 error surfaces as TransientIOError.
"""

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from .collaborators import ChannelMessage, RemoteStatus, StatusFetch
from .entities import HistoricalEntry, ScheduleItem, now_ms
from .errors import TransientIOError


logger = logging.getLogger(__name__)

# Seconds between polls of an empty queue inside receive()
RECEIVE_POLL_INTERVAL = 0.25

# Keys of a test message that must never be logged
SECRET_MESSAGE_KEYS = frozenset({"envVariables"})


def loggable_message(test_message: dict) -> dict:
    """Copy of a test message with secret-bearing keys removed."""
    return {k: v for k, v in test_message.items() if k not in SECRET_MESSAGE_KEYS}


class PersistenceAdapter:
    """
    SQLite connection management and schema for the control plane.

    Holds no business logic; the store, channel and repository classes
    below build on it.
    """

    def __init__(self, db_path: str | Path):
        """
        Initialize persistence adapter.

        Args:
            db_path: Path to SQLite database file. Parent directories are created.
        """
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with WAL mode enabled."""
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for read-only database access."""
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise TransientIOError("sqlite connect", e) from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise TransientIOError("sqlite read", e) from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database transactions.

        Args:
            immediate: Take the write lock up front (for read-then-claim sequences)
        """
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise TransientIOError("sqlite connect", e) from e
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise TransientIOError("sqlite write", e) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS test_status (
                    test_id TEXT PRIMARY KEY,
                    document TEXT NOT NULL,
                    revision INTEGER NOT NULL DEFAULT 1,
                    last_modified INTEGER NOT NULL,
                    tags TEXT NOT NULL DEFAULT '{}'
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS channel_messages (
                    message_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    queue_name TEXT NOT NULL,
                    body TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    visible_at INTEGER NOT NULL,
                    receive_count INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_channel_messages_queue
                ON channel_messages(queue_name, visible_at, message_id)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS scheduled_tests (
                    test_id TEXT PRIMARY KEY,
                    item TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS historical_tests (
                    test_id TEXT PRIMARY KEY,
                    entry TEXT NOT NULL
                )
            """)


class SqliteStatusStore:
    """RemoteStatusStore on the test_status table."""

    def __init__(self, adapter: PersistenceAdapter, clock: Callable[[], int] = now_ms):
        self.adapter = adapter
        self._clock = clock

    def fetch_if_changed_since(
        self, test_id: str, since_snapshot: Optional[str]
    ) -> StatusFetch:
        with self.adapter.connection() as conn:
            row = conn.execute(
                "SELECT document, revision, last_modified, tags FROM test_status WHERE test_id = ?",
                (test_id,),
            ).fetchone()

        if row is None:
            return StatusFetch.not_found()
        snapshot = str(row["revision"])
        if since_snapshot is not None and since_snapshot == snapshot:
            return StatusFetch.unchanged()

        status = RemoteStatus.from_document(json.loads(row["document"]))
        status.snapshot = snapshot
        status.last_modified = row["last_modified"]
        status.tags = json.loads(row["tags"])
        return StatusFetch.changed(status)

    def write(
        self,
        test_id: str,
        status: RemoteStatus,
        tags: Optional[dict[str, str]] = None,
    ) -> None:
        document = json.dumps(status.to_document())
        now = self._clock()
        with self.adapter.transaction() as conn:
            if tags is None:
                conn.execute(
                    """
                    INSERT INTO test_status (test_id, document, revision, last_modified)
                    VALUES (?, ?, 1, ?)
                    ON CONFLICT(test_id) DO UPDATE SET
                        document = excluded.document,
                        revision = test_status.revision + 1,
                        last_modified = excluded.last_modified
                    """,
                    (test_id, document, now),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO test_status (test_id, document, revision, last_modified, tags)
                    VALUES (?, ?, 1, ?, ?)
                    ON CONFLICT(test_id) DO UPDATE SET
                        document = excluded.document,
                        revision = test_status.revision + 1,
                        last_modified = excluded.last_modified,
                        tags = excluded.tags
                    """,
                    (test_id, document, now, json.dumps(tags)),
                )
        logger.debug(f"Wrote status {status.status.value} for test {test_id}")


class SqliteMessageChannel:
    """
    MessageChannel on the channel_messages table.

    receive() reads only the channel's own queue (the communications
    queue); depth() and publish() work on any queue name.
    """

    def __init__(
        self,
        adapter: PersistenceAdapter,
        queue_name: str,
        visibility_timeout_ms: int = 60 * 1000,
        clock: Callable[[], int] = now_ms,
        poll_interval: float = RECEIVE_POLL_INTERVAL,
    ):
        """
        Initialize SqliteMessageChannel.

        Args:
            adapter: Shared persistence adapter
            queue_name: Queue receive() reads from
            visibility_timeout_ms: How long a received, unacked message stays hidden
            clock: Returns current time as epoch ms
            poll_interval: Seconds between polls while waiting in receive()
        """
        self.adapter = adapter
        self.queue_name = queue_name
        self.visibility_timeout_ms = visibility_timeout_ms
        self._clock = clock
        self._poll_interval = poll_interval

    def publish(self, queue_name: str, body: str) -> str:
        """Append a message to a queue and return its receipt."""
        now = self._clock()
        with self.adapter.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO channel_messages (queue_name, body, created_at, visible_at)
                VALUES (?, ?, ?, ?)
                """,
                (queue_name, body, now, now),
            )
            return str(cursor.lastrowid)

    def receive(self, timeout_ms: int) -> Optional[ChannelMessage]:
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            message = self._claim_next()
            if message is not None:
                return message
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self._poll_interval, remaining))

    def _claim_next(self) -> Optional[ChannelMessage]:
        now = self._clock()
        with self.adapter.transaction(immediate=True) as conn:
            row = conn.execute(
                """
                SELECT message_id, body FROM channel_messages
                WHERE queue_name = ? AND visible_at <= ?
                ORDER BY message_id
                LIMIT 1
                """,
                (self.queue_name, now),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                """
                UPDATE channel_messages
                SET visible_at = ?, receive_count = receive_count + 1
                WHERE message_id = ?
                """,
                (now + self.visibility_timeout_ms, row["message_id"]),
            )
        return ChannelMessage(receipt=str(row["message_id"]), body=row["body"])

    def ack(self, message: ChannelMessage) -> None:
        with self.adapter.transaction() as conn:
            conn.execute(
                "DELETE FROM channel_messages WHERE message_id = ?",
                (int(message.receipt),),
            )

    def depth(self, queue_name: str) -> int:
        with self.adapter.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS depth FROM channel_messages WHERE queue_name = ?",
                (queue_name,),
            ).fetchone()
        return row["depth"]


class SqliteScheduleRepository:
    """ScheduleRepository on the scheduled_tests/historical_tests tables."""

    def __init__(self, adapter: PersistenceAdapter):
        self.adapter = adapter

    def load_schedule(self) -> list[ScheduleItem]:
        with self.adapter.connection() as conn:
            rows = conn.execute("SELECT item FROM scheduled_tests").fetchall()
        return [ScheduleItem.from_dict(json.loads(row["item"])) for row in rows]

    def save_schedule(self, items: list[ScheduleItem]) -> None:
        with self.adapter.transaction() as conn:
            conn.execute("DELETE FROM scheduled_tests")
            conn.executemany(
                "INSERT INTO scheduled_tests (test_id, item) VALUES (?, ?)",
                [(item.test_id, json.dumps(item.to_dict())) for item in items],
            )

    def load_history(self) -> list[HistoricalEntry]:
        with self.adapter.connection() as conn:
            rows = conn.execute("SELECT entry FROM historical_tests").fetchall()
        return [HistoricalEntry.from_dict(json.loads(row["entry"])) for row in rows]

    def save_history(self, entries: list[HistoricalEntry]) -> None:
        with self.adapter.transaction() as conn:
            conn.execute("DELETE FROM historical_tests")
            conn.executemany(
                "INSERT INTO historical_tests (test_id, entry) VALUES (?, ?)",
                [(entry.test_id, json.dumps(entry.to_dict())) for entry in entries],
            )


class QueueTestLauncher:
    """TestLauncher that publishes an item's test message onto its test queue."""

    def __init__(self, channel: SqliteMessageChannel):
        self.channel = channel

    def launch(self, item: ScheduleItem) -> str:
        receipt = self.channel.publish(item.queue_name, json.dumps(item.test_message))
        logger.info(
            f"Sent test {item.test_id} to queue {item.queue_name} (message {receipt}): "
            f"{loggable_message(item.test_message)}"
        )
        return item.test_id

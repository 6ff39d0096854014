"""
Queueing-service delivery contract.

A batch call carries at most MAX_BATCH_ENTRIES entries, each with a
caller-assigned id unique within the batch. The service may accept some
entries and reject others; rejections come back in BatchResult.failed.
"""
import sqlite3
import threading
from dataclasses import dataclass, field
from typing import List, Protocol, Sequence

from .utils import utcnow

MAX_BATCH_ENTRIES = 10
MAX_MESSAGE_BYTES = 256 * 1024


@dataclass(frozen=True)
class BatchEntry:
    id: str
    body: str


@dataclass(frozen=True)
class BatchFailure:
    id: str
    code: str
    message: str = ""
    sender_fault: bool = False


@dataclass
class BatchResult:
    successful: List[str] = field(default_factory=list)
    failed: List[BatchFailure] = field(default_factory=list)


class QueueClient(Protocol):
    def send_message_batch(self, queue: str, entries: Sequence[BatchEntry]) -> BatchResult: ...


class SqliteQueueClient:
    """
    Local queue transport backed by a sqlite table; each accepted entry is
    one row. Used for development and for the built-in jobs when no
    external queue client is wired in.
    """

    def __init__(self, db_path, max_message_bytes: int = MAX_MESSAGE_BYTES):
        self.db_path = str(db_path)
        self.max_message_bytes = max_message_bytes
        self._local = threading.local()

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_messages(
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  queue TEXT NOT NULL,
                  message_id TEXT NOT NULL,
                  body TEXT NOT NULL,
                  sent_at TEXT NOT NULL
                )
                """
            )
            conn.commit()
            self._local.conn = conn
        return conn

    def send_message_batch(self, queue: str, entries: Sequence[BatchEntry]) -> BatchResult:
        if not entries:
            raise ValueError("a batch call needs at least one entry")
        if len(entries) > MAX_BATCH_ENTRIES:
            raise ValueError(f"a batch call carries at most {MAX_BATCH_ENTRIES} entries, got {len(entries)}")
        ids = [e.id for e in entries]
        if len(set(ids)) != len(ids):
            raise ValueError("entry ids must be unique within a batch")

        result = BatchResult()
        now = utcnow().isoformat()
        conn = self._conn()
        with conn:
            for e in entries:
                if len(e.body.encode("utf-8")) > self.max_message_bytes:
                    result.failed.append(BatchFailure(e.id, "MessageTooLong", "message body too large", sender_fault=True))
                    continue
                conn.execute(
                    "INSERT INTO queue_messages(queue,message_id,body,sent_at) VALUES(?,?,?,?)",
                    (queue, e.id, e.body, now),
                )
                result.successful.append(e.id)
        return result

    def messages(self, queue: str) -> List[sqlite3.Row]:
        return self._conn().execute(
            "SELECT * FROM queue_messages WHERE queue=? ORDER BY seq", (queue,)
        ).fetchall()

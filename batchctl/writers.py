"""
Chunk writers. `write(items)` receives the surviving records of one chunk
and either writes all of them or raises. Writers that hold resources
may also implement `open(context)`, `checkpoint(context)` and `close()`;
the engine calls them around the step and after each commit.
"""
import csv
import io
import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import DeliveryError, RecordError, TransientError
from .mappers import record_to_body
from .models import ExecutionContext
from .transport import MAX_BATCH_ENTRIES, BatchEntry, QueueClient

logger = logging.getLogger(__name__)


def split_batches(items: Sequence[Any], size: int) -> List[List[Any]]:
    if size <= 0:
        raise ValueError("batch size must be > 0")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class QueueBatchWriter:
    """
    Delivers a chunk to the queueing service in consecutive sub-batches of
    at most `max_batch_size` entries. Any rejected entry fails the whole
    write; sub-batches already sent stay sent (at-least-once).
    """

    def __init__(
        self,
        client: QueueClient,
        queue: str,
        max_batch_size: int = MAX_BATCH_ENTRIES,
        serializer: Callable[[Any], str] = record_to_body,
    ):
        if not queue:
            raise ValueError("queue must not be empty")
        if not 0 < max_batch_size <= MAX_BATCH_ENTRIES:
            raise ValueError(f"max_batch_size must be between 1 and {MAX_BATCH_ENTRIES}")
        self.client = client
        self.queue = queue
        self.max_batch_size = max_batch_size
        self.serializer = serializer

    def _entries(self, batch: List[Any]) -> Dict[str, tuple]:
        entries: Dict[str, tuple] = {}
        for item in batch:
            try:
                body = self.serializer(item)
            except (TypeError, ValueError) as e:
                raise RecordError(f"cannot serialize record: {e}", items=[item]) from e
            entries[uuid.uuid4().hex] = (item, body)
        return entries

    def write(self, items: Sequence[Any]) -> None:
        if not items:
            return
        logger.debug("Writing %d items to queue %s", len(items), self.queue)
        for batch in split_batches(items, self.max_batch_size):
            self._send(batch)

    def _send(self, batch: List[Any]) -> None:
        entries = self._entries(batch)
        result = self.client.send_message_batch(
            self.queue, [BatchEntry(id=k, body=body) for k, (_, body) in entries.items()]
        )
        if not result.failed:
            logger.debug("Sent batch of %d messages to %s", len(batch), self.queue)
            return
        rejected = [entries[f.id][0] for f in result.failed if f.id in entries]
        codes = ", ".join(sorted({f.code for f in result.failed}))
        msg = f"{len(result.failed)} of {len(batch)} entries rejected by {self.queue} ({codes})"
        logger.error("Failed to send message batch: %s", msg)
        if all(f.sender_fault for f in result.failed):
            raise RecordError(msg, items=rejected)
        raise DeliveryError(msg, failed=result.failed, items=rejected)


class FlatFileWriter:
    """
    Delimited output file. A fresh run overwrites the file; a restart
    truncates it back to the byte position recorded at the last commit and
    appends from there.
    """

    POSITION_KEY = "writer.position"

    def __init__(
        self,
        path,
        columns: Optional[Sequence[str]] = None,
        delimiter: str = ",",
        encoding: str = "utf-8",
        header: bool = True,
        line_aggregator: Optional[Callable[[Any], Sequence[Any]]] = None,
    ):
        self.path = Path(path)
        self.columns = list(columns) if columns else None
        self.delimiter = delimiter
        self.encoding = encoding
        self.header = header
        self.line_aggregator = line_aggregator
        self._fh = None

    def _format(self, fields: Sequence[Any]) -> str:
        buf = io.StringIO()
        csv.writer(buf, delimiter=self.delimiter, lineterminator="\n").writerow(fields)
        return buf.getvalue()

    def _fields(self, item: Any) -> Sequence[Any]:
        if self.line_aggregator is not None:
            return self.line_aggregator(item)
        if isinstance(item, dict):
            if self.columns is None:
                self.columns = list(item.keys())
            return [item.get(c, "") for c in self.columns]
        if isinstance(item, (list, tuple)):
            return item
        return [item]

    def open(self, context: ExecutionContext) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        position = context.get(self.POSITION_KEY)
        if position is not None and self.path.exists():
            self._fh = self.path.open("r+b")
            self._fh.truncate(int(position))
            self._fh.seek(int(position))
            logger.info("Resuming %s at byte %d", self.path, position)
            return
        self._fh = self.path.open("wb")
        if self.header and self.columns:
            self._fh.write(self._format(self.columns).encode(self.encoding))
            self._fh.flush()

    def write(self, items: Sequence[Any]) -> None:
        if self._fh is None:
            self.open(ExecutionContext())
        lines = []
        for item in items:
            try:
                lines.append(self._format(self._fields(item)))
            except (TypeError, ValueError) as e:
                raise RecordError(f"cannot format record: {e}", items=[item]) from e
        self._fh.write("".join(lines).encode(self.encoding))
        self._fh.flush()

    def checkpoint(self, context: ExecutionContext) -> None:
        if self._fh is not None:
            context.put(self.POSITION_KEY, self._fh.tell())

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


class SqliteTableWriter:
    """
    Inserts each chunk in one transaction, so a failed write leaves nothing
    behind. Constraint violations are record-level (skippable); a locked
    database is transient.
    """

    def __init__(self, db_path, table: str, columns: Optional[Sequence[str]] = None, create_table: bool = False):
        self.db_path = str(db_path)
        self.table = table
        self.columns = list(columns) if columns else None
        self.create_table = create_table
        self._conn: Optional[sqlite3.Connection] = None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path)
        return self._conn

    def write(self, items: Sequence[Any]) -> None:
        if not items:
            return
        if self.columns is None:
            self.columns = list(items[0].keys())
        if self.create_table:
            cols_ddl = ",".join(f"{c} TEXT" for c in self.columns)
            self._connection().execute(f"CREATE TABLE IF NOT EXISTS {self.table}({cols_ddl})")
            self.create_table = False
        cols = ",".join(self.columns)
        marks = ",".join("?" for _ in self.columns)
        rows = [tuple(item.get(c) for c in self.columns) for item in items]
        conn = self._connection()
        try:
            with conn:
                conn.executemany(f"INSERT INTO {self.table}({cols}) VALUES({marks})", rows)
        except sqlite3.IntegrityError as e:
            items_hint = list(items) if len(items) == 1 else None
            raise RecordError(f"insert into {self.table} rejected: {e}", items=items_hint) from e
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise TransientError(f"{self.table}: {e}") from e
            raise

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

"""
Readers: a restartable, paginated record stream over a bulk source.

A PageSource knows how to fetch `limit` records starting at a position;
CheckpointedReader buffers one page at a time and tracks the position of
the next record to hand out, which is what gets checkpointed after a
chunk commits.
"""
import csv
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .errors import FatalError, FlatFileParseError, ReaderError
from .models import ExecutionContext

logger = logging.getLogger(__name__)

OFFSET_KEY = "reader.offset"
PARTITION_START_KEY = "partition.start"
PARTITION_END_KEY = "partition.end"


class _EndOfData:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_DATA"

    def __bool__(self) -> bool:
        return False


END_OF_DATA = _EndOfData()


class PageSource(Protocol):
    """
    Bulk source read in pages. `fetch` returns at most `limit` entries for
    positions `offset .. offset+limit-1`; an empty list means no more data.
    An entry of None occupies a position without producing a record.
    """

    def fetch(self, offset: int, limit: int) -> Sequence[Any]: ...

    def count(self) -> int: ...


class ListPageSource:
    """In-memory source; handy for tests and small fixed inputs."""

    def __init__(self, records: Sequence[Any]):
        self.records = list(records)
        self.fetches: List[tuple] = []

    def fetch(self, offset: int, limit: int) -> List[Any]:
        self.fetches.append((offset, limit))
        return self.records[offset:offset + limit]

    def count(self) -> int:
        return len(self.records)


class SqlitePageSource:
    """
    Pages through a SELECT with LIMIT/OFFSET. The query must have a stable
    ORDER BY, otherwise offsets are meaningless across restarts.
    """

    def __init__(self, db_path, query: str, params: Sequence[Any] = ()):
        self.db_path = str(db_path)
        self.query = query.strip().rstrip(";")
        self.params = tuple(params)
        self._conn: Optional[sqlite3.Connection] = None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def fetch(self, offset: int, limit: int) -> List[Dict[str, Any]]:
        cur = self._connection().execute(f"{self.query} LIMIT ? OFFSET ?", self.params + (limit, offset))
        return [dict(r) for r in cur.fetchall()]

    def count(self) -> int:
        cur = self._connection().execute(f"SELECT COUNT(*) FROM ({self.query})", self.params)
        return int(cur.fetchone()[0])

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class FlatFilePageSource:
    """
    Delimited flat file. Positions count data lines after the first
    `lines_to_skip` lines. When `columns` is not given and a header is
    skipped, the first skipped line supplies the column names.

    strict=True: the file must exist and every line must split into the
    expected number of fields, otherwise FlatFileParseError fails the step.
    strict=False: malformed lines are logged and left out.
    """

    def __init__(
        self,
        path,
        columns: Optional[Sequence[str]] = None,
        delimiter: str = ",",
        lines_to_skip: int = 0,
        encoding: str = "utf-8",
        strict: bool = True,
    ):
        self.path = Path(path)
        self.columns = list(columns) if columns else None
        self.delimiter = delimiter
        self.lines_to_skip = lines_to_skip
        self.encoding = encoding
        self.strict = strict
        self._lines: Optional[List[str]] = None

    def _load(self) -> List[str]:
        if self._lines is None:
            if not self.path.exists():
                if self.strict:
                    raise ReaderError(f"input file does not exist: {self.path}")
                logger.warning("Input file %s does not exist, reading nothing", self.path)
                self._lines = []
                return self._lines
            with self.path.open("r", encoding=self.encoding, newline="") as fh:
                lines = fh.read().splitlines()
            header, body = lines[: self.lines_to_skip], lines[self.lines_to_skip:]
            if self.columns is None and header:
                self.columns = next(csv.reader([header[0]], delimiter=self.delimiter))
            self._lines = body
        return self._lines

    def _parse(self, line_number: int, line: str) -> Optional[Any]:
        if not line.strip():
            return None
        fields = next(csv.reader([line], delimiter=self.delimiter))
        if self.columns is None:
            return fields
        if len(fields) != len(self.columns):
            reason = f"expected {len(self.columns)} fields, found {len(fields)}"
            if self.strict:
                raise FlatFileParseError(line_number, line, reason)
            logger.warning("Ignoring malformed line %d of %s: %s", line_number, self.path, reason)
            return None
        return dict(zip(self.columns, fields))

    def fetch(self, offset: int, limit: int) -> List[Any]:
        lines = self._load()
        first = self.lines_to_skip + offset + 1
        return [self._parse(first + i, line) for i, line in enumerate(lines[offset:offset + limit])]

    def count(self) -> int:
        return len(self._load())


class CheckpointedReader:
    """
    `read()` returns the next record or END_OF_DATA. The offset always
    names the position of the next record to hand out, so writing it to the
    context after a commit makes it the first uncommitted record.
    """

    def __init__(self, source: PageSource, page_size: int = 100, offset_key: str = OFFSET_KEY):
        if page_size <= 0:
            raise ValueError("page_size must be > 0")
        self.source = source
        self.page_size = page_size
        self.offset_key = offset_key
        self.offset = 0
        self.end: Optional[int] = None
        self._page: List[Any] = []
        self._pos = 0
        self._exhausted = False

    def open(self, context: ExecutionContext) -> None:
        start = context.get_int(PARTITION_START_KEY, 0)
        self.offset = context.get_int(self.offset_key, start)
        end = context.get(PARTITION_END_KEY)
        self.end = int(end) if end is not None else None
        self._page, self._pos = [], 0
        self._exhausted = False
        logger.debug("Reader opened at offset %d (end=%s)", self.offset, self.end)

    def read(self) -> Any:
        if self._exhausted:
            return END_OF_DATA
        while True:
            if self._pos >= len(self._page):
                self._fetch_page()
                if not self._page:
                    self._exhausted = True
                    return END_OF_DATA
            item = self._page[self._pos]
            self._pos += 1
            self.offset += 1
            if item is not None:
                return item

    def _fetch_page(self) -> None:
        limit = self.page_size
        if self.end is not None:
            limit = min(limit, self.end - self.offset)
        if limit <= 0:
            self._page, self._pos = [], 0
            return
        try:
            page = list(self.source.fetch(self.offset, limit))
        except FatalError:
            raise
        except Exception as e:
            raise ReaderError(f"page fetch at offset {self.offset} failed: {e}") from e
        self._page, self._pos = page[:limit], 0
        logger.debug("Fetched page of %d at offset %d", len(self._page), self.offset)

    def checkpoint(self, context: ExecutionContext) -> None:
        context.put(self.offset_key, self.offset)

    def close(self) -> None:
        self._page = []
        close = getattr(self.source, "close", None)
        if callable(close):
            close()

import json
import sqlite3

import pytest

from batchctl.errors import DeliveryError, RecordError
from batchctl.models import ExecutionContext
from batchctl.transport import BatchEntry, BatchFailure, BatchResult, SqliteQueueClient
from batchctl.writers import FlatFileWriter, QueueBatchWriter, SqliteTableWriter, split_batches


class FakeQueueClient:
    """Accepts everything unless `reject` names a body to refuse."""

    def __init__(self, reject=None, sender_fault=False):
        self.calls = []
        self.reject = reject
        self.sender_fault = sender_fault

    def send_message_batch(self, queue, entries):
        self.calls.append((queue, list(entries)))
        result = BatchResult()
        for e in entries:
            if self.reject is not None and self.reject in e.body:
                result.failed.append(BatchFailure(e.id, "Throttled", "slow down", sender_fault=self.sender_fault))
            else:
                result.successful.append(e.id)
        return result


class TestSplitBatches:
    def test_split(self):
        assert split_batches(list(range(5)), 2) == [[0, 1], [2, 3], [4]]
        assert split_batches([], 3) == []

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            split_batches([1], 0)


class TestQueueBatchWriter:
    def test_23_records_go_out_as_10_10_3_with_unique_ids(self):
        client = FakeQueueClient()
        QueueBatchWriter(client, "orders").write([{"n": i} for i in range(23)])

        assert [len(entries) for _, entries in client.calls] == [10, 10, 3]
        ids = [e.id for _, entries in client.calls for e in entries]
        assert len(set(ids)) == 23
        assert all(queue == "orders" for queue, _ in client.calls)

    def test_empty_write_makes_no_call(self):
        client = FakeQueueClient()
        QueueBatchWriter(client, "orders").write([])
        assert client.calls == []

    def test_any_rejection_fails_the_write(self):
        client = FakeQueueClient(reject='"n": 12')
        with pytest.raises(DeliveryError) as exc:
            QueueBatchWriter(client, "orders").write([{"n": i} for i in range(23)])

        assert exc.value.items == [{"n": 12}]
        assert len(exc.value.failed) == 1
        # the first batch was already delivered, the third never sent
        assert len(client.calls) == 2

    def test_sender_fault_is_a_record_error(self):
        client = FakeQueueClient(reject='"n": 1', sender_fault=True)
        with pytest.raises(RecordError) as exc:
            QueueBatchWriter(client, "orders").write([{"n": 0}, {"n": 1}])
        assert exc.value.items == [{"n": 1}]

    def test_unserializable_record_is_a_record_error(self):
        bad = {"when": object()}
        writer = QueueBatchWriter(FakeQueueClient(), "orders", serializer=json.dumps)
        with pytest.raises(RecordError) as exc:
            writer.write([{"ok": 1}, bad])
        assert exc.value.items == [bad]

    def test_batch_size_bounds(self):
        with pytest.raises(ValueError):
            QueueBatchWriter(FakeQueueClient(), "orders", max_batch_size=11)
        with pytest.raises(ValueError):
            QueueBatchWriter(FakeQueueClient(), "")


class TestSqliteQueueClient:
    def test_accepts_and_stores_messages(self, tmp_path):
        client = SqliteQueueClient(tmp_path / "outbox.db")
        result = client.send_message_batch("q", [BatchEntry("a", "{}"), BatchEntry("b", "[]")])

        assert result.successful == ["a", "b"]
        assert [r["message_id"] for r in client.messages("q")] == ["a", "b"]

    def test_rejects_oversized_body_as_sender_fault(self, tmp_path):
        client = SqliteQueueClient(tmp_path / "outbox.db", max_message_bytes=4)
        result = client.send_message_batch("q", [BatchEntry("a", "ok"), BatchEntry("b", "too long")])

        assert result.successful == ["a"]
        assert result.failed[0].id == "b"
        assert result.failed[0].sender_fault

    def test_contract_violations(self, tmp_path):
        client = SqliteQueueClient(tmp_path / "outbox.db")
        with pytest.raises(ValueError):
            client.send_message_batch("q", [BatchEntry(str(i), "x") for i in range(11)])
        with pytest.raises(ValueError):
            client.send_message_batch("q", [BatchEntry("dup", "x"), BatchEntry("dup", "y")])
        with pytest.raises(ValueError):
            client.send_message_batch("q", [])


class TestFlatFileWriter:
    def test_writes_header_and_rows(self, tmp_path):
        path = tmp_path / "out" / "report.csv"
        writer = FlatFileWriter(path, columns=["id", "name"])
        writer.open(ExecutionContext())
        writer.write([{"id": 1, "name": "a"}, {"id": 2, "name": "b,c"}])
        writer.close()

        assert path.read_text(encoding="utf-8") == 'id,name\n1,a\n2,"b,c"\n'

    def test_restart_truncates_to_checkpoint(self, tmp_path):
        path = tmp_path / "report.csv"
        writer = FlatFileWriter(path, columns=["id"])
        ctx = ExecutionContext()
        writer.open(ctx)
        writer.write([{"id": 1}])
        writer.checkpoint(ctx)
        writer.write([{"id": 2}])  # uncommitted
        writer.close()

        restarted = FlatFileWriter(path, columns=["id"])
        restarted.open(ctx)
        restarted.write([{"id": 3}])
        restarted.close()

        assert path.read_text(encoding="utf-8") == "id\n1\n3\n"

    def test_line_aggregator(self, tmp_path):
        path = tmp_path / "out.txt"
        writer = FlatFileWriter(path, delimiter="|", header=False, line_aggregator=lambda r: [r.upper(), len(r)])
        writer.write(["ab"])
        writer.close()

        assert path.read_text(encoding="utf-8") == "AB|2\n"


class TestSqliteTableWriter:
    def test_creates_table_and_inserts(self, tmp_path):
        db = tmp_path / "target.db"
        writer = SqliteTableWriter(db, "processed", create_table=True)
        writer.write([{"name": "A", "qty": 2}, {"name": "B", "qty": 4}])
        writer.close()

        rows = sqlite3.connect(db).execute("SELECT name, qty FROM processed ORDER BY name").fetchall()
        assert rows == [("A", "2"), ("B", "4")]

    def test_constraint_violation_is_record_error_and_rolls_back(self, tmp_path):
        db = tmp_path / "target.db"
        conn = sqlite3.connect(db)
        conn.execute("CREATE TABLE t(id INTEGER PRIMARY KEY)")
        conn.execute("INSERT INTO t VALUES(1)")
        conn.commit()
        conn.close()

        writer = SqliteTableWriter(db, "t")
        with pytest.raises(RecordError) as exc:
            writer.write([{"id": 2}, {"id": 1}])
        assert exc.value.items == []
        with pytest.raises(RecordError) as exc:
            writer.write([{"id": 1}])
        assert exc.value.items == [{"id": 1}]
        writer.close()

        ids = [r[0] for r in sqlite3.connect(db).execute("SELECT id FROM t")]
        assert ids == [1]

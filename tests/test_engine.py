"""Tests for the chunk engine: commits, checkpoints, retry and skip handling."""
import sqlite3
from unittest.mock import MagicMock, call

import pytest

from batchctl.engine import ChunkEngine
from batchctl.errors import FatalError, RecordError, TransientError
from batchctl.models import BatchStatus, ExecutionContext, ExitCode
from batchctl.pipeline import DROP, Pipeline, uppercase_strings
from batchctl.policy import FaultPolicy
from batchctl.readers import CheckpointedReader, ListPageSource
from batchctl.storage import JobRepository
from batchctl.transport import BatchResult
from batchctl.writers import QueueBatchWriter


class RecordingWriter:
    """Remembers every write call; `fail(items)` may return an exception to raise."""

    def __init__(self, fail=None):
        self.calls = []
        self.written = []
        self.fail = fail

    def write(self, items):
        self.calls.append(list(items))
        if self.fail is not None:
            exc = self.fail(items)
            if exc is not None:
                raise exc
        self.written.extend(items)


def rejecting(bad, exc_type=RecordError):
    def step(x):
        if x in bad:
            raise exc_type(f"bad record {x}")
        return x
    return step


@pytest.fixture
def step(repo, params):
    execution = repo.create_job_execution("testJob", params)
    return repo.create_step_execution(execution.id, "testStep")


def make_engine(repo, step, records, writer=None, pipeline=None, chunk_size=100, policy=None, source=None, **kw):
    reader = CheckpointedReader(source or ListPageSource(records), page_size=chunk_size)
    return ChunkEngine(
        reader,
        pipeline or Pipeline(),
        writer if writer is not None else RecordingWriter(),
        repo,
        step,
        policy=policy or FaultPolicy(),
        chunk_size=chunk_size,
        **kw,
    )


class TestCommits:
    def test_250_records_in_chunks_of_100_commit_three_times(self, repo, step):
        writer = RecordingWriter()
        result = make_engine(repo, step, list(range(250)), writer=writer).run()

        assert result.status is BatchStatus.COMPLETED
        assert result.exit_code is ExitCode.COMPLETED
        assert result.commit_count == 3
        assert result.read_count == 250
        assert result.write_count == 250
        assert [len(c) for c in writer.calls] == [100, 100, 50]
        assert writer.written == list(range(250))

    def test_counters_and_checkpoint_are_persisted(self, repo, step):
        make_engine(repo, step, list(range(250))).run()

        stored = repo.get_step_execution(step.id)
        assert stored.status is BatchStatus.COMPLETED
        assert stored.read_count == 250
        assert stored.commit_count == 3
        assert repo.get_execution_context(step.id).get_int("reader.offset") == 250

    def test_empty_input_completes_as_noop(self, repo, step):
        writer = RecordingWriter()
        result = make_engine(repo, step, [], writer=writer).run()

        assert result.status is BatchStatus.COMPLETED
        assert result.exit_code is ExitCode.NOOP
        assert result.commit_count == 0
        assert writer.calls == []

    def test_dropped_records_are_filtered_not_written(self, repo, step):
        writer = RecordingWriter()
        pipeline = Pipeline([lambda x: DROP if x % 2 else x])
        result = make_engine(repo, step, list(range(10)), writer=writer, pipeline=pipeline).run()

        assert result.filter_count == 5
        assert result.write_count == 5
        assert result.read_count == 10
        assert writer.written == [0, 2, 4, 6, 8]

    def test_page_fetches_follow_the_offset(self, repo, step):
        source = ListPageSource(list(range(250)))
        make_engine(repo, step, None, source=source).run()

        assert [offset for offset, _ in source.fetches[:3]] == [0, 100, 200]


class TestChunkAtomicityAndRestart:
    def test_failed_chunk_leaves_checkpoint_at_last_commit(self, repo, step):
        writer = RecordingWriter(fail=lambda items: TransientError("throttled") if 5 in items else None)
        result = make_engine(
            repo, step, list(range(10)), writer=writer, chunk_size=5, policy=FaultPolicy(retry_limit=1)
        ).run()

        assert result.status is BatchStatus.FAILED
        assert result.exit_message.startswith("TransientError")
        stored = repo.get_step_execution(step.id)
        assert stored.commit_count == 1
        assert stored.read_count == 5
        assert stored.write_count == 5
        assert repo.get_execution_context(step.id).get_int("reader.offset") == 5
        assert writer.written == [0, 1, 2, 3, 4]

    def test_restart_resumes_at_first_uncommitted_record(self, repo, step):
        records = list(range(10))
        failing = RecordingWriter(fail=lambda items: FatalError("target gone") if 5 in items else None)
        make_engine(repo, step, records, writer=failing, chunk_size=5).run()

        context = repo.get_execution_context(step.id)
        retry_step = repo.create_step_execution(step.job_execution_id, "testStep")
        source = ListPageSource(records)
        writer = RecordingWriter()
        result = make_engine(repo, retry_step, None, source=source, writer=writer, chunk_size=5, context=context).run()

        assert result.status is BatchStatus.COMPLETED
        assert source.fetches[0][0] == 5
        assert writer.written == [5, 6, 7, 8, 9]
        assert result.read_count == 5

    def test_checkpoint_failure_fails_the_step(self, tmp_path, params):
        class FailingCheckpointRepo(JobRepository):
            def update_step_execution(self, step, context=None):
                if context is not None:
                    raise sqlite3.OperationalError("disk I/O error")
                return super().update_step_execution(step, context)

        repo = FailingCheckpointRepo(tmp_path / "failing.db")
        execution = repo.create_job_execution("testJob", params)
        step = repo.create_step_execution(execution.id, "testStep")

        result = make_engine(repo, step, [1, 2, 3]).run()

        assert result.status is BatchStatus.FAILED
        assert result.exit_message.startswith("CheckpointError")
        stored = repo.get_step_execution(step.id)
        assert stored.status is BatchStatus.FAILED
        assert (stored.read_count, stored.write_count, stored.commit_count) == (0, 0, 0)
        assert repo.get_execution_context(step.id).get("reader.offset") is None
        repo.close()


class TestRetry:
    def test_transient_write_failure_is_retried_with_the_same_chunk(self, repo, step):
        failures = {"left": 2}

        def fail(items):
            if failures["left"]:
                failures["left"] -= 1
                return TransientError("throttled")
            return None

        writer = RecordingWriter(fail=fail)
        pipeline = MagicMock(side_effect=lambda x: x)
        result = make_engine(
            repo, step, list(range(5)), writer=writer, pipeline=pipeline, policy=FaultPolicy(retry_limit=3)
        ).run()

        assert result.status is BatchStatus.COMPLETED
        assert result.rollback_count == 2
        assert writer.calls == [[0, 1, 2, 3, 4]] * 3
        assert writer.written == [0, 1, 2, 3, 4]
        # every retry re-processes the retained inputs
        assert pipeline.call_count == 15

    def test_backoff_doubles_between_retries(self, repo, step):
        failures = {"left": 2}

        def fail(items):
            if failures["left"]:
                failures["left"] -= 1
                return TransientError("throttled")
            return None

        sleep = MagicMock()
        make_engine(
            repo, step, [1, 2], writer=RecordingWriter(fail=fail), backoff_base=0.5, sleep=sleep
        ).run()

        assert sleep.call_args_list == [call(0.5), call(1.0)]

    def test_exhausted_retry_is_reclassified_as_skip_when_skippable(self, repo, step):
        policy = FaultPolicy(retry_limit=2, skippable=(RecordError, TransientError))
        pipeline = Pipeline([rejecting({3}, TransientError)])
        writer = RecordingWriter()
        result = make_engine(repo, step, list(range(5)), writer=writer, pipeline=pipeline, policy=policy).run()

        assert result.status is BatchStatus.COMPLETED
        assert result.skip_count == 1
        assert result.process_skip_count == 1
        assert result.rollback_count == 3
        assert writer.written == [0, 1, 2, 4]

    def test_unclassified_processor_error_is_fatal(self, repo, step):
        writer = RecordingWriter()
        result = make_engine(repo, step, [1, 2, 3], writer=writer, pipeline=Pipeline([rejecting({2}, ValueError)])).run()

        assert result.status is BatchStatus.FAILED
        assert result.exit_message.startswith("ValueError")
        assert writer.calls == []

    def test_fatal_error_is_never_retried(self, repo, step):
        pipeline = MagicMock(side_effect=FatalError("schema mismatch"))
        result = make_engine(repo, step, [1, 2, 3], pipeline=pipeline, policy=FaultPolicy(retry_limit=5)).run()

        assert result.status is BatchStatus.FAILED
        assert pipeline.call_count == 1
        assert result.rollback_count == 0


class TestSkip:
    def test_process_skip_drops_only_the_bad_record(self, repo, step):
        writer = RecordingWriter()
        result = make_engine(repo, step, list(range(6)), writer=writer, pipeline=Pipeline([rejecting({3})])).run()

        assert result.status is BatchStatus.COMPLETED
        assert result.skip_count == 1
        assert result.process_skip_count == 1
        assert result.write_count == 5
        assert writer.written == [0, 1, 2, 4, 5]

    def test_write_failure_naming_its_records_skips_them(self, repo, step):
        writer = RecordingWriter(fail=lambda items: RecordError("rejected", items=[3]) if 3 in items else None)
        result = make_engine(repo, step, list(range(6)), writer=writer).run()

        assert result.status is BatchStatus.COMPLETED
        assert result.write_skip_count == 1
        assert writer.written == [0, 1, 2, 4, 5]
        assert len(writer.calls) == 2

    def test_anonymous_write_failure_is_scanned_record_by_record(self, repo, step):
        writer = RecordingWriter(fail=lambda items: RecordError("constraint violated") if 3 in items else None)
        result = make_engine(repo, step, list(range(6)), writer=writer).run()

        assert result.status is BatchStatus.COMPLETED
        assert result.skip_count == 1
        assert result.write_skip_count == 1
        assert result.write_count == 5
        assert writer.written == [0, 1, 2, 4, 5]
        assert writer.calls[1:] == [[0], [1], [2], [3], [4], [5]]

    def test_skips_up_to_the_limit_complete(self, repo, step):
        bad = set(range(0, 30, 3))  # 10 bad records
        result = make_engine(
            repo, step, list(range(30)), pipeline=Pipeline([rejecting(bad)]), policy=FaultPolicy(skip_limit=10)
        ).run()

        assert result.status is BatchStatus.COMPLETED
        assert result.skip_count == 10
        assert result.write_count == 20

    def test_eleventh_skip_fails_the_step(self, repo, step):
        bad = set(range(11))
        writer = RecordingWriter()
        result = make_engine(
            repo, step, list(range(30)), writer=writer, pipeline=Pipeline([rejecting(bad)]), policy=FaultPolicy(skip_limit=10)
        ).run()

        assert result.status is BatchStatus.FAILED
        assert result.exit_message.startswith("SkipLimitExceededError")
        assert result.commit_count == 0
        assert writer.written == []

    def test_skip_limit_counts_across_chunks(self, repo, step):
        result = make_engine(
            repo, step, list(range(15)), chunk_size=5,
            pipeline=Pipeline([rejecting({1, 6, 11})]), policy=FaultPolicy(skip_limit=2),
        ).run()

        assert result.status is BatchStatus.FAILED
        assert result.commit_count == 2
        assert result.skip_count == 2


class TestStopAndReaderFailures:
    def test_stop_is_honoured_between_chunks(self, repo, step):
        should_stop = MagicMock(side_effect=[False, True])
        result = make_engine(repo, step, list(range(20)), chunk_size=5, should_stop=should_stop).run()

        assert result.status is BatchStatus.STOPPED
        assert result.exit_code is ExitCode.STOPPED
        assert result.commit_count == 1
        assert result.read_count == 5

    def test_reader_failure_fails_the_step(self, repo, step):
        source = MagicMock()
        source.fetch.side_effect = OSError("connection reset")
        result = make_engine(repo, step, None, source=source).run()

        assert result.status is BatchStatus.FAILED
        assert result.exit_message.startswith("ReaderError")

    def test_context_defaults_to_empty(self, repo, step):
        engine = make_engine(repo, step, [1])
        assert engine.context == ExecutionContext()


class TestPipelineThroughEngine:
    def test_dropped_record_never_reaches_later_stages_or_writer(self, repo, step):
        stage3 = MagicMock(side_effect=lambda x: x)
        pipeline = Pipeline([lambda x: x, lambda x: DROP if x == "x" else x, stage3])
        writer = RecordingWriter()
        result = make_engine(repo, step, ["a", "x", "b"], writer=writer, pipeline=pipeline).run()

        assert [c.args[0] for c in stage3.call_args_list] == ["a", "b"]
        assert writer.written == ["a", "b"]
        assert result.filter_count == 1

    def test_five_records_uppercased_and_delivered_in_one_call(self, repo, step):
        client = MagicMock()
        client.send_message_batch.side_effect = lambda queue, entries: BatchResult(successful=[e.id for e in entries])
        records = [{"id": i, "name": f"user{i}"} for i in range(5)]

        result = make_engine(
            repo, step, records, writer=QueueBatchWriter(client, "q", max_batch_size=10),
            pipeline=Pipeline([uppercase_strings]),
        ).run()

        assert result.status is BatchStatus.COMPLETED
        assert client.send_message_batch.call_count == 1
        queue, entries = client.send_message_batch.call_args.args
        assert len(entries) == 5
        assert '"name": "USER0"' in entries[0].body
        assert result.read_count == result.write_count == 5

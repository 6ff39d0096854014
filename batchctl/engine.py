"""
ChunkEngine: drives one step through read -> process -> write in chunks.

Per chunk:
  1. read up to `chunk_size` records (END_OF_DATA ends the step)
  2. run each record through the pipeline (DROP filters it out)
  3. hand the surviving records to the writer in one call
  4. on success, update counters and persist them together with the
     reader's checkpoint in one store transaction

Failures inside 2-3 are classified by the FaultPolicy:
  - retry: the whole chunk is processed and written again from the
    records already read, up to `retry_limit` times
  - skip: the offending record leaves the chunk and the rest is retried;
    a write failure that does not name its records is scanned one record
    at a time to find them
  - fatal: the step fails; nothing past the last commit is checkpointed

A stop request is honoured between chunks only.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Set, Tuple

from .errors import CheckpointError, FatalError, SkipLimitExceededError
from .models import BatchStatus, ExecutionContext, ExitCode, StepExecution
from .pipeline import DROP
from .policy import FaultPolicy, Verdict
from .readers import END_OF_DATA
from .storage import JobRepository
from .utils import backoff_delay, describe_error, utcnow

logger = logging.getLogger(__name__)

_COUNTERS = (
    "read_count",
    "write_count",
    "filter_count",
    "skip_count",
    "process_skip_count",
    "write_skip_count",
    "rollback_count",
    "commit_count",
)


class _ProcessFailure(Exception):
    def __init__(self, index: int, cause: BaseException):
        super().__init__(str(cause))
        self.index = index
        self.cause = cause


@dataclass
class Chunk:
    """Records read for one commit cycle; never persisted."""

    inputs: List[Any]
    outputs: List[Tuple[int, Any]] = field(default_factory=list)
    skipped: Set[int] = field(default_factory=set)
    filter_count: int = 0
    process_skips: int = 0
    write_skips: int = 0
    rollbacks: int = 0


def _call_optional(obj: Any, method: str, *args) -> None:
    fn = getattr(obj, method, None)
    if callable(fn):
        fn(*args)


class ChunkEngine:
    def __init__(
        self,
        reader,
        pipeline: Callable[[Any], Any],
        writer,
        repo: JobRepository,
        step: StepExecution,
        policy: Optional[FaultPolicy] = None,
        chunk_size: int = 100,
        context: Optional[ExecutionContext] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        backoff_base: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self.reader = reader
        self.pipeline = pipeline
        self.writer = writer
        self.repo = repo
        self.step = step
        self.policy = policy or FaultPolicy()
        self.chunk_size = chunk_size
        self.context = context if context is not None else ExecutionContext()
        self.should_stop = should_stop or (lambda: False)
        self.backoff_base = backoff_base
        self._sleep = sleep

    # ------------------------------------------------------------------

    def run(self) -> StepExecution:
        step = self.step
        step.start_time = utcnow()
        step.upgrade_status(BatchStatus.STARTED)
        step.exit_code = ExitCode.EXECUTING
        self.repo.update_step_execution(step)
        logger.info("Step %s (execution %d) started", step.step_name, step.id)

        try:
            self.reader.open(self.context)
            _call_optional(self.writer, "open", self.context)
            while True:
                if self.should_stop():
                    logger.info("Stop requested; step %s stops after %d commits", step.step_name, step.commit_count)
                    step.upgrade_status(BatchStatus.STOPPED)
                    step.exit_code = ExitCode.STOPPED
                    step.exit_message = "stop requested"
                    break
                inputs = self._read_chunk()
                if not inputs:
                    step.upgrade_status(BatchStatus.COMPLETED)
                    step.exit_code = ExitCode.COMPLETED if step.read_count else ExitCode.NOOP
                    break
                chunk = self.process_chunk(inputs)
                self._commit(chunk)
        except Exception as e:
            logger.error("Step %s failed: %s", step.step_name, e, exc_info=True)
            step.upgrade_status(BatchStatus.FAILED)
            step.exit_code = ExitCode.FAILED
            step.exit_message = describe_error(e)
        finally:
            self._close()

        step.end_time = utcnow()
        self.repo.update_step_execution(step)
        logger.info("Step %s finished %s: %s", step.step_name, step.status.value, step.summary())
        return step

    def _close(self) -> None:
        for obj in (self.reader, self.writer):
            try:
                _call_optional(obj, "close")
            except Exception:
                logger.warning("Error closing %s", type(obj).__name__, exc_info=True)

    def _read_chunk(self) -> List[Any]:
        items: List[Any] = []
        while len(items) < self.chunk_size:
            item = self.reader.read()
            if item is END_OF_DATA:
                break
            items.append(item)
        return items

    # ------------------------------------------------------------------

    def process_chunk(self, inputs: List[Any]) -> Chunk:
        """Transform and write one chunk, applying retry/skip until it succeeds or turns fatal."""
        chunk = Chunk(inputs=inputs)
        attempt = 0
        while True:
            outputs: List[Tuple[int, Any]] = []
            phase, index = "write", None
            try:
                outputs = self._transform(chunk)
                if outputs:
                    self.writer.write([out for _, out in outputs])
                chunk.outputs = outputs
                return chunk
            except _ProcessFailure as pf:
                failure, phase, index = pf.cause, "process", pf.index
            except FatalError:
                raise
            except Exception as e:
                failure = e

            verdict = self.policy.classify(failure, attempt)
            chunk.rollbacks += 1
            if verdict is Verdict.RETRY:
                attempt += 1
                logger.warning(
                    "Retrying chunk (attempt %d/%d) after %s failure: %s",
                    attempt, self.policy.retry_limit, phase, failure,
                )
                delay = backoff_delay(self.backoff_base, attempt)
                if delay:
                    self._sleep(delay)
                continue
            if verdict is Verdict.FATAL:
                raise failure

            attempt = 0
            if phase == "process":
                self._skip(chunk, index, failure, phase)
                continue
            located = self._locate(outputs, failure)
            if located:
                for i in located:
                    self._skip(chunk, i, failure, phase)
                continue
            self._scan(chunk, outputs)
            return chunk

    def _transform(self, chunk: Chunk) -> List[Tuple[int, Any]]:
        outputs: List[Tuple[int, Any]] = []
        filtered = 0
        for i, item in enumerate(chunk.inputs):
            if i in chunk.skipped:
                continue
            try:
                out = self.pipeline(item)
            except FatalError:
                raise
            except Exception as e:
                raise _ProcessFailure(i, e) from e
            if out is DROP:
                filtered += 1
            else:
                outputs.append((i, out))
        chunk.filter_count = filtered
        return outputs

    def _locate(self, outputs: Sequence[Tuple[int, Any]], failure: BaseException) -> List[int]:
        """Indices of the records a write failure names in `.items`, if any."""
        named = getattr(failure, "items", None) or []
        found: List[int] = []
        for bad in named:
            for i, out in outputs:
                if i not in found and (out is bad or out == bad):
                    found.append(i)
                    break
        return found

    def _scan(self, chunk: Chunk, outputs: Sequence[Tuple[int, Any]]) -> None:
        """Write records one at a time so only the failing ones are skipped."""
        logger.info("Scanning chunk of %d records to isolate write failures", len(outputs))
        written: List[Tuple[int, Any]] = []
        for i, out in outputs:
            attempt = 0
            while True:
                try:
                    self.writer.write([out])
                    written.append((i, out))
                    break
                except FatalError:
                    raise
                except Exception as e:
                    verdict = self.policy.classify(e, attempt)
                    if verdict is Verdict.RETRY:
                        attempt += 1
                        delay = backoff_delay(self.backoff_base, attempt)
                        if delay:
                            self._sleep(delay)
                        continue
                    if verdict is Verdict.SKIP:
                        self._skip(chunk, i, e, "write")
                        break
                    raise
        chunk.outputs = written

    def _skip(self, chunk: Chunk, index: int, failure: BaseException, phase: str) -> None:
        total = self.step.skip_count + len(chunk.skipped) + 1
        if total > self.policy.skip_limit:
            raise SkipLimitExceededError(self.policy.skip_limit, failure)
        chunk.skipped.add(index)
        if phase == "process":
            chunk.process_skips += 1
        else:
            chunk.write_skips += 1
        logger.warning("Skipping record %d of chunk (%s, %d/%d): %s", index, phase, total, self.policy.skip_limit, failure)

    # ------------------------------------------------------------------

    def _commit(self, chunk: Chunk) -> None:
        step = self.step
        before = {name: getattr(step, name) for name in _COUNTERS}
        step.read_count += len(chunk.inputs)
        step.write_count += len(chunk.outputs)
        step.filter_count += chunk.filter_count
        step.skip_count += len(chunk.skipped)
        step.process_skip_count += chunk.process_skips
        step.write_skip_count += chunk.write_skips
        step.rollback_count += chunk.rollbacks
        step.commit_count += 1

        self.reader.checkpoint(self.context)
        _call_optional(self.writer, "checkpoint", self.context)
        try:
            self.repo.update_step_execution(step, self.context)
        except Exception as e:
            # the chunk is not committed, so its counts are not either
            for name, value in before.items():
                setattr(step, name, value)
            raise CheckpointError(f"could not persist checkpoint for step execution {step.id}: {e}") from e
        logger.debug(
            "Committed chunk %d of step %s: read=%d written=%d filtered=%d skipped=%d",
            step.commit_count, step.step_name, len(chunk.inputs), len(chunk.outputs),
            chunk.filter_count, len(chunk.skipped),
        )

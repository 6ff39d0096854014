"""
Exception types for batchctl.

The chunk engine classifies record-level failures by exception type:
- TransientError: retried at chunk granularity (timeouts, throttling)
- RecordError: the record is skipped and counted against the skip limit
- FatalError: aborts the step and job; never retried or skipped

Launch-time errors (unknown job, duplicate run, bad restart) are raised
to the caller instead of being recorded as a failed execution.
"""
from typing import Any, List, Optional, Sequence


class BatchError(Exception):
    """Base exception for batchctl."""
    pass


class TransientError(BatchError):
    """
    Transient error - safe to retry.

    Examples:
    - Network timeout talking to the queueing service
    - Throttling from the bulk source
    """
    pass


class RecordError(BatchError):
    """
    A single record cannot be processed or written.

    `items` optionally names the offending record(s) so a failed chunk write
    can drop exactly those records and retry the remainder.
    """

    def __init__(self, message: str, items: Optional[Sequence[Any]] = None):
        super().__init__(message)
        self.items: List[Any] = list(items) if items else []


class RecordValidationError(RecordError):
    """A record failed a validation step in the pipeline."""
    pass


class FatalError(BatchError):
    """Aborts the step; the last committed checkpoint stays valid for restart."""
    pass


class ReaderError(FatalError):
    """A page could not be fetched from the bulk source."""
    pass


class FlatFileParseError(ReaderError):
    def __init__(self, line_number: int, line: str, reason: str):
        super().__init__(f"line {line_number}: {reason}: {line!r}")
        self.line_number = line_number
        self.line = line


class CheckpointError(FatalError):
    """Execution context could not be persisted after a commit."""
    pass


class SkipLimitExceededError(FatalError):
    def __init__(self, skip_limit: int, cause: BaseException):
        super().__init__(f"skip limit of {skip_limit} exceeded; last failure: {type(cause).__name__}: {cause}")
        self.skip_limit = skip_limit
        self.__cause__ = cause


class DeliveryError(TransientError):
    """
    The queueing service rejected one or more entries of a batch call.

    Any rejection fails the whole writer call for the chunk.
    """

    def __init__(self, message: str, failed: Sequence[Any] = (), items: Sequence[Any] = ()):
        super().__init__(message)
        self.failed = list(failed)
        self.items = list(items)


# -- launch / lookup -------------------------------------------------------

class NoSuchJobError(BatchError):
    def __init__(self, job_name: str, known: Sequence[str] = ()):
        hint = f" (known: {', '.join(sorted(known))})" if known else ""
        super().__init__(f"No job registered with name {job_name!r}{hint}")
        self.job_name = job_name


class NoSuchJobExecutionError(BatchError):
    def __init__(self, execution_id: int):
        super().__init__(f"No job execution found with id {execution_id}")
        self.execution_id = execution_id


class JobInstanceAlreadyCompleteError(BatchError):
    def __init__(self, job_name: str, execution_id: int):
        super().__init__(
            f"A job instance of {job_name!r} with these identifying parameters already "
            f"completed (execution {execution_id})"
        )


class JobExecutionAlreadyRunningError(BatchError):
    def __init__(self, job_name: str, execution_id: int):
        super().__init__(f"Job {job_name!r} is already running (execution {execution_id})")


class JobRestartError(BatchError):
    pass


class IllegalStatusTransitionError(BatchError):
    pass


class InvalidJobParametersError(BatchError):
    pass


class JobExecutionNotRunningError(BatchError):
    def __init__(self, execution_id: int, status: str):
        super().__init__(f"Job execution {execution_id} is not running (status {status})")
        self.execution_id = execution_id

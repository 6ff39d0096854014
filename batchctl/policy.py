from dataclasses import dataclass, field
from enum import Enum
from typing import Tuple, Type

from .errors import FatalError, RecordError, TransientError

ExceptionKinds = Tuple[Type[BaseException], ...]


class Verdict(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    FATAL = "fatal"


@dataclass(frozen=True)
class FaultPolicy:
    """
    Skip and retry configuration for one step.

    Retryable failures re-run the whole chunk up to `retry_limit` times;
    skippable failures drop the record and count against `skip_limit`.
    FatalError subclasses are never retried or skipped.
    """

    retry_limit: int = 3
    skip_limit: int = 10
    retryable: ExceptionKinds = field(default=(TransientError, TimeoutError, ConnectionError))
    skippable: ExceptionKinds = field(default=(RecordError,))

    def __post_init__(self):
        if self.retry_limit < 0 or self.skip_limit < 0:
            raise ValueError("retry_limit and skip_limit must be >= 0")

    def is_retryable(self, exc: BaseException) -> bool:
        return not isinstance(exc, FatalError) and isinstance(exc, self.retryable)

    def is_skippable(self, exc: BaseException) -> bool:
        return not isinstance(exc, FatalError) and isinstance(exc, self.skippable)

    def classify(self, exc: BaseException, attempt: int = 0) -> Verdict:
        """
        `attempt` is the number of retries already spent on the current chunk.
        Once the retry budget is gone a retryable failure is reclassified as a
        skip when its kind is also skippable, otherwise it is fatal.
        """
        if self.is_retryable(exc) and attempt < self.retry_limit:
            return Verdict.RETRY
        if self.is_skippable(exc):
            return Verdict.SKIP
        return Verdict.FATAL

    @classmethod
    def from_settings(cls, settings, **overrides) -> "FaultPolicy":
        kw = {"retry_limit": settings.retry_limit, "skip_limit": settings.skip_limit}
        kw.update(overrides)
        return cls(**kw)

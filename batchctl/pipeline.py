"""
Processing pipeline: an ordered chain of transform steps applied to one
record at a time.

A step is any callable `step(record) -> record | DROP`. Returning DROP
filters the record out and stops the chain. Exceptions are not handled
here; the chunk engine classifies them.
"""
import logging
from numbers import Number
from typing import Any, Callable, Iterable, List, Optional

from .errors import RecordValidationError

logger = logging.getLogger(__name__)

Step = Callable[[Any], Any]


class _Drop:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DROP"


DROP = _Drop()


def _step_name(step: Step) -> str:
    return getattr(step, "name", None) or getattr(step, "__name__", None) or type(step).__name__


class Pipeline:
    def __init__(self, steps: Optional[Iterable[Step]] = None):
        self.steps: List[Step] = list(steps or [])

    def add(self, step: Step) -> "Pipeline":
        self.steps.append(step)
        return self

    def __len__(self) -> int:
        return len(self.steps)

    def __call__(self, record: Any) -> Any:
        return self.process(record)

    def process(self, record: Any) -> Any:
        result = record
        for step in self.steps:
            result = step(result)
            if result is DROP:
                logger.debug("Step %s dropped record", _step_name(step))
                return DROP
        return result


# ---------------------------------------------------------------------------
# Built-in steps
# ---------------------------------------------------------------------------

def transform_value(value: Any) -> Any:
    """Strings are upper-cased, numbers doubled, anything else passes through."""
    if isinstance(value, str):
        return value.upper()
    if isinstance(value, Number) and not isinstance(value, bool):
        return float(value) * 2
    return value


def uppercase_strings(record: Any) -> Any:
    """Upper-case every string field of a dict record (or a bare string)."""
    if isinstance(record, str):
        return record.upper()
    if isinstance(record, dict):
        return {k: v.upper() if isinstance(v, str) else v for k, v in record.items()}
    return record


def transform_values(record: Any) -> Any:
    if isinstance(record, dict):
        return {k: transform_value(v) for k, v in record.items()}
    if isinstance(record, list):
        return [transform_value(v) for v in record]
    return transform_value(record)


class ValidationStep:
    """
    Runs `validator(record)`; the validator returns an error message (or a
    list of them) for an invalid record, or None/empty when it is valid.
    Invalid records raise RecordValidationError (skippable) unless
    `drop_invalid` is set, in which case they are filtered out.
    """

    name = "validate"

    def __init__(self, validator: Callable[[Any], Any], drop_invalid: bool = False):
        self.validator = validator
        self.drop_invalid = drop_invalid

    def __call__(self, record: Any) -> Any:
        problems = self.validator(record)
        if not problems:
            return record
        if isinstance(problems, str):
            problems = [problems]
        message = "; ".join(str(p) for p in problems)
        if self.drop_invalid:
            logger.warning("Dropping invalid record: %s", message)
            return DROP
        raise RecordValidationError(message, items=[record])


class MappingStep:
    """Applies an explicit mapping function; a None result drops the record."""

    def __init__(self, mapper: Callable[[Any], Any], name: Optional[str] = None):
        self.mapper = mapper
        self.name = name or getattr(mapper, "__name__", "map")

    def __call__(self, record: Any) -> Any:
        out = self.mapper(record)
        return DROP if out is None else out


def require_fields(*fields: str) -> Callable[[Any], List[str]]:
    """Validator factory: every named field must be present and non-empty."""

    def check(record: Any) -> List[str]:
        if not isinstance(record, dict):
            return [f"expected a mapping record, got {type(record).__name__}"]
        return [f"missing field {f!r}" for f in fields if record.get(f) in (None, "")]

    return check

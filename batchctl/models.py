import hashlib
import json
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, RootModel, field_validator, model_validator

from .errors import IllegalStatusTransitionError, InvalidJobParametersError


class BatchStatus(str, Enum):
    STARTING = "STARTING"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.STOPPED)

    @property
    def is_running(self) -> bool:
        return self in (BatchStatus.STARTING, BatchStatus.STARTED)

    def can_transition_to(self, target: "BatchStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS = {
    BatchStatus.STARTING: {BatchStatus.STARTED, BatchStatus.FAILED, BatchStatus.STOPPED},
    BatchStatus.STARTED: {BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.STOPPED},
    BatchStatus.COMPLETED: set(),
    BatchStatus.FAILED: set(),
    BatchStatus.STOPPED: set(),
}


class ExitCode(str, Enum):
    UNKNOWN = "UNKNOWN"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    NOOP = "NOOP"
    FAILED = "FAILED"
    STOPPED = "STOPPED"


# ---------------------------------------------------------------------------
# Job parameters
# ---------------------------------------------------------------------------

class ParameterType(str, Enum):
    STRING = "STRING"
    LONG = "LONG"
    DOUBLE = "DOUBLE"
    DATE = "DATE"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class JobParameter(BaseModel):
    """One typed job parameter. `identifying` parameters define the job instance."""

    model_config = ConfigDict(frozen=True)

    value: Any
    type: ParameterType
    identifying: bool = True

    @model_validator(mode="after")
    def _check_value(self):
        v, t = self.value, self.type
        ok = (
            (t is ParameterType.STRING and isinstance(v, str))
            or (t is ParameterType.LONG and isinstance(v, int) and not isinstance(v, bool))
            or (t is ParameterType.DOUBLE and isinstance(v, float))
            or (t is ParameterType.DATE and isinstance(v, datetime))
        )
        if not ok:
            raise ValueError(f"value {v!r} does not match parameter type {t.value}")
        return self

    def to_text(self) -> str:
        """PARAM_VALUE column text; dates are stored as epoch milliseconds."""
        if self.type is ParameterType.DATE:
            return str(int(_as_utc(self.value).timestamp() * 1000))
        return str(self.value)

    @classmethod
    def from_text(cls, text: str, type: str, identifying: bool = True) -> "JobParameter":
        t = ParameterType(type)
        if t is ParameterType.LONG:
            value: Any = int(text)
        elif t is ParameterType.DOUBLE:
            value = float(text)
        elif t is ParameterType.DATE:
            value = datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
        else:
            value = text
        return cls(value=value, type=t, identifying=identifying)


class JobParameters(RootModel[Dict[str, JobParameter]]):
    """Ordered, immutable map of job parameters."""

    model_config = ConfigDict(frozen=True)

    root: Dict[str, JobParameter] = Field(default_factory=dict)

    def __iter__(self) -> Iterator[str]:
        return iter(self.root)

    def __len__(self) -> int:
        return len(self.root)

    def __contains__(self, key: str) -> bool:
        return key in self.root

    def __getitem__(self, key: str) -> JobParameter:
        return self.root[key]

    def items(self):
        return self.root.items()

    def get_value(self, key: str, default: Any = None) -> Any:
        p = self.root.get(key)
        return p.value if p is not None else default

    def identifying(self) -> Dict[str, JobParameter]:
        return {k: p for k, p in self.root.items() if p.identifying}

    def job_key(self) -> str:
        """MD5 over the identifying parameters, used to find the job instance."""
        buf = "".join(f"{k}={p.type.value}:{p.to_text()};" for k, p in self.identifying().items())
        return hashlib.md5(buf.encode("utf-8")).hexdigest()

    def values(self) -> Dict[str, Any]:
        return {k: p.value for k, p in self.root.items()}

    def __str__(self) -> str:
        return "{" + ", ".join(f"{k}={p.to_text()}" for k, p in self.root.items()) + "}"


class JobParametersBuilder:
    """Fluent builder for JobParameters, preserving insertion order."""

    def __init__(self, parameters: Optional[JobParameters] = None):
        self._params: Dict[str, JobParameter] = {}
        if parameters is not None:
            self.add_parameters(parameters)

    def _add(self, key: str, value: Any, ptype: ParameterType, identifying: bool) -> "JobParametersBuilder":
        if not key:
            raise InvalidJobParametersError("parameter key must not be empty")
        try:
            self._params[key] = JobParameter(value=value, type=ptype, identifying=identifying)
        except ValueError as e:
            raise InvalidJobParametersError(f"parameter {key!r}: {e}") from e
        return self

    def add_string(self, key: str, value: str, identifying: bool = True) -> "JobParametersBuilder":
        return self._add(key, value, ParameterType.STRING, identifying)

    def add_long(self, key: str, value: int, identifying: bool = True) -> "JobParametersBuilder":
        return self._add(key, value, ParameterType.LONG, identifying)

    def add_double(self, key: str, value: float, identifying: bool = True) -> "JobParametersBuilder":
        return self._add(key, float(value), ParameterType.DOUBLE, identifying)

    def add_date(self, key: str, value: datetime, identifying: bool = True) -> "JobParametersBuilder":
        if isinstance(value, date) and not isinstance(value, datetime):
            value = datetime(value.year, value.month, value.day)
        return self._add(key, _as_utc(value), ParameterType.DATE, identifying)

    def add_parameters(self, parameters: JobParameters) -> "JobParametersBuilder":
        for key, p in parameters.items():
            self._params[key] = p
        return self

    def with_run_id(self) -> "JobParametersBuilder":
        """Append a random identifying `run.id` so every launch is a new instance."""
        return self.add_string("run.id", uuid.uuid4().hex)

    def parse(self, entries: List[str]) -> "JobParametersBuilder":
        """
        Parse CLI-style parameters: `key=value`, `key(long)=5`,
        `key(double)=1.5`, `key(date)=2024-01-31`. A leading `-` marks the
        parameter as non-identifying.
        """
        for entry in entries:
            if "=" not in entry:
                raise InvalidJobParametersError(f"expected key=value, got {entry!r}")
            key, raw = entry.split("=", 1)
            identifying = not key.startswith("-")
            key = key.lstrip("-")
            ptype = "string"
            if key.endswith(")") and "(" in key:
                key, ptype = key[:-1].split("(", 1)
            ptype = ptype.strip().lower()
            try:
                if ptype == "string":
                    self.add_string(key, raw, identifying)
                elif ptype == "long":
                    self.add_long(key, int(raw), identifying)
                elif ptype == "double":
                    self.add_double(key, float(raw), identifying)
                elif ptype == "date":
                    self.add_date(key, datetime.fromisoformat(raw), identifying)
                else:
                    raise InvalidJobParametersError(f"unknown parameter type {ptype!r} for {key!r}")
            except ValueError as e:
                raise InvalidJobParametersError(f"parameter {key!r}: {e}") from e
        return self

    def to_job_parameters(self) -> JobParameters:
        return JobParameters(dict(self._params))


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------

def check_transition(current: BatchStatus, target: BatchStatus, what: str) -> None:
    if current == target:
        return
    if not current.can_transition_to(target):
        raise IllegalStatusTransitionError(f"{what}: cannot move from {current.value} to {target.value}")


class StepExecution(BaseModel):
    id: int
    job_execution_id: int
    step_name: str
    status: BatchStatus = BatchStatus.STARTING
    read_count: int = 0
    write_count: int = 0
    filter_count: int = 0
    skip_count: int = 0
    process_skip_count: int = 0
    write_skip_count: int = 0
    commit_count: int = 0
    rollback_count: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    exit_code: ExitCode = ExitCode.EXECUTING
    exit_message: str = ""
    version: int = 0
    last_updated: Optional[datetime] = None

    def upgrade_status(self, target: BatchStatus) -> None:
        check_transition(self.status, target, f"step execution {self.id} ({self.step_name})")
        self.status = target

    def summary(self) -> str:
        return (
            f"read={self.read_count} write={self.write_count} filter={self.filter_count} "
            f"skip={self.skip_count} commit={self.commit_count} rollback={self.rollback_count}"
        )


class JobExecution(BaseModel):
    id: int
    job_instance_id: int
    job_name: str
    parameters: JobParameters = Field(default_factory=JobParameters)
    status: BatchStatus = BatchStatus.STARTING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    exit_code: ExitCode = ExitCode.UNKNOWN
    exit_message: str = ""
    create_time: datetime
    last_updated: Optional[datetime] = None
    version: int = 0
    step_executions: List[StepExecution] = Field(default_factory=list)

    def upgrade_status(self, target: BatchStatus) -> None:
        check_transition(self.status, target, f"job execution {self.id} ({self.job_name})")
        self.status = target

    @property
    def is_running(self) -> bool:
        return self.status.is_running


class ExecutionContext:
    """
    Checkpoint state for one StepExecution. Values must be JSON scalars.
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(data or {})

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ExecutionContext) and other._data == self._data

    def __repr__(self) -> str:
        return f"ExecutionContext({self._data!r})"

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        v = self._data.get(key)
        return default if v is None else int(v)

    def put(self, key: str, value: Any) -> None:
        if isinstance(value, Decimal):
            value = float(value)
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise TypeError(f"execution context value for {key!r} must be a JSON scalar, got {type(value).__name__}")
        self._data[key] = value

    def copy(self) -> "ExecutionContext":
        return ExecutionContext(self._data)

    def to_json(self) -> str:
        return json.dumps(self._data, sort_keys=True)

    @classmethod
    def from_json(cls, text: Optional[str]) -> "ExecutionContext":
        return cls(json.loads(text) if text else {})


class JobDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    steps: Tuple[str, ...]

    @field_validator("steps")
    @classmethod
    def _steps_unique(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        if not v:
            raise ValueError("a job needs at least one step")
        if len(set(v)) != len(v):
            raise ValueError("step names must be unique within a job")
        return v


class NotificationMessage(BaseModel):
    """Body delivered to the notification queue for one order."""

    order_id: int
    user_id: int
    type: str = Field(default="EMAIL")  # EMAIL | SMS | PUSH | SYSTEM
    message: str
    status: str
    total_amount: str
    created_at: Optional[str] = None


DEFAULTS = {
    "chunk_size": 100,
    "max_threads": 4,
    "schedule_enabled": "true",
    "schedule_expression": "0 0 * * * ?",
    "retry_limit": 3,
    "skip_limit": 10,
    "page_size": 100,
    "backoff_base": 0.0,
    "queue_batch_size": 10,
}

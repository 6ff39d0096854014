"""
Built-in jobs.

notificationJob      orders table -> order/notification mapping -> queue
reportGenerationJob  orders query -> validation -> delimited report file
dataProcessingJob    delimited input file -> value transformation -> table

Paths and names come from job parameters, so the same definitions serve
every run.
"""
from typing import Optional

from .config import BatchSettings
from .errors import InvalidJobParametersError
from .launcher import JobRegistry, StepComponents, StepDefinition
from .mappers import order_row_to_notification
from .models import JobParameters
from .pipeline import MappingStep, Pipeline, ValidationStep, require_fields, transform_values
from .policy import FaultPolicy
from .readers import CheckpointedReader, FlatFilePageSource, SqlitePageSource
from .transport import SqliteQueueClient
from .writers import FlatFileWriter, QueueBatchWriter, SqliteTableWriter

ORDERS_QUERY = "SELECT id, user_id, total_amount, status, created_at FROM orders ORDER BY id"
REPORT_COLUMNS = ["id", "user_id", "total_amount", "status", "created_at"]


def _required(params: JobParameters, key: str) -> str:
    value = params.get_value(key)
    if value in (None, ""):
        raise InvalidJobParametersError(f"missing job parameter {key!r}")
    return str(value)


def _optional(params: JobParameters, key: str, default: Optional[str] = None) -> Optional[str]:
    value = params.get_value(key)
    return default if value in (None, "") else str(value)


# -- notificationJob ----------------------------------------------------------

def build_notification_step(params: JobParameters, settings: BatchSettings) -> StepComponents:
    source_db = _required(params, "source.db")
    reader = CheckpointedReader(SqlitePageSource(source_db, ORDERS_QUERY), page_size=settings.page_size)
    client = SqliteQueueClient(_optional(params, "outbox.db", source_db))
    writer = QueueBatchWriter(
        client,
        _optional(params, "queue", "order-notifications"),
        max_batch_size=settings.queue_batch_size,
    )
    return StepComponents(reader, Pipeline([MappingStep(order_row_to_notification)]), writer)


# -- reportGenerationJob ------------------------------------------------------

def build_report_step(params: JobParameters, settings: BatchSettings) -> StepComponents:
    source_db = _required(params, "source.db")
    reader = CheckpointedReader(
        SqlitePageSource(source_db, _optional(params, "query", ORDERS_QUERY)), page_size=settings.page_size
    )
    pipeline = Pipeline([ValidationStep(require_fields("id", "user_id", "status", "total_amount"))])
    writer = FlatFileWriter(_required(params, "output"), columns=REPORT_COLUMNS)
    return StepComponents(reader, pipeline, writer)


# -- dataProcessingJob --------------------------------------------------------

def build_data_processing_step(params: JobParameters, settings: BatchSettings) -> StepComponents:
    source = FlatFilePageSource(
        _required(params, "input"),
        delimiter=_optional(params, "delimiter", ","),
        lines_to_skip=int(params.get_value("lines.to.skip", 1)),
        encoding=_optional(params, "encoding", "utf-8"),
        strict=_optional(params, "strict", "true").lower() == "true",
    )
    reader = CheckpointedReader(source, page_size=settings.page_size)
    writer = SqliteTableWriter(_required(params, "target.db"), _optional(params, "table", "processed_data"), create_table=True)
    return StepComponents(reader, Pipeline([transform_values]), writer)


def register_builtin_jobs(registry: JobRegistry, settings: Optional[BatchSettings] = None) -> JobRegistry:
    settings = settings or BatchSettings()
    registry.register(
        "notificationJob",
        StepDefinition(
            "sendNotificationStep",
            build_notification_step,
            policy=FaultPolicy(retry_limit=settings.retry_limit, skip_limit=settings.skip_limit),
        ),
    )
    registry.register(
        "reportGenerationJob",
        StepDefinition(
            "generateReportStep",
            build_report_step,
            chunk_size=50,
            policy=FaultPolicy(retry_limit=0, skip_limit=settings.skip_limit),
        ),
    )
    registry.register(
        "dataProcessingJob",
        StepDefinition("processDataStep", build_data_processing_step),
    )
    return registry


def default_registry(settings: Optional[BatchSettings] = None) -> JobRegistry:
    return register_builtin_jobs(JobRegistry(), settings)

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import DEFAULTS
from .storage import JobRepository
from .transport import MAX_BATCH_ENTRIES


class BatchSettings(BaseModel):
    """Engine options. Accepts snake_case names or the camelCase aliases."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    chunk_size: int = Field(default=100, gt=0, alias="chunkSize")
    max_threads: int = Field(default=4, gt=0, alias="maxThreads")
    schedule_enabled: bool = Field(default=True, alias="scheduleEnabled")
    schedule_expression: str = Field(default="0 0 * * * ?", alias="scheduleExpression")
    retry_limit: int = Field(default=3, ge=0, alias="retryLimit")
    skip_limit: int = Field(default=10, ge=0, alias="skipLimit")
    page_size: int = Field(default=100, gt=0, alias="pageSize")
    backoff_base: float = Field(default=0.0, ge=0, alias="backoffBase")
    queue_batch_size: int = Field(default=10, gt=0, le=MAX_BATCH_ENTRIES, alias="queueBatchSize")


_ALIASES = {f.alias: name for name, f in BatchSettings.model_fields.items() if f.alias}


def normalize_key(key: str) -> str:
    """`chunkSize`, `chunk-size` and `chunk_size` all name the same option."""
    key = key.strip()
    if key in _ALIASES:
        return _ALIASES[key]
    return key.replace("-", "_")


def get_config(repo: JobRepository, key: str) -> Optional[str]:
    return repo.config_get(normalize_key(key))


def set_config(repo: JobRepository, key: str, value: str) -> None:
    """
    Store one option. Known options are validated before they are written,
    so a bad value never reaches the config table.
    """
    key = normalize_key(key)
    if key in BatchSettings.model_fields:
        current = {k: v for k, v in repo.config_items().items() if k in BatchSettings.model_fields}
        current[key] = value
        BatchSettings.model_validate(current)
    repo.config_set(key, value)


def load_settings(repo: Optional[JobRepository] = None, **overrides) -> BatchSettings:
    """Defaults, overlaid with the stored config table, overlaid with `overrides`."""
    values = {k: v for k, v in DEFAULTS.items()}
    if repo is not None:
        values.update(repo.config_items())
    values.update(overrides)
    known = {k: v for k, v in values.items() if k in BatchSettings.model_fields}
    return BatchSettings.model_validate(known)

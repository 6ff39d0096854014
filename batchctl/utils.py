import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def backoff_delay(base: float, attempts: int) -> float:
    """delay = base * 2 ** (attempts - 1); zero base disables waiting"""
    if base <= 0 or attempts <= 0:
        return 0.0
    return float(base) * 2 ** (int(attempts) - 1)


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> logging.Logger:
    """
    Configure the `batchctl` logger: rich console output plus an optional
    plain-text log file. Safe to call more than once.
    """
    logger = logging.getLogger("batchctl")
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers = []

    console = RichHandler(rich_tracebacks=True, show_time=False, show_path=False)
    logger.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        logger.addHandler(fh)

    logger.propagate = False
    return logger


def describe_error(exc: BaseException, limit: int = 2500) -> str:
    """Exit message for a failed execution, truncated to keep rows small."""
    msg = f"{type(exc).__name__}: {exc}"
    return msg[:limit]

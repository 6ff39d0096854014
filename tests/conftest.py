import sqlite3

import pytest

from batchctl.config import BatchSettings
from batchctl.models import JobParametersBuilder
from batchctl.storage import JobRepository


@pytest.fixture
def repo(tmp_path):
    r = JobRepository(tmp_path / "batch.db")
    yield r
    r.close()


@pytest.fixture
def settings():
    return BatchSettings(chunk_size=10, page_size=10, retry_limit=2, skip_limit=3)


@pytest.fixture
def params():
    return JobParametersBuilder().add_string("source", "test").to_job_parameters()


@pytest.fixture(autouse=True)
def batchctl_home(tmp_path, monkeypatch):
    monkeypatch.setenv("BATCHCTL_HOME", str(tmp_path / "home"))


@pytest.fixture
def orders_db(tmp_path):
    """sqlite database with an `orders` table of five rows."""
    path = tmp_path / "orders.db"
    conn = sqlite3.connect(path)
    conn.execute(
        """CREATE TABLE orders(
             id INTEGER PRIMARY KEY,
             user_id INTEGER NOT NULL,
             total_amount NUMERIC NOT NULL,
             status TEXT NOT NULL,
             shipping_address TEXT,
             created_at TEXT)"""
    )
    rows = [
        (1, 10, 19.99, "PENDING", "1 Main St", "2024-01-01T10:00:00"),
        (2, 11, 5.5, "SHIPPED", "2 Main St", "2024-01-02T10:00:00"),
        (3, 12, 100, "DELIVERED", "3 Main St", "2024-01-03T10:00:00"),
        (4, 13, 42.0, "PROCESSING", "4 Main St", "2024-01-04T10:00:00"),
        (5, 14, 7.25, "CANCELED", "5 Main St", "2024-01-05T10:00:00"),
    ]
    conn.executemany("INSERT INTO orders VALUES(?,?,?,?,?,?)", rows)
    conn.commit()
    conn.close()
    return path

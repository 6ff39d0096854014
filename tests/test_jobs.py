"""End-to-end runs of the built-in jobs against sqlite and flat files."""
import json
import sqlite3

import pytest

from batchctl.jobs import ORDERS_QUERY, default_registry
from batchctl.launcher import JobLauncher, JobRegistry, StepComponents, StepDefinition
from batchctl.mappers import order_row_to_notification
from batchctl.models import BatchStatus, JobParametersBuilder
from batchctl.pipeline import MappingStep, Pipeline
from batchctl.readers import CheckpointedReader, SqlitePageSource
from batchctl.transport import BatchResult, SqliteQueueClient
from batchctl.writers import QueueBatchWriter


class CountingClient:
    def __init__(self):
        self.calls = []

    def send_message_batch(self, queue, entries):
        self.calls.append(list(entries))
        return BatchResult(successful=[e.id for e in entries])


@pytest.fixture
def launcher(repo, settings):
    launcher = JobLauncher(repo, default_registry(settings), settings)
    yield launcher
    launcher.shutdown()


def job_params(**values):
    builder = JobParametersBuilder()
    for key, value in values.items():
        builder.add_string(key.replace("_", "."), str(value))
    return builder.to_job_parameters()


class TestNotificationJob:
    def test_five_orders_are_delivered_in_one_call(self, repo, settings, params, orders_db):
        client = CountingClient()

        def build(params, settings):
            reader = CheckpointedReader(SqlitePageSource(orders_db, ORDERS_QUERY), page_size=100)
            return StepComponents(reader, Pipeline([MappingStep(order_row_to_notification)]), QueueBatchWriter(client, "q"))

        registry = JobRegistry()
        registry.register("notify", StepDefinition("send", build, chunk_size=100))
        execution = JobLauncher(repo, registry, settings).run("notify", params)

        assert execution.status is BatchStatus.COMPLETED
        assert len(client.calls) == 1
        assert len(client.calls[0]) == 5
        step = repo.get_step_executions(execution.id)[0]
        assert (step.read_count, step.write_count, step.commit_count) == (5, 5, 1)

    def test_builtin_job_fills_the_outbox(self, launcher, repo, tmp_path, orders_db):
        outbox = tmp_path / "outbox.db"
        execution = launcher.run("notificationJob", job_params(source_db=orders_db, outbox_db=outbox))

        assert execution.status is BatchStatus.COMPLETED
        messages = SqliteQueueClient(outbox).messages("order-notifications")
        bodies = [json.loads(m["body"]) for m in messages]
        assert [b["order_id"] for b in bodies] == [1, 2, 3, 4, 5]
        assert bodies[0]["message"] == "Your order #1 (19.99) has been received."
        assert len({m["message_id"] for m in messages}) == 5

    def test_orders_without_notification_are_filtered(self, launcher, repo, tmp_path, orders_db):
        conn = sqlite3.connect(orders_db)
        conn.execute("INSERT INTO orders VALUES(6, 15, 1, 'ARCHIVED', NULL, NULL)")
        conn.commit()
        conn.close()

        execution = launcher.run("notificationJob", job_params(source_db=orders_db, outbox_db=tmp_path / "o.db"))

        step = repo.get_step_executions(execution.id)[0]
        assert step.filter_count == 1
        assert step.write_count == 5

    def test_missing_source_fails_the_job(self, launcher):
        execution = launcher.run("notificationJob", job_params(queue="q"))

        assert execution.status is BatchStatus.FAILED
        assert "missing job parameter 'source.db'" in execution.exit_message


class TestReportGenerationJob:
    def test_writes_report_with_header(self, launcher, tmp_path, orders_db):
        output = tmp_path / "reports" / "orders.csv"
        execution = launcher.run("reportGenerationJob", job_params(source_db=orders_db, output=output))

        assert execution.status is BatchStatus.COMPLETED
        lines = output.read_text(encoding="utf-8").splitlines()
        assert lines[0] == "id,user_id,total_amount,status,created_at"
        assert len(lines) == 6
        assert lines[2].startswith("2,11,5.5,SHIPPED")


class TestDataProcessingJob:
    def write_input(self, tmp_path, text):
        path = tmp_path / "input.csv"
        path.write_text(text, encoding="utf-8")
        return path

    def test_transforms_and_loads_rows(self, launcher, tmp_path):
        source = self.write_input(tmp_path, "name,city\napple,paris\npear,rome\n")
        target = tmp_path / "target.db"
        execution = launcher.run("dataProcessingJob", job_params(input=source, target_db=target))

        assert execution.status is BatchStatus.COMPLETED
        rows = sqlite3.connect(target).execute("SELECT name, city FROM processed_data ORDER BY name").fetchall()
        assert rows == [("APPLE", "PARIS"), ("PEAR", "ROME")]

    def test_strict_input_fails_on_malformed_line(self, launcher, tmp_path):
        source = self.write_input(tmp_path, "name,city\napple,paris\nbroken\n")
        execution = launcher.run("dataProcessingJob", job_params(input=source, target_db=tmp_path / "t.db"))

        assert execution.status is BatchStatus.FAILED
        assert "FlatFileParseError" in execution.exit_message

    def test_lenient_input_ignores_malformed_line(self, launcher, repo, tmp_path):
        source = self.write_input(tmp_path, "name,city\napple,paris\nbroken\npear,rome\n")
        execution = launcher.run(
            "dataProcessingJob", job_params(input=source, target_db=tmp_path / "t.db", strict="false")
        )

        assert execution.status is BatchStatus.COMPLETED
        assert repo.get_step_executions(execution.id)[0].write_count == 2


def test_registry_lists_builtin_jobs():
    assert default_registry().job_names() == ["dataProcessingJob", "notificationJob", "reportGenerationJob"]

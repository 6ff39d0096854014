from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError
from rich import print
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import get_config, load_settings, set_config
from .errors import BatchError
from .jobs import default_registry
from .launcher import JobLauncher
from .models import BatchStatus, JobExecution, JobParametersBuilder
from .monitor import ExecutionMonitor
from .storage import JobRepository
from .utils import setup_logging

app = typer.Typer(help="batchctl - chunk-oriented batch jobs with checkpoints, retries and skips.")

config_app = typer.Typer(help="Read and write engine settings.")
app.add_typer(config_app, name="config")

_STATUS_STYLE = {
    BatchStatus.COMPLETED: "green",
    BatchStatus.FAILED: "red",
    BatchStatus.STOPPED: "yellow",
    BatchStatus.STARTED: "cyan",
    BatchStatus.STARTING: "cyan",
}


def _repo(ctx: typer.Context) -> JobRepository:
    return ctx.obj["repo"]


def _launcher(ctx: typer.Context) -> JobLauncher:
    repo = _repo(ctx)
    settings = load_settings(repo)
    return JobLauncher(repo, default_registry(settings), settings)


def _fail(e: Exception, code: int = 1):
    print(f"[red]{escape(str(e))}[/red]")
    raise typer.Exit(code)


def _status(status: BatchStatus) -> str:
    style = _STATUS_STYLE.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


def _fmt(dt) -> str:
    return dt.isoformat(timespec="seconds") if dt else ""


def _executions_table(title: str, rows: List[JobExecution]) -> Table:
    t = Table(title=title)
    for c in ["id", "job", "status", "exit_code", "start_time", "end_time", "parameters", "exit_message"]:
        t.add_column(c)
    for e in rows:
        t.add_row(
            str(e.id),
            e.job_name,
            _status(e.status),
            e.exit_code.value,
            _fmt(e.start_time),
            _fmt(e.end_time),
            escape(str(e.parameters)),
            escape((e.exit_message or "")[:80]),
        )
    return t


@app.callback()
def main(
    ctx: typer.Context,
    db: Optional[Path] = typer.Option(None, "--db", envvar="BATCHCTL_DB", help="Tracking database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    setup_logging("DEBUG" if verbose else "INFO")
    ctx.obj = {"repo": JobRepository(db)}


# -----------------------------
# Launch / restart / stop
# -----------------------------
@app.command()
def run(
    ctx: typer.Context,
    job_name: str = typer.Argument(..., help="Registered job name"),
    params: Optional[List[str]] = typer.Argument(
        None, help="Job parameters: key=value, key(long)=5, key(date)=2024-01-31; prefix '-' for non-identifying"
    ),
    new_run: bool = typer.Option(False, "--new-run", help="Add a random run.id so this is a new job instance"),
):
    """Launch a job and wait for it to finish."""
    try:
        builder = JobParametersBuilder().parse(params or [])
        if new_run:
            builder.with_run_id()
        execution = _launcher(ctx).run(job_name, builder.to_job_parameters())
    except BatchError as e:
        _fail(e)
    _report(execution)


@app.command()
def restart(ctx: typer.Context, execution_id: int = typer.Argument(..., help="FAILED or STOPPED execution id")):
    """Restart a failed or stopped execution from its last checkpoint."""
    try:
        execution = _launcher(ctx).restart(execution_id)
    except BatchError as e:
        _fail(e)
    _report(execution)


def _report(execution: JobExecution):
    print(f"Job [bold]{execution.job_name}[/bold] execution {execution.id}: {_status(execution.status)}")
    if execution.exit_message:
        print(f"  {escape(execution.exit_message)}")
    if execution.status is not BatchStatus.COMPLETED:
        raise typer.Exit(1)


@app.command()
def stop(ctx: typer.Context, execution_id: int):
    """Ask a running execution to stop after its current chunk."""
    try:
        _launcher(ctx).stop(execution_id)
    except BatchError as e:
        _fail(e)
    print(f"[yellow]Stop requested for execution {execution_id}. It stops after the current chunk.[/yellow]")


@app.command()
def recover(ctx: typer.Context, execution_id: int):
    """Mark an execution orphaned by a crashed process as FAILED so it can be restarted."""
    try:
        execution = _launcher(ctx).recover(execution_id)
    except BatchError as e:
        _fail(e)
    print(f"Execution {execution.id} marked {_status(execution.status)}")


# -----------------------------
# Monitoring
# -----------------------------
@app.command()
def status(ctx: typer.Context, execution_id: int):
    """Show one execution with its steps."""
    try:
        execution = ExecutionMonitor(_repo(ctx)).get_execution(execution_id)
    except BatchError as e:
        _fail(e)
    console = Console()
    console.print(_executions_table(f"Execution {execution_id}", [execution]))

    st = Table(title="Steps")
    for c in ["id", "step", "status", "read", "write", "filter", "skip", "commit", "rollback", "exit_message"]:
        st.add_column(c)
    for s in execution.step_executions:
        st.add_row(
            str(s.id), s.step_name, _status(s.status), str(s.read_count), str(s.write_count),
            str(s.filter_count), str(s.skip_count), str(s.commit_count), str(s.rollback_count),
            escape((s.exit_message or "")[:80]),
        )
    console.print(st)


@app.command()
def running(ctx: typer.Context, job: Optional[str] = typer.Option(None, "--job", help="Filter by job name")):
    """List executions that are still running."""
    rows = ExecutionMonitor(_repo(ctx)).running_executions(job)
    Console().print(_executions_table(f"Running{'' if not job else f' ({job})'}", rows))


@app.command()
def history(
    ctx: typer.Context,
    job_name: str,
    limit: int = typer.Option(10, "--limit", "-n", help="Number of executions"),
):
    """List the most recent executions of a job."""
    rows = ExecutionMonitor(_repo(ctx)).recent_executions(job_name, limit)
    Console().print(_executions_table(f"Recent executions of {job_name}", rows))


@app.command()
def jobs(ctx: typer.Context):
    """List registered jobs and their steps."""
    registry = default_registry(load_settings(_repo(ctx)))
    t = Table(title="Jobs")
    t.add_column("job")
    t.add_column("steps")
    for name in registry.job_names():
        t.add_row(name, ", ".join(registry.get_job(name).steps))
    Console().print(t)


# -----------------------------
# Config
# -----------------------------
@config_app.command("get")
def config_get_cmd(ctx: typer.Context, key: str = typer.Argument(..., help="Config key")):
    print(get_config(_repo(ctx), key) or "")


@config_app.command("set")
def config_set_cmd(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Config key, e.g. chunkSize or chunk-size"),
    value: str = typer.Argument(..., help="Value"),
):
    try:
        set_config(_repo(ctx), key, value)
    except ValidationError as e:
        _fail(e, code=2)
    print(f"set {key}={value}")


@config_app.command("show")
def config_show_cmd(ctx: typer.Context):
    """Show the effective settings."""
    settings = load_settings(_repo(ctx))
    t = Table(title="Settings")
    t.add_column("key")
    t.add_column("value")
    for k, v in settings.model_dump().items():
        t.add_row(k, str(v))
    Console().print(t)

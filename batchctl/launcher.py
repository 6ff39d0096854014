"""
Job launching: a job sequences its steps; each step gets a fresh
reader/pipeline/writer triple and a ChunkEngine.

Restarting a FAILED or STOPPED execution creates a new execution of the
same job instance. Steps that already completed are not run again; the
others resume from the last checkpoint their previous execution stored.
"""
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from .config import BatchSettings, load_settings
from .engine import ChunkEngine
from .errors import (
    JobExecutionNotRunningError,
    JobRestartError,
    NoSuchJobError,
    NoSuchJobExecutionError,
)
from .models import (
    BatchStatus,
    ExecutionContext,
    ExitCode,
    JobDefinition,
    JobExecution,
    JobParameters,
    StepExecution,
)
from .policy import FaultPolicy
from .storage import JobRepository
from .utils import describe_error, utcnow
from .worker import RangePartitioner, TaskPool, run_partitions

logger = logging.getLogger(__name__)


@dataclass
class StepComponents:
    reader: Any
    pipeline: Callable[[Any], Any]
    writer: Any


@dataclass(frozen=True)
class StepDefinition:
    """
    `build(parameters, settings)` returns a new StepComponents on every
    call; partitioned steps call it once per partition.
    `total(parameters, settings)` sizes the input for partitioning.
    """

    name: str
    build: Callable[[JobParameters, BatchSettings], StepComponents]
    chunk_size: Optional[int] = None
    policy: Optional[FaultPolicy] = None
    partitions: int = 1
    total: Optional[Callable[[JobParameters, BatchSettings], int]] = None

    def __post_init__(self):
        if self.partitions < 1:
            raise ValueError("partitions must be >= 1")
        if self.partitions > 1 and self.total is None:
            raise ValueError(f"partitioned step {self.name!r} needs a total() callable")


class JobRegistry:
    def __init__(self):
        self._jobs: Dict[str, JobDefinition] = {}
        self._steps: Dict[str, StepDefinition] = {}

    def register_step(self, step: StepDefinition) -> StepDefinition:
        self._steps[step.name] = step
        return step

    def register_job(self, job: JobDefinition) -> JobDefinition:
        missing = [s for s in job.steps if s not in self._steps]
        if missing:
            raise ValueError(f"job {job.name!r} references unknown steps: {', '.join(missing)}")
        self._jobs[job.name] = job
        return job

    def register(self, name: str, *steps: StepDefinition) -> JobDefinition:
        for s in steps:
            self.register_step(s)
        return self.register_job(JobDefinition(name=name, steps=tuple(s.name for s in steps)))

    def get_job(self, name: str) -> JobDefinition:
        try:
            return self._jobs[name]
        except KeyError:
            raise NoSuchJobError(name, self._jobs.keys()) from None

    def get_step(self, name: str) -> StepDefinition:
        return self._steps[name]

    def job_names(self) -> List[str]:
        return sorted(self._jobs)


class JobLauncher:
    def __init__(self, repo: JobRepository, registry: JobRegistry, settings: Optional[BatchSettings] = None):
        self.repo = repo
        self.registry = registry
        self.settings = settings or load_settings(repo)
        self._pool = TaskPool(self.settings.max_threads)
        self._active: Dict[int, StepExecution] = {}
        self._lock = threading.Lock()

    # -- operator API ------------------------------------------------------

    def run(self, job_name: str, parameters: Optional[JobParameters] = None) -> JobExecution:
        """
        Launch a job and drive it to a terminal status. Launch errors (unknown
        job, already running, already complete) are raised; step failures are
        recorded on the returned execution.
        """
        job = self.registry.get_job(job_name)
        execution = self.repo.create_job_execution(job.name, parameters or JobParameters())
        return self._execute(job, execution)

    def run_async(self, job_name: str, parameters: Optional[JobParameters] = None) -> "Future[JobExecution]":
        return self._pool.submit(self.run, job_name, parameters)

    def restart(self, execution_id: int) -> JobExecution:
        prior = self.repo.get_job_execution(execution_id)
        if prior is None:
            raise NoSuchJobExecutionError(execution_id)
        if prior.status not in (BatchStatus.FAILED, BatchStatus.STOPPED):
            raise JobRestartError(
                f"job execution {execution_id} is {prior.status.value}; only FAILED or STOPPED executions restart"
            )
        logger.info("Restarting %s from execution %d", prior.job_name, execution_id)
        return self.run(prior.job_name, prior.parameters)

    def stop(self, execution_id: int) -> None:
        """Ask a running execution to stop after its current chunk."""
        execution = self.repo.get_job_execution(execution_id)
        if execution is None:
            raise NoSuchJobExecutionError(execution_id)
        if not execution.is_running:
            raise JobExecutionNotRunningError(execution_id, execution.status.value)
        self.repo.request_stop(execution_id)
        logger.info("Stop requested for %s execution %d", execution.job_name, execution_id)

    def recover(self, execution_id: int, reason: str = "execution abandoned by a crashed process") -> JobExecution:
        """
        Mark an execution left STARTING/STARTED by a dead process as FAILED
        so that it can be restarted.
        """
        execution = self.repo.get_job_execution(execution_id)
        if execution is None:
            raise NoSuchJobExecutionError(execution_id)
        if not execution.is_running:
            raise JobExecutionNotRunningError(execution_id, execution.status.value)
        with self._lock:
            if any(s.job_execution_id == execution_id for s in self._active.values()):
                raise JobRestartError(f"job execution {execution_id} is running in this process")
        now = utcnow()
        for step in self.repo.get_step_executions(execution_id):
            if step.status.is_running:
                step.upgrade_status(BatchStatus.FAILED)
                step.exit_code = ExitCode.FAILED
                step.exit_message = reason
                step.end_time = now
                self.repo.update_step_execution(step)
        execution.upgrade_status(BatchStatus.FAILED)
        execution.exit_code = ExitCode.FAILED
        execution.exit_message = reason
        execution.end_time = now
        self.repo.update_job_execution(execution)
        logger.warning("Marked %s execution %d FAILED: %s", execution.job_name, execution_id, reason)
        return execution

    def active_steps(self) -> List[StepExecution]:
        """Snapshots of the step executions currently driven by this process."""
        with self._lock:
            return [s.model_copy() for s in self._active.values()]

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    # -- job ---------------------------------------------------------------

    def _execute(self, job: JobDefinition, execution: JobExecution) -> JobExecution:
        execution.start_time = utcnow()
        execution.upgrade_status(BatchStatus.STARTED)
        execution.exit_code = ExitCode.EXECUTING
        self.repo.update_job_execution(execution)
        logger.info("==== JOB STARTING: %s (execution %d) ====", job.name, execution.id)
        logger.info("Job parameters: %s", execution.parameters)

        try:
            for step_name in job.steps:
                step = self._run_step(self.registry.get_step(step_name), execution)
                if step.status is BatchStatus.COMPLETED:
                    continue
                execution.upgrade_status(step.status)
                execution.exit_code = ExitCode.FAILED if step.status is BatchStatus.FAILED else ExitCode.STOPPED
                execution.exit_message = f"step {step.step_name}: {step.exit_message}"
                break
            else:
                execution.upgrade_status(BatchStatus.COMPLETED)
                execution.exit_code = ExitCode.COMPLETED
        except Exception as e:
            logger.error("Job %s failed", job.name, exc_info=True)
            execution.upgrade_status(BatchStatus.FAILED)
            execution.exit_code = ExitCode.FAILED
            execution.exit_message = describe_error(e)

        execution.end_time = utcnow()
        self.repo.update_job_execution(execution)
        duration = (execution.end_time - execution.start_time).total_seconds() * 1000
        logger.info("==== JOB FINISHED: %s ====", job.name)
        logger.info("Status: %s, duration: %d ms", execution.status.value, duration)
        if execution.status is BatchStatus.FAILED:
            logger.error("Job %s execution %d failed: %s", job.name, execution.id, execution.exit_message)
        return execution

    # -- steps -------------------------------------------------------------

    def _run_step(self, step_def: StepDefinition, execution: JobExecution) -> StepExecution:
        prior = self.repo.last_step_execution(execution.job_instance_id, step_def.name)
        if prior is not None and prior.status is BatchStatus.COMPLETED:
            logger.info("Step %s already completed in execution %d; not run again", step_def.name, prior.job_execution_id)
            return prior
        if step_def.partitions > 1:
            return self._run_partitioned(step_def, execution)
        context = self.repo.get_execution_context(prior.id) if prior is not None else ExecutionContext()
        step = self.repo.create_step_execution(execution.id, step_def.name)
        # the new step holds the inherited checkpoint until its own first commit
        self.repo.save_execution_context(step.id, context)
        return self._run_engine(step_def, execution, step, context)

    def _run_engine(
        self, step_def: StepDefinition, execution: JobExecution, step: StepExecution, context: ExecutionContext
    ) -> StepExecution:
        try:
            parts = step_def.build(execution.parameters, self.settings)
        except Exception as e:
            logger.error("Could not build step %s", step.step_name, exc_info=True)
            step.upgrade_status(BatchStatus.FAILED)
            step.exit_code = ExitCode.FAILED
            step.exit_message = describe_error(e)
            step.end_time = utcnow()
            self.repo.update_step_execution(step)
            return step

        engine = ChunkEngine(
            reader=parts.reader,
            pipeline=parts.pipeline,
            writer=parts.writer,
            repo=self.repo,
            step=step,
            policy=step_def.policy or FaultPolicy.from_settings(self.settings),
            chunk_size=step_def.chunk_size or self.settings.chunk_size,
            context=context,
            should_stop=partial(self.repo.stop_requested, execution.id),
            backoff_base=self.settings.backoff_base,
        )
        with self._lock:
            self._active[step.id] = step
        try:
            return engine.run()
        finally:
            with self._lock:
                self._active.pop(step.id, None)

    def _run_partitioned(self, step_def: StepDefinition, execution: JobExecution) -> StepExecution:
        master = self.repo.create_step_execution(execution.id, step_def.name)
        master.start_time = utcnow()
        master.upgrade_status(BatchStatus.STARTED)
        master.exit_code = ExitCode.EXECUTING
        self.repo.update_step_execution(master)

        ranges: Optional[List[Dict[str, int]]] = None
        tasks = []
        done: List[StepExecution] = []
        for i in range(step_def.partitions):
            name = f"{step_def.name}:partition{i}"
            prior = self.repo.last_step_execution(execution.job_instance_id, name)
            if prior is not None and prior.status is BatchStatus.COMPLETED:
                done.append(prior)
                continue
            if prior is not None:
                context = self.repo.get_execution_context(prior.id)
            else:
                if ranges is None:
                    total = step_def.total(execution.parameters, self.settings)
                    ranges = RangePartitioner(step_def.partitions).partition(total)
                context = ExecutionContext(ranges[i])
            step = self.repo.create_step_execution(execution.id, name)
            self.repo.save_execution_context(step.id, context)
            tasks.append(partial(self._run_engine, step_def, execution, step, context))

        logger.info(
            "Step %s: running %d partition(s) on up to %d threads (%d already complete)",
            step_def.name, len(tasks), self.settings.max_threads, len(done),
        )
        results = run_partitions(tasks, self.settings.max_threads)

        # totals cover the whole input, including partitions finished by earlier executions
        for part in done + results:
            master.read_count += part.read_count
            master.write_count += part.write_count
            master.filter_count += part.filter_count
            master.skip_count += part.skip_count
            master.process_skip_count += part.process_skip_count
            master.write_skip_count += part.write_skip_count
            master.commit_count += part.commit_count
            master.rollback_count += part.rollback_count

        failed = [p for p in results if p.status is BatchStatus.FAILED]
        stopped = [p for p in results if p.status is BatchStatus.STOPPED]
        if failed:
            master.upgrade_status(BatchStatus.FAILED)
            master.exit_code = ExitCode.FAILED
            master.exit_message = f"{failed[0].step_name}: {failed[0].exit_message}"
        elif stopped:
            master.upgrade_status(BatchStatus.STOPPED)
            master.exit_code = ExitCode.STOPPED
            master.exit_message = "stop requested"
        else:
            master.upgrade_status(BatchStatus.COMPLETED)
            master.exit_code = ExitCode.COMPLETED
        master.end_time = utcnow()
        self.repo.update_step_execution(master)
        return master

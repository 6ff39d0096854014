import logging
from typing import List, Optional

from .errors import NoSuchJobExecutionError
from .models import BatchStatus, JobExecution, StepExecution
from .storage import JobRepository

logger = logging.getLogger(__name__)


class ExecutionMonitor:
    """
    Read-only views over the tracking store and, when a launcher is given,
    the steps it is driving right now. Nothing here starts or changes work.
    """

    def __init__(self, repo: JobRepository, launcher=None):
        self.repo = repo
        self.launcher = launcher

    def job_names(self) -> List[str]:
        return self.repo.job_names()

    def running_executions(self, job_name: Optional[str] = None) -> List[JobExecution]:
        """Executions still STARTING/STARTED, for one job or for all of them."""
        running = self.repo.find_running_executions(job_name)
        logger.debug("Found %d running execution(s) for %s", len(running), job_name or "all jobs")
        return running

    def get_execution(self, execution_id: int) -> JobExecution:
        execution = self.repo.get_job_execution(execution_id, with_steps=True)
        if execution is None:
            logger.error("No job execution found with id %d", execution_id)
            raise NoSuchJobExecutionError(execution_id)
        return execution

    def get_status(self, execution_id: int) -> BatchStatus:
        return self.get_execution(execution_id).status

    def recent_executions(self, job_name: str, limit: int = 10) -> List[JobExecution]:
        """The `limit` most recently started executions of a job."""
        if limit <= 0:
            return []
        return self.repo.find_job_executions(job_name, limit=limit)

    def live_steps(self) -> List[StepExecution]:
        """Snapshots of the steps this process is driving right now."""
        if self.launcher is None:
            return []
        return self.launcher.active_steps()

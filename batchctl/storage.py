"""
Execution tracking store (sqlite).

History is append-only: every state transition of a job or step execution
inserts a new VERSION row, and the current state of an execution is its
highest version. Rows are never updated, so concurrent workers only ever
insert rows keyed by their own execution ids.
"""
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from functools import wraps
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import (
    IllegalStatusTransitionError,
    JobExecutionAlreadyRunningError,
    JobInstanceAlreadyCompleteError,
    NoSuchJobExecutionError,
)
from .models import (
    DEFAULTS,
    BatchStatus,
    ExecutionContext,
    ExitCode,
    JobExecution,
    JobParameter,
    JobParameters,
    StepExecution,
    check_transition,
)
from .utils import utcnow


def default_db_path() -> Path:
    home = Path(os.environ.get("BATCHCTL_HOME", Path.home() / ".batchctl"))
    home.mkdir(parents=True, exist_ok=True)
    return home / "batch.db"


SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS JOB_INSTANCE(
  JOB_INSTANCE_ID INTEGER PRIMARY KEY AUTOINCREMENT,
  JOB_NAME TEXT NOT NULL,
  JOB_KEY TEXT NOT NULL,
  CREATE_TIME TEXT NOT NULL,
  UNIQUE(JOB_NAME, JOB_KEY)
);
CREATE TABLE IF NOT EXISTS JOB_EXECUTION_SEQ(
  ID INTEGER PRIMARY KEY AUTOINCREMENT,
  CREATE_TIME TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS JOB_EXECUTION(
  JOB_EXECUTION_ID INTEGER NOT NULL,
  VERSION INTEGER NOT NULL,
  JOB_INSTANCE_ID INTEGER NOT NULL,
  JOB_NAME TEXT NOT NULL,
  START_TIME TEXT,
  END_TIME TEXT,
  STATUS TEXT NOT NULL,
  EXIT_CODE TEXT,
  EXIT_MESSAGE TEXT,
  CREATE_TIME TEXT NOT NULL,
  LAST_UPDATED TEXT NOT NULL,
  PRIMARY KEY(JOB_EXECUTION_ID, VERSION)
);
CREATE INDEX IF NOT EXISTS idx_job_execution_name ON JOB_EXECUTION(JOB_NAME);
CREATE INDEX IF NOT EXISTS idx_job_execution_instance ON JOB_EXECUTION(JOB_INSTANCE_ID);
CREATE VIEW IF NOT EXISTS JOB_EXECUTION_CURRENT AS
  SELECT e.* FROM JOB_EXECUTION e
   WHERE e.VERSION = (SELECT MAX(v.VERSION) FROM JOB_EXECUTION v
                       WHERE v.JOB_EXECUTION_ID = e.JOB_EXECUTION_ID);
CREATE TABLE IF NOT EXISTS JOB_EXECUTION_PARAMS(
  JOB_EXECUTION_ID INTEGER NOT NULL,
  PARAM_ORDER INTEGER NOT NULL,
  PARAM_KEY TEXT NOT NULL,
  PARAM_VALUE TEXT,
  PARAM_TYPE TEXT NOT NULL,
  IDENTIFYING INTEGER NOT NULL DEFAULT 1,
  PRIMARY KEY(JOB_EXECUTION_ID, PARAM_KEY)
);
CREATE TABLE IF NOT EXISTS STEP_EXECUTION_SEQ(
  ID INTEGER PRIMARY KEY AUTOINCREMENT,
  CREATE_TIME TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS STEP_EXECUTION(
  STEP_EXECUTION_ID INTEGER NOT NULL,
  VERSION INTEGER NOT NULL,
  JOB_EXECUTION_ID INTEGER NOT NULL,
  STEP_NAME TEXT NOT NULL,
  STATUS TEXT NOT NULL,
  READ_COUNT INTEGER NOT NULL DEFAULT 0,
  WRITE_COUNT INTEGER NOT NULL DEFAULT 0,
  FILTER_COUNT INTEGER NOT NULL DEFAULT 0,
  SKIP_COUNT INTEGER NOT NULL DEFAULT 0,
  PROCESS_SKIP_COUNT INTEGER NOT NULL DEFAULT 0,
  WRITE_SKIP_COUNT INTEGER NOT NULL DEFAULT 0,
  COMMIT_COUNT INTEGER NOT NULL DEFAULT 0,
  ROLLBACK_COUNT INTEGER NOT NULL DEFAULT 0,
  START_TIME TEXT,
  END_TIME TEXT,
  EXIT_CODE TEXT,
  EXIT_MESSAGE TEXT,
  LAST_UPDATED TEXT NOT NULL,
  PRIMARY KEY(STEP_EXECUTION_ID, VERSION)
);
CREATE INDEX IF NOT EXISTS idx_step_execution_job ON STEP_EXECUTION(JOB_EXECUTION_ID);
CREATE VIEW IF NOT EXISTS STEP_EXECUTION_CURRENT AS
  SELECT s.* FROM STEP_EXECUTION s
   WHERE s.VERSION = (SELECT MAX(v.VERSION) FROM STEP_EXECUTION v
                       WHERE v.STEP_EXECUTION_ID = s.STEP_EXECUTION_ID);
CREATE TABLE IF NOT EXISTS STEP_EXECUTION_CONTEXT(
  STEP_EXECUTION_ID INTEGER NOT NULL,
  VERSION INTEGER NOT NULL,
  CONTEXT TEXT NOT NULL,
  CREATE_TIME TEXT NOT NULL,
  PRIMARY KEY(STEP_EXECUTION_ID, VERSION)
);
CREATE TABLE IF NOT EXISTS STOP_REQUEST(
  JOB_EXECUTION_ID INTEGER PRIMARY KEY,
  REQUEST_TIME TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS config(
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def with_conn(fn):
    @wraps(fn)
    def wrapper(self, *args, **kwargs):
        return fn(self, self.get_conn(), *args, **kwargs)
    return wrapper


@contextmanager
def immediate(conn: sqlite3.Connection):
    """BEGIN IMMEDIATE ensures only one writer wins; rolled back on error."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def row_to_step_execution(row: sqlite3.Row) -> StepExecution:
    return StepExecution(
        id=row["STEP_EXECUTION_ID"],
        job_execution_id=row["JOB_EXECUTION_ID"],
        step_name=row["STEP_NAME"],
        status=BatchStatus(row["STATUS"]),
        read_count=row["READ_COUNT"],
        write_count=row["WRITE_COUNT"],
        filter_count=row["FILTER_COUNT"],
        skip_count=row["SKIP_COUNT"],
        process_skip_count=row["PROCESS_SKIP_COUNT"],
        write_skip_count=row["WRITE_SKIP_COUNT"],
        commit_count=row["COMMIT_COUNT"],
        rollback_count=row["ROLLBACK_COUNT"],
        start_time=_dt(row["START_TIME"]),
        end_time=_dt(row["END_TIME"]),
        exit_code=ExitCode(row["EXIT_CODE"] or ExitCode.UNKNOWN.value),
        exit_message=row["EXIT_MESSAGE"] or "",
        version=row["VERSION"],
        last_updated=_dt(row["LAST_UPDATED"]),
    )


def row_to_job_execution(row: sqlite3.Row, parameters: JobParameters) -> JobExecution:
    return JobExecution(
        id=row["JOB_EXECUTION_ID"],
        job_instance_id=row["JOB_INSTANCE_ID"],
        job_name=row["JOB_NAME"],
        parameters=parameters,
        status=BatchStatus(row["STATUS"]),
        start_time=_dt(row["START_TIME"]),
        end_time=_dt(row["END_TIME"]),
        exit_code=ExitCode(row["EXIT_CODE"] or ExitCode.UNKNOWN.value),
        exit_message=row["EXIT_MESSAGE"] or "",
        create_time=_dt(row["CREATE_TIME"]),
        last_updated=_dt(row["LAST_UPDATED"]),
        version=row["VERSION"],
    )


class JobRepository:
    """
    Tracking store for job/step executions, parameters and checkpoints.
    Each thread gets its own sqlite connection.
    """

    def __init__(self, db_path=None):
        self.db_path = Path(db_path) if db_path else default_db_path()
        self._local = threading.local()

    def get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            init_db(conn)
        return conn

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # -- config ------------------------------------------------------------

    @with_conn
    def config_get(self, conn, key: str, default: Optional[str] = None) -> Optional[str]:
        row = conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        return row[0] if row else default

    @with_conn
    def config_set(self, conn, key: str, value: str) -> None:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )

    @with_conn
    def config_items(self, conn) -> Dict[str, str]:
        return {r["key"]: r["value"] for r in conn.execute("SELECT key, value FROM config ORDER BY key")}

    # -- job executions ----------------------------------------------------

    @with_conn
    def create_job_execution(self, conn, job_name: str, parameters: JobParameters) -> JobExecution:
        """
        Find or create the job instance for (job_name, identifying params) and
        add a new STARTING execution to it. Rejected when an execution of the
        instance is still running or one already completed.
        """
        now = utcnow()
        job_key = parameters.job_key()
        with immediate(conn):
            row = conn.execute(
                "SELECT JOB_INSTANCE_ID FROM JOB_INSTANCE WHERE JOB_NAME=? AND JOB_KEY=?", (job_name, job_key)
            ).fetchone()
            if row is None:
                cur = conn.execute(
                    "INSERT INTO JOB_INSTANCE(JOB_NAME,JOB_KEY,CREATE_TIME) VALUES(?,?,?)",
                    (job_name, job_key, _ts(now)),
                )
                instance_id = cur.lastrowid
            else:
                instance_id = row["JOB_INSTANCE_ID"]
                for prior in conn.execute(
                    "SELECT JOB_EXECUTION_ID, STATUS FROM JOB_EXECUTION_CURRENT WHERE JOB_INSTANCE_ID=?",
                    (instance_id,),
                ):
                    status = BatchStatus(prior["STATUS"])
                    if status.is_running:
                        raise JobExecutionAlreadyRunningError(job_name, prior["JOB_EXECUTION_ID"])
                    if status is BatchStatus.COMPLETED:
                        raise JobInstanceAlreadyCompleteError(job_name, prior["JOB_EXECUTION_ID"])

            execution_id = conn.execute(
                "INSERT INTO JOB_EXECUTION_SEQ(CREATE_TIME) VALUES(?)", (_ts(now),)
            ).lastrowid
            execution = JobExecution(
                id=execution_id,
                job_instance_id=instance_id,
                job_name=job_name,
                parameters=parameters,
                create_time=now,
                last_updated=now,
            )
            self._insert_job_version(conn, execution, 0)
            for order, (key, p) in enumerate(parameters.items()):
                conn.execute(
                    """INSERT INTO JOB_EXECUTION_PARAMS
                       (JOB_EXECUTION_ID,PARAM_ORDER,PARAM_KEY,PARAM_VALUE,PARAM_TYPE,IDENTIFYING)
                       VALUES(?,?,?,?,?,?)""",
                    (execution_id, order, key, p.to_text(), p.type.value, int(p.identifying)),
                )
        return execution

    def _insert_job_version(self, conn, execution: JobExecution, version: int) -> None:
        conn.execute(
            """INSERT INTO JOB_EXECUTION(JOB_EXECUTION_ID,VERSION,JOB_INSTANCE_ID,JOB_NAME,START_TIME,END_TIME,
                                         STATUS,EXIT_CODE,EXIT_MESSAGE,CREATE_TIME,LAST_UPDATED)
               VALUES(?,?,?,?,?,?,?,?,?,?,?)""",
            (
                execution.id, version, execution.job_instance_id, execution.job_name,
                _ts(execution.start_time), _ts(execution.end_time), execution.status.value,
                execution.exit_code.value, execution.exit_message, _ts(execution.create_time),
                _ts(execution.last_updated),
            ),
        )

    @with_conn
    def update_job_execution(self, conn, execution: JobExecution) -> None:
        """Append the execution's current state as a new version."""
        execution.last_updated = utcnow()
        with immediate(conn):
            row = conn.execute(
                "SELECT VERSION, STATUS FROM JOB_EXECUTION_CURRENT WHERE JOB_EXECUTION_ID=?", (execution.id,)
            ).fetchone()
            if row is None:
                raise NoSuchJobExecutionError(execution.id)
            stored = BatchStatus(row["STATUS"])
            if stored.is_terminal:
                raise IllegalStatusTransitionError(
                    f"job execution {execution.id} is already {stored.value}; completed rows are immutable"
                )
            check_transition(stored, execution.status, f"job execution {execution.id}")
            version = row["VERSION"] + 1
            self._insert_job_version(conn, execution, version)
        execution.version = version

    def _parameters(self, conn, execution_id: int) -> JobParameters:
        params = {}
        for r in conn.execute(
            "SELECT * FROM JOB_EXECUTION_PARAMS WHERE JOB_EXECUTION_ID=? ORDER BY PARAM_ORDER", (execution_id,)
        ):
            params[r["PARAM_KEY"]] = JobParameter.from_text(r["PARAM_VALUE"], r["PARAM_TYPE"], bool(r["IDENTIFYING"]))
        return JobParameters(params)

    @with_conn
    def get_job_parameters(self, conn, execution_id: int) -> JobParameters:
        return self._parameters(conn, execution_id)

    @with_conn
    def get_job_execution(self, conn, execution_id: int, with_steps: bool = False) -> Optional[JobExecution]:
        row = conn.execute(
            "SELECT * FROM JOB_EXECUTION_CURRENT WHERE JOB_EXECUTION_ID=?", (execution_id,)
        ).fetchone()
        if row is None:
            return None
        execution = row_to_job_execution(row, self._parameters(conn, execution_id))
        if with_steps:
            execution.step_executions = self.get_step_executions(execution_id)
        return execution

    @with_conn
    def find_job_executions(self, conn, job_name: str, limit: Optional[int] = None) -> List[JobExecution]:
        """Executions of a job, most recently started first."""
        sql = """SELECT * FROM JOB_EXECUTION_CURRENT WHERE JOB_NAME=?
                 ORDER BY COALESCE(START_TIME, CREATE_TIME) DESC, JOB_EXECUTION_ID DESC"""
        args: Tuple = (job_name,)
        if limit is not None:
            sql += " LIMIT ?"
            args += (limit,)
        rows = conn.execute(sql, args).fetchall()
        return [row_to_job_execution(r, self._parameters(conn, r["JOB_EXECUTION_ID"])) for r in rows]

    @with_conn
    def find_running_executions(self, conn, job_name: Optional[str] = None) -> List[JobExecution]:
        sql = "SELECT * FROM JOB_EXECUTION_CURRENT WHERE STATUS IN ('STARTING','STARTED')"
        args: Tuple = ()
        if job_name:
            sql += " AND JOB_NAME=?"
            args = (job_name,)
        rows = conn.execute(sql + " ORDER BY JOB_EXECUTION_ID", args).fetchall()
        return [row_to_job_execution(r, self._parameters(conn, r["JOB_EXECUTION_ID"])) for r in rows]

    @with_conn
    def executions_for_instance(self, conn, instance_id: int) -> List[JobExecution]:
        rows = conn.execute(
            "SELECT * FROM JOB_EXECUTION_CURRENT WHERE JOB_INSTANCE_ID=? ORDER BY JOB_EXECUTION_ID DESC",
            (instance_id,),
        ).fetchall()
        return [row_to_job_execution(r, self._parameters(conn, r["JOB_EXECUTION_ID"])) for r in rows]

    @with_conn
    def job_names(self, conn) -> List[str]:
        return [r[0] for r in conn.execute("SELECT DISTINCT JOB_NAME FROM JOB_INSTANCE ORDER BY JOB_NAME")]

    @with_conn
    def job_execution_history(self, conn, execution_id: int) -> List[sqlite3.Row]:
        """Every stored version of one job execution, oldest first."""
        return conn.execute(
            "SELECT * FROM JOB_EXECUTION WHERE JOB_EXECUTION_ID=? ORDER BY VERSION", (execution_id,)
        ).fetchall()

    # -- step executions ---------------------------------------------------

    @with_conn
    def create_step_execution(self, conn, job_execution_id: int, step_name: str) -> StepExecution:
        now = utcnow()
        with immediate(conn):
            step_id = conn.execute(
                "INSERT INTO STEP_EXECUTION_SEQ(CREATE_TIME) VALUES(?)", (_ts(now),)
            ).lastrowid
            step = StepExecution(id=step_id, job_execution_id=job_execution_id, step_name=step_name, last_updated=now)
            self._insert_step_version(conn, step, 0)
        return step

    def _insert_step_version(self, conn, step: StepExecution, version: int) -> None:
        conn.execute(
            """INSERT INTO STEP_EXECUTION(STEP_EXECUTION_ID,VERSION,JOB_EXECUTION_ID,STEP_NAME,STATUS,
                   READ_COUNT,WRITE_COUNT,FILTER_COUNT,SKIP_COUNT,PROCESS_SKIP_COUNT,WRITE_SKIP_COUNT,
                   COMMIT_COUNT,ROLLBACK_COUNT,START_TIME,END_TIME,EXIT_CODE,EXIT_MESSAGE,LAST_UPDATED)
               VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)""",
            (
                step.id, version, step.job_execution_id, step.step_name, step.status.value,
                step.read_count, step.write_count, step.filter_count, step.skip_count,
                step.process_skip_count, step.write_skip_count, step.commit_count, step.rollback_count,
                _ts(step.start_time), _ts(step.end_time), step.exit_code.value, step.exit_message,
                _ts(step.last_updated),
            ),
        )

    @with_conn
    def update_step_execution(self, conn, step: StepExecution, context: Optional[ExecutionContext] = None) -> None:
        """
        Append the step's current state; when `context` is given the
        checkpoint is appended in the same transaction.
        """
        step.last_updated = utcnow()
        with immediate(conn):
            row = conn.execute(
                "SELECT VERSION, STATUS FROM STEP_EXECUTION_CURRENT WHERE STEP_EXECUTION_ID=?", (step.id,)
            ).fetchone()
            if row is None:
                raise IllegalStatusTransitionError(f"unknown step execution {step.id}")
            stored = BatchStatus(row["STATUS"])
            if stored.is_terminal:
                raise IllegalStatusTransitionError(
                    f"step execution {step.id} is already {stored.value}; completed rows are immutable"
                )
            check_transition(stored, step.status, f"step execution {step.id}")
            version = row["VERSION"] + 1
            self._insert_step_version(conn, step, version)
            if context is not None:
                self._insert_context(conn, step.id, context)
        step.version = version

    @with_conn
    def get_step_executions(self, conn, job_execution_id: int) -> List[StepExecution]:
        rows = conn.execute(
            "SELECT * FROM STEP_EXECUTION_CURRENT WHERE JOB_EXECUTION_ID=? ORDER BY STEP_EXECUTION_ID",
            (job_execution_id,),
        ).fetchall()
        return [row_to_step_execution(r) for r in rows]

    @with_conn
    def get_step_execution(self, conn, step_execution_id: int) -> Optional[StepExecution]:
        row = conn.execute(
            "SELECT * FROM STEP_EXECUTION_CURRENT WHERE STEP_EXECUTION_ID=?", (step_execution_id,)
        ).fetchone()
        return row_to_step_execution(row) if row else None

    @with_conn
    def last_step_execution(self, conn, job_instance_id: int, step_name: str) -> Optional[StepExecution]:
        """Most recent execution of `step_name` across all executions of an instance."""
        row = conn.execute(
            """SELECT s.* FROM STEP_EXECUTION_CURRENT s
                 JOIN JOB_EXECUTION_CURRENT j ON j.JOB_EXECUTION_ID = s.JOB_EXECUTION_ID
                WHERE j.JOB_INSTANCE_ID=? AND s.STEP_NAME=?
                ORDER BY s.STEP_EXECUTION_ID DESC LIMIT 1""",
            (job_instance_id, step_name),
        ).fetchone()
        return row_to_step_execution(row) if row else None

    # -- execution context -------------------------------------------------

    def _insert_context(self, conn, step_execution_id: int, context: ExecutionContext) -> None:
        row = conn.execute(
            "SELECT MAX(VERSION) FROM STEP_EXECUTION_CONTEXT WHERE STEP_EXECUTION_ID=?", (step_execution_id,)
        ).fetchone()
        version = 0 if row[0] is None else row[0] + 1
        conn.execute(
            "INSERT INTO STEP_EXECUTION_CONTEXT(STEP_EXECUTION_ID,VERSION,CONTEXT,CREATE_TIME) VALUES(?,?,?,?)",
            (step_execution_id, version, context.to_json(), _ts(utcnow())),
        )

    @with_conn
    def save_execution_context(self, conn, step_execution_id: int, context: ExecutionContext) -> None:
        with immediate(conn):
            self._insert_context(conn, step_execution_id, context)

    @with_conn
    def get_execution_context(self, conn, step_execution_id: int) -> ExecutionContext:
        row = conn.execute(
            """SELECT CONTEXT FROM STEP_EXECUTION_CONTEXT WHERE STEP_EXECUTION_ID=?
               ORDER BY VERSION DESC LIMIT 1""",
            (step_execution_id,),
        ).fetchone()
        return ExecutionContext.from_json(row[0] if row else None)

    # -- stop requests -----------------------------------------------------

    @with_conn
    def request_stop(self, conn, job_execution_id: int) -> None:
        conn.execute(
            "INSERT INTO STOP_REQUEST(JOB_EXECUTION_ID,REQUEST_TIME) VALUES(?,?) ON CONFLICT DO NOTHING",
            (job_execution_id, _ts(utcnow())),
        )

    @with_conn
    def stop_requested(self, conn, job_execution_id: int) -> bool:
        row = conn.execute("SELECT 1 FROM STOP_REQUEST WHERE JOB_EXECUTION_ID=?", (job_execution_id,)).fetchone()
        return row is not None


def init_db(conn: sqlite3.Connection):
    conn.executescript(SCHEMA)
    # defaults
    for k, v in DEFAULTS.items():
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO NOTHING",
            (k, str(v)),
        )

"""
SQLite persistence for jobs and runs.

One Store is built at startup and handed to every component that needs it.
The daemon is the main writer, but `alfred complete` runs in the job's tmux
window and writes to the same file, so every state change is a single
UPDATE statement and the database runs in WAL mode with a busy timeout.
"""

import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from sqlalchemy import case, create_engine, event, func, literal_column, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from alfred.errors import DuplicateJobError
from alfred.models import (
    Base,
    Job,
    Run,
    COMPLETED,
    FAILED,
    PENDING,
    RUNNING,
    RUN_STATUSES,
    TERMINAL_STATUSES,
)

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_SECONDS = 30


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _new_run_id() -> str:
    return uuid.uuid4().hex[:8]


class Store:
    """Jobs and runs persisted in a SQLite database."""

    def __init__(self, db_path: Union[str, Path]):
        """
        Open (but do not create tables in) the database.

        Args:
            db_path: Path to the SQLite file
        """
        self.db_path = Path(db_path)
        self.engine: Engine = create_engine(
            f"sqlite:///{self.db_path}",
            future=True,
            echo=False,
            connect_args={"timeout": BUSY_TIMEOUT_SECONDS},
        )
        event.listen(self.engine, "connect", _set_sqlite_pragmas)
        self._sessionmaker = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False, future=True
        )

    def init_schema(self):
        """Create tables and indexes if they don't exist."""
        Base.metadata.create_all(self.engine)
        logger.debug(f"Database schema created/verified at {self.db_path}")

    def close(self):
        self.engine.dispose()

    # ---------------- Jobs ----------------

    def create_job(
        self,
        job_id: str,
        name: str,
        working_dir: str,
        command: str,
        schedule: Optional[str] = None,
        next_run_at: Optional[datetime] = None,
    ) -> Job:
        """
        Insert a new job.

        Raises:
            DuplicateJobError: If a job with this id already exists
        """
        with self._sessionmaker() as s:
            if s.get(Job, job_id) is not None:
                raise DuplicateJobError(f"Job '{job_id}' already exists")
            job = Job(
                id=job_id,
                name=name,
                working_dir=working_dir,
                command=command,
                schedule=schedule,
                next_run_at=next_run_at,
            )
            s.add(job)
            s.commit()
            return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._sessionmaker() as s:
            return s.get(Job, job_id)

    def job_exists(self, job_id: str) -> bool:
        return self.get_job(job_id) is not None

    def list_jobs(self) -> List[Job]:
        """All jobs, newest first."""
        with self._sessionmaker() as s:
            q = select(Job).order_by(Job.created_at.desc(), literal_column("jobs.rowid").desc())
            return list(s.execute(q).scalars().all())

    def get_due_jobs(self, now: datetime) -> List[Job]:
        """
        Non-paused jobs whose next_run_at is at or before `now`.

        Ordered by next_run_at, ties broken by creation order.
        """
        with self._sessionmaker() as s:
            q = (
                select(Job)
                .where(Job.next_run_at.is_not(None))
                .where(Job.next_run_at <= now)
                .where(Job.paused.is_(False))
                .order_by(Job.next_run_at.asc(), Job.created_at.asc(), literal_column("jobs.rowid").asc())
            )
            return list(s.execute(q).scalars().all())

    def update_job_next_run(self, job_id: str, next_run_at: Optional[datetime]):
        with self._sessionmaker() as s:
            s.execute(update(Job).where(Job.id == job_id).values(next_run_at=next_run_at)
                      .execution_options(synchronize_session=False))
            s.commit()

    def set_job_paused(self, job_id: str, paused: bool) -> bool:
        with self._sessionmaker() as s:
            result = s.execute(update(Job).where(Job.id == job_id).values(paused=bool(paused))
                               .execution_options(synchronize_session=False))
            s.commit()
            return result.rowcount > 0

    def delete_job(self, job_id: str) -> bool:
        """
        Delete a job and, through the foreign key cascade, all of its runs.

        Returns:
            True if the job existed
        """
        with self._sessionmaker() as s:
            job = s.get(Job, job_id)
            if job is None:
                return False
            s.delete(job)
            s.commit()
            return True

    # ---------------- Runs ----------------

    def create_run(self, job_id: str) -> Run:
        """Insert a pending run for a job."""
        with self._sessionmaker() as s:
            run = Run(id=_new_run_id(), job_id=job_id, status=PENDING)
            s.add(run)
            s.commit()
            return run

    def get_run(self, run_id: str) -> Optional[Run]:
        with self._sessionmaker() as s:
            return s.execute(select(Run).where(Run.id == run_id)).scalars().first()

    def list_runs_for_job(self, job_id: str) -> List[Run]:
        """Runs for a job, newest first."""
        with self._sessionmaker() as s:
            q = select(Run).where(Run.job_id == job_id).order_by(Run.seq.desc())
            return list(s.execute(q).scalars().all())

    def get_latest_run(self, job_id: str) -> Optional[Run]:
        """
        Most relevant run for a job.

        Started runs win over never-started ones, then the most recent start;
        among unstarted runs the newest is returned.
        """
        with self._sessionmaker() as s:
            q = (
                select(Run)
                .where(Run.job_id == job_id)
                .order_by(
                    case((Run.started_at.is_(None), 0), else_=1).desc(),
                    Run.started_at.desc(),
                    Run.seq.desc(),
                )
                .limit(1)
            )
            return s.execute(q).scalars().first()

    def get_runs_by_status(self, status: str, limit: Optional[int] = None) -> List[Run]:
        """Runs with the given status in creation order."""
        with self._sessionmaker() as s:
            q = select(Run).where(Run.status == status).order_by(Run.seq.asc())
            if limit is not None:
                q = q.limit(int(limit))
            return list(s.execute(q).scalars().all())

    def get_pending_runs(self, limit: Optional[int] = None) -> List[Run]:
        return self.get_runs_by_status(PENDING, limit=limit)

    def get_running_runs(self) -> List[Run]:
        return self.get_runs_by_status(RUNNING)

    def count_running(self) -> int:
        with self._sessionmaker() as s:
            q = select(func.count()).select_from(Run).where(Run.status == RUNNING)
            return int(s.execute(q).scalar_one())

    def count_runs_by_status(self) -> Dict[str, int]:
        counts = {status: 0 for status in RUN_STATUSES}
        with self._sessionmaker() as s:
            q = select(Run.status, func.count()).group_by(Run.status)
            for status, count in s.execute(q).all():
                counts[status] = int(count)
        return counts

    def mark_run_started(self, run_id: str, execution_handle: str, started_at: Optional[datetime] = None) -> bool:
        """
        Record the tmux window a run was launched in.

        A pending run moves to running; any other status is left alone and
        only the handle and start time are filled in. A completion callback
        that arrives before this call is refused by complete_run, and the
        reconciler later finalizes the run from its exit code file.

        Returns:
            True if the run exists
        """
        started_at = started_at or datetime.now()
        with self._sessionmaker() as s:
            result = s.execute(
                update(Run)
                .where(Run.id == run_id)
                .values(
                    status=case((Run.status == PENDING, RUNNING), else_=Run.status),
                    execution_handle=execution_handle,
                    started_at=func.coalesce(Run.started_at, started_at),
                )
                .execution_options(synchronize_session=False)
            )
            s.commit()
            return result.rowcount > 0

    def complete_run(self, run_id: str, exit_code: int, completed_at: Optional[datetime] = None) -> bool:
        """
        Finalize a run: exit code 0 is completed, anything else failed.

        Only runs that have been launched are touched, so a pending run is
        never finalized and a terminal run is never moved backwards. Calling
        this twice is harmless; the last terminal write wins.

        Returns:
            True if the run was updated
        """
        completed_at = completed_at or datetime.now()
        status = COMPLETED if exit_code == 0 else FAILED
        with self._sessionmaker() as s:
            result = s.execute(
                update(Run)
                .where(Run.id == run_id)
                .where(Run.status.in_((RUNNING,) + TERMINAL_STATUSES))
                .values(status=status, exit_code=int(exit_code), completed_at=completed_at)
                .execution_options(synchronize_session=False)
            )
            s.commit()
            return result.rowcount > 0

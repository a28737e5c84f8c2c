"""
Database models for jobs and runs.
"""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, Index
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# Run statuses
PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

RUN_STATUSES = (PENDING, RUNNING, COMPLETED, FAILED)
TERMINAL_STATUSES = (COMPLETED, FAILED)

# Recorded when a window vanished without leaving an exit code behind
UNKNOWN_EXIT_CODE = -1


def _now() -> datetime:
    return datetime.now()


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String(64), primary_key=True)
    name = Column(String(256), nullable=False)
    working_dir = Column(Text, nullable=False)
    command = Column(Text, nullable=False)
    schedule = Column(String(128), nullable=True)  # cron expression, None for one-off
    paused = Column(Boolean, default=False, nullable=False)
    next_run_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    runs = relationship(
        "Run",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_jobs_next_run", "paused", "next_run_at"),
    )

    @property
    def is_recurring(self) -> bool:
        return bool(self.schedule)

    def __repr__(self):
        return f"Job(id={self.id!r}, schedule={self.schedule!r}, next_run_at={self.next_run_at})"


class Run(Base):
    __tablename__ = "runs"

    # Integer surrogate key keeps creation order for FIFO dispatch
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(16), unique=True, nullable=False)
    job_id = Column(String(64), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(16), default=PENDING, nullable=False, index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    exit_code = Column(Integer, nullable=True)
    execution_handle = Column(String(64), nullable=True)  # tmux window name

    job = relationship("Job", back_populates="runs")

    @property
    def is_active(self) -> bool:
        return self.status in (PENDING, RUNNING)

    def __repr__(self):
        return f"Run(id={self.id!r}, job_id={self.job_id!r}, status={self.status!r})"

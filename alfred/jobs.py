"""
Job management operations used by the CLI.

Everything here validates input up front, so a job that reaches the store
always has a parseable schedule. The daemon relies on that.
"""

import logging
import os
from datetime import datetime
from typing import Optional

from alfred.errors import JobNotFoundError, RunNotFoundError, ValidationError
from alfred.models import Job, Run
from alfred.schedule import build_cron_trigger, get_next_cron_time, job_id_from_name, parse_at_time
from alfred.store import Store

logger = logging.getLogger(__name__)


def add_job(
    store: Store,
    name: str,
    command: str,
    working_dir: Optional[str] = None,
    cron: Optional[str] = None,
    at: Optional[str] = None,
    run_now: bool = False,
    now: Optional[datetime] = None,
) -> Job:
    """
    Create a job, and optionally queue a run for it straight away.

    Args:
        store: Job store
        name: Human-readable name; the job id is derived from it
        command: Shell command to execute
        working_dir: Directory to run in (default: current directory)
        cron: Cron expression for recurring jobs
        at: One-off time (HH:MM or ISO datetime)
        run_now: Queue a pending run immediately
        now: Reference time for computing the first fire

    Returns:
        The created job

    Raises:
        ValidationError: If nothing says when to run, the schedule or time is
            invalid, the command is empty, or the id is taken
    """
    if not run_now and not at and not cron:
        raise ValidationError("Must specify when to run the job: --run-now, --at <time>, or --cron <expression>")
    if cron and at:
        raise ValidationError("Use either --cron or --at, not both")
    if not command or not command.strip():
        raise ValidationError("'command' cannot be empty")

    now = now or datetime.now()
    job_id = job_id_from_name(name)

    next_run_at = None
    if cron:
        build_cron_trigger(cron)
        next_run_at = get_next_cron_time(cron, now)
    elif at:
        next_run_at = parse_at_time(at, now)

    resolved_dir = os.path.abspath(os.path.expanduser(working_dir)) if working_dir else os.getcwd()

    job = store.create_job(
        job_id=job_id,
        name=name,
        working_dir=resolved_dir,
        command=command,
        schedule=cron,
        next_run_at=next_run_at,
    )
    logger.info(f"Created job '{job.id}'")

    if run_now:
        run = store.create_run(job.id)
        logger.info(f"Queued run {run.id} for job '{job.id}'")
    return job


def require_job(store: Store, job_id: str) -> Job:
    job = store.get_job(job_id)
    if job is None:
        raise JobNotFoundError(f"Job '{job_id}' not found")
    return job


def remove_job(store: Store, job_id: str):
    """Delete a job and all of its runs."""
    require_job(store, job_id)
    store.delete_job(job_id)
    logger.info(f"Deleted job '{job_id}' and all its runs")


def pause_job(store: Store, job_id: str):
    require_job(store, job_id)
    store.set_job_paused(job_id, True)
    logger.info(f"Paused job '{job_id}'")


def resume_job(store: Store, job_id: str, now: Optional[datetime] = None) -> Job:
    """
    Un-pause a job.

    A recurring job with no upcoming fire is re-armed from `now`. Fires that
    came due while paused are not replayed one by one; the daemon runs the
    job once on its next tick.
    """
    job = require_job(store, job_id)
    store.set_job_paused(job_id, False)
    if job.schedule and job.next_run_at is None:
        store.update_job_next_run(job_id, get_next_cron_time(job.schedule, now or datetime.now()))
    logger.info(f"Resumed job '{job_id}'")
    return store.get_job(job_id)


def run_job_now(store: Store, job_id: str) -> Run:
    """Queue a pending run outside the job's schedule."""
    require_job(store, job_id)
    run = store.create_run(job_id)
    logger.info(f"Queued run {run.id} for job '{job_id}'")
    return run


def complete_run(store: Store, run_id: str, exit_code: int) -> bool:
    """
    Completion callback invoked from the run's tmux window.

    Returns:
        True if the run was finalized now, False if it had not been marked
        running yet (the reconciler will pick it up from the exit code file)

    Raises:
        RunNotFoundError: If the run does not exist
    """
    if store.get_run(run_id) is None:
        raise RunNotFoundError(f"Run '{run_id}' not found")

    updated = store.complete_run(run_id, exit_code)
    if updated:
        logger.info(f"Run {run_id} finished with exit code {exit_code}")
    else:
        logger.warning(f"Run {run_id} is not running yet; leaving it for the reconciler")
    return updated

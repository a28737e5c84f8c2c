"""
The scheduler tick.

One tick runs three steps in a fixed order:
1. queue_due_jobs      - create pending runs for due jobs, advance next_run_at
2. reconcile_runs      - finalize running runs whose tmux window is gone
3. dispatch_pending    - launch pending runs while slots are free

Reconciling before dispatching frees slots that dispatch can then use in
the same tick. Each step is isolated: if one raises, the error is logged and
the remaining steps still run. Nothing is rolled back.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from alfred.config import AlfredConfig, AlfredPaths
from alfred.models import Job, Run, UNKNOWN_EXIT_CODE
from alfred.runner import ProcessHostAdapter
from alfred.schedule import format_datetime, get_next_cron_time
from alfred.store import Store

logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    """What a single tick did."""
    queued: int = 0
    finalized: int = 0
    launched: int = 0
    errors: int = 0


def read_exit_code(exit_code_path: Path) -> Optional[int]:
    """
    Read a run's exit code sentinel.

    Returns:
        The exit code, or None if the file is missing or unparseable
    """
    try:
        return int(exit_code_path.read_text().strip())
    except FileNotFoundError:
        return None
    except (ValueError, OSError) as e:
        logger.warning(f"Unreadable exit code file {exit_code_path}: {e}")
        return None


class Scheduler:
    """
    Runs ticks against a store and a process host.

    `config` may be replaced between ticks; max_parallel is read at dispatch
    time, so a reloaded value takes effect on the next tick.
    """

    def __init__(
        self,
        store: Store,
        adapter: ProcessHostAdapter,
        paths: AlfredPaths,
        config: Optional[AlfredConfig] = None,
    ):
        self.store = store
        self.adapter = adapter
        self.paths = paths
        self.config = config or AlfredConfig()

    def tick(self, now: Optional[datetime] = None) -> TickSummary:
        """Run one due-detect / reconcile / dispatch cycle."""
        now = now or datetime.now()
        summary = TickSummary()
        logger.info(f"Running tick at {format_datetime(now)}")

        steps = (
            ("queue due jobs", lambda: self.queue_due_jobs(now)),
            ("reconcile runs", self.reconcile_runs),
            ("dispatch pending runs", self.dispatch_pending),
        )
        results = {}
        for label, step in steps:
            try:
                results[label] = step()
            except Exception:
                summary.errors += 1
                logger.exception(f"Tick step '{label}' failed")

        summary.queued = results.get("queue due jobs", 0)
        summary.finalized = results.get("reconcile runs", 0)
        summary.launched = results.get("dispatch pending runs", 0)

        logger.info(
            f"Tick complete: {summary.queued} queued, {summary.finalized} finalized, "
            f"{summary.launched} launched"
        )
        return summary

    # ---------------- Step 1 ----------------

    def queue_due_jobs(self, now: datetime) -> int:
        """
        Create a pending run for every due job and advance its schedule.

        Recurring jobs get the next cron occurrence after `now`, so missed
        occurrences (daemon down, slow ticks) collapse into a single run.
        One-off jobs are disarmed.

        Returns:
            Number of runs queued
        """
        queued = 0
        for job in self.store.get_due_jobs(now):
            run = self.store.create_run(job.id)
            queued += 1

            if job.schedule:
                next_run_at = get_next_cron_time(job.schedule, now)
            else:
                next_run_at = None
            self.store.update_job_next_run(job.id, next_run_at)

            logger.info(
                f"Queued run {run.id} for job {job.id} "
                f"(next run: {format_datetime(next_run_at)})"
            )
        return queued

    # ---------------- Step 2 ----------------

    def reconcile_runs(self) -> int:
        """
        Finalize running runs whose window has disappeared.

        The exit code comes from the run's sentinel file. Without one the run
        is marked failed with UNKNOWN_EXIT_CODE.

        Returns:
            Number of runs finalized
        """
        finalized = 0
        for run in self.store.get_running_runs():
            if not run.execution_handle:
                continue
            if self.adapter.context_exists(run.execution_handle):
                continue

            exit_code = read_exit_code(self.paths.exit_code_path(run.job_id, run.id))
            if exit_code is None:
                exit_code = UNKNOWN_EXIT_CODE
                logger.warning(f"Run {run.id} window is gone with no exit code, marking failed")

            if self.store.complete_run(run.id, exit_code):
                finalized += 1
                logger.info(f"Run {run.id} of job {run.job_id} finished with exit code {exit_code}")
        return finalized

    # ---------------- Step 3 ----------------

    def dispatch_pending(self) -> int:
        """
        Launch pending runs, oldest first, up to max_parallel running.

        A run whose launch fails stays pending and is retried next tick.

        Returns:
            Number of runs launched
        """
        max_parallel = self.config.max_parallel
        available = max_parallel - self.store.count_running()
        if available <= 0:
            logger.info(f"Max parallel runs ({max_parallel}) reached, waiting...")
            return 0

        launched = 0
        for run in self.store.get_pending_runs(limit=available):
            job = self.store.get_job(run.job_id)
            if job is None:
                logger.warning(f"Run {run.id} has no job '{run.job_id}', skipping")
                continue
            if self._launch(job, run):
                launched += 1
        return launched

    def _launch(self, job: Job, run: Run) -> bool:
        try:
            handle = self.adapter.launch(job, run)
        except Exception as e:
            logger.error(f"Failed to launch run {run.id} for job {job.id}: {e}")
            return False

        try:
            self.store.mark_run_started(run.id, handle)
        except Exception:
            # The window is running but the run is still pending, so the next
            # tick launches it again
            logger.exception(f"Launched run {run.id} in window {handle} but could not mark it running")
            return False

        logger.info(f"Launched run {run.id} for job {job.id} in window {handle}")
        return True

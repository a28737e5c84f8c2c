"""
Command-line interface for alfred.

Provides commands for:
- Initializing alfred (directories, database, config)
- Starting/stopping the daemon and checking its status
- Adding/removing/pausing/resuming jobs and queueing runs
- Viewing run output

Internal commands (`complete`, `tick`) are used by the run wrapper and for
debugging.
"""

import argparse
import logging
import sys
import time
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from alfred.config import AlfredConfig, AlfredPaths, load_config, resolve_config_path
from alfred.daemon import (
    MAX_LOG_BYTES,
    Daemon,
    is_daemon_running,
    spawn_daemon,
    stop_daemon,
)
from alfred.errors import AlfredError, NotInitializedError
from alfred.jobs import (
    add_job,
    complete_run,
    pause_job,
    remove_job,
    require_job,
    resume_job,
    run_job_now,
)
from alfred.models import COMPLETED, FAILED, PENDING, RUNNING
from alfred.runner import ProcessHostAdapter
from alfred.schedule import format_datetime
from alfred.store import Store
from alfred.tick import Scheduler

load_dotenv()

logger = logging.getLogger(__name__)

FOLLOW_POLL_SECONDS = 1.0


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False, console: bool = True):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Console handler
    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_handler.setFormatter(console_formatter)
        root_logger.addHandler(console_handler)

    # File handler (daemon only), one backup kept
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(log_path, maxBytes=MAX_LOG_BYTES, backupCount=1)
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)

    # SQLAlchemy is chatty at DEBUG
    logging.getLogger('sqlalchemy').setLevel(logging.WARNING)


def open_store(paths: AlfredPaths) -> Store:
    """
    Open the database for a command that needs an initialized alfred.

    Raises:
        NotInitializedError: If `alfred init` has not been run
    """
    if not paths.db_path.exists():
        raise NotInitializedError("Alfred is not initialized. Run 'alfred init' first.")
    store = Store(paths.db_path)
    store.init_schema()
    return store


def build_scheduler(store: Store, paths: AlfredPaths, config: AlfredConfig) -> Scheduler:
    adapter = ProcessHostAdapter(paths, config.session_name)
    return Scheduler(store, adapter, paths, config)


def format_time_ago(value: datetime, now: Optional[datetime] = None) -> str:
    diff_secs = max(0, int(((now or datetime.now()) - value).total_seconds()))
    diff_mins = diff_secs // 60
    diff_hours = diff_mins // 60
    if diff_hours > 0:
        return f"{diff_hours}h ago"
    if diff_mins > 0:
        return f"{diff_mins}m ago"
    return f"{diff_secs}s ago"


def cmd_init(args):
    """Initialize alfred: directories, database and default config."""
    paths = AlfredPaths()
    paths.ensure_dirs()
    print(f"Created {paths.home}")
    print(f"Created {paths.logs_dir}")

    store = Store(paths.db_path)
    store.init_schema()
    store.close()
    print("Initialized database")

    config_path = resolve_config_path(args.config)
    if config_path.exists():
        print(f"Config already exists at {config_path}")
    else:
        AlfredConfig().save(config_path)
        print(f"Created default config at {config_path}")

    print("\nAlfred initialized successfully!")
    print("Run 'alfred add-job' to add a job.")
    print("Run 'alfred start' to start the daemon.")


def cmd_start(args):
    """Start the daemon (in the background unless --foreground)."""
    paths = AlfredPaths()
    open_store(paths).close()

    running, pid = is_daemon_running(paths)
    if running:
        print(f"Alfred daemon is already running (pid: {pid})")
        sys.exit(1)

    if not args.foreground:
        print("Starting alfred daemon...")
        daemon_pid = spawn_daemon(paths, config_path=args.config)
        print(f"Alfred daemon started (pid: {daemon_pid})")
        print("Run 'alfred status' to check daemon status")
        print("Run 'alfred stop' to stop the daemon")
        return

    setup_logging(log_file=paths.daemon_log, verbose=args.verbose, console=not args.quiet)
    config = load_config(args.config)
    store = open_store(paths)
    scheduler = build_scheduler(store, paths, config)
    daemon = Daemon(scheduler, paths, config_loader=lambda: load_config(args.config))
    daemon.install_signal_handlers()
    try:
        daemon.run()
    finally:
        store.close()


def cmd_stop(args):
    """Stop the daemon."""
    paths = AlfredPaths()
    open_store(paths).close()
    running, pid = is_daemon_running(paths)
    if not running:
        print("Alfred daemon is not running")
        sys.exit(1)

    print(f"Stopping alfred daemon (pid: {pid})...")
    if stop_daemon(paths):
        print("Alfred daemon stopped")
    else:
        logger.error("Failed to stop daemon")
        sys.exit(1)


def cmd_status(args):
    """Show daemon, job and run status."""
    paths = AlfredPaths()
    store = open_store(paths)

    running, pid = is_daemon_running(paths)
    print(f"Daemon:    {f'running (pid: {pid})' if running else 'stopped'}")

    jobs = store.list_jobs()
    scheduled = sum(1 for job in jobs if job.schedule)
    counts = store.count_runs_by_status()
    print(f"Jobs:      {len(jobs)} total, {scheduled} scheduled, {len(jobs) - scheduled} one-off")
    print(
        f"Runs:      {counts[RUNNING]} running, {counts[PENDING]} pending, "
        f"{counts[COMPLETED]} completed, {counts[FAILED]} failed"
    )
    print()

    names = {job.id: job.name for job in jobs}
    running_runs = store.get_running_runs()
    if running_runs:
        print("Running:")
        for run in running_runs:
            ago = format_time_ago(run.started_at) if run.started_at else 'unknown'
            print(f"  {names.get(run.job_id, run.job_id)} (run {run.id}) - started {ago}")
        print()

    pending_runs = store.get_pending_runs()
    if pending_runs:
        print("Pending:")
        for run in pending_runs:
            print(f"  {names.get(run.job_id, run.job_id)} (run {run.id}) - queued")
        print()

    if not running_runs and not pending_runs:
        print("No active runs.")


def cmd_add_job(args):
    """Add a new job."""
    store = open_store(AlfredPaths())
    job = add_job(
        store,
        name=args.name,
        command=args.command,
        working_dir=args.dir,
        cron=args.cron,
        at=args.at,
        run_now=args.run_now,
    )

    print(f"Created job '{job.id}'")
    print(f"  Command: {job.command}")
    print(f"  Working dir: {job.working_dir}")
    if job.schedule:
        print(f"  Schedule: {job.schedule}")
        print(f"  Next run: {format_datetime(job.next_run_at)}")
    elif job.next_run_at:
        print(f"  Scheduled for: {format_datetime(job.next_run_at)}")
    if args.run_now:
        print("  Queued run (pending)")


def _pad(value: str, width: int) -> str:
    return value[:width].ljust(width)


def cmd_list_jobs(args):
    """List all jobs."""
    store = open_store(AlfredPaths())
    jobs = store.list_jobs()
    if not jobs:
        print("No jobs found. Use 'alfred add-job' to create one.")
        return

    widths = [20, 20, 15, 25, 20, 6]
    header = "  ".join(_pad(h, w) for h, w in zip(
        ['ID', 'NAME', 'SCHEDULE', 'LAST RUN', 'NEXT RUN', 'PAUSED'], widths))
    print(header)
    print('-' * len(header))

    for job in jobs:
        last_run = store.get_latest_run(job.id)
        if last_run is None:
            last_run_str = '-'
        elif last_run.is_active:
            last_run_str = last_run.status
        else:
            outcome = 'ok' if last_run.status == COMPLETED else 'fail'
            last_run_str = f"{format_datetime(last_run.completed_at)} ({outcome})"

        cells = [
            job.id,
            job.name,
            job.schedule or '(one-off)',
            last_run_str,
            format_datetime(job.next_run_at),
            'yes' if job.paused else 'no',
        ]
        print("  ".join(_pad(c, w) for c, w in zip(cells, widths)))


def cmd_remove_job(args):
    """Remove a job and all its runs."""
    store = open_store(AlfredPaths())
    require_job(store, args.job_id)

    if not args.yes:
        answer = input(f"Are you sure you want to delete job '{args.job_id}' and all its runs? (y/N) ")
        if answer.strip().lower() not in ('y', 'yes'):
            print("Cancelled.")
            return

    remove_job(store, args.job_id)
    print(f"Deleted job '{args.job_id}' and all its runs.")


def cmd_pause(args):
    """Pause a job."""
    pause_job(open_store(AlfredPaths()), args.job_id)
    print(f"Paused job '{args.job_id}'")


def cmd_resume(args):
    """Resume a paused job."""
    job = resume_job(open_store(AlfredPaths()), args.job_id)
    print(f"Resumed job '{job.id}' (next run: {format_datetime(job.next_run_at)})")


def cmd_run(args):
    """Queue a run of a job now."""
    run = run_job_now(open_store(AlfredPaths()), args.job_id)
    print(f"Queued run {run.id} for job '{args.job_id}' (pending)")


def follow_log(log_path: Path, store: Store, run_id: str, offset: int = 0,
               poll_seconds: float = FOLLOW_POLL_SECONDS):
    """
    Print output appended to a run's log until the run finishes.

    Returns:
        The run as last read from the store
    """
    with open(log_path, 'r', errors='replace') as f:
        f.seek(offset)
        while True:
            chunk = f.read()
            if chunk:
                print(chunk, end='', flush=True)
                continue

            run = store.get_run(run_id)
            if run is None or not run.is_active:
                # The wrapper writes its last output before calling back
                print(f.read(), end='', flush=True)
                return run
            time.sleep(poll_seconds)


def cmd_log(args):
    """Show the captured output of a run."""
    paths = AlfredPaths()
    store = open_store(paths)
    require_job(store, args.job_id)

    if args.run_id:
        run = store.get_run(args.run_id)
        if run is None or run.job_id != args.job_id:
            logger.error(f"Run '{args.run_id}' not found for job '{args.job_id}'")
            sys.exit(1)
    else:
        run = store.get_latest_run(args.job_id)
        if run is None:
            logger.error(f"No runs found for job '{args.job_id}'")
            sys.exit(1)

    log_path = paths.log_path(args.job_id, run.id)
    if not log_path.exists():
        logger.error(f"Log file not found at {log_path}")
        print("The run may not have started yet or logs were not captured.")
        sys.exit(1)

    with open(log_path, 'r', errors='replace') as f:
        lines = f.readlines()
        offset = f.tell()
    if args.tail:
        lines = lines[-args.tail:]
    for line in lines:
        print(line.rstrip('\n'))

    if run.is_active and args.follow:
        print(f"--- Following run {run.id} (Ctrl-C to stop) ---", flush=True)
        try:
            run = follow_log(log_path, store, run.id, offset) or run
        except KeyboardInterrupt:
            print()
            return
        print(f"\n--- Run {run.id} {run.status} (exit code {run.exit_code}) ---")
    elif run.is_active:
        print(f"\n--- Run {run.id} is still {run.status} ---")


def cmd_tick(args):
    """Run a single tick in the foreground (debugging)."""
    paths = AlfredPaths()
    store = open_store(paths)
    summary = build_scheduler(store, paths, load_config(args.config)).tick()
    print(f"Queued {summary.queued}, finalized {summary.finalized}, launched {summary.launched}")


def cmd_complete(args):
    """Mark a run as finished (called by the run wrapper)."""
    complete_run(open_store(AlfredPaths()), args.run_id, args.exit_code)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='alfred',
        description="Alfred - Personal Job Scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '-c', '--config',
        type=str,
        help='Path to configuration file'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Init command
    init_parser = subparsers.add_parser('init', help='Initialize alfred (directories, database, config)')
    init_parser.set_defaults(func=cmd_init)

    # Start command
    start_parser = subparsers.add_parser('start', aliases=['daemon'], help='Start the alfred daemon')
    start_parser.add_argument(
        '--foreground',
        action='store_true',
        help='Run in foreground (blocking mode)'
    )
    start_parser.add_argument('--quiet', action='store_true', help=argparse.SUPPRESS)
    start_parser.set_defaults(func=cmd_start)

    # Stop command
    stop_parser = subparsers.add_parser('stop', help='Stop the alfred daemon')
    stop_parser.set_defaults(func=cmd_stop)

    # Status command
    status_parser = subparsers.add_parser('status', help='Show current status of jobs and runs')
    status_parser.set_defaults(func=cmd_status)

    # Add command
    add_parser = subparsers.add_parser('add-job', help='Add a new job')
    add_parser.add_argument('name', help='Job name')
    add_parser.add_argument('--command', required=True, help='Shell command to run')
    add_parser.add_argument('--dir', type=str, help='Working directory (default: current directory)')
    add_parser.add_argument('--cron', type=str, help='Cron schedule for recurring jobs')
    add_parser.add_argument('--at', type=str, help='Run once at specific time (HH:MM or ISO datetime)')
    add_parser.add_argument('--run-now', action='store_true', help='Queue job to run immediately')
    add_parser.set_defaults(func=cmd_add_job)

    # List command
    list_parser = subparsers.add_parser('list-jobs', aliases=['ls'], help='List all jobs')
    list_parser.set_defaults(func=cmd_list_jobs)

    # Remove command
    remove_parser = subparsers.add_parser('remove-job', aliases=['rm'], help='Remove a job and all its runs')
    remove_parser.add_argument('job_id', help='Job ID to remove')
    remove_parser.add_argument('-y', '--yes', action='store_true', help='Do not ask for confirmation')
    remove_parser.set_defaults(func=cmd_remove_job)

    # Pause / resume
    pause_parser = subparsers.add_parser('pause', help='Pause a job')
    pause_parser.add_argument('job_id', help='Job ID to pause')
    pause_parser.set_defaults(func=cmd_pause)

    resume_parser = subparsers.add_parser('resume', help='Resume a paused job')
    resume_parser.add_argument('job_id', help='Job ID to resume')
    resume_parser.set_defaults(func=cmd_resume)

    # Run now
    run_parser = subparsers.add_parser('run', help='Queue a run of a job now')
    run_parser.add_argument('job_id', help='Job ID to run')
    run_parser.set_defaults(func=cmd_run)

    # Log command
    log_parser = subparsers.add_parser('log', help='Show log for a job run')
    log_parser.add_argument('job_id', help='Job ID')
    log_parser.add_argument('run_id', nargs='?', help='Run ID (default: latest run)')
    log_parser.add_argument('--tail', '-n', type=int, help='Show last N lines')
    log_parser.add_argument('--follow', '-f', action='store_true', help='Keep printing output until the run finishes')
    log_parser.set_defaults(func=cmd_log)

    # Internal commands
    tick_parser = subparsers.add_parser('tick')
    tick_parser.set_defaults(func=cmd_tick)

    complete_parser = subparsers.add_parser('complete')
    complete_parser.add_argument('run_id')
    complete_parser.add_argument('exit_code', type=int)
    complete_parser.set_defaults(func=cmd_complete)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # `start --foreground` installs its own handlers (file + optional console)
    if not (args.func is cmd_start and args.foreground):
        setup_logging(verbose=args.verbose)

    try:
        args.func(args)
    except AlfredError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == '__main__':
    main()

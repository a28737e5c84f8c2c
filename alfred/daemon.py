"""
The alfred daemon: pid file, signals, log rotation and the tick loop.

The loop is single threaded. Between ticks it sleeps in one-second steps and
checks a stop token after each step, so SIGTERM/SIGINT take effect within a
second while never interrupting a tick that is already running.
"""

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Optional, Tuple

from alfred.config import AlfredConfig, AlfredPaths, load_config
from alfred.tick import Scheduler

logger = logging.getLogger(__name__)

MAX_LOG_BYTES = 10 * 1024 * 1024  # 10MB
SLEEP_INCREMENT_SECONDS = 1.0
STOP_TIMEOUT_SECONDS = 5.0
STOP_POLL_SECONDS = 0.1
SPAWN_WAIT_SECONDS = 0.5

# Daemon states
STARTING = "starting"
RUNNING = "running"
STOPPING = "stopping"
STOPPED = "stopped"


def is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but owned by someone else
        return True
    except OSError:
        return False


def read_pid_file(pid_path: Path) -> Optional[int]:
    try:
        return int(pid_path.read_text().strip())
    except (ValueError, OSError):
        return None


def remove_pid_file(pid_path: Path):
    try:
        pid_path.unlink()
        logger.debug(f"Removed PID file: {pid_path}")
    except FileNotFoundError:
        pass


def is_daemon_running(paths: AlfredPaths) -> Tuple[bool, Optional[int]]:
    """
    Check if the daemon is running by reading the PID file.

    A PID file pointing at a dead process is stale and gets removed.

    Returns:
        Tuple of (is_running, pid). If not running, pid is None.
    """
    if not paths.pid_path.exists():
        return False, None

    pid = read_pid_file(paths.pid_path)
    if pid is None:
        return False, None

    if is_process_running(pid):
        return True, pid

    logger.debug(f"Removing stale PID file for dead process {pid}")
    remove_pid_file(paths.pid_path)
    return False, None


def stop_daemon(paths: AlfredPaths, timeout: float = STOP_TIMEOUT_SECONDS) -> bool:
    """
    Stop the daemon: SIGTERM, wait up to `timeout`, then SIGKILL.

    Returns:
        True if a daemon was running and is now gone
    """
    running, pid = is_daemon_running(paths)
    if not running:
        return False

    try:
        os.kill(pid, signal.SIGTERM)

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            time.sleep(STOP_POLL_SECONDS)
            still_running, _ = is_daemon_running(paths)
            if not still_running:
                return True

        logger.warning(f"Daemon (PID: {pid}) did not stop gracefully, sending SIGKILL")
        os.kill(pid, signal.SIGKILL)
        remove_pid_file(paths.pid_path)
        return True
    except ProcessLookupError:
        remove_pid_file(paths.pid_path)
        return True
    except OSError as e:
        logger.error(f"Failed to stop daemon (PID: {pid}): {e}")
        return False


def spawn_daemon(paths: AlfredPaths, config_path: Optional[str] = None) -> int:
    """
    Start `alfred start --foreground` as a detached background process.

    Returns:
        PID of the daemon (as written to its PID file when available)
    """
    argv = [sys.executable, "-m", "alfred"]
    if config_path:
        argv += ["--config", str(config_path)]
    argv += ["start", "--foreground", "--quiet"]

    env = dict(os.environ, ALFRED_HOME=str(paths.home))
    proc = subprocess.Popen(
        argv,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        env=env,
    )

    # Give the child a moment to start and write its PID
    time.sleep(SPAWN_WAIT_SECONDS)
    pid = read_pid_file(paths.pid_path)
    return pid if pid is not None else proc.pid


def rotate_log_if_needed(log_path: Path, max_bytes: int = MAX_LOG_BYTES) -> bool:
    """
    Rotate the daemon log once it reaches `max_bytes`.

    Keeps one backup: daemon.log -> daemon.log.1. If a RotatingFileHandler is
    writing to the file, it does the rollover so its stream is reopened.

    Returns:
        True if the log was rotated
    """
    try:
        if log_path.stat().st_size < max_bytes:
            return False
    except FileNotFoundError:
        return False

    target = os.path.abspath(log_path)
    for handler in logging.getLogger().handlers:
        if isinstance(handler, RotatingFileHandler) and handler.baseFilename == target:
            handler.doRollover()
            return True

    backup = log_path.with_name(log_path.name + ".1")
    if backup.exists():
        backup.unlink()
    log_path.rename(backup)
    return True


class Daemon:
    """
    Owns the daemon process lifetime.

    States: starting -> running -> stopping -> stopped.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        paths: AlfredPaths,
        config_loader: Optional[Callable[[], AlfredConfig]] = None,
        stop_event: Optional[threading.Event] = None,
        sleep_increment: float = SLEEP_INCREMENT_SECONDS,
    ):
        """
        Args:
            scheduler: Scheduler whose tick runs each iteration
            paths: Filesystem layout (PID file, daemon log)
            config_loader: Called after every tick to pick up config changes
            stop_event: Stop token; set it to end the loop after the current tick
            sleep_increment: Granularity of the between-tick sleep
        """
        self.scheduler = scheduler
        self.paths = paths
        self.config_loader = config_loader or load_config
        self.stop_event = stop_event or threading.Event()
        self.sleep_increment = sleep_increment
        self.config = scheduler.config
        self.state = STOPPED

    def request_stop(self):
        self.stop_event.set()

    def install_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, stopping after the current tick...")
            self.request_stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _write_pid_file(self):
        self.paths.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.paths.pid_path.write_text(str(os.getpid()))
        logger.debug(f"Wrote PID file: {self.paths.pid_path}")

    def _reload_config(self):
        try:
            new_config = self.config_loader()
        except Exception as e:
            logger.debug(f"Ignoring config reload error: {e}")
            return

        if new_config.tick_interval_seconds != self.config.tick_interval_seconds:
            logger.info(f"Tick interval changed to {new_config.tick_interval_seconds}s")
        if new_config.max_parallel != self.config.max_parallel:
            logger.info(f"Max parallel changed to {new_config.max_parallel}")
        self.config = new_config
        self.scheduler.config = new_config

    def _sleep(self, seconds: float):
        deadline = time.monotonic() + seconds
        while not self.stop_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self.stop_event.wait(min(self.sleep_increment, remaining))

    def run_once(self):
        """One loop iteration: rotate log, tick, reload config."""
        try:
            rotate_log_if_needed(self.paths.daemon_log)
        except OSError:
            logger.exception(f"Failed to rotate {self.paths.daemon_log}")
        try:
            self.scheduler.tick()
        except Exception:
            logger.exception("Tick failed")
        self._reload_config()

    def run(self):
        """Run the loop until the stop token is set."""
        self.state = STARTING
        self._write_pid_file()
        logger.info(f"Daemon started (pid: {os.getpid()})")
        logger.info(f"Tick interval: {self.config.tick_interval_seconds}s")

        self.state = RUNNING
        try:
            while not self.stop_event.is_set():
                self.run_once()
                self._sleep(self.config.tick_interval_seconds)
        finally:
            self.state = STOPPING
            remove_pid_file(self.paths.pid_path)
            self.state = STOPPED
            logger.info("Daemon stopped")

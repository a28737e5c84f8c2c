"""
alfred - Personal Job Scheduler

Runs shell commands on a single host, once at a given time or on a cron
schedule, inside tmux windows, and tracks every run to completion.

Features:
- One-off (--at) and recurring (--cron) jobs
- Bounded parallelism (max_parallel) with FIFO dispatch
- Per-run output logs and exit-code sentinel files
- Completion callback with a reconciler fallback for lost windows
- Background daemon with hot-reloadable tick interval
"""

from alfred.config import AlfredConfig, AlfredPaths, load_config
from alfred.store import Store
from alfred.tick import Scheduler

__version__ = "1.0.0"
__all__ = ["AlfredConfig", "AlfredPaths", "load_config", "Store", "Scheduler"]

"""
Launching runs inside tmux windows.

The command sent to a window is built from a single template. Every value
interpolated into it goes through shlex.quote, and the finished script is
quoted once more when it is handed to bash. The user's command and working
directory are still trusted as given: alfred runs whatever the job says.

Inside the window the wrapper:
1. cd's into the job's working directory
2. runs the command, tee'ing stdout+stderr into the run's log file
3. takes the command's own exit status (PIPESTATUS[0], not tee's)
4. writes it to the run's .exit sentinel file
5. calls `alfred complete <run_id> <exit_code>`
6. exits, closing the window

Step 5 finalizes the run right away. The sentinel file from step 4 is what
the reconciler falls back on when the window dies before step 5 runs.
"""

import logging
import shlex
import sys
from typing import List, Optional

from alfred.config import AlfredPaths
from alfred.errors import ProcessHostError
from alfred.host import TmuxHost
from alfred.models import Job, Run

logger = logging.getLogger(__name__)

MAX_CONTEXT_NAME_LENGTH = 20

WRAPPER_TEMPLATE = (
    "cd {working_dir} && bash -c {command} 2>&1 | tee {log_path}; "
    "exit_code=${{PIPESTATUS[0]}}; "
    "echo \"$exit_code\" > {exit_code_path}; "
    "{callback} complete {run_id} \"$exit_code\""
)


def render_shell(template: str, **values) -> str:
    """
    Fill a shell template, quoting every value with shlex.quote.

    List values are argv: each item is quoted and the items are joined
    with spaces.
    """
    quoted = {}
    for key, value in values.items():
        if isinstance(value, (list, tuple)):
            quoted[key] = " ".join(shlex.quote(str(item)) for item in value)
        else:
            quoted[key] = shlex.quote(str(value))
    return template.format(**quoted)


def context_name(job_id: str, run_id: str) -> str:
    """
    Window name for a run, at most 20 characters.

    The job id is shortened, never the run id, so two runs of one job
    can't end up with the same window name.
    """
    room = MAX_CONTEXT_NAME_LENGTH - len(run_id) - 1
    if room <= 0:
        return run_id[:MAX_CONTEXT_NAME_LENGTH]
    return f"{job_id[:room]}-{run_id}"


def default_callback(paths: AlfredPaths) -> List[str]:
    """argv prefix that runs this alfred install against the same home."""
    return ["env", f"ALFRED_HOME={paths.home}", sys.executable, "-m", "alfred"]


class ProcessHostAdapter:
    """Runs jobs in windows of one shared tmux session."""

    def __init__(
        self,
        paths: AlfredPaths,
        session_name: str,
        host: Optional[TmuxHost] = None,
        callback: Optional[List[str]] = None,
    ):
        """
        Args:
            paths: Filesystem layout (log and sentinel locations)
            session_name: tmux session that hosts the run windows
            host: Process host; a TmuxHost unless one is injected
            callback: argv prefix for the completion callback
        """
        self.paths = paths
        self.session_name = session_name
        self.host = host or TmuxHost()
        self.callback = callback or default_callback(paths)

    def ensure_host_ready(self) -> str:
        return self.host.ensure_session(self.session_name)

    def build_command(self, job: Job, run: Run) -> str:
        """Full text typed into the window for this run."""
        script = render_shell(
            WRAPPER_TEMPLATE,
            working_dir=job.working_dir,
            command=job.command,
            log_path=self.paths.log_path(job.id, run.id),
            exit_code_path=self.paths.exit_code_path(job.id, run.id),
            callback=self.callback,
            run_id=run.id,
        )
        return f"bash -c {shlex.quote(script)}; exit"

    def launch(self, job: Job, run: Run) -> str:
        """
        Start a run in a fresh window.

        Returns:
            The window name (execution handle)

        Raises:
            ProcessHostError: If tmux refuses to create the window or take the command
        """
        self.paths.logs_dir.mkdir(parents=True, exist_ok=True)
        self.ensure_host_ready()

        name = context_name(job.id, run.id)
        handle = self.host.create_context(self.session_name, name)
        try:
            self.host.send_command(self.session_name, handle, self.build_command(job, run))
        except ProcessHostError:
            # Run stays pending; close the idle window
            self.host.kill_context(self.session_name, handle)
            raise

        logger.debug(f"[{job.id}:{run.id}] Sent command to window {handle}")
        return handle

    def context_exists(self, handle: str) -> bool:
        return self.host.context_exists(self.session_name, handle)

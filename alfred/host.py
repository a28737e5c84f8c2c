"""
tmux as the process host.

Every run gets its own window inside one long-lived tmux session, so a
command keeps running (and its window can be inspected) independently of
the daemon. The daemon only ever asks tmux whether a window still exists.
"""

import logging
import subprocess
from typing import List

from alfred.errors import ProcessHostError

logger = logging.getLogger(__name__)

TMUX_TIMEOUT_SECONDS = 10


class TmuxHost:
    """Thin wrapper around the tmux command line."""

    def __init__(self, tmux_binary: str = "tmux"):
        self.tmux_binary = tmux_binary

    def _tmux(self, *args: str) -> subprocess.CompletedProcess:
        argv = [self.tmux_binary, *args]
        try:
            return subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=TMUX_TIMEOUT_SECONDS,
            )
        except FileNotFoundError as e:
            raise ProcessHostError(f"tmux not found ({self.tmux_binary})") from e
        except subprocess.TimeoutExpired as e:
            raise ProcessHostError(f"tmux timed out after {TMUX_TIMEOUT_SECONDS}s: {' '.join(argv)}") from e

    def session_exists(self, session: str) -> bool:
        return self._tmux("has-session", "-t", session).returncode == 0

    def ensure_session(self, session: str) -> str:
        """Create a detached session unless one with this name exists."""
        if self.session_exists(session):
            return session

        result = self._tmux("new-session", "-d", "-s", session)
        if result.returncode != 0 and not self.session_exists(session):
            raise ProcessHostError(f"Failed to create tmux session '{session}': {result.stderr.strip()}")
        logger.info(f"Created tmux session '{session}'")
        return session

    def create_context(self, session: str, name: str) -> str:
        """
        Open a new window named `name` at the next free index.

        Returns:
            The window name, used as the handle for later lookups
        """
        result = self._tmux("new-window", "-d", "-t", f"{session}:", "-n", name, "-P", "-F", "#{window_id}")
        if result.returncode != 0:
            raise ProcessHostError(f"Failed to create tmux window '{name}': {result.stderr.strip()}")
        logger.debug(f"Created tmux window {name} ({result.stdout.strip()})")
        return name

    def send_command(self, session: str, handle: str, text: str):
        result = self._tmux("send-keys", "-t", f"{session}:{handle}", text, "Enter")
        if result.returncode != 0:
            raise ProcessHostError(f"Failed to send command to window '{handle}': {result.stderr.strip()}")

    def list_contexts(self, session: str) -> List[str]:
        """Window names in the session (empty if the session is gone)."""
        result = self._tmux("list-windows", "-t", session, "-F", "#{window_name}")
        if result.returncode != 0:
            return []
        return [line for line in result.stdout.strip().split('\n') if line]

    def context_exists(self, session: str, handle: str) -> bool:
        return handle in self.list_contexts(session)

    def kill_context(self, session: str, handle: str) -> bool:
        """Close a window. Returns False if tmux could not find it."""
        return self._tmux("kill-window", "-t", f"{session}:{handle}").returncode == 0

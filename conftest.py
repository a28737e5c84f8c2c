"""
Shared pytest fixtures: a throwaway alfred home and an in-memory tmux.
"""

from pathlib import Path

import pytest

from alfred.config import AlfredConfig, AlfredPaths
from alfred.errors import ProcessHostError
from alfred.runner import ProcessHostAdapter
from alfred.store import Store
from alfred.tick import Scheduler


class FakeHost:
    """Stands in for TmuxHost; windows live in a dict."""

    def __init__(self):
        self.sessions = set()
        self.windows = {}  # name -> list of commands sent
        self.fail_create = False
        self.fail_send = False
        self.killed = []

    def session_exists(self, session):
        return session in self.sessions

    def ensure_session(self, session):
        self.sessions.add(session)
        return session

    def create_context(self, session, name):
        if self.fail_create:
            raise ProcessHostError("tmux server not reachable")
        self.windows[name] = []
        return name

    def send_command(self, session, handle, text):
        if self.fail_send:
            raise ProcessHostError("send-keys failed")
        self.windows[handle].append(text)

    def list_contexts(self, session):
        return list(self.windows)

    def context_exists(self, session, handle):
        return handle in self.windows

    def kill_context(self, session, handle):
        self.killed.append(handle)
        return self.windows.pop(handle, None) is not None

    def finish(self, handle):
        """Simulate the window closing after its command exits."""
        del self.windows[handle]


@pytest.fixture
def paths(tmp_path) -> AlfredPaths:
    paths = AlfredPaths(home=tmp_path / "alfred-home")
    paths.ensure_dirs()
    return paths


@pytest.fixture
def store(paths):
    store = Store(paths.db_path)
    store.init_schema()
    yield store
    store.close()


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def adapter(paths, host) -> ProcessHostAdapter:
    return ProcessHostAdapter(paths, "alfred-test", host=host, callback=["alfred"])


@pytest.fixture
def scheduler(store, adapter, paths) -> Scheduler:
    return Scheduler(store, adapter, paths, AlfredConfig(max_parallel=3))


def write_exit_code(paths: AlfredPaths, run, code) -> Path:
    path = paths.exit_code_path(run.job_id, run.id)
    path.write_text(f"{code}\n")
    return path

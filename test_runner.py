"""
Tests for the tmux host and the run wrapper.
"""

import shlex
import shutil
import subprocess

import pytest

from alfred.errors import ProcessHostError
from alfred.host import TmuxHost
from alfred.models import Job, Run
from alfred.runner import ProcessHostAdapter, context_name, default_callback, render_shell


def make_job_and_run(command="echo hi", working_dir="/srv/app"):
    job = Job(id="backup", name="Backup", working_dir=working_dir, command=command)
    run = Run(id="ab12cd34", job_id="backup")
    return job, run


def test_render_shell_quotes_every_value():
    rendered = render_shell("cd {dir} && {cmd}", dir="/tmp/my dir", cmd="rm -rf '/'; echo")
    assert rendered == "cd '/tmp/my dir' && 'rm -rf '\"'\"'/'\"'\"'; echo'"
    assert shlex.split(rendered)[1] == "/tmp/my dir"


def test_render_shell_joins_list_values_as_argv():
    rendered = render_shell("{callback} complete", callback=["env", "ALFRED_HOME=/a b", "alfred"])
    assert rendered == "env 'ALFRED_HOME=/a b' alfred complete"


def test_context_name_keeps_run_id():
    assert context_name("backup", "ab12cd34") == "backup-ab12cd34"
    name = context_name("a-very-long-job-name-indeed", "ab12cd34")
    assert len(name) <= 20
    assert name.endswith("-ab12cd34")
    assert context_name("x", "r" * 25) == "r" * 20


def test_default_callback_pins_home(paths):
    callback = default_callback(paths)
    assert callback[0] == "env"
    assert callback[1] == f"ALFRED_HOME={paths.home}"
    assert callback[-2:] == ["-m", "alfred"]


def test_build_command_wraps_user_command(paths, host):
    adapter = ProcessHostAdapter(paths, "alfred-test", host=host, callback=["alfred"])
    job, run = make_job_and_run(command="echo \"it's $HOME\" && exit 3")

    command = adapter.build_command(job, run)
    assert command.startswith("bash -c ")
    assert command.endswith("; exit")

    # Unwrap the outer quoting to get the script bash will run
    script = shlex.split(command[len("bash -c "):-len("; exit")])[0]
    assert script.startswith("cd /srv/app && bash -c ")
    assert shlex.quote(job.command) in script
    assert f"tee {paths.log_path('backup', 'ab12cd34')}" in script
    assert "${PIPESTATUS[0]}" in script
    assert f"> {paths.exit_code_path('backup', 'ab12cd34')}" in script
    assert script.endswith("alfred complete ab12cd34 \"$exit_code\"")


def test_launch_opens_named_window_and_sends_command(paths, host):
    adapter = ProcessHostAdapter(paths, "alfred-test", host=host, callback=["alfred"])
    job, run = make_job_and_run()

    handle = adapter.launch(job, run)
    assert handle == "backup-ab12cd34"
    assert "alfred-test" in host.sessions
    assert host.windows[handle] == [adapter.build_command(job, run)]
    assert adapter.context_exists(handle)

    host.finish(handle)
    assert not adapter.context_exists(handle)


def test_launch_cleans_up_window_when_send_fails(paths, host):
    adapter = ProcessHostAdapter(paths, "alfred-test", host=host, callback=["alfred"])
    job, run = make_job_and_run()
    host.fail_send = True

    with pytest.raises(ProcessHostError):
        adapter.launch(job, run)
    assert host.killed == ["backup-ab12cd34"]
    assert host.windows == {}


class RecordingRun:
    """Replacement for subprocess.run that records tmux argv."""

    def __init__(self, returncode=0, stdout="", stderr=""):
        self.calls = []
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    def __call__(self, argv, **kwargs):
        self.calls.append(argv)
        return subprocess.CompletedProcess(argv, self.returncode, self.stdout, self.stderr)


def test_tmux_create_window_argv(monkeypatch):
    recorder = RecordingRun(stdout="@7\n")
    monkeypatch.setattr(subprocess, "run", recorder)

    assert TmuxHost().create_context("alfred", "backup-ab12cd34") == "backup-ab12cd34"
    assert recorder.calls == [[
        "tmux", "new-window", "-d", "-t", "alfred:", "-n", "backup-ab12cd34", "-P", "-F", "#{window_id}",
    ]]


def test_tmux_send_keys_argv(monkeypatch):
    recorder = RecordingRun()
    monkeypatch.setattr(subprocess, "run", recorder)

    TmuxHost().send_command("alfred", "w1", "echo hi")
    assert recorder.calls == [["tmux", "send-keys", "-t", "alfred:w1", "echo hi", "Enter"]]


def test_tmux_list_windows(monkeypatch):
    monkeypatch.setattr(subprocess, "run", RecordingRun(stdout="bash\nbackup-ab12cd34\n"))
    host = TmuxHost()
    assert host.list_contexts("alfred") == ["bash", "backup-ab12cd34"]
    assert host.context_exists("alfred", "backup-ab12cd34")
    assert not host.context_exists("alfred", "other")


def test_tmux_missing_session_lists_nothing(monkeypatch):
    monkeypatch.setattr(subprocess, "run", RecordingRun(returncode=1, stderr="no server running"))
    assert TmuxHost().list_contexts("alfred") == []


def test_tmux_failure_raises(monkeypatch):
    monkeypatch.setattr(subprocess, "run", RecordingRun(returncode=1, stderr="no server running"))
    with pytest.raises(ProcessHostError, match="no server running"):
        TmuxHost().create_context("alfred", "w1")


def test_tmux_not_installed(monkeypatch):
    def missing(argv, **kwargs):
        raise FileNotFoundError(argv[0])

    monkeypatch.setattr(subprocess, "run", missing)
    with pytest.raises(ProcessHostError, match="tmux not found"):
        TmuxHost().session_exists("alfred")


def run_wrapper(adapter, job, run):
    """Run the text typed into a window, minus the trailing `exit`, under bash."""
    command = adapter.build_command(job, run)
    subprocess.run(["bash", "-c", command[:-len("; exit")]], capture_output=True, timeout=30)
    exit_code = adapter.paths.exit_code_path(job.id, run.id).read_text().strip()
    log_path = adapter.paths.log_path(job.id, run.id)
    return int(exit_code), (log_path.read_text() if log_path.exists() else "")


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
def test_wrapper_records_command_exit_status_and_output(paths, host, tmp_path):
    adapter = ProcessHostAdapter(paths, "alfred-test", host=host, callback=["true"])
    job, run = make_job_and_run(command="echo out; echo err >&2; exit 3", working_dir=str(tmp_path))

    exit_code, output = run_wrapper(adapter, job, run)
    # tee succeeds, but the sentinel carries the command's own status
    assert exit_code == 3
    assert "out\n" in output
    assert "err\n" in output


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
def test_wrapper_runs_in_working_dir(paths, host, tmp_path):
    adapter = ProcessHostAdapter(paths, "alfred-test", host=host, callback=["true"])
    job, run = make_job_and_run(command="pwd", working_dir=str(tmp_path))

    exit_code, output = run_wrapper(adapter, job, run)
    assert exit_code == 0
    assert output.strip() == str(tmp_path)


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
def test_wrapper_missing_working_dir_fails(paths, host, tmp_path):
    adapter = ProcessHostAdapter(paths, "alfred-test", host=host, callback=["true"])
    job, run = make_job_and_run(command="echo never", working_dir=str(tmp_path / "missing"))

    exit_code, output = run_wrapper(adapter, job, run)
    assert exit_code != 0
    assert "never" not in output

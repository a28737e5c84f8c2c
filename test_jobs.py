"""
Tests for job management and the completion callback.
"""

import os
from datetime import datetime

import pytest

from alfred.errors import (
    DuplicateJobError,
    InvalidScheduleError,
    InvalidTimeError,
    JobNotFoundError,
    RunNotFoundError,
    ValidationError,
)
from alfred.jobs import add_job, complete_run, pause_job, remove_job, resume_job, run_job_now
from alfred.models import COMPLETED, FAILED, PENDING

NOW = datetime(2024, 6, 15, 10, 0, 0)


def test_add_cron_job(store, tmp_path):
    job = add_job(store, "Nightly Backup", "tar czf b.tgz .", working_dir=str(tmp_path),
                  cron="30 2 * * *", now=NOW)

    assert job.id == "nightly-backup"
    assert job.name == "Nightly Backup"
    assert job.working_dir == str(tmp_path)
    assert job.schedule == "30 2 * * *"
    assert job.next_run_at == datetime(2024, 6, 16, 2, 30)
    assert store.get_pending_runs() == []


def test_add_one_off_job(store):
    job = add_job(store, "report", "make report", at="14:30", now=NOW)
    assert job.schedule is None
    assert job.next_run_at == datetime(2024, 6, 15, 14, 30)


def test_add_run_now_job_queues_pending_run(store):
    job = add_job(store, "deploy", "./deploy.sh", run_now=True, now=NOW)

    assert job.next_run_at is None
    runs = store.list_runs_for_job("deploy")
    assert len(runs) == 1
    assert runs[0].status == PENDING


def test_working_dir_defaults_to_cwd(store, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    job = add_job(store, "here", "ls", run_now=True)
    assert job.working_dir == os.getcwd()


def test_add_requires_a_when(store):
    with pytest.raises(ValidationError, match="Must specify when"):
        add_job(store, "nothing", "echo")


def test_add_rejects_cron_and_at_together(store):
    with pytest.raises(ValidationError):
        add_job(store, "both", "echo", cron="* * * * *", at="10:00")


def test_add_rejects_empty_command(store):
    with pytest.raises(ValidationError):
        add_job(store, "blank", "   ", run_now=True)


def test_invalid_schedule_is_not_persisted(store):
    with pytest.raises(InvalidScheduleError):
        add_job(store, "bad", "echo", cron="not a cron")
    with pytest.raises(InvalidTimeError):
        add_job(store, "bad", "echo", at="25:00")
    assert store.list_jobs() == []


def test_duplicate_name_rejected(store):
    add_job(store, "Backup", "echo 1", run_now=True)
    with pytest.raises(DuplicateJobError):
        add_job(store, "backup!", "echo 2", run_now=True)


def test_remove_job(store):
    add_job(store, "gone", "echo", run_now=True)
    remove_job(store, "gone")
    assert store.get_job("gone") is None
    assert store.get_pending_runs() == []

    with pytest.raises(JobNotFoundError):
        remove_job(store, "gone")


def test_pause_and_resume(store):
    add_job(store, "tick", "echo", cron="* * * * *", now=NOW)
    pause_job(store, "tick")
    assert store.get_job("tick").paused
    assert store.get_due_jobs(datetime(2024, 6, 15, 12, 0)) == []

    job = resume_job(store, "tick", now=NOW)
    assert not job.paused
    assert job.next_run_at == datetime(2024, 6, 15, 10, 1)


def test_resume_rearms_recurring_job_without_next_run(store):
    add_job(store, "tick", "echo", cron="0 * * * *", now=NOW)
    store.update_job_next_run("tick", None)

    job = resume_job(store, "tick", now=NOW)
    assert job.next_run_at == datetime(2024, 6, 15, 11, 0)


def test_run_job_now(store):
    add_job(store, "later", "echo", at="23:00", now=NOW)
    run = run_job_now(store, "later")
    assert store.get_run(run.id).status == PENDING

    with pytest.raises(JobNotFoundError):
        run_job_now(store, "missing")


def test_complete_run_callback(store):
    add_job(store, "deploy", "./deploy.sh", run_now=True)
    run = store.get_pending_runs()[0]

    # Not marked running yet: left for the reconciler
    assert not complete_run(store, run.id, 0)
    assert store.get_run(run.id).status == PENDING

    store.mark_run_started(run.id, "deploy-" + run.id)
    assert complete_run(store, run.id, 1)
    assert store.get_run(run.id).status == FAILED

    # Last terminal write wins
    assert complete_run(store, run.id, 0)
    assert store.get_run(run.id).status == COMPLETED


def test_complete_unknown_run(store):
    with pytest.raises(RunNotFoundError):
        complete_run(store, "deadbeef", 0)

"""Unit tests for the worker entrypoint."""

import pytest
from sqlmodel import Session, select

from parley.jobs import worker
from parley.models.jobs import JobRun


@pytest.mark.asyncio
class TestRunWorker:

    async def test_single_job(self, engine, services):
        assert await worker.run_worker("expire-drafts", services)

        with Session(engine) as session:
            assert [r.job_id for r in session.exec(select(JobRun)).all()] == ["expire-drafts"]

    async def test_all_jobs(self, engine, services):
        assert await worker.run_worker("ALL", services)

        with Session(engine) as session:
            assert len(session.exec(select(JobRun)).all()) == 6

    async def test_unknown_job(self, services):
        with pytest.raises(ValueError, match="Unknown worker job"):
            await worker.run_worker("reindex", services)


def test_job_name_from_environment(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["parley-worker"])
    monkeypatch.setenv("WORKER_JOB", " Send-Reminders ")

    assert worker._resolve_job_name() == "send-reminders"


def test_job_name_from_argv(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["parley-worker", "check-no-shows"])

    assert worker._resolve_job_name() == "check-no-shows"

import pytest

from portfolio_api.jobs import worker


@pytest.mark.asyncio
async def test_run_worker_runs_job(monkeypatch):
    called = {"ok": False}

    async def dummy_job():
        called["ok"] = True
        return {"ok": True}

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)

    result = await worker.run_worker("dummy")

    assert called["ok"] is True
    assert result == {"ok": True}


@pytest.mark.asyncio
async def test_run_worker_unknown_job():
    with pytest.raises(ValueError):
        await worker.run_worker("missing")


def test_registry_exposes_scheduler_and_consumer_jobs():
    assert set(worker.JOB_REGISTRY) == {"scheduler_tick", "notification_consumer"}


def test_resolve_job_name_prefers_argv(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["worker", " Notification_Consumer "])
    monkeypatch.setenv("WORKER_JOB", "scheduler_tick")
    assert worker._resolve_job_name() == "notification_consumer"


def test_resolve_job_name_falls_back_to_env(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["worker"])
    monkeypatch.setenv("WORKER_JOB", "notification_consumer")
    assert worker._resolve_job_name() == "notification_consumer"

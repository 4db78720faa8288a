import pytest

from app.jobs import worker


@pytest.mark.asyncio
async def test_run_worker_runs_job(monkeypatch):
    called = {"ok": False}

    async def dummy_job():
        called["ok"] = True

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)

    await worker.run_worker("dummy")

    assert called["ok"] is True


@pytest.mark.asyncio
async def test_run_worker_unknown_job():
    with pytest.raises(ValueError):
        await worker.run_worker("missing")


def test_resolve_job_name_prefers_cli_argument(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["worker", "Infrastructure_Assessment"])
    monkeypatch.setenv("WORKER_JOB", "healing_graduation")

    assert worker._resolve_job_name() == "infrastructure_assessment"


def test_resolve_job_name_from_environment(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["worker"])
    monkeypatch.setenv("WORKER_JOB", "infrastructure_assessment")

    assert worker._resolve_job_name() == "infrastructure_assessment"


def test_resolve_job_name_default(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["worker"])
    monkeypatch.delenv("WORKER_JOB", raising=False)

    assert worker._resolve_job_name() == "healing_graduation"

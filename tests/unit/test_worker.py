import pytest

from app.jobs import worker


@pytest.mark.asyncio
async def test_run_worker_runs_job(monkeypatch):
    called = {"ok": False}

    async def dummy_job():
        called["ok"] = True

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)

    await worker.run_worker(" Dummy ")

    assert called["ok"] is True


@pytest.mark.asyncio
async def test_run_worker_unknown_job():
    with pytest.raises(ValueError, match="ledger_sync"):
        await worker.run_worker("missing")


def test_job_name_from_env(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["worker"])
    monkeypatch.setenv("WORKER_JOB", "LEDGER_SYNC")

    assert worker._resolve_job_name() == "ledger_sync"


def test_job_name_from_argv_wins(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["worker", "dummy"])
    monkeypatch.setenv("WORKER_JOB", "ledger_sync")

    assert worker._resolve_job_name() == "dummy"


def test_job_name_defaults_to_ledger_sync(monkeypatch):
    monkeypatch.delenv("WORKER_JOB", raising=False)

    assert worker._resolve_job_name([]) == worker.DEFAULT_JOB == "ledger_sync"


def test_job_name_accepts_dashes():
    assert worker._resolve_job_name(["Ledger-Sync-Once"]) == "ledger_sync_once"


@pytest.mark.asyncio
async def test_one_shot_ledger_sync_runs_once(monkeypatch):
    calls = []

    async def one_pass():
        calls.append("run")
        return {"wallets": 2, "payments_seen": 3, "top_ups_recorded": 1, "errors": []}

    monkeypatch.setitem(worker.JOB_REGISTRY, "ledger_sync_once", one_pass)

    await worker.run_worker("ledger-sync-once")

    assert calls == ["run"]

import pytest

from syncbridge import bootstrap, sync_tasks
from syncbridge.celery_shared import celery
from syncbridge.core.config import sync_settings
from syncbridge.schemas.sync import SyncOperation


@pytest.fixture(autouse=True)
def reset_task_registry():
    yield
    sync_tasks.configure_orchestrator_factory(None)
    sync_tasks.configure_key_provider(None)


def test_run_sync_task_returns_summary(make_orchestrator, platform_a, platform_b):
    platform_a.quantities = {"SKU-1": 10}
    platform_b.quantities = {"SKU-1": 7}
    sync_tasks.configure_orchestrator_factory(make_orchestrator)

    summary = sync_tasks.run_sync_task(["sku-1"], "quantity")

    assert summary["state"] == "completed"
    assert summary["outcome"] == "completed"
    assert summary["succeeded"] == 1
    assert platform_a.quantities["SKU-1"] == 7


def test_orchestrator_is_created_once_per_process(make_orchestrator):
    created = []

    def factory():
        created.append(make_orchestrator())
        return created[-1]

    sync_tasks.configure_orchestrator_factory(factory)
    assert sync_tasks.get_orchestrator() is sync_tasks.get_orchestrator()
    assert len(created) == 1


def test_default_factory_requires_platform_urls(monkeypatch):
    monkeypatch.setattr(bootstrap, "update_config_for_environment", lambda env: None)
    monkeypatch.setattr(sync_settings, "platform_a_url", "")
    with pytest.raises(ValueError):
        sync_tasks.get_orchestrator()


def test_build_orchestrator_from_settings(monkeypatch, store):
    monkeypatch.setattr(bootstrap, "update_config_for_environment", lambda env: None)
    monkeypatch.setattr(bootstrap, "init_db", lambda: None)
    monkeypatch.setattr(sync_settings, "platform_a_url", "https://a.example.com/api")
    monkeypatch.setattr(sync_settings, "platform_b_url", "https://b.example.com/api")
    monkeypatch.setattr(sync_settings, "platform_b_token", "token-b")
    monkeypatch.setattr(sync_settings, "platform_requests_per_minute", 120)

    orchestrator = bootstrap.build_orchestrator(store=store)

    assert orchestrator.platform_a.base_url == "https://a.example.com/api"
    assert "Authorization" not in orchestrator.platform_a.headers
    assert orchestrator.platform_b.headers["Authorization"] == "Bearer token-b"
    assert orchestrator.executor_b.rate_limiter is not None
    assert orchestrator.lock_manager.store is store
    # Время последней синхронизации и применённые значения идут через общий журнал
    assert orchestrator.ledger_writer is orchestrator.resolver.ledger
    assert orchestrator.last_sync_provider == orchestrator.resolver.ledger.last_sync_at


def test_reconcile_without_key_provider():
    result = sync_tasks.reconcile_all_task()
    assert result["success"] is False
    assert result["keys"] == 0


def test_reconcile_with_no_keys():
    sync_tasks.configure_key_provider(lambda operation: [])
    assert sync_tasks.reconcile_all_task() == {"success": True, "keys": 0, "tasks": 0}


def test_reconcile_fans_out_runs_in_chunks(make_orchestrator, platform_a, platform_b):
    keys = [f"SKU-{i}" for i in range(5)]
    platform_a.quantities = {key: 3 for key in keys}
    platform_b.quantities = {key: 3 for key in keys}
    requested = []

    def provider(operation):
        requested.append(operation)
        return keys

    sync_tasks.configure_orchestrator_factory(make_orchestrator)
    sync_tasks.configure_key_provider(provider)

    previous = celery.conf.task_always_eager
    celery.conf.task_always_eager = True
    try:
        result = sync_tasks.reconcile_all_task("quantity", keys_per_task=2)
    finally:
        celery.conf.task_always_eager = previous

    assert requested == [SyncOperation.QUANTITY]
    assert result["success"] is True
    assert result["keys"] == 5
    assert result["tasks"] == 3
    assert len(platform_a.reads) == 5


def test_beat_schedules_quantity_and_price_reconciliation():
    schedule = celery.conf.beat_schedule
    operations = {entry["kwargs"]["operation"] for entry in schedule.values()}
    assert operations == {"quantity", "price"}
    assert all(entry["task"] == "syncbridge.sync_tasks.reconcile_all_task" for entry in schedule.values())

"""Tests for the background worker loop."""

import asyncio

import pytest

import background_worker
from config import settings
from conftest import USER_ID
from engine import NotificationEngine
from token_registrar import TokenRegistrar


@pytest.fixture
def engine(store, scheduler, device, mapper, reconciler, dispatcher):
    return NotificationEngine(
        store=store,
        scheduler=scheduler,
        device=device,
        mapper=mapper,
        reconciler=reconciler,
        dispatcher=dispatcher,
        registrar=TokenRegistrar(device, store, USER_ID, project_id="proj")
    )


@pytest.mark.asyncio
async def test_disabled_worker_exits(monkeypatch):
    monkeypatch.setattr(settings, "WORKER_ENABLED", False)

    assert await background_worker.worker_loop() is None


@pytest.mark.asyncio
async def test_worker_syncs_watches_and_delivers(monkeypatch, engine, store, scheduler, make_reminder):
    monkeypatch.setattr(settings, "WORKER_ENABLED", True)
    monkeypatch.setattr(settings, "SYNC_INTERVAL", 1)
    monkeypatch.setattr(settings, "DELIVERY_INTERVAL", 0)
    monkeypatch.setattr(background_worker, "shutdown_requested", False)
    make_reminder("r1", 0)

    worker = asyncio.create_task(background_worker.worker_loop(engine))
    try:
        for _ in range(200):
            if scheduler.presented:
                break
            await asyncio.sleep(0.01)

        assert [r.reminder_id for r in scheduler.presented] == ["r1"]
        assert set(store.callbacks) == set(background_worker.WATCHED_TABLES)
        assert store.push_tokens

        # A change notification starts a pass in the background
        store.callbacks["reminders"][0]("reminders")
    finally:
        background_worker.request_shutdown()
        await asyncio.wait_for(worker, timeout=5)

    assert worker.done()

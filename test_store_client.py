"""Tests for the REST reminder store client."""

import asyncio
import json
from datetime import timedelta

import httpx
import pytest

from conftest import NOW
from schemas import ActionType, ReminderStatus
from store_client import RestReminderStore, StoreError

BASE_URL = "https://store.example.com/rest/v1"


def make_store(handler):
    return RestReminderStore(
        base_url=BASE_URL,
        api_key="anon-key",
        access_token="user-jwt",
        timeout=5,
        poll_interval=1,
        transport=httpx.MockTransport(handler)
    )


def reminder_row(reminder_id="r1", **fields):
    row = {
        "id": reminder_id,
        "user_id": "u1",
        "title": "Call mom",
        "description": None,
        "scheduled_time": (NOW + timedelta(hours=1)).isoformat(),
        "status": "upcoming",
        "notify_before_minutes": None,
        "is_priority": False,
        "updated_at": NOW.isoformat(),
    }
    row.update(fields)
    return row


@pytest.mark.asyncio
async def test_list_future_reminders_queries_window():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[reminder_row(), reminder_row("r2", notify_before_minutes=10)])

    reminders = await make_store(handler).list_future_reminders("u1", NOW)

    request = seen[0]
    assert request.url.path == "/rest/v1/reminders"
    assert request.url.params["user_id"] == "eq.u1"
    assert request.url.params["scheduled_time"] == f"gte.{NOW.isoformat()}"
    assert request.url.params["status"] == "neq.completed"
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["authorization"] == "Bearer user-jwt"
    assert [r.id for r in reminders] == ["r1", "r2"]
    assert reminders[0].notify_before_minutes == 0
    assert reminders[1].notify_before_minutes == 10
    assert reminders[0].scheduled_time.tzinfo is not None


@pytest.mark.asyncio
async def test_list_actions_for_batches_ids():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[
            {"id": "a1", "reminder_id": "r1", "action_type": "call", "action_value": {"phone": "1"}, "metadata": None},
        ])

    actions = await make_store(handler).list_actions_for(["r1", "r2"])

    assert len(seen) == 1
    assert seen[0].url.params["reminder_id"] == 'in.("r1","r2")'
    assert actions[0].action_type == ActionType.CALL
    assert actions[0].metadata == {}


@pytest.mark.asyncio
async def test_list_actions_for_nothing_skips_request():
    def handler(request):
        raise AssertionError("no request expected")

    assert await make_store(handler).list_actions_for([]) == []


@pytest.mark.asyncio
async def test_update_reminder_sends_patch():
    seen = []

    def handler(request):
        seen.append(request)
        body = json.loads(request.content)
        return httpx.Response(200, json=[reminder_row(status=body["status"])])

    reminder = await make_store(handler).update_reminder("r1", {"status": "completed", "notified_at": None})

    request = seen[0]
    assert request.method == "PATCH"
    assert request.url.params["id"] == "eq.r1"
    assert request.headers["prefer"] == "return=representation"
    assert json.loads(request.content) == {"status": "completed", "notified_at": None}
    assert reminder.status == ReminderStatus.COMPLETED


@pytest.mark.asyncio
async def test_update_reminder_serializes_datetimes():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=[reminder_row()])

    await make_store(handler).update_reminder("r1", {"scheduled_time": NOW})

    assert bodies == [{"scheduled_time": NOW.isoformat()}]


@pytest.mark.asyncio
async def test_update_missing_reminder_raises():
    store = make_store(lambda request: httpx.Response(200, json=[]))

    with pytest.raises(StoreError):
        await store.update_reminder("nope", {"status": "completed"})


@pytest.mark.asyncio
async def test_http_error_raises_store_error():
    store = make_store(lambda request: httpx.Response(503, text="unavailable"))

    with pytest.raises(StoreError, match="503"):
        await store.list_future_reminders("u1", NOW)


@pytest.mark.asyncio
async def test_network_error_raises_store_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(StoreError):
        await make_store(handler).get_user_preferences("u1")


@pytest.mark.asyncio
async def test_get_user_preferences():
    rows = [{"user_id": "u1", "default_snooze_minutes": 30, "snooze_mode": "presets",
             "snooze_preset_values": None, "show_snooze_button": None}]
    store = make_store(lambda request: httpx.Response(200, json=rows))

    prefs = await store.get_user_preferences("u1")

    assert prefs.default_snooze_minutes == 30
    assert prefs.snooze_preset_values == [10, 15, 30]
    assert prefs.show_snooze_button is True


@pytest.mark.asyncio
async def test_get_user_preferences_missing_row():
    store = make_store(lambda request: httpx.Response(200, json=[]))

    assert await store.get_user_preferences("u1") is None


@pytest.mark.asyncio
async def test_upsert_push_token_merges_on_user_and_token():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201)

    await make_store(handler).upsert_push_token({"user_id": "u1", "token": "tok", "updated_at": NOW})

    request = seen[0]
    assert request.method == "POST"
    assert request.url.params["on_conflict"] == "user_id,token"
    assert "resolution=merge-duplicates" in request.headers["prefer"]
    assert json.loads(request.content)["updated_at"] == NOW.isoformat()


@pytest.mark.asyncio
async def test_table_fingerprint_reads_count_and_latest():
    def handler(request):
        return httpx.Response(
            200,
            json=[{"updated_at": "2026-03-02T09:00:00+00:00"}],
            headers={"Content-Range": "0-0/42"}
        )

    fingerprint = await make_store(handler).table_fingerprint("reminders")

    assert fingerprint == (42, "2026-03-02T09:00:00+00:00")


@pytest.mark.asyncio
async def test_subscription_calls_back_on_change():
    counts = iter([1, 1, 2])
    changes = []

    def handler(request):
        return httpx.Response(200, json=[], headers={"Content-Range": f"*/{next(counts, 2)}"})

    store = make_store(handler)
    store.poll_interval = 0

    subscription = store.subscribe_to_changes("reminders", changes.append)
    try:
        for _ in range(50):
            if changes:
                break
            await asyncio.sleep(0.01)
    finally:
        subscription.cancel()

    assert changes == ["reminders"]


@pytest.mark.asyncio
async def test_malformed_reminder_rows_are_skipped():
    rows = [
        reminder_row("r1"),
        reminder_row("r2", updated_at=None),
        reminder_row("r3", scheduled_time=None),
        reminder_row("r4", status="archived"),
    ]
    store = make_store(lambda request: httpx.Response(200, json=rows))

    reminders = await store.list_future_reminders("u1", NOW)

    assert [r.id for r in reminders] == ["r1", "r2"]
    assert reminders[1].updated_at is None


@pytest.mark.asyncio
async def test_unknown_action_type_is_skipped():
    rows = [
        {"id": "a1", "reminder_id": "r1", "action_type": "call", "action_value": {"phone": "1"}},
        {"id": "a2", "reminder_id": "r1", "action_type": "teleport", "action_value": {}},
    ]
    store = make_store(lambda request: httpx.Response(200, json=rows))

    actions = await store.list_actions_for(["r1"])

    assert [a.id for a in actions] == ["a1"]


@pytest.mark.asyncio
async def test_malformed_update_response_raises_store_error():
    store = make_store(lambda request: httpx.Response(200, json=[{"id": "r1"}]))

    with pytest.raises(StoreError, match="Malformed"):
        await store.update_reminder("r1", {"status": "completed"})


@pytest.mark.asyncio
async def test_malformed_preferences_are_ignored():
    rows = [{"user_id": "u1", "snooze_mode": "sometimes"}]
    store = make_store(lambda request: httpx.Response(200, json=rows))

    assert await store.get_user_preferences("u1") is None


@pytest.mark.asyncio
async def test_delete_push_token_filters_by_user_and_token():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(204)

    await make_store(handler).delete_push_token("u1", "tok")

    request = seen[0]
    assert request.method == "DELETE"
    assert request.url.path == "/rest/v1/push_tokens"
    assert request.url.params["user_id"] == "eq.u1"
    assert request.url.params["token"] == "eq.tok"


@pytest.mark.asyncio
async def test_delete_push_token_error_raises_store_error():
    store = make_store(lambda request: httpx.Response(500, text="boom"))

    with pytest.raises(StoreError, match="500"):
        await store.delete_push_token("u1", "tok")

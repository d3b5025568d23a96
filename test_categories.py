"""Tests for the action-to-category mapper."""

import pytest

from categories import (
    CategoryMapper,
    build_category,
    derive_category_id,
    snooze_config_from_preferences,
    snooze_label,
)
from config import settings
from device import LocalNotificationScheduler, SchedulerError
from schemas import ActionType, ReminderAction, SnoozeConfig, UserPreferences


def action(action_id, action_type, value=None, reminder_id="r-1"):
    return ReminderAction(
        id=action_id,
        reminder_id=reminder_id,
        action_type=action_type,
        action_value=value or {}
    )


class RejectingScheduler(LocalNotificationScheduler):
    async def register_category(self, category):
        raise SchedulerError("categories unsupported")


def test_category_id_is_deterministic_and_sanitized():
    actions = [action("a2", ActionType.LINK), action("a1", ActionType.CALL)]
    snooze = SnoozeConfig(minutes=15)

    first = derive_category_id("3f2a-9c:01", actions, snooze)
    second = derive_category_id("3f2a-9c:01", list(reversed(actions)), snooze)

    assert first == second == "reminder_3f2a9c01_call_link_snooze15"
    assert "-" not in first and ":" not in first


def test_category_id_ignores_actions_that_need_the_app():
    actions = [action("a1", ActionType.NOTE), action("a2", ActionType.PHOTO)]

    category_id = derive_category_id("r1", actions, SnoozeConfig(minutes=10))

    assert category_id == "reminder_r1_snooze10"


def test_category_id_reflects_snooze_configuration():
    assert derive_category_id("r1", [], SnoozeConfig(minutes=30)).endswith("_snooze30")
    assert derive_category_id("r1", [], SnoozeConfig(minutes=30, enabled=False)).endswith("_nosnooze")


def test_build_category_orders_buttons():
    actions = [
        action("a1", ActionType.CALL, {"phone": "+15550100"}),
        action("a2", ActionType.LINK, {"url": "https://example.com"}),
        action("a3", ActionType.EMAIL, {"email": "a@example.com"}),
        action("a4", ActionType.NOTE),
    ]

    category = build_category("r-1", actions, SnoozeConfig(minutes=15))

    assert [b.identifier for b in category.buttons] == [
        "call_a1",
        "link_a2",
        "snooze_r-1",
        "complete_r-1",
    ]
    assert category.buttons[2].title == "Snooze 15m"
    assert category.buttons[-1].destructive is True


def test_build_category_without_snooze_keeps_complete_last():
    category = build_category("r1", [], SnoozeConfig(minutes=15, enabled=False))

    assert [b.identifier for b in category.buttons] == ["complete_r1"]


@pytest.mark.parametrize("minutes,label", [
    (10, "Snooze 10m"),
    (60, "Snooze 1h"),
    (90, "Snooze 90m"),
    (120, "Snooze 2h"),
])
def test_snooze_label(minutes, label):
    assert snooze_label(minutes) == label


def test_snooze_config_from_preferences():
    assert snooze_config_from_preferences(None, 15) == SnoozeConfig(minutes=15, enabled=True)

    prefs = UserPreferences(default_snooze_minutes=30, show_snooze_button=False)
    assert snooze_config_from_preferences(prefs, 15) == SnoozeConfig(minutes=30, enabled=False)

    prefs = UserPreferences(default_snooze_minutes=0)
    assert snooze_config_from_preferences(prefs, 15).minutes == 15


@pytest.mark.asyncio
async def test_ensure_category_registered_once():
    scheduler = LocalNotificationScheduler()
    mapper = CategoryMapper(scheduler)
    actions = [action("a1", ActionType.CALL, {"phone": "1"})]
    snooze = SnoozeConfig(minutes=15)

    first = await mapper.ensure_category_registered("r1", actions, snooze)
    second = await mapper.ensure_category_registered("r1", actions, snooze)

    assert first == second == "reminder_r1_call_snooze15"
    assert mapper.is_recognized(first)
    assert scheduler.get_category(first).buttons[0].identifier == "call_a1"


@pytest.mark.asyncio
async def test_replaced_action_of_same_type_updates_buttons():
    scheduler = LocalNotificationScheduler()
    mapper = CategoryMapper(scheduler)
    snooze = SnoozeConfig(minutes=15)

    await mapper.ensure_category_registered("r1", [action("a1", ActionType.CALL)], snooze)
    category_id = await mapper.ensure_category_registered("r1", [action("a9", ActionType.CALL)], snooze)

    assert scheduler.get_category(category_id).buttons[0].identifier == "call_a9"


@pytest.mark.asyncio
async def test_registration_failure_degrades_to_no_category():
    mapper = CategoryMapper(RejectingScheduler())
    snooze = SnoozeConfig(minutes=15)

    category_id = await mapper.ensure_category_registered("r1", [], snooze)

    assert category_id is None
    assert mapper.expected_category_id("r1", [], snooze) is None
    assert mapper.matches(None, None)


@pytest.mark.asyncio
async def test_unknown_category_does_not_match():
    mapper = CategoryMapper(LocalNotificationScheduler())
    expected = mapper.expected_category_id("r1", [], SnoozeConfig(minutes=15))

    # Derived but never registered in this process
    assert not mapper.matches(expected, expected)

    await mapper.ensure_category_registered("r1", [], SnoozeConfig(minutes=15))
    assert mapper.matches(expected, expected)
    assert not mapper.matches(None, expected)


def test_snooze_config_default_comes_from_settings(monkeypatch):
    monkeypatch.setattr(settings, "DEFAULT_SNOOZE_MINUTES", 25)

    assert snooze_config_from_preferences(None).minutes == 25
    assert snooze_config_from_preferences(UserPreferences(default_snooze_minutes=0)).minutes == 25


@pytest.mark.asyncio
async def test_load_registered_adopts_existing_categories():
    scheduler = LocalNotificationScheduler()
    snooze = SnoozeConfig(minutes=15)
    category_id = await CategoryMapper(scheduler).ensure_category_registered("r1", [], snooze)

    mapper = CategoryMapper(scheduler)
    assert not mapper.is_recognized(category_id)

    await mapper.load_registered()

    assert mapper.is_recognized(category_id)
    assert mapper.matches(category_id, mapper.expected_category_id("r1", [], snooze))


class UnlistableScheduler(LocalNotificationScheduler):
    async def list_categories(self):
        raise SchedulerError("listing unsupported")


@pytest.mark.asyncio
async def test_load_registered_failure_is_not_fatal():
    scheduler = UnlistableScheduler()
    mapper = CategoryMapper(scheduler)

    await mapper.load_registered()
    assert not mapper._loaded

    category_id = await mapper.ensure_category_registered("r1", [], SnoozeConfig(minutes=15))
    assert mapper.is_recognized(category_id)

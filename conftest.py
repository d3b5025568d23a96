"""Pytest configuration and fixtures."""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

# Keep the module-level engine off the working directory
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("WORKER_ENABLED", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import database
from categories import CategoryMapper
from device import LocalDevice, LocalNotificationScheduler
from dispatcher import ResponseDispatcher
from reconciler import ScheduleReconciler
from schemas import Reminder, ReminderAction, ReminderStatus, UserPreferences
from store_client import ChangeSubscription, ReminderStore, StoreError

USER_ID = "u1"
DEVICE_ID = "d1"
NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeStore(ReminderStore):
    """In-memory remote store scoped to one user."""

    def __init__(self, clock):
        self._clock = clock
        self.reminders: Dict[str, Reminder] = {}
        self.actions: List[ReminderAction] = []
        self.preferences: Optional[UserPreferences] = None
        self.push_tokens: Dict[tuple, Dict[str, Any]] = {}
        self.updates: List[tuple] = []
        self.action_batches: List[List[str]] = []
        self.callbacks: Dict[str, list] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.gate: Optional[asyncio.Event] = None

    def add(self, reminder: Reminder) -> Reminder:
        self.reminders[reminder.id] = reminder
        return reminder

    def edit(self, reminder_id: str, **changes) -> Reminder:
        reminder = self.reminders[reminder_id].model_copy(update=changes)
        self.reminders[reminder_id] = reminder
        return reminder

    async def list_future_reminders(self, user_id, now):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_reads:
            raise StoreError("store unreachable")
        return sorted(
            (r for r in self.reminders.values()
             if r.user_id == user_id and r.scheduled_time >= now and r.status != ReminderStatus.COMPLETED),
            key=lambda r: r.scheduled_time
        )

    async def list_actions_for(self, reminder_ids):
        self.action_batches.append(list(reminder_ids))
        return [a for a in self.actions if a.reminder_id in reminder_ids]

    async def get_actions(self, reminder_id):
        return [a for a in self.actions if a.reminder_id == reminder_id]

    async def update_reminder(self, reminder_id, patch):
        if self.fail_writes:
            raise StoreError("store unreachable")
        self.updates.append((reminder_id, dict(patch)))
        changes = dict(patch)
        changes.setdefault('updated_at', self._clock())
        if 'status' in changes:
            changes['status'] = ReminderStatus(changes['status'])
        return self.edit(reminder_id, **changes)

    async def get_user_preferences(self, user_id):
        return self.preferences

    async def upsert_push_token(self, row):
        if self.fail_writes:
            raise StoreError("store unreachable")
        self.push_tokens[(row['user_id'], row['token'])] = dict(row)

    async def delete_push_token(self, user_id, token):
        if self.fail_writes:
            raise StoreError("store unreachable")
        self.push_tokens.pop((user_id, token), None)

    def subscribe_to_changes(self, table, callback):
        self.callbacks.setdefault(table, []).append(callback)
        return ChangeSubscription(table, asyncio.get_running_loop().create_future())


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    """Mutable clock: clock.now can be moved forward by tests."""
    class Clock:
        def __init__(self):
            self.now = NOW

        def __call__(self):
            return self.now

    return Clock()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    database.init_db(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(clock):
    return FakeStore(clock)


@pytest.fixture
def scheduler(clock):
    return LocalNotificationScheduler(clock=clock)


@pytest.fixture
def device():
    return LocalDevice(platform="ios", device_id=DEVICE_ID, is_physical_device=True, push_token="ExponentPushToken[abc]")


@pytest.fixture
def mapper(scheduler):
    return CategoryMapper(scheduler)


@pytest.fixture
def reconciler(store, scheduler, mapper, session_factory, clock):
    return ScheduleReconciler(
        store=store,
        scheduler=scheduler,
        mapper=mapper,
        user_id=USER_ID,
        device_id=DEVICE_ID,
        session_factory=session_factory,
        hold_tolerance_seconds=60,
        default_snooze_minutes=15,
        default_body="Reminder is due!",
        clock=clock
    )


@pytest.fixture
def dispatcher(reconciler):
    return ResponseDispatcher(reconciler, platform="ios", default_snooze_minutes=15)


@pytest.fixture
def make_reminder(store):
    """Create a reminder in the fake store, due `minutes` from NOW."""
    def _make(reminder_id: str, minutes: float, **fields) -> Reminder:
        values = {
            'id': reminder_id,
            'user_id': USER_ID,
            'title': f"Reminder {reminder_id}",
            'scheduled_time': NOW + timedelta(minutes=minutes),
            'updated_at': NOW - timedelta(hours=1),
        }
        values.update(fields)
        return store.add(Reminder(**values))

    return _make

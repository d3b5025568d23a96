"""Schedule reconciler.

Converges the device's scheduled notifications onto the user's upcoming
reminders. Two enumerable sets are compared on every pass: the persisted
schedule records (what this device intends to have scheduled) and the
scheduler's pending list (what actually still exists). Records decide
intent; the pending list decides existence.

A pass:
1. fetches future reminders, pending notifications, schedule records,
   actions (one batched call) and snooze preferences; any failure aborts it
2. computes each reminder's target time (notify-before, or the due time if
   that has already passed)
3. holds, or cancels and reschedules, reminders that already have a record
4. schedules reminders without a record
5. removes records and notifications for reminders that left the window
6. cancels duplicate notifications per reminder, keeping the newest

Passes are single-flight: a trigger arriving during a pass is dropped, the
next trigger converges again.
"""

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

import crud
import database
from categories import CategoryMapper, actionable_actions, snooze_config_from_preferences
from config import settings
from device import NotificationScheduler, SchedulerError
from logger_config import setup_logger
from schemas import (
    NotificationContent,
    NotificationRequest,
    PAYLOAD_ACTION_TYPES,
    PAYLOAD_BODY,
    PAYLOAD_DEFAULT_SNOOZE_MINUTES,
    PAYLOAD_IS_PRIORITY,
    PAYLOAD_ORIGINAL_TIME,
    PAYLOAD_REMINDER_ID,
    PAYLOAD_REMINDER_UPDATED_AT,
    PAYLOAD_TITLE,
    PAYLOAD_TYPE,
    RESYNC_PUSH_TYPE,
    ReconcileReport,
    Reminder,
    ReminderAction,
    SnoozeConfig,
)
from store_client import ReminderStore, StoreError

logger = setup_logger(__name__, 'reconciler.log')


class SyncOutcome(str, Enum):
    SCHEDULED = "scheduled"
    REFRESHED = "refreshed"
    HELD = "held"


def notification_target(reminder: Reminder, now: datetime) -> datetime:
    """When the reminder's notification should fire.

    notify_before_minutes ahead of the due time, unless that moment has
    already passed; then the due time itself so the notification is not lost.
    """
    target = reminder.scheduled_time - timedelta(minutes=reminder.notify_before_minutes)
    if target < now:
        return reminder.scheduled_time
    return target


def build_notification_content(
    reminder: Reminder,
    actions: List[ReminderAction],
    snooze: SnoozeConfig,
    category_id: Optional[str],
    default_body: str
) -> NotificationContent:
    """Notification content with the payload the dispatcher reads back."""
    body = reminder.description or default_body
    return NotificationContent(
        title=reminder.title,
        body=body,
        category_id=category_id,
        data={
            PAYLOAD_REMINDER_ID: reminder.id,
            PAYLOAD_TITLE: reminder.title,
            PAYLOAD_BODY: body,
            PAYLOAD_ORIGINAL_TIME: reminder.scheduled_time.isoformat(),
            PAYLOAD_REMINDER_UPDATED_AT: reminder.updated_at.isoformat() if reminder.updated_at else None,
            PAYLOAD_DEFAULT_SNOOZE_MINUTES: snooze.minutes,
            PAYLOAD_IS_PRIORITY: reminder.is_priority,
            PAYLOAD_ACTION_TYPES: sorted({a.action_type.value for a in actionable_actions(actions)}),
        }
    )


class ScheduleReconciler:
    """Keeps one device's scheduled notifications in line with the remote store."""

    def __init__(
        self,
        store: ReminderStore,
        scheduler: NotificationScheduler,
        mapper: CategoryMapper,
        user_id: str,
        device_id: str,
        session_factory: Optional[Callable] = None,
        hold_tolerance_seconds: Optional[int] = None,
        default_snooze_minutes: Optional[int] = None,
        default_body: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.scheduler = scheduler
        self.mapper = mapper
        self.user_id = user_id
        self.device_id = device_id
        self.session_factory = session_factory or database.SessionLocal
        self.hold_tolerance = timedelta(seconds=(
            settings.HOLD_TOLERANCE_SECONDS if hold_tolerance_seconds is None else hold_tolerance_seconds
        ))
        self.default_snooze_minutes = default_snooze_minutes or settings.DEFAULT_SNOOZE_MINUTES
        self.default_body = default_body or settings.DEFAULT_NOTIFICATION_BODY
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = asyncio.Lock()
        self._background: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def now(self) -> datetime:
        return self._clock()

    async def reconcile(self, trigger: str = "manual") -> Optional[ReconcileReport]:
        """Run one reconciliation pass.

        Returns:
            The pass report, or None when another pass was already running
            (the trigger is dropped, not queued)
        """
        if self._lock.locked():
            logger.info(f"Sync already running, dropping '{trigger}' trigger")
            return None

        async with self._lock:
            report = await self._run_pass(trigger)

        if not report.aborted:
            logger.info(
                f"Sync '{trigger}' done: {report.reminders} reminder(s), "
                f"scheduled={report.scheduled} refreshed={report.refreshed} held={report.held} "
                f"removed={report.removed} orphaned={report.orphaned} "
                f"deduplicated={report.deduplicated} failed={report.failed}"
            )
        return report

    def request_sync(self, trigger: str) -> asyncio.Task:
        """Start a pass in the background without waiting for it."""
        task = asyncio.get_running_loop().create_task(self.reconcile(trigger))
        self._background.add(task)
        task.add_done_callback(self._sync_finished)
        return task

    def handle_received(self, request: NotificationRequest) -> Optional[asyncio.Task]:
        """Start a sync when a resync push from another device arrives."""
        if request.content.data.get(PAYLOAD_TYPE) != RESYNC_PUSH_TYPE:
            return None
        logger.info(f"Resync push received ({request.identifier})")
        return self.request_sync("resync-push")

    def _sync_finished(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background sync failed: {str(error)}", exc_info=error)

    async def _run_pass(self, trigger: str) -> ReconcileReport:
        now = self.now()
        report = ReconcileReport(trigger=trigger, started_at=now)
        await self.mapper.load_registered()

        # 1. Fetch everything up front; any failure aborts the pass
        try:
            reminders = await self.store.list_future_reminders(self.user_id, now)
            pending = await self.scheduler.list_scheduled()
            reminder_ids = [r.id for r in reminders]
            actions = await self.store.list_actions_for(reminder_ids) if reminder_ids else []
            preferences = await self.store.get_user_preferences(self.user_id)
        except (StoreError, SchedulerError) as e:
            logger.error(f"Sync '{trigger}' aborted while fetching state: {str(e)}", exc_info=True)
            report.aborted = True
            return report

        snooze = snooze_config_from_preferences(preferences, self.default_snooze_minutes)
        actions_by_reminder: Dict[str, List[ReminderAction]] = defaultdict(list)
        for action in actions:
            actions_by_reminder[action.reminder_id].append(action)
        pending_by_id = {request.identifier: request for request in pending}
        future_ids = set(reminder_ids)
        report.reminders = len(reminders)

        db = self.session_factory()
        try:
            records = {
                record.reminder_id: record
                for record in crud.get_schedules_for_device(db, self.user_id, self.device_id)
            }

            # 2-4. Per reminder: hold, refresh or schedule
            for reminder in reminders:
                try:
                    outcome = await self._sync_reminder(
                        db, reminder, actions_by_reminder[reminder.id], snooze,
                        records.get(reminder.id), pending_by_id, now
                    )
                except Exception as e:
                    db.rollback()
                    report.failed += 1
                    logger.error(f"Failed to sync reminder {reminder.id}: {str(e)}", exc_info=True)
                    continue

                if outcome == SyncOutcome.HELD:
                    report.held += 1
                elif outcome == SyncOutcome.REFRESHED:
                    report.refreshed += 1
                else:
                    report.scheduled += 1

            # 5. Cleanup: records and notifications for reminders outside the window
            canceled: Set[str] = set()
            snooze_holds: Set[str] = set()
            for reminder_id, record in records.items():
                if reminder_id in future_ids:
                    continue
                still_pending = record.notification_id in pending_by_id
                if still_pending and record.snoozed_until and record.snoozed_until > now:
                    snooze_holds.add(reminder_id)
                    continue
                try:
                    if still_pending:
                        await self.scheduler.cancel(record.notification_id)
                        canceled.add(record.notification_id)
                    crud.delete_schedule(db, self.user_id, reminder_id, self.device_id)
                    report.removed += 1
                    logger.info(f"Removed schedule for reminder {reminder_id} (left the future window)")
                except Exception as e:
                    db.rollback()
                    report.failed += 1
                    logger.error(f"Failed to remove schedule for reminder {reminder_id}: {str(e)}", exc_info=True)

            for request in pending:
                reminder_id = request.reminder_id
                if request.is_test or reminder_id is None or request.identifier in canceled:
                    continue
                if reminder_id in future_ids or reminder_id in snooze_holds:
                    continue
                try:
                    await self.scheduler.cancel(request.identifier)
                    report.orphaned += 1
                    logger.info(f"Canceled orphaned notification {request.identifier} for reminder {reminder_id}")
                except Exception as e:
                    report.failed += 1
                    logger.error(f"Failed to cancel orphaned notification {request.identifier}: {str(e)}")

            # 6. De-duplicate strictly after all scheduling
            await self._deduplicate(db, report)
        finally:
            db.close()

        return report

    async def _sync_reminder(
        self,
        db,
        reminder: Reminder,
        actions: List[ReminderAction],
        snooze: SnoozeConfig,
        record,
        pending_by_id: Dict[str, NotificationRequest],
        now: datetime
    ) -> SyncOutcome:
        target = notification_target(reminder, now)
        refreshed = False

        if record is not None:
            request = pending_by_id.get(record.notification_id)
            expected = self.mapper.expected_category_id(reminder.id, actions, snooze)
            category_ok = request is not None and self.mapper.matches(request.content.category_id, expected)

            # (a) A user snooze wins over upstream changes
            if record.snoozed_until and record.snoozed_until > now and category_ok:
                logger.debug(f"Holding snoozed reminder {reminder.id} until {record.snoozed_until.isoformat()}")
                return SyncOutcome.HELD

            # (b) Nothing relevant changed
            if (
                category_ok
                and record.reminder_updated_at == reminder.updated_at
                and abs(target - record.scheduled_for) <= self.hold_tolerance
            ):
                return SyncOutcome.HELD

            # (c) Stale: the old notification must be gone before the new one exists
            if request is not None:
                await self.scheduler.cancel(record.notification_id)
            crud.delete_schedule(db, self.user_id, reminder.id, self.device_id)
            refreshed = True
            logger.info(f"Schedule for reminder {reminder.id} is stale, rescheduling")

        await self._schedule_fresh(db, reminder, actions, snooze, target)
        return SyncOutcome.REFRESHED if refreshed else SyncOutcome.SCHEDULED

    async def _schedule_fresh(
        self,
        db,
        reminder: Reminder,
        actions: List[ReminderAction],
        snooze: SnoozeConfig,
        target: datetime
    ) -> str:
        category_id = await self.mapper.ensure_category_registered(reminder.id, actions, snooze)
        content = build_notification_content(reminder, actions, snooze, category_id, self.default_body)
        notification_id = await self.scheduler.schedule_at(target, content)
        crud.upsert_schedule(
            db,
            user_id=self.user_id,
            reminder_id=reminder.id,
            device_id=self.device_id,
            notification_id=notification_id,
            scheduled_for=target,
            reminder_updated_at=reminder.updated_at,
            snoozed_until=None
        )
        logger.info(f"Scheduled reminder {reminder.id} '{reminder.title}' for {target.isoformat()} ({notification_id})")
        return notification_id

    async def _deduplicate(self, db, report: ReconcileReport) -> None:
        try:
            pending = await self.scheduler.list_scheduled()
        except SchedulerError as e:
            logger.error(f"Could not list notifications for de-duplication: {str(e)}")
            return

        groups: Dict[str, List[tuple]] = defaultdict(list)
        for index, request in enumerate(pending):
            if request.is_test or request.reminder_id is None:
                continue
            groups[request.reminder_id].append((request.created_at, index, request))

        for reminder_id, entries in groups.items():
            if len(entries) < 2:
                continue
            entries.sort(key=lambda entry: (entry[0], entry[1]))
            keep = entries[-1][2]
            for _, _, request in entries[:-1]:
                try:
                    await self.scheduler.cancel(request.identifier)
                    report.deduplicated += 1
                except Exception as e:
                    report.failed += 1
                    logger.error(f"Failed to cancel duplicate {request.identifier}: {str(e)}")
            logger.warning(
                f"Reminder {reminder_id} had {len(entries)} notifications, kept {keep.identifier}"
            )

            record = crud.get_schedule(db, self.user_id, reminder_id, self.device_id)
            if record is not None and record.notification_id != keep.identifier:
                crud.set_schedule_notification(db, record, keep.identifier, keep.trigger_at)

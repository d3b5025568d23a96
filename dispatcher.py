"""Notification response dispatcher.

Routes a user's interaction with a delivered notification:
- diagnostic notifications and responses without a valid reminder id are ignored
- a tap on the notification body opens the reminder
- Complete / Dismiss / Snooze buttons act on the reminder
- quick-action buttons (call, link, location, email) resolve to a URL to open
- anything not fully handled falls back to opening the reminder

Every state change ends with a reconciliation pass so the device schedule
follows the new reminder state.
"""

import math
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import crud
from categories import ACTION_TYPE_BY_PREFIX, PREFIX_COMPLETE, PREFIX_DISMISS, PREFIX_SNOOZE
from config import settings
from device import SchedulerError
from logger_config import setup_logger
from reconciler import ScheduleReconciler
from schemas import (
    ActionType,
    DEFAULT_ACTION_IDENTIFIER,
    DispatchOutcome,
    DispatchResult,
    NotificationContent,
    NotificationResponse,
    PAYLOAD_DEFAULT_SNOOZE_MINUTES,
    PAYLOAD_REMINDER_ID,
    PAYLOAD_REMINDER_UPDATED_AT,
    PAYLOAD_TEST_NOTIFICATION,
    ReminderAction,
    ReminderStatus,
)
from store_client import StoreError

logger = setup_logger(__name__, 'dispatcher.log')

REMINDER_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,64}$')

def normalize_snooze_minutes(value: Any, default: Optional[int] = None) -> int:
    """Whole minutes to snooze: floor of value, at least 1; invalid values give default.

    default falls back to DEFAULT_SNOOZE_MINUTES from settings.

    >>> normalize_snooze_minutes(2.7)
    2
    """
    default = default or settings.DEFAULT_SNOOZE_MINUTES
    if isinstance(value, str):
        value = value.strip()
    try:
        minutes = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(minutes) or minutes <= 0:
        return default
    return max(1, int(math.floor(minutes)))


def _parse_iso(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None


# URL builders per action type; None means the action needs the app itself
def _call_url(action: ReminderAction, platform: str) -> Optional[str]:
    phone = action.value_field('phone')
    return f"tel:{phone}" if phone else None


def _link_url(action: ReminderAction, platform: str) -> Optional[str]:
    return action.value_field('url') or None


def _location_url(action: ReminderAction, platform: str) -> Optional[str]:
    scheme = 'maps:?q=' if platform == 'ios' else 'geo:0,0?q='
    if isinstance(action.action_value, dict):
        lat = action.action_value.get('lat')
        lng = action.action_value.get('lng')
        if lat is not None and lng is not None:
            return f"{scheme}{lat},{lng}"
    address = action.value_field('address')
    if address:
        return f"{scheme}{quote(str(address), safe='')}"
    return None


def _email_url(action: ReminderAction, platform: str) -> Optional[str]:
    email = action.value_field('email')
    if not email:
        return None
    subject = action.value_field('subject') if isinstance(action.action_value, dict) else None
    body = action.value_field('body') if isinstance(action.action_value, dict) else None
    return f"mailto:{email}?subject={quote(subject or '', safe='')}&body={quote(body or '', safe='')}"


def _opens_app(action: ReminderAction, platform: str) -> Optional[str]:
    return None


ACTION_URLS: Dict[ActionType, Callable[[ReminderAction, str], Optional[str]]] = {
    ActionType.CALL: _call_url,
    ActionType.LINK: _link_url,
    ActionType.LOCATION: _location_url,
    ActionType.EMAIL: _email_url,
    ActionType.NOTE: _opens_app,
    ActionType.ASSIGN: _opens_app,
    ActionType.PHOTO: _opens_app,
    ActionType.VOICE: _opens_app,
    ActionType.SUBTASKS: _opens_app,
}

_missing = set(ActionType) - set(ACTION_URLS)
if _missing:
    raise RuntimeError(f"No response handler for action types: {sorted(t.value for t in _missing)}")


def action_url(action: ReminderAction, platform: str) -> Optional[str]:
    """URL that performs a quick action outside the app, if it has one."""
    return ACTION_URLS[action.action_type](action, platform)


class ResponseDispatcher:
    """Turns notification responses into reminder updates and open signals."""

    def __init__(
        self,
        reconciler: ScheduleReconciler,
        platform: Optional[str] = None,
        default_snooze_minutes: Optional[int] = None
    ):
        self.reconciler = reconciler
        self.store = reconciler.store
        self.scheduler = reconciler.scheduler
        self.platform = (platform or settings.PLATFORM).lower()
        self.default_snooze_minutes = default_snooze_minutes or settings.DEFAULT_SNOOZE_MINUTES

    async def handle(self, response: NotificationResponse) -> DispatchResult:
        """Route one notification response."""
        data = response.content.data or {}

        if data.get(PAYLOAD_TEST_NOTIFICATION) is True:
            logger.debug("Ignoring response to diagnostic notification")
            return DispatchResult(outcome=DispatchOutcome.IGNORED)

        reminder_id = data.get(PAYLOAD_REMINDER_ID)
        if not isinstance(reminder_id, str) or not REMINDER_ID_PATTERN.match(reminder_id):
            logger.warning(f"Ignoring response without a valid reminder id: {reminder_id!r}")
            return DispatchResult(outcome=DispatchOutcome.IGNORED)

        if response.action_identifier == DEFAULT_ACTION_IDENTIFIER:
            return DispatchResult(outcome=DispatchOutcome.OPEN, reminder_id=reminder_id)

        try:
            result = await self._handle_action(response, reminder_id)
        except Exception as e:
            logger.error(
                f"Action '{response.action_identifier}' for reminder {reminder_id} failed: {str(e)}",
                exc_info=True
            )
            result = None

        if result is not None:
            return result
        return DispatchResult(outcome=DispatchOutcome.OPEN, reminder_id=reminder_id)

    async def _handle_action(self, response: NotificationResponse, reminder_id: str) -> Optional[DispatchResult]:
        prefix, _, target = response.action_identifier.partition('_')
        if not target:
            logger.warning(f"Unrecognized action identifier '{response.action_identifier}'")
            return None

        if prefix == PREFIX_COMPLETE:
            await self.store.update_reminder(reminder_id, {'status': ReminderStatus.COMPLETED.value})
            await self._dismiss(response)
            logger.info(f"Reminder {reminder_id} completed from notification")
            await self.reconciler.reconcile(trigger="complete")
            return DispatchResult(outcome=DispatchOutcome.COMPLETED, reminder_id=reminder_id)

        if prefix == PREFIX_DISMISS:
            await self._dismiss(response)
            return DispatchResult(outcome=DispatchOutcome.DISMISSED, reminder_id=reminder_id)

        if prefix == PREFIX_SNOOZE:
            requested = response.user_text
            if requested is None or not requested.strip():
                requested = response.content.data.get(PAYLOAD_DEFAULT_SNOOZE_MINUTES)
            result = await self.apply_snooze(reminder_id, requested, content=response.content)
            await self._dismiss(response)
            return result

        action_type = ACTION_TYPE_BY_PREFIX.get(prefix)
        if action_type is None:
            logger.warning(f"Unknown action prefix '{prefix}' for reminder {reminder_id}")
            return None

        actions = await self.store.get_actions(reminder_id)
        action = next(
            (a for a in actions if a.id == target and a.action_type == action_type),
            None
        )
        if action is None:
            logger.warning(f"Action {target} ({action_type.value}) not found for reminder {reminder_id}")
            return None

        url = action_url(action, self.platform)
        if url is None:
            return None
        await self._dismiss(response)
        return DispatchResult(outcome=DispatchOutcome.OPEN_URL, reminder_id=reminder_id, url=url)

    async def _dismiss(self, response: NotificationResponse) -> None:
        if not response.request_identifier:
            return
        try:
            await self.scheduler.dismiss(response.request_identifier)
        except SchedulerError as e:
            logger.warning(f"Could not dismiss notification {response.request_identifier}: {str(e)}")

    async def apply_snooze(
        self,
        reminder_id: str,
        minutes: Any,
        content: Optional[NotificationContent] = None
    ) -> DispatchResult:
        """Snooze a reminder for the given minutes.

        The remote store is updated first (new scheduled time, notified markers
        cleared). If that write fails the notification is moved locally and the
        schedule record marked snoozed so the next sync leaves it alone.

        Raises:
            SchedulerError: If the remote write failed and the local reschedule failed too
        """
        minutes = normalize_snooze_minutes(minutes, self.default_snooze_minutes)
        now = self.reconciler.now()
        snoozed_until = now + timedelta(minutes=minutes)
        local_fallback = False

        try:
            await self.store.update_reminder(reminder_id, {
                'scheduled_time': snoozed_until,
                'notified_at': None,
                'priority_notified_at': None,
                'updated_at': now,
            })
            logger.info(f"Reminder {reminder_id} snoozed for {minutes} minute(s) until {snoozed_until.isoformat()}")
        except StoreError as e:
            logger.warning(f"Snooze of reminder {reminder_id} not saved remotely, rescheduling locally: {str(e)}")
            await self._snooze_locally(reminder_id, snoozed_until, content)
            local_fallback = True

        await self.reconciler.reconcile(trigger="snooze")
        return DispatchResult(
            outcome=DispatchOutcome.SNOOZED,
            reminder_id=reminder_id,
            minutes=minutes,
            snoozed_until=snoozed_until,
            local_fallback=local_fallback
        )

    async def _snooze_locally(
        self,
        reminder_id: str,
        snoozed_until: datetime,
        content: Optional[NotificationContent]
    ) -> None:
        reconciler = self.reconciler
        db = reconciler.session_factory()
        try:
            record = crud.get_schedule(db, reconciler.user_id, reminder_id, reconciler.device_id)
            if content is None:
                content = await self._snooze_template(reminder_id, record)
            content = content.model_copy(deep=True)
            content.data[PAYLOAD_REMINDER_ID] = reminder_id
            # Later passes only hold the snooze if the category still matches
            if content.category_id is None:
                content.category_id = reconciler.mapper.category_for(reminder_id)

            if record is not None:
                await self.scheduler.cancel(record.notification_id)

            notification_id = await self.scheduler.schedule_at(snoozed_until, content)
            updated_at = record.reminder_updated_at if record is not None else None
            if updated_at is None:
                updated_at = _parse_iso(content.data.get(PAYLOAD_REMINDER_UPDATED_AT))
            crud.upsert_schedule(
                db,
                user_id=reconciler.user_id,
                reminder_id=reminder_id,
                device_id=reconciler.device_id,
                notification_id=notification_id,
                scheduled_for=snoozed_until,
                reminder_updated_at=updated_at,
                snoozed_until=snoozed_until
            )
            logger.info(f"Reminder {reminder_id} snoozed locally until {snoozed_until.isoformat()} ({notification_id})")
        finally:
            db.close()

    async def _snooze_template(self, reminder_id: str, record) -> NotificationContent:
        """Content of the reminder's pending notification, or a minimal stand-in."""
        pending = await self.scheduler.list_scheduled()
        if record is not None:
            match = next((r for r in pending if r.identifier == record.notification_id), None)
        else:
            match = None
        if match is None:
            candidates = [r for r in pending if r.reminder_id == reminder_id]
            match = candidates[-1] if candidates else None
        if match is not None:
            return match.content

        return NotificationContent(
            title='Reminder',
            body=self.reconciler.default_body,
            data={PAYLOAD_REMINDER_ID: reminder_id},
            category_id=self.reconciler.mapper.category_for(reminder_id)
        )

"""Pydantic schemas for the notification sync service.

This module defines the records read from the remote reminder store, the
notification descriptors exchanged with the device scheduler, and the
results returned by the reconciler, dispatcher and token registrar.
IMPORTANT: every datetime is normalized to a timezone-aware UTC datetime.
"""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


# Payload keys attached to every scheduled notification
PAYLOAD_REMINDER_ID = "reminderId"
PAYLOAD_TITLE = "title"
PAYLOAD_BODY = "body"
PAYLOAD_ORIGINAL_TIME = "originalTime"
PAYLOAD_REMINDER_UPDATED_AT = "reminderUpdatedAt"
PAYLOAD_DEFAULT_SNOOZE_MINUTES = "defaultSnoozeMinutes"
PAYLOAD_IS_PRIORITY = "isPriority"
PAYLOAD_ACTION_TYPES = "actionTypes"
PAYLOAD_TEST_NOTIFICATION = "testNotification"
PAYLOAD_TYPE = "type"

# Data-only push asking this device to resync its schedule
RESYNC_PUSH_TYPE = "resync"

# Action identifier reported when the user taps the notification body
DEFAULT_ACTION_IDENTIFIER = "default"


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return value as an aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ReminderStatus(str, Enum):
    """Status values for reminders"""
    COMPLETED = "completed"
    CURRENT = "current"
    UPCOMING = "upcoming"
    FUTURE = "future"
    PLACEHOLDER = "placeholder"


class ActionType(str, Enum):
    """Closed set of quick actions a reminder can carry"""
    CALL = "call"
    LINK = "link"
    LOCATION = "location"
    EMAIL = "email"
    NOTE = "note"
    ASSIGN = "assign"
    PHOTO = "photo"
    VOICE = "voice"
    SUBTASKS = "subtasks"


class TokenType(str, Enum):
    """Delivery mechanism behind a device token"""
    EXPO = "expo"
    FCM = "fcm"


class PermissionStatus(str, Enum):
    """Notification permission state reported by the device"""
    GRANTED = "granted"
    DENIED = "denied"
    UNDETERMINED = "undetermined"


class Reminder(BaseModel):
    """Reminder record as stored in the remote reminder store."""

    id: str = Field(..., description="Stable reminder identifier")
    user_id: Optional[str] = Field(None, description="Owning user")
    title: str = Field(..., description="Reminder title")
    description: Optional[str] = Field(None, description="Optional detailed description")
    scheduled_time: datetime = Field(..., description="When the reminder is due")
    status: ReminderStatus = Field(ReminderStatus.UPCOMING, description="Current status")
    notify_before_minutes: int = Field(0, ge=0, description="Minutes before scheduled_time to notify")
    is_priority: bool = Field(False, description="Priority reminders get an extra heads-up")
    recurring_rule_id: Optional[str] = Field(None, description="Recurring rule reference")
    notified_at: Optional[datetime] = Field(None, description="Last notification marker")
    priority_notified_at: Optional[datetime] = Field(None, description="Last priority notification marker")
    updated_at: Optional[datetime] = Field(None, description="Last-mutation marker (absent on legacy rows)")

    @field_validator("notify_before_minutes", mode="before")
    @classmethod
    def _default_notify_before(cls, value):
        return 0 if value is None else value

    @field_validator("scheduled_time", "notified_at", "priority_notified_at", "updated_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)


class ReminderAction(BaseModel):
    """Quick action attached to a reminder (read-only for this service)."""

    id: str = Field(..., description="Action identifier")
    reminder_id: str = Field(..., description="Parent reminder")
    action_type: ActionType = Field(..., description="Kind of action")
    action_value: Union[Dict[str, Any], str] = Field(
        default_factory=dict,
        description="Type-specific payload, e.g. {'phone': ...} or {'url': ...}"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _default_metadata(cls, value):
        return value or {}

    def value_field(self, key: str) -> Optional[Any]:
        """Read key from a mapping payload, or the bare payload when it is a string."""
        if isinstance(self.action_value, dict):
            return self.action_value.get(key)
        return self.action_value or None


class UserPreferences(BaseModel):
    """Snooze preferences read from the user's preference row."""

    user_id: Optional[str] = None
    default_snooze_minutes: int = 10
    snooze_mode: str = Field("text_input", pattern="^(text_input|presets)$")
    snooze_preset_values: List[int] = Field(default_factory=lambda: [10, 15, 30])
    show_snooze_button: bool = True

    @field_validator("snooze_preset_values", mode="before")
    @classmethod
    def _default_presets(cls, value):
        return [10, 15, 30] if value is None else value

    @field_validator("show_snooze_button", mode="before")
    @classmethod
    def _default_show_snooze(cls, value):
        return True if value is None else value


class SnoozeConfig(BaseModel):
    """Snooze settings baked into a notification category."""

    model_config = {"frozen": True}

    minutes: int = Field(15, ge=1)
    enabled: bool = True


class CategoryButton(BaseModel):
    """One selectable button of a notification category."""

    identifier: str
    title: str
    opens_app: bool = False
    destructive: bool = False


class NotificationCategory(BaseModel):
    """Platform notification category: an identifier plus its buttons."""

    identifier: str = Field(..., pattern=r"^[A-Za-z0-9_]+$")
    buttons: List[CategoryButton] = Field(default_factory=list)


class NotificationContent(BaseModel):
    """Content handed to the device scheduler."""

    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)
    category_id: Optional[str] = None
    sound: Optional[str] = "default"


class NotificationRequest(BaseModel):
    """A notification currently scheduled on the device."""

    identifier: str
    content: NotificationContent
    trigger_at: datetime
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("trigger_at", "created_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)

    @property
    def reminder_id(self) -> Optional[str]:
        value = self.content.data.get(PAYLOAD_REMINDER_ID)
        return value if isinstance(value, str) and value else None

    @property
    def is_test(self) -> bool:
        return self.content.data.get(PAYLOAD_TEST_NOTIFICATION) is True


class NotificationResponse(BaseModel):
    """A user's interaction with a delivered notification."""

    action_identifier: str = Field(DEFAULT_ACTION_IDENTIFIER, description="Tapped button, or the default tap")
    request_identifier: Optional[str] = Field(None, description="Identifier of the delivered notification")
    content: NotificationContent
    user_text: Optional[str] = Field(None, description="Text typed into a text-input button (snooze minutes)")


class DispatchOutcome(str, Enum):
    """What the dispatcher did with a notification response"""
    IGNORED = "ignored"
    OPEN = "open"
    COMPLETED = "completed"
    DISMISSED = "dismissed"
    SNOOZED = "snoozed"
    OPEN_URL = "open_url"


class DispatchResult(BaseModel):
    """Signal returned to the caller after dispatching a response."""

    outcome: DispatchOutcome
    reminder_id: Optional[str] = None
    url: Optional[str] = None
    minutes: Optional[int] = None
    snoozed_until: Optional[datetime] = None
    local_fallback: bool = False


class TokenRegistration(BaseModel):
    """Delivery token obtained from the device."""

    token: str
    token_type: TokenType


class ReconcileReport(BaseModel):
    """Counters describing one reconciliation pass."""

    trigger: str
    started_at: datetime
    aborted: bool = False
    reminders: int = 0
    scheduled: int = 0
    refreshed: int = 0
    held: int = 0
    removed: int = 0
    orphaned: int = 0
    deduplicated: int = 0
    failed: int = 0

    @property
    def changes(self) -> int:
        """Number of schedule/cancel operations the pass issued."""
        return self.scheduled + self.refreshed + self.removed + self.orphaned + self.deduplicated


class ScheduleRecordResponse(BaseModel):
    """Persisted schedule record as returned by the API."""

    user_id: str
    reminder_id: str
    device_id: str
    notification_id: str
    scheduled_for: datetime
    reminder_updated_at: Optional[datetime] = None
    snoozed_until: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        """Pydantic configuration"""
        from_attributes = True  # Enable ORM mode for SQLAlchemy models

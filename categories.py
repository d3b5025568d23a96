"""Action-to-category mapping.

Turns a reminder's quick actions into a notification category: up to two
quick-action buttons, an optional Snooze button and a Complete button.
Category identifiers are derived deterministically from the reminder id,
the sorted actionable action types and the snooze configuration, so the
reconciler can compare them to decide whether a scheduled notification is
still current. Identifiers only contain [A-Za-z0-9_].
"""

import re
from typing import Dict, Iterable, List, NamedTuple, Optional, Set

from config import settings
from device import NotificationScheduler
from logger_config import setup_logger
from schemas import (
    ActionType,
    CategoryButton,
    NotificationCategory,
    ReminderAction,
    SnoozeConfig,
    UserPreferences,
)

logger = setup_logger(__name__, 'categories.log')

PREFIX_COMPLETE = 'complete'
PREFIX_SNOOZE = 'snooze'
PREFIX_DISMISS = 'dismiss'

MAX_QUICK_ACTIONS = 2


class ActionButton(NamedTuple):
    prefix: str
    title: str
    opens_app: bool
    actionable: bool  # can run straight from the notification


ACTION_BUTTONS: Dict[ActionType, ActionButton] = {
    ActionType.CALL: ActionButton('call', 'Call', False, True),
    ActionType.LINK: ActionButton('link', 'Open', False, True),
    ActionType.LOCATION: ActionButton('location', 'Navigate', False, True),
    ActionType.EMAIL: ActionButton('email', 'Email', False, True),
    ActionType.NOTE: ActionButton('note', 'Note', True, False),
    ActionType.ASSIGN: ActionButton('assign', 'Assign', True, False),
    ActionType.PHOTO: ActionButton('photo', 'Photo', True, False),
    ActionType.VOICE: ActionButton('voice', 'Voice', True, False),
    ActionType.SUBTASKS: ActionButton('subtasks', 'Tasks', True, False),
}

_missing = set(ActionType) - set(ACTION_BUTTONS)
if _missing:
    raise RuntimeError(f"No notification button defined for action types: {sorted(t.value for t in _missing)}")

ACTION_TYPE_BY_PREFIX: Dict[str, ActionType] = {
    button.prefix: action_type for action_type, button in ACTION_BUTTONS.items()
}

_DISALLOWED = re.compile(r'[^A-Za-z0-9_]')


def sanitize_identifier(value: str) -> str:
    """Strip characters the device rejects in identifiers (hyphens, colons, ...)."""
    return _DISALLOWED.sub('', value)


def actionable_actions(actions: Iterable[ReminderAction]) -> List[ReminderAction]:
    return [a for a in actions if ACTION_BUTTONS[a.action_type].actionable]


def snooze_config_from_preferences(
    preferences: Optional[UserPreferences],
    default_minutes: Optional[int] = None
) -> SnoozeConfig:
    """Snooze configuration for a user; missing or invalid minutes use the default."""
    default_minutes = default_minutes or settings.DEFAULT_SNOOZE_MINUTES
    if preferences is None:
        return SnoozeConfig(minutes=default_minutes, enabled=True)
    minutes = preferences.default_snooze_minutes
    if not minutes or minutes < 1:
        minutes = default_minutes
    return SnoozeConfig(minutes=minutes, enabled=preferences.show_snooze_button)


def derive_category_id(
    reminder_id: str,
    actions: Iterable[ReminderAction],
    snooze: SnoozeConfig
) -> str:
    """Deterministic category identifier for a reminder's actions and snooze setup.

    Example: reminder_3f2a..._call_link_snooze15
    """
    action_types = sorted({a.action_type.value for a in actionable_actions(actions)})
    snooze_part = f"snooze{snooze.minutes}" if snooze.enabled else "nosnooze"
    parts = ['reminder', sanitize_identifier(reminder_id)] + action_types + [snooze_part]
    return '_'.join(part for part in parts if part)


def snooze_label(minutes: int) -> str:
    if minutes >= 60 and minutes % 60 == 0:
        return f"Snooze {minutes // 60}h"
    return f"Snooze {minutes}m"


def build_category(
    reminder_id: str,
    actions: Iterable[ReminderAction],
    snooze: SnoozeConfig
) -> NotificationCategory:
    """Category descriptor: quick actions first, then Snooze, then Complete."""
    actions = list(actions)
    buttons = []

    for action in actionable_actions(actions)[:MAX_QUICK_ACTIONS]:
        button = ACTION_BUTTONS[action.action_type]
        buttons.append(CategoryButton(
            identifier=f"{button.prefix}_{action.id}",
            title=button.title,
            opens_app=button.opens_app
        ))

    if snooze.enabled:
        buttons.append(CategoryButton(
            identifier=f"{PREFIX_SNOOZE}_{reminder_id}",
            title=snooze_label(snooze.minutes)
        ))

    # Complete is always last
    buttons.append(CategoryButton(
        identifier=f"{PREFIX_COMPLETE}_{reminder_id}",
        title='Complete',
        destructive=True
    ))

    return NotificationCategory(
        identifier=derive_category_id(reminder_id, actions, snooze),
        buttons=buttons
    )


class CategoryMapper:
    """Registers categories with the device scheduler, once per identifier.

    A category is registered again only when its buttons change (an action
    replaced by another of the same type keeps the identifier). Categories the
    device already holds are loaded once, so a restart does not make every
    scheduled notification look stale.
    """

    def __init__(self, scheduler: NotificationScheduler):
        self.scheduler = scheduler
        self._registered: Dict[str, NotificationCategory] = {}
        self._failed: Set[str] = set()
        self._by_reminder: Dict[str, Optional[str]] = {}
        self._loaded = False

    async def load_registered(self) -> None:
        """Adopt the categories the device already has (first call only)."""
        if self._loaded:
            return
        try:
            categories = await self.scheduler.list_categories()
        except Exception as e:
            logger.warning(f"Could not list registered categories: {str(e)}")
            return
        for category in categories:
            self._registered.setdefault(category.identifier, category)
        self._loaded = True
        logger.debug(f"Loaded {len(categories)} registered categories")

    def category_for(self, reminder_id: str) -> Optional[str]:
        """Category last attached to the reminder's notification by this mapper."""
        return self._by_reminder.get(reminder_id)

    def is_recognized(self, category_id: Optional[str]) -> bool:
        return bool(category_id) and category_id in self._registered

    def expected_category_id(
        self,
        reminder_id: str,
        actions: Iterable[ReminderAction],
        snooze: SnoozeConfig
    ) -> Optional[str]:
        """Category a current notification for this reminder should carry.

        None when registering the derived identifier last failed, since the
        notification was then scheduled without a category.
        """
        category_id = derive_category_id(reminder_id, actions, snooze)
        if category_id in self._failed:
            return None
        return category_id

    def matches(self, scheduled_category_id: Optional[str], expected_category_id: Optional[str]) -> bool:
        """True when a scheduled notification carries the expected, known category."""
        if scheduled_category_id != expected_category_id:
            return False
        return expected_category_id is None or self.is_recognized(expected_category_id)

    async def ensure_category_registered(
        self,
        reminder_id: str,
        actions: Iterable[ReminderAction],
        snooze: SnoozeConfig
    ) -> Optional[str]:
        """Register the reminder's category if needed.

        Returns:
            The category identifier, or None if the device rejected it
        """
        category = build_category(reminder_id, actions, snooze)
        if self._registered.get(category.identifier) == category:
            self._by_reminder[reminder_id] = category.identifier
            return category.identifier

        try:
            await self.scheduler.register_category(category)
        except Exception as e:
            logger.warning(
                f"Category {category.identifier} for reminder {reminder_id} not registered, "
                f"scheduling without buttons: {str(e)}"
            )
            self._failed.add(category.identifier)
            self._by_reminder[reminder_id] = None
            return None

        self._failed.discard(category.identifier)
        self._registered[category.identifier] = category
        self._by_reminder[reminder_id] = category.identifier
        logger.info(
            f"Registered category {category.identifier} with buttons "
            f"{[b.identifier for b in category.buttons]}"
        )
        return category.identifier

"""Device notification capabilities.

NotificationScheduler is the device-local scheduler (schedule, cancel, list,
categories, response events) and DeviceEnvironment the permission / token
side of the device. The Local* implementations keep everything in process:
LocalNotificationScheduler delivers due notifications when deliver_due() runs,
which the background worker does every DELIVERY_INTERVAL seconds.
"""

import asyncio
import inspect
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from config import settings
from logger_config import setup_logger
from schemas import (
    NotificationCategory,
    NotificationContent,
    NotificationRequest,
    NotificationResponse,
    PermissionStatus,
)

logger = setup_logger(__name__, 'device.log')

ResponseListener = Callable[[NotificationResponse], Any]
ReceivedListener = Callable[[NotificationRequest], Any]


class SchedulerError(Exception):
    """Raised when the device scheduler rejects an operation."""


class DeviceError(Exception):
    """Raised when the device cannot provide a permission or token."""


class NotificationScheduler(ABC):
    """Device-local notification scheduler."""

    @abstractmethod
    async def schedule_at(self, when: datetime, content: NotificationContent) -> str:
        """Schedule content to fire at when; returns the notification identifier."""

    @abstractmethod
    async def cancel(self, notification_id: str) -> None:
        """Cancel a scheduled notification (no-op for unknown identifiers)."""

    @abstractmethod
    async def dismiss(self, notification_id: str) -> None:
        """Remove a delivered notification from the notification list."""

    @abstractmethod
    async def list_scheduled(self) -> List[NotificationRequest]:
        """All pending notifications, in creation order."""

    @abstractmethod
    async def register_category(self, category: NotificationCategory) -> None:
        """Create or replace a notification category."""

    @abstractmethod
    async def list_categories(self) -> List[NotificationCategory]:
        """Categories currently registered with the device."""

    @abstractmethod
    def on_response(self, listener: ResponseListener) -> None:
        """Register a listener for notification responses."""

    @abstractmethod
    def on_received(self, listener: ReceivedListener) -> None:
        """Register a listener for delivered notifications."""


class DeviceEnvironment(ABC):
    """Permission and token capabilities of the device."""

    platform: str
    device_id: str
    is_physical_device: bool

    @abstractmethod
    async def get_permission_status(self) -> PermissionStatus:
        """Current notification permission."""

    @abstractmethod
    async def request_permission(self) -> PermissionStatus:
        """Prompt for notification permission."""

    @abstractmethod
    async def ensure_channel(self, channel_id: str, name: str) -> None:
        """Create the notification channel (Android)."""

    @abstractmethod
    async def get_device_push_token(self) -> str:
        """Native push token (FCM on Android)."""

    @abstractmethod
    async def get_expo_push_token(self, project_id: str) -> str:
        """Expo push token for the given project."""


async def _notify(listeners: List[Callable], event: Any) -> List[Any]:
    results = []
    for listener in listeners:
        result = listener(event)
        if inspect.isawaitable(result):
            result = await result
        results.append(result)
    return results


class LocalNotificationScheduler(NotificationScheduler):
    """In-process scheduler holding pending notifications in memory."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pending: Dict[str, NotificationRequest] = {}
        self._presented: Dict[str, NotificationRequest] = {}
        self._categories: Dict[str, NotificationCategory] = {}
        self._response_listeners: List[ResponseListener] = []
        self._received_listeners: List[ReceivedListener] = []
        self._lock = asyncio.Lock()

    async def schedule_at(self, when: datetime, content: NotificationContent) -> str:
        if content.category_id and content.category_id not in self._categories:
            logger.warning(f"Scheduling with unregistered category {content.category_id}")
        identifier = str(uuid.uuid4())
        request = NotificationRequest(
            identifier=identifier,
            content=content.model_copy(deep=True),
            trigger_at=when,
            created_at=self._clock()
        )
        async with self._lock:
            self._pending[identifier] = request
        logger.debug(f"Scheduled {identifier} for {request.trigger_at.isoformat()}")
        return identifier

    async def cancel(self, notification_id: str) -> None:
        async with self._lock:
            self._pending.pop(notification_id, None)

    async def dismiss(self, notification_id: str) -> None:
        async with self._lock:
            self._presented.pop(notification_id, None)

    async def list_scheduled(self) -> List[NotificationRequest]:
        async with self._lock:
            return list(self._pending.values())

    async def register_category(self, category: NotificationCategory) -> None:
        self._categories[category.identifier] = category.model_copy(deep=True)

    async def list_categories(self) -> List[NotificationCategory]:
        return [c.model_copy(deep=True) for c in self._categories.values()]

    def get_category(self, identifier: str) -> Optional[NotificationCategory]:
        return self._categories.get(identifier)

    def on_response(self, listener: ResponseListener) -> None:
        self._response_listeners.append(listener)

    def on_received(self, listener: ReceivedListener) -> None:
        self._received_listeners.append(listener)

    @property
    def presented(self) -> List[NotificationRequest]:
        return list(self._presented.values())

    async def deliver_due(self, now: Optional[datetime] = None) -> List[NotificationRequest]:
        """Move every notification whose trigger has passed to the presented list."""
        now = now or self._clock()
        async with self._lock:
            due = [r for r in self._pending.values() if r.trigger_at <= now]
            for request in due:
                del self._pending[request.identifier]
                self._presented[request.identifier] = request
        for request in due:
            logger.info(f"Delivered '{request.content.title}' ({request.identifier})")
            await _notify(self._received_listeners, request)
        return due

    async def receive(self, content: NotificationContent) -> List[Any]:
        """Deliver a push that arrived from outside (no local schedule).

        Returns:
            The received listeners' results
        """
        request = NotificationRequest(
            identifier=str(uuid.uuid4()),
            content=content.model_copy(deep=True),
            trigger_at=self._clock(),
            created_at=self._clock()
        )
        logger.info(f"Received push ({request.identifier}) with data keys {sorted(request.content.data)}")
        return await _notify(self._received_listeners, request)

    async def respond(self, response: NotificationResponse) -> List[Any]:
        """Emit a user response to the registered listeners and return their results."""
        return await _notify(self._response_listeners, response)


class LocalDevice(DeviceEnvironment):
    """Device environment configured from settings."""

    def __init__(
        self,
        platform: Optional[str] = None,
        device_id: Optional[str] = None,
        is_physical_device: Optional[bool] = None,
        push_token: Optional[str] = None,
        grant_permission: bool = True,
        permission: PermissionStatus = PermissionStatus.UNDETERMINED
    ):
        self.platform = (platform or settings.PLATFORM).lower()
        self.device_id = device_id or settings.DEVICE_ID
        self.is_physical_device = (
            settings.IS_PHYSICAL_DEVICE if is_physical_device is None else is_physical_device
        )
        self.push_token = push_token if push_token is not None else settings.DEVICE_PUSH_TOKEN
        self.grant_permission = grant_permission
        self.permission = permission
        self.channels: Dict[str, str] = {}

    async def get_permission_status(self) -> PermissionStatus:
        return self.permission

    async def request_permission(self) -> PermissionStatus:
        if self.permission == PermissionStatus.UNDETERMINED:
            self.permission = PermissionStatus.GRANTED if self.grant_permission else PermissionStatus.DENIED
        return self.permission

    async def ensure_channel(self, channel_id: str, name: str) -> None:
        self.channels[channel_id] = name

    async def get_device_push_token(self) -> str:
        if not self.push_token:
            raise DeviceError("No device push token configured")
        return self.push_token

    async def get_expo_push_token(self, project_id: str) -> str:
        if not self.push_token:
            raise DeviceError(f"No push token available for project {project_id}")
        return self.push_token

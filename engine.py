"""Wiring of the sync components for one user on one device."""

from dataclasses import dataclass
from typing import Callable, Optional

import database
from categories import CategoryMapper
from config import Settings, settings as default_settings
from device import DeviceEnvironment, LocalDevice, LocalNotificationScheduler, NotificationScheduler
from dispatcher import ResponseDispatcher
from reconciler import ScheduleReconciler
from store_client import ReminderStore, RestReminderStore
from token_registrar import TokenRegistrar


@dataclass
class NotificationEngine:
    store: ReminderStore
    scheduler: NotificationScheduler
    device: DeviceEnvironment
    mapper: CategoryMapper
    reconciler: ScheduleReconciler
    dispatcher: ResponseDispatcher
    registrar: TokenRegistrar


def build_engine(
    settings: Optional[Settings] = None,
    store: Optional[ReminderStore] = None,
    scheduler: Optional[NotificationScheduler] = None,
    device: Optional[DeviceEnvironment] = None,
    session_factory: Optional[Callable] = None
) -> NotificationEngine:
    """Build the engine; any collaborator not given is created from settings."""
    settings = settings or default_settings
    store = store or RestReminderStore(
        base_url=settings.STORE_URL,
        api_key=settings.STORE_API_KEY,
        access_token=settings.STORE_ACCESS_TOKEN,
        timeout=settings.STORE_TIMEOUT,
        poll_interval=settings.CHANGE_POLL_INTERVAL
    )
    scheduler = scheduler or LocalNotificationScheduler()
    device = device or LocalDevice(
        platform=settings.PLATFORM,
        device_id=settings.DEVICE_ID,
        is_physical_device=settings.IS_PHYSICAL_DEVICE,
        push_token=settings.DEVICE_PUSH_TOKEN
    )
    mapper = CategoryMapper(scheduler)
    reconciler = ScheduleReconciler(
        store=store,
        scheduler=scheduler,
        mapper=mapper,
        user_id=settings.USER_ID,
        device_id=device.device_id,
        session_factory=session_factory or database.SessionLocal,
        hold_tolerance_seconds=settings.HOLD_TOLERANCE_SECONDS,
        default_snooze_minutes=settings.DEFAULT_SNOOZE_MINUTES,
        default_body=settings.DEFAULT_NOTIFICATION_BODY
    )
    dispatcher = ResponseDispatcher(
        reconciler,
        platform=device.platform,
        default_snooze_minutes=settings.DEFAULT_SNOOZE_MINUTES
    )
    scheduler.on_response(dispatcher.handle)
    scheduler.on_received(reconciler.handle_received)
    registrar = TokenRegistrar(device, store, settings.USER_ID, project_id=settings.EXPO_PROJECT_ID)

    return NotificationEngine(
        store=store,
        scheduler=scheduler,
        device=device,
        mapper=mapper,
        reconciler=reconciler,
        dispatcher=dispatcher,
        registrar=registrar
    )

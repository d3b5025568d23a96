"""CRUD operations for notification schedule records.

This module provides database operations for the per-device schedule table.
IMPORTANT: records are keyed by (user_id, reminder_id, device_id); writes go
through upsert_schedule so retries never produce a second row.
"""

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import List, Optional
import uuid
from datetime import datetime, timezone

from database import NotificationSchedule
from logger_config import setup_logger

logger = setup_logger(__name__, 'crud.log')


def get_schedules_for_device(db: Session, user_id: str, device_id: str) -> List[NotificationSchedule]:
    """Get all schedule records for a user on one device.

    Args:
        db: Database session
        user_id: Owning user
        device_id: Device identifier

    Returns:
        List[NotificationSchedule]: Records ordered by fire time
    """
    return db.query(NotificationSchedule).filter(
        NotificationSchedule.user_id == user_id,
        NotificationSchedule.device_id == device_id
    ).order_by(NotificationSchedule.scheduled_for).all()


def get_schedule(
    db: Session,
    user_id: str,
    reminder_id: str,
    device_id: str
) -> Optional[NotificationSchedule]:
    """Get the schedule record for one reminder on one device."""
    return db.query(NotificationSchedule).filter(
        NotificationSchedule.user_id == user_id,
        NotificationSchedule.reminder_id == reminder_id,
        NotificationSchedule.device_id == device_id
    ).first()


def upsert_schedule(
    db: Session,
    user_id: str,
    reminder_id: str,
    device_id: str,
    notification_id: str,
    scheduled_for: datetime,
    reminder_updated_at: Optional[datetime] = None,
    snoozed_until: Optional[datetime] = None
) -> NotificationSchedule:
    """Insert or overwrite the schedule record for (user, reminder, device).

    Args:
        db: Database session
        user_id: Owning user
        reminder_id: Reminder the notification belongs to
        device_id: Device identifier
        notification_id: Scheduler handle of the live notification
        scheduled_for: When the notification fires (datetime object)
        reminder_updated_at: Reminder's updated_at snapshot
        snoozed_until: Active snooze override, if any

    Returns:
        NotificationSchedule: The single record for the composite key

    Raises:
        SQLAlchemyError: On database errors
    """
    now = datetime.now(timezone.utc)
    values = {
        'notification_id': notification_id,
        'scheduled_for': scheduled_for,
        'reminder_updated_at': reminder_updated_at,
        'snoozed_until': snoozed_until,
        'updated_at': now,
    }

    schedule = get_schedule(db, user_id, reminder_id, device_id)
    if schedule is None:
        schedule = NotificationSchedule(
            id=str(uuid.uuid4()),
            user_id=user_id,
            reminder_id=reminder_id,
            device_id=device_id,
            created_at=now,
            **values
        )
        db.add(schedule)
        try:
            db.commit()
        except IntegrityError:
            # Another writer inserted the same key first: overwrite theirs
            db.rollback()
            logger.warning(f"Schedule for reminder {reminder_id} inserted concurrently, overwriting")
            schedule = get_schedule(db, user_id, reminder_id, device_id)
            for key, value in values.items():
                setattr(schedule, key, value)
            db.commit()
    else:
        for key, value in values.items():
            setattr(schedule, key, value)
        db.commit()

    db.refresh(schedule)
    return schedule


def set_schedule_notification(
    db: Session,
    schedule: NotificationSchedule,
    notification_id: str,
    scheduled_for: Optional[datetime] = None
) -> NotificationSchedule:
    """Point an existing record at a different live notification."""
    schedule.notification_id = notification_id
    if scheduled_for is not None:
        schedule.scheduled_for = scheduled_for
    schedule.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(schedule)
    return schedule


def delete_schedule(db: Session, user_id: str, reminder_id: str, device_id: str) -> bool:
    """Delete the schedule record for one reminder on one device.

    Returns:
        bool: True if deleted, False if not found
    """
    schedule = get_schedule(db, user_id, reminder_id, device_id)
    if not schedule:
        return False

    db.delete(schedule)
    db.commit()
    return True

"""Database module for the notification sync service.

This module defines the SQLAlchemy model for device notification schedule
records and database session management.
IMPORTANT: all DateTime columns round-trip as timezone-aware UTC datetimes.
"""

from sqlalchemy import create_engine, Column, String, DateTime, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.types import TypeDecorator
from datetime import timezone

from config import settings

# SQLAlchemy Base
Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """DateTime stored as naive UTC and loaded back as aware UTC.

    SQLite drops tzinfo on read; comparing the loaded value against
    aware datetimes would otherwise raise TypeError.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class NotificationSchedule(Base):
    """Schedule record - links a reminder to the device notification scheduled for it.

    CRITICAL: at most one row per (user_id, reminder_id, device_id).
    The reconciler is the only regular writer; the snooze fallback also upserts.
    """

    __tablename__ = "notification_schedules"

    # Primary Key
    id = Column(String, primary_key=True, doc="Row ID (UUID)")

    # Composite identity
    user_id = Column(String, nullable=False, doc="Owning user")
    reminder_id = Column(String, nullable=False, doc="Reminder the notification is for")
    device_id = Column(String, nullable=False, doc="Device holding the notification")

    # Scheduler handle and schedule
    notification_id = Column(String, nullable=False, doc="Device scheduler's notification identifier")
    scheduled_for = Column(UTCDateTime, nullable=False, doc="When the notification fires")
    reminder_updated_at = Column(
        UTCDateTime,
        nullable=True,
        doc="Snapshot of the reminder's updated_at when scheduled (staleness check)"
    )
    snoozed_until = Column(UTCDateTime, nullable=True, doc="Active snooze override")

    # Timestamps
    created_at = Column(UTCDateTime, nullable=False, doc="When the record was created")
    updated_at = Column(UTCDateTime, nullable=False, doc="When the record was last written")

    __table_args__ = (
        UniqueConstraint('user_id', 'reminder_id', 'device_id', name='uq_schedule_user_reminder_device'),
        Index('idx_notification_schedules_user_device', 'user_id', 'device_id'),
    )

    def __repr__(self):
        """String representation"""
        return (
            f"<NotificationSchedule(reminder={self.reminder_id}, device={self.device_id}, "
            f"notification={self.notification_id}, for={self.scheduled_for})>"
        )


# Database Engine Setup
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if "sqlite" in settings.DATABASE_URL else {},
    echo=False  # Set to True for SQL debugging
)

# Session Factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    """Create tables on the given engine (defaults to the configured one)."""
    Base.metadata.create_all(bind=bind or engine)


# Create all tables
init_db()

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, List, Optional

from sqlmodel import Field, Session, SQLModel, select

from .time_utils import ensure_tz, get_now, to_utc


logger = logging.getLogger(__name__)

MAX_LISTED = 10
REMINDER_WINDOW = timedelta(minutes=30)


class NotificationType(str, Enum):
    EventReminder = "event_reminder"
    SharedCalendar = "shared_calendar"
    NewEvent = "new_event"


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    title: str
    message: str
    type: NotificationType
    event_id: Optional[int] = None
    read: bool = False
    created_at: datetime = Field(default_factory=get_now)


class NotificationStore:
    """CRUD helper for :class:`Notification` objects.

    Notifications are only ever created or marked read; nothing deletes them.
    """

    def __init__(self, engine, feed=None):
        self.engine = engine
        self.feed = feed

    def _changed(self) -> None:
        if self.feed is not None:
            self.feed.publish("notifications")

    def create(
        self,
        user_id: str,
        title: str,
        message: str,
        type: NotificationType,
        event_id: Optional[int] = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            type=type,
            event_id=event_id,
        )
        with Session(self.engine) as session:
            session.add(notification)
            session.commit()
            session.refresh(notification)
        notification.created_at = ensure_tz(notification.created_at)
        self._changed()
        return notification

    def create_event_reminder(self, event, user_id: str) -> Notification:
        return self.create(
            user_id,
            "Upcoming Event Reminder",
            f'Your event "{event.title}" is coming up soon.',
            NotificationType.EventReminder,
            event_id=event.id,
        )

    def create_shared_calendar(
        self, shared_by: str, user_id: str, calendar_name: str
    ) -> Notification:
        return self.create(
            user_id,
            "Calendar Shared With You",
            f'{shared_by} has shared their "{calendar_name}" calendar with you.',
            NotificationType.SharedCalendar,
        )

    def create_new_event(self, event, user_id: str) -> Notification:
        return self.create(
            user_id,
            "New Event Added",
            f'A new event "{event.title}" has been added to your calendar.',
            NotificationType.NewEvent,
            event_id=event.id,
        )

    def get(self, notification_id: int) -> Optional[Notification]:
        with Session(self.engine) as session:
            notification = session.get(Notification, notification_id)
            if notification:
                notification.created_at = ensure_tz(notification.created_at)
            return notification

    def list_for_user(self, user_id: str, limit: Optional[int] = MAX_LISTED) -> List[Notification]:
        """Return ``user_id``'s notifications, newest first."""
        with Session(self.engine) as session:
            notifications = session.exec(
                select(Notification).where(Notification.user_id == user_id)
            ).all()
        for n in notifications:
            n.created_at = ensure_tz(n.created_at)
        notifications = sorted(
            notifications, key=lambda n: (n.created_at, n.id), reverse=True
        )
        if limit is not None:
            notifications = notifications[:limit]
        return notifications

    def mark_read(self, notification_id: int, user_id: str) -> bool:
        with Session(self.engine) as session:
            notification = session.get(Notification, notification_id)
            if not notification or notification.user_id != user_id:
                return False
            notification.read = True
            session.add(notification)
            session.commit()
        self._changed()
        return True

    def mark_all_read(self, user_id: str) -> int:
        with Session(self.engine) as session:
            unread = session.exec(
                select(Notification).where(
                    (Notification.user_id == user_id) & (Notification.read == False)  # noqa: E712
                )
            ).all()
            for notification in unread:
                notification.read = True
                session.add(notification)
            session.commit()
            updated = len(unread)
        if updated:
            self._changed()
        return updated


def due_for_reminder(
    events: Iterable, now: Optional[datetime] = None, window: timedelta = REMINDER_WINDOW
) -> list:
    """Return the events that start after ``now`` but before ``now + window``."""
    if now is None:
        now = get_now()
    now = to_utc(now)
    horizon = now + window
    return [e for e in events if now < to_utc(e.start) < horizon]


def emit_reminders(
    store: NotificationStore,
    user_id: str,
    events: Iterable,
    now: Optional[datetime] = None,
) -> List[Notification]:
    """Create one reminder per event currently inside the reminder window.

    No record is kept of reminders already sent, so evaluating the same
    upcoming event again creates another reminder.
    """
    created = []
    for event in due_for_reminder(events, now):
        created.append(store.create_event_reminder(event, user_id))
        logger.info("Reminder for event %s sent to %s", event.id, user_id)
    return created

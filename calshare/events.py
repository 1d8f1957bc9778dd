from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional

from sqlmodel import Column, Field, Session, SQLModel, select
from sqlalchemy import JSON, ForeignKey, Integer

from .calendar import Calendar, is_valid_email, normalize_email
from .time_utils import ensure_tz, get_now, hour_offset, local_date, to_utc


logger = logging.getLogger(__name__)

DEFAULT_EVENT_COLOR = "#6366f1"
# Largest id set a single "in" query may carry; bigger sets are batched.
MAX_IN_FILTER = 30
HOURS_PER_DAY = 24.0


class Event(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str = ""
    description: str = ""
    location: str = ""
    start: datetime
    end: datetime
    color: str = DEFAULT_EVENT_COLOR
    calendar_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("calendar.id", ondelete="CASCADE"),
            index=True,
            nullable=False,
        )
    )
    user_id: str
    is_shared: bool = False
    shared_with: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=get_now)


def _to_storage(dt: datetime) -> datetime:
    # Naive UTC in the database; local wall time would lose ``fold``.
    return to_utc(dt).replace(tzinfo=None)


def _from_storage(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return ensure_tz(dt)


def _prepare(event: Event) -> Event:
    event.start = _to_storage(event.start)
    event.end = _to_storage(event.end)
    event.created_at = _to_storage(event.created_at)
    return event


def _normalize(event: Event) -> Event:
    event.start = _from_storage(event.start)
    event.end = _from_storage(event.end)
    event.created_at = _from_storage(event.created_at)
    event.shared_with = list(event.shared_with or [])
    return event


def validate_event(event: Event) -> Event:
    """Check ``event`` before it is written, normalising it in place.

    Raises ``ValueError`` with a user-facing message on the first problem.
    """
    if event.calendar_id is None:
        raise ValueError("Please select a calendar")
    if event.start is None or event.end is None:
        raise ValueError("Start and end times are required")
    event.start = ensure_tz(event.start)
    event.end = ensure_tz(event.end)
    if to_utc(event.start) >= to_utc(event.end):
        raise ValueError("End time must be after start time")
    event.title = (event.title or "").strip()
    event.description = (event.description or "").strip()
    event.location = (event.location or "").strip()
    shared: list[str] = []
    for email in event.shared_with or []:
        email = normalize_email(email)
        if not is_valid_email(email):
            raise ValueError(f"Invalid email address: {email}")
        if email not in shared:
            shared.append(email)
    event.shared_with = shared
    return event


class EventStore:
    """CRUD helper for :class:`Event` objects."""

    def __init__(self, engine, feed=None):
        self.engine = engine
        self.feed = feed

    def _changed(self) -> None:
        if self.feed is not None:
            self.feed.publish("events")

    def create(self, event: Event) -> Event:
        validate_event(event)
        with Session(self.engine) as session:
            if not session.get(Calendar, event.calendar_id):
                raise ValueError("Calendar not found")
            session.add(_prepare(event))
            session.commit()
            session.refresh(event)
        self._changed()
        return _normalize(event)

    def get(self, event_id: int) -> Optional[Event]:
        with Session(self.engine) as session:
            event = session.get(Event, event_id)
            return _normalize(event) if event else None

    def update(self, event_id: int, new_data: Event) -> Optional[Event]:
        validate_event(new_data)
        with Session(self.engine) as session:
            event = session.get(Event, event_id)
            if not event:
                return None
            if new_data.calendar_id != event.calendar_id and not session.get(
                Calendar, new_data.calendar_id
            ):
                raise ValueError("Calendar not found")
            event.title = new_data.title
            event.description = new_data.description
            event.location = new_data.location
            event.start = _to_storage(new_data.start)
            event.end = _to_storage(new_data.end)
            event.color = new_data.color
            event.calendar_id = new_data.calendar_id
            event.is_shared = new_data.is_shared
            event.shared_with = new_data.shared_with
            session.add(event)
            session.commit()
            session.refresh(event)
        self._changed()
        return _normalize(event)

    def delete(self, event_id: int) -> bool:
        with Session(self.engine) as session:
            event = session.get(Event, event_id)
            if not event:
                return False
            session.delete(event)
            session.commit()
        self._changed()
        return True

    def list_for_calendars(self, calendar_ids: Iterable[int]) -> List[Event]:
        ids = sorted(set(calendar_ids))
        events: List[Event] = []
        with Session(self.engine) as session:
            for i in range(0, len(ids), MAX_IN_FILTER):
                chunk = ids[i : i + MAX_IN_FILTER]
                events.extend(
                    session.exec(select(Event).where(Event.calendar_id.in_(chunk))).all()
                )
        return [_normalize(e) for e in events]

    def list_shared_with(self, email: str) -> List[Event]:
        """Return events shared individually with ``email``, earliest first."""
        email = normalize_email(email)
        if not email:
            return []
        with Session(self.engine) as session:
            events = session.exec(select(Event).order_by(Event.start, Event.id)).all()
            return [_normalize(e) for e in events if email in (e.shared_with or [])]


@dataclass
class DayEvent:
    event: Event
    display_title: str
    is_start_day: bool
    is_end_day: bool


@dataclass
class Layout:
    """Vertical placement in an hour grid, both values in hours."""

    top: float
    height: float


def _span(event: Event) -> tuple[date, date]:
    return local_date(event.start), local_date(event.end)


def is_visible(event: Event, day: date) -> bool:
    start_day, end_day = _span(event)
    return start_day <= day <= end_day


def label_for_day(event: Event, day: date) -> str:
    start_day, end_day = _span(event)
    if day == start_day and day == end_day:
        return event.title
    if day == start_day:
        return f"{event.title} (starts)"
    if day == end_day:
        return f"{event.title} (ends)"
    return f"{event.title} (cont.)"


def get_visible_events(events: Iterable[Event], day: date) -> List[DayEvent]:
    visible: List[DayEvent] = []
    for event in events:
        if not is_visible(event, day):
            continue
        start_day, end_day = _span(event)
        visible.append(
            DayEvent(
                event=event,
                display_title=label_for_day(event, day),
                is_start_day=day == start_day,
                is_end_day=day == end_day,
            )
        )
    return visible


def compute_layout(event: Event, day: date) -> Layout:
    """Return ``event``'s segment on ``day`` in hour units.

    The height is the raw duration of the segment; flooring it to something
    visible is left to whatever draws it.
    """
    start_day, end_day = _span(event)
    if day == start_day:
        top = hour_offset(event.start)
        if day == end_day:
            # Elapsed time, not wall-clock difference, across DST changes.
            elapsed = (to_utc(event.end) - to_utc(event.start)).total_seconds() / 3600
            return Layout(top, min(elapsed, HOURS_PER_DAY - top))
        return Layout(top, HOURS_PER_DAY - top)
    if day == end_day:
        return Layout(0.0, hour_offset(event.end))
    return Layout(0.0, HOURS_PER_DAY)


def sort_by_start(events: Iterable[Event]) -> List[Event]:
    return sorted(events, key=lambda e: (to_utc(e.start), e.id or 0))


def events_in_range(events: Iterable[Event], start: datetime, end: datetime) -> List[Event]:
    """Return events overlapping the half-open range ``[start, end)`` by date."""
    first_day = local_date(start)
    last_day = local_date(end)
    result = []
    for event in events:
        start_day, end_day = _span(event)
        if start_day < last_day and end_day >= first_day:
            result.append(event)
    return result

from __future__ import annotations

import logging
import re
import threading
from datetime import datetime
from typing import Callable, List, Optional

from sqlmodel import Column, Field, Session, SQLModel, select
from sqlalchemy import JSON
from sqlalchemy.exc import SQLAlchemyError

from .time_utils import get_now, ensure_tz


logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_NAME = "My Calendar"
DEFAULT_CALENDAR_COLOR = "#4285F4"
NEW_CALENDAR_COLOR = "#6366f1"

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.fullmatch(email or ""))


class Calendar(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    color: str = NEW_CALENDAR_COLOR
    owner_id: str = Field(index=True)
    owner_email: str = ""
    owner_name: str = ""
    is_default: bool = False
    members: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    shared_emails: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=get_now)
    updated_at: datetime = Field(default_factory=get_now)


def _normalize(calendar: Calendar) -> Calendar:
    calendar.members = list(calendar.members or [])
    calendar.shared_emails = list(calendar.shared_emails or [])
    calendar.created_at = ensure_tz(calendar.created_at)
    calendar.updated_at = ensure_tz(calendar.updated_at)
    return calendar


def _clean_name(name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValueError("Please enter a calendar name")
    return name


def _clean_color(color: str) -> str:
    if not COLOR_RE.fullmatch(color or ""):
        raise ValueError("Color must be a hex value like #4285F4")
    return color


def _clear_other_defaults(session: Session, calendar: Calendar) -> None:
    others = session.exec(
        select(Calendar).where(
            (Calendar.owner_id == calendar.owner_id) & (Calendar.is_default == True)  # noqa: E712
        )
    ).all()
    for other in others:
        if other.id != calendar.id:
            other.is_default = False
            other.updated_at = get_now()
            session.add(other)


class CalendarStore:
    """CRUD helper for :class:`Calendar` objects.

    ``members`` and ``shared_emails`` are JSON columns, so membership queries
    filter in Python after loading the candidate rows.
    """

    def __init__(self, engine, feed=None):
        self.engine = engine
        self.feed = feed

    def _changed(self, *collections: str) -> None:
        if self.feed is not None:
            for collection in collections or ("calendars",):
                self.feed.publish(collection)

    def create(self, calendar: Calendar) -> Calendar:
        calendar.name = _clean_name(calendar.name)
        calendar.color = _clean_color(calendar.color)
        if not calendar.owner_id:
            raise ValueError("Calendar must have an owner")
        members = list(calendar.members or [])
        if calendar.owner_id not in members:
            members.insert(0, calendar.owner_id)
        calendar.members = members
        calendar.shared_emails = [normalize_email(e) for e in calendar.shared_emails or []]
        with Session(self.engine) as session:
            if calendar.is_default:
                _clear_other_defaults(session, calendar)
            session.add(calendar)
            session.commit()
            session.refresh(calendar)
        self._changed()
        return _normalize(calendar)

    def create_default_if_missing(
        self, owner_id: str, owner_email: str = "", owner_name: str = ""
    ) -> Optional[Calendar]:
        """Create the owner's default calendar unless they already own one.

        The existence check and the insert share one session but the check
        takes no lock, so two concurrent callers could both insert.
        :class:`DefaultCalendarBootstrap` is what keeps a user to a single
        attempt.  Returns the new calendar, or ``None`` if one already existed.
        """
        with Session(self.engine) as session:
            existing = session.exec(
                select(Calendar.id).where(Calendar.owner_id == owner_id)
            ).first()
            if existing is not None:
                return None
            calendar = Calendar(
                name=DEFAULT_CALENDAR_NAME,
                color=DEFAULT_CALENDAR_COLOR,
                owner_id=owner_id,
                owner_email=normalize_email(owner_email),
                owner_name=owner_name or (owner_email.split("@")[0] if owner_email else ""),
                is_default=True,
                members=[owner_id],
                shared_emails=[],
            )
            session.add(calendar)
            session.commit()
            session.refresh(calendar)
        logger.info("Created default calendar %s for %s", calendar.id, owner_id)
        self._changed()
        return _normalize(calendar)

    def get(self, calendar_id: int) -> Optional[Calendar]:
        with Session(self.engine) as session:
            calendar = session.get(Calendar, calendar_id)
            return _normalize(calendar) if calendar else None

    def list_calendars(self) -> List[Calendar]:
        with Session(self.engine) as session:
            calendars = session.exec(select(Calendar).order_by(Calendar.id)).all()
            return [_normalize(c) for c in calendars]

    def list_for_member(self, uid: str) -> List[Calendar]:
        return [c for c in self.list_calendars() if uid in c.members]

    def list_shared_with(self, email: str) -> List[Calendar]:
        email = normalize_email(email)
        if not email:
            return []
        return [c for c in self.list_calendars() if email in c.shared_emails]

    def list_owned_by(self, owner_id: str) -> List[Calendar]:
        with Session(self.engine) as session:
            calendars = session.exec(
                select(Calendar).where(Calendar.owner_id == owner_id).order_by(Calendar.id)
            ).all()
            return [_normalize(c) for c in calendars]

    def update(
        self,
        calendar_id: int,
        name: Optional[str] = None,
        color: Optional[str] = None,
        is_default: Optional[bool] = None,
    ) -> Optional[Calendar]:
        with Session(self.engine) as session:
            calendar = session.get(Calendar, calendar_id)
            if not calendar:
                return None
            if name is not None:
                calendar.name = _clean_name(name)
            if color is not None:
                calendar.color = _clean_color(color)
            if is_default is not None:
                calendar.is_default = bool(is_default)
                if calendar.is_default:
                    _clear_other_defaults(session, calendar)
            calendar.updated_at = get_now()
            session.add(calendar)
            session.commit()
            session.refresh(calendar)
        self._changed()
        return _normalize(calendar)

    def delete(self, calendar_id: int) -> bool:
        """Delete a calendar and, through the foreign key, all of its events.

        Raises ``ValueError`` for the owner's default or only calendar.
        """
        with Session(self.engine) as session:
            calendar = session.get(Calendar, calendar_id)
            if not calendar:
                return False
            if calendar.is_default:
                raise ValueError("Cannot delete default calendar")
            owned = session.exec(
                select(Calendar.id).where(Calendar.owner_id == calendar.owner_id)
            ).all()
            if len(owned) <= 1:
                raise ValueError("Cannot delete the only calendar")
            session.delete(calendar)
            session.commit()
        self._changed("calendars", "events")
        return True

    def share(
        self, calendar_id: int, email: str, member_uid: Optional[str] = None
    ) -> Optional[Calendar]:
        """Share a calendar with ``email``.

        ``member_uid`` is the uid of the registered user owning ``email``, if
        any; it is added to ``members`` alongside the email.
        """
        email = normalize_email(email)
        if not email:
            raise ValueError("Please enter an email address")
        if not is_valid_email(email):
            raise ValueError("Please enter a valid email address")
        with Session(self.engine) as session:
            calendar = session.get(Calendar, calendar_id)
            if not calendar:
                return None
            shared = list(calendar.shared_emails or [])
            members = list(calendar.members or [])
            if email in shared:
                raise ValueError("Calendar already shared with this email")
            if email == normalize_email(calendar.owner_email) or member_uid == calendar.owner_id:
                raise ValueError("Cannot share a calendar with its owner")
            if member_uid and member_uid in members:
                raise ValueError("This user is already a member of the calendar")
            shared.append(email)
            if member_uid:
                members.append(member_uid)
            calendar.shared_emails = shared
            calendar.members = members
            calendar.updated_at = get_now()
            session.add(calendar)
            session.commit()
            session.refresh(calendar)
        logger.info("Calendar %s shared with %s", calendar_id, email)
        self._changed()
        return _normalize(calendar)

    def unshare(
        self, calendar_id: int, email: str, member_uid: Optional[str] = None
    ) -> Optional[Calendar]:
        email = normalize_email(email)
        with Session(self.engine) as session:
            calendar = session.get(Calendar, calendar_id)
            if not calendar:
                return None
            calendar.shared_emails = [e for e in calendar.shared_emails or [] if e != email]
            calendar.members = [
                m
                for m in calendar.members or []
                if m == calendar.owner_id or m not in (email, member_uid)
            ]
            calendar.updated_at = get_now()
            session.add(calendar)
            session.commit()
            session.refresh(calendar)
        logger.info("Calendar %s no longer shared with %s", calendar_id, email)
        self._changed()
        return _normalize(calendar)


def can_access(calendar: Calendar, user) -> bool:
    if calendar.owner_id == user.uid or user.uid in calendar.members:
        return True
    return normalize_email(user.email) in calendar.shared_emails


def is_owner(calendar: Calendar, user) -> bool:
    return calendar.owner_id == user.uid


def _is_empty(value) -> bool:
    return value is None or value == "" or value == []


def merge_calendar_records(first: Calendar, second: Calendar) -> Calendar:
    """Merge two records for the same calendar without dropping any field."""
    data = first.model_dump()
    for key, value in second.model_dump().items():
        if _is_empty(data.get(key)) and not _is_empty(value):
            data[key] = value
    data["members"] = list(dict.fromkeys([*first.members, *second.members]))
    data["shared_emails"] = list(
        dict.fromkeys([*first.shared_emails, *second.shared_emails])
    )
    return Calendar.model_validate(data)


def merge_calendars(*groups: List[Calendar]) -> List[Calendar]:
    merged: dict[int, Calendar] = {}
    for group in groups:
        for calendar in group:
            existing = merged.get(calendar.id)
            merged[calendar.id] = (
                calendar if existing is None else merge_calendar_records(existing, calendar)
            )
    return list(merged.values())


class DefaultCalendarBootstrap:
    """Allows one default-calendar creation attempt per user session.

    The flag for a user stays set after the attempt, whether or not it
    created anything, until :meth:`reset` is called when the session ends.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._started: set[str] = set()

    def begin(self, uid: str) -> bool:
        with self._lock:
            if uid in self._started:
                return False
            self._started.add(uid)
            return True

    def in_flight(self, uid: str) -> bool:
        with self._lock:
            return uid in self._started

    def reset(self, uid: str) -> None:
        with self._lock:
            self._started.discard(uid)


class CalendarAggregator:
    """Builds the set of calendars visible to a user.

    Owned calendars come from the membership query, shared ones from the
    shared-email query.  Read failures are logged and treated as empty so a
    partial calendar list never blocks the caller.
    """

    def __init__(self, store: CalendarStore, bootstrap: Optional[DefaultCalendarBootstrap] = None):
        self.store = store
        self.bootstrap = bootstrap or DefaultCalendarBootstrap()

    def _query(self, fn: Callable[[str], List[Calendar]], arg: str) -> Optional[List[Calendar]]:
        try:
            return fn(arg)
        except SQLAlchemyError:
            logger.exception("Calendar query %s failed", fn.__name__)
            return None

    def owned_calendars(self, user) -> Optional[List[Calendar]]:
        """Calendars listing ``user`` as a member, or ``None`` if the query failed."""
        return self._query(self.store.list_for_member, user.uid)

    def shared_calendars(self, user) -> List[Calendar]:
        return self._query(self.store.list_shared_with, user.email) or []

    def ensure_default_calendar(self, user) -> Optional[Calendar]:
        if not self.bootstrap.begin(user.uid):
            logger.debug("Default calendar bootstrap already started for %s", user.uid)
            return None
        try:
            return self.store.create_default_if_missing(
                user.uid, user.email, getattr(user, "display_name", "") or ""
            )
        except SQLAlchemyError:
            logger.exception("Failed to create default calendar for %s", user.uid)
            return None

    def get_accessible_calendars(self, user, bootstrap: bool = True) -> List[Calendar]:
        owned = self.owned_calendars(user)
        shared = self.shared_calendars(user)
        if owned is None:
            owned = []
        elif bootstrap and not any(is_owner(c, user) for c in owned):
            created = self.ensure_default_calendar(user)
            if created is not None:
                owned = [*owned, created]
        return merge_calendars(owned, shared)

    def accessible_ids(self, user) -> List[int]:
        return [c.id for c in self.get_accessible_calendars(user, bootstrap=False)]


def select_default(
    calendars: List[Calendar], user, selected_id: Optional[int] = None
) -> Optional[int]:
    """Return the calendar new events should go to.

    Keeps ``selected_id`` while it is still visible; otherwise picks the first
    calendar the user owns.  Shared calendars are never picked automatically.
    """
    if selected_id is not None and any(c.id == selected_id for c in calendars):
        return selected_id
    for calendar in calendars:
        if is_owner(calendar, user):
            return calendar.id
    return None

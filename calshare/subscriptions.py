"""Live result sets pushed to subscribers after every committed write.

Stores publish the name of the collection they changed to a
:class:`ChangeFeed`.  :func:`subscribe_events` turns those change signals into
full snapshots of the events belonging to a set of calendars, and
:class:`LiveEvents` keeps exactly one such subscription open for a consumer
whose active calendar set changes over time.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from itertools import count
from typing import Callable, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .notifications import NotificationStore, emit_reminders


logger = logging.getLogger(__name__)


Listener = Callable[[str], None]
Unsubscribe = Callable[[], None]


class ChangeFeed:
    """Process-local publish/subscribe hub keyed by collection name."""

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: dict[str, dict[int, Listener]] = {}
        self._ids = count()

    def listen(self, collection: str, listener: Listener) -> Unsubscribe:
        with self._lock:
            listener_id = next(self._ids)
            self._listeners.setdefault(collection, {})[listener_id] = listener

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.get(collection, {}).pop(listener_id, None)

        return unsubscribe

    def publish(self, collection: str) -> None:
        with self._lock:
            listeners = list(self._listeners.get(collection, {}).values())
        # The write has already committed; a broken listener must not fail it
        # or starve the listeners after it.
        for listener in listeners:
            try:
                listener(collection)
            except Exception:
                logger.exception("Listener for %s failed", collection)

    def listener_count(self, collection: str) -> int:
        with self._lock:
            return len(self._listeners.get(collection, {}))


def _noop() -> None:
    return None


def subscribe_events(
    event_store,
    feed: ChangeFeed,
    calendar_ids: Iterable[int],
    on_update: Callable[[list], None],
    on_error: Optional[Callable[[Exception], None]] = None,
) -> Unsubscribe:
    """Deliver snapshots of the events in ``calendar_ids`` to ``on_update``.

    An initial snapshot is delivered before returning and a new one after
    every change to the ``events`` collection.  An empty id set delivers an
    empty list once and opens nothing.
    """
    ids = sorted(set(calendar_ids))
    if not ids:
        on_update([])
        return _noop

    def refresh(_collection: str = "events") -> None:
        try:
            events = event_store.list_for_calendars(ids)
        except SQLAlchemyError as exc:
            logger.exception("Failed to refresh events for calendars %s", ids)
            if on_error:
                on_error(exc)
            return
        on_update(events)

    unsubscribe = feed.listen("events", refresh)
    refresh()
    return unsubscribe


class LiveEvents:
    """The live event list for one consumer.

    ``set_calendar_ids`` replaces the underlying subscription whenever the
    active calendar set changes.  Each subscription is tagged with a token and
    deliveries carrying a superseded token are dropped, so a snapshot for an
    old calendar set can never overwrite one for the current set.

    When ``notification_store`` and ``reminder_recipient`` are given, every
    delivered snapshot is also checked for events starting within the
    reminder window.
    """

    def __init__(
        self,
        event_store,
        feed: ChangeFeed,
        on_update: Callable[[list], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        notification_store: Optional[NotificationStore] = None,
        reminder_recipient: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.event_store = event_store
        self.feed = feed
        self.on_update = on_update
        self.on_error = on_error
        self.notification_store = notification_store
        self.reminder_recipient = reminder_recipient
        self.clock = clock
        self.events: List = []
        self._calendar_ids: Optional[frozenset[int]] = None
        self._unsubscribe: Unsubscribe = _noop
        self._tokens = count(1)
        self._token = 0

    @property
    def calendar_ids(self) -> frozenset[int]:
        return self._calendar_ids or frozenset()

    def set_calendar_ids(self, calendar_ids: Iterable[int]) -> bool:
        """Subscribe to ``calendar_ids``; return whether a new subscription was opened."""
        ids = frozenset(calendar_ids)
        if ids == self._calendar_ids:
            return False
        self._release()
        self._calendar_ids = ids
        self._token = next(self._tokens)
        token = self._token
        self._unsubscribe = subscribe_events(
            self.event_store,
            self.feed,
            ids,
            lambda events: self._deliver(token, events),
            lambda exc: self._fail(token, exc),
        )
        return True

    def close(self) -> None:
        self._release()
        self._calendar_ids = None

    def _release(self) -> None:
        self._unsubscribe()
        self._unsubscribe = _noop
        # Anything still in flight for the released subscription is stale.
        self._token = next(self._tokens)

    def _deliver(self, token: int, events: list) -> None:
        if token != self._token:
            logger.debug("Discarding snapshot from superseded subscription %s", token)
            return
        self.events = events
        if self.notification_store is not None and self.reminder_recipient:
            now = self.clock() if self.clock else None
            try:
                emit_reminders(
                    self.notification_store, self.reminder_recipient, events, now=now
                )
            except SQLAlchemyError:
                logger.exception(
                    "Failed to create reminders for %s", self.reminder_recipient
                )
        self.on_update(events)

    def _fail(self, token: int, exc: Exception) -> None:
        if token != self._token:
            return
        if self.on_error:
            self.on_error(exc)

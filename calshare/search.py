from __future__ import annotations

import logging
from typing import List

from sqlalchemy.exc import SQLAlchemyError

from .calendar import CalendarAggregator
from .events import Event, EventStore, sort_by_start


logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 2
MAX_RESULTS = 5
SEARCH_FIELDS = ("title", "description", "location")


def matches(event: Event, needle: str) -> bool:
    return any(needle in (getattr(event, f) or "").lower() for f in SEARCH_FIELDS)


def search_events(
    aggregator: CalendarAggregator, event_store: EventStore, user, query: str
) -> List[Event]:
    """Find up to five events matching ``query`` across every calendar ``user`` can see.

    Covers all accessible calendars regardless of which are toggled on.  This
    loads every event of those calendars and scans them linearly; a proper
    full-text index would replace it for large event sets.
    """
    needle = (query or "").strip().lower()
    if len(needle) < MIN_QUERY_LENGTH:
        return []
    calendar_ids = aggregator.accessible_ids(user)
    if not calendar_ids:
        return []
    try:
        events = event_store.list_for_calendars(calendar_ids)
    except SQLAlchemyError:
        logger.exception("Search for %r failed", query)
        return []
    return sort_by_start(e for e in events if matches(e, needle))[:MAX_RESULTS]

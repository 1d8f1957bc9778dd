from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy.exc import OperationalError

from calshare.calendar import Calendar, CalendarStore
from calshare.events import Event, EventStore
from calshare.notifications import NotificationStore, NotificationType
from calshare.subscriptions import ChangeFeed, LiveEvents, subscribe_events


UTC = ZoneInfo("UTC")
NOW = datetime(2024, 1, 2, 9, 0, tzinfo=UTC)


def setup_stores(engine):
    feed = ChangeFeed()
    calendars = CalendarStore(engine, feed)
    events = EventStore(engine, feed)
    return feed, calendars, events


def make_calendar(calendars: CalendarStore, name: str) -> Calendar:
    return calendars.create(Calendar(name=name, owner_id="owner", owner_email="owner@example.com"))


def add_event(events: EventStore, calendar_id: int, title: str, start: datetime = NOW) -> Event:
    return events.create(
        Event(
            calendar_id=calendar_id,
            user_id="owner",
            title=title,
            start=start,
            end=start + timedelta(hours=1),
        )
    )


def test_feed_unsubscribe_stops_delivery():
    feed = ChangeFeed()
    received = []
    unsubscribe = feed.listen("events", received.append)

    feed.publish("events")
    feed.publish("calendars")
    unsubscribe()
    feed.publish("events")

    assert received == ["events"]
    assert feed.listener_count("events") == 0


def test_failing_listener_does_not_block_the_rest(caplog):
    feed = ChangeFeed()
    received = []

    def broken(collection):
        raise RuntimeError("boom")

    feed.listen("events", broken)
    feed.listen("events", received.append)

    feed.publish("events")

    assert received == ["events"]
    assert "Listener for events failed" in caplog.text


def test_initial_snapshot_then_updates(engine):
    feed, calendars, events = setup_stores(engine)
    work = make_calendar(calendars, "Work")
    add_event(events, work.id, "First")
    snapshots = []

    unsubscribe = subscribe_events(events, feed, [work.id], snapshots.append)
    add_event(events, work.id, "Second")

    assert [[e.title for e in s] for s in snapshots] == [["First"], ["First", "Second"]]
    unsubscribe()
    add_event(events, work.id, "Third")
    assert len(snapshots) == 2


def test_empty_calendar_set_opens_no_listener(engine):
    feed, _, events = setup_stores(engine)
    snapshots = []

    unsubscribe = subscribe_events(events, feed, [], snapshots.append)

    assert snapshots == [[]]
    assert feed.listener_count("events") == 0
    unsubscribe()


class BrokenEventStore:
    def list_for_calendars(self, calendar_ids):
        raise OperationalError("SELECT", {}, Exception("no such table: event"))


def test_read_failure_goes_to_error_callback():
    feed = ChangeFeed()
    snapshots, errors = [], []

    subscribe_events(BrokenEventStore(), feed, [1], snapshots.append, errors.append)

    assert snapshots == []
    assert len(errors) == 1
    assert isinstance(errors[0], OperationalError)


def test_live_events_resubscribes_only_when_set_changes(engine):
    feed, calendars, events = setup_stores(engine)
    work = make_calendar(calendars, "Work")
    home = make_calendar(calendars, "Home")
    add_event(events, work.id, "Standup")
    add_event(events, home.id, "Dinner")
    snapshots = []
    live = LiveEvents(events, feed, snapshots.append)

    assert live.set_calendar_ids([work.id])
    assert not live.set_calendar_ids([work.id])
    assert [e.title for e in live.events] == ["Standup"]

    assert live.set_calendar_ids([work.id, home.id])
    assert feed.listener_count("events") == 1
    assert sorted(e.title for e in live.events) == ["Dinner", "Standup"]
    assert len(snapshots) == 2

    live.close()
    assert feed.listener_count("events") == 0
    add_event(events, work.id, "Late")
    assert len(snapshots) == 2


def test_stale_snapshots_are_discarded(engine):
    feed, calendars, events = setup_stores(engine)
    work = make_calendar(calendars, "Work")
    home = make_calendar(calendars, "Home")
    add_event(events, work.id, "Standup")
    add_event(events, home.id, "Dinner")
    snapshots = []
    live = LiveEvents(events, feed, snapshots.append)
    live.set_calendar_ids([work.id])
    old_token = live._token

    live.set_calendar_ids([home.id])
    # A snapshot for the old set that arrives after the switch
    live._deliver(old_token, events.list_for_calendars([work.id]))

    assert [e.title for e in live.events] == ["Dinner"]
    assert [[e.title for e in s] for s in snapshots] == [["Standup"], ["Dinner"]]


def test_switching_to_empty_set_delivers_empty_list(engine):
    feed, calendars, events = setup_stores(engine)
    work = make_calendar(calendars, "Work")
    add_event(events, work.id, "Standup")
    live = LiveEvents(events, feed, lambda events: None)

    live.set_calendar_ids([work.id])
    live.set_calendar_ids([])

    assert live.events == []
    assert feed.listener_count("events") == 0


def test_reminder_created_for_event_inside_window(engine):
    feed, calendars, events = setup_stores(engine)
    notifications = NotificationStore(engine)
    work = make_calendar(calendars, "Work")
    soon = add_event(events, work.id, "Soon", start=NOW + timedelta(minutes=10))
    add_event(events, work.id, "Later", start=NOW + timedelta(minutes=40))
    add_event(events, work.id, "Past", start=NOW - timedelta(minutes=10))
    live = LiveEvents(
        events,
        feed,
        lambda events: None,
        notification_store=notifications,
        reminder_recipient="owner",
        clock=lambda: NOW,
    )

    live.set_calendar_ids([work.id])

    [reminder] = notifications.list_for_user("owner")
    assert reminder.type == NotificationType.EventReminder
    assert reminder.event_id == soon.id
    assert reminder.title == "Upcoming Event Reminder"
    assert reminder.message == 'Your event "Soon" is coming up soon.'


def test_reminders_repeat_on_every_snapshot(engine):
    feed, calendars, events = setup_stores(engine)
    notifications = NotificationStore(engine)
    work = make_calendar(calendars, "Work")
    add_event(events, work.id, "Soon", start=NOW + timedelta(minutes=10))
    live = LiveEvents(
        events,
        feed,
        lambda events: None,
        notification_store=notifications,
        reminder_recipient="owner",
        clock=lambda: NOW,
    )

    live.set_calendar_ids([work.id])
    # Any change to the events collection re-evaluates the snapshot
    add_event(events, work.id, "Far away", start=NOW + timedelta(days=3))

    reminders = notifications.list_for_user("owner")
    assert len(reminders) == 2
    assert {r.message for r in reminders} == {'Your event "Soon" is coming up soon.'}

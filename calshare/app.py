from datetime import date, datetime
import asyncio
import os
import secrets
import logging

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from starlette.requests import Request as StarletteRequest
from fastapi.responses import JSONResponse, RedirectResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.sessions import SessionMiddleware
from sqlmodel import create_engine
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from markdown import markdown as md
import bleach

from .time_utils import (
    day_bounds,
    days_in_range,
    get_now,
    local_date,
    month_grid_bounds,
    parse_datetime,
    week_bounds,
)
from .users import User, UserStore, init_db, process_profile_picture
from .calendar import (
    Calendar,
    CalendarAggregator,
    CalendarStore,
    DefaultCalendarBootstrap,
    NEW_CALENDAR_COLOR,
    can_access,
    is_owner,
    normalize_email,
    select_default,
)
from .events import (
    DEFAULT_EVENT_COLOR,
    Event,
    EventStore,
    compute_layout,
    events_in_range,
    get_visible_events,
    sort_by_start,
)
from .notifications import Notification, NotificationStore
from .search import search_events
from .settings import SettingsStore
from .subscriptions import ChangeFeed, LiveEvents


# Rendering floor for hour-grid segments, in hours.
MIN_VISIBLE_HOURS = 0.25

db_path = os.getenv("CALSHARE_DB", "calshare.db")
engine = create_engine(
    f"sqlite:///{db_path}",
    connect_args={"check_same_thread": False},
)
@event.listens_for(engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
init_db(engine)
feed = ChangeFeed()
user_store = UserStore(engine)
calendar_store = CalendarStore(engine, feed)
event_store = EventStore(engine, feed)
notification_store = NotificationStore(engine, feed)
settings_store = SettingsStore(engine)
bootstrap = DefaultCalendarBootstrap()
aggregator = CalendarAggregator(calendar_store, bootstrap)

app = FastAPI()

logger = logging.getLogger(__name__)


ALLOWED_TAGS = bleach.sanitizer.ALLOWED_TAGS | {
    "p",
    "pre",
    "code",
    "hr",
    "br",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
}

ALLOWED_ATTRIBUTES = {
    **bleach.sanitizer.ALLOWED_ATTRIBUTES,
    "a": ["href", "title", "rel"],
    "img": ["src", "alt", "title"],
}


def render_markdown(text: str) -> str:
    if not text:
        return ""
    html = md(text)
    return bleach.clean(html, tags=ALLOWED_TAGS, attributes=ALLOWED_ATTRIBUTES, strip=True)


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def user_json(user: User) -> dict:
    return {
        "uid": user.uid,
        "email": user.email,
        "display_name": user.display_name,
        "photo_url": f"/users/{user.uid}/photo" if user.profile_picture else None,
    }


def calendar_json(calendar: Calendar, user: User) -> dict:
    return {
        "id": calendar.id,
        "name": calendar.name,
        "color": calendar.color,
        "owner_id": calendar.owner_id,
        "owner_email": calendar.owner_email,
        "owner_name": calendar.owner_name,
        "is_default": calendar.is_default,
        "is_owner": is_owner(calendar, user),
        "members": list(calendar.members),
        "shared_emails": list(calendar.shared_emails),
        "created_at": _iso(calendar.created_at),
        "updated_at": _iso(calendar.updated_at),
    }


def event_json(ev: Event, include_html: bool = False) -> dict:
    data = {
        "id": ev.id,
        "title": ev.title,
        "description": ev.description,
        "location": ev.location,
        "start": _iso(ev.start),
        "end": _iso(ev.end),
        "color": ev.color,
        "calendar_id": ev.calendar_id,
        "user_id": ev.user_id,
        "is_shared": ev.is_shared,
        "shared_with": list(ev.shared_with),
        "created_at": _iso(ev.created_at),
    }
    if include_html:
        data["description_html"] = render_markdown(ev.description)
    return data


def notification_json(notification: Notification) -> dict:
    return {
        "id": notification.id,
        "title": notification.title,
        "message": notification.message,
        "type": notification.type.value,
        "event_id": notification.event_id,
        "read": notification.read,
        "created_at": _iso(notification.created_at),
    }


def day_json(events: list[Event], day: date, with_layout: bool = True) -> list[dict]:
    entries = []
    for item in get_visible_events(events, day):
        entry = {
            "event": event_json(item.event),
            "display_title": item.display_title,
            "is_start_day": item.is_start_day,
            "is_end_day": item.is_end_day,
        }
        if with_layout:
            layout = compute_layout(item.event, day)
            entry["top"] = layout.top
            entry["height"] = layout.height
            entry["display_height"] = max(layout.height, MIN_VISIBLE_HOURS)
        entries.append(entry)
    return entries


def current_user(request: Request) -> User:
    uid = request.session.get("user")
    user = user_store.get(uid) if uid else None
    if not user:
        request.session.clear()
        raise HTTPException(status_code=401, detail="Not logged in")
    return user


def bad_request(exc: ValueError) -> HTTPException:
    logger.warning("Rejected request: %s", exc)
    return HTTPException(status_code=400, detail=str(exc))


async def json_body(request: Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return data


def _string(data: dict, key: str, default: str = "") -> str:
    value = data.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail=f"{key} must be a string")
    return value


def _int(value, name: str) -> int:
    if isinstance(value, bool):
        raise HTTPException(status_code=400, detail=f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"{name} must be an integer")


def _parse_when(value, name: str) -> datetime:
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail=f"{name} is required")
    try:
        return parse_datetime(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{name} is not a valid datetime")


def _parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date")


def event_from_payload(data: dict, user: User, existing: Event | None = None) -> Event:
    """Build an :class:`Event` from a request payload, falling back to ``existing``."""

    def pick(key, default):
        if key in data:
            return data[key]
        return getattr(existing, key) if existing else default

    calendar_id = pick("calendar_id", None)
    if calendar_id is None:
        raise HTTPException(status_code=400, detail="Please select a calendar")
    shared_with = pick("shared_with", [])
    if not isinstance(shared_with, list) or not all(isinstance(e, str) for e in shared_with):
        raise HTTPException(status_code=400, detail="shared_with must be a list of emails")
    start = data["start"] if "start" in data else (existing.start.isoformat() if existing else None)
    end = data["end"] if "end" in data else (existing.end.isoformat() if existing else None)
    fields = {k: pick(k, "") for k in ("title", "description", "location")}
    for key, value in fields.items():
        if not isinstance(value, str):
            raise HTTPException(status_code=400, detail=f"{key} must be a string")
    color = pick("color", DEFAULT_EVENT_COLOR)
    if not isinstance(color, str):
        raise HTTPException(status_code=400, detail="color must be a string")
    return Event(
        **fields,
        start=_parse_when(start, "start"),
        end=_parse_when(end, "end"),
        color=color,
        calendar_id=_int(calendar_id, "calendar_id"),
        user_id=existing.user_id if existing else user.uid,
        is_shared=bool(pick("is_shared", False)),
        shared_with=shared_with,
    )


def require_calendar_access(user: User, calendar_id: int) -> Calendar:
    calendar = calendar_store.get(calendar_id)
    if not calendar or not can_access(calendar, user):
        raise HTTPException(status_code=404, detail="Calendar not found")
    return calendar


def require_calendar_owner(user: User, calendar_id: int) -> Calendar:
    calendar = require_calendar_access(user, calendar_id)
    if not is_owner(calendar, user):
        raise HTTPException(status_code=403, detail="Only the owner can change this calendar")
    return calendar


def require_event_access(user: User, event_id: int, allow_shared: bool = False) -> Event:
    """Return the event if ``user`` can see it.

    Access comes from the event's calendar.  With ``allow_shared`` an event
    shared individually with the user's email is readable too.
    """
    ev = event_store.get(event_id)
    if not ev:
        raise HTTPException(status_code=404, detail="Event not found")
    if allow_shared and normalize_email(user.email) in ev.shared_with:
        return ev
    calendar = calendar_store.get(ev.calendar_id)
    if not calendar or not can_access(calendar, user):
        raise HTTPException(status_code=404, detail="Event not found")
    return ev


def active_calendar_ids(user: User, calendars: str | None) -> list[int]:
    """Resolve the ``calendars`` query parameter against what ``user`` can see."""
    accessible = aggregator.accessible_ids(user)
    if calendars is None:
        return accessible
    requested = {_int(part, "calendars") for part in calendars.split(",") if part.strip()}
    return [cid for cid in accessible if cid in requested]


def load_events(calendar_ids: list[int]) -> list[Event]:
    try:
        return event_store.list_for_calendars(calendar_ids)
    except SQLAlchemyError:
        logger.exception("Failed to load events for calendars %s", calendar_ids)
        return []


def notify_shared_emails(sender: User, emails: list[str], calendar: Calendar) -> None:
    for email in emails:
        recipient = user_store.get_by_email(email)
        if not recipient:
            logger.info("No registered user for %s; skipping notification", email)
            continue
        notification_store.create_shared_calendar(
            sender.display_name or sender.email, recipient.uid, calendar.name
        )


class EnsureUserMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        session = request.session
        path = request.url.path

        uid = session.get("user")
        if uid and not user_store.get(uid):
            session.clear()
            uid = None
        if not uid and (path.startswith("/api") or path.startswith("/users")):
            return JSONResponse({"error": "Not logged in"}, status_code=401)

        response = await call_next(request)
        return response


class CSRFMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if os.getenv("CALSHARE_DISABLE_CSRF") == "1":
            return await call_next(request)
        session = request.session
        token = session.get("csrf_token")
        if not token:
            token = secrets.token_urlsafe(32)
            session["csrf_token"] = token
        if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
            body = await request.body()
            content_type = request.headers.get("content-type", "")
            csrf_token = request.headers.get("x-csrf-token") or request.query_params.get(
                "csrf_token"
            )
            def make_receive():
                sent = False

                async def receive():
                    nonlocal sent
                    if sent:
                        return {"type": "http.request", "body": b"", "more_body": False}
                    sent = True
                    return {
                        "type": "http.request",
                        "body": body,
                        "more_body": False,
                    }

                return receive

            if not csrf_token and (
                content_type.startswith("application/x-www-form-urlencoded")
                or content_type.startswith("multipart/form-data")
            ):
                form_request = StarletteRequest(request.scope, make_receive())
                form = await form_request.form()
                csrf_token = form.get("csrf_token")

            request._receive = make_receive()

            if not csrf_token or csrf_token != session.get("csrf_token"):
                logger.warning(
                    "Invalid CSRF token for %s %s", request.method, request.url.path
                )
                return JSONResponse({"error": "Invalid CSRF token"}, status_code=400)
        return await call_next(request)


app.add_middleware(EnsureUserMiddleware)
app.add_middleware(CSRFMiddleware)
session_secret = os.getenv("CALSHARE_SECRET_KEY")
if not session_secret:
    raise RuntimeError("CALSHARE_SECRET_KEY environment variable is not set")
app.add_middleware(SessionMiddleware, secret_key=session_secret)


def _login(request: Request, user: User) -> JSONResponse:
    request.session["user"] = user.uid
    calendars = aggregator.get_accessible_calendars(user)
    return JSONResponse(
        {
            "status": "ok",
            "user": user_json(user),
            "calendars": [calendar_json(c, user) for c in calendars],
            "csrf_token": request.session.get("csrf_token"),
        }
    )


@app.get("/login")
async def login_page(request: Request):
    return JSONResponse(
        {
            "logged_in": bool(request.session.get("user")),
            "csrf_token": request.session.get("csrf_token"),
        }
    )


@app.post("/login")
async def login(request: Request):
    form = await request.form()
    email = form.get("email", "")
    password = form.get("password", "")

    user = user_store.verify(email, password)
    if user:
        return _login(request, user)
    logger.warning("Failed login for %s", email)
    return JSONResponse({"error": "Invalid credentials"}, status_code=400)


@app.post("/register")
async def register(request: Request):
    form = await request.form()
    try:
        user = user_store.create(
            form.get("email", ""),
            form.get("password", ""),
            form.get("display_name", ""),
        )
    except ValueError as exc:
        raise bad_request(exc)
    return _login(request, user)


@app.get("/logout")
async def logout(request: Request):
    uid = request.session.get("user")
    if uid:
        bootstrap.reset(uid)
    request.session.clear()
    return RedirectResponse(url="/login", status_code=303)


@app.get("/api/me")
async def get_profile(request: Request):
    user = current_user(request)
    data = user_json(user)
    data["csrf_token"] = request.session.get("csrf_token")
    return JSONResponse(data)


@app.post("/api/me")
async def update_profile(request: Request):
    user = current_user(request)
    form = await request.form()
    upload = form.get("profile_picture")
    profile_picture = None
    if getattr(upload, "filename", ""):
        data = await upload.read()
        if data:
            profile_picture = process_profile_picture(data)
    try:
        updated = user_store.update_profile(
            user.uid,
            display_name=form.get("display_name"),
            password=form.get("password") or None,
            profile_picture=profile_picture,
        )
    except ValueError as exc:
        raise bad_request(exc)
    return JSONResponse(user_json(updated))


@app.get("/users/{uid}/photo")
async def profile_photo(uid: str):
    headers = {"Cache-Control": "no-cache, no-store, max-age=0"}
    user = user_store.get(uid)
    if user and user.profile_picture:
        return Response(user.profile_picture, media_type="image/png", headers=headers)
    raise HTTPException(status_code=404)


@app.get("/api/settings")
async def get_settings(request: Request):
    user = current_user(request)
    return JSONResponse({"week_starts_on": settings_store.get_week_starts_on(user.uid)})


@app.post("/api/settings")
async def update_settings(request: Request):
    user = current_user(request)
    data = await json_body(request)
    if "week_starts_on" in data:
        try:
            settings_store.set_week_starts_on(
                user.uid, _int(data["week_starts_on"], "week_starts_on")
            )
        except ValueError as exc:
            raise bad_request(exc)
    return JSONResponse({"week_starts_on": settings_store.get_week_starts_on(user.uid)})


@app.get("/api/calendars")
async def list_calendars(request: Request, selected: int | None = None):
    user = current_user(request)
    calendars = aggregator.get_accessible_calendars(user)
    return JSONResponse(
        {
            "calendars": [calendar_json(c, user) for c in calendars],
            "selected": select_default(calendars, user, selected),
        }
    )


@app.post("/api/calendars")
async def create_calendar(request: Request):
    user = current_user(request)
    data = await json_body(request)
    calendar = Calendar(
        name=_string(data, "name"),
        color=_string(data, "color", NEW_CALENDAR_COLOR),
        owner_id=user.uid,
        owner_email=user.email,
        owner_name=user.display_name,
        is_default=bool(data.get("is_default", False)),
    )
    try:
        calendar = calendar_store.create(calendar)
    except ValueError as exc:
        raise bad_request(exc)
    return JSONResponse(calendar_json(calendar, user), status_code=201)


@app.post("/api/calendars/{calendar_id}/update")
async def update_calendar(request: Request, calendar_id: int):
    user = current_user(request)
    require_calendar_owner(user, calendar_id)
    data = await json_body(request)
    is_default = data.get("is_default")
    try:
        calendar = calendar_store.update(
            calendar_id,
            name=_string(data, "name") if "name" in data else None,
            color=_string(data, "color") if "color" in data else None,
            is_default=bool(is_default) if is_default is not None else None,
        )
    except ValueError as exc:
        raise bad_request(exc)
    if not calendar:
        raise HTTPException(status_code=404, detail="Calendar not found")
    return JSONResponse(calendar_json(calendar, user))


@app.post("/api/calendars/{calendar_id}/delete")
async def delete_calendar(request: Request, calendar_id: int):
    user = current_user(request)
    require_calendar_owner(user, calendar_id)
    try:
        deleted = calendar_store.delete(calendar_id)
    except ValueError as exc:
        raise bad_request(exc)
    if not deleted:
        raise HTTPException(status_code=404, detail="Calendar not found")
    return JSONResponse({"status": "ok"})


@app.post("/api/calendars/{calendar_id}/share")
async def share_calendar(request: Request, calendar_id: int):
    user = current_user(request)
    require_calendar_owner(user, calendar_id)
    data = await json_body(request)
    email = _string(data, "email")
    invitee = user_store.get_by_email(email)
    try:
        calendar = calendar_store.share(
            calendar_id, email, member_uid=invitee.uid if invitee else None
        )
    except ValueError as exc:
        raise bad_request(exc)
    if not calendar:
        raise HTTPException(status_code=404, detail="Calendar not found")
    notify_shared_emails(user, [email], calendar)
    return JSONResponse(calendar_json(calendar, user))


@app.post("/api/calendars/{calendar_id}/unshare")
async def unshare_calendar(request: Request, calendar_id: int):
    user = current_user(request)
    require_calendar_owner(user, calendar_id)
    data = await json_body(request)
    email = _string(data, "email")
    invitee = user_store.get_by_email(email)
    calendar = calendar_store.unshare(
        calendar_id, email, member_uid=invitee.uid if invitee else None
    )
    if not calendar:
        raise HTTPException(status_code=404, detail="Calendar not found")
    return JSONResponse(calendar_json(calendar, user))


@app.post("/api/events")
async def create_event(request: Request):
    user = current_user(request)
    data = await json_body(request)
    ev = event_from_payload(data, user)
    calendar = require_calendar_access(user, ev.calendar_id)
    try:
        ev = event_store.create(ev)
    except ValueError as exc:
        raise bad_request(exc)
    notification_store.create_new_event(ev, user.uid)
    if ev.is_shared and ev.shared_with:
        notify_shared_emails(user, ev.shared_with, calendar)
    return JSONResponse(event_json(ev, include_html=True), status_code=201)


@app.get("/api/events/{event_id}")
async def view_event(request: Request, event_id: int):
    user = current_user(request)
    ev = require_event_access(user, event_id, allow_shared=True)
    return JSONResponse(event_json(ev, include_html=True))


@app.get("/api/shared_events")
async def shared_events(request: Request):
    user = current_user(request)
    try:
        events = event_store.list_shared_with(user.email)
    except SQLAlchemyError:
        logger.exception("Failed to load events shared with %s", user.email)
        events = []
    return JSONResponse({"events": [event_json(e) for e in sort_by_start(events)]})


@app.post("/api/events/{event_id}/update")
async def update_event(request: Request, event_id: int):
    user = current_user(request)
    existing = require_event_access(user, event_id)
    data = await json_body(request)
    new_data = event_from_payload(data, user, existing)
    if new_data.calendar_id != existing.calendar_id:
        require_calendar_access(user, new_data.calendar_id)
    try:
        ev = event_store.update(event_id, new_data)
    except ValueError as exc:
        raise bad_request(exc)
    if not ev:
        raise HTTPException(status_code=404, detail="Event not found")
    return JSONResponse(event_json(ev, include_html=True))


@app.post("/api/events/{event_id}/delete")
async def delete_event(request: Request, event_id: int):
    user = current_user(request)
    require_event_access(user, event_id)
    if not event_store.delete(event_id):
        raise HTTPException(status_code=404, detail="Event not found")
    return JSONResponse({"status": "ok"})


@app.get("/api/day/{day}")
async def day_view(request: Request, day: str, calendars: str | None = None):
    user = current_user(request)
    d = _parse_day(day)
    bounds = day_bounds(d)
    events = events_in_range(load_events(active_calendar_ids(user, calendars)), bounds.start, bounds.end)
    return JSONResponse({"date": d.isoformat(), "events": day_json(events, d)})


@app.get("/api/week/{day}")
async def week_view(request: Request, day: str, calendars: str | None = None):
    user = current_user(request)
    bounds = week_bounds(_parse_day(day), settings_store.get_week_starts_on(user.uid))
    events = events_in_range(load_events(active_calendar_ids(user, calendars)), bounds.start, bounds.end)
    return JSONResponse(
        {
            "start": local_date(bounds.start).isoformat(),
            "days": [
                {"date": d.isoformat(), "events": day_json(events, d)}
                for d in days_in_range(bounds)
            ],
        }
    )


@app.get("/api/month/{day}")
async def month_view(request: Request, day: str, calendars: str | None = None):
    user = current_user(request)
    d = _parse_day(day)
    bounds = month_grid_bounds(d, settings_store.get_week_starts_on(user.uid))
    events = events_in_range(load_events(active_calendar_ids(user, calendars)), bounds.start, bounds.end)
    today = get_now().date()
    return JSONResponse(
        {
            "month": d.strftime("%Y-%m"),
            "days": [
                {
                    "date": cell.isoformat(),
                    "in_month": cell.month == d.month,
                    "is_today": cell == today,
                    "events": day_json(events, cell, with_layout=False),
                }
                for cell in days_in_range(bounds)
            ],
        }
    )


@app.get("/api/search")
async def search(request: Request, q: str = ""):
    user = current_user(request)
    results = search_events(aggregator, event_store, user, q)
    return JSONResponse({"results": [event_json(e) for e in results]})


@app.get("/api/notifications")
async def list_notifications(request: Request):
    user = current_user(request)
    notifications = notification_store.list_for_user(user.uid)
    return JSONResponse(
        {
            "notifications": [notification_json(n) for n in notifications],
            "unread": sum(1 for n in notifications if not n.read),
        }
    )


@app.post("/api/notifications/{notification_id}/read")
async def mark_notification_read(request: Request, notification_id: int):
    user = current_user(request)
    if not notification_store.mark_read(notification_id, user.uid):
        raise HTTPException(status_code=404, detail="Notification not found")
    return JSONResponse({"status": "ok"})


@app.post("/api/notifications/read_all")
async def mark_all_notifications_read(request: Request):
    user = current_user(request)
    return JSONResponse({"updated": notification_store.mark_all_read(user.uid)})


@app.websocket("/ws/events")
async def event_stream(websocket: WebSocket):
    uid = websocket.session.get("user")
    user = user_store.get(uid) if uid else None
    if not user:
        await websocket.close(code=1008)
        return
    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def deliver(events: list[Event]) -> None:
        payload = {"events": [event_json(e) for e in sort_by_start(events)]}
        loop.call_soon_threadsafe(queue.put_nowait, payload)

    def failed(exc: Exception) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, {"error": "Failed to load events"})

    live = LiveEvents(
        event_store,
        feed,
        deliver,
        failed,
        notification_store=notification_store,
        reminder_recipient=user.uid,
    )

    async def receive_selection() -> None:
        try:
            while True:
                data = await websocket.receive_json()
                requested = data.get("calendar_ids") if isinstance(data, dict) else None
                if not isinstance(requested, list):
                    await websocket.send_json({"error": "calendar_ids must be a list"})
                    continue
                allowed = set(aggregator.accessible_ids(user))
                ids = set()
                for cid in requested:
                    if isinstance(cid, int) and cid in allowed:
                        ids.add(cid)
                if not live.set_calendar_ids(ids):
                    deliver(live.events)
        except WebSocketDisconnect:
            pass
        finally:
            loop.call_soon_threadsafe(queue.put_nowait, None)

    receiver = asyncio.create_task(receive_selection())
    try:
        while True:
            payload = await queue.get()
            if payload is None:
                break
            await websocket.send_json(payload)
    finally:
        live.close()
        receiver.cancel()

"""Socket.IO fan-out for live attendee counts and organizer notifications.

Rooms:
- ``user_<id>``: every connection of one user.
- ``organizers``: connections authenticated as organizer or admin.
- ``event_<id>``: clients currently viewing an event (joined on request).

Client-originated events are treated as hints: anything broadcast is
re-read from the database or taken from the authenticated session, never from
the client payload.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from urllib.parse import parse_qs

import socketio
from starlette.concurrency import run_in_threadpool

from . import auth, database, errors, event_service, models
from .config import settings
from .logging_utils import log_event, log_exception, log_warning

ORGANIZERS_ROOM = "organizers"

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=settings.allowed_origins,
    ping_interval=settings.socket_ping_interval,
    ping_timeout=settings.socket_ping_timeout,
    logger=False,
    engineio_logger=False,
)

session_factory = database.SessionLocal


def room_for_user(user_id: int) -> str:
    return f"user_{int(user_id)}"


def room_for_event(event_id: int) -> str:
    return f"event_{int(event_id)}"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_event_id(value: Any) -> int | None:
    if isinstance(value, dict):
        value = value.get("eventId", value.get("event_id", value.get("id")))
    try:
        event_id = int(value)
    except (TypeError, ValueError):
        return None
    return event_id if event_id > 0 else None


def _extract_token(environ: dict[str, Any], auth_payload: Any | None) -> str | None:
    """Find the bearer token in the handshake auth payload, headers or query string."""

    if isinstance(auth_payload, dict):
        token = auth_payload.get("token")
        if isinstance(token, str) and token:
            return token

    header = environ.get("HTTP_AUTHORIZATION") if isinstance(environ, dict) else None
    if isinstance(header, str):
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer" and value:
            return value.strip()

    query_string = environ.get("QUERY_STRING", "") if isinstance(environ, dict) else ""
    if isinstance(query_string, (bytes, bytearray)):
        query_string = query_string.decode(errors="ignore")
    token = parse_qs(str(query_string)).get("token", [None])[0]
    if isinstance(token, str) and token:
        return token
    return None


def _load_identity(token: str) -> dict[str, Any]:
    db = session_factory()
    try:
        principal = auth.verify(token, db)
        return {"user_id": principal.id, "username": principal.user.username, "role": principal.role.value}
    finally:
        db.close()


def _load_approved_count(event_id: int) -> int:
    db = session_factory()
    try:
        return event_service.approved_count(db, event_id)
    finally:
        db.close()


def _load_event(event_id: int) -> dict[str, Any] | None:
    db = session_factory()
    try:
        return event_service.get_event(db, event_id).model_dump(mode="json")
    except errors.NotFound:
        return None
    finally:
        db.close()


async def _session(sid: str) -> dict[str, Any]:
    session = await sio.get_session(sid)
    return session if isinstance(session, dict) else {}


@sio.event
async def connect(sid: str, environ: dict[str, Any], auth_payload: Any | None = None):
    token = _extract_token(environ, auth_payload)
    if not token:
        log_warning("socket_auth_missing", sid=sid)
        raise socketio.exceptions.ConnectionRefusedError("Authentication token required")

    try:
        identity = await run_in_threadpool(_load_identity, token)
    except errors.AppError as exc:
        log_warning("socket_auth_failed", sid=sid, reason=exc.message)
        raise socketio.exceptions.ConnectionRefusedError("Invalid authentication token") from exc
    except Exception as exc:
        log_exception("socket_connect_error", sid=sid)
        raise socketio.exceptions.ConnectionRefusedError("server_error") from exc

    await sio.save_session(sid, identity)
    await sio.enter_room(sid, room_for_user(identity["user_id"]))
    if identity["role"] in (models.UserRole.organizer.value, models.UserRole.admin.value):
        await sio.enter_room(sid, ORGANIZERS_ROOM)
    log_event("socket_connected", sid=sid, user_id=identity["user_id"], role=identity["role"])


@sio.event
async def disconnect(sid: str, reason: Any = None):
    log_event("socket_disconnected", sid=sid, reason=str(reason) if reason is not None else None)


@sio.event
async def join_event(sid: str, data: Any):
    event_id = _parse_event_id(data)
    if event_id is None:
        await sio.emit("error", {"message": "Invalid event id"}, to=sid)
        return
    await sio.enter_room(sid, room_for_event(event_id))


@sio.event
async def leave_event(sid: str, data: Any):
    event_id = _parse_event_id(data)
    if event_id is None:
        return
    await sio.leave_room(sid, room_for_event(event_id))


@sio.event
async def registration_update(sid: str, data: Any):
    session = await _session(sid)
    if session.get("role") not in (models.UserRole.organizer.value, models.UserRole.admin.value):
        await sio.emit("error", {"message": "Unauthorized to update registrations"}, to=sid)
        return
    event_id = _parse_event_id(data)
    if event_id is None:
        await sio.emit("error", {"message": "Invalid event id"}, to=sid)
        return
    try:
        attendee_count = await run_in_threadpool(_load_approved_count, event_id)
    except Exception:
        log_exception("socket_registration_update_failed", sid=sid, event_id=event_id)
        await sio.emit("error", {"message": "Error updating registration"}, to=sid)
        return
    payload = {
        "eventId": event_id,
        "attendeeCount": attendee_count,
        "updatedBy": session.get("username"),
        "timestamp": _timestamp(),
    }
    if isinstance(data, dict):
        payload["registrationId"] = data.get("registrationId")
        payload["status"] = data.get("status")
    await sio.emit("attendee_update", payload, room=room_for_event(event_id))


@sio.event
async def event_created(sid: str, data: Any):
    session = await _session(sid)
    event_id = _parse_event_id(data)
    if event_id is None:
        return
    event = await run_in_threadpool(_load_event, event_id)
    if event is None:
        return
    await sio.emit(
        "new_event",
        {"event": event, "createdBy": session.get("username"), "timestamp": _timestamp()},
    )


@sio.event
async def new_registration(sid: str, data: Any):
    session = await _session(sid)
    event_id = _parse_event_id(data)
    if event_id is None:
        return
    await sio.emit(
        "registration_notification",
        {
            "eventId": event_id,
            "userId": session.get("user_id"),
            "registeredBy": session.get("username"),
            "timestamp": _timestamp(),
        },
        room=ORGANIZERS_ROOM,
    )


class Notifier:
    """Server-side publisher used by the REST handlers after a mutation commits."""

    def __init__(self, server: socketio.AsyncServer):
        self.server = server

    async def _emit(self, event: str, payload: dict[str, Any], room: str | None = None) -> None:
        payload = {**payload, "timestamp": _timestamp()}
        try:
            await self.server.emit(event, payload, room=room)
        except Exception as exc:  # noqa: BLE001
            log_warning("socket_broadcast_failed", socket_event=event, room=room, error=str(exc))

    async def attendee_update(
        self,
        event_id: int,
        attendee_count: int,
        status: str | None = None,
        registration_id: int | None = None,
    ) -> None:
        payload: dict[str, Any] = {"eventId": event_id, "attendeeCount": attendee_count, "status": status}
        if registration_id is not None:
            payload["registrationId"] = registration_id
        await self._emit("attendee_update", payload, room=room_for_event(event_id))

    async def new_event(self, event: dict[str, Any], created_by: str | None = None) -> None:
        await self._emit("new_event", {"event": event, "createdBy": created_by})

    async def registration_notification(self, event_id: int, user_id: int, registered_by: str | None = None) -> None:
        await self._emit(
            "registration_notification",
            {"eventId": event_id, "userId": user_id, "registeredBy": registered_by},
            room=ORGANIZERS_ROOM,
        )


notifier = Notifier(sio)


def get_notifier() -> Notifier:
    return notifier

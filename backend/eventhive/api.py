from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager
import time
import logging
from pathlib import Path

import socketio
from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import or_, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import auth, errors, event_service, models, realtime, registration_service, schemas
from .auth import Principal
from .config import settings
from .database import engine, get_db, is_statement_timeout
from .logging_utils import configure_logging, RequestIdMiddleware, log_event, log_exception, log_warning
from .realtime import Notifier, get_notifier

configure_logging()

_STARTED_AT = time.monotonic()


def _run_migrations():
    """Run Alembic migrations to latest head. Controlled via settings.auto_run_migrations."""
    try:
        from alembic import command
        from alembic.config import Config
        base_dir = Path(__file__).resolve().parent.parent
        alembic_ini = base_dir / 'alembic.ini'
        if not alembic_ini.exists():
            logging.warning('alembic.ini not found; skipping migrations')
            return
        cfg = Config(str(alembic_ini))
        cfg.set_main_option('script_location', str(base_dir / 'alembic'))
        command.upgrade(cfg, 'head')
        logging.info('Migrations applied to head')
    except Exception:
        logging.exception('Failed to run migrations on startup')
        raise


def _check_configuration():
    if not settings.database_url:
        raise RuntimeError('DATABASE_URL is required')
    if not settings.secret_key:
        raise RuntimeError('SECRET_KEY is required')
    if settings.debug:
        logging.warning('DEBUG is on; internal error details will be returned to clients')


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _check_configuration()
    if settings.auto_run_migrations:
        _run_migrations()
    elif settings.auto_create_tables:
        models.Base.metadata.create_all(bind=engine)
    log_event("api_started", host=settings.host, port=settings.port)
    yield


app = FastAPI(title="EventHive API", version="1.0.0", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins or [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(status_code: int, message: str, errors_list: Optional[list] = None) -> JSONResponse:
    content = {"success": False, "message": message}
    if errors_list:
        content["errors"] = errors_list
    return JSONResponse(status_code=status_code, content=content)


def _format_validation_error(error: dict) -> str:
    location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
    message = error.get("msg", "Invalid value")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return f"{'.'.join(location)}: {message}" if location else message


@app.exception_handler(errors.AppError)
async def app_error_handler(request: Request, exc: errors.AppError):
    return _error_response(exc.status_code, exc.message, exc.errors)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error_response(
        status.HTTP_400_BAD_REQUEST,
        errors.ValidationFailed.default_message,
        [_format_validation_error(error) for error in exc.errors()],
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == status.HTTP_404_NOT_FOUND and exc.detail == "Not Found":
        message = "Route not found"
    else:
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return _error_response(exc.status_code, message)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    if is_statement_timeout(exc):
        log_warning("db_statement_timeout", path=request.url.path)
        return _error_response(errors.Timeout.status_code, errors.Timeout.default_message)
    return await unhandled_exception_handler(request, exc)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_exception("unhandled_error", path=request.url.path, method=request.method)
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        str(exc) if settings.debug else errors.Internal.default_message,
    )


_RATE_LIMIT_STORE: dict[str, list[float]] = {}


def _enforce_rate_limit(
    action: str,
    request: Request | None = None,
    limit: int | None = None,
    window_seconds: int | None = None,
    identifier: str | None = None,
) -> None:
    limit = limit or settings.auth_rate_limit
    window_seconds = window_seconds or settings.auth_rate_window_seconds
    now = time.time()
    identity = identifier or (request.client.host if request and request.client else "unknown")
    key = f"{action}:{identity}"
    entries = _RATE_LIMIT_STORE.get(key, [])
    entries = [ts for ts in entries if now - ts < window_seconds]
    if len(entries) >= limit:
        log_warning("rate_limited", action=action, identity=identity)
        raise errors.RateLimited()
    entries.append(now)
    _RATE_LIMIT_STORE[key] = entries


require_event_owner = auth.require_ownership_or_admin(models.Event, owner_column="created_by", id_param="event_id")


@app.get("/")
def read_root():
    return {"success": True, "message": "EventHive API", "version": app.version}


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    payload = {
        "success": True,
        "message": "Server is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - _STARTED_AT, 3),
        "database": "ok",
    }
    try:
        db.execute(text("SELECT 1"))
    except OperationalError as exc:
        log_warning("health_database_unavailable", error=str(exc.orig))
        payload.update(success=False, message="Database unavailable", database="unavailable")
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=payload)
    return payload


# --- auth -----------------------------------------------------------------


@app.post(
    "/api/auth/register",
    response_model=schemas.Envelope[schemas.AuthData],
    status_code=status.HTTP_201_CREATED,
)
def register(user: schemas.UserRegister, request: Request, db: Session = Depends(get_db)):
    _enforce_rate_limit("register", request=request)
    existing = (
        db.query(models.User)
        .filter(or_(models.User.email == user.email, models.User.username == user.username))
        .first()
    )
    if existing:
        raise errors.Conflict("User with this email or username already exists")

    new_user = models.User(
        username=user.username,
        email=user.email,
        password_hash=auth.get_password_hash(user.password),
        role=models.UserRole(user.role),
    )
    db.add(new_user)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        log_warning("register_conflict", username=user.username)
        raise errors.Conflict("User with this email or username already exists") from exc
    db.refresh(new_user)
    log_event("user_registered", user_id=new_user.id, username=new_user.username, role=new_user.role.value)

    return {
        "message": "User registered successfully",
        "data": {"user": new_user, "token": auth.create_access_token(new_user)},
    }


@app.post("/api/auth/login", response_model=schemas.Envelope[schemas.AuthData])
def login(user_credentials: schemas.UserLogin, request: Request, db: Session = Depends(get_db)):
    _enforce_rate_limit("login", request=request)
    try:
        user = auth.authenticate_user(db, user_credentials.email, user_credentials.password)
    except errors.InvalidCredentials:
        log_warning("login_failed", email=user_credentials.email)
        raise
    log_event("login_success", user_id=user.id, role=user.role.value)
    return {"message": "Login successful", "data": {"user": user, "token": auth.create_access_token(user)}}


@app.get("/api/auth/me", response_model=schemas.Envelope[schemas.UserData])
def get_me(current_user: models.User = Depends(auth.get_current_user)):
    return {"data": {"user": current_user}}


@app.put("/api/auth/profile", response_model=schemas.Envelope[schemas.UserData])
def update_profile(
    payload: schemas.ProfileUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    clashes = []
    if payload.username:
        clashes.append(models.User.username == payload.username)
    if payload.email:
        clashes.append(models.User.email == payload.email)
    taken = db.query(models.User).filter(or_(*clashes), models.User.id != current_user.id).first()
    if taken:
        raise errors.Conflict("Username or email already taken")

    if payload.username:
        current_user.username = payload.username
    if payload.email:
        current_user.email = payload.email
    current_user.updated_at = datetime.now(timezone.utc)
    db.add(current_user)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        log_warning("profile_update_conflict", user_id=current_user.id)
        raise errors.Conflict("Username or email already taken") from exc
    db.refresh(current_user)
    log_event("profile_updated", user_id=current_user.id)
    return {"message": "Profile updated successfully", "data": {"user": current_user}}


@app.put("/api/auth/change-password", response_model=schemas.Envelope)
def change_password(
    payload: schemas.PasswordChange,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    if not auth.verify_password(payload.current_password, current_user.password_hash):
        log_warning("password_change_failed", user_id=current_user.id)
        raise errors.InvalidCredentials("Current password is incorrect")
    current_user.password_hash = auth.get_password_hash(payload.new_password)
    current_user.updated_at = datetime.now(timezone.utc)
    db.add(current_user)
    db.commit()
    log_event("password_changed", user_id=current_user.id)
    return {"message": "Password changed successfully"}


# --- events ---------------------------------------------------------------


@app.get("/api/events", response_model=schemas.Envelope[schemas.EventListData])
def list_events(
    search: Optional[str] = None,
    upcoming: bool = False,
    page: int = Query(1),
    limit: int = Query(10),
    db: Session = Depends(get_db),
):
    page, limit = event_service.clamp_page(page, limit)
    items, total = event_service.list_events(db, search=search, upcoming_only=upcoming, page=page, limit=limit)
    return {"data": {"events": items, "pagination": event_service.pagination(page, limit, total)}}


@app.get("/api/events/my-events", response_model=schemas.Envelope[schemas.EventListData])
def my_events(
    page: int = Query(1),
    limit: int = Query(10),
    db: Session = Depends(get_db),
    principal: Principal = Depends(auth.require_organizer),
):
    page, limit = event_service.clamp_page(page, limit)
    items, total = event_service.list_events_by_creator(db, principal.id, page=page, limit=limit)
    return {"data": {"events": items, "pagination": event_service.pagination(page, limit, total)}}


@app.get("/api/events/{event_id}", response_model=schemas.Envelope[schemas.EventData])
def get_event(event_id: int, db: Session = Depends(get_db)):
    return {"data": {"event": event_service.get_event(db, event_id)}}


@app.post(
    "/api/events",
    response_model=schemas.Envelope[schemas.EventData],
    status_code=status.HTTP_201_CREATED,
)
def create_event(
    payload: schemas.EventWrite,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(auth.require_organizer),
    notifier: Notifier = Depends(get_notifier),
):
    event = event_service.create_event(db, payload, principal.id)
    log_event("event_created", event_id=event.id, user_id=principal.id)
    background_tasks.add_task(notifier.new_event, event.model_dump(mode="json"), principal.user.username)
    return {"message": "Event created successfully", "data": {"event": event}}


@app.put("/api/events/{event_id}", response_model=schemas.Envelope[schemas.EventData])
def update_event(
    event_id: int,
    payload: schemas.EventWrite,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(auth.require_organizer),
    _owner: Principal = Depends(require_event_owner),
    notifier: Notifier = Depends(get_notifier),
):
    event = event_service.update_event(db, event_id, payload)
    log_event("event_updated", event_id=event.id, user_id=principal.id)
    background_tasks.add_task(notifier.attendee_update, event.id, event.current_attendees, "event_updated")
    return {"message": "Event updated successfully", "data": {"event": event}}


@app.delete("/api/events/{event_id}", response_model=schemas.Envelope)
def delete_event(
    event_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(auth.require_organizer),
    _owner: Principal = Depends(require_event_owner),
):
    removed = event_service.delete_event(db, event_id)
    log_event("event_deleted", event_id=event_id, user_id=principal.id, registrations_removed=removed)
    return {"message": "Event deleted successfully"}


# --- registrations --------------------------------------------------------


@app.get("/api/registrations", response_model=schemas.Envelope[schemas.MyRegistrationListData])
def my_registrations(
    status_filter: Optional[models.RegistrationStatus] = Query(None, alias="status"),
    page: int = Query(1),
    limit: int = Query(10),
    db: Session = Depends(get_db),
    principal: Principal = Depends(auth.require_student),
):
    page, limit = event_service.clamp_page(page, limit)
    items, total = registration_service.list_for_user(
        db, principal.id, status=status_filter, page=page, limit=limit
    )
    return {"data": {"registrations": items, "pagination": event_service.pagination(page, limit, total)}}


@app.post(
    "/api/registrations",
    response_model=schemas.Envelope[schemas.RegistrationData],
    status_code=status.HTTP_201_CREATED,
)
def register_for_event(
    payload: schemas.RegistrationCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(auth.require_student),
    notifier: Notifier = Depends(get_notifier),
):
    registration = registration_service.register(db, payload.event_id, principal.id)
    log_event("event_registered", event_id=payload.event_id, user_id=principal.id, registration_id=registration.id)
    background_tasks.add_task(
        notifier.registration_notification, payload.event_id, principal.id, principal.user.username
    )
    return {"message": "Registration submitted successfully", "data": {"registration": registration}}


@app.get("/api/registrations/manage", response_model=schemas.Envelope[schemas.ManagedRegistrationListData])
def manage_registrations(
    event_id: Optional[int] = None,
    status_filter: Optional[models.RegistrationStatus] = Query(None, alias="status"),
    page: int = Query(1),
    limit: int = Query(10),
    db: Session = Depends(get_db),
    principal: Principal = Depends(auth.require_organizer),
):
    page, limit = event_service.clamp_page(page, limit)
    items, total = registration_service.list_managed(
        db, principal, event_id=event_id, status=status_filter, page=page, limit=limit
    )
    return {"data": {"registrations": items, "pagination": event_service.pagination(page, limit, total)}}


@app.put("/api/registrations/bulk-status", response_model=schemas.Envelope[schemas.BulkStatusData])
def bulk_update_status(
    payload: schemas.BulkStatusUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(auth.require_organizer),
    notifier: Notifier = Depends(get_notifier),
):
    registrations = registration_service.bulk_set_status(db, payload.registration_ids, payload.status, principal)
    counts = registration_service.approved_counts(db, (registration.event_id for registration in registrations))
    log_event(
        "registrations_bulk_status_updated",
        user_id=principal.id,
        status=payload.status.value,
        updated_count=len(registrations),
        event_ids=sorted(counts),
    )
    for event_id, count in counts.items():
        background_tasks.add_task(notifier.attendee_update, event_id, count, payload.status.value)
    return {
        "message": f"{len(registrations)} registrations updated to {payload.status.value}",
        "data": {"updated_count": len(registrations), "status": payload.status, "registrations": registrations},
    }


@app.put("/api/registrations/{registration_id}/status", response_model=schemas.Envelope[schemas.RegistrationData])
def update_registration_status(
    registration_id: int,
    payload: schemas.RegistrationStatusUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(auth.require_organizer),
    notifier: Notifier = Depends(get_notifier),
):
    registration = registration_service.set_status(db, registration_id, payload.status, principal)
    count = event_service.approved_count(db, registration.event_id)
    log_event(
        "registration_status_updated",
        registration_id=registration.id,
        event_id=registration.event_id,
        status=registration.status,
        user_id=principal.id,
    )
    background_tasks.add_task(
        notifier.attendee_update, registration.event_id, count, registration.status, registration.id
    )
    return {
        "message": f"Registration {registration.status} successfully",
        "data": {"registration": registration},
    }


@app.delete("/api/registrations/{registration_id}", response_model=schemas.Envelope)
def cancel_registration(
    registration_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(auth.require_student),
    notifier: Notifier = Depends(get_notifier),
):
    removed = registration_service.cancel(db, registration_id, principal.id)
    count = event_service.approved_count(db, removed.event_id)
    log_event("registration_cancelled", registration_id=removed.id, event_id=removed.event_id, user_id=principal.id)
    background_tasks.add_task(notifier.attendee_update, removed.event_id, count, "cancelled", removed.id)
    return {"message": "Registration cancelled successfully"}


asgi_app = socketio.ASGIApp(realtime.sio, other_asgi_app=app)

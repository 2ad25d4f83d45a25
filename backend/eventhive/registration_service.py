"""Registration approval workflow.

A registration starts as ``pending`` and is then moved freely between
``approved`` and ``rejected`` by the event's creator or an admin. Capacity is
checked twice: loosely when a student registers, and authoritatively (with the
event row locked) whenever a registration becomes ``approved``.
"""

from collections import Counter
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import errors, models, schemas
from .auth import Principal
from .event_service import approved_count, normalize_dt

APPROVED = models.RegistrationStatus.approved.value


def _status_value(status) -> str:
    return status.value if isinstance(status, models.RegistrationStatus) else str(status)


def _lock_event(db: Session, event_id: int) -> Optional[models.Event]:
    # FOR UPDATE is a no-op on SQLite, which serializes writers anyway.
    return db.query(models.Event).filter(models.Event.id == event_id).with_for_update().first()


def register(db: Session, event_id: int, user_id: int) -> models.Registration:
    event = db.query(models.Event).filter(models.Event.id == event_id).first()
    if not event:
        raise errors.NotFound("Event not found")
    if normalize_dt(event.date) <= datetime.now(timezone.utc):
        raise errors.InvalidState("Cannot register for past events")

    existing = (
        db.query(models.Registration)
        .filter(models.Registration.event_id == event_id, models.Registration.user_id == user_id)
        .first()
    )
    if existing:
        raise errors.Conflict(f"Already registered for this event with status: {existing.status}")

    if approved_count(db, event_id) >= event.max_attendees:
        raise errors.Full("Event is full")

    now = datetime.now(timezone.utc)
    registration = models.Registration(
        event_id=event_id,
        user_id=user_id,
        status=models.RegistrationStatus.pending.value,
        registered_at=now,
        updated_at=now,
    )
    db.add(registration)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = (
            db.query(models.Registration)
            .filter(models.Registration.event_id == event_id, models.Registration.user_id == user_id)
            .first()
        )
        if existing is None:
            raise
        raise errors.Conflict(f"Already registered for this event with status: {existing.status}")
    db.refresh(registration)
    return registration


def cancel(db: Session, registration_id: int, user_id: int) -> schemas.RegistrationResponse:
    registration = (
        db.query(models.Registration)
        .filter(models.Registration.id == registration_id, models.Registration.user_id == user_id)
        .first()
    )
    if not registration:
        raise errors.NotFound("Registration not found")
    removed = schemas.RegistrationResponse.model_validate(registration)
    db.delete(registration)
    db.commit()
    return removed


def list_for_user(
    db: Session,
    user_id: int,
    *,
    status: Optional[models.RegistrationStatus] = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[schemas.MyRegistrationResponse], int]:
    query = db.query(models.Registration).filter(models.Registration.user_id == user_id)
    if status is not None:
        query = query.filter(models.Registration.status == _status_value(status))
    total = query.count()

    rows = (
        query.join(models.Event, models.Event.id == models.Registration.event_id)
        .join(models.User, models.User.id == models.Event.created_by)
        .add_entity(models.Event)
        .add_columns(models.User.username)
        .order_by(models.Registration.registered_at.desc(), models.Registration.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    items = [
        schemas.MyRegistrationResponse(
            id=registration.id,
            status=registration.status,
            registered_at=normalize_dt(registration.registered_at),
            updated_at=normalize_dt(registration.updated_at),
            event=schemas.RegistrationEventSummary(
                id=event.id,
                title=event.title,
                description=event.description,
                date=normalize_dt(event.date),
                location=event.location,
                max_attendees=event.max_attendees,
                organizer_username=organizer_username,
            ),
        )
        for registration, event, organizer_username in rows
    ]
    return items, total


def list_managed(
    db: Session,
    principal: Principal,
    *,
    event_id: Optional[int] = None,
    status: Optional[models.RegistrationStatus] = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[schemas.ManagedRegistrationResponse], int]:
    query = db.query(models.Registration).join(models.Event, models.Event.id == models.Registration.event_id)
    if not principal.is_admin:
        query = query.filter(models.Event.created_by == principal.id)
    if event_id is not None:
        query = query.filter(models.Registration.event_id == event_id)
    if status is not None:
        query = query.filter(models.Registration.status == _status_value(status))
    total = query.count()

    rows = (
        query.join(models.User, models.User.id == models.Registration.user_id)
        .add_columns(models.Event.title, models.Event.date)
        .add_entity(models.User)
        .order_by(models.Registration.registered_at.desc(), models.Registration.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    items = [
        schemas.ManagedRegistrationResponse(
            id=registration.id,
            status=registration.status,
            registered_at=normalize_dt(registration.registered_at),
            updated_at=normalize_dt(registration.updated_at),
            event_id=registration.event_id,
            event_title=event_title,
            event_date=normalize_dt(event_date),
            user=schemas.RegistrantSummary(id=user.id, username=user.username, email=user.email),
        )
        for registration, event_title, event_date, user in rows
    ]
    return items, total


def set_status(
    db: Session,
    registration_id: int,
    status: models.RegistrationStatus,
    principal: Principal,
) -> models.Registration:
    new_status = _status_value(status)
    registration = db.query(models.Registration).filter(models.Registration.id == registration_id).first()
    if not registration:
        raise errors.NotFound("Registration not found")

    try:
        event = _lock_event(db, registration.event_id)
        if event is None:
            raise errors.NotFound("Event not found")
        db.refresh(registration)
        if not principal.is_admin and event.created_by != principal.id:
            raise errors.Forbidden("You can only manage registrations for your own events")

        if new_status == APPROVED:
            if approved_count(db, event.id) >= event.max_attendees:
                raise errors.Full("Event is full, cannot approve more registrations")

        registration.status = new_status
        registration.updated_at = datetime.now(timezone.utc)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(registration)
    return registration


def bulk_set_status(
    db: Session,
    registration_ids: Iterable[int],
    status: models.RegistrationStatus,
    principal: Principal,
) -> list[models.Registration]:
    """Apply one status to many registrations, all or nothing."""
    try:
        new_status = models.RegistrationStatus(_status_value(status)).value
    except ValueError:
        raise errors.ValidationFailed("Invalid status. Must be pending, approved, or rejected")

    ids = list(dict.fromkeys(int(registration_id) for registration_id in registration_ids))
    if not ids:
        raise errors.ValidationFailed("Registration IDs array is required")

    try:
        rows = (
            db.query(models.Registration, models.Event.created_by)
            .join(models.Event, models.Event.id == models.Registration.event_id)
            .filter(models.Registration.id.in_(ids))
            .all()
        )
        if len(rows) != len(ids):
            found = {registration.id for registration, _ in rows}
            missing = [registration_id for registration_id in ids if registration_id not in found]
            raise errors.NotFound(f"Registrations not found: {', '.join(str(i) for i in missing)}")

        if not principal.is_admin and any(created_by != principal.id for _, created_by in rows):
            raise errors.Forbidden("You can only manage registrations for your own events")

        if new_status == APPROVED:
            newly_approved = Counter(
                registration.event_id for registration, _ in rows if registration.status != APPROVED
            )
            for event_id, incoming in newly_approved.items():
                event = _lock_event(db, event_id)
                if approved_count(db, event_id) + incoming > event.max_attendees:
                    raise errors.Full(f"Event {event_id} does not have capacity for {incoming} more approvals")

        now = datetime.now(timezone.utc)
        registrations = [registration for registration, _ in rows]
        for registration in registrations:
            registration.status = new_status
            registration.updated_at = now
        db.commit()
    except Exception:
        db.rollback()
        raise

    for registration in registrations:
        db.refresh(registration)
    return sorted(registrations, key=lambda registration: ids.index(registration.id))


def approved_counts(db: Session, event_ids: Iterable[int]) -> dict[int, int]:
    event_ids = list(set(event_ids))
    if not event_ids:
        return {}
    rows = (
        db.query(models.Registration.event_id, func.count(models.Registration.id))
        .filter(models.Registration.event_id.in_(event_ids), models.Registration.status == APPROVED)
        .group_by(models.Registration.event_id)
        .all()
    )
    counts = {event_id: 0 for event_id in event_ids}
    counts.update({event_id: int(count) for event_id, count in rows})
    return counts

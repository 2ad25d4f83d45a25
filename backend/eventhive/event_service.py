from datetime import datetime, timezone
import math
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from . import errors, models, schemas
from .schemas import normalize_dt

MAX_PAGE_SIZE = 100


def clamp_page(page: int, limit: int) -> tuple[int, int]:
    return max(page, 1), max(1, min(limit, MAX_PAGE_SIZE))


def pagination(page: int, limit: int, total: int) -> schemas.Pagination:
    return schemas.Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if limit else 0)


def approved_count(db: Session, event_id: int) -> int:
    return (
        db.query(func.count(models.Registration.id))
        .filter(
            models.Registration.event_id == event_id,
            models.Registration.status == models.RegistrationStatus.approved.value,
        )
        .scalar()
    ) or 0


def _events_with_counts_query(db: Session, base_query=None):
    if base_query is None:
        base_query = db.query(models.Event)
    attendees_subquery = (
        db.query(
            models.Registration.event_id,
            func.count(models.Registration.id).label("current_attendees"),
        )
        .filter(models.Registration.status == models.RegistrationStatus.approved.value)
        .group_by(models.Registration.event_id)
        .subquery()
    )
    return (
        base_query.outerjoin(attendees_subquery, models.Event.id == attendees_subquery.c.event_id)
        .outerjoin(models.User, models.User.id == models.Event.created_by)
        .add_columns(
            func.coalesce(attendees_subquery.c.current_attendees, 0).label("current_attendees"),
            models.User.username.label("created_by_username"),
        )
    )


def serialize_event(
    event: models.Event,
    current_attendees: int,
    created_by_username: Optional[str] = None,
    now: Optional[datetime] = None,
) -> schemas.EventResponse:
    now = now or datetime.now(timezone.utc)
    event_date = normalize_dt(event.date)
    current_attendees = int(current_attendees or 0)
    if created_by_username is None and event.creator is not None:
        created_by_username = event.creator.username
    return schemas.EventResponse(
        id=event.id,
        title=event.title,
        description=event.description,
        date=event_date,
        location=event.location,
        max_attendees=event.max_attendees,
        created_by=event.created_by,
        created_by_username=created_by_username,
        created_at=normalize_dt(event.created_at),
        updated_at=normalize_dt(event.updated_at),
        current_attendees=current_attendees,
        is_full=current_attendees >= event.max_attendees,
        status="upcoming" if event_date > now else "past",
    )


def _page_of_events(db: Session, base_query, page: int, limit: int) -> tuple[list[schemas.EventResponse], int]:
    total = base_query.count()
    query = _events_with_counts_query(db, base_query.order_by(models.Event.date.asc(), models.Event.id.asc()))
    rows = query.offset((page - 1) * limit).limit(limit).all()
    now = datetime.now(timezone.utc)
    return [serialize_event(event, count, username, now=now) for event, count, username in rows], total


def list_events(
    db: Session,
    *,
    search: Optional[str] = None,
    upcoming_only: bool = False,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[schemas.EventResponse], int]:
    query = db.query(models.Event)
    if search:
        pattern = f"%{search.lower()}%"
        query = query.filter(
            or_(
                func.lower(models.Event.title).like(pattern),
                func.lower(func.coalesce(models.Event.description, "")).like(pattern),
            )
        )
    if upcoming_only:
        query = query.filter(models.Event.date > datetime.now(timezone.utc))
    return _page_of_events(db, query, page, limit)


def list_events_by_creator(
    db: Session, creator_id: int, *, page: int = 1, limit: int = 10
) -> tuple[list[schemas.EventResponse], int]:
    query = db.query(models.Event).filter(models.Event.created_by == creator_id)
    return _page_of_events(db, query, page, limit)


def get_event(db: Session, event_id: int) -> schemas.EventResponse:
    row = _events_with_counts_query(db, db.query(models.Event).filter(models.Event.id == event_id)).first()
    if not row:
        raise errors.NotFound("Event not found")
    event, count, username = row
    return serialize_event(event, count, username)


def create_event(db: Session, fields: schemas.EventWrite, creator_id: int) -> schemas.EventResponse:
    now = datetime.now(timezone.utc)
    event = models.Event(
        title=fields.title,
        description=fields.description,
        date=normalize_dt(fields.date),
        location=fields.location,
        max_attendees=fields.max_attendees,
        created_by=creator_id,
        created_at=now,
        updated_at=now,
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    return serialize_event(event, 0)


def update_event(db: Session, event_id: int, fields: schemas.EventWrite) -> schemas.EventResponse:
    event = db.query(models.Event).filter(models.Event.id == event_id).first()
    if not event:
        raise errors.NotFound("Event not found")

    event.title = fields.title
    event.description = fields.description
    event.date = normalize_dt(fields.date)
    event.location = fields.location
    event.max_attendees = fields.max_attendees
    event.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(event)
    return serialize_event(event, approved_count(db, event.id))


def delete_event(db: Session, event_id: int) -> int:
    """Delete the event and, by cascade, its registrations; returns how many registrations went with it."""
    event = db.query(models.Event).filter(models.Event.id == event_id).first()
    if not event:
        raise errors.NotFound("Event not found")
    registrations = (
        db.query(func.count(models.Registration.id)).filter(models.Registration.event_id == event_id).scalar()
    ) or 0
    db.delete(event)
    db.commit()
    return registrations

from datetime import datetime, timedelta, timezone

import pytest
from starlette.requests import Request

from eventhive import auth, errors, models


def _request(path_params):
    return Request({"type": "http", "method": "GET", "path": "/", "headers": [], "path_params": path_params})


def _principal(helpers, username, role):
    user = helpers["make_user"](username, f"{username}@campus.edu", role=role)
    return auth.Principal(user=user, role=role)


def _event_for(helpers, owner):
    event = models.Event(title="Owned", date=datetime.now(timezone.utc) + timedelta(days=1), max_attendees=5, created_by=owner.id)
    helpers["db"].add(event)
    helpers["db"].commit()
    return event


def test_require_role_lists_required_roles(helpers):
    student = _principal(helpers, "stud", models.UserRole.student)
    organizer = _principal(helpers, "org", models.UserRole.organizer)

    assert auth.require_organizer(principal=organizer) is organizer
    with pytest.raises(errors.Forbidden) as excinfo:
        auth.require_organizer(principal=student)
    assert excinfo.value.message == "Access denied. Required roles: organizer, admin"

    with pytest.raises(errors.Forbidden):
        auth.require_admin(principal=organizer)
    assert auth.require_student(principal=student) is student


def test_ownership_dependency(helpers):
    db = helpers["db"]
    owner = _principal(helpers, "owner", models.UserRole.organizer)
    other = _principal(helpers, "other", models.UserRole.organizer)
    admin = _principal(helpers, "root", models.UserRole.admin)
    event = _event_for(helpers, owner.user)

    check = auth.require_ownership_or_admin(models.Event, owner_column="created_by", id_param="event_id")
    params = {"event_id": str(event.id)}

    assert check(request=_request(params), principal=owner, db=db) is owner
    assert check(request=_request(params), principal=admin, db=db) is admin
    with pytest.raises(errors.Forbidden):
        check(request=_request(params), principal=other, db=db)
    with pytest.raises(errors.NotFound):
        check(request=_request({"event_id": "123456"}), principal=other, db=db)
    with pytest.raises(errors.NotFound):
        check(request=_request({"event_id": "abc"}), principal=other, db=db)


def test_admin_can_edit_any_event_over_http(helpers):
    client = helpers["client"]
    organizer = helpers["register_user"]("org", "org@campus.edu", role="organizer")
    event = helpers["create_event"](organizer)
    helpers["make_user"]("root", "root@campus.edu")
    admin = helpers["login"]("root@campus.edu")

    resp = client.put(
        f"/api/events/{event['id']}",
        json={"title": "Admin Edit", "date": helpers["future_time"](days=6)},
        headers=helpers["auth_header"](admin),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["event"]["created_by"] == event["created_by"]


def test_my_events_rejects_students(helpers):
    student = helpers["register_user"]("stud", "stud@campus.edu")
    resp = helpers["client"].get("/api/events/my-events", headers=helpers["auth_header"](student))
    assert resp.status_code == 403

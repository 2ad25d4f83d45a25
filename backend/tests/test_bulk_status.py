from eventhive import models


def _bulk(helpers, token, ids, status):
    return helpers["client"].put(
        "/api/registrations/bulk-status",
        json={"registration_ids": ids, "status": status},
        headers=helpers["auth_header"](token),
    )


def _statuses(helpers):
    db = helpers["db"]
    db.expire_all()
    return {r.id: r.status for r in db.query(models.Registration).all()}


def _students(helpers, count):
    return [helpers["register_user"](f"stud{i}", f"stud{i}@campus.edu") for i in range(count)]


def test_bulk_approve_updates_every_row(helpers):
    organizer = helpers["register_user"]("org", "org@campus.edu", role="organizer")
    event = helpers["create_event"](organizer, max_attendees=5)
    registrations = [helpers["register_for"](token, event["id"]) for token in _students(helpers, 3)]
    ids = [r["id"] for r in registrations]

    resp = _bulk(helpers, organizer, ids + [ids[0]], "approved")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["updated_count"] == 3
    assert data["status"] == "approved"
    assert [r["id"] for r in data["registrations"]] == ids
    assert set(_statuses(helpers).values()) == {"approved"}

    pushes = helpers["notifier"].of("attendee_update")
    assert pushes[-1]["event_id"] == event["id"]
    assert pushes[-1]["attendee_count"] == 3


def test_bulk_is_all_or_nothing_when_one_row_is_foreign(helpers):
    mine = helpers["register_user"]("mine", "mine@campus.edu", role="organizer")
    theirs = helpers["register_user"]("theirs", "theirs@campus.edu", role="organizer")
    my_event = helpers["create_event"](mine)
    their_event = helpers["create_event"](theirs)
    student_a, student_b = _students(helpers, 2)
    own = helpers["register_for"](student_a, my_event["id"])
    foreign = helpers["register_for"](student_b, their_event["id"])

    resp = _bulk(helpers, mine, [own["id"], foreign["id"]], "approved")
    assert resp.status_code == 403
    assert _statuses(helpers) == {own["id"]: "pending", foreign["id"]: "pending"}


def test_bulk_missing_id_is_not_found_and_mutates_nothing(helpers):
    organizer = helpers["register_user"]("org", "org@campus.edu", role="organizer")
    event = helpers["create_event"](organizer)
    (student,) = _students(helpers, 1)
    registration = helpers["register_for"](student, event["id"])

    resp = _bulk(helpers, organizer, [registration["id"], 9999], "rejected")
    assert resp.status_code == 404
    assert "9999" in resp.json()["message"]
    assert _statuses(helpers) == {registration["id"]: "pending"}


def test_bulk_approve_respects_capacity_across_the_batch(helpers):
    organizer = helpers["register_user"]("org", "org@campus.edu", role="organizer")
    event = helpers["create_event"](organizer, max_attendees=2)
    registrations = [helpers["register_for"](token, event["id"]) for token in _students(helpers, 3)]
    ids = [r["id"] for r in registrations]

    resp = _bulk(helpers, organizer, ids, "approved")
    assert resp.status_code == 400
    assert set(_statuses(helpers).values()) == {"pending"}

    ok = _bulk(helpers, organizer, ids[:2], "approved")
    assert ok.status_code == 200

    # already-approved rows do not count twice
    again = _bulk(helpers, organizer, ids[:2], "approved")
    assert again.status_code == 200

    rejected = _bulk(helpers, organizer, ids, "rejected")
    assert rejected.status_code == 200
    assert set(_statuses(helpers).values()) == {"rejected"}


def test_bulk_validation_and_admin_override(helpers):
    organizer = helpers["register_user"]("org", "org@campus.edu", role="organizer")
    event = helpers["create_event"](organizer)
    (student,) = _students(helpers, 1)
    registration = helpers["register_for"](student, event["id"])

    assert _bulk(helpers, organizer, [], "approved").status_code == 400
    assert _bulk(helpers, organizer, [registration["id"]], "maybe").status_code == 400
    assert _bulk(helpers, student, [registration["id"]], "approved").status_code == 403

    helpers["make_user"]("root", "root@campus.edu")
    admin = helpers["login"]("root@campus.edu")
    resp = _bulk(helpers, admin, [registration["id"]], "rejected")
    assert resp.status_code == 200
    assert _statuses(helpers) == {registration["id"]: "rejected"}

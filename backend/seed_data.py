#!/usr/bin/env python3
"""
Seed script for the EventHive database.
Creates sample users, upcoming events and registrations for local development.

Usage:
    cd backend
    python seed_data.py
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import text

from eventhive.auth import get_password_hash
from eventhive.database import SessionLocal
from eventhive.models import Event, Registration, RegistrationStatus, User, UserRole

DEFAULT_PASSWORD = "password123"

USERS = [
    {"username": "admin", "email": "admin@campus.edu", "role": UserRole.admin},
    {"username": "organizer1", "email": "organizer1@campus.edu", "role": UserRole.organizer},
    {"username": "organizer2", "email": "organizer2@campus.edu", "role": UserRole.organizer},
    {"username": "student1", "email": "student1@campus.edu", "role": UserRole.student},
    {"username": "student2", "email": "student2@campus.edu", "role": UserRole.student},
    {"username": "student3", "email": "student3@campus.edu", "role": UserRole.student},
    {"username": "student4", "email": "student4@campus.edu", "role": UserRole.student},
]

# days_ahead keeps the sample events in the future no matter when the script runs
SAMPLE_EVENTS = [
    {
        "title": "Tech Conference",
        "description": "Annual technology conference featuring the latest innovations in AI, web development, and cybersecurity.",
        "days_ahead": 14,
        "hour": 9,
        "location": "Main Auditorium",
        "max_attendees": 200,
        "organizer": "organizer1",
    },
    {
        "title": "Career Fair",
        "description": "Connect with top companies and explore career opportunities in various fields.",
        "days_ahead": 19,
        "hour": 10,
        "location": "Student Center",
        "max_attendees": 500,
        "organizer": "organizer1",
    },
    {
        "title": "Hackathon",
        "description": "48-hour coding competition with prizes for the best projects.",
        "days_ahead": 24,
        "hour": 18,
        "location": "Computer Lab",
        "max_attendees": 50,
        "organizer": "organizer2",
    },
    {
        "title": "Art Exhibition",
        "description": "Student artwork showcase featuring paintings, sculptures, and digital art.",
        "days_ahead": 27,
        "hour": 14,
        "location": "Art Gallery",
        "max_attendees": 100,
        "organizer": "organizer2",
    },
    {
        "title": "Sports Tournament",
        "description": "Annual inter-college sports tournament featuring basketball, football, and volleyball.",
        "days_ahead": 31,
        "hour": 8,
        "location": "Sports Complex",
        "max_attendees": 300,
        "organizer": "organizer1",
    },
]

# (event title, student username, status)
REGISTRATIONS = [
    ("Tech Conference", "student1", RegistrationStatus.approved),
    ("Tech Conference", "student2", RegistrationStatus.approved),
    ("Tech Conference", "student3", RegistrationStatus.pending),
    ("Career Fair", "student1", RegistrationStatus.approved),
    ("Career Fair", "student2", RegistrationStatus.approved),
    ("Career Fair", "student3", RegistrationStatus.approved),
    ("Career Fair", "student4", RegistrationStatus.pending),
    ("Hackathon", "student1", RegistrationStatus.approved),
    ("Hackathon", "student2", RegistrationStatus.pending),
    ("Art Exhibition", "student3", RegistrationStatus.approved),
    ("Art Exhibition", "student4", RegistrationStatus.approved),
    ("Sports Tournament", "student1", RegistrationStatus.pending),
    ("Sports Tournament", "student2", RegistrationStatus.approved),
    ("Sports Tournament", "student3", RegistrationStatus.approved),
    ("Sports Tournament", "student4", RegistrationStatus.approved),
]


def seed_database():
    """Seed the database with sample data."""
    print("🌱 Starting database seeding...")

    session = SessionLocal()
    try:
        user_count = session.execute(text("SELECT COUNT(*) FROM users")).scalar()
        if user_count > 0:
            print("⚠️  Database already has data. Clearing existing data...")
            # children first so the foreign keys are satisfied
            for table in ("registrations", "events", "users"):
                session.execute(text(f"DELETE FROM {table}"))
            session.commit()
            print("✅ Existing data cleared")

        print("👥 Creating users...")
        password_hash = get_password_hash(DEFAULT_PASSWORD)
        users = {}
        for user_data in USERS:
            user = User(password_hash=password_hash, **user_data)
            session.add(user)
            users[user.username] = user
        session.flush()
        print(f"   Created {len(USERS)} users")

        print("📅 Creating events...")
        now = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
        events = {}
        for event_data in SAMPLE_EVENTS:
            event_date = (now + timedelta(days=event_data["days_ahead"])).replace(hour=event_data["hour"])
            event = Event(
                title=event_data["title"],
                description=event_data["description"],
                date=event_date,
                location=event_data["location"],
                max_attendees=event_data["max_attendees"],
                created_by=users[event_data["organizer"]].id,
            )
            session.add(event)
            events[event.title] = event
        session.flush()
        print(f"   Created {len(SAMPLE_EVENTS)} events")

        print("📝 Creating registrations...")
        for title, username, status in REGISTRATIONS:
            session.add(
                Registration(event_id=events[title].id, user_id=users[username].id, status=status.value)
            )
        session.flush()
        print(f"   Created {len(REGISTRATIONS)} registrations")

        session.commit()

        print("\n✅ Database seeding completed successfully!")
        print("\n📋 Test accounts (password for all: %s):" % DEFAULT_PASSWORD)
        for user_data in USERS:
            print(f"   - {user_data['email']} ({user_data['role'].value})")

    except Exception as e:
        session.rollback()
        print(f"\n❌ Error during seeding: {e}")
        raise
    finally:
        session.close()


if __name__ == "__main__":
    seed_database()

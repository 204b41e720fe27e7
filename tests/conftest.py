from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from bookswap import catalog, changefeed, directory
from bookswap.db import db, init_db
from bookswap.models import AppRole, ProfileCreate, StudentCreate, TextbookCreate
from bookswap.settings import settings


@pytest.fixture(autouse=True)
def store(tmp_path, monkeypatch):
    db_path = tmp_path / "bookswap.db"
    monkeypatch.setattr(settings, "db_path", str(db_path))
    monkeypatch.setattr(settings, "notify_webhook_url", "")
    monkeypatch.setattr(changefeed, "_feed_instance", changefeed.ChangeFeed())
    init_db()
    yield db_path


@pytest.fixture
def world():
    """Two schools, two pickup locations, four students and an admin, all signed up through the registry."""
    with db() as c:
        school = directory.create_school(c, "Northside High", "northside.edu")
        other_school = directory.create_school(c, "Southside High", "southside.edu")

        def person(first, school_row=school):
            email = f"{first.lower()}@{school_row['domain']}"
            student_id = f"S-{first.upper()}"
            directory.add_student(
                c,
                school_row["id"],
                StudentCreate(student_id_num=student_id, first_name=first, last_name="Tester", student_email=email),
            )
            return directory.create_profile(c, ProfileCreate(email=email, student_id_num=student_id))

        alice = person("Alice")
        bob = person("Bob")
        carol = person("Carol")
        dave = person("Dave", other_school)
        admin = person("Admin")
        directory.set_role(c, admin["id"], AppRole.ADMIN)
        library = directory.create_location(c, school["id"], "Main Library", "Front desk")
        cafeteria = directory.create_location(c, school["id"], "Cafeteria")
    return SimpleNamespace(
        school=school,
        other_school=other_school,
        alice=alice,
        bob=bob,
        carol=carol,
        dave=dave,
        admin=admin,
        library=library,
        cafeteria=cafeteria,
    )


@pytest.fixture
def textbook(world):
    """A good-condition calculus book owned by Alice."""
    with db() as c:
        return catalog.create_textbook(
            c,
            world.alice,
            TextbookCreate(
                title="Calculus: Early Transcendentals",
                author="Stewart",
                isbn="978-1285741550",
                condition="good",
            ),
        )


@pytest.fixture
def client():
    from bookswap.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def as_user():
    def headers(user):
        return {"X-User-Id": str(user["id"])}

    return headers

"""
Pytest configuration and shared fixtures for the grooming appointment tests.
"""

import datetime
import sys
from types import SimpleNamespace

import pytest
from flask import Flask

from app.config import Config
from app.extensions import db as database
from app.models import Base, GroomingService, Pet, User
from app.services.events import RecordingNotificationPort
from app.utils.actor import Actor, issue_token
from app.utils.time_format import today
from main import create_app

TEST_TIME_SLOTS = [
    "9:00 AM",
    "10:00 AM",
    "11:00 AM",
    "1:00 PM",
    "2:00 PM",
    "3:00 PM",
]


@pytest.fixture(scope="session")
def app():
    """Create and configure a test app instance on in-memory SQLite."""
    if not Config().is_safe_for_testing:
        print(" DANGER: Database URL appears to be production, tests aborted")
        sys.exit(1)

    app = create_app(
        config_overrides={
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "SHOP_TIME_SLOTS": TEST_TIME_SLOTS,
            "DEFAULT_PAYMENT_METHOD": "cash",
            "NOTIFICATIONS_ENABLED": False,
        },
        notifications=RecordingNotificationPort(),
    )
    yield app


@pytest.fixture
def db(app: Flask):
    """Fresh schema for every test; the app context stays pushed for the test body."""
    with app.app_context():
        Base.metadata.create_all(bind=database.engine)

        yield database

        database.session.remove()
        Base.metadata.drop_all(bind=database.engine)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def lifecycle(app, db):
    return app.extensions["appointment_lifecycle"]


@pytest.fixture
def payments(app, db):
    return app.extensions["payment_service"]


@pytest.fixture
def notifications(lifecycle):
    port = lifecycle.notifications
    port.clear()
    yield port
    port.clear()


@pytest.fixture
def seed(db):
    """Reference data: users, pets and the service catalog."""
    session = db.session

    pet_owner = User(name="Pat Owner", email="pat@example.com", role="pet_owner")
    other_owner = User(name="Olive Other", email="olive@example.com", role="pet_owner")
    receptionist = User(
        name="Rita Desk", email="rita@example.com", role="staff", staff_type="Receptionist"
    )
    groomer = User(
        name="Gina Groomer", email="gina@example.com", role="staff", staff_type="Groomer"
    )
    inactive_groomer = User(
        name="Ian Idle",
        email="ian@example.com",
        role="staff",
        staff_type="Groomer",
        status="Inactive",
    )
    shop_owner = User(name="Sam Shop", email="sam@example.com", role="owner")
    session.add_all(
        [pet_owner, other_owner, receptionist, groomer, inactive_groomer, shop_owner]
    )
    session.flush()

    pet = Pet(id=42, owner_id=pet_owner.id, name="Biscuit", type="dog", breed="Beagle", size="medium")
    pets = [
        Pet(owner_id=pet_owner.id, name=name, type="dog", size="medium")
        for name in ("Mochi", "Pepper", "Tofu")
    ]
    other_pet = Pet(owner_id=other_owner.id, name="Rex", type="dog", size="large")
    session.add_all([pet, other_pet] + pets)

    full_groom = GroomingService(
        name="Full Groom",
        category="Grooming",
        price_xs=350,
        price_small=400,
        price_medium=500,
        price_large=650,
        price_xl=800,
        price_xxl=950,
    )
    nail_trim = GroomingService(name="Nail Trim", category="Add-on", price_medium=150)
    ear_cleaning = GroomingService(
        name="Ear Cleaning", category="Add-on", price_medium=100, price_large=120
    )
    spa_bath = GroomingService(
        name="Spa Bath", category="Add-on", price_medium=300, status="unavailable"
    )
    unpriced = GroomingService(name="Teeth Brushing", category="Add-on")
    session.add_all([full_groom, nail_trim, ear_cleaning, spa_bath, unpriced])
    session.commit()

    return SimpleNamespace(
        pet_owner=pet_owner,
        other_owner=other_owner,
        receptionist=receptionist,
        groomer=groomer,
        inactive_groomer=inactive_groomer,
        shop_owner=shop_owner,
        pet=pet,
        pets=pets,
        other_pet=other_pet,
        full_groom=full_groom,
        nail_trim=nail_trim,
        ear_cleaning=ear_cleaning,
        spa_bath=spa_bath,
        unpriced=unpriced,
    )


@pytest.fixture
def owner_actor(seed):
    return Actor(role="pet_owner", id=seed.pet_owner.id, name=seed.pet_owner.name)


@pytest.fixture
def other_owner_actor(seed):
    return Actor(role="pet_owner", id=seed.other_owner.id, name=seed.other_owner.name)


@pytest.fixture
def staff_actor(seed):
    return Actor(role="staff", id=seed.receptionist.id, name=seed.receptionist.name)


@pytest.fixture
def shop_owner_actor(seed):
    return Actor(role="owner", id=seed.shop_owner.id, name=seed.shop_owner.name)


@pytest.fixture
def tomorrow():
    return today() + datetime.timedelta(days=1)


@pytest.fixture
def booking(seed, tomorrow):
    """Build a booking payload; keyword arguments override the defaults."""

    def _booking(**overrides):
        data = {
            "pet_id": seed.pet.id,
            "service_id": seed.full_groom.id,
            "preferred_date": tomorrow.isoformat(),
            "preferred_time": "10:00 AM",
        }
        data.update(overrides)
        return data

    return _booking


@pytest.fixture
def book(lifecycle, booking, owner_actor):
    """Create an appointment through the lifecycle service."""

    def _book(actor=None, **overrides):
        return lifecycle.create(booking(**overrides), actor or owner_actor)

    return _book


@pytest.fixture
def auth_headers(db):
    """Authorization headers carrying a signed token for an actor."""

    def _headers(actor):
        return {"Authorization": f"Bearer {issue_token(actor)}"}

    return _headers

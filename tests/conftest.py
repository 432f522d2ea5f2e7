import asyncio
import os
from datetime import datetime, timedelta

# Settings are read at import time, so they must be in place before reception is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key-for-the-reception-suite"
os.environ["TWILIO_ACCOUNT_SID"] = ""
os.environ["TWILIO_AUTH_TOKEN"] = ""
os.environ["TWILIO_VALIDATE_SIGNATURE"] = "false"
os.environ["PUBLIC_WEBHOOK_BASE_URL"] = ""
os.environ["RECEPTION_REMINDER_CRON_SECRET"] = "test-cron-secret"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from reception import models_twilio  # noqa: E402, F401
from reception.auth import create_access_token  # noqa: E402
from reception.database import Base, get_db  # noqa: E402
from reception.main import app  # noqa: E402
from reception.models import (  # noqa: E402
    ServiceBooking,
    ServiceBusiness,
    ServiceCustomer,
    ServiceType,
    User,
)
from reception.services.twilio_service import SmsResult  # noqa: E402

# Monday, 12:00 UTC
NOW = datetime(2026, 1, 5, 12, 0)

BUSINESS_PHONE = "+15550001111"
CUSTOMER_PHONE = "+15552223333"


class FrozenClock:
    """Injectable clock that only moves when a test moves it"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeGateway:
    """Stands in for TwilioSmsGateway in sweep tests"""

    def __init__(self):
        self.configured = True
        self.result = SmsResult(ok=True, message_sid="SM-test-0001", status="queued")
        self.delay = 0.0
        self.sent = []

    def is_configured(self) -> bool:
        return self.configured

    async def send(self, to_phone, from_phone, body, message_type="booking_reminder", entity_type=None, entity_id=None):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append({"to": to_phone, "from": from_phone, "body": body, "entity_id": entity_id})
        return self.result


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def user(db):
    user = User(email="owner@sparkle.example", full_name="Sam Owner")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def other_user(db):
    user = User(email="owner@rival.example", full_name="Rival Owner")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def business(db, user):
    business = ServiceBusiness(
        user_id=user.id,
        business_name="Sparkle Cleaning",
        timezone="UTC",
        twilio_phone_number=BUSINESS_PHONE,
    )
    db.add(business)
    db.commit()
    return business


@pytest.fixture
def customer(db, user):
    customer = ServiceCustomer(user_id=user.id, phone_e164=CUSTOMER_PHONE, full_name="Jamie Rivera")
    db.add(customer)
    db.commit()
    return customer


@pytest.fixture
def service_type(db, user):
    service_type = ServiceType(user_id=user.id, name="Deep Clean", default_duration_minutes=180)
    db.add(service_type)
    db.commit()
    return service_type


@pytest.fixture
def make_booking(db, user, customer):
    def _make(start, status="confirmed", minutes=120, customer_id=None, user_id=None, service_type_id=None):
        booking = ServiceBooking(
            user_id=user_id or user.id,
            customer_id=customer_id or customer.id,
            service_type_id=service_type_id,
            scheduled_start=start,
            scheduled_end=start + timedelta(minutes=minutes) if minutes else None,
            status=status,
        )
        db.add(booking)
        db.commit()
        return booking

    return _make


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}

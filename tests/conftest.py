import itertools
import os
from datetime import date, timedelta
from decimal import Decimal

# Must be set before haulhub.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("ENABLE_WATCHDOG", "false")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from haulhub.auth.security import issue_session
from haulhub.db import Base, get_db
from haulhub.main import create_app
from haulhub.services import accounts, availability, orders


_phones = itertools.count(1)

DOCS = {
    "passport_photo_uri": "local://documents/passport.jpg",
    "driver_license_photo_uri": "local://documents/license.jpg",
    "vehicle_registration_photo_uri": "local://documents/registration.jpg",
}


def next_phone() -> str:
    return f"+7900{next(_phones):07d}"


def future_date() -> date:
    return date.today() + timedelta(days=2)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def app(session_factory):
    application = create_app()

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    application.dependency_overrides[get_db] = override_get_db
    return application


@pytest.fixture
def api(app):
    # No context manager: lifespan (create_all on the real engine, watchdog) stays off
    return TestClient(app)


class Factory:
    def __init__(self, db):
        self.db = db

    def client(self, name="Client", **kw):
        return accounts.register(self.db, role="client", phone=next_phone(), name=name, **kw)

    def executor(self, balance="500", verified=True, capacity=5, name="Driver"):
        user = accounts.register(
            self.db,
            role="executor",
            phone=next_phone(),
            name=name,
            vehicle_capacity=capacity,
            vehicle_number="A123BC77",
            **DOCS,
        )
        profile = user.executor_profile
        profile.balance = Decimal(balance)
        profile.is_verified = verified
        self.db.commit()
        self.db.refresh(user)
        return user

    def admin(self):
        user = accounts.register(self.db, role="client", phone=next_phone(), name="Admin")
        return accounts.grant_admin(self.db, user)

    def order(self, client, capacity=5, urgent=False, **kw):
        fields = dict(
            vehicle_capacity=capacity,
            city="Moscow",
            street="Tverskaya",
            house_number="1",
            scheduled_date=future_date(),
            scheduled_time="10:00",
            is_urgent=urgent,
        )
        fields.update(kw)
        return orders.create_order(self.db, client, **fields)

    def on_duty(self, executor):
        availability.start_work(self.db, executor.id)
        return executor

    def awaiting_payment(self, client=None, executor=None, capacity=5):
        client = client or self.client()
        executor = executor or self.on_duty(self.executor())
        order = self.order(client, capacity=capacity)
        orders.accept_order(self.db, executor.id, order.id)
        orders.start_order(self.db, executor.id, order.id)
        orders.complete_order(self.db, executor.id, order.id)
        self.db.refresh(order)
        return client, executor, order


@pytest.fixture
def factory(db):
    return Factory(db)


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {issue_session(user)['access_token']}"}


@pytest.fixture
def auth():
    return auth_headers

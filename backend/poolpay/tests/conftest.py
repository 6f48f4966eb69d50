"""
Shared fixtures: in-memory database, seeded pool data and a test client.
"""
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import poolpay.models  # noqa: F401  registers every table on Base.metadata
from poolpay.db.base import Base
from poolpay.db.session import get_db
from poolpay.main import app
from poolpay.models import User
from poolpay.services.fx_service import RateSnapshot
from poolpay.tests.helpers import FixedRateResolver, Seed, WINDOW_START, WINDOW_END

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db):
    return TestingSessionLocal


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def seed(db):
    return Seed(db)


@pytest.fixture
def users(db):
    """Unclaimed/platform user 1 plus two miners, ids 2 and 3."""
    created = [
        User(id=1, username="unclaimed"),
        User(id=2, username="u1"),
        User(id=3, username="u2"),
    ]
    db.add_all(created)
    db.commit()
    return created


@pytest.fixture
def rates():
    """coin -> credit 2.0, credit -> reference 0.001, reference -> fiat 1000."""
    return FixedRateResolver(RateSnapshot(
        coin_to_credit=Decimal("2.0"),
        credit_to_reference=Decimal("0.001"),
        reference_to_fiat=Decimal("1000"),
        provenance="TEST",
    ))


@pytest.fixture
def scenario(db, users, seed):
    """Reward 105 - 100 = 5 in [10:00, 11:00); scores u1 70%, u2 30%."""
    seed.snapshots((WINDOW_START, "100"), (WINDOW_END, "105"))
    seed.binding("w1", 2)
    seed.binding("w2", 3)
    seed.samples("w1", "7")
    seed.samples("w2", "3")

from datetime import timedelta
from pathlib import Path
import sys
from typing import Optional

import mongomock
import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import Settings
from database import Database
from main import create_app
from security import IdentityClaim, SessionTokenCodec


TEST_SECRET = "tests-secret-key"


class FakeGateway:
    def __init__(self):
        self.amounts = []

    def create_intent(self, amount: int) -> str:
        self.amounts.append(amount)
        return f"pi_test_secret_{amount}"


@pytest.fixture
def settings():
    return Settings(jwt_secret=TEST_SECRET, cors_origins=["http://testserver"])


@pytest.fixture
def database():
    return Database(mongomock.MongoClient(tz_aware=True), "towertrack-tests")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app(settings, database, gateway):
    return create_app(settings=settings, database=database, payment_gateway=gateway)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def codec(settings):
    return SessionTokenCodec.from_settings(settings)


@pytest.fixture
def auth(codec):
    """Return Authorization headers for ``email``."""

    def _auth(email: str, expires_delta: Optional[timedelta] = None):
        token = codec.issue(IdentityClaim(email=email), expires_delta=expires_delta)
        return {"Authorization": f"Bearer {token}"}

    return _auth


@pytest.fixture
def make_user(database):
    def _make_user(email: str, role: str = "user", name: str = "Test User"):
        database.users.insert_one({"email": email, "name": name, "role": role})

    return _make_user

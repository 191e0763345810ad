import os
import tempfile

# CRITICAL: Set environment variables BEFORE any issuance imports
# These must be set before issuance.config.settings is loaded
_TEST_DB_PATH = os.path.join(tempfile.gettempdir(), "test_issuance.db")
os.environ["SECRET_KEY"] = "test-secret-key-1234567890"
os.environ["DATABASE_URL"] = f"sqlite+pysqlite:///{_TEST_DB_PATH}"
os.environ["ENVIRONMENT"] = "test"
os.environ["API_V1_STR"] = "/api"  # Ensure /api prefix is used in tests
os.environ["SCHEDULER_ENABLED"] = "false"

import itertools

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from issuance import models
from issuance.api import deps
from issuance.database import Base, engine as app_engine, get_db
from issuance.main import app

# Use the same engine that the app uses
TEST_ENGINE = app_engine

TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=TEST_ENGINE, future=True
)


def override_get_db():
    """Test database session that uses the test engine."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db

_counter = itertools.count(1)


@pytest.fixture(scope="function", autouse=True)
def setup_test_database():
    """
    Create all tables before each test and clean up after.
    Also restores dependency overrides so auth stubs don't leak across tests.
    """
    original_overrides = dict(app.dependency_overrides)

    Base.metadata.drop_all(bind=TEST_ENGINE)
    Base.metadata.create_all(bind=TEST_ENGINE)

    yield

    app.dependency_overrides.clear()
    app.dependency_overrides.update(original_overrides)

    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client():
    return TestClient(app)


class StubUser:
    """What route handlers see as the current user; mirrors a persisted ``User`` row."""

    def __init__(self, user: models.User):
        self.id = user.id
        self.email = user.email
        self.name = user.name
        self.active = True
        self.role = user.role


@pytest.fixture
def login_as():
    def _login(user: models.User) -> StubUser:
        stub = StubUser(user)
        app.dependency_overrides[deps.get_current_user] = lambda: stub
        return stub

    return _login


@pytest.fixture
def make_user(db_session):
    def _make(role: models.RoleName = models.RoleName.comercial, **kwargs) -> models.User:
        n = next(_counter)
        user = models.User(
            email=kwargs.pop("email", f"user{n}@test.com"),
            name=kwargs.pop("name", f"User {n}"),
            hashed_password=kwargs.pop("hashed_password", "not-a-real-hash"),
            role=role,
            active=kwargs.pop("active", True),
            **kwargs,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture
def make_client(db_session):
    def _make(**kwargs) -> models.Client:
        n = next(_counter)
        client_row = models.Client(
            name=kwargs.pop("name", f"Cliente {n}"),
            active=kwargs.pop("active", True),
            **kwargs,
        )
        db_session.add(client_row)
        db_session.commit()
        db_session.refresh(client_row)
        return client_row

    return _make


@pytest.fixture
def make_service(db_session):
    def _make(**kwargs) -> models.Service:
        n = next(_counter)
        service = models.Service(
            name=kwargs.pop("name", f"Serviço {n}"),
            category=kwargs.pop("category", "Consultoria"),
            active=kwargs.pop("active", True),
            **kwargs,
        )
        db_session.add(service)
        db_session.commit()
        db_session.refresh(service)
        return service

    return _make

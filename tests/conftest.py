import os

# Must be set before the app (and its settings singleton) is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CLEANUP_INTERVAL_HOURS"] = "0"
os.environ["APP_ENV"] = "test"
os.environ["LEADERBOARD_RETRY_BACKOFF_SECONDS"] = "0"

import pytest
from fastapi.testclient import TestClient

from vocab_sprint.db import Base, SessionLocal, engine
from vocab_sprint.main import app
from vocab_sprint.routers.auth import User, get_current_user


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def login_as():
    def _login(username: str = "alice") -> None:
        app.dependency_overrides[get_current_user] = lambda: User(username=username)
    return _login


@pytest.fixture
def client(login_as):
    login_as("alice")
    return TestClient(app)


@pytest.fixture
def anon_client():
    return TestClient(app)


@pytest.fixture
def anyio_backend():
    return "asyncio"

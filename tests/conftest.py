"""
Pytest fixtures: settings factory, app, test client, auth headers.
In-memory SQLite stands in for the database.
"""

from typing import Callable, Iterator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from core.config import Settings
from core.security import create_access_token
from main import create_app


@pytest.fixture
def make_settings(tmp_path) -> Callable[..., Settings]:
    """Settings isolated from .env; pass overrides as keyword arguments."""

    def _make(**overrides) -> Settings:
        values = {
            "ENVIRONMENT": "test",
            "DATABASE_URL": "sqlite://",
            "STATIC_DIR": tmp_path / "client",
            "LOG_LEVEL": "INFO",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def app(settings: Settings) -> FastAPI:
    return create_app(settings)


@pytest.fixture
def client(app: FastAPI) -> Iterator[TestClient]:
    """Test client with lifespan running, so the database check happens."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_client(make_settings) -> Callable[..., TestClient]:
    """Client for a one-off app built from overridden settings; closed at teardown."""
    opened: list[TestClient] = []

    def _make(**overrides) -> TestClient:
        c = TestClient(create_app(make_settings(**overrides)))
        c.__enter__()
        opened.append(c)
        return c

    yield _make
    for c in opened:
        c.__exit__(None, None, None)


@pytest.fixture
def auth_headers(settings: Settings) -> dict[str, str]:
    token = create_access_token("test-user-id", settings)
    return {"Authorization": f"Bearer {token}"}

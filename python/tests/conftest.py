"""Pytest configuration and fixtures for harmony tests.

Test isolation strategy:
- Tests that use db_session get a nested transaction (savepoint) that rolls back
- Tests needing multiple connections use the direct_db fixture
- Without DATABASE_URL the suite runs against a temporary SQLite file;
  claims then fall back to the status guard alone (no row locks)
- API tests override get_db so routes share the test's db_session
"""

import os
import sys
import tempfile
from collections.abc import Generator
from pathlib import Path

# Add repo root to sys.path for importing top-level packages (e.g., apps)
_repo_root = Path(__file__).parent.parent.parent
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

if not os.environ.get("DATABASE_URL"):
    _sqlite_dir = tempfile.mkdtemp(prefix="harmony-tests-")
    os.environ["DATABASE_URL"] = f"sqlite:///{_sqlite_dir}/harmony_test.db"
os.environ.setdefault("HARMONY_ENV", "test")
os.environ.setdefault("REWRITE_PROVIDER", "stub")

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from harmony.app import add_request_id_middleware, create_app
from harmony.config import clear_settings_cache
from harmony.db.engine import create_db_engine
from harmony.db.models import Base
from harmony.db.session import get_db
from harmony.providers import StubBatchProvider, reset_stub_provider
from harmony.services.classifier import StaticComplaintClassifier
from tests.utils.db import DirectSessionManager, TestDatabaseManager


def get_test_database_url() -> str:
    return os.environ["DATABASE_URL"]


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    """Create a database engine for the test session.

    Tables missing from the target database are created from the ORM
    metadata, so a fresh PostgreSQL database or the SQLite file both work.
    """
    engine = create_db_engine(get_test_database_url())
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine: Engine) -> Generator[Session, None, None]:
    """Provide a database session with savepoint isolation.

    Note: Do not use this fixture for tests that need multiple independent
    connections. Use direct_db instead. On SQLite the open test transaction
    holds the writer lock, so mixing both in one test blocks.
    """
    with TestDatabaseManager(engine) as session:
        yield session


@pytest.fixture
def direct_db(engine: Engine) -> Generator[DirectSessionManager, None, None]:
    """Provide direct database access without savepoint isolation.

    Data registered via register_cleanup() is deleted after the test in
    reverse order.
    """
    manager = DirectSessionManager(engine)
    yield manager
    manager.cleanup()


@pytest.fixture
def app(db_session: Session) -> FastAPI:
    """FastAPI app whose routes use the test's db_session."""
    app = create_app()
    add_request_id_middleware(app, log_requests=False)

    def _test_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = _test_db
    return app


@pytest.fixture
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    with TestClient(app) as client:
        yield client


@pytest.fixture
def stub_provider() -> StubBatchProvider:
    return StubBatchProvider()


@pytest.fixture
def classifier() -> StaticComplaintClassifier:
    return StaticComplaintClassifier()


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset the settings cache before each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture(autouse=True)
def reset_shared_stub_provider():
    yield
    reset_stub_provider()

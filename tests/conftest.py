"""Pytest configuration and fixtures."""

import os

# Must be set before signalforge modules build settings / the engine
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
for _var in ("INGEST_SECRET", "SHOPIFY_WEBHOOK_SECRET", "KLAVIYO_API_KEY", "META_PIXEL_ID", "META_ACCESS_TOKEN", "META_TEST_EVENT_CODE"):
    os.environ.pop(_var, None)

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from signalforge.config import reset_settings
from signalforge.infrastructure.db import Base, SessionLocal, enable_sqlite_savepoints, override_engine
from signalforge.models.tables import Workspace, Destination
from signalforge.security.api_keys import generate_api_key


@pytest.fixture(autouse=True)
def engine(tmp_path):
    """Fresh file-backed SQLite database per test; every session uses its own connection."""
    reset_settings()
    e = create_engine(f"sqlite:///{tmp_path / 'signalforge.db'}", connect_args={"check_same_thread": False})
    enable_sqlite_savepoints(e)
    Base.metadata.create_all(bind=e)
    override_engine(e)
    yield e
    e.dispose()
    reset_settings()


@pytest.fixture
def db(engine) -> Session:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def workspace(db):
    ws = Workspace(name="Test Store", settings={})
    db.add(ws)
    db.commit()
    return ws


@pytest.fixture
def klaviyo_destination(db, workspace):
    dest = Destination(workspace_id=workspace.id, type="klaviyo", name="Klaviyo", config={"api_key": "pk_test"}, enabled=True)
    db.add(dest)
    db.commit()
    return dest


@pytest.fixture
def meta_destination(db, workspace):
    dest = Destination(workspace_id=workspace.id, type="meta", name="Meta CAPI", config={"pixel_id": "123456", "access_token": "tok"}, enabled=True)
    db.add(dest)
    db.commit()
    return dest


@pytest.fixture
def make_key(db, workspace):
    def _make(*scopes, **kwargs):
        raw, _row = generate_api_key(db, workspace.id, name="test", scopes=set(scopes) or None, **kwargs)
        db.commit()
        return raw
    return _make


@pytest.fixture
def client(engine):
    from fastapi.testclient import TestClient
    from signalforge.api.main import app
    return TestClient(app)


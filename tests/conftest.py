"""Shared fixtures: an in-memory store, a fake identity provider and the app."""

import re
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool

from cat_explorer.config import Settings
from cat_explorer.database import build_session_factory, init_schema
from cat_explorer.geo import GeoPoint, haversine_km
from cat_explorer.identity import Identity, IdentityVerifier
from cat_explorer.main import create_app
from cat_explorer.store import SightingStore

ADMIN = Identity(subject="admin-sub", email="Admin@Example.com")
USER = Identity(subject="user-sub", email="user@example.com")

_EWKT_POINT = re.compile(r"POINT\(\s*(?P<lng>\S+)\s+(?P<lat>[^\s)]+)\s*\)")


def _ewkt_point(value: str) -> GeoPoint:
    match = _EWKT_POINT.search(value)
    return GeoPoint(latitude=float(match.group("lat")), longitude=float(match.group("lng")))


def _st_distance(a: str, b: str) -> float:
    return haversine_km(_ewkt_point(a), _ewkt_point(b)) * 1000


def _st_dwithin(a: str, b: str, meters: float) -> int:
    return int(_st_distance(a, b) <= meters)


def register_spatial_functions(engine) -> None:
    """Spherical ST_Distance/ST_DWithin (meters) for SQLite, which has no PostGIS."""

    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.create_function("ST_Distance", 2, _st_distance, deterministic=True)
        dbapi_connection.create_function("ST_DWithin", 3, _st_dwithin, deterministic=True)


class FakeVerifier(IdentityVerifier):
    """Maps known Google ID tokens to identities without any network."""

    def __init__(self, known: Dict[str, Identity]):
        self.known = known
        self.calls = []

    def verify(self, credential: str) -> Optional[Identity]:
        self.calls.append(credential)
        return self.known.get(credential)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    register_spatial_functions(engine)
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = build_session_factory(engine)()
    yield session
    session.close()


@pytest.fixture
def store(db):
    return SightingStore(db, max_image_bytes=1024)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        session_secret="test-secret-for-unit-tests-min-32",
        admin_emails=["admin@example.com"],
        upload_dir=str(tmp_path / "uploads"),
        max_image_bytes=64 * 1024,
    )


@pytest.fixture
def verifier():
    return FakeVerifier({"google-admin": ADMIN, "google-user": USER})


@pytest.fixture
def app(settings, engine, verifier):
    return create_app(settings=settings, engine=engine, identity_verifier=verifier)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def bearer(app, identity: Identity) -> Dict[str, str]:
    return {"Authorization": f"Bearer {app.state.session_tokens.issue(identity)}"}


@pytest.fixture
def user_headers(app):
    return bearer(app, USER)


@pytest.fixture
def admin_headers(app):
    return bearer(app, ADMIN)

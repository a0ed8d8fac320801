# tests/conftest.py
from __future__ import annotations

import os
import random
from collections.abc import Generator, Iterator
from datetime import UTC, datetime, timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-gatehouse")
os.environ.setdefault("IP_HASH_SALT", "test-salt")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("SWEEP_INTERVAL_SECONDS", "0")

from gatehouse.api.v1 import dependencies as api_dependencies
from gatehouse.core.settings import Settings, settings
from gatehouse.db.session import Base
from gatehouse.main import app as fastapi_app
from gatehouse.repositories.session_repo import SessionRepository
from gatehouse.services.challenge_store import MemoryChallengeStore
from gatehouse.services.counters import KeyValueCounter
from gatehouse.services.dispatcher import ChallengeDispatcher
from gatehouse.services.kv import MemoryKeyValueStore
from gatehouse.services.local_cache import LocalCache
from gatehouse.services.pow_service import PowService
from gatehouse.services.resource_tracker import ResourceTracker
from gatehouse.services.session_registry import SessionRegistry

TEST_DB_URL = "sqlite://"


class FakeClock:
    """Settable clock exposing the three time sources the services use."""

    def __init__(self, start: datetime | None = None) -> None:
        start = start or datetime.now(UTC).replace(microsecond=0)
        self.start = start
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    def timestamp(self) -> float:
        return self.current.timestamp()

    def monotonic(self) -> float:
        return (self.current - self.start).total_seconds()


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Iterator[sessionmaker[Session]]:
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    try:
        yield factory
    finally:
        # Repositories commit their own transactions; start every test clean.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def test_settings() -> Settings:
    """Development settings independent of the process environment."""
    return Settings(
        environment="development",
        database_url=TEST_DB_URL,
        secret_key="test-secret-key-for-gatehouse",
        ip_hash_salt="test-salt",
        fail_open_in_development=True,
    )


@pytest.fixture()
def production_settings() -> Settings:
    return Settings(
        environment="production",
        database_url=TEST_DB_URL,
        secret_key="test-secret-key-for-gatehouse",
        ip_hash_salt="test-salt",
    )


@pytest.fixture()
def repository(session_factory: sessionmaker[Session]) -> SessionRepository:
    return SessionRepository(session_factory)


@pytest.fixture()
def kv_store(clock: FakeClock) -> MemoryKeyValueStore:
    return MemoryKeyValueStore(clock=clock.timestamp)


@pytest.fixture()
def session_cache(clock: FakeClock) -> LocalCache:
    return LocalCache(30.0, clock=clock.monotonic)


@pytest.fixture()
def registry(
    repository: SessionRepository,
    kv_store: MemoryKeyValueStore,
    session_cache: LocalCache,
    clock: FakeClock,
    test_settings: Settings,
) -> SessionRegistry:
    return SessionRegistry(
        repository,
        KeyValueCounter(kv_store, clock=clock),
        config=test_settings,
        cache=session_cache,
        clock=clock,
    )


@pytest.fixture()
def challenge_store(clock: FakeClock) -> MemoryChallengeStore:
    return MemoryChallengeStore(clock=clock)


@pytest.fixture()
def dispatcher(
    challenge_store: MemoryChallengeStore, clock: FakeClock, test_settings: Settings
) -> ChallengeDispatcher:
    return ChallengeDispatcher(
        challenge_store,
        config=test_settings,
        rng=random.Random(1234),
        clock=clock,
        verdicts=LocalCache(test_settings.challenge_ttl_seconds, clock=clock.monotonic),
    )


@pytest.fixture()
def tracker(challenge_store: MemoryChallengeStore) -> ResourceTracker:
    return ResourceTracker(challenge_store)


@pytest.fixture()
def pow_service(test_settings: Settings) -> PowService:
    """Puzzles cheap enough to brute-force in tests."""
    return PowService(config=test_settings.model_copy(update={"pow_target_bits": 4}))


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_service_dependencies(
    app: FastAPI,
    request: pytest.FixtureRequest,
) -> Iterator[None]:
    """Point the API at per-test services for tests that use the client."""
    if "client" not in request.fixturenames:
        yield
        return

    registry = request.getfixturevalue("registry")
    dispatcher = request.getfixturevalue("dispatcher")
    tracker = request.getfixturevalue("tracker")
    pow_service = request.getfixturevalue("pow_service")
    app.dependency_overrides[api_dependencies.get_session_registry_dep] = lambda: registry
    app.dependency_overrides[api_dependencies.get_dispatcher_dep] = lambda: dispatcher
    app.dependency_overrides[api_dependencies.get_resource_tracker_dep] = lambda: tracker
    app.dependency_overrides[api_dependencies.get_pow_service_dep] = lambda: pow_service
    try:
        yield
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


def create_access_token(subject: str) -> str:
    """Create a bearer token the API accepts as an authenticated account."""
    claims = {"sub": subject, "exp": datetime.now(UTC) + timedelta(minutes=30)}
    token: str = jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm)
    return token


@pytest.fixture()
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token('account-1')}"}


@pytest.fixture()
def make_access_token():
    return create_access_token

# tests/services/test_session_registry.py
"""Tests for session issuance, quotas and account linking."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from gatehouse.core.errors import StoreConflictError, StoreUnavailableError
from gatehouse.core.settings import Settings
from gatehouse.db.session import Base
from gatehouse.db.time import utcnow
from gatehouse.repositories.session_repo import SessionRecord, SessionRepository
from gatehouse.services.counters import DatabaseCounter, KeyValueCounter
from gatehouse.services.kv import MemoryKeyValueStore
from gatehouse.services.local_cache import LocalCache
from gatehouse.services.session_registry import QuotaResult, SessionRegistry

ADDRESS_KEY = "hashed-address"
ACCOUNT = "account-1"


def make_settings(**overrides) -> Settings:
    values = {
        "environment": "development",
        "database_url": "sqlite://",
        "secret_key": "test-secret-key-for-gatehouse",
        "ip_hash_salt": "test-salt",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def file_repository(tmp_path) -> Iterator[SessionRepository]:
    """Repository on a file database so threads use separate connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'sessions.db'}",
        connect_args={"check_same_thread": False},
        poolclass=NullPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield SessionRepository(sessionmaker(bind=engine, expire_on_commit=False))
    finally:
        engine.dispose()


class TestGetOrCreate:
    def test_issues_anonymous_session(self, registry: SessionRegistry, clock) -> None:
        record = registry.get_or_create("anonymous", ADDRESS_KEY)
        assert len(record.token) == 64
        assert record.request_limit == 600
        assert record.request_count == 0
        assert record.expires_at == clock() + timedelta(hours=24)
        assert not record.is_authenticated

    def test_authenticated_limit_is_higher(self, registry: SessionRegistry) -> None:
        record = registry.get_or_create("authenticated", ACCOUNT)
        assert record.request_limit == 1200
        assert record.is_authenticated

    def test_reuse_returns_same_token_and_extends(self, registry: SessionRegistry, clock) -> None:
        first = registry.get_or_create("anonymous", ADDRESS_KEY)
        clock.advance(120)
        second = registry.get_or_create("anonymous", ADDRESS_KEY)
        assert second.token == first.token
        assert second.expires_at >= first.expires_at
        assert second.expires_at == clock() + timedelta(hours=24)

    def test_reuse_never_shortens_expiry(self, registry: SessionRegistry) -> None:
        first = registry.get_or_create("anonymous", ADDRESS_KEY)
        second = registry.get_or_create("anonymous", ADDRESS_KEY, window_seconds=60)
        assert second.token == first.token
        assert second.expires_at == first.expires_at

    def test_reuse_keeps_request_count(self, registry: SessionRegistry) -> None:
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        for _ in range(3):
            registry.increment_and_check(token)
        registry.get_or_create("anonymous", ADDRESS_KEY)
        assert registry.increment_and_check(token).current_count == 4

    def test_reuse_keeps_counter_alive_with_session(
        self, registry: SessionRegistry, clock
    ) -> None:
        token = registry.get_or_create("anonymous", ADDRESS_KEY, window_seconds=60).token
        registry.increment_and_check(token)
        clock.advance(30)
        registry.get_or_create("anonymous", ADDRESS_KEY)
        clock.advance(60)
        assert registry.increment_and_check(token).current_count == 2

    def test_expired_session_is_replaced(self, registry: SessionRegistry, clock) -> None:
        first = registry.get_or_create("anonymous", ADDRESS_KEY)
        clock.advance(24 * 3600 + 1)
        second = registry.get_or_create("anonymous", ADDRESS_KEY)
        assert second.token != first.token

    def test_different_owners_get_different_sessions(self, registry: SessionRegistry) -> None:
        a = registry.get_or_create("anonymous", "owner-a")
        b = registry.get_or_create("anonymous", "owner-b")
        assert a.token != b.token

    @pytest.mark.parametrize(("kind", "key"), [("robot", "x"), ("anonymous", "")])
    def test_rejects_bad_owner(self, registry: SessionRegistry, kind: str, key: str) -> None:
        with pytest.raises(ValueError):
            registry.get_or_create(kind, key)  # type: ignore[arg-type]

    def test_concurrent_creators_settle_on_oldest(
        self, registry: SessionRegistry, repository: SessionRepository, clock, mocker
    ) -> None:
        winner = registry.get_or_create("anonymous", ADDRESS_KEY)
        clock.advance(1)
        # The second creator's lookup ran before the first creator's insert landed.
        mocker.patch.object(repository, "find_live_by_owner", return_value=None)
        settled = registry.get_or_create("anonymous", ADDRESS_KEY)

        assert settled.token == winner.token
        live = repository.list_live_by_owner("anonymous", ADDRESS_KEY, clock())
        assert [r.token for r in live] == [winner.token]


class TestIncrementAndCheck:
    def test_counts_requests(self, registry: SessionRegistry) -> None:
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        assert registry.increment_and_check(token) == QuotaResult(True, 1, 600)
        assert registry.increment_and_check(token) == QuotaResult(True, 2, 600)

    def test_request_after_limit_is_denied(self, registry: SessionRegistry) -> None:
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        for expected in range(1, 601):
            assert registry.increment_and_check(token) == QuotaResult(True, expected, 600)

        over = registry.increment_and_check(token)
        assert not over.allowed
        assert over.current_count == 601
        assert registry.increment_and_check(token).current_count == 602

    @pytest.mark.parametrize("token", ["", None, "0" * 64])
    def test_unknown_tokens_are_denied(self, registry: SessionRegistry, token) -> None:
        assert registry.increment_and_check(token) == QuotaResult(False, 0)

    def test_expired_session_is_denied_despite_cache(
        self, registry: SessionRegistry, clock
    ) -> None:
        record = registry.get_or_create("anonymous", ADDRESS_KEY, window_seconds=10)
        assert registry.increment_and_check(record.token).allowed
        clock.advance(11)
        assert not registry.increment_and_check(record.token).allowed

    def test_cache_serves_repeat_lookups(
        self, registry: SessionRegistry, repository: SessionRepository, mocker
    ) -> None:
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        registry.cache.clear()
        spy = mocker.spy(repository, "get")
        registry.increment_and_check(token)
        registry.increment_and_check(token)
        registry.increment_and_check(token)
        assert spy.call_count == 1

    def test_cache_refreshes_after_ttl(
        self, registry: SessionRegistry, repository: SessionRepository, clock, mocker
    ) -> None:
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        spy = mocker.spy(repository, "get")
        registry.increment_and_check(token)
        clock.advance(31)
        registry.increment_and_check(token)
        assert spy.call_count == 1

    def test_missing_session_is_not_cached(
        self, registry: SessionRegistry, repository: SessionRepository, clock
    ) -> None:
        token = "f" * 64
        assert not registry.increment_and_check(token).allowed
        repository.insert(
            SessionRecord(
                token=token,
                owner_kind="anonymous",
                owner_key=ADDRESS_KEY,
                request_count=0,
                request_limit=600,
                expires_at=clock() + timedelta(hours=1),
                created_at=clock(),
            )
        )
        assert registry.increment_and_check(token) == QuotaResult(True, 1, 600)

    def test_concurrent_increments_are_all_counted(
        self, file_repository: SessionRepository
    ) -> None:
        registry = SessionRegistry(
            file_repository,
            KeyValueCounter(MemoryKeyValueStore()),
            config=make_settings(anonymous_request_limit=30),
        )
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        calls = 80

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda _: registry.increment_and_check(token), range(calls)))

        assert sorted(r.current_count for r in results) == list(range(1, calls + 1))
        assert sum(1 for r in results if not r.allowed) == calls - 30
        assert registry.status(token).current_count == calls


class TestDatabaseCounter:
    def make_registry(self, repository: SessionRepository, clock, **overrides) -> SessionRegistry:
        return SessionRegistry(
            repository,
            DatabaseCounter(repository, clock=clock),
            config=make_settings(**overrides),
            cache=LocalCache(30.0, clock=clock.monotonic),
            clock=clock,
        )

    def test_counts_on_the_row(self, repository: SessionRepository, clock) -> None:
        registry = self.make_registry(repository, clock, anonymous_request_limit=2)
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        assert registry.increment_and_check(token) == QuotaResult(True, 1, 2)
        assert registry.increment_and_check(token) == QuotaResult(True, 2, 2)
        assert registry.increment_and_check(token) == QuotaResult(False, 3, 2)
        assert repository.get(token).request_count == 3

    def test_increment_does_not_read_modify_write(
        self, repository: SessionRepository, clock, mocker
    ) -> None:
        registry = self.make_registry(repository, clock)
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        version = repository.get(token).version
        spy = mocker.spy(repository, "update_with_retry")

        assert registry.increment_and_check(token).current_count == 1
        assert spy.call_count == 0
        assert repository.get(token).version == version

    def test_concurrent_increments_are_all_counted(
        self, file_repository: SessionRepository
    ) -> None:
        registry = SessionRegistry(
            file_repository,
            DatabaseCounter(file_repository),
            config=make_settings(anonymous_request_limit=30),
        )
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        calls = 80

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda _: registry.increment_and_check(token), range(calls)))

        assert sorted(r.current_count for r in results) == list(range(1, calls + 1))
        assert sum(1 for r in results if not r.allowed) == calls - 30
        assert file_repository.get(token).request_count == calls

    def test_store_error_denies_in_production(
        self, repository: SessionRepository, clock, mocker
    ) -> None:
        registry = self.make_registry(repository, clock, environment="production")
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        mocker.patch.object(
            repository, "increment_count", side_effect=StoreUnavailableError("locked")
        )
        assert registry.increment_and_check(token) == QuotaResult(False, 0, 600)

    def test_deleted_row_is_denied(self, repository: SessionRepository, clock) -> None:
        registry = self.make_registry(repository, clock)
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        repository.delete(token)
        assert not registry.increment_and_check(token).allowed

    def test_expired_row_is_not_counted(self, repository: SessionRepository, clock) -> None:
        registry = self.make_registry(repository, clock)
        record = registry.get_or_create("anonymous", ADDRESS_KEY, window_seconds=10)
        clock.advance(11)
        assert DatabaseCounter(repository, clock=clock).increment(record) is None
        assert repository.get(record.token).request_count == 0


class TestConditionalUpdates:
    def test_retries_once_on_conflict(
        self, registry: SessionRegistry, repository: SessionRepository, mocker
    ) -> None:
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        mocker.patch.object(repository, "conditional_update", side_effect=[False, True])
        updated = repository.update_with_retry(token, lambda current: {"is_active": False})
        assert updated is not None and not updated.is_active
        assert repository.conditional_update.call_count == 2

    def test_second_conflict_is_a_store_error(
        self, registry: SessionRegistry, repository: SessionRepository, mocker
    ) -> None:
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        mocker.patch.object(repository, "conditional_update", return_value=False)
        with pytest.raises(StoreConflictError):
            repository.update_with_retry(token, lambda current: {"is_active": False})

class TestFailurePolicy:
    def make_registry(self, clock, mocker, **overrides) -> SessionRegistry:
        repository = mocker.Mock(spec=SessionRepository)
        error = StoreUnavailableError("database is down")
        repository.get.side_effect = error
        repository.find_live_by_owner.side_effect = error
        return SessionRegistry(
            repository,
            KeyValueCounter(MemoryKeyValueStore()),
            config=make_settings(**overrides),
            cache=LocalCache(30.0, clock=clock.monotonic),
            clock=clock,
        )

    def test_production_denies(self, clock, mocker) -> None:
        registry = self.make_registry(clock, mocker, environment="production")
        assert registry.increment_and_check("a" * 64) == QuotaResult(False, 0, 600)
        assert not registry.validate("a" * 64)

    def test_production_refuses_to_issue(self, clock, mocker) -> None:
        registry = self.make_registry(clock, mocker, environment="production")
        with pytest.raises(StoreUnavailableError):
            registry.get_or_create("anonymous", ADDRESS_KEY)

    def test_development_allows_with_warning(self, clock, mocker, caplog) -> None:
        registry = self.make_registry(clock, mocker)
        with caplog.at_level(logging.WARNING, logger="gatehouse.services.session_registry"):
            result = registry.increment_and_check("a" * 64)
        assert result.allowed
        assert result.limit == 600
        assert "allowing request" in caplog.text

    def test_development_issues_unsaved_session(self, clock, mocker) -> None:
        registry = self.make_registry(clock, mocker)
        record = registry.get_or_create("anonymous", ADDRESS_KEY)
        assert record.owner_key == ADDRESS_KEY

    def test_development_without_opt_in_denies(self, clock, mocker) -> None:
        registry = self.make_registry(clock, mocker, fail_open_in_development=False)
        assert not registry.increment_and_check("a" * 64).allowed


class TestLinkToOwner:
    def test_promotes_in_place(self, registry: SessionRegistry) -> None:
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        registry.increment_and_check(token)

        assert registry.link_to_owner(token, "authenticated", ACCOUNT) == token
        status = registry.status(token)
        assert status.is_authenticated
        assert status.limit == 1200
        assert status.current_count == 1

    def test_existing_account_session_wins(self, registry: SessionRegistry) -> None:
        account_token = registry.get_or_create("authenticated", ACCOUNT).token
        anonymous_token = registry.get_or_create("anonymous", ADDRESS_KEY).token

        assert registry.link_to_owner(anonymous_token, "authenticated", ACCOUNT) == account_token
        assert not registry.validate(anonymous_token)
        assert registry.validate(account_token)

    def test_linking_twice_is_stable(self, registry: SessionRegistry) -> None:
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        assert registry.link_to_owner(token, "authenticated", ACCOUNT) == token
        assert registry.link_to_owner(token, "authenticated", ACCOUNT) == token

    def test_unknown_or_expired_token(self, registry: SessionRegistry, clock) -> None:
        assert registry.link_to_owner("0" * 64, "authenticated", ACCOUNT) is None
        token = registry.get_or_create("anonymous", ADDRESS_KEY, window_seconds=5).token
        clock.advance(6)
        assert registry.link_to_owner(token, "authenticated", ACCOUNT) is None

    def test_deactivated_session_is_rejected_immediately(self, registry: SessionRegistry) -> None:
        registry.get_or_create("authenticated", ACCOUNT)
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        assert registry.increment_and_check(token).allowed  # warms the cache
        registry.link_to_owner(token, "authenticated", ACCOUNT)
        assert not registry.increment_and_check(token).allowed


    def test_concurrent_links_leave_one_active_session(
        self, file_repository: SessionRepository
    ) -> None:
        registry = SessionRegistry(
            file_repository, KeyValueCounter(MemoryKeyValueStore()), config=make_settings()
        )
        tokens = [registry.get_or_create("anonymous", f"device-{i}").token for i in range(8)]
        barrier = threading.Barrier(len(tokens))

        def link(token: str) -> str | None:
            barrier.wait()
            return registry.link_to_owner(token, "authenticated", ACCOUNT)

        with ThreadPoolExecutor(max_workers=len(tokens)) as pool:
            results = list(pool.map(link, tokens))

        live = file_repository.list_live_by_owner("authenticated", ACCOUNT, utcnow())
        assert len(live) == 1
        assert all(result is not None for result in results)
        assert live[0].token in results

    def test_link_settles_a_racing_duplicate(
        self, registry: SessionRegistry, repository: SessionRepository, clock, mocker
    ) -> None:
        first = registry.get_or_create("anonymous", "device-a").token
        clock.advance(1)
        second = registry.get_or_create("anonymous", "device-b").token
        # Both linkers looked for an account session before either re-keyed.
        mocker.patch.object(repository, "find_live_by_owner", return_value=None)

        assert registry.link_to_owner(first, "authenticated", ACCOUNT) == first
        assert registry.link_to_owner(second, "authenticated", ACCOUNT) == first
        assert not registry.validate(second)
        live = repository.list_live_by_owner("authenticated", ACCOUNT, clock())
        assert [r.token for r in live] == [first]


class TestStatusAndLifecycle:
    def test_status_reports_remaining(self, registry: SessionRegistry) -> None:
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        for _ in range(3):
            registry.increment_and_check(token)
        status = registry.status(token)
        assert status.is_valid
        assert status.current_count == 3
        assert status.remaining == 597

    def test_status_does_not_count(self, registry: SessionRegistry) -> None:
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        registry.status(token)
        registry.status(token)
        assert registry.increment_and_check(token).current_count == 1

    def test_status_of_unknown_token(self, registry: SessionRegistry) -> None:
        status = registry.status("missing")
        assert not status.is_valid
        assert status.remaining == 0

    def test_revoke(self, registry: SessionRegistry) -> None:
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        registry.increment_and_check(token)
        assert registry.revoke(token)
        assert not registry.validate(token)
        assert not registry.revoke(token)

    def test_sweep_deletes_expired_in_batches(
        self, registry: SessionRegistry, repository: SessionRepository, clock
    ) -> None:
        for i in range(250):
            repository.insert(
                SessionRecord(
                    token=f"{i:064d}",
                    owner_kind="anonymous",
                    owner_key=f"owner-{i}",
                    request_count=0,
                    request_limit=600,
                    expires_at=clock() - timedelta(seconds=1),
                    created_at=clock() - timedelta(hours=25),
                )
            )
        live = registry.get_or_create("anonymous", ADDRESS_KEY)

        assert registry.sweep_expired(batch_size=100) == 250
        assert repository.get(live.token) is not None
        assert registry.sweep_expired() == 0


class TestQuotaWindow:
    def test_count_restarts_when_window_elapses(self, registry: SessionRegistry, clock) -> None:
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        for _ in range(3):
            registry.increment_and_check(token)
        clock.advance(12 * 3600)
        registry.get_or_create("anonymous", ADDRESS_KEY)
        assert registry.reset_request_counts() == 0
        assert registry.status(token).current_count == 3

        clock.advance(12 * 3600)
        assert registry.reset_request_counts() == 1
        assert registry.increment_and_check(token).current_count == 1

    def test_locked_out_session_recovers(self, repository: SessionRepository, clock) -> None:
        registry = SessionRegistry(
            repository,
            DatabaseCounter(repository, clock=clock),
            config=make_settings(anonymous_request_limit=2),
            cache=LocalCache(30.0, clock=clock.monotonic),
            clock=clock,
        )
        token = registry.get_or_create("anonymous", ADDRESS_KEY).token
        for _ in range(3):
            registry.increment_and_check(token)
        assert not registry.increment_and_check(token).allowed

        # Daily activity keeps extending the session past the window.
        clock.advance(24 * 3600 - 60)
        registry.get_or_create("anonymous", ADDRESS_KEY)
        clock.advance(60)

        assert registry.reset_request_counts() == 1
        assert registry.increment_and_check(token) == QuotaResult(True, 1, 2)
        assert repository.get(token).window_started_at == clock()

    def test_resets_in_batches_and_skips_dead_sessions(
        self, registry: SessionRegistry, repository: SessionRepository, clock
    ) -> None:
        started = clock() - timedelta(hours=25)
        for i in range(250):
            repository.insert(
                SessionRecord(
                    token=f"{i:064d}",
                    owner_kind="anonymous",
                    owner_key=f"owner-{i}",
                    request_count=5,
                    request_limit=600,
                    expires_at=clock() + timedelta(hours=1),
                    created_at=started,
                )
            )
        repository.insert(
            SessionRecord(
                token="e" * 64,
                owner_kind="anonymous",
                owner_key="expired",
                request_count=5,
                request_limit=600,
                expires_at=clock() - timedelta(seconds=1),
                created_at=started,
            )
        )

        assert registry.reset_request_counts(batch_size=100) == 250
        assert repository.get(f"{0:064d}").request_count == 0
        assert repository.get("e" * 64).request_count == 5
        assert registry.reset_request_counts() == 0

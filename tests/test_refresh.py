"""Tests for rotated refresh credential persistence."""

import sqlite3

import pytest

from agentpass.errors import CriticalPersistenceError, ValidationError
from agentpass.refresh import BackoffPolicy, RefreshCredentialStore


class FlakyStore:
    def __init__(self, real, failures):
        self.real = real
        self.failures = failures
        self.calls = 0

    def save_refresh_token(self, provider, refresh_token, now):
        self.calls += 1
        if self.calls <= self.failures:
            raise sqlite3.OperationalError("database is locked")
        self.real.save_refresh_token(provider, refresh_token, now)

    def get_refresh_token(self, provider):
        return self.real.get_refresh_token(provider)


class TestBackoffPolicy:
    def test_delays_double_and_cap(self):
        policy = BackoffPolicy()
        assert [policy.delay(n) for n in range(6)] == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0]


class TestRefreshCredentialStore:
    def test_persist_and_load(self, app):
        assert app.refresh.persist("card-network", "rt-1") == 1
        assert app.refresh.persist("card-network", "rt-2") == 1
        assert app.refresh.load("card-network") == "rt-2"
        assert app.refresh.load("unknown") is None

    def test_retries_with_backoff(self, app, clock):
        sleeps = []
        flaky = FlakyStore(app.store, failures=2)
        store = RefreshCredentialStore(flaky, clock=clock, sleep=sleeps.append)
        assert store.persist("card-network", "rt-3") == 3
        assert sleeps == [0.5, 1.0]
        assert store.load("card-network") == "rt-3"

    def test_exhausted_retries_are_critical(self, app, clock, caplog):
        sleeps = []
        flaky = FlakyStore(app.store, failures=99)
        store = RefreshCredentialStore(flaky, clock=clock, sleep=sleeps.append)
        with pytest.raises(CriticalPersistenceError) as exc_info:
            store.persist("card-network", "rt-4")
        assert exc_info.value.attempts == 5
        assert isinstance(exc_info.value.cause, sqlite3.OperationalError)
        assert sleeps == [0.5, 1.0, 2.0, 4.0]
        assert flaky.calls == 5
        assert any(r.levelname == "CRITICAL" for r in caplog.records)

    def test_requires_values(self, app):
        with pytest.raises(ValidationError):
            app.refresh.persist("card-network", "")

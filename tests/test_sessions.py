"""Unit tests for auth/sessions.py -- opaque tokens with idle expiry.

Uses an injected clock so expiry is tested without sleeping.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from auth.models import Role, UserRecord
from auth.sessions import SessionStore

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self) -> None:
        self.now = T0

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _user(user_id: int = 1, username: str = "bob", role: Role = Role.user) -> UserRecord:
    return UserRecord(
        id=user_id,
        username=username,
        password_hash="00" * 32,
        salt="00" * 16,
        role=role,
        created_at=T0.isoformat(),
        updated_at=T0.isoformat(),
        kdf_iterations=10_000,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sessions(clock) -> SessionStore:
    return SessionStore("s" * 64, idle_seconds=30 * 60, clock=clock)


class TestSessionLifecycle:
    def test_create_and_get(self, sessions) -> None:
        token = sessions.create(_user())
        entry = sessions.get(token)
        assert (entry.user_id, entry.username, entry.role) == (1, "bob", Role.user)
        assert entry.expires_at == T0 + timedelta(minutes=30)

    def test_tokens_are_unique_and_opaque(self, sessions) -> None:
        tokens = {sessions.create(_user()) for _ in range(50)}
        assert len(tokens) == 50
        assert all("bob" not in t and len(t) >= 40 for t in tokens)

    def test_raw_token_not_stored(self, sessions) -> None:
        token = sessions.create(_user())
        assert token not in sessions._entries

    def test_unknown_and_empty_tokens(self, sessions) -> None:
        assert sessions.get("not-a-token") is None
        assert sessions.get("") is None

    def test_destroy_is_idempotent(self, sessions) -> None:
        token = sessions.create(_user())
        sessions.destroy(token)
        sessions.destroy(token)
        sessions.destroy("")
        assert sessions.get(token) is None

    def test_returned_entry_is_a_copy(self, sessions) -> None:
        token = sessions.create(_user())
        sessions.get(token).role = Role.admin
        assert sessions.get(token).role is Role.user


class TestIdleExpiry:
    def test_expires_after_idle_period(self, sessions, clock) -> None:
        token = sessions.create(_user())
        clock.advance(minutes=30)
        assert sessions.get(token) is None
        assert len(sessions) == 0

    def test_activity_refreshes_expiry(self, sessions, clock) -> None:
        token = sessions.create(_user())
        for _ in range(4):
            clock.advance(minutes=20)
            assert sessions.get(token) is not None
        clock.advance(minutes=29)
        assert sessions.get(token) is not None

    def test_purge_expired(self, sessions, clock) -> None:
        stale = sessions.create(_user(1))
        clock.advance(minutes=20)
        fresh = sessions.create(_user(2, "alice"))
        clock.advance(minutes=15)
        assert sessions.purge_expired() == 1
        assert sessions.get(stale) is None
        assert sessions.get(fresh) is not None


class TestIdentity:
    def test_refresh_identity_updates_all_sessions_of_user(self, sessions) -> None:
        a = sessions.create(_user(1))
        b = sessions.create(_user(1))
        other = sessions.create(_user(2, "alice"))
        sessions.refresh_identity(1, "robert", Role.admin)
        assert sessions.get(a).username == "robert"
        assert sessions.get(b).role is Role.admin
        assert sessions.get(other).username == "alice"

    def test_destroy_user(self, sessions) -> None:
        a = sessions.create(_user(1))
        b = sessions.create(_user(1))
        other = sessions.create(_user(2, "alice"))
        assert sessions.destroy_user(1) == 2
        assert sessions.get(a) is None and sessions.get(b) is None
        assert sessions.get(other) is not None

    def test_different_secret_cannot_resolve_token(self, clock) -> None:
        first = SessionStore("a" * 64, clock=clock)
        token = first.create(_user())
        second = SessionStore("b" * 64, clock=clock)
        second._entries = dict(first._entries)
        assert second.get(token) is None

"""
auth/sessions.py -- Server-side session store with idle expiry.

Security design decisions:
  Tokens: secrets.token_urlsafe(32) gives 256 bits of entropy. The raw token
       is handed to the client once and never kept: entries are keyed by
       HMAC-SHA256(SECRET_KEY, token), so a dump of this process's memory
       does not yield usable session tokens and lookup stays O(1).

  Expiry: idle timeout only (default 30 minutes). Every successful get()
       pushes expires_at forward. An expired entry is deleted the moment it
       is looked up; purge_expired() sweeps the rest periodically.

  Identity refresh: the role and username on an entry are a cache of the
       user record. The request layer calls refresh_identity() with fresh
       values so a demoted admin loses admin rights on the next request.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from auth.models import Role, SessionEntry, UserRecord

logger = logging.getLogger("credvault.sessions")

DEFAULT_IDLE_SECONDS = 30 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------


class SessionStore:
    """In-memory map of hashed token -> SessionEntry with idle expiry.

    Usage:
        sessions = SessionStore(secret_key=settings.secret_key)
        token = sessions.create(user)
        entry = sessions.get(token)      # None once idle for idle_seconds
        sessions.destroy(token)
    """

    def __init__(
        self,
        secret_key: str,
        idle_seconds: int = DEFAULT_IDLE_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._secret = secret_key.encode("utf-8")
        self.idle = timedelta(seconds=idle_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, SessionEntry] = {}

    def _key(self, token: str) -> str:
        return hmac.new(self._secret, token.encode("utf-8"), hashlib.sha256).hexdigest()

    def __len__(self) -> int:
        return len(self._entries)

    def create(self, user: UserRecord) -> str:
        """Open a session for user and return the raw token (shown once)."""
        token = secrets.token_urlsafe(32)
        entry = SessionEntry(
            user_id=user.id,
            username=user.username,
            role=user.role,
            expires_at=self._clock() + self.idle,
        )
        with self._lock:
            self._entries[self._key(token)] = entry
        return token

    def get(self, token: str) -> SessionEntry | None:
        """Return a copy of the live entry for token and refresh its idle expiry."""
        if not token:
            return None
        key = self._key(token)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                return None
            entry.expires_at = now + self.idle
            return replace(entry)

    def destroy(self, token: str) -> None:
        """End the session for token. Unknown or empty tokens are ignored."""
        if not token:
            return
        with self._lock:
            self._entries.pop(self._key(token), None)

    def destroy_user(self, user_id: int) -> int:
        """End every session belonging to user_id. Returns how many were removed."""
        with self._lock:
            doomed = [k for k, e in self._entries.items() if e.user_id == user_id]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def refresh_identity(self, user_id: int, username: str, role: Role) -> None:
        """Copy the current username/role of user_id onto all its sessions."""
        with self._lock:
            for entry in self._entries.values():
                if entry.user_id == user_id:
                    entry.username = username
                    entry.role = role

    def purge_expired(self) -> int:
        """Delete every idle-expired entry. Returns number removed."""
        now = self._clock()
        with self._lock:
            doomed = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.info("Purged %d expired session(s)", len(doomed))
        return len(doomed)

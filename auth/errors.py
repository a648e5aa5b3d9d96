"""
auth/errors.py -- Exception taxonomy for the credential subsystem.

Two families:
  Request-level errors (ValidationError, AuthFailure, DuplicateUsernameError)
      carry a short message that is safe to show to the client.
  Store-level errors (IntegrityError, CryptoError, PersistenceError) describe
      what went wrong with the encrypted file. They stay server-side: the
      service layer converts them to InternalAuthError before they reach the
      route layer, so clients cannot tell corruption from a full disk.

No message in this module ever includes a hash, salt, key, or password.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class CredentialError(Exception):
    """Base class for every error raised by the auth package."""


class ValidationError(CredentialError):
    """Malformed input, rejected before the store is touched."""


class AuthFailure(CredentialError):
    """Bad credentials. The message is deliberately the same for every cause."""

    def __init__(self, message: str = "Invalid username or password.") -> None:
        super().__init__(message)


class DuplicateUsernameError(CredentialError):
    """Insert or rename would give two records the same username."""

    def __init__(self, username: str) -> None:
        super().__init__(f"Username {username!r} is already taken.")
        self.username = username


class InternalAuthError(CredentialError):
    """Generic failure surfaced to callers when the store is unusable."""

    def __init__(self, message: str = "Internal error.") -> None:
        super().__init__(message)


# ---------------------------------------------------------------------------
# Store-level failures
# ---------------------------------------------------------------------------


class StoreError(CredentialError):
    """Base class for failures reading or writing the credential file."""


class IntegrityError(StoreError):
    """Checksum mismatch or malformed envelope: the file is corrupt or tampered with."""


class CryptoError(StoreError):
    """The payload could not be decrypted (wrong key, wrong nonce, or flipped bits)."""


class PersistenceError(StoreError):
    """Writing the credential file failed. The in-memory table was not changed."""

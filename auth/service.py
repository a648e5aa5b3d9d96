"""
auth/service.py -- Policy layer between the credential store and the request layer.

AuthService never touches the credential file directly; everything goes
through CredentialStore. It adds the rules the store does not know about:

  Uniform failure [C1]: validate_login() raises the same AuthFailure for an
       unknown username and for a wrong password, and runs one PBKDF2
       derivation in both cases (against a dummy salt/hash for unknown users)
       so response time does not reveal whether a username exists.

  Re-proof: change_credentials() requires the current password before any
       change, so a hijacked session cannot silently take over an account.

  Input validation: lengths and roles are checked here, before the store is
       touched, so the CLI gets the same rules as the HTTP layer.

  Error mapping: store failures (IntegrityError, CryptoError, PersistenceError)
       are logged by type only and re-raised as InternalAuthError. Callers and
       clients cannot tell corruption from disk failure.

Layer rule: no imports from api/. core.config is imported only for typing.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

from auth.crypto import derive_master_key, derive_password_hash, generate_salt, verify_password
from auth.errors import AuthFailure, InternalAuthError, StoreError, ValidationError
from auth.models import Role, UserRecord
from auth.policy import is_admin
from auth.store import CredentialStore

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("credvault.auth")

USERNAME_MIN_LEN = 3
USERNAME_MAX_LEN = 64
PASSWORD_MIN_LEN = 6
PASSWORD_MAX_LEN = 255


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_username(username: str) -> str:
    if not isinstance(username, str) or not USERNAME_MIN_LEN <= len(username) <= USERNAME_MAX_LEN:
        raise ValidationError(f"Username must be {USERNAME_MIN_LEN}-{USERNAME_MAX_LEN} characters.")
    if username != username.strip():
        raise ValidationError("Username must not start or end with whitespace.")
    return username


def validate_password(password: str) -> str:
    if not isinstance(password, str) or not PASSWORD_MIN_LEN <= len(password) <= PASSWORD_MAX_LEN:
        raise ValidationError(f"Password must be {PASSWORD_MIN_LEN}-{PASSWORD_MAX_LEN} characters.")
    return password


def validate_role(role: str | Role) -> Role:
    try:
        return Role(role)
    except ValueError as exc:
        raise ValidationError("Role must be 'admin' or 'user'.") from exc


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@contextmanager
def _store_errors_hidden(action: str):
    """Convert store-level failures into a generic InternalAuthError."""
    try:
        yield
    except StoreError as exc:
        logger.error("Credential store failure during %s: %s", action, type(exc).__name__)
        raise InternalAuthError() from exc


class AuthService:
    """Login validation, credential changes, and role lookups.

    Usage:
        service = AuthService(store)
        user = service.validate_login("admin", "password")   # raises AuthFailure
    """

    def __init__(self, store: CredentialStore) -> None:
        self.store = store
        # Timing equalization material [C1]. Derived once with the store's work
        # factor so an unknown-user check costs the same as a real one.
        self._dummy_salt = generate_salt()
        self._dummy_hash = derive_password_hash("credvault_timing_dummy", self._dummy_salt, store.iterations)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def validate_login(self, username: str, password: str) -> UserRecord:
        """Return the matching record or raise AuthFailure. Never says which part was wrong."""
        user = self.store.find_by_username(username)
        if user is None:
            # Equalize timing -- do NOT return early before running the KDF [C1]
            verify_password(password, self._dummy_salt, self._dummy_hash, self.store.iterations)
            logger.info("Login failed")
            raise AuthFailure()
        if not verify_password(password, bytes.fromhex(user.salt), user.password_hash, user.kdf_iterations):
            logger.info("Login failed")
            raise AuthFailure()
        return user

    def change_credentials(
        self,
        user_id: int,
        current_password: str,
        new_username: str | None = None,
        new_password: str | None = None,
    ) -> UserRecord:
        """Rotate username and/or password after re-proving the current password.

        Raises AuthFailure (nothing changed) if user_id is unknown or the
        current password is wrong, ValidationError for bad new values or when
        nothing would change, DuplicateUsernameError if the new name is taken.
        """
        user = self.store.find_by_id(user_id)
        if user is None or not verify_password(
            current_password, bytes.fromhex(user.salt), user.password_hash, user.kdf_iterations
        ):
            raise AuthFailure("Current password is incorrect.")

        if new_username is None and new_password is None:
            raise ValidationError("Provide a new username, a new password, or both.")
        if new_username is not None:
            validate_username(new_username)
        if new_password is not None:
            validate_password(new_password)

        def unchanged_since_verify(table, record: UserRecord) -> None:
            # A rotation that landed after the check above invalidates the proof.
            if (record.salt, record.password_hash) != (user.salt, user.password_hash):
                raise AuthFailure("Current password is incorrect.")

        with _store_errors_hidden("credential change"):
            updated = self.store.update(
                user_id,
                new_username=new_username,
                new_password=new_password,
                guard=unchanged_since_verify,
            )
        if updated is None:
            # Record vanished between the check and the write.
            raise AuthFailure("Current password is incorrect.")
        return updated

    def role_of(self, user_id: int) -> Role | None:
        user = self.store.find_by_id(user_id)
        return user.role if user is not None else None

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------

    def create_user(self, username: str, password: str, role: str | Role = Role.user) -> UserRecord:
        """Validate then insert. Raises ValidationError or DuplicateUsernameError."""
        validate_username(username)
        validate_password(password)
        role = validate_role(role)
        with _store_errors_hidden("user creation"):
            return self.store.insert(username, password, role)

    def list_users(self) -> list[UserRecord]:
        return self.store.list_users()

    def get_user(self, user_id: int) -> UserRecord | None:
        return self.store.find_by_id(user_id)

    def set_role(self, user_id: int, role: str | Role) -> UserRecord | None:
        """Change a user's role. Returns None for an unknown id.

        Refuses to demote the last admin: with no admin left there is no way
        to create or manage accounts without editing the file by hand.
        """
        role = validate_role(role)

        def keeps_an_admin(table, record: UserRecord) -> None:
            # Runs under the store's write lock; the count is exact.
            if is_admin(record) and role != Role.admin:
                if sum(1 for u in table.values() if is_admin(u)) <= 1:
                    raise ValidationError("Cannot demote the last admin account.")

        with _store_errors_hidden("role change"):
            return self.store.update(user_id, new_role=role, guard=keeps_an_admin)

    def bootstrap(self, username: str, password: str | None) -> UserRecord | None:
        """Create the initial admin when the store holds no users.

        Returns the new record, or None if users already exist. The bootstrap
        password is a deployment secret; rotate it immediately after first login.
        """
        if self.store.has_users():
            return None
        if not password:
            raise ValidationError(
                "The credential store is empty and BOOTSTRAP_ADMIN_PASSWORD is not set. "
                "Set it to create the initial admin account."
            )
        user = self.create_user(username, password, Role.admin)
        logger.warning(
            "Created initial admin account %r. Change its password immediately.",
            user.username,
        )
        return user


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_auth_service(settings: Settings) -> AuthService:
    """Build the store from settings, load it, and bootstrap on first run.

    Load failures (IntegrityError, CryptoError) propagate: a corrupt or
    tampered credential file must stop startup, not look like a fresh install.
    """
    store = CredentialStore(
        settings.credentials_path,
        derive_master_key(settings.master_key),
        iterations=settings.password_iterations,
    )
    store.load()
    service = AuthService(store)
    service.bootstrap(settings.bootstrap_admin_username, settings.bootstrap_admin_password)
    return service

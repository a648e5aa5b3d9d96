"""
auth/store.py -- Encrypted single-file persistence for user accounts.

Pattern: Repository over a flat file. CredentialStore is the only component
that reads or writes the credential file and owns the authoritative
in-memory user table for the process lifetime.

File format (JSON envelope, UTF-8):
    {"format": "credvault/v1",
     "nonce": <base64>,
     "checksum": <sha256 hex of plaintext>,
     "ciphertext": <base64 AES-256-GCM>}
The plaintext is JSON: {"next_id": <int>, "users": [<UserRecord>, ...]}.

Concurrency:
  Copy-on-write. Every mutation takes _write_lock, builds a new table from
  the current one, persists it, and only then swaps self._users. Readers
  never take the lock: they dereference self._users once and work on that
  snapshot, which is never mutated after publication. A failed persist
  leaves self._users untouched, so rollback needs no extra code.

Durability:
  persist() writes to a temp file in the same directory, fsyncs, and
  os.replace()s it over the target, so a crash leaves either the old file or
  the new one, never a half-written one. The file is 0600 and the directory
  is created 0700.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import tempfile
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from auth.crypto import (
    PASSWORD_ITERATIONS,
    checksum,
    decrypt_payload,
    derive_password_hash,
    encrypt_payload,
    generate_salt,
)
from auth.errors import DuplicateUsernameError, IntegrityError, PersistenceError
from auth.models import Role, UserRecord

logger = logging.getLogger("credvault.store")

FILE_FORMAT = "credvault/v1"
_FILE_MODE = 0o600
_DIR_MODE = 0o700

UserTable = dict[int, UserRecord]
UpdateGuard = Callable[[UserTable, UserRecord], None]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CredentialStore:
    """Repository for UserRecord entities backed by one encrypted file.

    Usage:
        store = CredentialStore(Path("data/credentials.enc"), derive_master_key(secret))
        store.load()
        store.insert("admin", "s3cret!", Role.admin)
        user = store.find_by_username("admin")
    """

    def __init__(self, path: Path, master_key: bytes, iterations: int = PASSWORD_ITERATIONS) -> None:
        self.path = Path(path)
        self._key = master_key
        self.iterations = iterations
        self._write_lock = threading.Lock()
        self._users: UserTable = {}
        self._next_id = 1

    # ------------------------------------------------------------------
    # File I/O
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> UserTable:
        """Read and decrypt the credential file into the in-memory table.

        An absent file is the first-run state: the table is empty and the
        caller is expected to bootstrap. A present but unreadable file raises
        IntegrityError or CryptoError and leaves the current table in place;
        it is never reported as "no users".
        """
        with self._write_lock:
            if not self.path.exists():
                logger.info("Credential file %s not found -- starting with an empty store", self.path)
                self._users, self._next_id = {}, 1
                return dict(self._users)

            try:
                raw = self.path.read_bytes()
            except OSError as exc:
                raise PersistenceError(f"Could not read credential file: {exc.strerror}") from exc

            nonce, expected_sum, ciphertext = _parse_envelope(raw)
            plaintext = decrypt_payload(ciphertext, nonce, self._key)
            if checksum(plaintext) != expected_sum:
                raise IntegrityError("Credential file checksum mismatch.")

            users, next_id = _deserialize(plaintext)
            self._users, self._next_id = users, next_id
            logger.info("Loaded %d user(s) from %s", len(users), self.path)
            return dict(users)

    def persist(self, table: UserTable, next_id: int | None = None) -> None:
        """Replace the whole table: write it to disk, then make it the live table.

        next_id defaults to one past the highest id in table, never lower
        than the current high-water mark. On a failed write neither the file
        nor the in-memory table changes.
        """
        table = dict(table)
        with self._write_lock:
            if next_id is None:
                next_id = max([self._next_id, *(uid + 1 for uid in table)])
            self._commit(table, next_id)

    def _persist_locked(self, table: UserTable, next_id: int) -> None:
        # Caller holds _write_lock.
        plaintext = _serialize(table, next_id)
        ciphertext, nonce = encrypt_payload(plaintext, self._key)
        envelope = {
            "format": FILE_FORMAT,
            "nonce": base64.b64encode(nonce).decode("ascii"),
            "checksum": checksum(plaintext),
            "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
        }
        self._atomic_write(json.dumps(envelope).encode("utf-8"))
        logger.info("Persisted %d user(s) to %s", len(table), self.path)

    def _atomic_write(self, data: bytes) -> None:
        directory = self.path.parent
        tmp_name: str | None = None
        try:
            directory.mkdir(mode=_DIR_MODE, parents=True, exist_ok=True)
            # mkstemp creates the file 0600, so the secret never exists with a
            # wider mode, not even briefly.
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=directory)
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, _FILE_MODE)
            os.replace(tmp_name, self.path)
            tmp_name = None
            _fsync_directory(directory)
        except OSError as exc:
            raise PersistenceError(f"Could not write credential file: {exc.strerror}") from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.warning("Could not remove temp file %s", tmp_name)

    # ------------------------------------------------------------------
    # Queries (lock-free, snapshot reads)
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        return bool(self._users)

    def find_by_username(self, username: str) -> UserRecord | None:
        """Exact, case-sensitive match. "Admin" and "admin" are different users."""
        for record in self._users.values():
            if record.username == username:
                return record
        return None

    def find_by_id(self, user_id: int) -> UserRecord | None:
        return self._users.get(user_id)

    def list_users(self) -> list[UserRecord]:
        """Return every record ordered by id."""
        users = self._users
        return [users[uid] for uid in sorted(users)]

    # ------------------------------------------------------------------
    # Mutations (serialized, copy-on-write)
    # ------------------------------------------------------------------

    def insert(self, username: str, password: str, role: Role) -> UserRecord:
        """Create, persist, and return a new user.

        Raises DuplicateUsernameError before any work if the name is taken.
        Raises PersistenceError if the write fails; the new user is then not
        visible to any reader.
        """
        role = Role(role)
        with self._write_lock:
            current = self._users
            if _username_taken(current, username):
                raise DuplicateUsernameError(username)

            salt = generate_salt()
            now = _now_iso()
            user_id = max([self._next_id, *(uid + 1 for uid in current)])
            record = UserRecord(
                id=user_id,
                username=username,
                password_hash=derive_password_hash(password, salt, self.iterations),
                salt=salt.hex(),
                role=role,
                created_at=now,
                updated_at=now,
                kdf_iterations=self.iterations,
            )
            table = dict(current)
            table[user_id] = record
            self._commit(table, user_id + 1)
        logger.info("Created user id=%d role=%s", record.id, record.role.value)
        return record

    def update(
        self,
        user_id: int,
        new_username: str | None = None,
        new_password: str | None = None,
        new_role: Role | None = None,
        guard: UpdateGuard | None = None,
    ) -> UserRecord | None:
        """Apply a credential change and persist it.

        Returns None without touching anything if user_id does not exist.
        The password hash and salt are re-derived only when new_password is
        given; renaming or changing role keeps the existing hash.

        guard(table, record) runs under the write lock against the table the
        change will be applied to. Whatever it raises aborts the update.
        """
        with self._write_lock:
            current = self._users
            existing = current.get(user_id)
            if existing is None:
                return None
            if guard is not None:
                guard(current, existing)

            changes: dict = {"updated_at": _now_iso()}
            if new_username is not None and new_username != existing.username:
                if _username_taken(current, new_username, exclude_id=user_id):
                    raise DuplicateUsernameError(new_username)
                changes["username"] = new_username
            if new_password is not None:
                salt = generate_salt()
                changes["salt"] = salt.hex()
                changes["password_hash"] = derive_password_hash(new_password, salt, self.iterations)
                changes["kdf_iterations"] = self.iterations
            if new_role is not None:
                changes["role"] = Role(new_role)

            record = replace(existing, **changes)
            table = dict(current)
            table[user_id] = record
            self._commit(table, self._next_id)
        logger.info("Updated user id=%d fields=%s", user_id, sorted(k for k in changes if k != "updated_at"))
        return record

    def _commit(self, table: UserTable, next_id: int) -> None:
        # Caller holds _write_lock. Publish only after the file swap succeeded.
        self._persist_locked(table, next_id)
        self._users = table
        self._next_id = next_id


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _username_taken(table: UserTable, username: str, exclude_id: int | None = None) -> bool:
    return any(r.username == username and r.id != exclude_id for r in table.values())


def _serialize(table: UserTable, next_id: int) -> bytes:
    payload = {
        "next_id": next_id,
        "users": [table[uid].to_dict() for uid in sorted(table)],
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _deserialize(plaintext: bytes) -> tuple[UserTable, int]:
    try:
        payload = json.loads(plaintext.decode("utf-8"))
        records = [UserRecord.from_dict(item) for item in payload["users"]]
        next_id = int(payload["next_id"])
    except (UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
        raise IntegrityError("Credential payload is not a valid user table.") from exc

    users: UserTable = {}
    seen_names: set[str] = set()
    for record in records:
        if record.id in users or record.username in seen_names:
            raise IntegrityError("Credential payload contains duplicate users.")
        users[record.id] = record
        seen_names.add(record.username)
    return users, max([next_id, *(uid + 1 for uid in users)])


def _parse_envelope(raw: bytes) -> tuple[bytes, str, bytes]:
    try:
        envelope = json.loads(raw.decode("utf-8"))
        if envelope.get("format") != FILE_FORMAT:
            raise IntegrityError("Credential file has an unknown format.")
        nonce = base64.b64decode(envelope["nonce"], validate=True)
        ciphertext = base64.b64decode(envelope["ciphertext"], validate=True)
        expected_sum = str(envelope["checksum"])
    except IntegrityError:
        raise
    except (UnicodeDecodeError, ValueError, KeyError, TypeError, AttributeError, binascii.Error) as exc:
        raise IntegrityError("Credential file envelope is malformed.") from exc
    return nonce, expected_sum, ciphertext


def _fsync_directory(directory: Path) -> None:
    """Flush the rename itself to disk. Not supported on every platform."""
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)

"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). The store and service
own the behaviour; these types only fix the shape of the data.

UserRecord is frozen. The credential store swaps whole tables on every
mutation (copy-on-write), so a record handed to a reader must never change
under it. Use dataclasses.replace() to derive an updated record.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    admin = "admin"
    user = "user"


@dataclass(frozen=True)
class UserRecord:
    """One account in the credential file.

    password_hash and salt are hex strings. kdf_iterations records the PBKDF2
    work factor the hash was derived with, so raising the configured count
    only affects hashes derived afterwards.
    """

    id: int
    username: str
    password_hash: str
    salt: str
    role: Role
    created_at: str
    updated_at: str
    kdf_iterations: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data["role"] = self.role.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> UserRecord:
        return cls(
            id=int(data["id"]),
            username=str(data["username"]),
            password_hash=str(data["password_hash"]),
            salt=str(data["salt"]),
            role=Role(data["role"]),
            created_at=str(data["created_at"]),
            updated_at=str(data["updated_at"]),
            kdf_iterations=int(data["kdf_iterations"]),
        )

    def public_fields(self) -> dict:
        """Return the non-secret fields only -- never password_hash or salt."""
        return {
            "id": self.id,
            "username": self.username,
            "role": self.role.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class SessionEntry:
    """Server-side session state, keyed in SessionStore by an opaque token."""

    user_id: int
    username: str
    role: Role
    expires_at: datetime

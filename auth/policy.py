"""
auth/policy.py -- The authorization predicates.

Every admin-gated operation (HTTP dependency, role management, CLI) calls
is_admin() from here rather than comparing role strings at the call site.
The predicates accept a UserRecord, a SessionEntry, or a bare Role so the
store, the service, and the session gate can share them.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from typing import Union

from auth.models import Role, SessionEntry, UserRecord

Subject = Union[UserRecord, SessionEntry, Role, None]


def is_authenticated(subject: Subject) -> bool:
    """True for any live identity."""
    return subject is not None


def is_admin(subject: Subject) -> bool:
    """True only for an identity whose role is admin."""
    if subject is None:
        return False
    role = subject if isinstance(subject, Role) else subject.role
    return role == Role.admin

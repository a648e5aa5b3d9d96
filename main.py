#!/usr/bin/env python3
"""
credvault -- admin command line for the encrypted credential store.

Usage:
  python main.py init
  python main.py create-user bob --role user
  python main.py list-users
  python main.py verify

Environment variables (see core/config.py):
  MASTER_KEY                Required. Encrypts the credential file.
                            SECRET_KEY is not needed: the CLI opens no sessions.
  CREDENTIALS_PATH          Location of the credential file (default data/credentials.enc).
  BOOTSTRAP_ADMIN_USERNAME  Username for `init` (default admin).
  BOOTSTRAP_ADMIN_PASSWORD  Password for `init`; prompted for when unset.

Passwords are read with getpass, never from the command line, so they do not
end up in shell history or the process list.
"""

from __future__ import annotations

import argparse
import getpass
import sys
from typing import Optional

from auth.crypto import derive_master_key
from auth.errors import CredentialError, StoreError
from auth.service import AuthService
from auth.store import CredentialStore
from core.config import Settings, get_settings


def _open_service(settings: Settings) -> AuthService:
    store = CredentialStore(
        settings.credentials_path,
        derive_master_key(settings.master_key),
        iterations=settings.password_iterations,
    )
    store.load()
    return AuthService(store)


def _prompt_password(label: str = "Password") -> str:
    """Ask twice and insist the answers match."""
    first = getpass.getpass(f"{label}: ")
    second = getpass.getpass(f"{label} (again): ")
    if first != second:
        raise CredentialError("Passwords do not match.")
    return first


def cmd_init(settings: Settings, args: argparse.Namespace) -> int:
    service = _open_service(settings)
    if service.store.has_users():
        print(f"  Credential store {settings.credentials_path} already has users; nothing to do.")
        return 0
    password = settings.bootstrap_admin_password or _prompt_password("Admin password")
    user = service.bootstrap(settings.bootstrap_admin_username, password)
    print(f"  Created admin account '{user.username}' (id {user.id}) in {settings.credentials_path}.")
    return 0


def cmd_create_user(settings: Settings, args: argparse.Namespace) -> int:
    service = _open_service(settings)
    password = _prompt_password()
    user = service.create_user(args.username, password, args.role)
    print(f"  Created user '{user.username}' (id {user.id}, role {user.role.value}).")
    return 0


def cmd_list_users(settings: Settings, args: argparse.Namespace) -> int:
    service = _open_service(settings)
    users = service.list_users()
    if not users:
        print("  No users.")
        return 0
    print(f"  {'ID':>4}  {'USERNAME':<24} {'ROLE':<6} CREATED")
    for user in users:
        print(f"  {user.id:>4}  {user.username:<24} {user.role.value:<6} {user.created_at}")
    return 0


def cmd_verify(settings: Settings, args: argparse.Namespace) -> int:
    """Decrypt and checksum the credential file without changing it."""
    if not settings.credentials_path.exists():
        print(f"  [!] No credential file at {settings.credentials_path}.")
        return 1
    try:
        service = _open_service(settings)
    except StoreError as exc:
        # Type only: the message is generic and the cause must stay on this host.
        print(f"  [!] Credential file failed verification ({type(exc).__name__}).")
        return 1
    print(f"  OK: {len(service.list_users())} user(s), checksum and encryption verified.")
    return 0


_COMMANDS = {
    "init": cmd_init,
    "create-user": cmd_create_user,
    "list-users": cmd_list_users,
    "verify": cmd_verify,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="credvault",
        description="Manage the encrypted credential store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  MASTER_KEY=... python main.py init
  MASTER_KEY=... python main.py create-user bob --role user
  MASTER_KEY=... python main.py verify
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.add_parser("init", help="Create the initial admin account if the store is empty")
    create = sub.add_parser("create-user", help="Add an account (password is prompted for)")
    create.add_argument("username", help="3-64 characters, case-sensitive")
    create.add_argument(
        "--role",
        choices=["admin", "user"],
        default="user",
        help="Account role (default: user)",
    )
    sub.add_parser("list-users", help="Show accounts without secret fields")
    sub.add_parser("verify", help="Decrypt and checksum the credential file")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    try:
        settings = get_settings()
    except ValueError as exc:
        print(f"  [!] Configuration error: {exc}")
        return 2

    try:
        return _COMMANDS[args.command](settings, args)
    except StoreError as exc:
        print(f"  [!] Credential store error ({type(exc).__name__}).")
        return 1
    except CredentialError as exc:
        print(f"  [!] {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

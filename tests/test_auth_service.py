"""Unit tests for auth/service.py -- login policy, credential changes, bootstrap.

Covers:
- validate_login: success, wrong password, unknown user (same AuthFailure text)
- timing equalization: unknown usernames still run the KDF
- change_credentials: re-proof required; failed attempts change nothing
- create_user / set_role validation, last-admin protection
- bootstrap scenario: empty store -> admin created -> survives restart
- store failures surface as a generic InternalAuthError
"""

from __future__ import annotations

import threading
import time

import pytest

from auth import service as service_module
from auth.errors import (
    AuthFailure,
    DuplicateUsernameError,
    InternalAuthError,
    ValidationError,
)
from auth.models import Role
from auth.policy import is_admin, is_authenticated
from auth.service import AuthService
from auth.store import CredentialStore

ITER = 10_000


class TestValidateLogin:
    def test_correct_credentials_return_record(self, service, user_factory) -> None:
        bob = user_factory("bob", "secret1")
        assert service.validate_login("bob", "secret1") == bob

    def test_wrong_password_fails(self, service, user_factory) -> None:
        user_factory("bob", "secret1")
        with pytest.raises(AuthFailure):
            service.validate_login("bob", "secret2")

    def test_unknown_user_fails_identically(self, service, user_factory) -> None:
        user_factory("bob", "secret1")
        with pytest.raises(AuthFailure) as wrong_pw:
            service.validate_login("bob", "nope")
        with pytest.raises(AuthFailure) as unknown:
            service.validate_login("nobody", "nope")
        assert str(wrong_pw.value) == str(unknown.value)
        assert type(wrong_pw.value) is type(unknown.value)

    def test_username_is_case_sensitive(self, service, user_factory) -> None:
        user_factory("bob", "secret1")
        with pytest.raises(AuthFailure):
            service.validate_login("Bob", "secret1")

    def test_unknown_user_still_runs_kdf(self, service, monkeypatch) -> None:
        """[C1] An unknown username must cost one KDF run, like a real check."""
        calls = []
        real = service_module.verify_password

        def counting(*args, **kwargs):
            calls.append(args)
            return real(*args, **kwargs)

        monkeypatch.setattr(service_module, "verify_password", counting)
        with pytest.raises(AuthFailure):
            service.validate_login("ghost", "whatever")
        assert len(calls) == 1


class TestChangeCredentials:
    def test_wrong_current_password_changes_nothing(self, service, user_factory) -> None:
        bob = user_factory("bob", "secret1")
        with pytest.raises(AuthFailure):
            service.change_credentials(bob.id, "wrong!", new_username="robert", new_password="secret2")
        after = service.get_user(bob.id)
        assert (after.username, after.password_hash, after.salt) == (bob.username, bob.password_hash, bob.salt)
        assert service.validate_login("bob", "secret1") == bob

    def test_wrong_current_password_does_not_touch_file(self, service, user_factory) -> None:
        bob = user_factory("bob", "secret1")
        raw = service.store.path.read_bytes()
        with pytest.raises(AuthFailure):
            service.change_credentials(bob.id, "wrong!", new_password="secret2")
        assert service.store.path.read_bytes() == raw

    def test_rotation_between_verify_and_write_is_rejected(self, service, user_factory, monkeypatch) -> None:
        bob = user_factory("bob", "secret1")
        real = service_module.verify_password

        def verify_then_rotate(*args, **kwargs):
            ok = real(*args, **kwargs)
            monkeypatch.setattr(service_module, "verify_password", real)
            service.store.update(bob.id, new_password="rotated1")
            return ok

        monkeypatch.setattr(service_module, "verify_password", verify_then_rotate)
        with pytest.raises(AuthFailure):
            service.change_credentials(bob.id, "secret1", new_username="robert")
        assert service.get_user(bob.id).username == "bob"
        assert service.validate_login("bob", "rotated1").id == bob.id

    def test_unknown_user_id_fails(self, service) -> None:
        with pytest.raises(AuthFailure):
            service.change_credentials(42, "whatever", new_password="secret2")

    def test_password_rotation(self, service, user_factory) -> None:
        bob = user_factory("bob", "secret1")
        service.change_credentials(bob.id, "secret1", new_password="secret2")
        assert service.validate_login("bob", "secret2").id == bob.id
        with pytest.raises(AuthFailure):
            service.validate_login("bob", "secret1")

    def test_username_rotation_keeps_password(self, service, user_factory) -> None:
        bob = user_factory("bob", "secret1")
        updated = service.change_credentials(bob.id, "secret1", new_username="robert")
        assert updated.password_hash == bob.password_hash
        assert service.validate_login("robert", "secret1").id == bob.id

    def test_rename_to_taken_username(self, service, user_factory) -> None:
        user_factory("alice", "secret1")
        bob = user_factory("bob", "secret1")
        with pytest.raises(DuplicateUsernameError):
            service.change_credentials(bob.id, "secret1", new_username="alice")

    def test_nothing_to_change(self, service, user_factory) -> None:
        bob = user_factory("bob", "secret1")
        with pytest.raises(ValidationError):
            service.change_credentials(bob.id, "secret1")

    def test_new_password_too_short(self, service, user_factory) -> None:
        bob = user_factory("bob", "secret1")
        with pytest.raises(ValidationError):
            service.change_credentials(bob.id, "secret1", new_password="123")


class TestAccountManagement:
    @pytest.mark.parametrize("username", ["ab", "x" * 65, " padded", ""])
    def test_bad_username_rejected_before_store(self, service, username) -> None:
        with pytest.raises(ValidationError):
            service.create_user(username, "secret1", "user")
        assert not service.store.exists()

    def test_short_password_rejected(self, service) -> None:
        with pytest.raises(ValidationError):
            service.create_user("carol", "12345", "user")

    def test_unknown_role_rejected(self, service) -> None:
        with pytest.raises(ValidationError):
            service.create_user("carol", "secret1", "superuser")

    def test_duplicate_create(self, service, user_factory) -> None:
        user_factory("carol")
        with pytest.raises(DuplicateUsernameError):
            service.create_user("carol", "secret1", "user")
        assert len(service.list_users()) == 1

    def test_role_of(self, service, user_factory) -> None:
        admin = user_factory("root", role=Role.admin)
        bob = user_factory("bob")
        assert service.role_of(admin.id) is Role.admin
        assert service.role_of(bob.id) is Role.user
        assert service.role_of(999) is None

    def test_set_role_promotes(self, service, user_factory) -> None:
        user_factory("root", role=Role.admin)
        bob = user_factory("bob")
        assert service.set_role(bob.id, "admin").role is Role.admin

    def test_cannot_demote_last_admin(self, service, user_factory) -> None:
        root = user_factory("root", role=Role.admin)
        with pytest.raises(ValidationError):
            service.set_role(root.id, "user")
        assert service.role_of(root.id) is Role.admin

    def test_can_demote_admin_when_another_exists(self, service, user_factory) -> None:
        root = user_factory("root", role=Role.admin)
        user_factory("root2", role=Role.admin)
        assert service.set_role(root.id, "user").role is Role.user

    def test_concurrent_demotions_keep_one_admin(self, service, user_factory, monkeypatch) -> None:
        root = user_factory("root", role=Role.admin)
        root2 = user_factory("root2", role=Role.admin)

        real_write = service.store._persist_locked

        def slow_write(table, next_id):
            time.sleep(0.1)
            real_write(table, next_id)

        monkeypatch.setattr(service.store, "_persist_locked", slow_write)
        barrier = threading.Barrier(2)
        refused: list[Exception] = []

        def demote(user_id: int) -> None:
            barrier.wait()
            try:
                service.set_role(user_id, "user")
            except ValidationError as exc:
                refused.append(exc)

        threads = [threading.Thread(target=demote, args=(uid,)) for uid in (root.id, root2.id)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(refused) == 1
        assert [u.username for u in service.list_users() if is_admin(u)] in (["root"], ["root2"])

    def test_set_role_unknown_id(self, service) -> None:
        assert service.set_role(7, "user") is None


class TestPolicy:
    def test_predicates(self, service, user_factory) -> None:
        admin = user_factory("root", role=Role.admin)
        bob = user_factory("bob")
        assert is_admin(admin) and not is_admin(bob)
        assert is_admin(Role.admin) and not is_admin(Role.user)
        assert not is_admin(None)
        assert is_authenticated(bob) and not is_authenticated(None)


class TestBootstrap:
    def test_bootstrap_scenario_survives_restart(self, store_path, master_key) -> None:
        store = CredentialStore(store_path, master_key, iterations=ITER)
        assert store.load() == {}

        created = AuthService(store).bootstrap("admin", "bootstrap-pw")
        assert created.role is Role.admin

        restarted = CredentialStore(store_path, master_key, iterations=ITER)
        users = restarted.load()
        assert len(users) == 1
        only = next(iter(users.values()))
        assert (only.username, only.role) == ("admin", Role.admin)

        service = AuthService(restarted)
        assert service.validate_login("admin", "bootstrap-pw").id == only.id
        with pytest.raises(AuthFailure):
            service.validate_login("admin", "wrong")

    def test_bootstrap_is_noop_when_users_exist(self, service, user_factory) -> None:
        user_factory("root", role=Role.admin)
        assert service.bootstrap("admin", "bootstrap-pw") is None
        assert [u.username for u in service.list_users()] == ["root"]

    def test_bootstrap_without_password_is_fatal(self, service) -> None:
        with pytest.raises(ValidationError):
            service.bootstrap("admin", "")
        assert not service.store.exists()


class TestStoreFailureMapping:
    def test_persistence_failure_becomes_internal_error(self, service, monkeypatch) -> None:
        def boom(src, dst):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr("auth.store.os.replace", boom)
        with pytest.raises(InternalAuthError) as exc_info:
            service.create_user("carol", "secret1", "user")
        assert "space" not in str(exc_info.value)
        assert service.store.find_by_username("carol") is None

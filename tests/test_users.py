"""
Tests for user registration, authentication and lockout
"""

import pytest
from datetime import datetime, timezone, timedelta

from bank_ledger.errors import (
    AccountLockedError, AuthenticationError, DuplicateUserError, UserValidationError
)
from bank_ledger.storage import InMemoryStorage
from bank_ledger.users import UserManager, UserRole


PASSWORD = "correct-horse"


class TestRegistration:
    """Validation and uniqueness on signup"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.users = UserManager(self.storage)

    def test_register_standard_user(self):
        user = self.users.register("alice_1", "alice@example.com", "Alice Example", PASSWORD)

        assert user.role == UserRole.STANDARD
        assert not user.is_admin
        assert user.is_active
        assert user.password_hash and user.password_hash != PASSWORD
        assert self.users.get_user(user.id).username == "alice_1"

    def test_passwords_are_salted(self):
        a = self.users.register("user_a", "a@example.com", "User A", PASSWORD)
        b = self.users.register("user_b", "b@example.com", "User B", PASSWORD)
        assert a.password_salt != b.password_salt
        assert a.password_hash != b.password_hash

    @pytest.mark.parametrize("username", ["ab", "a" * 51, "bad name", "bad-name", "", None])
    def test_invalid_username(self, username):
        with pytest.raises(UserValidationError, match="Username"):
            self.users.register(username, "x@example.com", "X", PASSWORD)

    @pytest.mark.parametrize("email", ["plain", "no@tld", "a b@example.com", "", "x" * 95 + "@example.com"])
    def test_invalid_email(self, email):
        with pytest.raises(UserValidationError, match="email"):
            self.users.register("valid_user", email, "X", PASSWORD)

    def test_short_password(self):
        with pytest.raises(UserValidationError, match="at least 8"):
            self.users.register("valid_user", "x@example.com", "X", "short")

    def test_configured_password_length(self):
        users = UserManager(InMemoryStorage(), password_min_length=12)
        with pytest.raises(UserValidationError, match="at least 12"):
            users.register("valid_user", "x@example.com", "X", "elevenchars")

    @pytest.mark.parametrize("full_name", ["", "   ", "n" * 101])
    def test_invalid_full_name(self, full_name):
        with pytest.raises(UserValidationError, match="Full name"):
            self.users.register("valid_user", "x@example.com", full_name, PASSWORD)

    def test_duplicate_username(self):
        self.users.register("alice", "alice@example.com", "Alice", PASSWORD)
        with pytest.raises(DuplicateUserError):
            self.users.register("alice", "other@example.com", "Alice Two", PASSWORD)

    def test_duplicate_email_is_case_insensitive(self):
        self.users.register("alice", "alice@example.com", "Alice", PASSWORD)
        with pytest.raises(DuplicateUserError):
            self.users.register("alice2", "ALICE@Example.com", "Alice Two", PASSWORD)
        assert self.users.count_users() == 1

    def test_list_users_newest_first(self):
        first = self.users.register("first", "first@example.com", "First", PASSWORD)
        second = self.users.register("second", "second@example.com", "Second", PASSWORD)
        listed = [u.id for u in self.users.list_users()]
        assert set(listed) == {first.id, second.id}
        assert self.users.list_users()[0].created_at >= self.users.list_users()[1].created_at


class TestAuthentication:
    """Login and lockout"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.users = UserManager(self.storage, max_failed_logins=3, lockout_minutes=15)
        self.user = self.users.register("bob", "bob@example.com", "Bob", PASSWORD)

    def test_login_by_username_or_email(self):
        assert self.users.authenticate("bob", PASSWORD).id == self.user.id
        assert self.users.authenticate("bob@example.com", PASSWORD).id == self.user.id
        assert self.users.authenticate("BOB@example.com", PASSWORD).id == self.user.id

    def test_unknown_user_and_wrong_password_share_message(self):
        with pytest.raises(AuthenticationError) as unknown:
            self.users.authenticate("nobody", PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            self.users.authenticate("bob", "wrong-password")
        assert unknown.value.public_message == wrong.value.public_message == "Invalid credentials"

    def test_successful_login_records_last_login(self):
        user = self.users.authenticate("bob", PASSWORD)
        assert user.last_login is not None
        assert self.users.get_user(user.id).last_login is not None

    def test_lockout_after_repeated_failures(self):
        for _ in range(2):
            with pytest.raises(AuthenticationError):
                self.users.authenticate("bob", "wrong-password")

        with pytest.raises(AccountLockedError):
            self.users.authenticate("bob", "wrong-password")

        # Correct password is refused while locked
        with pytest.raises(AccountLockedError):
            self.users.authenticate("bob", PASSWORD)

        stored = self.users.get_user(self.user.id)
        assert stored.is_locked()
        assert stored.locked_until > datetime.now(timezone.utc) + timedelta(minutes=14)

    def test_lock_expires(self):
        for _ in range(3):
            with pytest.raises((AuthenticationError, AccountLockedError)):
                self.users.authenticate("bob", "wrong-password")

        # Move the lock into the past
        stored = self.users.get_user(self.user.id)
        stored.locked_until = datetime.now(timezone.utc) - timedelta(seconds=1)
        self.users._save_user(stored)

        user = self.users.authenticate("bob", PASSWORD)
        assert user.locked_until is None
        assert user.failed_login_attempts == 0

    def test_success_resets_failed_attempts(self):
        with pytest.raises(AuthenticationError):
            self.users.authenticate("bob", "wrong-password")
        assert self.users.get_user(self.user.id).failed_login_attempts == 1

        self.users.authenticate("bob", PASSWORD)
        assert self.users.get_user(self.user.id).failed_login_attempts == 0

    def test_inactive_user_cannot_login(self):
        stored = self.users.get_user(self.user.id)
        stored.is_active = False
        self.users._save_user(stored)

        with pytest.raises(AuthenticationError):
            self.users.authenticate("bob", PASSWORD)


class TestBootstrapAdmin:
    """Admin created from configuration at startup"""

    def setup_method(self):
        self.users = UserManager(InMemoryStorage())

    def test_creates_admin_once(self):
        admin = self.users.ensure_bootstrap_admin("root_admin", "root@example.com", PASSWORD)
        assert admin.role == UserRole.ADMIN

        again = self.users.ensure_bootstrap_admin("root_admin", "root@example.com", PASSWORD)
        assert again.id == admin.id
        assert self.users.count_users() == 1

    def test_skipped_when_unset(self):
        assert self.users.ensure_bootstrap_admin(None, None, None) is None
        assert self.users.count_users() == 0

    def test_admin_can_create_admin(self):
        admin = self.users.create_user("ops", "ops@example.com", "Ops", PASSWORD,
                                       role=UserRole.ADMIN, created_by="someone")
        assert admin.is_admin

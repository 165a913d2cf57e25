"""
User Management Module

Registration, credential checks and login lockout. Passwords are stored as
salted scrypt hashes; a user locked after repeated failures stays locked until
locked_until passes.
"""

import hashlib
import hmac
import re
import secrets
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Dict, List, Optional

from .errors import (
    AccountLockedError, AuthenticationError, DuplicateUserError, UserValidationError
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,50}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_EMAIL_LENGTH = 100
MAX_FULL_NAME_LENGTH = 100


class UserRole(Enum):
    """User roles"""
    STANDARD = "standard"
    ADMIN = "admin"


@dataclass
class User(StorageRecord):
    """Registered user with authentication state"""
    username: str
    email: str
    full_name: str
    role: UserRole = UserRole.STANDARD
    is_active: bool = True
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    password_hash: Optional[str] = None
    password_salt: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        """Check if a lockout is still in force"""
        if self.locked_until is None:
            return False
        return self.locked_until > (now or datetime.now(timezone.utc))


class UserManager:
    """Creates users and authenticates them"""

    def __init__(
        self,
        storage: StorageInterface,
        password_min_length: int = 8,
        max_failed_logins: int = 5,
        lockout_minutes: int = 15
    ):
        self.storage = storage
        self.password_min_length = password_min_length
        self.max_failed_logins = max_failed_logins
        self.lockout_duration = timedelta(minutes=lockout_minutes)
        self.users_table = "users"
        # Guards username/email uniqueness and login counter updates
        self._lock = threading.Lock()
        self.logger = get_logger("bank_ledger.users")

    def register(self, username: str, email: str, full_name: str, password: str) -> User:
        """Public signup; always creates a standard user"""
        return self.create_user(username, email, full_name, password, role=UserRole.STANDARD)

    def create_user(self, username: str, email: str, full_name: str, password: str,
                    role: UserRole = UserRole.STANDARD, created_by: Optional[str] = None) -> User:
        """
        Validate and store a new user.

        Raises:
            UserValidationError: If any field fails validation
            DuplicateUserError: If the username or email is taken
        """
        username = (username or "").strip()
        email = (email or "").strip()
        full_name = (full_name or "").strip()
        self.validate_registration(username, email, full_name, password)

        now = datetime.now(timezone.utc)
        user = User(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            username=username,
            email=email,
            full_name=full_name,
            role=role,
        )
        self._set_user_password(user, password)

        with self._lock:
            with self.storage.atomic():
                if self.get_user_by_username(username) or self.get_user_by_email(email):
                    raise DuplicateUserError()
                self._save_user(user)

        log_action(
            self.logger, "info", "User created",
            user_id=created_by or user.id, action="create_user", resource=f"user:{user.id}",
            extra={"username": username, "role": role.value}
        )
        return user

    def validate_registration(self, username: str, email: str, full_name: str,
                              password: str) -> None:
        if not username or not USERNAME_PATTERN.match(username):
            raise UserValidationError("Username must be 3-50 alphanumeric characters")
        if not email or len(email) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.match(email):
            raise UserValidationError("Invalid email format")
        if not password or len(password) < self.password_min_length:
            raise UserValidationError(
                f"Password must be at least {self.password_min_length} characters"
            )
        if not full_name or len(full_name) > MAX_FULL_NAME_LENGTH:
            raise UserValidationError("Full name required (max 100 chars)")

    def authenticate(self, identifier: str, password: str) -> User:
        """
        Check credentials given a username or an email.

        Raises:
            AuthenticationError: Unknown user, wrong password or inactive user
            AccountLockedError: Too many failed attempts; locked_until not reached
        """
        identifier = (identifier or "").strip()
        user = self.get_user_by_username(identifier) or self.get_user_by_email(identifier)

        if not user:
            log_action(self.logger, "warning", "Login failed: unknown user",
                       action="login_failed", extra={"identifier": identifier})
            raise AuthenticationError()

        if not user.is_active:
            log_action(self.logger, "warning", "Login failed: user inactive",
                       user_id=user.id, action="login_failed")
            raise AuthenticationError()

        if user.is_locked():
            log_action(self.logger, "warning", "Login rejected: user locked",
                       user_id=user.id, action="login_locked",
                       extra={"locked_until": user.locked_until.isoformat()})
            raise AccountLockedError()

        password_ok = self._verify_password(user, password or "")

        with self._lock:
            # Reload so concurrent attempts count against the latest state
            user = self.get_user(user.id)
            now = datetime.now(timezone.utc)

            if user.locked_until is not None and not user.is_locked(now):
                user.locked_until = None
                user.failed_login_attempts = 0

            if not password_ok:
                user.failed_login_attempts += 1
                locked = user.failed_login_attempts >= self.max_failed_logins
                if locked:
                    user.locked_until = now + self.lockout_duration
                    user.failed_login_attempts = 0
                user.updated_at = now
                self._save_user(user)
            else:
                user.failed_login_attempts = 0
                user.locked_until = None
                user.last_login = now
                user.updated_at = now
                self._save_user(user)

        if not password_ok:
            if locked:
                log_action(self.logger, "warning", "User locked after failed logins",
                           user_id=user.id, action="lockout",
                           extra={"locked_until": user.locked_until.isoformat()})
                raise AccountLockedError()
            log_action(self.logger, "warning", "Login failed: wrong password",
                       user_id=user.id, action="login_failed",
                       extra={"failed_attempts": user.failed_login_attempts})
            raise AuthenticationError()

        log_action(self.logger, "info", "Login succeeded",
                   user_id=user.id, action="login")
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        """Get user by ID"""
        data = self.storage.load(self.users_table, user_id)
        if not data:
            return None
        return self._user_from_dict(data)

    def get_user_by_username(self, username: str) -> Optional[User]:
        users = self.storage.find(self.users_table, {"username": username})
        if not users:
            return None
        return self._user_from_dict(users[0])

    def get_user_by_email(self, email: str) -> Optional[User]:
        """Email lookup is case-insensitive"""
        users = self.storage.find(self.users_table, {"email_normalized": email.lower()})
        if not users:
            return None
        return self._user_from_dict(users[0])

    def list_users(self) -> List[User]:
        """All users, newest first"""
        users = [self._user_from_dict(data) for data in self.storage.load_all(self.users_table)]
        users.sort(key=lambda u: u.created_at, reverse=True)
        return users

    def count_users(self) -> int:
        return self.storage.count(self.users_table)

    def ensure_bootstrap_admin(self, username: Optional[str], email: Optional[str],
                               password: Optional[str], full_name: str = "Administrator") -> Optional[User]:
        """Create the configured admin on first start; no-op when it exists or is unset"""
        if not (username and email and password):
            return None

        existing = self.get_user_by_username(username)
        if existing:
            return existing

        user = self.create_user(username, email, full_name, password,
                                role=UserRole.ADMIN, created_by="system")
        log_action(self.logger, "info", "Bootstrap admin created",
                   user_id=user.id, action="bootstrap_admin")
        return user

    def _save_user(self, user: User) -> None:
        self.storage.save(self.users_table, user.id, self._user_to_dict(user))

    def _user_to_dict(self, user: User) -> Dict:
        result = user.to_dict()
        result['role'] = user.role.value
        result['email_normalized'] = user.email.lower()
        result['locked_until'] = user.locked_until.isoformat() if user.locked_until else None
        result['last_login'] = user.last_login.isoformat() if user.last_login else None
        return result

    def _user_from_dict(self, data: Dict) -> User:
        return User(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            username=data['username'],
            email=data['email'],
            full_name=data['full_name'],
            role=UserRole(data['role']),
            is_active=data.get('is_active', True),
            failed_login_attempts=data.get('failed_login_attempts', 0),
            locked_until=datetime.fromisoformat(data['locked_until']) if data.get('locked_until') else None,
            last_login=datetime.fromisoformat(data['last_login']) if data.get('last_login') else None,
            password_hash=data.get('password_hash'),
            password_salt=data.get('password_salt'),
        )

    def _generate_salt(self) -> str:
        """Generate random salt for password hashing"""
        return secrets.token_hex(16)

    def _hash_password(self, password: str, salt: str) -> str:
        return hashlib.scrypt(
            password.encode(),
            salt=salt.encode(),
            n=16384, r=8, p=1
        ).hex()

    def _set_user_password(self, user: User, password: str) -> None:
        user.password_salt = self._generate_salt()
        user.password_hash = self._hash_password(password, user.password_salt)

    def _verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash or not user.password_salt:
            return False
        expected = self._hash_password(password, user.password_salt)
        return hmac.compare_digest(expected, user.password_hash)

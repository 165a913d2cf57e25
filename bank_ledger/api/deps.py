"""
Service container and request dependencies
"""

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..analytics import AnalyticsService
from ..config import BankConfig, get_config
from ..currency import Currency
from ..errors import ForbiddenError, TokenError
from ..ledger import LedgerService
from ..security import decode_access_token
from ..storage import StorageInterface, create_storage
from ..users import User, UserManager


# Created up front so a unit of work never needs a second connection for DDL
STORAGE_TABLES = ("users", "accounts", "transactions")


class BankingSystem:
    """Ledger service and its collaborators, wired from configuration"""

    def __init__(self, config: Optional[BankConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()

        # Initialize storage
        if storage is None:
            storage = create_storage(
                self.config.database_url,
                self.config.database_pool_size,
                tables=STORAGE_TABLES,
            )
        self.storage = storage

        self.user_manager = UserManager(
            self.storage,
            password_min_length=self.config.password_min_length,
            max_failed_logins=self.config.max_failed_logins,
            lockout_minutes=self.config.lockout_minutes,
        )
        self.ledger = LedgerService(
            self.storage,
            currency=Currency[self.config.currency.upper()],
            max_transaction_amount=self.config.max_transaction_amount,
            max_conflict_retries=self.config.max_conflict_retries,
        )
        self.analytics = AnalyticsService(self.ledger, self.user_manager)

        self.user_manager.ensure_bootstrap_admin(
            self.config.bootstrap_admin_username,
            self.config.bootstrap_admin_email,
            self.config.bootstrap_admin_password,
        )

    def close(self) -> None:
        self.storage.close()


# JWT Security
security = HTTPBearer(auto_error=False)


def get_banking_system(request: Request) -> BankingSystem:
    return request.app.state.system


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: BankingSystem = Depends(get_banking_system)
) -> User:
    """Dependency that validates the bearer token and returns the calling user"""
    if not credentials:
        raise TokenError("Authentication required")

    claims = decode_access_token(
        credentials.credentials, system.config.jwt_secret, system.config.jwt_algorithm
    )

    # Role and active flag come from storage, not from the token
    user = system.user_manager.get_user(claims.user_id)
    if not user or not user.is_active:
        raise TokenError()
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise ForbiddenError()
    return user

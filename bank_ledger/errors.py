"""
Error Taxonomy Module

Exceptions raised by the ledger and auth services. Each error carries the
HTTP status and the client-safe message used by the API layer, so nothing
internal leaks into a response.
"""

from typing import Optional


class BankError(Exception):
    """Base class for all domain errors"""

    status_code: int = 400
    default_message: str = "Request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def public_message(self) -> str:
        """Message safe to return to the caller"""
        return self.message


# Ledger errors

class LedgerError(BankError):
    """Base class for balance-mutation errors"""


class InvalidAmountError(LedgerError, ValueError):
    """Amount is non-numeric, not finite, not positive or too precise"""
    status_code = 400
    default_message = "Amount must be a positive number"


class UnauthorizedError(LedgerError):
    """
    Account is missing or not owned by the caller.
    Both cases share one message so account existence is never revealed.
    """
    status_code = 403
    default_message = "Not authorized to access this account"


class AccountClosedError(LedgerError):
    """Account is not active"""
    status_code = 409
    default_message = "Account is not active"


class AccountNotFoundError(LedgerError):
    """Account lookup by an admin found nothing"""
    status_code = 404
    default_message = "Account not found"


class AccountNotEmptyError(LedgerError):
    """Only accounts with a zero balance can be closed"""
    status_code = 409
    default_message = "Account balance must be zero to close"


class InsufficientFundsError(LedgerError):
    """Withdrawal exceeds the current balance"""
    status_code = 400
    default_message = "Insufficient funds"


class ConflictError(LedgerError):
    """Optimistic version check failed; retried internally"""
    status_code = 409
    default_message = "Concurrent modification detected"


class StorageFailureError(LedgerError):
    """Persistence failed; the unit of work was rolled back"""
    status_code = 500
    default_message = "Internal server error"

    @property
    def public_message(self) -> str:
        return self.default_message


# Auth errors

class AuthError(BankError):
    """Base class for identity errors"""
    status_code = 401


class AuthenticationError(AuthError):
    """Unknown user, wrong password or inactive user"""
    default_message = "Invalid credentials"


class AccountLockedError(AuthError):
    """Too many failed logins; user is locked until a given time"""
    status_code = 423
    default_message = "Account temporarily locked due to failed login attempts"


class TokenError(AuthError):
    """Missing, expired or malformed bearer token"""
    default_message = "Invalid token"


class ForbiddenError(AuthError):
    """Authenticated caller lacks the admin role"""
    status_code = 403
    default_message = "Admin access required"


class UserValidationError(AuthError, ValueError):
    """Registration input failed validation"""
    status_code = 400
    default_message = "Invalid registration data"


class DuplicateUserError(AuthError):
    """Username or email already registered"""
    status_code = 400
    default_message = "Username or email already exists"

"""
Ledger Service Module

The balance-mutation protocol. Deposits and withdrawals on one account are
serialized by a per-account lock; the balance update and the transaction
append commit together in one storage unit of work. A compare-and-swap on the
account version catches writers outside this process, and conflicts are
retried a bounded number of times before surfacing as a storage failure.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union
from contextlib import contextmanager
import threading

from .accounts import Account, AccountManager, AccountStatus
from .currency import Currency, Money, parse_amount
from .errors import (
    AccountClosedError, AccountNotEmptyError, AccountNotFoundError, BankError,
    ConflictError, InsufficientFundsError, InvalidAmountError,
    StorageFailureError, UnauthorizedError
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface
from .transactions import Transaction, TransactionLog, TransactionType


@dataclass
class LedgerResult:
    """Outcome of a committed deposit or withdrawal"""
    transaction: Transaction
    new_balance: Money


class AccountLockRegistry:
    """
    One lock per account id, created on first use and dropped when the last
    holder or waiter leaves.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}  # account_id -> [lock, users]

    @contextmanager
    def hold(self, account_id: str):
        with self._guard:
            entry = self._locks.setdefault(account_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[account_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class LedgerService:
    """
    Account opening, balance mutations and ownership-checked reads.

    Admin authorization for list_all_* and close_account is enforced by the
    caller; every other operation checks that the caller owns the account.
    """

    def __init__(
        self,
        storage: StorageInterface,
        currency: Currency = Currency.USD,
        max_transaction_amount: Optional[Union[Decimal, str]] = None,
        max_conflict_retries: int = 5
    ):
        self.storage = storage
        self.currency = currency
        self.max_transaction_amount = (
            Decimal(str(max_transaction_amount)) if max_transaction_amount is not None else None
        )
        self.max_conflict_retries = max(1, max_conflict_retries)
        self.accounts = AccountManager(storage, currency)
        self.transactions = TransactionLog(storage)
        self._locks = AccountLockRegistry()
        self.logger = get_logger("bank_ledger.ledger")

    def open_account(self, owner_id: str) -> Account:
        """Open an empty active account for owner_id"""
        try:
            with self.storage.atomic():
                account = self.accounts.new_account(owner_id)
        except Exception as e:
            raise self._storage_failure("open_account", f"owner:{owner_id}", owner_id, e) from e

        log_action(
            self.logger, "info", "Account opened",
            user_id=owner_id, action="open_account", resource=f"account:{account.id}",
            extra={"account_number": account.account_number}
        )
        return account

    def deposit(self, account_id: str, caller_id: str, amount: Any,
                description: Optional[str] = None) -> LedgerResult:
        """
        Credit amount to an account owned by caller_id.

        Raises:
            InvalidAmountError: amount not a positive, finite, in-precision number
            UnauthorizedError: account missing or owned by someone else
            AccountClosedError: account not active
            StorageFailureError: persistence failed or conflicts persisted
        """
        money = parse_amount(amount, self.currency, self.max_transaction_amount)
        return self._mutate(account_id, caller_id, TransactionType.DEPOSIT, money, description)

    def withdraw(self, account_id: str, caller_id: str, amount: Any,
                 description: Optional[str] = None) -> LedgerResult:
        """
        Debit amount from an account owned by caller_id.

        Raises the same errors as deposit, plus InsufficientFundsError when
        the balance is smaller than amount.
        """
        money = parse_amount(amount, self.currency, self.max_transaction_amount)
        return self._mutate(account_id, caller_id, TransactionType.WITHDRAWAL, money, description)

    def get_owned_account(self, account_id: str, caller_id: str) -> Account:
        account = self.accounts.get_account(account_id)
        if account is None or not account.is_owned_by(caller_id):
            raise UnauthorizedError()
        return account

    def get_balance(self, account_id: str, caller_id: str) -> Money:
        return self.get_owned_account(account_id, caller_id).balance

    def list_transactions(self, account_id: str, caller_id: str) -> List[Transaction]:
        """Transactions of an owned account, most recent first"""
        self.get_owned_account(account_id, caller_id)
        return self.transactions.list_for_account(account_id)

    def list_owner_accounts(self, owner_id: str) -> List[Account]:
        return self.accounts.get_owner_accounts(owner_id)

    def list_all_accounts(self) -> List[Account]:
        return self.accounts.list_accounts()

    def list_all_transactions(self, limit: Optional[int] = 100) -> List[Transaction]:
        return self.transactions.list_recent(limit)

    def close_account(self, account_id: str, admin_id: Optional[str] = None) -> Account:
        """
        Close an account with a zero balance. Later deposits and withdrawals
        fail with AccountClosedError.
        """
        def apply() -> Account:
            account = self.accounts.get_account_for_update(account_id)
            if account is None:
                raise AccountNotFoundError()
            if account.status == AccountStatus.CLOSED:
                raise AccountClosedError("Account is already closed")
            if not account.balance.is_zero():
                raise AccountNotEmptyError()

            expected_version = account.version
            account.status = AccountStatus.CLOSED
            account.version = expected_version + 1
            account.updated_at = datetime.now(timezone.utc)
            self.accounts.save_new_version(account, expected_version)
            return account

        account = self._run_serialized(account_id, "close_account", admin_id, apply)
        log_action(
            self.logger, "info", "Account closed",
            user_id=admin_id, action="close_account", resource=f"account:{account_id}"
        )
        return account

    def _mutate(self, account_id: str, caller_id: str, transaction_type: TransactionType,
                amount: Money, description: Optional[str]) -> LedgerResult:
        def apply() -> LedgerResult:
            account = self.accounts.get_account_for_update(account_id)
            if account is None or not account.is_owned_by(caller_id):
                raise UnauthorizedError()
            if not account.can_transact():
                raise AccountClosedError()
            if amount.currency != account.currency:
                raise InvalidAmountError("Amount currency does not match account currency")

            if transaction_type == TransactionType.DEPOSIT:
                new_balance = account.balance + amount
            else:
                if account.balance < amount:
                    raise InsufficientFundsError()
                new_balance = account.balance - amount

            expected_version = account.version
            account.balance = new_balance
            account.version = expected_version + 1
            account.updated_at = datetime.now(timezone.utc)
            self.accounts.save_new_version(account, expected_version)

            transaction = self.transactions.append(
                account_id=account.id,
                transaction_type=transaction_type,
                amount=amount,
                balance_after=new_balance,
                sequence=account.version,
                description=description,
            )
            return LedgerResult(transaction=transaction, new_balance=new_balance)

        action = transaction_type.value
        try:
            result = self._run_serialized(account_id, action, caller_id, apply)
        except BankError as e:
            if not isinstance(e, StorageFailureError):
                log_action(
                    self.logger, "warning", f"{action.capitalize()} rejected: {e.message}",
                    user_id=caller_id, action=action, resource=f"account:{account_id}",
                    extra={"amount": amount.to_string(), "error": type(e).__name__}
                )
            raise

        log_action(
            self.logger, "info", f"{action.capitalize()} committed",
            user_id=caller_id, action=action, resource=f"account:{account_id}",
            extra={
                "transaction_id": result.transaction.id,
                "amount": amount.to_string(),
                "balance_after": result.new_balance.to_string(),
                "sequence": result.transaction.sequence,
            }
        )
        return result

    def _run_serialized(self, account_id: str, action: str, user_id: Optional[str],
                        apply: Callable[[], Any]) -> Any:
        """
        Run apply in a unit of work while holding the account lock, retrying
        on version conflicts. Domain errors propagate unchanged; anything else
        is logged and replaced by StorageFailureError.
        """
        resource = f"account:{account_id}"
        with self._locks.hold(account_id):
            for attempt in range(1, self.max_conflict_retries + 1):
                try:
                    with self.storage.atomic():
                        return apply()
                except ConflictError:
                    log_action(
                        self.logger, "warning", "Version conflict, retrying",
                        user_id=user_id, action=action, resource=resource,
                        extra={"attempt": attempt, "max_attempts": self.max_conflict_retries}
                    )
                except BankError:
                    raise
                except Exception as e:
                    raise self._storage_failure(action, resource, user_id, e) from e

        log_action(
            self.logger, "error", "Version conflict retries exhausted",
            user_id=user_id, action=action, resource=resource,
            extra={"attempts": self.max_conflict_retries}
        )
        raise StorageFailureError("Conflict retries exhausted")

    def _storage_failure(self, action: str, resource: str, user_id: Optional[str],
                         error: Exception) -> StorageFailureError:
        log_action(
            self.logger, "error", f"Storage failure during {action}: {error}",
            user_id=user_id, action=action, resource=resource, exc_info=True
        )
        return StorageFailureError(str(error))

"""
Account Management Module

Checking accounts owned by exactly one user. The stored balance is the
authoritative figure for an account; it only changes through the ledger
service, which bumps the account version on every mutation.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import secrets
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord


ACCOUNT_NUMBER_PREFIX = "CHK"
ACCOUNT_NUMBER_DIGITS = 10


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"        # Normal operation
    INACTIVE = "inactive"    # Suspended, no balance mutations
    CLOSED = "closed"        # Permanently closed


@dataclass
class Account(StorageRecord):
    """
    Checking account.

    version starts at 0 and increases by one with each committed change to
    the account. A transaction records the version its mutation produced.
    """
    owner_id: str
    account_number: str
    currency: Currency
    balance: Money
    status: AccountStatus = AccountStatus.ACTIVE
    version: int = 0

    def __post_init__(self):
        if self.balance.currency != self.currency:
            raise ValueError("Balance currency must match account currency")

    def can_transact(self) -> bool:
        """Check if account accepts deposits and withdrawals"""
        return self.status == AccountStatus.ACTIVE

    def is_owned_by(self, user_id: str) -> bool:
        return self.owner_id == user_id


class AccountManager:
    """
    Storage access for accounts. Callers that mutate balances go through
    LedgerService, which wraps these calls in a unit of work.
    """

    def __init__(self, storage: StorageInterface, currency: Currency = Currency.USD):
        self.storage = storage
        self.currency = currency
        self.accounts_table = "accounts"

    def new_account(self, owner_id: str) -> Account:
        """Build and insert an empty active account with a fresh number"""
        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            account_number=self._generate_account_number(),
            currency=self.currency,
            balance=Money.zero(self.currency),
        )
        self._save_account(account)
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        account_dict = self.storage.load(self.accounts_table, account_id)
        if account_dict:
            return self._account_from_dict(account_dict)
        return None

    def get_account_for_update(self, account_id: str) -> Optional[Account]:
        """Get account by ID, locking the row for the current unit of work"""
        account_dict = self.storage.load_for_update(self.accounts_table, account_id)
        if account_dict:
            return self._account_from_dict(account_dict)
        return None

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        accounts = self.storage.find(self.accounts_table, {"account_number": account_number})
        if accounts:
            return self._account_from_dict(accounts[0])
        return None

    def get_owner_accounts(self, owner_id: str) -> List[Account]:
        """Get all accounts for an owner, oldest first"""
        accounts_data = self.storage.find(self.accounts_table, {"owner_id": owner_id})
        accounts = [self._account_from_dict(data) for data in accounts_data]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def list_accounts(self) -> List[Account]:
        accounts = [self._account_from_dict(data) for data in self.storage.load_all(self.accounts_table)]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def count_active(self) -> int:
        return len(self.storage.find(self.accounts_table, {"status": AccountStatus.ACTIVE.value}))

    def save_new_version(self, account: Account, expected_version: int) -> None:
        """
        Persist account only if the stored version is still expected_version.

        Raises:
            ConflictError: If another writer committed in between
        """
        self.storage.save_if_version(
            self.accounts_table, account.id, self._account_to_dict(account), expected_version
        )

    def _generate_account_number(self) -> str:
        """Generate a random account number not yet in use"""
        while True:
            digits = "".join(str(secrets.randbelow(10)) for _ in range(ACCOUNT_NUMBER_DIGITS))
            account_number = f"{ACCOUNT_NUMBER_PREFIX}{digits}"
            if self.get_account_by_number(account_number) is None:
                return account_number

    def _save_account(self, account: Account) -> None:
        """Save account to storage"""
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        result = account.to_dict()
        result['currency'] = account.currency.code
        result['balance'] = str(account.balance.amount)
        result['status'] = account.status.value
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        currency = Currency[data['currency']]
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_id=data['owner_id'],
            account_number=data['account_number'],
            currency=currency,
            balance=Money(Decimal(data['balance']), currency),
            status=AccountStatus(data['status']),
            version=data.get('version', 0),
        )

"""
Transaction Records Module

A transaction is the immutable record of one committed balance mutation on
one account. Records are only ever appended, inside the same unit of work that
updates the account balance.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord


class TransactionType(Enum):
    """Types of balance mutations"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


@dataclass
class Transaction(StorageRecord):
    """
    One deposit or withdrawal.

    sequence is the account version produced by this mutation, so an
    account's transactions are totally ordered by it (1, 2, 3, ...).
    """
    account_id: str
    transaction_type: TransactionType
    amount: Money
    balance_after: Money
    sequence: int
    description: Optional[str] = None

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValueError("Transaction amount must be positive")

        if self.balance_after.is_negative():
            raise ValueError("Balance after transaction cannot be negative")

        if self.amount.currency != self.balance_after.currency:
            raise ValueError("Transaction amount currency must match balance currency")

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    @property
    def signed_amount(self) -> Money:
        """Amount as it affects the balance"""
        if self.transaction_type == TransactionType.WITHDRAWAL:
            return -self.amount
        return self.amount


class TransactionLog:
    """Append-only store of transactions"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transactions"

    def append(
        self,
        account_id: str,
        transaction_type: TransactionType,
        amount: Money,
        balance_after: Money,
        sequence: int,
        description: Optional[str] = None
    ) -> Transaction:
        """Create and store a transaction record"""
        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            transaction_type=transaction_type,
            amount=amount,
            balance_after=balance_after,
            sequence=sequence,
            description=description,
        )
        self.storage.save(self.table_name, transaction.id, self._transaction_to_dict(transaction))
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        transaction_dict = self.storage.load(self.table_name, transaction_id)
        if transaction_dict:
            return self._transaction_from_dict(transaction_dict)
        return None

    def list_for_account(self, account_id: str) -> List[Transaction]:
        """Transactions of one account, most recent first"""
        transactions = [
            self._transaction_from_dict(data)
            for data in self.storage.find(self.table_name, {"account_id": account_id})
        ]
        transactions.sort(key=lambda t: t.sequence, reverse=True)
        return transactions

    def list_recent(self, limit: Optional[int] = None) -> List[Transaction]:
        """Transactions across all accounts, most recent first"""
        transactions = [self._transaction_from_dict(data) for data in self.storage.load_all(self.table_name)]
        transactions.sort(key=lambda t: (t.created_at, t.sequence), reverse=True)
        if limit is not None:
            return transactions[:limit]
        return transactions

    def count(self) -> int:
        return self.storage.count(self.table_name)

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        """Convert Transaction to dictionary for storage"""
        result = transaction.to_dict()
        result['transaction_type'] = transaction.transaction_type.value
        result['currency'] = transaction.currency.code
        result['amount'] = str(transaction.amount.amount)
        result['balance_after'] = str(transaction.balance_after.amount)
        return result

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        """Convert dictionary to Transaction"""
        currency = Currency[data['currency']]
        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=Money(Decimal(data['amount']), currency),
            balance_after=Money(Decimal(data['balance_after']), currency),
            sequence=data['sequence'],
            description=data.get('description'),
        )

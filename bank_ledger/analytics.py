"""
Analytics and Export Module

Read-only aggregate views over users, accounts and transactions: system
statistics, transaction summaries and CSV export of transaction histories.
Figures are computed from committed data and may lag in-flight mutations.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import csv
import io

from .accounts import Account
from .ledger import LedgerService
from .transactions import Transaction, TransactionType
from .users import User, UserManager


CSV_FIELDS = [
    "transaction_id", "created_at", "transaction_type", "amount",
    "currency", "balance_after", "sequence", "description",
]


class AnalyticsService:
    """Aggregates for the admin and statistics endpoints"""

    def __init__(self, ledger: LedgerService, user_manager: UserManager):
        self.ledger = ledger
        self.user_manager = user_manager

    def system_statistics(self) -> Dict[str, int]:
        return {
            "total_users": self.user_manager.count_users(),
            "active_accounts": self.ledger.accounts.count_active(),
            "total_transactions": self.ledger.transactions.count(),
        }

    def sample_document(self) -> Dict[str, Any]:
        """Operational snapshot served to any authenticated user"""
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": "secure",
            "status": "operational",
            "statistics": self.system_statistics(),
        }

    def transaction_summary(self, recent_limit: int = 10) -> Dict[str, Any]:
        """
        Totals across all transactions.

        Returns:
            total_transactions, total_deposits, total_withdrawals (decimal
            strings), by_type rows and the most recent transactions joined with
            account number and owner username
        """
        transactions = self.ledger.transactions.list_recent()
        currency = self.ledger.currency

        totals = {t: Decimal("0") for t in TransactionType}
        counts = {t: 0 for t in TransactionType}
        for txn in transactions:
            totals[txn.transaction_type] += txn.amount.amount
            counts[txn.transaction_type] += 1

        by_type = [
            {
                "transaction_type": t.value,
                "count": counts[t],
                "total_amount": str(totals[t]),
            }
            for t in TransactionType
            if counts[t]
        ]

        return {
            "currency": currency.code,
            "total_transactions": len(transactions),
            "total_deposits": str(totals[TransactionType.DEPOSIT]),
            "total_withdrawals": str(totals[TransactionType.WITHDRAWAL]),
            "by_type": by_type,
            "recent_transactions": self.transactions_with_owners(transactions[:recent_limit]),
        }

    def accounts_with_owners(self) -> List[Dict[str, Any]]:
        """All accounts with owner username and full name"""
        owners: Dict[str, Optional[User]] = {}
        rows = []
        for account in self.ledger.list_all_accounts():
            owner = self._owner(account.owner_id, owners)
            row = account_row(account)
            row["username"] = owner.username if owner else None
            row["full_name"] = owner.full_name if owner else None
            rows.append(row)
        return rows

    def transactions_with_owners(self, transactions: List[Transaction]) -> List[Dict[str, Any]]:
        """Transactions joined with account number and owner username"""
        accounts: Dict[str, Optional[Account]] = {}
        owners: Dict[str, Optional[User]] = {}
        rows = []
        for txn in transactions:
            if txn.account_id not in accounts:
                accounts[txn.account_id] = self.ledger.accounts.get_account(txn.account_id)
            account = accounts[txn.account_id]
            owner = self._owner(account.owner_id, owners) if account else None

            row = transaction_row(txn)
            row["account_number"] = account.account_number if account else None
            row["username"] = owner.username if owner else None
            rows.append(row)
        return rows

    def _owner(self, user_id: str, cache: Dict[str, Optional[User]]) -> Optional[User]:
        if user_id not in cache:
            cache[user_id] = self.user_manager.get_user(user_id)
        return cache[user_id]


def account_row(account: Account) -> Dict[str, Any]:
    return {
        "account_id": account.id,
        "account_number": account.account_number,
        "owner_id": account.owner_id,
        "balance": str(account.balance.amount),
        "currency": account.currency.code,
        "status": account.status.value,
        "created_at": account.created_at.isoformat(),
    }


def transaction_row(txn: Transaction) -> Dict[str, Any]:
    return {
        "transaction_id": txn.id,
        "account_id": txn.account_id,
        "transaction_type": txn.transaction_type.value,
        "amount": str(txn.amount.amount),
        "currency": txn.currency.code,
        "balance_after": str(txn.balance_after.amount),
        "sequence": txn.sequence,
        "description": txn.description,
        "created_at": txn.created_at.isoformat(),
    }


def transactions_to_csv(transactions: List[Transaction]) -> str:
    """Render a transaction history as CSV with a header row"""
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=CSV_FIELDS)
    writer.writeheader()

    for txn in transactions:
        writer.writerow({
            "transaction_id": txn.id,
            "created_at": txn.created_at.isoformat(),
            "transaction_type": txn.transaction_type.value,
            "amount": str(txn.amount.amount),
            "currency": txn.currency.code,
            "balance_after": str(txn.balance_after.amount),
            "sequence": txn.sequence,
            "description": txn.description or "",
        })

    csv_content = output.getvalue()
    output.close()
    return csv_content

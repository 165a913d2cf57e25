"""
Account and balance-mutation endpoints
"""

from fastapi import APIRouter, Depends, Response, status

from .deps import BankingSystem, get_banking_system, get_current_user, require_admin
from .schemas import AmountRequest, envelope
from ..analytics import account_row, transaction_row, transactions_to_csv
from ..ledger import LedgerResult
from ..users import User


router = APIRouter()


def _mutation_payload(account_id: str, result: LedgerResult) -> dict:
    return {
        "account_id": account_id,
        "new_balance": str(result.new_balance.amount),
        "currency": result.new_balance.currency.code,
        "transaction": transaction_row(result.transaction),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def open_account(
    caller: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Open a checking account for the caller"""
    account = system.ledger.open_account(caller.id)
    return envelope(account_row(account), "Account created")


@router.get("/mine")
def list_my_accounts(
    caller: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    accounts = system.ledger.list_owner_accounts(caller.id)
    return envelope([account_row(a) for a in accounts])


@router.get("")
def list_all_accounts(
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    """All accounts with owner username and full name (admin only)"""
    return envelope(system.analytics.accounts_with_owners())


@router.get("/{account_id}/balance")
def get_balance(
    account_id: str,
    caller: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    balance = system.ledger.get_balance(account_id, caller.id)
    return envelope({
        "account_id": account_id,
        "balance": str(balance.amount),
        "currency": balance.currency.code,
    })


@router.post("/{account_id}/deposit")
def deposit(
    account_id: str,
    request: AmountRequest,
    caller: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    result = system.ledger.deposit(account_id, caller.id, request.amount, request.description)
    return envelope(_mutation_payload(account_id, result), "Deposit successful")


@router.post("/{account_id}/withdraw")
def withdraw(
    account_id: str,
    request: AmountRequest,
    caller: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    result = system.ledger.withdraw(account_id, caller.id, request.amount, request.description)
    return envelope(_mutation_payload(account_id, result), "Withdrawal successful")


@router.get("/{account_id}/transactions")
def list_transactions(
    account_id: str,
    caller: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Transaction history, most recent first"""
    transactions = system.ledger.list_transactions(account_id, caller.id)
    return envelope([transaction_row(t) for t in transactions])


@router.get("/{account_id}/transactions/export")
def export_transactions(
    account_id: str,
    caller: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Transaction history as a CSV download"""
    transactions = system.ledger.list_transactions(account_id, caller.id)
    return Response(
        content=transactions_to_csv(transactions),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="transactions_{account_id}.csv"'},
    )


@router.post("/{account_id}/close")
def close_account(
    account_id: str,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    """Close a zero-balance account (admin only)"""
    account = system.ledger.close_account(account_id, admin_id=admin.id)
    return envelope(account_row(account), "Account closed")

"""
Cross-account transaction listing
"""

from fastapi import APIRouter, Depends, Query

from .deps import BankingSystem, get_banking_system, require_admin
from .schemas import envelope
from ..users import User


router = APIRouter()


@router.get("")
def list_all_transactions(
    limit: int = Query(100, ge=1, le=1000),
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    """Latest transactions across all accounts with account number and owner (admin only)"""
    transactions = system.ledger.list_all_transactions(limit)
    return envelope(system.analytics.transactions_with_owners(transactions))

"""
Statistics and analytics endpoints
"""

from fastapi import APIRouter, Depends

from .deps import BankingSystem, get_banking_system, get_current_user, require_admin
from .schemas import envelope
from ..users import User


router = APIRouter()


@router.get("/data/sample")
def sample_data(
    caller: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    return envelope(system.analytics.sample_document())


@router.get("/analytics/transactions")
def transaction_analytics(
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    return envelope(system.analytics.transaction_summary())

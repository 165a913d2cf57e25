"""
User administration endpoints
"""

from fastapi import APIRouter, Depends, status

from .deps import BankingSystem, get_banking_system, get_current_user, require_admin
from .schemas import CreateUserRequest, envelope, user_payload
from ..analytics import account_row
from ..errors import ForbiddenError, UserValidationError
from ..users import User, UserRole


router = APIRouter()


@router.get("")
def list_users(
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    """List all users, newest first (admin only)"""
    users = system.user_manager.list_users()
    return envelope([user_payload(u) for u in users])


@router.post("", status_code=status.HTTP_201_CREATED)
def create_user(
    request: CreateUserRequest,
    admin: User = Depends(require_admin),
    system: BankingSystem = Depends(get_banking_system)
):
    """Create a user with any role (admin only)"""
    try:
        role = UserRole(request.role)
    except ValueError:
        raise UserValidationError("Role must be one of: standard, admin")

    user = system.user_manager.create_user(
        username=request.username,
        email=request.email,
        full_name=request.full_name,
        password=request.password,
        role=role,
        created_by=admin.id,
    )
    return envelope(user_payload(user), "User created")


@router.get("/{user_id}/accounts")
def list_user_accounts(
    user_id: str,
    caller: User = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Accounts of one user; callers may only list their own unless admin"""
    if caller.id != user_id and not caller.is_admin:
        raise ForbiddenError("Not authorized to view these accounts")

    accounts = system.ledger.list_owner_accounts(user_id)
    return envelope([account_row(a) for a in accounts])

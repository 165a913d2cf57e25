"""
Pydantic schemas for API requests and the response envelope
"""

from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..users import User


# Auth schemas
class SignupRequest(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None
    full_name: Optional[str] = None
    password: Optional[str] = None


class LoginRequest(BaseModel):
    email: Optional[str] = Field(None, description="Username or email")
    username: Optional[str] = Field(None, description="Alternative to email")
    password: Optional[str] = None

    @property
    def identifier(self) -> Optional[str]:
        return self.email or self.username


class CreateUserRequest(SignupRequest):
    role: str = Field("standard", description="User role (standard, admin)")


# Ledger schemas
class AmountRequest(BaseModel):
    # Left untyped so the ledger sees the raw JSON value and applies one set of amount rules
    amount: Any = Field(None, description="Positive decimal amount, as string or number")
    description: Optional[str] = Field(None, max_length=255)


def envelope(data: Any = None, message: Optional[str] = None, success: bool = True) -> Dict[str, Any]:
    """Standard response body"""
    body: Dict[str, Any] = {"success": success}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


def user_payload(user: User) -> Dict[str, Any]:
    """Public view of a user; never includes credential fields"""
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "full_name": user.full_name,
        "role": user.role.value,
        "is_active": user.is_active,
        "created_at": user.created_at.isoformat(),
    }

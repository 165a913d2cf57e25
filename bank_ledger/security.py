"""
Access token helpers (PyJWT)
"""

from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Any, Dict

import jwt

from .errors import TokenError
from .users import User, UserRole


@dataclass
class TokenClaims:
    """Identity carried by a verified access token"""
    user_id: str
    username: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def create_access_token(user: User, secret: str, expiry_hours: int = 24,
                        algorithm: str = "HS256") -> str:
    now = datetime.now(timezone.utc)
    token_payload = {
        "sub": user.id,
        "username": user.username,
        "role": user.role.value,
        "iat": now,
        "exp": now + timedelta(hours=expiry_hours),
    }
    return jwt.encode(token_payload, secret, algorithm=algorithm)


def decode_access_token(token: str, secret: str, algorithm: str = "HS256") -> TokenClaims:
    """
    Verify signature and expiry and return the claims.

    Raises:
        TokenError: If the token is expired, malformed or incomplete
    """
    try:
        payload: Dict[str, Any] = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        raise TokenError("Token expired")
    except jwt.InvalidTokenError:
        raise TokenError()

    user_id = payload.get("sub")
    if not user_id:
        raise TokenError()

    try:
        role = UserRole(payload.get("role", UserRole.STANDARD.value))
    except ValueError:
        raise TokenError()

    return TokenClaims(user_id=user_id, username=payload.get("username", ""), role=role)

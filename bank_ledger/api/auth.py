"""
Signup and login endpoints
"""

from fastapi import APIRouter, Depends, status

from .deps import BankingSystem, get_banking_system
from .schemas import LoginRequest, SignupRequest, envelope, user_payload
from ..errors import UserValidationError
from ..security import create_access_token


router = APIRouter()


@router.post("/signup", status_code=status.HTTP_201_CREATED)
def signup(
    request: SignupRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Register a standard user"""
    user = system.user_manager.register(
        username=request.username,
        email=request.email,
        full_name=request.full_name,
        password=request.password,
    )
    return envelope(user_payload(user), "User created")


@router.post("/login")
def login(
    request: LoginRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Authenticate by username or email and return a bearer token"""
    if not request.identifier or not request.password:
        raise UserValidationError("Email and password required")

    user = system.user_manager.authenticate(request.identifier, request.password)
    token = create_access_token(
        user,
        system.config.jwt_secret,
        expiry_hours=system.config.jwt_expiry_hours,
        algorithm=system.config.jwt_algorithm,
    )

    return envelope({
        "access_token": token,
        "token_type": "bearer",
        "expires_in": system.config.jwt_expiry_hours * 3600,
        "user": user_payload(user),
    }, "Login successful")

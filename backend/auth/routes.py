"""
Account endpoints under /api/auth: register, login, me and change-password.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from database import get_db
from models import User, UserRole
from auth.security import hash_password, verify_password, create_user_token
from auth.dependencies import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


# Request/response bodies local to the auth router
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=100)
    role: Optional[UserRole] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6, max_length=100)


class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    role: str
    created_at: datetime

    class Config:
        from_attributes = True


class AuthResponse(BaseModel):
    user: UserResponse
    token: str
    token_type: str = "bearer"


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def register(request: RegisterRequest, db: Session = Depends(get_db)):
    """
    Register a new user account and sign it in.

    Raises:
        HTTPException: 400 if email already registered
    """
    logger.info(f"Registration attempt for email: {request.email}")

    existing_user = db.query(User).filter(User.email == request.email).first()
    if existing_user:
        logger.info(f"Registration failed: email already exists: {request.email}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered",
        )

    if request.role == UserRole.admin:
        logger.info(f"Registration refused: self-assigned Admin role for {request.email}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role can only be granted by an administrator",
        )

    role = request.role.value if request.role else UserRole.developer.value
    new_user = User(
        name=request.name,
        email=request.email,
        password_hash=hash_password(request.password),
        role=role,
    )
    db.add(new_user)
    db.commit()
    db.refresh(new_user)

    logger.critical(f"User registered successfully: {new_user.email} (ID: {new_user.id})")
    return {"user": new_user, "token": create_user_token(new_user)}


@router.post("/login", response_model=AuthResponse)
def login(request: LoginRequest, db: Session = Depends(get_db)):
    """
    Login with email and password.

    Raises:
        HTTPException: 401 if credentials invalid
    """
    user = db.query(User).filter(User.email == request.email).first()
    # Same response for unknown email and wrong password
    if user is None or not verify_password(request.password, user.password_hash):
        logger.info(f"Rejected login for {request.email}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    logger.critical(f"User logged in successfully: {user.email} (ID: {user.id})")
    return {"user": user, "token": create_user_token(user)}


@router.get("/me", response_model=UserResponse)
def get_me(current_user: User = Depends(get_current_user)):
    """Get the currently authenticated user."""
    return current_user


@router.post("/change-password")
def change_password(
    request: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Change the current user's password.

    Raises:
        HTTPException: 401 if the current password is wrong
    """
    logger.info(f"Password change requested by user {current_user.id}")

    if not verify_password(request.current_password, current_user.password_hash):
        logger.info(f"Password change failed: wrong current password for user {current_user.id}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Current password is incorrect",
        )

    current_user.password_hash = hash_password(request.new_password)
    db.commit()

    logger.critical(f"Password changed for user {current_user.email} (ID: {current_user.id})")
    return {"message": "Password updated successfully"}

"""
Route dependencies that resolve the calling user and gate on global role.
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from database import get_db
from models import User, UserRole
from auth.security import verify_token

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    token: Optional[str] = Query(None, include_in_schema=False),
    db: Session = Depends(get_db),
) -> User:
    """
    Extract and validate the current user from a JWT token.

    The token is read from the Authorization header first and from the
    `token` query parameter otherwise (used by PDF download links).

    Raises:
        HTTPException: 401 if authentication fails
    """
    raw_token = credentials.credentials if credentials and credentials.credentials else token
    if not raw_token:
        raise _unauthorized("Not authenticated")

    payload = verify_token(raw_token)
    if payload is None:
        raise _unauthorized("Invalid or expired token")

    if payload.get("type") != "access":
        logger.info(f"Invalid token type: {payload.get('type')}")
        raise _unauthorized("Invalid token type")

    user_id = payload.get("sub")
    try:
        user_id_int = int(user_id)
    except (TypeError, ValueError):
        logger.info(f"Token subject is not a user id: {user_id}")
        raise _unauthorized("Invalid token payload")

    user = db.query(User).filter(User.id == user_id_int).first()
    if user is None:
        logger.info(f"Token refers to missing user {user_id}")
        raise _unauthorized("User not found")

    return user


def require_role(*allowed_roles: str):
    """
    Create a dependency that requires one of the given global roles.

    Example:
        @app.delete("/api/users/{id}")
        def delete_user(user_id: int, current_user: User = Depends(require_role("Admin"))):
            pass
    """
    def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in allowed_roles:
            logger.info(
                f"Access denied: user {current_user.email} has role '{current_user.role}', "
                f"but one of {list(allowed_roles)} is required"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {' or '.join(allowed_roles)}",
            )
        return current_user

    return role_checker


def get_current_admin(current_user: User = Depends(require_role(UserRole.admin.value))) -> User:
    """Convenience dependency for admin-only endpoints."""
    return current_user


def get_current_contributor(
    current_user: User = Depends(
        require_role(UserRole.admin.value, UserRole.developer.value, UserRole.qa.value)
    ),
) -> User:
    """Any authenticated user except Viewers, who are read-only."""
    return current_user

"""
Password hashing and JWT handling for BugBase.

Passwords are stored as Argon2id hashes. Sessions are stateless bearer
tokens: nothing is stored server-side, so a token is valid until it expires.
"""

import logging
import secrets
import os
from datetime import timedelta
from typing import Optional, Dict, Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from time_utils import utc_now

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ("HS256", "HS384", "HS512")
DEFAULT_EXPIRE_DAYS = 7
MAX_EXPIRE_DAYS = 90

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


def is_production_like() -> bool:
    """True when ENVIRONMENT is production or staging."""
    return os.environ.get("ENVIRONMENT", "development").lower() in ("production", "staging")


def load_secret_key() -> str:
    secret = os.environ.get("JWT_SECRET_KEY")
    if secret:
        return secret
    if is_production_like():
        raise ValueError("JWT_SECRET_KEY must be set when ENVIRONMENT is production or staging")
    logger.warning("⚠️  JWT_SECRET_KEY not set, signing tokens with a throwaway key for this process")
    return "bugbase-dev-" + secrets.token_urlsafe(32)


def load_algorithm() -> str:
    algorithm = os.environ.get("JWT_ALGORITHM", "HS256")
    if algorithm not in SUPPORTED_ALGORITHMS:
        logger.warning(f"⚠️  JWT_ALGORITHM={algorithm} is not one of {SUPPORTED_ALGORITHMS}, falling back to HS256")
        return "HS256"
    return algorithm


def load_expire_days() -> int:
    raw = os.environ.get("ACCESS_TOKEN_EXPIRE_DAYS", str(DEFAULT_EXPIRE_DAYS))
    try:
        days = int(raw)
    except ValueError:
        logger.warning(f"⚠️  ACCESS_TOKEN_EXPIRE_DAYS={raw!r} is not a number, using {DEFAULT_EXPIRE_DAYS}")
        return DEFAULT_EXPIRE_DAYS
    if not 1 <= days <= MAX_EXPIRE_DAYS:
        logger.warning(f"⚠️  ACCESS_TOKEN_EXPIRE_DAYS={days} outside 1-{MAX_EXPIRE_DAYS}, using {DEFAULT_EXPIRE_DAYS}")
        return DEFAULT_EXPIRE_DAYS
    return days


SECRET_KEY = load_secret_key()
ALGORITHM = load_algorithm()
ACCESS_TOKEN_EXPIRE_DAYS = load_expire_days()


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Check a plain password against a stored Argon2 hash."""
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Sign a JWT access token.

    Args:
        data: Claims to embed (sub, email, role)
        expires_delta: Lifetime override; defaults to ACCESS_TOKEN_EXPIRE_DAYS

    Returns:
        Encoded token string
    """
    lifetime = expires_delta if expires_delta else timedelta(days=ACCESS_TOKEN_EXPIRE_DAYS)
    claims = dict(data, exp=utc_now() + lifetime, type="access")
    logger.debug(f"Issuing access token for user {data.get('sub')}")
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def create_user_token(user) -> str:
    """Issue an access token carrying the user's id, email and global role."""
    return create_access_token({"sub": str(user.id), "email": user.email, "role": user.role})


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode a token, returning its claims or None when invalid or expired."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.info(f"Rejected bearer token: {e}")
        return None

"""JWT verification for actor extraction.

Tokens are issued by the external auth service; this module only decodes
them. The ``sub`` claim is the actor id and the ``role`` claim one of
admin / recruiter / student / system. create_access_token() exists for
service-to-service calls and tests.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, status
from jose import JWTError, jwt

from src.outreach.config import get_settings
from src.outreach.scheduling.schemas import Actor, ActorRole

# ── JWT Token Creation ────────────────────────────────────────────────────────


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token.

    The data dict should contain at minimum:
    - sub: actor id (str)
    - role: actor role (str)
    """
    settings = get_settings()
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({
        "exp": expire,
        "iat": now,
        "type": "access",
    })
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


# ── JWT Token Verification ────────────────────────────────────────────────────


def verify_token(token: str, token_type: str = "access") -> dict:
    """Decode and validate a JWT token.

    Raises:
        HTTPException(401): If the token is invalid, expired, or wrong type.
    """
    settings = get_settings()
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        raise credentials_exception
    if payload.get("type") != token_type:
        raise credentials_exception
    if not payload.get("sub"):
        raise credentials_exception
    return payload


def actor_from_token(token: str) -> Actor:
    """Build the request Actor from a bearer token.

    Raises:
        HTTPException(401): If the token is invalid or carries an unknown role.
    """
    payload = verify_token(token)
    try:
        role = ActorRole(payload.get("role", ""))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token carries no valid role",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Actor(id=str(payload["sub"]), role=role)

"""JWT access/refresh tokens and the current-user dependency."""

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.config import get_jwt_secret
from control_plane.db.database import get_db
from control_plane.db.models import User
from control_plane.errors import AuthenticationError

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 30
REFRESH_TOKEN_EXPIRE_DAYS = 7

ACCESS = "access"
REFRESH = "refresh"


class TokenPayload(BaseModel):
    sub: str  # User ID
    type: str
    exp: datetime
    iat: datetime


class TokenPair(BaseModel):
    """Access and refresh token pair."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # Seconds until the access token expires


bearer_scheme = HTTPBearer(auto_error=False)


def _encode(user_id: UUID | str, token_type: str, lifetime: timedelta) -> str:
    now = datetime.now(timezone.utc)
    claims: dict[str, Any] = {
        "sub": str(user_id),
        "type": token_type,
        "iat": now,
        "exp": now + lifetime,
    }
    return jwt.encode(claims, get_jwt_secret(), algorithm=ALGORITHM)


def create_access_token(
    user_id: UUID | str, expires_delta: timedelta | None = None
) -> str:
    return _encode(
        user_id, ACCESS, expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )


def create_refresh_token(
    user_id: UUID | str, expires_delta: timedelta | None = None
) -> str:
    return _encode(
        user_id, REFRESH, expires_delta or timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS)
    )


def create_token_pair(user_id: UUID | str) -> TokenPair:
    return TokenPair(
        access_token=create_access_token(user_id),
        refresh_token=create_refresh_token(user_id),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


def decode_token(token: str, expected_type: str | None = None) -> TokenPayload:
    """Decode and validate a JWT.

    Args:
        token: Encoded JWT.
        expected_type: If given, the token's ``type`` claim must match.

    Raises:
        AuthenticationError: If the token is malformed, expired or of the
            wrong type.
    """
    try:
        claims = jwt.decode(token, get_jwt_secret(), algorithms=[ALGORITHM])
    except JWTError as e:
        raise AuthenticationError(f"Invalid token: {e!s}") from e

    payload = TokenPayload(
        sub=claims["sub"],
        type=claims["type"],
        exp=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        iat=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
    )
    if expected_type and payload.type != expected_type:
        raise AuthenticationError("Invalid token type")
    return payload


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the bearer token to a User.

    Raises:
        AuthenticationError: 401 if missing, invalid, or the user is gone.
    """
    if credentials is None:
        raise AuthenticationError("Not authenticated")

    payload = decode_token(credentials.credentials, expected_type=ACCESS)
    try:
        user_id = UUID(payload.sub)
    except ValueError as e:
        raise AuthenticationError("Invalid token subject") from e

    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if user is None:
        raise AuthenticationError("User not found")
    return user

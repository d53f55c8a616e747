"""Authentication helpers.

Session issuance lives in the panel's auth service; this module only
verifies the HS256 bearer tokens it signs with ``SECRET_KEY`` and maps
the ``sub`` claim to a local user. With ``DEV_AUTH_BYPASS`` enabled a
placeholder admin user is returned instead, for local testing.
"""

from __future__ import annotations

from typing import Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lms_billing.core.config import settings
from lms_billing.core.database import get_db
from lms_billing.models.tables import User

auth_scheme = HTTPBearer(auto_error=False)

DEV_USER_EMAIL = "dev@example.com"


def decode_access_token(token: str) -> Dict:
    """Decode and verify a panel-issued JWT.

    Raises:
        HTTPException: 401 if the token is malformed, expired or badly signed.
    """
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {exc}") from exc


def create_access_token(user_id: int, extra_claims: Optional[Dict] = None) -> str:
    """Mint a token for ``user_id``; used by scripts and tests."""
    claims: Dict = {"sub": str(user_id)}
    claims.update(extra_claims or {})
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


async def _dev_user(db: AsyncSession) -> User:
    user = await db.scalar(select(User).where(User.email == DEV_USER_EMAIL))
    if user is None:
        user = User(email=DEV_USER_EMAIL, name="Dev User", is_admin=True)
        db.add(user)
        await db.commit()
        await db.refresh(user)
    return user


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the authenticated user from the ``Authorization`` header."""
    if settings.DEV_AUTH_BYPASS:
        return await _dev_user(db)

    credentials: Optional[HTTPAuthorizationCredentials] = await auth_scheme(request)
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    payload = decode_access_token(credentials.credentials)
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token: no sub claim")
    user = await db.get(User, user_id)
    if user is None or user.deleted_at is not None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user

"""Common dependencies for FastAPI routes.

Authentication is delegated to `lms_billing.core.security`; the admin
check happens here, upstream of the service layer, so services never
need to know who may call them.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from lms_billing.core.database import get_db
from lms_billing.core.security import get_current_user
from lms_billing.models.tables import User
from lms_billing.services.active_sync import ActiveSync
from lms_billing.services.stripe_client import StripeProvider, get_stripe_provider


async def get_user(current_user: User = Depends(get_current_user)) -> User:
    """Return the current user.  Raises if not authenticated."""
    if not current_user:
        raise HTTPException(status_code=401, detail="Unauthenticated")
    return current_user


async def require_admin(user: User = Depends(get_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Requires admin role")
    return user


def get_active_sync(
    db: AsyncSession = Depends(get_db),
    provider: StripeProvider = Depends(get_stripe_provider),
) -> ActiveSync:
    return ActiveSync(db, provider)

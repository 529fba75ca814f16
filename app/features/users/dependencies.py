"""
FastAPI dependencies for authentication.
"""
from typing import Annotated
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.models import User
from app.features.users.auth import verify_jwt_token, get_appwrite_user
from app.utils import get_logger, utcnow


log = get_logger(__name__)
security = HTTPBearer()


async def _find_user(db: AsyncSession, appwrite_id: str) -> User | None:
    result = await db.execute(select(User).where(User.appwrite_id == appwrite_id))
    return result.scalar_one_or_none()


async def _create_user(db: AsyncSession, appwrite_id: str) -> User:
    """
    Create the local record for an Appwrite account on first sign-in.

    Two first requests can race; the loser's insert hits the unique
    appwrite_id and it reuses the winner's row.
    """
    account = await get_appwrite_user(appwrite_id)
    user = User(appwrite_id=appwrite_id, email=account["email"], name=account["name"])
    db.add(user)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        user = await _find_user(db, appwrite_id)
        if user is None:
            raise
    else:
        log.info("Created local user %s for Appwrite account %s", user.id, appwrite_id)
    return user


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    """
    Get the current authenticated user from the bearer token.

    This dependency:
    1. Decodes the Appwrite JWT from the Authorization header
    2. Looks up the local user, creating it from Appwrite on first sign-in
    3. Stamps last_login_at
    4. Rejects deactivated accounts

    Usage:
        @router.get("/me")
        async def get_me(user: User = Depends(get_current_user)):
            return user
    """
    payload = verify_jwt_token(credentials.credentials)
    appwrite_id = payload.get("userId")

    if not appwrite_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    user = await _find_user(db, appwrite_id)
    if user is None:
        user = await _create_user(db, appwrite_id)

    user.last_login_at = utcnow()
    await db.commit()
    await db.refresh(user)

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    return user

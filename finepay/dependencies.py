"""
FastAPI dependencies for authentication, authorization and the ILS.

Dependencies are reusable functions that FastAPI injects into route handlers:

  get_current_user (JWT -> User)
      └── require_admin (User -> User)     [ADMIN role]

  get_ils (-> ILSConnector)

Role-based access control:
  - MEMBER: Patrons. Can only see and pay their own transactions and manage
    their own library cards. Transaction lookups are scoped to the
    authenticated user in the service layer.
  - ADMIN: Operators. Can list any transaction, read its audit log and
    manually resolve stuck registrations.

The gateway callback (/payments/{id}/notify) uses neither: it is
authenticated by an HMAC signature instead of a JWT.

get_ils is a dependency so tests can swap in a fake ILS with
app.dependency_overrides.
"""

import uuid
from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from finepay.database import get_db
from finepay.models.user import User, UserType
from finepay.security import decode_access_token
from finepay.services.ils_client import HttpILSConnector, ILSConnector


# OAuth2PasswordBearer tells FastAPI where to look for the token:
# the "Authorization: Bearer <token>" header.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Extract and validate the JWT token, then return the corresponding User.

    Raises:
        HTTPException 401: If the token is invalid or the user doesn't exist.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_access_token(token)
        user_id_str: str | None = payload.get("sub")
        if user_id_str is None:
            raise credentials_exception
        user_id = uuid.UUID(user_id_str)
    except (JWTError, ValueError):
        raise credentials_exception

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if user is None or not user.is_active:
        raise credentials_exception

    return user


async def require_admin(
    user: User = Depends(get_current_user),
) -> User:
    """
    Require the authenticated user to have the ADMIN role.

    Raises:
        HTTPException 403: If the user is not an admin.
    """
    if user.user_type != UserType.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


async def get_ils() -> AsyncGenerator[ILSConnector, None]:
    """
    Yield an ILS connector for one request and close its HTTP client after.
    """
    ils = HttpILSConnector()
    try:
        yield ils
    finally:
        await ils.aclose()

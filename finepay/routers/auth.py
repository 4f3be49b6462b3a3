"""
Authentication router — patron login.

This is the only public (unauthenticated) endpoint apart from the gateway
callback, which authenticates with a signature instead.

Endpoints:
  POST /auth/login   — Log in with a library card and get a token

Security audit notes:
  - The ILS password exists in plaintext only in memory while the ILS
    login runs; it is Fernet-encrypted before any database write.
  - No request body logging middleware is installed, so POST bodies
    containing passwords are not written to any log.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from finepay.database import get_db
from finepay.dependencies import get_ils
from finepay.schemas.auth import LoginRequest, TokenResponse
from finepay.services import auth_service
from finepay.services.ils_client import ILSConnector

router = APIRouter()


@router.post(
    "/login",
    response_model=TokenResponse,
    summary="Log in with a library card",
)
async def login(
    request: LoginRequest,
    db: AsyncSession = Depends(get_db),
    ils: ILSConnector = Depends(get_ils),
):
    """
    Authenticate against the ILS with a library card username and password.

    The first login creates the local user. Returns a JWT bearer token for
    the Authorization header of all subsequent requests:

        Authorization: Bearer <token>
    """
    user, token = await auth_service.login(
        db=db,
        ils=ils,
        cat_username=request.cat_username,
        password=request.password,
    )
    return TokenResponse(user_id=user.id, token=token)

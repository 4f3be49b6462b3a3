"""
Authentication service — patron login against the ILS.

FinePay has no passwords of its own. A patron logs in with their library
card username ("source.barcode") and ILS password:

Login flow:
  1. Ask the ILS to log the patron in (rejected -> InvalidCredentialsError)
  2. Create the local User on first login, or refresh its current ILS
     credentials on later logins
  3. Make sure a LibraryCard row with exactly these credentials exists, so
     the patron resolver can still log in with them after the patron
     switches cards
  4. Return a JWT token

Security notes:
  - ILS passwords are Fernet-encrypted before they touch the database
  - Rejected credentials and inactive users get the same error
"""

import structlog
from cryptography.fernet import InvalidToken
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from finepay.exceptions import InvalidCredentialsError
from finepay.models.library_card import LibraryCard
from finepay.models.user import User, UserType
from finepay.security import create_access_token, decrypt_value, encrypt_value
from finepay.services.ils_client import ILSConnector, Patron

logger = structlog.get_logger(__name__)


async def get_user_by_cat_username(db: AsyncSession, cat_username: str) -> User | None:
    """The user whose login identity or current card is cat_username."""
    result = await db.execute(
        select(User)
        .where(
            (func.lower(User.username) == cat_username.lower())
            | (func.lower(User.cat_username) == cat_username.lower())
        )
        .order_by(User.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def ensure_library_card(
    db: AsyncSession,
    user: User,
    patron: Patron,
    card_name: str = "",
) -> LibraryCard:
    """
    Return the user's card with the patron's exact credentials, creating it
    if none of the stored cards carries this username and password.
    """
    result = await db.execute(
        select(LibraryCard)
        .where(LibraryCard.user_id == user.id)
        .where(func.lower(LibraryCard.cat_username) == patron.cat_username.lower())
        .order_by(LibraryCard.created_at)
    )
    for card in result.scalars().all():
        try:
            if decrypt_value(card.cat_password_encrypted) == patron.cat_password:
                return card
        except InvalidToken:
            logger.warning("library_card_password_unreadable", card_id=str(card.id))

    card = LibraryCard(
        user_id=user.id,
        card_name=card_name,
        cat_username=patron.cat_username,
        cat_password_encrypted=encrypt_value(patron.cat_password),
        home_library=patron.home_library,
    )
    db.add(card)
    await db.flush()
    logger.info("library_card_stored", user_id=str(user.id), cat_username=patron.cat_username)
    return card


async def login(
    db: AsyncSession,
    ils: ILSConnector,
    cat_username: str,
    password: str,
) -> tuple[User, str]:
    """
    Log a patron in through the ILS and return a JWT token.

    Args:
        db: Database session.
        ils: ILS connector.
        cat_username: Library card username.
        password: ILS password.

    Returns:
        Tuple of (User instance, JWT token string).

    Raises:
        InvalidCredentialsError: If the ILS rejects the credentials or the
            local user is deactivated.
        ILSError: If the ILS cannot be reached.
    """
    patron = await ils.login(cat_username, password)
    if patron is None:
        raise InvalidCredentialsError()

    user = await get_user_by_cat_username(db, patron.cat_username)
    if user is None:
        user = User(
            username=patron.cat_username,
            user_type=UserType.MEMBER,
        )
        db.add(user)
        logger.info("user_created", cat_username=patron.cat_username)
    elif not user.is_active:
        raise InvalidCredentialsError()

    # Current credentials always follow the last successful login
    user.cat_username = patron.cat_username
    user.cat_password_encrypted = encrypt_value(patron.cat_password)
    user.home_library = patron.home_library
    await db.flush()

    await ensure_library_card(db, user, patron)

    token = create_access_token(data={"sub": str(user.id)})
    logger.info("user_logged_in", user_id=str(user.id))
    return user, token

"""
Library card service — the cards a patron has linked to their account.

Adding a card logs in to the ILS with the given credentials first, so only
working credentials are stored. Activating a card makes its credentials the
user's current ones; new payments are made with the active card.
"""

import uuid

import structlog
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from finepay.exceptions import (
    DuplicateLibraryCardError,
    InvalidCredentialsError,
    UnauthorizedAccessError,
)
from finepay.models.library_card import LibraryCard
from finepay.models.user import User
from finepay.security import encrypt_value
from finepay.services.ils_client import ILSConnector

logger = structlog.get_logger(__name__)


async def list_cards(db: AsyncSession, user_id: uuid.UUID) -> list[LibraryCard]:
    result = await db.execute(
        select(LibraryCard)
        .where(LibraryCard.user_id == user_id)
        .order_by(LibraryCard.created_at)
    )
    return list(result.scalars().all())


async def get_card(db: AsyncSession, card_id: uuid.UUID, user_id: uuid.UUID) -> LibraryCard:
    """
    Raises:
        UnauthorizedAccessError: If the card does not exist or belongs to
            someone else (same error, so card ids cannot be probed).
    """
    result = await db.execute(select(LibraryCard).where(LibraryCard.id == card_id))
    card = result.scalar_one_or_none()
    if card is None or card.user_id != user_id:
        raise UnauthorizedAccessError("You do not have access to this library card")
    return card


async def add_card(
    db: AsyncSession,
    ils: ILSConnector,
    user: User,
    cat_username: str,
    password: str,
    card_name: str = "",
) -> LibraryCard:
    """
    Link a new library card after checking the credentials with the ILS.

    Raises:
        DuplicateLibraryCardError: If another user already has this card.
        InvalidCredentialsError: If the ILS rejects the credentials.
    """
    result = await db.execute(
        select(LibraryCard.id)
        .where(func.lower(LibraryCard.cat_username) == cat_username.lower())
        .where(LibraryCard.user_id != user.id)
        .limit(1)
    )
    if result.first() is not None:
        raise DuplicateLibraryCardError(cat_username)

    patron = await ils.login(cat_username, password)
    if patron is None:
        raise InvalidCredentialsError()

    card = LibraryCard(
        user_id=user.id,
        card_name=card_name,
        cat_username=patron.cat_username,
        cat_password_encrypted=encrypt_value(password),
        home_library=patron.home_library,
    )
    db.add(card)
    await db.flush()
    logger.info("library_card_added", user_id=str(user.id), cat_username=card.cat_username)
    return card


async def activate_card(
    db: AsyncSession,
    user: User,
    card_id: uuid.UUID,
) -> User:
    """Make a stored card the user's current ILS credentials."""
    card = await get_card(db, card_id, user.id)
    user.cat_username = card.cat_username
    user.cat_password_encrypted = card.cat_password_encrypted
    user.home_library = card.home_library
    await db.flush()
    logger.info("library_card_activated", user_id=str(user.id), card_id=str(card.id))
    return user

"""
Patron service — recover ILS credentials for a transaction's owner.

Registering a payment needs an ILS login for the patron who paid, but
registration may happen long after the payment: the monitor retries
REGISTRATION_FAILED transactions for days. In the meantime the patron may
have changed their ILS password, switched to another card, or removed and
re-added the same card.

resolve_patron() therefore tries, in order:
  1. The user's current credentials, if the current card username matches
     the username the transaction was paid with (case-insensitive).
  2. Every stored library card with that username, oldest first, decrypting
     each password and attempting a login.

The first successful login wins. A login that raises (ILS down, bad
response) is logged and the next card is tried.
"""

import uuid

import structlog
from cryptography.fernet import InvalidToken
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from finepay.exceptions import FinePayError, PatronLoginError
from finepay.models.library_card import LibraryCard
from finepay.models.transaction import Transaction
from finepay.models.user import User
from finepay.security import decrypt_value
from finepay.services.ils_client import ILSConnector, Patron

logger = structlog.get_logger(__name__)


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_library_cards_by_username(
    db: AsyncSession,
    user_id: uuid.UUID,
    cat_username: str,
) -> list[LibraryCard]:
    """All of a user's cards with the given username, oldest first."""
    result = await db.execute(
        select(LibraryCard)
        .where(LibraryCard.user_id == user_id)
        .where(func.lower(LibraryCard.cat_username) == cat_username.lower())
        .order_by(LibraryCard.created_at)
    )
    return list(result.scalars().all())


async def _try_login(
    ils: ILSConnector,
    cat_username: str,
    encrypted_password: bytes | None,
    transaction: Transaction,
) -> Patron | None:
    if not encrypted_password:
        return None
    try:
        password = decrypt_value(encrypted_password)
    except InvalidToken:
        logger.error(
            "library_card_password_unreadable",
            transaction_id=transaction.transaction_id,
            cat_username=cat_username,
        )
        return None
    try:
        return await ils.login(cat_username, password)
    except FinePayError as e:
        logger.error(
            "patron_login_error",
            transaction_id=transaction.transaction_id,
            cat_username=cat_username,
            error=e.detail,
        )
        return None


async def resolve_patron(
    db: AsyncSession,
    ils: ILSConnector,
    transaction: Transaction,
) -> Patron:
    """
    Log the owner of a transaction into the ILS.

    Args:
        db: Database session.
        ils: ILS connector.
        transaction: Transaction being registered.

    Returns:
        The logged-in Patron.

    Raises:
        PatronLoginError: If the owner no longer exists or no stored
            credential with the transaction's card username logs in.
    """
    user = await get_user(db, transaction.user_id)
    if user is None:
        logger.error(
            "transaction_owner_missing",
            transaction_id=transaction.transaction_id,
            user_id=str(transaction.user_id),
        )
        raise PatronLoginError(transaction.transaction_id, transaction.cat_username)

    # Typical case: the patron still uses the card they paid with
    if user.cat_username and user.cat_username.lower() == transaction.cat_username.lower():
        patron = await _try_login(
            ils, user.cat_username, user.cat_password_encrypted, transaction
        )
        if patron is not None:
            return patron

    cards = await get_library_cards_by_username(db, user.id, transaction.cat_username)
    for card in cards:
        patron = await _try_login(ils, card.cat_username, card.cat_password_encrypted, transaction)
        if patron is not None:
            logger.info(
                "patron_resolved_from_library_card",
                transaction_id=transaction.transaction_id,
                card_id=str(card.id),
            )
            return patron

    logger.warning(
        "patron_login_failed",
        transaction_id=transaction.transaction_id,
        cat_username=transaction.cat_username,
        cards_tried=len(cards),
    )
    raise PatronLoginError(transaction.transaction_id, transaction.cat_username)

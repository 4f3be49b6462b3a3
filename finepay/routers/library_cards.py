"""
Library cards router — the cards linked to the authenticated patron.

Endpoints:
  GET  /library-cards                — List linked cards
  POST /library-cards                — Link a card (credentials checked with the ILS)
  POST /library-cards/{id}/activate  — Pay with this card from now on
"""

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from finepay.database import get_db
from finepay.dependencies import get_current_user, get_ils
from finepay.models.user import User
from finepay.schemas.library_card import LibraryCardCreateRequest, LibraryCardResponse
from finepay.schemas.user import UserResponse
from finepay.services import library_card_service
from finepay.services.ils_client import ILSConnector

router = APIRouter()


@router.get(
    "",
    response_model=list[LibraryCardResponse],
    summary="List my library cards",
)
async def list_cards(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await library_card_service.list_cards(db, user.id)


@router.post(
    "",
    response_model=LibraryCardResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Link a library card",
)
async def add_card(
    request: LibraryCardCreateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    ils: ILSConnector = Depends(get_ils),
):
    """
    Link another library card to the account.

    The credentials are verified with the ILS before they are stored.
    A card already linked to another user is rejected with 409.
    """
    return await library_card_service.add_card(
        db=db,
        ils=ils,
        user=user,
        cat_username=request.cat_username,
        password=request.password,
        card_name=request.card_name,
    )


@router.post(
    "/{card_id}/activate",
    response_model=UserResponse,
    summary="Use a library card for new payments",
)
async def activate_card(
    card_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Make the card the account's current card.

    Payments already started keep the card username they were made with.
    """
    return await library_card_service.activate_card(db, user, card_id)

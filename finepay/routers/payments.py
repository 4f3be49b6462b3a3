"""
Payments router — starting, following and registering online payments.

Endpoints:
  POST /payments                             — Start a payment for my fines
  GET  /payments                             — List my payments
  GET  /payments/{transaction_id}            — Get one of my payments with its fees
  POST /payments/{transaction_id}/cancel     — Abandon a payment in progress
  POST /payments/{transaction_id}/register   — Return from the gateway
  POST /payments/{transaction_id}/notify     — Gateway callback (signed, no JWT)

Ownership: member endpoints load transactions through
transaction_service.get_user_transaction, which refuses anything the
authenticated user does not own.

Registration never fails the request: a payment that cannot be registered
right now is reported as registered=false with its current status, and the
monitor finishes it later.
"""

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from finepay.database import get_db
from finepay.dependencies import get_current_user, get_ils
from finepay.exceptions import InvalidSignatureError
from finepay.models.transaction import Transaction
from finepay.models.user import User
from finepay.schemas.transaction import (
    FeeResponse,
    GatewayNotification,
    PaymentStartRequest,
    RegistrationResponse,
    TransactionDetailResponse,
    TransactionResponse,
)
from finepay.security import verify_signature
from finepay.services import payment_service, transaction_service
from finepay.services.ils_client import ILSConnector

router = APIRouter()


async def _detail(db: AsyncSession, transaction: Transaction) -> TransactionDetailResponse:
    fees = await transaction_service.get_fees(db, transaction)
    return TransactionDetailResponse(
        **TransactionResponse.model_validate(transaction).model_dump(),
        fees=[FeeResponse.model_validate(fee) for fee in fees],
    )


def _registration(transaction: Transaction, registered: bool) -> RegistrationResponse:
    return RegistrationResponse(
        transaction_id=transaction.transaction_id,
        registered=registered,
        in_progress=transaction.is_in_progress(),
        status=transaction.status.value,
        status_message=transaction.status_message,
    )


@router.post(
    "",
    response_model=TransactionDetailResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a payment",
)
async def start_payment(
    request: PaymentStartRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    ils: ILSConnector = Depends(get_ils),
):
    """
    Start paying the fines of the current library card.

    - Refused with 409 while an earlier payment is unresolved
    - Refused with 409 (fines_updated) if the amount disagrees with the ILS
    - The returned transaction_id is handed to the payment gateway
    """
    transaction = await payment_service.start_payment(
        db=db,
        ils=ils,
        user=user,
        amount=request.amount,
        fine_ids=request.fine_ids,
    )
    return await _detail(db, transaction)


@router.get(
    "",
    response_model=list[TransactionResponse],
    summary="List my payments",
)
async def list_payments(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await transaction_service.get_user_transactions(db, user.id, limit, offset)


@router.get(
    "/{transaction_id}",
    response_model=TransactionDetailResponse,
    summary="Get a payment",
)
async def get_payment(
    transaction_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    transaction = await transaction_service.get_user_transaction(db, transaction_id, user.id)
    return await _detail(db, transaction)


@router.post(
    "/{transaction_id}/cancel",
    response_model=TransactionResponse,
    summary="Cancel a payment in progress",
)
async def cancel_payment(
    transaction_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Only a payment still in progress can be canceled (409 otherwise)."""
    transaction = await transaction_service.get_user_transaction(db, transaction_id, user.id)
    return await transaction_service.mark_canceled(db, transaction)


@router.post(
    "/{transaction_id}/register",
    response_model=RegistrationResponse,
    summary="Register a paid payment with the library",
)
async def register_payment(
    transaction_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    ils: ILSConnector = Depends(get_ils),
):
    """
    Called when the patron returns from the payment gateway.

    Returns registered=true once the fines are cleared in the ILS. A payment
    that cannot be registered yet (another attempt running, ILS down) returns
    registered=false and is retried in the background.
    """
    transaction = await transaction_service.get_user_transaction(db, transaction_id, user.id)
    registered = await payment_service.register_on_return(db, ils, transaction)
    return _registration(transaction, registered)


@router.post(
    "/{transaction_id}/notify",
    response_model=RegistrationResponse,
    summary="Payment gateway callback",
)
async def notify(
    transaction_id: str,
    request: Request,
    x_signature: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
    ils: ILSConnector = Depends(get_ils),
):
    """
    Server-to-server notification from the payment gateway.

    The raw request body must be signed with HMAC-SHA256 using the shared
    gateway secret, hex-encoded in the X-Signature header.
    """
    body = await request.body()
    if not verify_signature(body, x_signature):
        raise InvalidSignatureError()
    try:
        notification = GatewayNotification.model_validate_json(body)
    except ValidationError as e:
        raise RequestValidationError(e.errors())

    transaction = await payment_service.handle_gateway_notification(
        db=db,
        ils=ils,
        transaction_id=transaction_id,
        status=notification.status,
        paid_at=notification.paid_at,
        message=notification.message,
    )
    return _registration(transaction, transaction.is_registered())

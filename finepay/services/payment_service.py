"""
Payment service — the flows around a transaction that the HTTP layer drives.

start_payment
  Checks with the ILS what the patron owes, refuses to start while an
  earlier payment is unresolved, and creates the PROGRESS transaction with
  its fee line items. The returned transaction_id is what the payment
  gateway is given.

handle_gateway_notification
  The gateway's server-to-server callback (signature already verified by
  the router). "paid" confirms the payment and immediately tries to
  register it; "cancel" and "failed" close a PROGRESS transaction.

register_on_return
  The patron's browser coming back from the gateway. Registers the
  transaction if it is paid and nobody else has done it yet.

Both registration paths end in reconciliation_service.register_transaction,
which never raises: a registration that cannot finish now is left for the
monitor and the patron sees "payment received, processing".
"""

import uuid
from datetime import datetime

import structlog
from cryptography.fernet import InvalidToken
from sqlalchemy.ext.asyncio import AsyncSession

from finepay.exceptions import (
    FinesUpdatedError,
    InvalidCredentialsError,
    InvalidTransitionError,
)
from finepay.models.transaction import Transaction, TransactionStatus
from finepay.models.user import User
from finepay.security import decrypt_value
from finepay.services import reconciliation_service, transaction_service
from finepay.services.ils_client import ILSConnector, Patron

logger = structlog.get_logger(__name__)


async def _login_current_card(ils: ILSConnector, user: User) -> Patron:
    if not user.cat_username or not user.cat_password_encrypted:
        raise InvalidCredentialsError()
    try:
        password = decrypt_value(user.cat_password_encrypted)
    except InvalidToken:
        raise InvalidCredentialsError()
    patron = await ils.login(user.cat_username, password)
    if patron is None:
        raise InvalidCredentialsError()
    return patron


async def start_payment(
    db: AsyncSession,
    ils: ILSConnector,
    user: User,
    amount: int | None = None,
    fine_ids: list[str] | None = None,
    now: datetime | None = None,
) -> Transaction:
    """
    Create a PROGRESS transaction for the user's payable fines.

    Args:
        db: Database session.
        ils: ILS connector.
        user: Paying user; the payment is made with their current card.
        amount: Amount the patron was shown, in minor units. When given it
                must agree with the ILS under the library's payment policy.
        fine_ids: Fines selected by the patron (libraries with select_fines).
        now: Current time, defaults to utcnow().

    Returns:
        The new Transaction.

    Raises:
        InvalidCredentialsError: If the current card no longer logs in.
        PaymentInProgressError: If an earlier payment is still unresolved.
        FinesUpdatedError: If nothing is payable or the amount disagrees.
    """
    patron = await _login_current_card(ils, user)
    await transaction_service.ensure_no_payment_in_progress(db, patron.cat_username, now=now)

    config = await ils.get_online_payment_config(patron)
    selected = fine_ids if config.select_fines and fine_ids else None
    fines = await ils.get_current_fines(patron, selected)

    if not fines.payable or fines.amount <= 0:
        logger.warning(
            "payment_not_payable",
            cat_username=patron.cat_username,
            reason=fines.reason,
            payable_amount=fines.amount,
        )
        raise FinesUpdatedError(amount or 0, fines.amount)

    if amount is not None and (
        (config.exact_balance_required and amount != fines.amount)
        or (config.credit_unsupported and amount > fines.amount)
    ):
        raise FinesUpdatedError(amount, fines.amount)

    fees = [
        {
            "title": fine.title,
            "type": fine.type,
            "description": fine.description,
            "amount": fine.balance,
            "currency": config.currency,
            "fine_id": fine.fine_id,
            "organization": fine.organization,
        }
        for fine in fines.fines
        if fine.payable_online and fine.balance > 0
    ]

    return await transaction_service.create_transaction(
        db,
        transaction_id=uuid.uuid4().hex,
        user_id=user.id,
        cat_username=patron.cat_username,
        amount=amount if amount is not None else fines.amount,
        transaction_fee=config.transaction_fee,
        currency=config.currency,
        fees=fees,
        driver=patron.source or None,
    )


async def handle_gateway_notification(
    db: AsyncSession,
    ils: ILSConnector,
    transaction_id: str,
    status: str,
    paid_at: datetime | None = None,
    message: str | None = None,
) -> Transaction:
    """
    Apply a verified gateway callback to a transaction.

    Args:
        status: "paid", "cancel" or "failed".
        paid_at: Payment time reported by the gateway.
        message: Gateway failure detail for "failed".

    Returns:
        The transaction in its resulting state.
    """
    transaction = await transaction_service.get_transaction_by_identifier(db, transaction_id)
    log = logger.bind(transaction_id=transaction_id, notification=status)

    if transaction.is_registered():
        log.info("notification_for_registered_transaction")
        return transaction

    if status == "paid":
        await transaction_service.mark_paid(db, transaction, paid_at=paid_at)
        if transaction.needs_registration():
            await reconciliation_service.register_transaction(db, ils, transaction)
    elif status == "cancel":
        await transaction_service.mark_canceled(db, transaction)
    else:
        await transaction_service.mark_payment_failed(
            db, transaction, message or "payment_failed"
        )

    log.info("notification_processed", status=transaction.status.value)
    return transaction


async def register_on_return(
    db: AsyncSession,
    ils: ILSConnector,
    transaction: Transaction,
) -> bool:
    """
    Register a transaction when the patron returns from the gateway.

    Returns:
        True if the transaction is registered.

    Raises:
        InvalidTransitionError: If the transaction is not paid (still in
            progress, canceled, or parked for an operator).
    """
    if transaction.is_registered():
        return True
    if not transaction.needs_registration():
        raise InvalidTransitionError(
            transaction.transaction_id,
            transaction.status.value,
            TransactionStatus.COMPLETE.value,
        )
    return await reconciliation_service.register_transaction(db, ils, transaction)

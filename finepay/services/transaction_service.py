"""
Transaction service — the payment state machine and the store queries.

THIS IS WHERE EVERY STATUS CHANGE HAPPENS. Nothing else in the project
assigns Transaction.status: the gateway handler, the reconciliation engine,
the monitor and the admin endpoints all call the mark_* functions below,
which go through _transition().

Transitions:
  _transition() checks ALLOWED_TRANSITIONS, writes the new status and
  message, and appends one audit event recording the resulting status.
  Anything not in the table raises InvalidTransitionError.

Registration lock:
  registration_started_at is an advisory, time-boxed lock. Taking it is a
  single conditional UPDATE:

      UPDATE transactions SET registration_started_at = :now
      WHERE id = :id AND (registration_started_at IS NULL
                          OR registration_started_at < :now - ttl)

  and the lock is ours only if exactly one row changed. Two attempts that
  race cannot both see rowcount == 1, which closes the check-then-set window
  of reading the timestamp and writing it in two steps. A crashed attempt
  leaves the timestamp behind; the TTL is what eventually frees it.

Store queries:
  is_payment_in_progress, get_failed_transactions and
  get_unresolved_transactions select the transactions the payment page and
  the background monitor act on.
"""

import uuid
from datetime import datetime, timedelta

import structlog
from sqlalchemy import select, update, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from finepay.config import settings
from finepay.database import utcnow
from finepay.exceptions import (
    InvalidTransitionError,
    PaymentInProgressError,
    RegistrationInProgressError,
    TransactionNotFoundError,
    UnauthorizedAccessError,
)
from finepay.models.fee import Fee
from finepay.models.transaction import (
    Transaction,
    TransactionStatus,
    REGISTRABLE_STATUSES,
    UNRESOLVED_PAYMENT_STATUSES,
)
from finepay.services import event_log_service

logger = structlog.get_logger(__name__)

S = TransactionStatus

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    S.PROGRESS: frozenset({S.PAID, S.CANCELED, S.PAYMENT_FAILED}),
    S.PAID: frozenset({
        S.COMPLETE, S.FINES_UPDATED, S.REGISTRATION_FAILED, S.REGISTRATION_EXPIRED,
    }),
    S.REGISTRATION_FAILED: frozenset({
        S.COMPLETE, S.FINES_UPDATED, S.REGISTRATION_FAILED,
        S.REGISTRATION_EXPIRED, S.REGISTRATION_RESOLVED,
    }),
    S.FINES_UPDATED: frozenset({
        S.COMPLETE, S.REGISTRATION_EXPIRED, S.REGISTRATION_RESOLVED,
    }),
    # Expired transactions are re-reported to operators until resolved
    S.REGISTRATION_EXPIRED: frozenset({
        S.COMPLETE, S.REGISTRATION_EXPIRED, S.REGISTRATION_RESOLVED,
    }),
    S.COMPLETE: frozenset(),
    S.CANCELED: frozenset(),
    S.PAYMENT_FAILED: frozenset(),
    S.REGISTRATION_RESOLVED: frozenset(),
}


def can_transition(current: TransactionStatus, new: TransactionStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def _driver_for(cat_username: str) -> str:
    """ILS source of a "source.barcode" card username."""
    return cat_username.split(".", 1)[0] if "." in cat_username else "default"


async def _transition(
    db: AsyncSession,
    transaction: Transaction,
    new_status: TransactionStatus,
    message: str,
    event_message: str,
    event_data: dict | None = None,
    source: str = "transaction_service",
    values: dict | None = None,
) -> Transaction:
    if not can_transition(transaction.status, new_status):
        raise InvalidTransitionError(
            transaction.transaction_id, transaction.status.value, new_status.value
        )
    previous = transaction.status
    for attribute, value in (values or {}).items():
        setattr(transaction, attribute, value)
    transaction.status = new_status
    transaction.status_message = message[:255]
    await db.flush()

    logger.info(
        "transaction_status_changed",
        transaction_id=transaction.transaction_id,
        previous_status=previous.value,
        status=new_status.value,
        status_message=transaction.status_message,
    )
    data = {"status": new_status.value, **(event_data or {})}
    await event_log_service.add_event(db, transaction, event_message, data, source=source)
    return transaction


# ---------------------------------------------------------------------------
# Creation and lookup
# ---------------------------------------------------------------------------

async def create_transaction(
    db: AsyncSession,
    transaction_id: str,
    user_id: uuid.UUID,
    cat_username: str,
    amount: int,
    transaction_fee: int,
    currency: str,
    fees: list[dict] | None = None,
    driver: str | None = None,
) -> Transaction:
    """
    Create a transaction in PROGRESS together with its fee line items.

    Args:
        db: Database session.
        transaction_id: Identifier shared with the payment gateway.
        user_id: Owner of the transaction.
        cat_username: Card username the payment is made with (copied).
        amount: Amount of the fines paid, in minor units.
        transaction_fee: Gateway fee on top of the amount, in minor units.
        currency: ISO 4217 code.
        fees: Line items: dicts with title, type, description, amount,
              fine_id and organization.
        driver: ILS source; derived from cat_username when omitted.

    Returns:
        The created Transaction.
    """
    transaction = Transaction(
        transaction_id=transaction_id,
        driver=driver or _driver_for(cat_username),
        user_id=user_id,
        cat_username=cat_username,
        amount=amount,
        transaction_fee=transaction_fee,
        currency=currency,
        status=TransactionStatus.PROGRESS,
        status_message="started",
    )
    db.add(transaction)
    await db.flush()

    for item in fees or []:
        db.add(Fee(
            transaction_id=transaction.id,
            user_id=user_id,
            title=item.get("title", ""),
            type=item.get("type", ""),
            description=item.get("description", ""),
            amount=item["amount"],
            currency=item.get("currency", currency),
            fine_id=item.get("fine_id"),
            organization=item.get("organization", ""),
        ))
    await db.flush()

    logger.info(
        "transaction_created",
        transaction_id=transaction_id,
        cat_username=cat_username,
        amount=amount,
        currency=currency,
    )
    await event_log_service.add_event(
        db,
        transaction,
        "Transaction created",
        {"status": TransactionStatus.PROGRESS.value, "amount": amount, "currency": currency},
        source="transaction_service",
    )
    return transaction


async def get_transaction_by_identifier(
    db: AsyncSession,
    transaction_id: str,
) -> Transaction:
    """
    Load a transaction by its gateway identifier, always fresh from the DB.

    Raises:
        TransactionNotFoundError: If no transaction has this identifier.
    """
    result = await db.execute(
        select(Transaction)
        .where(Transaction.transaction_id == transaction_id)
        .execution_options(populate_existing=True)
    )
    transaction = result.scalar_one_or_none()
    if transaction is None:
        raise TransactionNotFoundError(transaction_id)
    return transaction


async def get_user_transaction(
    db: AsyncSession,
    transaction_id: str,
    user_id: uuid.UUID,
) -> Transaction:
    """Load a transaction and check that it belongs to user_id."""
    transaction = await get_transaction_by_identifier(db, transaction_id)
    if transaction.user_id != user_id:
        raise UnauthorizedAccessError("You do not have access to this transaction")
    return transaction


async def get_user_transactions(
    db: AsyncSession,
    user_id: uuid.UUID,
    limit: int = 50,
    offset: int = 0,
) -> list[Transaction]:
    """A user's transactions, newest first."""
    result = await db.execute(
        select(Transaction)
        .where(Transaction.user_id == user_id)
        .order_by(Transaction.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def get_fees(db: AsyncSession, transaction: Transaction) -> list[Fee]:
    result = await db.execute(
        select(Fee).where(Fee.transaction_id == transaction.id).order_by(Fee.created_at)
    )
    return list(result.scalars().all())


async def get_fine_ids(db: AsyncSession, transaction: Transaction) -> list[str]:
    """ILS fine identifiers of the fees paid with this transaction."""
    return [fee.fine_id for fee in await get_fees(db, transaction) if fee.fine_id]


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------

async def mark_paid(
    db: AsyncSession,
    transaction: Transaction,
    paid_at: datetime | None = None,
) -> bool:
    """
    Record the gateway's payment confirmation.

    Only a PROGRESS transaction can become PAID. A repeated confirmation
    returns False without touching the row or the audit log.
    """
    if transaction.status != TransactionStatus.PROGRESS:
        logger.info(
            "transaction_already_confirmed",
            transaction_id=transaction.transaction_id,
            status=transaction.status.value,
        )
        return False
    await _transition(
        db, transaction, TransactionStatus.PAID, "paid", "Payment confirmed by the gateway",
        source="gateway", values={"paid_at": paid_at or utcnow()},
    )
    return True


async def mark_canceled(db: AsyncSession, transaction: Transaction) -> Transaction:
    return await _transition(
        db, transaction, TransactionStatus.CANCELED, "cancel", "Payment canceled",
        source="gateway",
    )


async def mark_payment_failed(
    db: AsyncSession, transaction: Transaction, message: str = "payment_failed"
) -> Transaction:
    return await _transition(
        db, transaction, TransactionStatus.PAYMENT_FAILED, message,
        "Payment failed at the gateway", {"error": message}, source="gateway",
    )


async def mark_registered(
    db: AsyncSession,
    transaction: Transaction,
    event_message: str = "Successfully registered with the ILS",
    source: str = "reconciliation",
    event_data: dict | None = None,
) -> Transaction:
    return await _transition(
        db, transaction, TransactionStatus.COMPLETE, "register_ok", event_message,
        event_data, source=source, values={"registered_at": utcnow()},
    )


async def mark_registration_failed(
    db: AsyncSession,
    transaction: Transaction,
    message: str,
    event_message: str | None = None,
    event_data: dict | None = None,
) -> Transaction:
    """Park the transaction for retry and release the registration lock."""
    return await _transition(
        db, transaction, TransactionStatus.REGISTRATION_FAILED, message,
        event_message or f"Registration with the ILS failed: {message}",
        event_data, source="reconciliation",
        values={"registration_started_at": None},
    )


async def mark_fines_updated(
    db: AsyncSession,
    transaction: Transaction,
    event_data: dict | None = None,
) -> Transaction:
    return await _transition(
        db, transaction, TransactionStatus.FINES_UPDATED, "fines_updated",
        "Registration with the ILS failed: fines updated", event_data,
        source="reconciliation",
    )


async def mark_reported_and_expired(
    db: AsyncSession,
    transaction: Transaction,
    now: datetime | None = None,
) -> Transaction:
    """Give up automatic registration and stamp the operator report time."""
    reported_at = now or utcnow()
    return await _transition(
        db, transaction, TransactionStatus.REGISTRATION_EXPIRED,
        transaction.status_message, "Registration expired, reported to operators",
        {"reported_at": reported_at.isoformat()}, source="monitor",
        values={"reported_at": reported_at},
    )


async def mark_resolved(
    db: AsyncSession,
    transaction: Transaction,
    registered: bool,
    resolved_by: str,
    note: str = "",
) -> Transaction:
    """
    Operator resolution of a stuck transaction.

    registered=True means the fees were cleared in the ILS by hand and the
    transaction becomes COMPLETE; otherwise it is closed as
    REGISTRATION_RESOLVED (refunded, written off, ...).

    Raises:
        RegistrationInProgressError: If a registration attempt holds the lock.
    """
    if transaction.is_registration_in_progress(lock_seconds=settings.REGISTRATION_LOCK_SECONDS):
        raise RegistrationInProgressError(transaction.transaction_id)
    data = {"resolved_by": resolved_by, "note": note}
    if registered:
        return await mark_registered(
            db, transaction, "Manually marked as registered", source="admin", event_data=data,
        )
    return await _transition(
        db, transaction, TransactionStatus.REGISTRATION_RESOLVED, "resolved",
        "Manually resolved", data, source="admin",
    )


# ---------------------------------------------------------------------------
# Registration lock
# ---------------------------------------------------------------------------

async def acquire_registration_lock(
    db: AsyncSession,
    transaction: Transaction,
    now: datetime | None = None,
    lock_seconds: int | None = None,
) -> bool:
    """
    Try to take the registration lock with one conditional UPDATE.

    Only PAID and REGISTRATION_FAILED transactions can be locked. Returns
    True if this call now holds the lock. The transaction object is
    refreshed either way, so callers see the current registration_started_at.
    """
    now = now or utcnow()
    ttl = lock_seconds if lock_seconds is not None else settings.REGISTRATION_LOCK_SECONDS
    cutoff = now - timedelta(seconds=ttl)

    result = await db.execute(
        update(Transaction)
        .where(Transaction.id == transaction.id)
        .where(Transaction.status.in_(REGISTRABLE_STATUSES))
        .where(
            or_(
                Transaction.registration_started_at.is_(None),
                Transaction.registration_started_at < cutoff,
            )
        )
        .values(registration_started_at=now)
        .execution_options(synchronize_session=False)
    )
    acquired = result.rowcount == 1
    await db.refresh(transaction)
    return acquired


# ---------------------------------------------------------------------------
# Store queries
# ---------------------------------------------------------------------------

async def is_payment_in_progress(db: AsyncSession, cat_username: str) -> bool:
    """
    True if the patron has a paid payment that is not yet resolved.

    Used to refuse a new payment while an earlier one is still being
    registered, so the same fees are never charged twice.
    """
    result = await db.execute(
        select(Transaction.id)
        .where(Transaction.cat_username == cat_username)
        .where(Transaction.status.in_(UNRESOLVED_PAYMENT_STATUSES))
        .limit(1)
    )
    return result.first() is not None


async def get_started_transaction(
    db: AsyncSession,
    cat_username: str,
    max_duration_minutes: int | None = None,
    now: datetime | None = None,
) -> Transaction | None:
    """A PROGRESS transaction for the patron younger than max_duration_minutes."""
    now = now or utcnow()
    minutes = (
        max_duration_minutes
        if max_duration_minutes is not None
        else settings.TRANSACTION_MAX_DURATION_MINUTES
    )
    result = await db.execute(
        select(Transaction)
        .where(Transaction.cat_username == cat_username)
        .where(Transaction.status == TransactionStatus.PROGRESS)
        .where(Transaction.created_at > now - timedelta(minutes=minutes))
        .order_by(Transaction.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def ensure_no_payment_in_progress(
    db: AsyncSession,
    cat_username: str,
    now: datetime | None = None,
) -> None:
    """
    Raises:
        PaymentInProgressError: If a paid payment is unresolved or another
            payment was started recently and has not come back yet.
    """
    if await is_payment_in_progress(db, cat_username):
        raise PaymentInProgressError(cat_username)
    if await get_started_transaction(db, cat_username, now=now) is not None:
        raise PaymentInProgressError(cat_username)


async def get_last_paid_transaction(
    db: AsyncSession,
    cat_username: str,
) -> Transaction | None:
    """Most recently paid transaction for the patron, whatever its outcome."""
    result = await db.execute(
        select(Transaction)
        .where(Transaction.cat_username == cat_username)
        .where(Transaction.status.in_((S.COMPLETE, S.REGISTRATION_RESOLVED, *UNRESOLVED_PAYMENT_STATUSES)))
        .where(Transaction.paid_at.is_not(None))
        .order_by(Transaction.paid_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_failed_transactions(
    db: AsyncSession,
    minimum_paid_age: int = 120,
    now: datetime | None = None,
) -> list[Transaction]:
    """
    Paid transactions whose registration failed or silently stalled.

    Returns transactions that are either REGISTRATION_FAILED with a paid
    timestamp, or still PAID more than minimum_paid_age seconds after
    payment. Ordered by owner so a monitor run handles one patron's
    transactions together.
    """
    now = now or utcnow()
    paid_before = now - timedelta(seconds=minimum_paid_age)
    result = await db.execute(
        select(Transaction)
        .where(
            or_(
                and_(
                    Transaction.status == TransactionStatus.REGISTRATION_FAILED,
                    Transaction.paid_at.is_not(None),
                ),
                and_(
                    Transaction.status == TransactionStatus.PAID,
                    Transaction.paid_at.is_not(None),
                    Transaction.paid_at < paid_before,
                ),
            )
        )
        .order_by(Transaction.user_id, Transaction.paid_at)
    )
    return list(result.scalars().all())


async def get_unresolved_transactions(
    db: AsyncSession,
    interval: int,
    now: datetime | None = None,
) -> list[Transaction]:
    """
    Transactions operators must hear about.

    FINES_UPDATED or REGISTRATION_EXPIRED with a paid timestamp, never
    reported or last reported more than `interval` hours ago.
    """
    now = now or utcnow()
    reported_before = now - timedelta(hours=interval)
    result = await db.execute(
        select(Transaction)
        .where(
            Transaction.status.in_(
                (TransactionStatus.FINES_UPDATED, TransactionStatus.REGISTRATION_EXPIRED)
            )
        )
        .where(Transaction.paid_at.is_not(None))
        .where(
            or_(
                Transaction.reported_at.is_(None),
                Transaction.reported_at < reported_before,
            )
        )
        .order_by(Transaction.user_id, Transaction.paid_at)
    )
    return list(result.scalars().all())


async def get_transactions_by_status(
    db: AsyncSession,
    status_filter: TransactionStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Transaction]:
    """[ADMIN] All transactions, optionally filtered by status, newest first."""
    query = (
        select(Transaction)
        .order_by(Transaction.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    if status_filter is not None:
        query = query.where(Transaction.status == status_filter)
    result = await db.execute(query)
    return list(result.scalars().all())

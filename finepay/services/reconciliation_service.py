"""
Reconciliation service — register a paid transaction with the ILS.

The same transaction can reach reconcile() several times at once: the
gateway's notify callback, the patron's browser returning from the
gateway, a double click, and the background monitor can all overlap.
Fees must be cleared in the ILS exactly once, so:

  1. The registration lock (transaction_service.acquire_registration_lock)
     is taken with a conditional UPDATE and committed before the ILS is
     called. Losing it means another attempt is running: log "already being
     registered", touch nothing, return False.
  2. The ILS online-payment policy decides whether the payable total must
     be re-checked. If exact balance is required or credit is unsupported,
     the current fines (restricted to the fines selected at checkout) are
     compared with the paid amount. A mismatch parks the transaction in
     FINES_UPDATED and the ILS is *not* asked to clear anything: the patron
     may have paid for fines that changed or were already paid elsewhere.
  3. Otherwise the ILS clears the fees and the tagged result decides the
     outcome: COMPLETE, FINES_UPDATED or REGISTRATION_FAILED.

reconcile() never raises. ILS faults become REGISTRATION_FAILED with the
error text as status message and the error in the audit event's data;
the monitor retries REGISTRATION_FAILED transactions later.
"""

from datetime import datetime

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from finepay.exceptions import FinePayError, PatronLoginError
from finepay.models.transaction import Transaction
from finepay.services import event_log_service, patron_service, transaction_service
from finepay.services.ils_client import (
    ClearError,
    ClearFinesUpdated,
    ClearSuccess,
    ILSConnector,
    Patron,
)

logger = structlog.get_logger(__name__)

SOURCE = "reconciliation"


async def reconcile(
    db: AsyncSession,
    ils: ILSConnector,
    patron: Patron,
    transaction: Transaction,
    now: datetime | None = None,
) -> bool:
    """
    Clear the fees of a paid transaction in the ILS.

    Pending changes (e.g. the PAID transition of a gateway callback) are
    committed together with the registration lock and the "started" event,
    before any ILS call is made, so concurrent attempts in other processes
    see the lock and a crash mid-call leaves the lock to expire.

    Args:
        db: Database session.
        ils: ILS connector.
        patron: The transaction owner, logged into the ILS.
        transaction: A PAID or REGISTRATION_FAILED transaction.
        now: Current time (for the registration lock), defaults to utcnow().

    Returns:
        True if the transaction is registered when the call returns.
    """
    log = logger.bind(transaction_id=transaction.transaction_id, patron_id=patron.id)

    if not await _take_lock(db, transaction, now, log):
        if not transaction.needs_registration():
            # Completed or parked by someone else in the meantime
            log.info("registration_not_needed", status=transaction.status.value)
            return transaction.is_registered()
        started_at = transaction.registration_started_at
        log.warning(
            "registration_already_in_progress",
            registration_started_at=started_at.isoformat() if started_at else None,
        )
        await event_log_service.add_event(
            db,
            transaction,
            "Transaction already being registered",
            {"registration_started_at": started_at.isoformat() if started_at else None},
            source=SOURCE,
        )
        try:
            await db.commit()
        except SQLAlchemyError:
            log.exception("registration_event_not_committed")
            await db.rollback()
        return False

    try:
        return await _register(db, ils, patron, transaction, log)
    except Exception as e:
        # Anything the ILS (or a broken connector) throws parks the transaction for retry
        log.exception("registration_error", error=str(e))
        return await _record_failure(db, transaction, e, log)


async def _take_lock(db: AsyncSession, transaction: Transaction, now, log) -> bool:
    """
    Acquire the registration lock and commit it with the "started" event.

    The conditional UPDATE runs in a SAVEPOINT: a database error there
    (e.g. "database is locked" while another attempt is writing) counts as
    not acquiring the lock and leaves earlier changes in the session intact.
    """
    try:
        async with db.begin_nested():
            acquired = await transaction_service.acquire_registration_lock(
                db, transaction, now=now
            )
    except SQLAlchemyError as e:
        log.warning("registration_lock_unavailable", error=str(e))
        await db.refresh(transaction)
        return False
    if not acquired:
        return False

    log.info("registration_started", amount=transaction.amount)
    await event_log_service.add_event(
        db, transaction, "Started registration with the ILS", source=SOURCE
    )
    try:
        await db.commit()
    except SQLAlchemyError:
        log.exception("registration_lock_not_committed")
        await db.rollback()
        await db.refresh(transaction)
        return False
    return True


async def _record_failure(
    db: AsyncSession, transaction: Transaction, error: Exception, log
) -> bool:
    """Move the transaction to REGISTRATION_FAILED, recovering a broken session first."""
    detail = str(error) or error.__class__.__name__
    try:
        if isinstance(error, SQLAlchemyError) or not db.is_active:
            # Only the work done after the lock was committed is lost
            await db.rollback()
            await db.refresh(transaction)
        await transaction_service.mark_registration_failed(
            db,
            transaction,
            detail,
            event_message="Registration with the ILS failed",
            event_data={"error": detail},
        )
    except FinePayError as transition_error:
        log.error("registration_failure_not_recorded", error=transition_error.detail)
    except SQLAlchemyError:
        log.exception("registration_failure_not_recorded")
        await db.rollback()
    return False


async def _register(
    db: AsyncSession,
    ils: ILSConnector,
    patron: Patron,
    transaction: Transaction,
    log,
) -> bool:
    config = await ils.get_online_payment_config(patron)
    fine_ids = await transaction_service.get_fine_ids(db, transaction)

    if config.requires_amount_check:
        fines = await ils.get_current_fines(patron, fine_ids or None)
        exact = config.exact_balance_required
        no_credit = exact or config.credit_unsupported
        if (
            fines.payable
            and fines.amount
            and (
                (exact and transaction.amount != fines.amount)
                or (no_credit and transaction.amount > fines.amount)
            )
        ):
            log.error(
                "payable_amount_updated",
                paid_amount=transaction.amount,
                payable_amount=fines.amount,
            )
            await transaction_service.mark_fines_updated(
                db,
                transaction,
                {"paid_amount": transaction.amount, "payable_amount": fines.amount},
            )
            return False

    log.info("clearing_fees", select_fines=config.select_fines, fine_count=len(fine_ids))
    result = await ils.clear_fees(
        patron,
        transaction.amount,
        transaction.transaction_id,
        str(transaction.id),
        fine_ids if config.select_fines else None,
    )

    match result:
        case ClearSuccess():
            await transaction_service.mark_registered(db, transaction)
            log.info("registration_successful")
            return True
        case ClearFinesUpdated():
            log.error("clear_fees_failed", reason="fines_updated")
            await transaction_service.mark_fines_updated(
                db, transaction, {"error": result.detail}
            )
            return False
        case ClearError():
            log.error("clear_fees_failed", reason=result.detail)
            await transaction_service.mark_registration_failed(
                db,
                transaction,
                f"Failed to mark fees paid: {result.detail}",
                event_message=f"Registration with the ILS failed: {result.detail}",
                event_data={"error": result.detail},
            )
            return False
    raise TypeError(f"Unexpected clear_fees result {result!r}")


async def register_transaction(
    db: AsyncSession,
    ils: ILSConnector,
    transaction: Transaction,
    now: datetime | None = None,
) -> bool:
    """
    Resolve the transaction owner's ILS login and reconcile.

    This is the entry point for the gateway callback, the browser return
    and the monitor. If no stored credential logs the patron in, the
    transaction is left in its current state for a later retry and an
    audit event records why.

    Returns:
        True if the transaction is registered when the call returns.
    """
    if transaction.is_registered():
        return True
    if not transaction.needs_registration():
        logger.warning(
            "registration_not_possible",
            transaction_id=transaction.transaction_id,
            status=transaction.status.value,
        )
        return False

    try:
        patron = await patron_service.resolve_patron(db, ils, transaction)
    except PatronLoginError as e:
        await event_log_service.add_event(
            db,
            transaction,
            "Patron login failed, registration postponed",
            {"error": e.detail},
            source=SOURCE,
        )
        return False

    return await reconcile(db, ils, patron, transaction, now=now)

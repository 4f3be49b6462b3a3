"""
Monitor service — background sweeps over stuck transactions.

Two jobs, both run from the finepay-monitor CLI on a schedule:

retry_failed_transactions
  Walks get_failed_transactions(): REGISTRATION_FAILED transactions and
  PAID ones that stalled. Transactions paid more than expire_hours ago are
  given up on (REGISTRATION_EXPIRED, reported now); the rest go through the
  same register_transaction() entry point the web flow uses, so the
  registration lock keeps a sweep from clashing with a live callback.

report_unresolved_transactions
  Collects get_unresolved_transactions() (FINES_UPDATED and
  REGISTRATION_EXPIRED not reported within `interval` hours), groups them by
  ILS driver for the operators of each library, logs the report and stamps
  every included transaction as reported.

Each transaction is committed on its own, so one bad row never rolls back
the work done on the others.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from finepay.config import settings
from finepay.database import utcnow
from finepay.models.transaction import Transaction
from finepay.services import reconciliation_service, transaction_service
from finepay.services.ils_client import ILSConnector

logger = structlog.get_logger(__name__)


@dataclass
class RetryReport:
    """Outcome counts of one retry sweep."""
    processed: int = 0
    registered: int = 0
    failed: int = 0
    expired: int = 0


@dataclass
class UnresolvedReport:
    """Unresolved transactions grouped by ILS driver."""
    by_driver: dict[str, list[dict]] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(len(items) for items in self.by_driver.values())


def _summary(transaction: Transaction) -> dict:
    return {
        "transaction_id": transaction.transaction_id,
        "cat_username": transaction.cat_username,
        "status": transaction.status.value,
        "status_message": transaction.status_message,
        "amount": transaction.amount,
        "currency": transaction.currency,
        "paid_at": transaction.paid_at.isoformat() if transaction.paid_at else None,
    }


async def retry_failed_transactions(
    session_factory: async_sessionmaker[AsyncSession],
    ils: ILSConnector,
    minimum_paid_age: int | None = None,
    expire_hours: int | None = None,
    now: datetime | None = None,
) -> RetryReport:
    """
    Retry registration of failed and stalled transactions.

    Args:
        session_factory: Creates one session per transaction.
        ils: ILS connector.
        minimum_paid_age: Seconds a PAID transaction must wait before retry.
        expire_hours: Hours after payment when retries are given up.
        now: Current time, defaults to utcnow().
    """
    now = now or utcnow()
    min_age = (
        minimum_paid_age
        if minimum_paid_age is not None
        else settings.FAILED_TRANSACTION_MIN_PAID_AGE
    )
    expire_after = timedelta(
        hours=expire_hours if expire_hours is not None else settings.REGISTRATION_EXPIRE_HOURS
    )
    report = RetryReport()

    async with session_factory() as db:
        identifiers = [
            t.transaction_id
            for t in await transaction_service.get_failed_transactions(db, min_age, now=now)
        ]
    logger.info("retry_sweep_started", candidates=len(identifiers))

    for identifier in identifiers:
        report.processed += 1
        async with session_factory() as db:
            transaction = await transaction_service.get_transaction_by_identifier(db, identifier)
            log = logger.bind(transaction_id=identifier, status=transaction.status.value)

            if transaction.paid_at is not None and now - transaction.paid_at > expire_after:
                await transaction_service.mark_reported_and_expired(db, transaction, now=now)
                await db.commit()
                report.expired += 1
                log.warning("registration_expired", paid_at=transaction.paid_at.isoformat())
                continue

            registered = await reconciliation_service.register_transaction(
                db, ils, transaction, now=now
            )
            await db.commit()

        if registered:
            report.registered += 1
            log.info("retry_registered")
        else:
            report.failed += 1
            log.warning("retry_not_registered")

    logger.info(
        "retry_sweep_finished",
        processed=report.processed,
        registered=report.registered,
        failed=report.failed,
        expired=report.expired,
    )
    return report


async def report_unresolved_transactions(
    session_factory: async_sessionmaker[AsyncSession],
    interval: int | None = None,
    now: datetime | None = None,
) -> UnresolvedReport:
    """
    Collect unresolved transactions for operators and mark them reported.

    Args:
        session_factory: Creates the session used for the sweep.
        interval: Minimum hours between reports of the same transaction.
        now: Current time, defaults to utcnow().
    """
    now = now or utcnow()
    hours = interval if interval is not None else settings.UNRESOLVED_REPORT_INTERVAL_HOURS
    grouped: dict[str, list[dict]] = defaultdict(list)

    async with session_factory() as db:
        transactions = await transaction_service.get_unresolved_transactions(db, hours, now=now)
        for transaction in transactions:
            grouped[transaction.driver].append(_summary(transaction))
            await transaction_service.mark_reported_and_expired(db, transaction, now=now)
        await db.commit()

    report = UnresolvedReport(by_driver=dict(grouped))
    for driver, items in report.by_driver.items():
        logger.warning(
            "unresolved_transactions",
            driver=driver,
            count=len(items),
            transactions=items,
        )
    logger.info("report_sweep_finished", total=report.total)
    return report

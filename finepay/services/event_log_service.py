"""
Event log service — append-only audit trail for transactions.

add_event() is best-effort: the event is written inside a SAVEPOINT, so a
failed insert is rolled back on its own and logged, while the state change
it describes stays in the surrounding session and is committed normally.
A lost audit row is an operational problem; a lost state change is a
financial one.

Originating-server context (ip, host, request path) comes from structlog's
contextvars, bound once per request by the HTTP middleware and once per
command by the CLI. Nothing is shared between concurrent attempts beyond
the database itself.
"""

import socket
import uuid
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from finepay.config import settings
from finepay.models.transaction import Transaction, TransactionStatus
from finepay.models.transaction_event import TransactionEvent

logger = structlog.get_logger(__name__)


def _origin() -> dict[str, str]:
    """Originating server fields from the bound logging context."""
    context = structlog.contextvars.get_contextvars()
    return {
        "server_ip": str(context.get("server_ip", "")),
        "server_name": str(context.get("server_name") or settings.SERVER_NAME or socket.gethostname()),
        "request_uri": str(context.get("request_uri", ""))[:1024],
    }


async def add_event(
    db: AsyncSession,
    transaction: Transaction,
    message: str,
    data: dict[str, Any] | None = None,
    source: str | None = None,
) -> TransactionEvent | None:
    """
    Append one event to a transaction's audit log.

    Args:
        db: Database session.
        transaction: The transaction the event belongs to.
        message: Human-readable description of what happened.
        data: Optional structured payload (JSON-serialisable).
        source: Component that produced the event, stored under data["source"].

    Returns:
        The stored event, or None if the write failed.
    """
    payload = dict(data or {})
    if source:
        payload.setdefault("source", source)

    event = TransactionEvent(
        transaction_id=transaction.id,
        message=message[:1024],
        data=payload or None,
        **_origin(),
    )
    try:
        async with db.begin_nested():
            db.add(event)
    except SQLAlchemyError:
        logger.exception(
            "transaction_event_write_failed",
            transaction_id=transaction.transaction_id,
            event_message=message,
        )
        return None
    return event


async def get_events(
    db: AsyncSession,
    transaction_pk: uuid.UUID,
) -> list[TransactionEvent]:
    """All events for a transaction, in insertion order."""
    result = await db.execute(
        select(TransactionEvent)
        .where(TransactionEvent.transaction_id == transaction_pk)
        .order_by(TransactionEvent.id)
    )
    return list(result.scalars().all())


def replay_status(
    events: list[TransactionEvent],
    initial: TransactionStatus = TransactionStatus.PROGRESS,
) -> TransactionStatus:
    """
    Reconstruct a transaction's status from its audit log.

    Transition events record the status they moved to; informational events
    (registration started, lock rejections) carry no status and are skipped.
    """
    status = initial
    for event in events:
        recorded = (event.data or {}).get("status")
        if recorded:
            status = TransactionStatus(recorded)
    return status

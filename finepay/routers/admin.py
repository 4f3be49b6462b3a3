"""
Admin router — operator endpoints for stuck payments.

All endpoints require ADMIN role.

Endpoints:
  GET  /admin/transactions                                — List transactions (?status=)
  GET  /admin/transactions/{transaction_id}/events        — Read a transaction's audit log
  POST /admin/transactions/{transaction_id}/resolve       — Resolve a stuck registration

Resolution is the only way out of FINES_UPDATED and REGISTRATION_EXPIRED:
registered=true when the fees were cleared in the ILS by hand (COMPLETE),
registered=false when the payment was handled some other way, such as a
refund (REGISTRATION_RESOLVED).
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from finepay.database import get_db
from finepay.dependencies import require_admin
from finepay.models.transaction import TransactionStatus
from finepay.models.user import User
from finepay.schemas.transaction import (
    ResolveRequest,
    TransactionEventResponse,
    TransactionResponse,
)
from finepay.services import event_log_service, transaction_service

router = APIRouter()


@router.get(
    "/transactions",
    response_model=list[TransactionResponse],
    summary="[Admin] List transactions",
)
async def admin_list_transactions(
    status: TransactionStatus | None = Query(None, description="Only this status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """List transactions across all patrons, newest first."""
    return await transaction_service.get_transactions_by_status(db, status, limit, offset)


@router.get(
    "/transactions/{transaction_id}/events",
    response_model=list[TransactionEventResponse],
    summary="[Admin] Read a transaction's audit log",
)
async def admin_get_events(
    transaction_id: str,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    transaction = await transaction_service.get_transaction_by_identifier(db, transaction_id)
    return await event_log_service.get_events(db, transaction.id)


@router.post(
    "/transactions/{transaction_id}/resolve",
    response_model=TransactionResponse,
    summary="[Admin] Resolve a stuck transaction",
)
async def admin_resolve(
    transaction_id: str,
    request: ResolveRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Manually close a transaction the automatic registration gave up on.

    Returns 409 if the transaction's status does not allow resolution.
    """
    transaction = await transaction_service.get_transaction_by_identifier(db, transaction_id)
    return await transaction_service.mark_resolved(
        db,
        transaction,
        registered=request.registered,
        resolved_by=admin.username,
        note=request.note,
    )

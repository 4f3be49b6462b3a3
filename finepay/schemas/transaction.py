"""
Pydantic schemas for payment and transaction endpoints.

All monetary amounts are integers in minor units (e.g., 5.00 EUR = 500).
"""

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class PaymentStartRequest(BaseModel):
    """Request body for POST /payments."""
    amount: int | None = Field(
        None, gt=0, description="Amount shown to the patron, checked against the ILS"
    )
    fine_ids: list[str] | None = Field(
        None, description="Fines selected for payment, where the library allows it"
    )


class FeeResponse(BaseModel):
    """One fee line item paid with a transaction."""
    title: str
    type: str
    description: str
    amount: int
    currency: str
    fine_id: str | None
    organization: str

    model_config = {"from_attributes": True}


class TransactionResponse(BaseModel):
    """Public representation of a transaction."""
    transaction_id: str
    driver: str
    cat_username: str
    amount: int
    transaction_fee: int
    currency: str
    status: str
    status_message: str
    created_at: datetime
    paid_at: datetime | None
    registered_at: datetime | None

    model_config = {"from_attributes": True}


class TransactionDetailResponse(TransactionResponse):
    """A transaction together with its fee line items."""
    fees: list[FeeResponse] = []


class GatewayNotification(BaseModel):
    """
    Body of the payment gateway's server-to-server callback.

    The raw body is signed with the shared gateway secret; the signature
    travels in the X-Signature header.
    """
    status: Literal["paid", "cancel", "failed"]
    paid_at: datetime | None = None
    message: str | None = Field(None, max_length=255)


class RegistrationResponse(BaseModel):
    """Outcome of a registration request."""
    transaction_id: str
    registered: bool
    # Payment or registration still pending, shown to the patron as "processing"
    in_progress: bool
    status: str
    status_message: str


class ResolveRequest(BaseModel):
    """Request body for POST /admin/transactions/{transaction_id}/resolve."""
    registered: bool = Field(
        description="True if the fees were cleared in the ILS by hand"
    )
    note: str = Field("", max_length=1000)


class TransactionEventResponse(BaseModel):
    """One audit log entry."""
    id: int
    created_at: datetime
    server_ip: str
    server_name: str
    request_uri: str
    message: str
    data: dict[str, Any] | None

    model_config = {"from_attributes": True}

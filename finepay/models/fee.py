"""
Fee model — a billable line item paid as part of a transaction.

Fees are copied from the ILS fine listing when the payment starts, so the
transaction keeps a record of what the patron saw and paid for even after
the ILS has cleared the fines. When the ILS supports paying selected fines,
fine_id carries the ILS identifier and is sent back with the clearing call.

In consortia a single ILS serves several organisations; organization
records which one owns the fee.
"""

import uuid
from datetime import datetime

from sqlalchemy import String, Integer, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from finepay.database import Base, UTCDateTime, utcnow


class Fee(Base):
    __tablename__ = "fees"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("transactions.id"),
        nullable=False,
        index=True,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
    )

    title: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    type: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[str] = mapped_column(String(1024), nullable=False, default="")

    # Minor units (cents)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")

    # ILS identifier of the fine, when the ILS exposes one
    fine_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    organization: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
    )

"""
TransactionEvent model — append-only audit log of a transaction.

The Transaction row only holds the *current* status and message. The event
log is the only record of how it got there across webhook calls, browser
returns and monitor retries, so every state change and every rejected
registration attempt appends one row here.

Rows are never updated or deleted. The primary key is an autoincrementing
integer so that ordering by id is insertion order, which timestamps alone
cannot guarantee when two events land in the same clock tick.

Fields:
  - server_ip / server_name / request_uri: where the event originated
    (operational context from the request or CLI command)
  - message: human-readable description ("Started registration with the ILS")
  - data: optional JSON payload; transition events carry the resulting
    status under "status", failures carry the error under "error"
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import String, Integer, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column

from finepay.database import Base, UTCDateTime, utcnow


class TransactionEvent(Base):
    __tablename__ = "transaction_events"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("transactions.id"),
        nullable=False,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
    )

    server_ip: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    server_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    request_uri: Mapped[str] = mapped_column(String(1024), nullable=False, default="")

    message: Mapped[str] = mapped_column(String(1024), nullable=False)

    data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

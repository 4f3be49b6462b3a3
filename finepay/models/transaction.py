"""
Transaction model — one online payment attempt.

A transaction is created when the patron starts a payment and is never
deleted: it is a financial record. Its life cycle spans three systems that
fail independently (the patron's browser, the payment gateway, the ILS), so
the row records both *where* the payment is (status) and enough context to
finish it later without the patron (owner, card username, amounts).

Status machine (see services/transaction_service.py for the allowed edges):

    PROGRESS ──► PAID ──► COMPLETE
       │           │
       │           ├──► FINES_UPDATED ─────────┐
       │           ├──► REGISTRATION_FAILED ───┤──► REGISTRATION_EXPIRED
       │           └──► REGISTRATION_EXPIRED   │          │
       ├──► CANCELED                           └──────────┴──► REGISTRATION_RESOLVED
       └──► PAYMENT_FAILED

Key fields:
  - transaction_id: identifier shared with the payment gateway (unique)
  - driver: ILS source the fees belong to ("helmet", "vaski", ...)
  - cat_username: card username at creation time. A copy, not a reference:
    the patron may switch cards or change their password before the payment
    is registered.
  - amount / transaction_fee: integer minor units (cents)
  - registration_started_at: advisory registration lock. Set when a
    registration attempt starts, cleared when one fails, considered held for
    REGISTRATION_LOCK_SECONDS.
  - status_message: short code ("paid", "register_ok") or failure detail
"""

import enum
import uuid
from datetime import datetime, timedelta

from sqlalchemy import String, Integer, ForeignKey, CheckConstraint, Enum
from sqlalchemy.orm import Mapped, mapped_column

from finepay.database import Base, UTCDateTime, utcnow


class TransactionStatus(str, enum.Enum):
    """Every state a transaction can be in."""
    PROGRESS = "progress"                             # Patron sent to the gateway
    COMPLETE = "complete"                             # Registered with the ILS
    CANCELED = "canceled"                             # Patron abandoned the payment
    PAID = "paid"                                     # Gateway confirmed the payment
    PAYMENT_FAILED = "payment_failed"                 # Gateway reported failure
    REGISTRATION_FAILED = "registration_failed"       # ILS call failed, will be retried
    REGISTRATION_EXPIRED = "registration_expired"     # Retries given up, operator notified
    REGISTRATION_RESOLVED = "registration_resolved"   # Operator resolved manually
    FINES_UPDATED = "fines_updated"                   # Payable amount changed in the ILS


# Statuses eligible for a registration attempt
REGISTRABLE_STATUSES = (
    TransactionStatus.PAID,
    TransactionStatus.REGISTRATION_FAILED,
)

# Not finished from the patron's point of view: shown as "processing"
IN_PROGRESS_STATUSES = (
    TransactionStatus.PROGRESS,
    TransactionStatus.REGISTRATION_FAILED,
)

# Paid but not registered: block new payments for the same patron
UNRESOLVED_PAYMENT_STATUSES = (
    TransactionStatus.PAID,
    TransactionStatus.REGISTRATION_FAILED,
    TransactionStatus.REGISTRATION_EXPIRED,
    TransactionStatus.FINES_UPDATED,
)


class Transaction(Base):
    __tablename__ = "transactions"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_positive_amount"),
        CheckConstraint("transaction_fee >= 0", name="ck_transactions_non_negative_fee"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Identifier shared with the payment gateway
    transaction_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
    )

    driver: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )

    cat_username: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )

    amount: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    transaction_fee: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    # ISO 4217 currency code
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="EUR",
    )

    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus),
        nullable=False,
        default=TransactionStatus.PROGRESS,
        index=True,
    )

    status_message: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="started",
    )

    # --- Life cycle timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
        index=True,
    )
    paid_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
        index=True,
    )
    registration_started_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    registered_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    # Last time an operator report included this transaction
    reported_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    # --- Derived predicates ---

    def is_in_progress(self) -> bool:
        return self.status in IN_PROGRESS_STATUSES

    def needs_registration(self) -> bool:
        return self.status in REGISTRABLE_STATUSES

    def is_registered(self) -> bool:
        return self.status == TransactionStatus.COMPLETE

    def is_registration_in_progress(
        self, now: datetime | None = None, lock_seconds: int = 120
    ) -> bool:
        """True if a registration attempt started less than lock_seconds ago."""
        if self.registration_started_at is None:
            return False
        now = now or utcnow()
        return now - self.registration_started_at < timedelta(seconds=lock_seconds)

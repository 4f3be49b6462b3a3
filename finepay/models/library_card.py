"""
LibraryCard model — one set of ILS credentials linked to a User.

A patron may link several cards, and may link the same barcode more than
once (for example after the card was removed and re-added with a new
password). All of them are kept: the patron resolver tries every card whose
username matches the one a transaction was paid with.

Encryption strategy:
  - cat_password_encrypted: ILS password, Fernet-encrypted at rest
  - cat_username: stored in plaintext, it is the lookup key

Passwords are encrypted rather than hashed because they must be replayed
to the ILS when a payment is registered in the background.
"""

import uuid
from datetime import datetime

from sqlalchemy import String, ForeignKey, LargeBinary
from sqlalchemy.orm import Mapped, mapped_column, relationship

from finepay.database import Base, UTCDateTime, utcnow


class LibraryCard(Base):
    __tablename__ = "library_cards"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )

    # Display name chosen by the patron ("Home library card")
    card_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )

    cat_username: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )

    # ILS password, Fernet-encrypted
    cat_password_encrypted: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
    )

    home_library: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
    )

    # --- Relationships ---
    user: Mapped["User"] = relationship(
        back_populates="library_cards",
    )

"""
User model — the local identity of a library patron.

A User is created the first time a patron logs in with their library card.
FinePay does not hold passwords of its own: patrons authenticate against the
ILS, and the User keeps the *current* ILS credentials so that payments can be
registered later without the patron being present.

Current credentials vs. library cards:
  - cat_username / cat_password_encrypted are the credentials of the card the
    patron is currently using (the "active" card).
  - Every card the patron has linked is also kept as a LibraryCard row. When
    the patron switches cards or changes their ILS password, the transaction
    still remembers the username it was paid with, and the patron resolver
    falls back to the stored cards.

User types:
  - ADMIN: Operator who can inspect and manually resolve transactions
  - MEMBER: Library patron (the default for ILS logins)
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import String, Boolean, Enum, LargeBinary
from sqlalchemy.orm import Mapped, mapped_column, relationship

from finepay.database import Base, UTCDateTime, utcnow


class UserType(str, enum.Enum):
    """
    Role a user holds within FinePay.

    Inherits from str so the enum value serializes naturally to JSON.
    """
    ADMIN = "admin"     # Operator: transaction oversight
    MEMBER = "member"   # Library patron


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Login identity: the card username used for the very first login
    username: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )

    # Current ILS credentials ("source.barcode" form)
    cat_username: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    cat_password_encrypted: Mapped[bytes | None] = mapped_column(
        LargeBinary,
        nullable=True,
    )

    home_library: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    user_type: Mapped[UserType] = mapped_column(
        Enum(UserType),
        default=UserType.MEMBER,
        nullable=False,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    # --- Relationships ---
    library_cards: Mapped[list["LibraryCard"]] = relationship(
        back_populates="user",
        order_by="LibraryCard.created_at",
    )

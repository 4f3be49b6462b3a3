"""
SQLAlchemy ORM models package.

All models are imported here so that:
  1. Base.metadata knows every table when create_all() runs
  2. Other modules can import from finepay.models directly
"""

from finepay.models.user import User, UserType  # noqa: F401
from finepay.models.library_card import LibraryCard  # noqa: F401
from finepay.models.transaction import Transaction, TransactionStatus  # noqa: F401
from finepay.models.fee import Fee  # noqa: F401
from finepay.models.transaction_event import TransactionEvent  # noqa: F401

"""
Pydantic schemas for User-related responses.

Encrypted ILS passwords are NEVER included in any response schema.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel


class UserResponse(BaseModel):
    """Public representation of a User."""
    id: uuid.UUID
    username: str
    cat_username: str | None
    home_library: str | None
    user_type: str
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}

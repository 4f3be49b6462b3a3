"""Pydantic schemas for library card endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class LibraryCardCreateRequest(BaseModel):
    """Request body for POST /library-cards."""
    cat_username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1)
    card_name: str = Field("", max_length=255)


class LibraryCardResponse(BaseModel):
    """A linked card. The stored password is never returned."""
    id: uuid.UUID
    card_name: str
    cat_username: str
    home_library: str | None
    created_at: datetime

    model_config = {"from_attributes": True}

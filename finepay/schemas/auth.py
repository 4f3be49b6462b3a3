"""
Pydantic schemas for the login endpoint.

Patrons log in with their library card: cat_username is the card username
in "source.barcode" form and password is the ILS password. Neither is
validated beyond presence; the ILS decides whether they are correct.
"""

import uuid

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""
    cat_username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1)


class TokenResponse(BaseModel):
    """Response body for successful login — user id + JWT."""
    user_id: uuid.UUID
    token: str
    token_type: str = "bearer"

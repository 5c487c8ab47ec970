import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class Credentials(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)


class AccountRead(BaseModel):
    id: uuid.UUID
    email: str
    created_at: datetime

    model_config = {"from_attributes": True}


class SessionRead(BaseModel):
    """Login result; send token back in the X-Session-Token header."""

    token: str
    user_id: uuid.UUID
    expires_at: datetime

    model_config = {"from_attributes": True}

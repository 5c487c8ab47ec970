import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field, computed_field, field_validator


class AuditEntryRead(BaseModel):
    """One audit event as its owner sees it; user_id is implied by the session."""

    id: uuid.UUID
    event_type: str
    action: str
    detail: dict | None = None
    timestamp: datetime
    ip_address: str | None = None

    model_config = {"from_attributes": True}

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ConsentAuditEntry(AuditEntryRead):
    consent_id: uuid.UUID = Field(validation_alias="entity_id")

    @computed_field
    @property
    def provider_id(self) -> str | None:
        return (self.detail or {}).get("provider_id")

import enum
import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator


class ConsentFlags(BaseModel):
    """Partial set of consent fields; None means "leave unchanged"."""

    lab_results: bool | None = None
    medications: bool | None = None
    fitness_data: bool | None = None
    approved: bool | None = None

    def supplied(self) -> dict[str, bool]:
        return self.model_dump(exclude_none=True)


class ConsentCreate(ConsentFlags):
    provider_id: str = Field(..., min_length=1, max_length=255)
    # Defaults to the caller; any other value is refused by the store.
    owner_id: uuid.UUID | None = None


class ConsentUpsert(ConsentFlags):
    pass


class ApprovalUpdate(BaseModel):
    approved: bool


class ConsentRecordRead(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    provider_id: str
    lab_results: bool
    medications: bool
    fitness_data: bool
    approved: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("created_at", "updated_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # SQLite drops the offset on round-trip; every stored timestamp is UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ChangeType(str, enum.Enum):
    insert = "insert"
    update = "update"
    delete = "delete"


class ConsentChange(BaseModel):
    """Row-level change event. For deletes, record is the last known state."""

    type: ChangeType
    record: ConsentRecordRead

    @property
    def owner_id(self) -> uuid.UUID:
        return self.record.user_id

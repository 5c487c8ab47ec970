import uuid

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from consenthub.models.base import Base, TimestampMixin, generate_uuid


class User(TimestampMixin, Base):
    """An account: the owner of consent records. Email is stored lower-cased."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=generate_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

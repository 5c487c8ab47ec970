import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from consenthub.models.base import Base, generate_uuid, utcnow

# Data categories a provider can be granted, in display order.
GRANT_FIELDS = ("lab_results", "medications", "fitness_data")


class ProviderConsent(Base):
    """One user's data-sharing consent with one provider.

    approved=False is a pending request; approved=True is an active grant.
    updated_at is maintained by the consent store, not by an ORM onupdate,
    so that it never moves backwards.
    """

    __tablename__ = "user_provider_consent"
    __table_args__ = (
        UniqueConstraint("user_id", "provider_id", name="uq_user_provider_consent_user_provider"),
        Index("ix_user_provider_consent_user_id", "user_id"),
        Index("ix_user_provider_consent_provider_id", "provider_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=generate_uuid)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[str] = mapped_column(String(255), nullable=False)
    lab_results: Mapped[bool] = mapped_column(nullable=False, default=False)
    medications: Mapped[bool] = mapped_column(nullable=False, default=False)
    fitness_data: Mapped[bool] = mapped_column(nullable=False, default=False)
    approved: Mapped[bool] = mapped_column(nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

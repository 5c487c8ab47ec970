"""Audit trail for consent decisions and account activity.

Append-only: events are recorded and read back, never changed or removed.
Consent events carry provider_id in their detail, so a user's history with a
provider stays answerable after the record itself is deleted or denied.
"""

import logging
import uuid
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consenthub.models.audit import CONSENT_ENTITY, AuditLogEvent

logger = logging.getLogger("consenthub.audit")

CONSENT_EVENT_TYPES = (
    "consent.created",
    "consent.updated",
    "consent.approved",
    "consent.revoked",
    "consent.deleted",
    "consent.denied",
)
AUTH_EVENT_TYPES = ("auth.register", "auth.login", "auth.logout")


async def record(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    event_type: str,
    entity_id: uuid.UUID,
    action: str,
    entity_type: str = CONSENT_ENTITY,
    detail: dict | None = None,
    ip_address: str | None = None,
) -> AuditLogEvent:
    """Append one event in the caller's transaction.

    Flushed but not committed, so the event lands or vanishes together with
    the change it describes.
    """
    event = AuditLogEvent(
        user_id=user_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        detail=detail,
        ip_address=ip_address,
    )
    db.add(event)
    await db.flush()
    logger.debug("Audit %s %s=%s user=%s", event_type, entity_type, entity_id, user_id)
    return event


async def consent_trail(
    db: AsyncSession,
    user_id: uuid.UUID,
    *,
    provider_id: str | None = None,
    event_types: Iterable[str] | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[AuditLogEvent]:
    """The user's consent decisions, newest first.

    provider_id narrows to one provider across every record it ever had;
    event_types narrows to a subset of CONSENT_EVENT_TYPES.
    """
    stmt = select(AuditLogEvent).where(
        AuditLogEvent.user_id == user_id,
        AuditLogEvent.entity_type == CONSENT_ENTITY,
    )
    if provider_id is not None:
        stmt = stmt.where(AuditLogEvent.detail["provider_id"].as_string() == provider_id)
    if event_types is not None:
        stmt = stmt.where(AuditLogEvent.event_type.in_(list(event_types)))
    stmt = stmt.order_by(AuditLogEvent.timestamp.desc()).offset(offset).limit(limit)

    result = await db.execute(stmt)
    return list(result.scalars().all())


async def record_history(
    db: AsyncSession,
    user_id: uuid.UUID,
    consent_id: uuid.UUID,
) -> list[AuditLogEvent]:
    """Every event for one consent record, oldest first. Empty if it never existed."""
    stmt = (
        select(AuditLogEvent)
        .where(
            AuditLogEvent.user_id == user_id,
            AuditLogEvent.entity_type == CONSENT_ENTITY,
            AuditLogEvent.entity_id == consent_id,
        )
        .order_by(AuditLogEvent.timestamp.asc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def sign_in_history(db: AsyncSession, user_id: uuid.UUID, *, limit: int = 50) -> list[AuditLogEvent]:
    """Register, login and logout events for the user, newest first."""
    stmt = (
        select(AuditLogEvent)
        .where(
            AuditLogEvent.user_id == user_id,
            AuditLogEvent.event_type.in_(AUTH_EVENT_TYPES),
        )
        .order_by(AuditLogEvent.timestamp.desc())
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())

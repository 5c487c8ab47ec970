"""Delete service: remove a user and, by cascade, everything they own.

- Deletion is logged to the audit trail before the user row goes away
- The user row is hard-deleted; the schema cascades to consent records and sessions
- Audit events survive with user_id nulled (ON DELETE SET NULL)
- Live subscribers receive a delete event for every cascaded consent record
"""

import logging
import uuid

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from consenthub.core.errors import translate_db_errors
from consenthub.models.audit import ACCOUNT_ENTITY
from consenthub.models.consent import ProviderConsent
from consenthub.models.user import User
from consenthub.schemas.consent import ChangeType, ConsentRecordRead
from consenthub.services import audit_service
from consenthub.services.consent_store import announce_change

logger = logging.getLogger("consenthub.delete")


async def delete_user_data(
    db: AsyncSession,
    user_id: uuid.UUID,
    ip_address: str | None = None,
) -> bool:
    """Delete a user and their consent records.

    Returns True if user was found and deleted, False if not found.
    """
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        return False

    # Snapshot consent rows first; the cascade removes them without ORM events.
    result = await db.execute(select(ProviderConsent).where(ProviderConsent.user_id == user_id))
    consents = [ConsentRecordRead.model_validate(c) for c in result.scalars().all()]

    await audit_service.record(
        db,
        user_id=user_id,
        event_type="user.deleted",
        entity_type=ACCOUNT_ENTITY,
        entity_id=user_id,
        action="delete",
        detail={"reason": "user_requested", "consent_records": len(consents)},
        ip_address=ip_address,
    )

    async with translate_db_errors("delete user"):
        await db.execute(delete(User).where(User.id == user_id))
        await db.flush()
    db.expunge_all()

    for snapshot in consents:
        await announce_change(db, ChangeType.delete, snapshot)

    logger.info("User removed user=%s consent_records=%d", user_id, len(consents))
    return True

import uuid

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from consenthub.core.auth import login_user, principal_for, register_user
from consenthub.models.audit import AuditLogEvent
from consenthub.models.consent import ProviderConsent
from consenthub.models.session import Session
from consenthub.models.user import User
from consenthub.schemas.consent import ChangeType
from consenthub.services import consent_store, delete_service


async def _user_with_consents(db_session: AsyncSession, email: str):
    user = await register_user(db_session, email=email, password="Pass123!")
    await db_session.commit()
    principal = principal_for(user)
    await consent_store.create_consent(db_session, principal, provider_id="clinic")
    await consent_store.upsert_consent(
        db_session, principal, provider_id="gym", flags={"fitness_data": True, "approved": True}
    )
    await db_session.commit()
    return user


@pytest.mark.asyncio
async def test_delete_user_removes_user_and_consents(db_session: AsyncSession):
    """User row hard-deleted; consent records and sessions cascade."""
    user = await _user_with_consents(db_session, "del@example.com")
    await login_user(db_session, email="del@example.com", password="Pass123!")
    await db_session.commit()
    user_id = user.id

    result = await delete_service.delete_user_data(db_session, user_id)
    await db_session.commit()
    assert result is True

    assert (await db_session.execute(select(User).where(User.id == user_id))).scalar_one_or_none() is None
    consents = await db_session.execute(
        select(ProviderConsent).where(ProviderConsent.user_id == user_id)
    )
    assert consents.scalars().all() == []
    sessions = await db_session.execute(select(Session).where(Session.user_id == user_id))
    assert sessions.scalars().all() == []


@pytest.mark.asyncio
async def test_delete_keeps_audit_trail_anonymised(db_session: AsyncSession):
    """Audit events survive with user_id nulled; the deletion itself is logged."""
    user = await _user_with_consents(db_session, "audit-del@example.com")
    user_id = user.id

    await delete_service.delete_user_data(db_session, user_id, ip_address="10.0.0.9")
    await db_session.commit()

    result = await db_session.execute(select(AuditLogEvent))
    events = result.scalars().all()
    assert events
    assert all(e.user_id is None for e in events)
    [deleted] = [e for e in events if e.event_type == "user.deleted"]
    assert deleted.entity_id == user_id
    assert deleted.detail["consent_records"] == 2


@pytest.mark.asyncio
async def test_delete_announces_cascaded_consents(db_session: AsyncSession, notifier):
    user = await _user_with_consents(db_session, "events-del@example.com")
    received = []
    notifier.subscribe(user.id, received.append)

    await delete_service.delete_user_data(db_session, user.id)
    await db_session.commit()
    await notifier.wait_idle()

    assert {c.type for c in received} == {ChangeType.delete}
    assert sorted(c.record.provider_id for c in received) == ["clinic", "gym"]


@pytest.mark.asyncio
async def test_delete_unknown_user(db_session: AsyncSession):
    assert await delete_service.delete_user_data(db_session, uuid.uuid4()) is False

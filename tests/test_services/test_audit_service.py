import uuid

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from consenthub.models.audit import SESSION_ENTITY
from consenthub.models.user import User
from consenthub.services import audit_service


async def _create_user(db_session: AsyncSession) -> User:
    user = User(email="audit-svc@example.com", password_hash="fakehash")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


async def _consent_event(
    db_session: AsyncSession,
    user: User,
    event_type: str,
    provider_id: str,
    consent_id: uuid.UUID | None = None,
):
    return await audit_service.record(
        db_session,
        user_id=user.id,
        event_type=event_type,
        entity_id=consent_id or uuid.uuid4(),
        action=event_type.split(".")[1],
        detail={"provider_id": provider_id},
    )


@pytest.mark.asyncio
async def test_record_defaults_to_consent_entity(db_session: AsyncSession):
    user = await _create_user(db_session)
    entity_id = uuid.uuid4()

    event = await audit_service.record(
        db_session,
        user_id=user.id,
        event_type="consent.created",
        entity_id=entity_id,
        action="create",
        detail={"provider_id": "clinic"},
        ip_address="10.0.0.1",
    )
    await db_session.commit()

    assert event.id is not None
    assert event.entity_type == "ProviderConsent"
    assert event.entity_id == entity_id
    assert event.detail == {"provider_id": "clinic"}
    assert event.ip_address == "10.0.0.1"


@pytest.mark.asyncio
async def test_consent_trail_is_newest_first_and_paginates(db_session: AsyncSession):
    user = await _create_user(db_session)
    for provider_id in ("p0", "p1", "p2", "p3", "p4"):
        await _consent_event(db_session, user, "consent.created", provider_id)
    await db_session.commit()

    trail = await audit_service.consent_trail(db_session, user.id)
    assert [e.detail["provider_id"] for e in trail] == ["p4", "p3", "p2", "p1", "p0"]
    page = await audit_service.consent_trail(db_session, user.id, limit=2, offset=1)
    assert [e.detail["provider_id"] for e in page] == ["p3", "p2"]


@pytest.mark.asyncio
async def test_consent_trail_filters_by_provider_and_event_type(db_session: AsyncSession):
    """A provider's trail spans every record it had, including deleted ones."""
    user = await _create_user(db_session)
    first, second = uuid.uuid4(), uuid.uuid4()
    await _consent_event(db_session, user, "consent.created", "clinic", first)
    await _consent_event(db_session, user, "consent.deleted", "clinic", first)
    await _consent_event(db_session, user, "consent.created", "clinic", second)
    await _consent_event(db_session, user, "consent.approved", "clinic", second)
    await _consent_event(db_session, user, "consent.created", "gym")
    await audit_service.record(
        db_session,
        user_id=user.id,
        event_type="auth.login",
        entity_type=SESSION_ENTITY,
        entity_id=uuid.uuid4(),
        action="login",
    )
    await db_session.commit()

    clinic = await audit_service.consent_trail(db_session, user.id, provider_id="clinic")
    assert len(clinic) == 4
    assert {e.entity_id for e in clinic} == {first, second}

    decisions = await audit_service.consent_trail(
        db_session, user.id, event_types=["consent.approved", "consent.deleted"]
    )
    assert sorted(e.event_type for e in decisions) == ["consent.approved", "consent.deleted"]

    everything = await audit_service.consent_trail(db_session, user.id)
    assert all(e.event_type in audit_service.CONSENT_EVENT_TYPES for e in everything)


@pytest.mark.asyncio
async def test_record_history(db_session: AsyncSession):
    """record_history returns only the chain of events for one record, oldest first."""
    user = await _create_user(db_session)
    consent_id = uuid.uuid4()

    await _consent_event(db_session, user, "consent.created", "clinic", consent_id)
    await _consent_event(db_session, user, "consent.approved", "clinic", consent_id)
    await _consent_event(db_session, user, "consent.created", "clinic")
    await db_session.commit()

    chain = await audit_service.record_history(db_session, user.id, consent_id)
    assert [e.action for e in chain] == ["created", "approved"]
    assert await audit_service.record_history(db_session, uuid.uuid4(), consent_id) == []


@pytest.mark.asyncio
async def test_no_delete_pathway(db_session: AsyncSession):
    """Verify the audit_service module has no delete function."""
    public_functions = [name for name in dir(audit_service) if not name.startswith("_")]
    for name in public_functions:
        assert "delete" not in name.lower(), f"Found delete pathway: {name}"

import uuid

import pytest
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from consenthub.models.consent import ProviderConsent
from consenthub.models.user import User


async def _create_user(db_session: AsyncSession, email: str = "model@example.com") -> User:
    user = User(email=email, password_hash="fakehash")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.mark.asyncio
async def test_create_provider_consent_defaults(db_session: AsyncSession):
    """New record: every grant off, not approved, timestamps set."""
    user = await _create_user(db_session)

    db_session.add(ProviderConsent(user_id=user.id, provider_id="memorial-hospital"))
    await db_session.commit()

    result = await db_session.execute(
        select(ProviderConsent).where(ProviderConsent.user_id == user.id)
    )
    fetched = result.scalar_one()

    assert isinstance(fetched.id, uuid.UUID)
    assert fetched.provider_id == "memorial-hospital"
    assert fetched.lab_results is False
    assert fetched.medications is False
    assert fetched.fitness_data is False
    assert fetched.approved is False
    assert fetched.created_at is not None
    assert fetched.updated_at is not None


@pytest.mark.asyncio
async def test_one_record_per_user_provider_pair(db_session: AsyncSession):
    """Unique (user_id, provider_id) is enforced by the schema."""
    user = await _create_user(db_session)
    db_session.add(ProviderConsent(user_id=user.id, provider_id="pharmacy"))
    await db_session.commit()

    db_session.add(ProviderConsent(user_id=user.id, provider_id="pharmacy"))
    with pytest.raises(IntegrityError):
        await db_session.commit()


@pytest.mark.asyncio
async def test_same_provider_for_different_users(db_session: AsyncSession):
    """Uniqueness is per owner, not global."""
    alice = await _create_user(db_session, "alice@example.com")
    bob = await _create_user(db_session, "bob@example.com")

    db_session.add(ProviderConsent(user_id=alice.id, provider_id="pharmacy"))
    db_session.add(ProviderConsent(user_id=bob.id, provider_id="pharmacy"))
    await db_session.commit()

    result = await db_session.execute(
        select(ProviderConsent).where(ProviderConsent.provider_id == "pharmacy")
    )
    assert len(result.scalars().all()) == 2


@pytest.mark.asyncio
async def test_consent_fk_to_user(db_session: AsyncSession):
    """FK constraint to user is enforced."""
    db_session.add(ProviderConsent(user_id=uuid.uuid4(), provider_id="orphan"))
    with pytest.raises(IntegrityError):
        await db_session.commit()


@pytest.mark.asyncio
async def test_deleting_user_cascades_to_consents(db_session: AsyncSession):
    """Removing the owner removes all of the owner's consent records."""
    user = await _create_user(db_session)
    for provider in ("a", "b", "c"):
        db_session.add(ProviderConsent(user_id=user.id, provider_id=provider))
    await db_session.commit()

    await db_session.execute(delete(User).where(User.id == user.id))
    await db_session.commit()
    db_session.expunge_all()

    result = await db_session.execute(
        select(ProviderConsent).where(ProviderConsent.user_id == user.id)
    )
    assert result.scalars().all() == []

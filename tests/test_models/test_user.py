import uuid

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from consenthub.models.user import User


@pytest.mark.asyncio
async def test_create_and_read_user(db_session: AsyncSession):
    """Round-trip: create user -> read user -> fields match."""
    user = User(email="test@example.com", password_hash="fakehash123")
    db_session.add(user)
    await db_session.commit()

    result = await db_session.execute(select(User).where(User.email == "test@example.com"))
    fetched = result.scalar_one()

    assert isinstance(fetched.id, uuid.UUID)
    assert fetched.email == "test@example.com"
    assert fetched.created_at is not None
    assert fetched.updated_at is not None


@pytest.mark.asyncio
async def test_user_unique_email(db_session: AsyncSession):
    """Duplicate email raises IntegrityError."""
    db_session.add(User(email="dup@example.com", password_hash="hash1"))
    await db_session.commit()

    db_session.add(User(email="dup@example.com", password_hash="hash2"))
    with pytest.raises(IntegrityError):
        await db_session.commit()

"""Transport between a ConsentMirror and the consent store.

Any transport that offers CRUD plus an owner-filtered change subscription can
back a mirror. LocalConsentGateway is the in-process one: each call runs in
its own session and commits, so the change it causes is published to the
notifier exactly like a request coming through the HTTP API.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from typing import Protocol, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from consenthub.core.errors import translate_db_errors
from consenthub.core.policy import Principal
from consenthub.schemas.consent import ConsentRecordRead
from consenthub.services import consent_store
from consenthub.services.notifier import ChangeHandler, ChangeNotifier, GapHandler, Subscription

logger = logging.getLogger("consenthub.sync")

T = TypeVar("T")


class ConsentGateway(Protocol):
    async def list_records(self, principal: Principal) -> list[ConsentRecordRead]: ...

    async def create(
        self,
        principal: Principal,
        *,
        provider_id: str,
        flags: Mapping[str, bool],
        record_id: uuid.UUID | None = None,
    ) -> ConsentRecordRead: ...

    async def upsert(
        self,
        principal: Principal,
        *,
        provider_id: str,
        flags: Mapping[str, bool],
        record_id: uuid.UUID | None = None,
    ) -> ConsentRecordRead: ...

    async def update_approval(
        self, principal: Principal, consent_id: uuid.UUID, approved: bool
    ) -> ConsentRecordRead: ...

    async def delete(self, principal: Principal, consent_id: uuid.UUID) -> bool: ...

    async def deny(self, principal: Principal, consent_id: uuid.UUID) -> bool: ...

    async def delete_by_provider(self, principal: Principal, provider_id: str) -> bool: ...

    def subscribe(
        self,
        owner_id: uuid.UUID,
        handler: ChangeHandler,
        *,
        on_gap: GapHandler | None = None,
    ) -> Subscription: ...


class LocalConsentGateway:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: ChangeNotifier,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier

    async def _run(self, operation: str, call: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self._session_factory() as db:
            try:
                result = await call(db)
                async with translate_db_errors(operation):
                    await db.commit()
            except Exception:
                await db.rollback()
                raise
        return result

    async def list_records(self, principal: Principal) -> list[ConsentRecordRead]:
        async def call(db: AsyncSession) -> list[ConsentRecordRead]:
            records = await consent_store.list_by_owner(db, principal)
            return [ConsentRecordRead.model_validate(r) for r in records]

        return await self._run("list consents", call)

    async def create(self, principal, *, provider_id, flags, record_id=None):
        async def call(db: AsyncSession) -> ConsentRecordRead:
            record = await consent_store.create_consent(
                db, principal, provider_id=provider_id, flags=flags, record_id=record_id
            )
            return ConsentRecordRead.model_validate(record)

        return await self._run("create consent", call)

    async def upsert(self, principal, *, provider_id, flags, record_id=None):
        async def call(db: AsyncSession) -> ConsentRecordRead:
            record = await consent_store.upsert_consent(
                db, principal, provider_id=provider_id, flags=flags, record_id=record_id
            )
            return ConsentRecordRead.model_validate(record)

        return await self._run("upsert consent", call)

    async def update_approval(self, principal, consent_id, approved):
        async def call(db: AsyncSession) -> ConsentRecordRead:
            record = await consent_store.update_approval(db, principal, consent_id, approved)
            return ConsentRecordRead.model_validate(record)

        return await self._run("update approval", call)

    async def delete(self, principal, consent_id):
        return await self._run(
            "delete consent",
            lambda db: consent_store.delete_consent(db, principal, consent_id),
        )

    async def deny(self, principal, consent_id):
        return await self._run(
            "deny consent",
            lambda db: consent_store.deny_request(db, principal, consent_id),
        )

    async def delete_by_provider(self, principal, provider_id):
        return await self._run(
            "delete consent",
            lambda db: consent_store.delete_by_provider(db, principal, provider_id),
        )

    def subscribe(self, owner_id, handler, *, on_gap=None):
        return self._notifier.subscribe(owner_id, handler, on_gap=on_gap)

"""Client-side mirror of one owner's consent records.

Lifecycle: uninitialized -> loading -> ready, and back to uninitialized on
stop(). Local actions update the mirror optimistically before the store call
is made; change events from the notifier are merged by record id. All mirror
updates are plain dict operations between awaits, so on a single event loop
an optimistic update and a merge can never interleave half-way.
"""

import asyncio
import enum
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import datetime, timezone
from typing import TypeVar

from consenthub.core.errors import ConflictError, ConsentStoreError, NotFoundError
from consenthub.core.policy import Principal
from consenthub.models.consent import GRANT_FIELDS
from consenthub.schemas.consent import ChangeType, ConsentChange, ConsentRecordRead
from consenthub.services.notifier import Subscription
from consenthub.sync.gateway import ConsentGateway

logger = logging.getLogger("consenthub.sync")

T = TypeVar("T")

# Owner id stamped on records of a mirror that has no signed-in principal.
LOCAL_OWNER_ID = uuid.UUID(int=0)


class SyncState(str, enum.Enum):
    uninitialized = "uninitialized"
    loading = "loading"
    ready = "ready"


class ConsentMirror:
    """In-memory copy of a principal's consent records, kept in sync.

    With principal=None the mirror is local-only: it becomes ready
    immediately, mutations apply to memory, and the gateway is never called.
    """

    def __init__(self, gateway: ConsentGateway, principal: Principal | None) -> None:
        self._gateway = gateway
        self._principal = principal
        self._state = SyncState.uninitialized
        self._records: dict[uuid.UUID, ConsentRecordRead] = {}
        # Ids whose mirror value came from a local action, not the store.
        self._optimistic: set[uuid.UUID] = set()
        self._subscription: Subscription | None = None
        # Non-None while a full fetch is running; events are parked here.
        self._buffer: list[ConsentChange] | None = None
        self._ready = asyncio.Event()
        self._refresh_lock = asyncio.Lock()
        # Bumped on every start/stop so late results from an old session are dropped.
        self._generation = 0

    async def __aenter__(self) -> "ConsentMirror":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.stop()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def principal(self) -> Principal | None:
        return self._principal

    @property
    def is_local_only(self) -> bool:
        return self._principal is None

    @property
    def records(self) -> list[ConsentRecordRead]:
        return sorted(self._records.values(), key=lambda r: (r.created_at, r.provider_id))

    def get(self, consent_id: uuid.UUID) -> ConsentRecordRead | None:
        return self._records.get(consent_id)

    def by_provider(self, provider_id: str) -> ConsentRecordRead | None:
        for record in self._records.values():
            if record.provider_id == provider_id:
                return record
        return None

    def pending(self) -> list[ConsentRecordRead]:
        return [r for r in self.records if not r.approved]

    def approved(self) -> list[ConsentRecordRead]:
        return [r for r in self.records if r.approved]

    async def start(self) -> None:
        """Subscribe, fetch the owner's full record set, then become ready."""
        if self._state is not SyncState.uninitialized:
            return
        self._generation += 1
        if self._principal is None:
            logger.debug("No principal; consent mirror is local-only")
            self._set_ready()
            return

        generation = self._generation
        self._state = SyncState.loading
        self._buffer = []
        # Subscribe before fetching so nothing committed meanwhile is missed.
        self._subscription = self._gateway.subscribe(
            self._principal.user_id, self._on_change, on_gap=self.refresh
        )
        try:
            snapshot = await self._gateway.list_records(self._principal)
        except ConsentStoreError:
            if generation == self._generation:
                self.stop()
            raise
        if generation != self._generation:
            return
        self._install(snapshot)
        self._set_ready()
        logger.info(
            "Consent mirror ready owner=%s records=%d", self._principal, len(self._records)
        )

    def stop(self) -> None:
        """Release the subscription and forget everything (logout)."""
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        self._generation += 1
        self._records.clear()
        self._optimistic.clear()
        self._buffer = None
        self._state = SyncState.uninitialized
        # Wake anything waiting for ready; it will see the session has ended.
        waiting, self._ready = self._ready, asyncio.Event()
        waiting.set()

    async def refresh(self) -> None:
        """Refetch the full set. Used after reconnects and failed mutations."""
        if self._principal is None or self._state is not SyncState.ready:
            return
        async with self._refresh_lock:
            generation = self._generation
            self._buffer = []
            try:
                snapshot = await self._gateway.list_records(self._principal)
            except ConsentStoreError:
                if generation == self._generation:
                    self._drain_buffer()
                raise
            if generation != self._generation:
                return
            self._install(snapshot)

    def _set_ready(self) -> None:
        self._state = SyncState.ready
        self._ready.set()

    def _install(self, snapshot: Iterable[ConsentRecordRead]) -> None:
        self._records = {record.id: record for record in snapshot}
        self._optimistic.clear()
        self._drain_buffer()

    def _drain_buffer(self) -> None:
        parked, self._buffer = self._buffer or [], None
        for change in parked:
            self.apply_change(change)

    def _on_change(self, change: ConsentChange) -> None:
        if self._buffer is not None:
            self._buffer.append(change)
        elif self._state is SyncState.ready:
            self.apply_change(change)

    def apply_change(self, change: ConsentChange) -> None:
        """Merge one change event by record id. Applying it twice is a no-op."""
        record_id = change.record.id
        if change.type is ChangeType.delete:
            self._records.pop(record_id, None)
        else:
            self._records[record_id] = change.record
        self._optimistic.discard(record_id)

    async def add_provider(self, provider_id: str) -> ConsentRecordRead:
        """Start a pending consent with a new provider, all grants off."""
        await self._wait_ready()
        if self.by_provider(provider_id) is not None:
            raise ConflictError("Provider already added", provider_id=provider_id)
        record = self._local_record(provider_id, {"approved": False})
        return await self._save(
            record,
            lambda: self._gateway.create(
                self._principal, provider_id=provider_id, flags={"approved": False},
                record_id=record.id,
            ),
        )

    async def request_access(
        self, provider_id: str, grants: Mapping[str, bool]
    ) -> ConsentRecordRead:
        """Record an access request with the chosen grants, approved at creation."""
        await self._wait_ready()
        if self.by_provider(provider_id) is not None:
            raise ConflictError("Provider already has a consent record", provider_id=provider_id)
        flags = {**_grants(grants), "approved": True}
        record = self._local_record(provider_id, flags)
        return await self._save(
            record,
            lambda: self._gateway.create(
                self._principal, provider_id=provider_id, flags=flags, record_id=record.id
            ),
        )

    async def update_permissions(
        self, provider_id: str, grants: Mapping[str, bool]
    ) -> ConsentRecordRead:
        """Set the grants for a provider; editing grants also approves the record."""
        await self._wait_ready()
        flags = {**_grants(grants), "approved": True}
        existing = self.by_provider(provider_id)
        if existing is not None:
            record = _touched(existing, flags)
        else:
            record = self._local_record(provider_id, flags)
        return await self._save(
            record,
            lambda: self._gateway.upsert(
                self._principal, provider_id=provider_id, flags=flags, record_id=record.id
            ),
        )

    async def approve(self, consent_id: uuid.UUID) -> ConsentRecordRead:
        return await self._set_approval(consent_id, True)

    async def revoke(self, consent_id: uuid.UUID) -> ConsentRecordRead:
        return await self._set_approval(consent_id, False)

    async def deny(self, consent_id: uuid.UUID) -> bool:
        """Deny a pending request. The store deletes the record."""
        await self._wait_ready()
        return await self._discard(
            [consent_id], lambda: self._gateway.deny(self._principal, consent_id)
        )

    async def delete(self, consent_id: uuid.UUID) -> bool:
        await self._wait_ready()
        return await self._discard(
            [consent_id], lambda: self._gateway.delete(self._principal, consent_id)
        )

    async def remove_provider(self, provider_id: str) -> bool:
        await self._wait_ready()
        ids = [r.id for r in self._records.values() if r.provider_id == provider_id]
        return await self._discard(
            ids, lambda: self._gateway.delete_by_provider(self._principal, provider_id)
        )

    async def _set_approval(self, consent_id: uuid.UUID, approved: bool) -> ConsentRecordRead:
        await self._wait_ready()
        existing = self._records.get(consent_id)
        if existing is None and self.is_local_only:
            raise NotFoundError("Consent record not found", record_id=consent_id)
        if existing is not None:
            self._records[consent_id] = _touched(existing, {"approved": approved})
            self._optimistic.add(consent_id)
            if self.is_local_only:
                return self._records[consent_id]
        generation = self._generation
        saved = await self._call(
            generation,
            lambda: self._gateway.update_approval(self._principal, consent_id, approved),
        )
        self._bind(saved, generation)
        return saved

    async def _save(
        self,
        record: ConsentRecordRead,
        call: Callable[[], Awaitable[ConsentRecordRead]],
    ) -> ConsentRecordRead:
        self._records[record.id] = record
        self._optimistic.add(record.id)
        if self.is_local_only:
            return record
        generation = self._generation
        saved = await self._call(generation, call)
        if saved.id != record.id and generation == self._generation:
            # The store kept an existing row for this provider under its own id.
            self._records.pop(record.id, None)
            self._optimistic.discard(record.id)
            self._optimistic.add(saved.id)
        self._bind(saved, generation)
        return saved

    async def _discard(
        self, ids: list[uuid.UUID], call: Callable[[], Awaitable[bool]]
    ) -> bool:
        found = False
        for consent_id in ids:
            found = self._records.pop(consent_id, None) is not None or found
            self._optimistic.discard(consent_id)
        if self.is_local_only:
            return found
        return await self._call(self._generation, call)

    async def _call(self, generation: int, call: Callable[[], Awaitable[T]]) -> T:
        """Run a store call; on failure refetch to undo the optimistic change, then re-raise."""
        try:
            return await call()
        except ConsentStoreError as exc:
            logger.warning("Consent mutation failed (%s): %s", exc.kind.value, exc.message)
            if generation == self._generation:
                try:
                    await self.refresh()
                except ConsentStoreError as refetch_exc:
                    logger.warning("Refetch after failed mutation also failed: %s", refetch_exc)
            raise

    def _bind(self, saved: ConsentRecordRead, generation: int) -> None:
        """Adopt the stored version unless the session ended or a newer event already landed."""
        if generation != self._generation or self._state is not SyncState.ready:
            return
        current = self._records.get(saved.id)
        if current is None and saved.id not in self._optimistic:
            # Deleted by a change event while the call was in flight.
            return
        if current is None or saved.id in self._optimistic or current.updated_at <= saved.updated_at:
            self._records[saved.id] = saved
            self._optimistic.discard(saved.id)

    async def _wait_ready(self) -> None:
        if self._principal is None and self._state is SyncState.uninitialized:
            await self.start()
        if self._state is SyncState.ready:
            return
        if self._state is SyncState.uninitialized:
            raise RuntimeError("Consent mirror is not started")
        ready = self._ready
        await ready.wait()
        if self._state is not SyncState.ready:
            raise RuntimeError("Consent mirror was stopped")

    def _local_record(self, provider_id: str, flags: Mapping[str, bool]) -> ConsentRecordRead:
        now = datetime.now(timezone.utc)
        owner_id = self._principal.user_id if self._principal is not None else LOCAL_OWNER_ID
        values = {name: False for name in GRANT_FIELDS}
        values.update(flags)
        return ConsentRecordRead(
            id=uuid.uuid4(),
            user_id=owner_id,
            provider_id=provider_id,
            lab_results=values["lab_results"],
            medications=values["medications"],
            fitness_data=values["fitness_data"],
            approved=values.get("approved", False),
            created_at=now,
            updated_at=now,
        )


def _grants(grants: Mapping[str, bool]) -> dict[str, bool]:
    unknown = set(grants) - set(GRANT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown grant(s): {sorted(unknown)}")
    return {name: bool(value) for name, value in grants.items()}


def _touched(record: ConsentRecordRead, changes: Mapping[str, bool]) -> ConsentRecordRead:
    now = max(datetime.now(timezone.utc), record.updated_at)
    return record.model_copy(update={**changes, "updated_at": now})

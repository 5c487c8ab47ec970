"""Consent store: per-owner CRUD over user_provider_consent.

Every operation takes the acting Principal and runs the access policy before
touching a row. Every write is audited and queues a change event; queued
events are published to the change notifier only once the surrounding
transaction commits, so a rolled-back write is never announced.

With CHANGE_FEED_BACKEND=postgres the event is instead sent with pg_notify
inside the transaction, which Postgres also delivers only on commit, to every
process listening on the channel (including this one).
"""

import logging
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone

from sqlalchemy import DateTime, case, event, func, literal, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session as OrmSession

from consenthub.config import settings
from consenthub.core.errors import ConflictError, NotFoundError, translate_db_errors
from consenthub.core.policy import Operation, Principal, enforce
from consenthub.models.base import generate_uuid, utcnow
from consenthub.models.consent import GRANT_FIELDS, ProviderConsent
from consenthub.schemas.consent import ChangeType, ConsentChange, ConsentRecordRead
from consenthub.services import audit_service
from consenthub.services.notifier import get_notifier

logger = logging.getLogger("consenthub.store")

MUTABLE_FIELDS = GRANT_FIELDS + ("approved",)

_PENDING_CHANGES = "consenthub.pending_changes"


@event.listens_for(OrmSession, "after_commit")
def _publish_pending(session: OrmSession) -> None:
    changes = session.info.pop(_PENDING_CHANGES, None)
    if not changes:
        return
    notifier = get_notifier()
    for change in changes:
        notifier.publish(change)


@event.listens_for(OrmSession, "after_rollback")
def _discard_pending(session: OrmSession) -> None:
    dropped = session.info.pop(_PENDING_CHANGES, None)
    if dropped:
        logger.debug("Discarded %d unpublished change(s) on rollback", len(dropped))


async def announce_change(db: AsyncSession, change_type: ChangeType, record: ConsentRecordRead) -> None:
    change = ConsentChange(type=change_type, record=record)
    if settings.uses_postgres_feed:
        await db.execute(
            select(func.pg_notify(settings.change_feed_channel, change.model_dump_json()))
        )
        return
    db.info.setdefault(_PENDING_CHANGES, []).append(change)


def _snapshot(record: ProviderConsent) -> ConsentRecordRead:
    return ConsentRecordRead.model_validate(record)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _monotonic_updated_at(now: datetime):
    """SQL for updated_at at time `now` that never goes below the stored value.

    Evaluated by the database against the row being written, so a writer
    whose clock reading is older than a concurrent commit cannot move it back.
    """
    stamp = literal(now, DateTime(timezone=True))
    return case((ProviderConsent.updated_at > stamp, ProviderConsent.updated_at), else_=stamp)


def _supplied_fields(flags: Mapping[str, bool | None] | None) -> dict[str, bool]:
    if not flags:
        return {}
    unknown = set(flags) - set(MUTABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown consent field(s): {sorted(unknown)}")
    return {name: bool(value) for name, value in flags.items() if value is not None}


def _resolve_owner(principal: Principal | None, owner_id: uuid.UUID | None) -> uuid.UUID | None:
    if owner_id is not None:
        return owner_id
    return principal.user_id if principal is not None else None


def _dialect_insert(db: AsyncSession):
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


async def _find_by_pair(
    db: AsyncSession, owner_id: uuid.UUID, provider_id: str
) -> ProviderConsent | None:
    result = await db.execute(
        select(ProviderConsent).where(
            ProviderConsent.user_id == owner_id,
            ProviderConsent.provider_id == provider_id,
        )
    )
    return result.scalar_one_or_none()


async def _load(
    db: AsyncSession,
    principal: Principal | None,
    consent_id: uuid.UUID,
    operation: Operation,
) -> ProviderConsent:
    """Fetch by id; NotFoundError if absent, ForbiddenError if someone else's."""
    async with translate_db_errors("load consent"):
        record = await db.get(ProviderConsent, consent_id)
    if record is None:
        raise NotFoundError("Consent record not found", record_id=consent_id)
    enforce(principal, operation, record.user_id, record_id=consent_id)
    return record


async def _audit(
    db: AsyncSession,
    record: ProviderConsent | ConsentRecordRead,
    event_type: str,
    action: str,
    ip_address: str | None,
    **detail,
) -> None:
    await audit_service.record(
        db,
        user_id=record.user_id,
        event_type=event_type,
        entity_id=record.id,
        action=action,
        detail={"provider_id": record.provider_id, **detail},
        ip_address=ip_address,
    )


async def list_by_owner(
    db: AsyncSession,
    principal: Principal | None,
    owner_id: uuid.UUID | None = None,
) -> list[ProviderConsent]:
    """Return every record owned by owner_id (default: the principal), oldest first."""
    owner_id = _resolve_owner(principal, owner_id)
    enforce(principal, Operation.read, owner_id)
    stmt = (
        select(ProviderConsent)
        .where(ProviderConsent.user_id == owner_id)
        .order_by(ProviderConsent.created_at.asc(), ProviderConsent.provider_id.asc())
    )
    async with translate_db_errors("list consents"):
        result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_consent(
    db: AsyncSession, principal: Principal | None, consent_id: uuid.UUID
) -> ProviderConsent:
    return await _load(db, principal, consent_id, Operation.read)


async def get_by_provider(
    db: AsyncSession, principal: Principal | None, provider_id: str
) -> ProviderConsent:
    owner_id = _resolve_owner(principal, None)
    enforce(principal, Operation.read, owner_id)
    async with translate_db_errors("load consent"):
        record = await _find_by_pair(db, owner_id, provider_id)
    if record is None:
        raise NotFoundError("No consent record for this provider", provider_id=provider_id)
    return record


async def create_consent(
    db: AsyncSession,
    principal: Principal | None,
    *,
    provider_id: str,
    owner_id: uuid.UUID | None = None,
    flags: Mapping[str, bool | None] | None = None,
    record_id: uuid.UUID | None = None,
    ip_address: str | None = None,
) -> ProviderConsent:
    """Create the record for (owner, provider).

    Grants and approval default to False. Raises ConflictError if the pair
    already has a record.
    """
    owner_id = _resolve_owner(principal, owner_id)
    enforce(principal, Operation.insert, owner_id)
    fields = _supplied_fields(flags)

    async with translate_db_errors("create consent"):
        existing = await _find_by_pair(db, owner_id, provider_id)
    if existing is not None:
        raise ConflictError(
            "A consent record already exists for this provider",
            provider_id=provider_id,
            record_id=existing.id,
        )

    now = utcnow()
    record = ProviderConsent(
        id=record_id or generate_uuid(),
        user_id=owner_id,
        provider_id=provider_id,
        lab_results=fields.get("lab_results", False),
        medications=fields.get("medications", False),
        fitness_data=fields.get("fitness_data", False),
        approved=fields.get("approved", False),
        created_at=now,
        updated_at=now,
    )
    db.add(record)
    async with translate_db_errors("create consent"):
        await db.flush()

    snapshot = _snapshot(record)
    await _audit(db, snapshot, "consent.created", "create", ip_address, approved=record.approved)
    await announce_change(db, ChangeType.insert, snapshot)
    logger.info("Consent created id=%s provider=%s approved=%s", record.id, provider_id, record.approved)
    return record


async def upsert_consent(
    db: AsyncSession,
    principal: Principal | None,
    *,
    provider_id: str,
    owner_id: uuid.UUID | None = None,
    flags: Mapping[str, bool | None] | None = None,
    record_id: uuid.UUID | None = None,
    ip_address: str | None = None,
) -> ProviderConsent:
    """Create the (owner, provider) record if absent, else merge the supplied fields.

    A single INSERT .. ON CONFLICT DO UPDATE, so two racing upserts for the
    same pair both succeed and the later statement's fields win. Whether the
    row was inserted or updated is read back from the RETURNING row.
    """
    owner_id = _resolve_owner(principal, owner_id)
    enforce(principal, Operation.insert, owner_id)
    fields = _supplied_fields(flags)

    now = utcnow()
    candidate_id = record_id or generate_uuid()
    insert_values = {
        "id": candidate_id,
        "user_id": owner_id,
        "provider_id": provider_id,
        **{name: False for name in MUTABLE_FIELDS},
        **fields,
        "created_at": now,
        "updated_at": now,
    }
    insert = _dialect_insert(db)
    stmt = insert(ProviderConsent).values(**insert_values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "provider_id"],
        set_={**fields, "updated_at": _monotonic_updated_at(now)},
    ).returning(ProviderConsent)

    async with translate_db_errors("upsert consent"):
        result = await db.scalars(stmt, execution_options={"populate_existing": True})
        record = result.one()

    # Our own values came back only if the insert branch ran.
    inserted = record.id == candidate_id and _as_utc(record.created_at) == now
    change_type = ChangeType.insert if inserted else ChangeType.update
    snapshot = _snapshot(record)
    await _audit(
        db,
        snapshot,
        "consent.created" if inserted else "consent.updated",
        "upsert",
        ip_address,
        fields=fields,
    )
    await announce_change(db, change_type, snapshot)
    logger.info("Consent upserted id=%s provider=%s fields=%s", record.id, provider_id, fields)
    return record


async def update_approval(
    db: AsyncSession,
    principal: Principal | None,
    consent_id: uuid.UUID,
    approved: bool,
    *,
    ip_address: str | None = None,
) -> ProviderConsent:
    """Set approved on a record. Grants are left untouched."""
    await _load(db, principal, consent_id, Operation.update)
    stmt = (
        update(ProviderConsent)
        .where(ProviderConsent.id == consent_id)
        .values(approved=approved, updated_at=_monotonic_updated_at(utcnow()))
        .returning(ProviderConsent)
    )
    async with translate_db_errors("update approval"):
        result = await db.scalars(
            stmt,
            execution_options={"synchronize_session": False, "populate_existing": True},
        )
        record = result.one_or_none()
    if record is None:
        raise NotFoundError("Consent record not found", record_id=consent_id)

    snapshot = _snapshot(record)
    if approved:
        await _audit(db, snapshot, "consent.approved", "approve", ip_address)
    else:
        await _audit(db, snapshot, "consent.revoked", "revoke", ip_address)
    await announce_change(db, ChangeType.update, snapshot)
    logger.info("Consent approval id=%s approved=%s", consent_id, approved)
    return record


async def _remove(
    db: AsyncSession,
    record: ProviderConsent,
    event_type: str,
    action: str,
    ip_address: str | None,
) -> None:
    snapshot = _snapshot(record)
    await db.delete(record)
    async with translate_db_errors("delete consent"):
        await db.flush()
    await _audit(db, snapshot, event_type, action, ip_address, was_approved=snapshot.approved)
    await announce_change(db, ChangeType.delete, snapshot)
    logger.info("Consent %s id=%s provider=%s", action, snapshot.id, snapshot.provider_id)


async def delete_consent(
    db: AsyncSession,
    principal: Principal | None,
    consent_id: uuid.UUID,
    *,
    ip_address: str | None = None,
) -> bool:
    """Delete a record by id. Idempotent: returns False if it does not exist."""
    try:
        record = await _load(db, principal, consent_id, Operation.delete)
    except NotFoundError:
        return False
    await _remove(db, record, "consent.deleted", "delete", ip_address)
    return True


async def deny_request(
    db: AsyncSession,
    principal: Principal | None,
    consent_id: uuid.UUID,
    *,
    ip_address: str | None = None,
) -> bool:
    """Deny an access request by deleting its record.

    The row goes away but a consent.denied audit event keeps the decision on
    record. Idempotent like delete_consent.
    """
    try:
        record = await _load(db, principal, consent_id, Operation.delete)
    except NotFoundError:
        return False
    await _remove(db, record, "consent.denied", "deny", ip_address)
    return True


async def delete_by_provider(
    db: AsyncSession,
    principal: Principal | None,
    provider_id: str,
    *,
    ip_address: str | None = None,
) -> bool:
    """Remove the principal's record for a provider. Idempotent."""
    owner_id = _resolve_owner(principal, None)
    enforce(principal, Operation.delete, owner_id)
    async with translate_db_errors("delete consent"):
        record = await _find_by_pair(db, owner_id, provider_id)
    if record is None:
        return False
    await _remove(db, record, "consent.deleted", "delete", ip_address)
    return True

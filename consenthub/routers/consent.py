"""Consent routes: provider consent CRUD, audit trail, change stream."""

import asyncio
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from consenthub.core.auth import SESSION_TOKEN_HEADER, authenticate_token, get_current_principal, principal_for
from consenthub.core.middleware import client_ip
from consenthub.core.policy import Principal
from consenthub.dependencies import get_db, get_session_factory
from consenthub.schemas.audit import ConsentAuditEntry
from consenthub.schemas.consent import ApprovalUpdate, ConsentCreate, ConsentRecordRead, ConsentUpsert
from consenthub.services import audit_service, consent_store
from consenthub.services.notifier import ChangeNotifier, get_notifier

logger = logging.getLogger("consenthub.stream")

router = APIRouter(prefix="/consents", tags=["consents"])

# Close code for a stream opened without a valid session (4000-4999: app-defined).
WS_UNAUTHORIZED = 4401
RESYNC_MESSAGE = '{"type": "resync"}'
# Frames buffered per stream before a slow client is told to resync.
OUTBOX_LIMIT = 256


@router.get("", response_model=list[ConsentRecordRead])
async def list_consents(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await consent_store.list_by_owner(db, principal)


@router.post("", response_model=ConsentRecordRead, status_code=201)
async def create_consent(
    body: ConsentCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await consent_store.create_consent(
        db,
        principal,
        provider_id=body.provider_id,
        owner_id=body.owner_id,
        flags=body.supplied(),
        ip_address=client_ip(request),
    )


@router.get("/audit", response_model=list[ConsentAuditEntry])
async def consent_audit_trail(
    provider_id: str | None = Query(None, max_length=255),
    event_type: list[str] | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    """The caller's consent decisions, newest first."""
    return await audit_service.consent_trail(
        db,
        principal.user_id,
        provider_id=provider_id,
        event_types=event_type,
        limit=limit,
        offset=offset,
    )


@router.get("/providers/{provider_id}", response_model=ConsentRecordRead)
async def get_provider_consent(
    provider_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await consent_store.get_by_provider(db, principal, provider_id)


@router.put("/providers/{provider_id}", response_model=ConsentRecordRead)
async def upsert_provider_consent(
    provider_id: str,
    body: ConsentUpsert,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await consent_store.upsert_consent(
        db,
        principal,
        provider_id=provider_id,
        flags=body.supplied(),
        ip_address=client_ip(request),
    )


@router.delete("/providers/{provider_id}", status_code=204)
async def remove_provider(
    provider_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    await consent_store.delete_by_provider(db, principal, provider_id, ip_address=client_ip(request))
    return Response(status_code=204)


@router.get("/{consent_id}", response_model=ConsentRecordRead)
async def get_consent(
    consent_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await consent_store.get_consent(db, principal, consent_id)


@router.get("/{consent_id}/history", response_model=list[ConsentAuditEntry])
async def consent_history(
    consent_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    events = await audit_service.record_history(db, principal.user_id, consent_id)
    if not events:
        raise HTTPException(status_code=404, detail="No history for this consent record")
    return events


@router.patch("/{consent_id}/approval", response_model=ConsentRecordRead)
async def set_approval(
    consent_id: uuid.UUID,
    body: ApprovalUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await consent_store.update_approval(
        db, principal, consent_id, body.approved, ip_address=client_ip(request)
    )


@router.post("/{consent_id}/approve", response_model=ConsentRecordRead)
async def approve_request(
    consent_id: uuid.UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await consent_store.update_approval(
        db, principal, consent_id, True, ip_address=client_ip(request)
    )


@router.post("/{consent_id}/deny", status_code=204)
async def deny_request(
    consent_id: uuid.UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    await consent_store.deny_request(db, principal, consent_id, ip_address=client_ip(request))
    return Response(status_code=204)


@router.delete("/{consent_id}", status_code=204)
async def delete_consent(
    consent_id: uuid.UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    await consent_store.delete_consent(db, principal, consent_id, ip_address=client_ip(request))
    return Response(status_code=204)


def offer_frame(outbox: asyncio.Queue, message: str) -> None:
    """Queue a frame for the client; when the client lags too far, replace the backlog with resync."""
    try:
        outbox.put_nowait(message)
    except asyncio.QueueFull:
        dropped = outbox.qsize()
        while not outbox.empty():
            outbox.get_nowait()
        outbox.put_nowait(RESYNC_MESSAGE)
        logger.warning("Change stream outbox full, replaced %d frame(s) with resync", dropped)


async def _pump(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        message = await outbox.get()
        await websocket.send_text(message)


async def _drain_client(websocket: WebSocket) -> None:
    # Clients may send pings; a disconnect surfaces here.
    while True:
        await websocket.receive_text()


@router.websocket("/stream")
async def stream_changes(
    websocket: WebSocket,
    token: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    notifier: ChangeNotifier = Depends(get_notifier),
) -> None:
    """Stream the principal's consent changes.

    Messages:
        {"type": "snapshot", "records": [...]}   once, right after connecting
        {"type": "insert"|"update"|"delete", "record": {...}}
        {"type": "resync"}   events may have been missed; refetch

    Clients merge events by record id; the same event may arrive twice.
    """
    token = token or websocket.headers.get(SESSION_TOKEN_HEADER)
    async with session_factory() as db:
        try:
            user = await authenticate_token(db, token)
        except HTTPException as exc:
            logger.info("Change stream rejected: %s", exc.detail)
            await websocket.close(code=WS_UNAUTHORIZED, reason=str(exc.detail))
            return
    principal = principal_for(user)

    await websocket.accept()
    outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=OUTBOX_LIMIT)
    # Subscribe before the snapshot query so no commit falls between them.
    subscription = notifier.subscribe(
        principal.user_id,
        lambda change: offer_frame(outbox, change.model_dump_json()),
        on_gap=lambda: offer_frame(outbox, RESYNC_MESSAGE),
    )
    tasks: set[asyncio.Task] = set()
    try:
        async with session_factory() as db:
            records = await consent_store.list_by_owner(db, principal)
            snapshot = [ConsentRecordRead.model_validate(r).model_dump(mode="json") for r in records]
        await websocket.send_json({"type": "snapshot", "records": snapshot})

        tasks = {
            asyncio.create_task(_pump(websocket, outbox)),
            asyncio.create_task(_drain_client(websocket)),
        }
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning(
                    "Change stream failed owner=%s", principal.user_id, exc_info=exc
                )
    except WebSocketDisconnect:
        logger.debug("Change stream dropped before snapshot owner=%s", principal.user_id)
    finally:
        subscription.close()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Change stream closed owner=%s", principal.user_id)

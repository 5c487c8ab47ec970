"""User routes: the account itself, its sign-in history, and account removal."""

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from consenthub.core.auth import get_current_principal, get_current_user
from consenthub.core.middleware import client_ip
from consenthub.core.policy import Principal
from consenthub.dependencies import get_db
from consenthub.models.user import User
from consenthub.schemas.audit import AuditEntryRead
from consenthub.schemas.user import AccountRead
from consenthub.services import audit_service, delete_service

router = APIRouter(prefix="/user", tags=["user"])


@router.get("/me", response_model=AccountRead)
async def me(current_user: User = Depends(get_current_user)):
    return current_user


@router.get("/sign-ins", response_model=list[AuditEntryRead])
async def sign_ins(
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    return await audit_service.sign_in_history(db, principal.user_id, limit=limit)


@router.delete("/delete", status_code=204)
async def delete_account(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    await delete_service.delete_user_data(db, principal.user_id, ip_address=client_ip(request))
    return Response(status_code=204)

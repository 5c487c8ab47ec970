"""Auth routes: register, login, logout."""

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from consenthub.core.auth import (
    SESSION_TOKEN_HEADER,
    get_current_principal,
    login_user,
    logout_user,
    register_user,
)
from consenthub.core.middleware import client_ip
from consenthub.core.policy import Principal
from consenthub.dependencies import get_db
from consenthub.schemas.user import AccountRead, Credentials, SessionRead

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=AccountRead, status_code=201)
async def register(
    body: Credentials,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    return await register_user(
        db, email=body.email, password=body.password, ip_address=client_ip(request)
    )


@router.post("/login", response_model=SessionRead)
async def login(
    body: Credentials,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    return await login_user(
        db, email=body.email, password=body.password, ip_address=client_ip(request)
    )


@router.post("/logout", status_code=204)
async def logout(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    await logout_user(
        db, token=request.headers.get(SESSION_TOKEN_HEADER), ip_address=client_ip(request)
    )
    return Response(status_code=204)

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request

from multisession.api.schemas import (
    ClaimsResponse,
    DeviceLimitRequest,
    Envelope,
    LoginRequest,
    SessionCountResponse,
    TokenResponse,
)
from multisession.api.verifier import Claims, Verifier, get_verified_token, is_admin
from multisession.service.runtime import get_runtime

router = APIRouter(prefix="/v1")

verify = Verifier()


def _http_error(code: str, message: str, status_code: int) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"status": "error", "error": {"code": code, "message": message}},
    )


async def get_admin_claims(request: Request, claims: Claims = Depends(verify)) -> Claims:
    if not is_admin(request):
        raise _http_error("forbidden", "admin access required", status_code=403)
    return claims


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    # Credentials are checked upstream; this route only issues the session
    auth = get_runtime().auth
    token, expires = await asyncio.to_thread(auth.generate_token, body.to_claims())
    return Envelope(status="ok", data=TokenResponse(token=token, expires=expires))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(claims: Claims = Depends(verify)):
    return Envelope(status="ok", data=ClaimsResponse.from_claims(claims))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, claims: Claims = Depends(verify)):
    auth = get_runtime().auth
    await asyncio.to_thread(auth.refresh_expiry, get_verified_token(request))
    return Envelope(status="ok", data={"refreshed": True})


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, claims: Claims = Depends(verify)):
    auth = get_runtime().auth
    await asyncio.to_thread(auth.revoke_token, get_verified_token(request))
    return Envelope(status="ok", data={"revoked": True})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def session_count(claims: Claims = Depends(verify)):
    auth = get_runtime().auth
    count = await asyncio.to_thread(auth.count_active_sessions, claims.authority_type, claims.id)
    limit = await asyncio.to_thread(auth.get_device_limit)
    return Envelope(
        status="ok",
        data=SessionCountResponse(count=count, limit=limit, over_limit=count >= limit),
    )


@router.post("/auth/sessions/clean", response_model=Envelope, tags=["auth"])
async def clean_sessions(claims: Claims = Depends(verify)):
    auth = get_runtime().auth
    await asyncio.to_thread(auth.clean_user_sessions, claims.authority_type, claims.id)
    return Envelope(status="ok", data={"cleaned": True})


@router.put("/admin/device-limit", response_model=Envelope, tags=["admin"])
async def set_device_limit(body: DeviceLimitRequest, claims: Claims = Depends(get_admin_claims)):
    auth = get_runtime().auth
    await asyncio.to_thread(auth.set_device_limit, body.limit)
    return Envelope(status="ok", data={"limit": body.limit})

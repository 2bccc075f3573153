from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Path, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from parcelhub.api.schemas import (
    EnableTwoFactorRequest,
    Envelope,
    PasswordForgotRequest,
    PasswordResetRequest,
    SigninRequest,
    SignupRequest,
    VerifyEmailRequest,
)
from parcelhub.logging import get_logger
from parcelhub.service.auth import AuthResult, require_role
from parcelhub.service.cookies import CookieKind, apply_cookies
from parcelhub.service.device import RequestContext
from parcelhub.service.engine import Principal
from parcelhub.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _respond(result: AuthResult) -> Response:
    """Render an AuthResult as an ok envelope or a redirect, cookies attached."""
    response: Response
    if result.redirect:
        response = RedirectResponse(result.redirect, status_code=result.status_code or 302)
    else:
        envelope = Envelope(status="ok", message=result.message, data=result.data)
        response = JSONResponse(status_code=result.status_code, content=envelope.model_dump())
    apply_cookies(response, result.cookies)
    return response


def get_request_context(request: Request) -> RequestContext:
    ip = request.client.host if request.client else None
    return RequestContext.from_request_data(ip, request.headers.get("user-agent"))


async def get_principal(request: Request) -> Principal:
    runtime = get_runtime()
    access_token = runtime.cookies.read(CookieKind.ACCESS, request.cookies)
    return await runtime.manager.authenticate(access_token)


def restrict_to(*roles: str) -> Callable:
    """Dependency factory: resolve the principal, then require one of ``roles``."""

    async def _gate(principal: Principal = Depends(get_principal)) -> Principal:
        require_role(principal, roles)
        return principal

    return _gate


# signup / signin


@router.post("/signup", response_model=Envelope, tags=["auth"])
async def signup(body: SignupRequest, ctx: RequestContext = Depends(get_request_context)):
    """Start registration: seal the pending account into a ticket and email a 6-digit code."""
    runtime = get_runtime()
    return _respond(await runtime.auth.signup(body.model_dump(), ctx))


@router.post("/verify-email", response_model=Envelope, status_code=201, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    return _respond(await runtime.auth.verify_email(body.token, body.otp))


@router.post("/signin", response_model=Envelope, tags=["auth"])
async def signin(body: SigninRequest, ctx: RequestContext = Depends(get_request_context)):
    """Authenticate with email and password.

    Accounts with two-factor enabled receive only the pending-2FA cookie and
    ``enable2fa: true``; the session is established by ``/verify-2fa``.
    """
    runtime = get_runtime()
    result = await runtime.auth.signin(body.email, body.password, body.remember, ctx)
    return _respond(result)


@router.get("/oauth/{provider}", tags=["oauth"])
async def oauth_start(provider: str = Path(..., min_length=1, max_length=32)):
    runtime = get_runtime()
    return _respond(await runtime.auth.oauth_start(provider))


@router.get("/oauth/{provider}/callback", tags=["oauth"])
async def oauth_callback(
    provider: str = Path(..., min_length=1, max_length=32),
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    ctx: RequestContext = Depends(get_request_context),
):
    runtime = get_runtime()
    if error:
        logger.info("oauth_provider_denied", provider=provider, error=error)
        code = None
    return _respond(await runtime.auth.oauth_callback(provider, code, state, ctx))


# two-factor


@router.post("/verify-2fa/{token}", response_model=Envelope, tags=["2fa"])
async def verify_two_factor(
    request: Request,
    token: str = Path(..., min_length=1, max_length=16),
    ctx: RequestContext = Depends(get_request_context),
):
    runtime = get_runtime()
    return _respond(await runtime.auth.verify_two_factor(token, request.cookies, ctx))


@router.get("/setup-2fa", response_model=Envelope, tags=["2fa"])
async def setup_two_factor(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    return _respond(await runtime.auth.setup_two_factor(principal))


@router.put("/enable-2fa", response_model=Envelope, tags=["2fa"])
async def enable_two_factor(
    body: EnableTwoFactorRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    return _respond(await runtime.auth.enable_two_factor(principal, body.token, body.secret))


# sessions


@router.post("/refresh-token", response_model=Envelope, tags=["sessions"])
async def refresh_token(request: Request, ctx: RequestContext = Depends(get_request_context)):
    """Rotate the token triple; the refresh cookie must match this OS and browser."""
    runtime = get_runtime()
    token = runtime.cookies.read(CookieKind.REFRESH, request.cookies)
    return _respond(await runtime.auth.refresh(token, ctx))


@router.post("/signout", response_model=Envelope, tags=["sessions"])
async def signout(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    return _respond(await runtime.auth.signout(principal))


# declared before /sessions/{token}/revoke so "revoke-all" is never read as a token
@router.post("/sessions/revoke-all", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    return _respond(await runtime.auth.revoke_other_sessions(principal))


@router.post("/sessions/{token}/revoke", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    token: str = Path(..., min_length=1, max_length=128),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    return _respond(await runtime.auth.revoke_session(principal, token))


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    return _respond(await runtime.auth.list_sessions(principal))


# profile


@router.get("/me", response_model=Envelope, tags=["profile"])
async def me(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    return _respond(await runtime.auth.me(principal))


@router.get("/me/fields", response_model=Envelope, tags=["profile"])
async def me_fields(
    fields: Optional[str] = Query(None, max_length=512),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    return _respond(await runtime.auth.me_fields(principal, fields))


# password reset


@router.post("/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordForgotRequest):
    runtime = get_runtime()
    return _respond(await runtime.auth.forgot_password(body.email))


@router.post("/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetRequest):
    runtime = get_runtime()
    return _respond(await runtime.auth.reset_password(body.token, body.password))


# admin


@router.get("/admin/ping", response_model=Envelope, tags=["admin"])
async def admin_ping(principal: Principal = Depends(restrict_to("admin"))):
    return Envelope(status="ok", message="pong", data={"user_id": principal.user_id})

from __future__ import annotations

from typing import Iterable, Optional

from fastapi import APIRouter, Depends, Request, Response

from hackguard.api.schemas import (
    CSRFResponse,
    Envelope,
    LoginRequest,
    LogoutAllResponse,
    SessionResponse,
    UserResponse,
)
from hackguard.logging import get_logger, log_security_event
from hackguard.service.cookies import CookieInstruction
from hackguard.service.errors import AuthenticationError, ForbiddenError
from hackguard.service.runtime import get_runtime
from hackguard.service.sessions import Session, SessionValidation

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

CSRF_HEADER = "X-CSRF-Token"


def apply_cookies(response: Response, cookies: Iterable[CookieInstruction]) -> None:
    for cookie in cookies:
        if cookie.clears:
            response.delete_cookie(
                cookie.name,
                path=cookie.path,
                domain=cookie.domain,
                secure=cookie.secure,
                httponly=cookie.httponly,
                samesite=cookie.samesite,
            )
            continue
        response.set_cookie(
            cookie.name,
            cookie.value,
            httponly=cookie.httponly,
            secure=cookie.secure,
            samesite=cookie.samesite,
            expires=cookie.expires,
            path=cookie.path,
            domain=cookie.domain,
        )


def _client_ip(request: Request) -> Optional[str]:
    if get_runtime().settings.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # Left-most entry is the original client
            return forwarded.split(",")[0].strip()
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
    return request.client.host if request.client else None


async def _validate_request(
    request: Request, *, verify_csrf: bool = False
) -> SessionValidation:
    runtime = get_runtime()
    return await runtime.auth.on_request(
        request.cookies.get(runtime.settings.session_cookie_name),
        request.headers.get("user-agent"),
        request.headers.get("accept-language"),
        verify_csrf=verify_csrf,
        csrf_token=request.headers.get(CSRF_HEADER),
        csrf_cookie=request.cookies.get(runtime.settings.csrf_cookie_name),
    )


def _reject_csrf(request: Request, session: Session) -> None:
    log_security_event(
        "suspicious_activity",
        reason="csrf_mismatch",
        user_id=session.user_id,
        path=request.url.path,
        ip_addr=_client_ip(request),
    )
    raise ForbiddenError("missing or invalid CSRF token")


async def get_current_session(request: Request, response: Response) -> Session:
    """Resolve the session cookie into a validated session or fail with 401.

    The rejection reason is never exposed; every failure reads "not
    authenticated" and clears the client cookies.
    """
    result = await _validate_request(request)
    if not result.valid:
        raise AuthenticationError(cookies=result.cookies)
    apply_cookies(response, result.cookies)
    return result.session


async def require_csrf(request: Request, response: Response) -> Session:
    """Validated session plus a matching ``X-CSRF-Token`` header."""
    result = await _validate_request(request, verify_csrf=True)
    if not result.valid:
        raise AuthenticationError(cookies=result.cookies)
    if not result.csrf_valid:
        _reject_csrf(request, result.session)
    apply_cookies(response, result.cookies)
    return result.session


def _session_payload(session: Session) -> dict:
    identity = session.identity
    return SessionResponse(
        user=UserResponse(
            id=identity.user_id,
            email=identity.email,
            name=identity.name,
            role=identity.role,
        ),
        expires_at=session.expires_at,
        absolute_expires_at=session.absolute_expires_at,
    ).model_dump(mode="json")


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password and start a session.

    Raises:
        400: malformed email
        401: unknown email or wrong password
        403: account not active
        429: per-IP rate limit exceeded or account locked out
    """
    runtime = get_runtime()
    session = await runtime.auth.login(
        body.email,
        body.password,
        body.role.value,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        accept_language=request.headers.get("accept-language"),
    )
    apply_cookies(response, session.cookies)
    payload = _session_payload(session)
    payload["csrf_token"] = session.csrf_token
    return Envelope(status="ok", data=payload)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    token = request.cookies.get(runtime.settings.session_cookie_name)
    if token:
        result = await _validate_request(request, verify_csrf=True)
        if result.valid and not result.csrf_valid:
            _reject_csrf(request, result.session)
    apply_cookies(response, await runtime.auth.logout(token))
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, session: Session = Depends(require_csrf)):
    runtime = get_runtime()
    revoked, cookies = await runtime.auth.logout_everywhere(session)
    apply_cookies(response, cookies)
    return Envelope(
        status="ok", data=LogoutAllResponse(revoked=revoked).model_dump()
    )


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(session: Session = Depends(get_current_session)):
    return Envelope(status="ok", data=_session_payload(session))


@router.get("/auth/csrf", response_model=Envelope, tags=["auth"])
async def csrf_token(
    request: Request,
    response: Response,
    session: Session = Depends(get_current_session),
):
    runtime = get_runtime()
    token = session.csrf_token or request.cookies.get(runtime.settings.csrf_cookie_name)
    if not await runtime.csrf.validate(session.session_key, token):
        # Cookie lost client-side or its record expired; deliver a fresh one
        token = await runtime.csrf.issue(session.session_key)
        apply_cookies(
            response, runtime.cookies.issue(session.token, token, session.expires_at)
        )
    return Envelope(status="ok", data=CSRFResponse(csrf_token=token).model_dump())

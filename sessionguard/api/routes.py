from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from sessionguard.api.schemas import (
    AuthResponse,
    BackupCodesResponse,
    DeviceResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PaginationResponse,
    RegisterRequest,
    SecurityEventPageResponse,
    SecurityEventResponse,
    TokenRefreshRequest,
    TokenResponse,
    TwoFactorConfirmRequest,
    TwoFactorSetupResponse,
    UserResponse,
)
from sessionguard.logging import get_correlation_id, get_logger
from sessionguard.service.auth import AuthContext, AuthResult
from sessionguard.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(data: Any) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return envelope


def _client_ip(request: Request) -> str:
    return request.client.host if request.client and request.client.host else "unknown"


def _user_agent(request: Request) -> str:
    return request.headers.get("user-agent") or "unknown"


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_model(result.user),
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        expires_in=result.tokens.expires_in,
    )


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if runtime.settings.enforce_session_binding:
        trusted = await runtime.auth.verify_session_security(
            ctx.user_id, ctx.session_id, _client_ip(request), _user_agent(request)
        )
        if not trusted:
            logger.warning(
                "session_binding_rejected",
                user_id=ctx.user_id,
                session_id=ctx.session_id,
            )
            raise _http_error("unauthorized", "session verification failed", status_code=401)
    return ctx


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account and sign it in on the calling device."""
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email,
        body.username,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return _ok(_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password, plus a TOTP or backup code when 2FA is on.

    Raises:
        401 unauthorized: credentials or second factor rejected
        401 two_factor_required: password accepted, second factor missing
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        body.two_factor_code,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return _ok(_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(
        body.refresh_token,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return _ok(
        TokenResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
        )
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    revoked = await runtime.auth.logout(
        principal.user_id,
        body.refresh_token,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return _ok({"revoked": revoked})


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["auth"])
async def setup_two_factor(request: Request, principal: AuthContext = Depends(get_user)):
    """Start TOTP enrolment; 2FA stays off until a code is confirmed.

    ``backup_codes`` is empty here; the confirm call returns the usable set.
    """
    runtime = get_runtime()
    setup = await runtime.auth.setup_two_factor(
        principal.user_id,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return _ok(
        TwoFactorSetupResponse(
            qr_code_uri=setup.qr_code_uri,
            secret_key=setup.secret_key,
            backup_codes=setup.backup_codes,
        )
    )


@router.post("/auth/2fa/confirm", response_model=Envelope, tags=["auth"])
async def confirm_two_factor(
    body: TwoFactorConfirmRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    backup_codes = await runtime.auth.confirm_two_factor(
        principal.user_id,
        body.code,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return _ok(BackupCodesResponse(backup_codes=backup_codes))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.get_user_profile(principal.user_id)
    return _ok(UserResponse.from_model(user))


@router.get("/user/devices", response_model=Envelope, tags=["devices"])
async def list_devices(principal: AuthContext = Depends(get_user)):
    """List signed-in devices, most recently used first.

    Device names and classes are derived from the user agent for display only.
    """
    runtime = get_runtime()
    devices = await runtime.auth.get_active_devices(
        principal.user_id, current_session_id=principal.session_id
    )
    return _ok(
        [
            DeviceResponse(
                device_id=device.device_id,
                device_name=device.device_name,
                device_class=device.device_class,
                browser=device.browser,
                os=device.os,
                ip_address=device.ip_address,
                location=device.location,
                last_seen=device.last_seen,
                is_current_device=device.is_current_device,
                is_trusted=device.is_trusted,
            )
            for device in devices
        ]
    )


@router.post("/user/devices/{device_id}/revoke", response_model=Envelope, tags=["devices"])
async def revoke_device(
    device_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.revoke_device(principal.user_id, device_id)
    return _ok({"revoked": device_id})


@router.post("/user/logout-all", response_model=Envelope, tags=["devices"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all_devices(principal.user_id)
    return _ok({"revoked": revoked})


@router.get("/user/security-events", response_model=Envelope, tags=["security"])
async def list_security_events(
    page: int = Query(1),
    limit: int = Query(20),
    event_type: Optional[str] = Query(None, max_length=64),
    severity: Optional[str] = Query(None, max_length=16),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    result = await runtime.auth.get_security_events(
        principal.user_id,
        event_type=event_type,
        severity=severity,
        page=page,
        limit=limit,
    )
    return _ok(
        SecurityEventPageResponse(
            events=[
                SecurityEventResponse(
                    id=evt.id,
                    event_type=evt.event_type,
                    description=evt.description,
                    ip_address=evt.ip_address,
                    user_agent=evt.user_agent,
                    location=evt.location,
                    severity=evt.severity,
                    metadata=evt.metadata,
                    created_at=evt.created_at,
                )
                for evt in result.events
            ],
            pagination=PaginationResponse(
                total=result.total,
                page=result.page,
                limit=result.limit,
                total_pages=result.total_pages,
            ),
        )
    )

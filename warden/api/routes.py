from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from warden.api.schemas import (
    BlockIpRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    SessionResponse,
    TokenRefreshRequest,
    TokenRefreshResponse,
)
from warden.logging import get_logger
from warden.service.audit import AuditLogFilter
from warden.service.errors import ForbiddenError, NotFoundError, ValidationError
from warden.service.runtime import get_runtime
from warden.storage.models import AdminPermission, LoginCredentials, Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/admin")

MAX_USER_AGENT_LENGTH = 512
_EXPORT_MEDIA_TYPES = {"json": "application/json", "csv": "text/csv"}


def _client_ip(request: Request) -> str:
    settings = get_runtime().settings
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _user_agent(request: Request) -> str:
    return (request.headers.get("User-Agent") or "unknown")[:MAX_USER_AGENT_LENGTH]


def _session_response(session: Session) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        admin_id=session.admin_id,
        email=session.email,
        roles=list(session.roles),
        permissions=sorted(p.value for p in session.permissions),
        created_at=session.created_at,
        expires_at=session.expires_at,
        ip_address=session.ip_address,
        user_agent=session.user_agent,
    )


async def require_session(authorization: Optional[str] = Header(None)) -> Session:
    resolved = get_runtime().auth.resolve_session(authorization)
    if not isinstance(resolved, Session):
        raise resolved.to_error()
    return resolved


def require_permission(permission: AdminPermission):
    async def _check(session: Session = Depends(require_session)) -> Session:
        if not get_runtime().auth.has_permission(session, permission):
            logger.warning(
                "admin_permission_denied",
                admin_id=session.admin_id,
                permission=permission.value,
            )
            raise ForbiddenError(f"{permission.value} permission required")
        return session

    return _check


# Authentication


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate an administrator with email, password and optional MFA token.

    A password-verified account with MFA enabled and no token yields
    ``requires_mfa`` with no tokens; every other failure is an error envelope.
    """
    auth = get_runtime().auth
    result = await auth.login(
        LoginCredentials(email=body.email, password=body.password, mfa_token=body.mfa_token),
        _client_ip(request),
        _user_agent(request),
    )
    if result.error is not None:
        raise result.error.to_error()
    if result.requires_mfa:
        return Envelope(status="ok", data=LoginResponse(success=False, requires_mfa=True))
    return Envelope(
        status="ok",
        data=LoginResponse(
            success=True,
            token=result.token,
            refresh_token=result.refresh_token,
            session_id=result.session_id,
            expires_at=result.expires_at,
            admin=result.admin,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, session: Session = Depends(require_session)):
    removed = await get_runtime().auth.logout(
        session.session_id, _client_ip(request), _user_agent(request)
    )
    return Envelope(status="ok", data={"logged_out": removed})


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request):
    result = await get_runtime().auth.refresh_token(
        body.refresh_token, _client_ip(request), _user_agent(request)
    )
    if result.error is not None:
        raise result.error.to_error()
    return Envelope(
        status="ok",
        data=TokenRefreshResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            session_id=result.session_id,
            expires_at=result.expires_at,
        ),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(session: Session = Depends(require_session)):
    return Envelope(status="ok", data=_session_response(session))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(
    admin_id: Optional[str] = Query(None, max_length=128),
    session: Session = Depends(require_session),
):
    """List live sessions; other admins' sessions require manage_admins."""
    auth = get_runtime().auth
    target = admin_id or session.admin_id
    if target != session.admin_id and not auth.has_permission(
        session, AdminPermission.MANAGE_ADMINS
    ):
        raise ForbiddenError("manage_admins permission required")
    sessions = auth.get_active_sessions(target)
    return Envelope(
        status="ok",
        data={"sessions": [_session_response(item) for item in sessions], "count": len(sessions)},
    )


@router.delete("/auth/sessions/{admin_id}", response_model=Envelope, tags=["auth"])
async def revoke_sessions(
    request: Request,
    admin_id: str = Path(..., max_length=128),
    session: Session = Depends(require_permission(AdminPermission.MANAGE_ADMINS)),
):
    revoked = await get_runtime().auth.revoke_all_sessions(
        admin_id,
        _client_ip(request),
        _user_agent(request),
        actor_id=session.admin_id,
        actor_email=session.email,
    )
    return Envelope(status="ok", data={"admin_id": admin_id, "revoked": revoked})


# Security monitoring


@router.get("/security/alerts", response_model=Envelope, tags=["security"])
async def list_alerts(
    session: Session = Depends(require_permission(AdminPermission.SYSTEM_SETTINGS)),
):
    alerts = get_runtime().auth.get_active_security_alerts()
    return Envelope(status="ok", data={"alerts": [alert.to_dict() for alert in alerts]})


@router.post("/security/alerts/{alert_id}/acknowledge", response_model=Envelope, tags=["security"])
async def acknowledge_alert(
    alert_id: str = Path(..., max_length=128),
    session: Session = Depends(require_permission(AdminPermission.SYSTEM_SETTINGS)),
):
    if not get_runtime().auth.acknowledge_alert(alert_id, session.email):
        raise NotFoundError("alert not found or not active")
    return Envelope(status="ok", data={"alert_id": alert_id, "status": "acknowledged"})


@router.post("/security/alerts/{alert_id}/resolve", response_model=Envelope, tags=["security"])
async def resolve_alert(
    alert_id: str = Path(..., max_length=128),
    session: Session = Depends(require_permission(AdminPermission.SYSTEM_SETTINGS)),
):
    if not get_runtime().auth.resolve_alert(alert_id, session.email):
        raise NotFoundError("alert not found or already resolved")
    return Envelope(status="ok", data={"alert_id": alert_id, "status": "resolved"})


@router.get("/security/metrics", response_model=Envelope, tags=["security"])
async def security_metrics(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    session: Session = Depends(require_permission(AdminPermission.VIEW_ANALYTICS)),
):
    metrics = get_runtime().auth.get_security_metrics(start_date, end_date)
    return Envelope(status="ok", data=metrics.to_dict())


@router.get("/security/blocked-ips", response_model=Envelope, tags=["security"])
async def list_blocked_ips(
    session: Session = Depends(require_permission(AdminPermission.SYSTEM_SETTINGS)),
):
    return Envelope(status="ok", data={"blocked": get_runtime().auth.get_blocked_ips()})


@router.post("/security/blocked-ips", response_model=Envelope, tags=["security"])
async def block_ip(
    body: BlockIpRequest,
    request: Request,
    session: Session = Depends(require_permission(AdminPermission.EMERGENCY_CONTROLS)),
):
    newly_blocked = get_runtime().auth.block_ip(
        body.ip_address,
        body.reason,
        session.admin_id,
        session.email,
        actor_ip=_client_ip(request),
        actor_user_agent=_user_agent(request),
    )
    return Envelope(
        status="ok", data={"ip_address": body.ip_address, "newly_blocked": newly_blocked}
    )


@router.delete("/security/blocked-ips/{ip_address}", response_model=Envelope, tags=["security"])
async def unblock_ip(
    ip_address: str = Path(..., max_length=64),
    session: Session = Depends(require_permission(AdminPermission.EMERGENCY_CONTROLS)),
):
    if not get_runtime().auth.unblock_ip(ip_address, session.admin_id, session.email):
        raise NotFoundError("ip address is not blocked")
    return Envelope(status="ok", data={"ip_address": ip_address, "unblocked": True})


# Audit log


def _audit_filter(
    admin_id: Optional[str] = Query(None, max_length=128),
    action: Optional[str] = Query(None, max_length=64),
    resource: Optional[str] = Query(None, max_length=64),
    success: Optional[bool] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> AuditLogFilter:
    return AuditLogFilter(
        admin_id=admin_id,
        action=action,
        resource=resource,
        success=success,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )


@router.get("/audit/logs", response_model=Envelope, tags=["audit"])
async def audit_logs(
    filters: AuditLogFilter = Depends(_audit_filter),
    session: Session = Depends(require_permission(AdminPermission.AUDIT_LOGS)),
):
    entries = get_runtime().auth.get_audit_logs(filters)
    return Envelope(
        status="ok",
        data={"logs": [entry.to_dict() for entry in entries], "count": len(entries)},
    )


@router.get("/audit/logs/search", response_model=Envelope, tags=["audit"])
async def search_audit_logs(
    q: str = Query(..., min_length=1, max_length=256),
    limit: int = Query(100, ge=1, le=1000),
    session: Session = Depends(require_permission(AdminPermission.AUDIT_LOGS)),
):
    entries = get_runtime().auth.search_audit_logs(q, limit)
    return Envelope(
        status="ok",
        data={"logs": [entry.to_dict() for entry in entries], "count": len(entries)},
    )


@router.get("/audit/stats", response_model=Envelope, tags=["audit"])
async def audit_stats(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    session: Session = Depends(require_permission(AdminPermission.AUDIT_LOGS)),
):
    return Envelope(status="ok", data=get_runtime().auth.get_audit_stats(start_date, end_date))


@router.get("/audit/export", tags=["audit"])
async def export_audit_logs(
    format: str = Query("json", max_length=8),
    filters: AuditLogFilter = Depends(_audit_filter),
    session: Session = Depends(require_permission(AdminPermission.AUDIT_LOGS)),
):
    media_type = _EXPORT_MEDIA_TYPES.get(format.lower())
    if media_type is None:
        raise ValidationError(f"unsupported export format: {format}")
    body = get_runtime().auth.export_audit_logs(format.lower(), filters)
    logger.info("audit_logs_exported", admin_id=session.admin_id, format=format.lower())
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="audit-logs.{format.lower()}"'},
    )

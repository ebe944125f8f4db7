from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

from warden.service.errors import AuthFailure


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat a naive datetime as UTC; aware values pass through."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class AdminPermission(str, Enum):
    MANAGE_ASSETS = "manage_assets"
    MANAGE_LOANS = "manage_loans"
    MANAGE_USERS = "manage_users"
    VIEW_ANALYTICS = "view_analytics"
    SYSTEM_SETTINGS = "system_settings"
    MANAGE_ADMINS = "manage_admins"
    AUDIT_LOGS = "audit_logs"
    EMERGENCY_CONTROLS = "emergency_controls"


@dataclass(frozen=True)
class AdminRole:
    name: str
    permissions: FrozenSet[AdminPermission] = frozenset()
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "permissions": sorted(p.value for p in self.permissions),
            "description": self.description,
        }


def flatten_permissions(roles: Iterable[AdminRole]) -> FrozenSet[AdminPermission]:
    perms: set[AdminPermission] = set()
    for role in roles:
        perms.update(role.permissions)
    return frozenset(perms)


@dataclass
class AdminAccount:
    id: str
    email: str
    credential_hash: str
    roles: Tuple[AdminRole, ...] = ()
    permissions: FrozenSet[AdminPermission] = frozenset()
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    is_active: bool = True
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.roles = tuple(self.roles)
        if not self.permissions:
            self.permissions = flatten_permissions(self.roles)
        else:
            self.permissions = frozenset(self.permissions)
        if self.failed_login_attempts < 0:
            raise ValueError("failed_login_attempts cannot be negative")

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def sanitized(self) -> Dict[str, Any]:
        """Public view of the account; hash and MFA secret never leave here."""
        return {
            "id": self.id,
            "email": self.email,
            "roles": [role.to_dict() for role in self.roles],
            "permissions": sorted(p.value for p in self.permissions),
            "mfaEnabled": self.mfa_enabled,
            "failedLoginAttempts": self.failed_login_attempts,
            "lockedUntil": _iso(self.locked_until),
            "isActive": self.is_active,
            "lastLogin": _iso(self.last_login),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class Session:
    session_id: str
    admin_id: str
    email: str
    roles: Tuple[str, ...]
    permissions: FrozenSet[AdminPermission]
    created_at: datetime
    expires_at: datetime
    ip_address: str
    user_agent: str

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError("session expires_at must be after created_at")

    @classmethod
    def for_account(
        cls,
        account: AdminAccount,
        session_id: str,
        *,
        created_at: datetime,
        expires_at: datetime,
        ip_address: str,
        user_agent: str,
    ) -> "Session":
        return cls(
            session_id=session_id,
            admin_id=account.id,
            email=account.email,
            roles=tuple(role.name for role in account.roles),
            permissions=frozenset(account.permissions),
            created_at=created_at,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "adminId": self.admin_id,
            "email": self.email,
            "roles": list(self.roles),
            "permissions": sorted(p.value for p in self.permissions),
            "createdAt": _iso(self.created_at),
            "expiresAt": _iso(self.expires_at),
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
        }


class SessionState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    MISSING = "missing"


@dataclass(frozen=True)
class FailedLoginState:
    """Outcome of one atomic failed-login increment."""

    attempts: int
    locked_until: Optional[datetime] = None
    locked_now: bool = False


@dataclass(frozen=True)
class CounterWindow:
    """Attempts currently inside one key's sliding window (epoch seconds)."""

    count: int
    oldest: Optional[float] = None


@dataclass(frozen=True)
class CounterAcquire:
    allowed: bool
    attempt_id: Optional[str]
    count: int
    oldest: Optional[float] = None


@dataclass(frozen=True)
class AuditLogEntry:
    id: str
    admin_id: str
    admin_email: str
    action: str
    resource: str
    details: Dict[str, Any]
    ip_address: str
    user_agent: str
    timestamp: datetime
    success: bool
    resource_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "adminId": self.admin_id,
            "adminEmail": self.admin_email,
            "action": self.action,
            "resource": self.resource,
            "resourceId": self.resource_id,
            "details": copy.deepcopy(self.details),
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "timestamp": _iso(self.timestamp),
            "success": self.success,
            "error": self.error,
        }


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class AlertCategory(str, Enum):
    BRUTE_FORCE = "BRUTE_FORCE"
    CREDENTIAL_STUFFING = "CREDENTIAL_STUFFING"
    SUSPICIOUS_LOGIN = "SUSPICIOUS_LOGIN"
    MULTIPLE_FAILURES = "MULTIPLE_FAILURES"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    ACCOUNT_LOCKOUT = "ACCOUNT_LOCKOUT"


@dataclass
class SecurityAlert:
    id: str
    category: AlertCategory
    severity: AlertSeverity
    subject_email: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    status: AlertStatus = AlertStatus.ACTIVE
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status != AlertStatus.RESOLVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.category.value,
            "severity": self.severity.value,
            "email": self.subject_email,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "timestamp": _iso(self.timestamp),
            "details": self.details,
            "status": self.status.value,
            "acknowledgedAt": _iso(self.acknowledged_at),
            "acknowledgedBy": self.acknowledged_by,
            "resolvedAt": _iso(self.resolved_at),
            "resolvedBy": self.resolved_by,
        }


@dataclass(frozen=True)
class LoginAttempt:
    email: str
    ip_address: str
    user_agent: str
    success: bool
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SecurityMetrics:
    total_login_attempts: int = 0
    failed_login_attempts: int = 0
    successful_logins: int = 0
    blocked_ips: int = 0
    active_alerts: int = 0
    account_lockouts: int = 0
    suspicious_activities: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalLoginAttempts": self.total_login_attempts,
            "failedLoginAttempts": self.failed_login_attempts,
            "successfulLogins": self.successful_logins,
            "blockedIPs": self.blocked_ips,
            "activeAlerts": self.active_alerts,
            "accountLockouts": self.account_lockouts,
            "suspiciousActivities": self.suspicious_activities,
        }


@dataclass(frozen=True)
class LoginCredentials:
    email: str
    password: str
    mfa_token: Optional[str] = None


@dataclass(frozen=True)
class LoginResult:
    success: bool
    token: Optional[str] = None
    refresh_token: Optional[str] = None
    admin: Optional[Dict[str, Any]] = None
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    requires_mfa: bool = False
    error: Optional[AuthFailure] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.requires_mfa:
            payload["requiresMfa"] = True
        if self.success:
            payload.update(
                {
                    "token": self.token,
                    "refreshToken": self.refresh_token,
                    "admin": self.admin,
                    "sessionId": self.session_id,
                    "expiresAt": _iso(self.expires_at),
                }
            )
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload


@dataclass(frozen=True)
class RefreshResult:
    success: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[AuthFailure] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.success:
            payload.update(
                {
                    "accessToken": self.access_token,
                    "refreshToken": self.refresh_token,
                    "sessionId": self.session_id,
                    "expiresAt": _iso(self.expires_at),
                }
            )
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload

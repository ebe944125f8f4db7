from __future__ import annotations

import asyncio
import hashlib
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Union

from warden.config import Settings
from warden.logging import get_logger, sanitize_error_message
from warden.service.audit import AuditLogFilter, AuditLogger, AuditSink
from warden.service.credentials import CredentialVerifier, TotpVerifier
from warden.service.errors import AuthErrorCode, AuthFailure, TokenError
from warden.service.maintenance import MaintenanceWorker
from warden.service.rate_limiter import CounterStore, RateLimiter, RateLimiterConfig
from warden.service.security_monitor import ACCOUNT_LOCKED_NOW, SecurityMonitor
from warden.service.sessions import SessionRegistry
from warden.service.tokens import TokenService
from warden.storage.memory import MemorySessionStore
from warden.storage.models import (
    AdminAccount,
    AdminPermission,
    AuditLogEntry,
    FailedLoginState,
    LoginCredentials,
    LoginResult,
    RefreshResult,
    SecurityAlert,
    SecurityMetrics,
    Session,
    SessionState,
    utc_now,
)

logger = get_logger(__name__)

AUTH_RESOURCE = "admin_auth"
UNKNOWN_ADMIN = "unknown"


class AccountStore(Protocol):
    def find_account_by_email(self, email: str) -> Optional[AdminAccount]: ...

    def find_account_by_id(self, account_id: str) -> Optional[AdminAccount]: ...

    def record_failed_login(
        self,
        account_id: str,
        max_attempts: int,
        lockout: timedelta,
        now: datetime,
    ) -> FailedLoginState: ...

    def reset_failed_logins(self, account_id: str) -> None: ...

    def update_last_login(self, account_id: str, when: datetime) -> None: ...


def session_ref(session_id: str) -> str:
    """Stable, non-reversible reference to a session id for audit details."""
    return hashlib.sha256(session_id.encode()).hexdigest()[:16]


class AdminAuthService:
    """Login, logout and refresh for administrative operators.

    Every login, logout and refresh call writes exactly one ``admin_auth``
    audit entry, whichever branch it leaves through. Failed logins and the
    MFA challenge are also reported to the security monitor. Recognised
    failures come back as ``AuthFailure`` values on the result; only the
    HTTP layer turns them into exceptions.
    """

    def __init__(
        self,
        accounts: AccountStore,
        settings: Settings,
        *,
        audit: AuditLogger,
        rate_limiter: RateLimiter,
        monitor: SecurityMonitor,
        tokens: TokenService,
        sessions: SessionRegistry,
        credentials: Optional[CredentialVerifier] = None,
        mfa: Optional[TotpVerifier] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.accounts = accounts
        self.settings = settings
        self.audit = audit
        self.rate_limiter = rate_limiter
        self.monitor = monitor
        self.tokens = tokens
        self.sessions = sessions
        self.credentials = credentials or CredentialVerifier()
        self.mfa = mfa or TotpVerifier(clock=clock)
        self._clock = clock
        self.max_login_attempts = settings.max_login_attempts
        self.lockout_duration = timedelta(minutes=settings.lockout_minutes)
        self.session_ttl = timedelta(minutes=settings.session_ttl_minutes)
        self.maintenance: Optional[MaintenanceWorker] = None
        if settings.maintenance_enabled:
            self.maintenance = MaintenanceWorker.for_services(
                settings, sessions, rate_limiter, monitor
            )

    @classmethod
    def from_settings(
        cls,
        accounts: AccountStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utc_now,
        audit_sinks: Optional[Iterable[AuditSink]] = None,
        counter_store: Optional[CounterStore] = None,
        session_store: Optional[MemorySessionStore] = None,
        credentials: Optional[CredentialVerifier] = None,
        mfa: Optional[TotpVerifier] = None,
    ) -> "AdminAuthService":
        audit = AuditLogger(
            audit_sinks, retention_days=settings.audit_retention_days, clock=clock
        )
        rate_limiter = RateLimiter(
            RateLimiterConfig(
                window_seconds=settings.login_rate_limit_window_seconds,
                max_attempts=settings.login_rate_limit_attempts,
                skip_successful_requests=settings.login_rate_limit_skip_successful,
            ),
            store=counter_store,
            clock=clock,
        )
        return cls(
            accounts,
            settings,
            audit=audit,
            rate_limiter=rate_limiter,
            monitor=SecurityMonitor(audit, rate_limiter, clock=clock),
            tokens=TokenService(settings, clock=clock),
            sessions=SessionRegistry(session_store, clock=clock),
            credentials=credentials,
            mfa=mfa,
            clock=clock,
        )

    def _now(self) -> datetime:
        return self._clock()

    async def _find_account(self, lookup: Callable[[str], Optional[AdminAccount]], key: str) -> Optional[AdminAccount]:
        # Runs in a worker thread and never under one of our locks
        return await asyncio.wait_for(
            asyncio.to_thread(lookup, key),
            timeout=self.settings.account_lookup_timeout_seconds,
        )

    # Login

    def _login_failure(
        self,
        code: AuthErrorCode,
        message: str,
        *,
        email: str,
        ip_address: str,
        user_agent: str,
        action: str,
        reason: str,
        audit_error: str,
        account: Optional[AdminAccount] = None,
        audit_details: Optional[Dict[str, Any]] = None,
        monitor_details: Optional[Dict[str, Any]] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> LoginResult:
        self.monitor.record_login_attempt(
            email, ip_address, user_agent, False, {"reason": reason, **(monitor_details or {})}
        )
        self.audit.log(
            admin_id=account.id if account else UNKNOWN_ADMIN,
            admin_email=account.email if account else email,
            action=action,
            resource=AUTH_RESOURCE,
            details={"reason": reason, **(audit_details or {})},
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
            error=audit_error,
        )
        logger.info("admin_login_rejected", code=code.value, reason=reason, ip_address=ip_address)
        return LoginResult(success=False, error=AuthFailure.of(code, message, detail))

    async def login(
        self, credentials: LoginCredentials, ip_address: str, user_agent: str
    ) -> LoginResult:
        email = (credentials.email or "").strip().lower()
        try:
            return await self._login(credentials, email, ip_address, user_agent)
        except Exception as exc:
            logger.error(
                "admin_login_error",
                error=str(exc),
                error_type=type(exc).__name__,
                ip_address=ip_address,
            )
            message = sanitize_error_message(str(exc) or type(exc).__name__)
            self.audit.log(
                admin_id=UNKNOWN_ADMIN,
                admin_email=email,
                action="LOGIN_ERROR",
                resource=AUTH_RESOURCE,
                details={"error": message, "errorType": type(exc).__name__},
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error=message,
            )
            self.monitor.record_login_attempt(
                email, ip_address, user_agent, False, {"reason": "internal_error"}
            )
            return LoginResult(
                success=False,
                error=AuthFailure.of(
                    AuthErrorCode.INTERNAL_ERROR, "Login failed due to internal error"
                ),
            )

    async def _login(
        self,
        credentials: LoginCredentials,
        email: str,
        ip_address: str,
        user_agent: str,
    ) -> LoginResult:
        started = time.monotonic()
        common = {"email": email, "ip_address": ip_address, "user_agent": user_agent}

        if self.monitor.is_ip_blocked(ip_address):
            return self._login_failure(
                AuthErrorCode.IP_BLOCKED,
                "Access denied. Your IP address has been blocked due to suspicious activity.",
                action="LOGIN_ATTEMPT",
                reason="ip_blocked",
                audit_error="IP address blocked",
                **common,
            )

        rate_key = f"login:{email}:{ip_address}"
        decision = self.rate_limiter.acquire(rate_key)
        if not decision.allowed:
            retry_after = int(decision.retry_after_seconds) + 1
            return self._login_failure(
                AuthErrorCode.RATE_LIMITED,
                "Too many login attempts. Please try again later.",
                action="LOGIN_ATTEMPT",
                reason="rate_limited",
                audit_error="Rate limit exceeded",
                detail={"retryAfterSeconds": retry_after},
                **common,
            )

        account = await self._find_account(self.accounts.find_account_by_email, email)
        if account is None:
            await asyncio.to_thread(self.credentials.dummy_verify, credentials.password or "")
            return self._login_failure(
                AuthErrorCode.INVALID_CREDENTIALS,
                "Invalid email or password",
                action="LOGIN_ATTEMPT",
                reason="user_not_found",
                audit_error="Invalid credentials",
                **common,
            )

        now = self._now()
        if account.is_locked(now):
            locked_until = account.locked_until.isoformat()
            return self._login_failure(
                AuthErrorCode.ACCOUNT_LOCKED,
                "Account is temporarily locked due to multiple failed login attempts",
                action="LOGIN_ATTEMPT",
                reason="account_locked",
                audit_error="Account locked",
                account=account,
                audit_details={"lockedUntil": locked_until},
                monitor_details={"lockedUntil": locked_until},
                detail={"lockedUntil": locked_until},
                **common,
            )

        if not account.is_active:
            return self._login_failure(
                AuthErrorCode.ACCOUNT_INACTIVE,
                "Account is inactive. Please contact system administrator.",
                action="LOGIN_ATTEMPT",
                reason="account_inactive",
                audit_error="Account inactive",
                account=account,
                **common,
            )

        password_ok = await asyncio.to_thread(
            self.credentials.verify, account.credential_hash, credentials.password or ""
        )
        if not password_ok:
            return await self._handle_failed_password(account, **common)

        if account.mfa_enabled:
            if not credentials.mfa_token:
                self.monitor.record_login_attempt(
                    email,
                    ip_address,
                    user_agent,
                    False,
                    {"reason": "mfa_required", "stage": "password_verified"},
                )
                self.audit.log(
                    admin_id=account.id,
                    admin_email=account.email,
                    action="MFA_REQUIRED",
                    resource=AUTH_RESOURCE,
                    details={"reason": "mfa_required", "stage": "password_verified"},
                    ip_address=ip_address,
                    user_agent=user_agent,
                    success=False,
                    error="MFA token required",
                )
                return LoginResult(success=False, requires_mfa=True)
            if not self.mfa.verify(account.mfa_secret, credentials.mfa_token, account_id=account.id):
                return self._login_failure(
                    AuthErrorCode.INVALID_MFA,
                    "Invalid MFA token",
                    action="LOGIN_ATTEMPT",
                    reason="invalid_mfa",
                    audit_error="Invalid MFA token",
                    account=account,
                    **common,
                )

        return await self._complete_login(
            account, decision.attempt_id, rate_key, started, **common
        )

    async def _handle_failed_password(
        self, account: AdminAccount, *, email: str, ip_address: str, user_agent: str
    ) -> LoginResult:
        now = self._now()
        state = await asyncio.to_thread(
            self.accounts.record_failed_login,
            account.id,
            self.max_login_attempts,
            self.lockout_duration,
            now,
        )
        if state.locked_now:
            locked_until = state.locked_until.isoformat() if state.locked_until else None
            self.monitor.record_login_attempt(
                email,
                ip_address,
                user_agent,
                False,
                {"reason": ACCOUNT_LOCKED_NOW, "failedAttempts": state.attempts, "lockedUntil": locked_until},
            )
            self.audit.log(
                admin_id=account.id,
                admin_email=account.email,
                action="ACCOUNT_LOCKED",
                resource=AUTH_RESOURCE,
                details={
                    "failedAttempts": state.attempts,
                    "lockedUntil": locked_until,
                    "lockoutDurationSeconds": int(self.lockout_duration.total_seconds()),
                },
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error="Account locked due to failed login attempts",
            )
            logger.warning("admin_account_locked", admin_id=account.id, attempts=state.attempts)
        else:
            remaining = max(0, self.max_login_attempts - state.attempts)
            self.monitor.record_login_attempt(
                email,
                ip_address,
                user_agent,
                False,
                {"reason": "invalid_password", "failedAttempts": state.attempts},
            )
            self.audit.log(
                admin_id=account.id,
                admin_email=account.email,
                action="FAILED_LOGIN",
                resource=AUTH_RESOURCE,
                details={"failedAttempts": state.attempts, "remainingAttempts": remaining},
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error="Invalid credentials",
            )
        return LoginResult(
            success=False,
            error=AuthFailure.of(AuthErrorCode.INVALID_CREDENTIALS, "Invalid email or password"),
        )

    def _new_session(
        self,
        account: AdminAccount,
        *,
        created_at: datetime,
        expires_at: datetime,
        ip_address: str,
        user_agent: str,
    ) -> Session:
        return Session.for_account(
            account,
            self.tokens.generate_session_id(),
            created_at=created_at,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def _complete_login(
        self,
        account: AdminAccount,
        attempt_id: Optional[str],
        rate_key: str,
        started: float,
        *,
        email: str,
        ip_address: str,
        user_agent: str,
    ) -> LoginResult:
        now = self._now()
        await asyncio.to_thread(self.accounts.reset_failed_logins, account.id)
        await asyncio.to_thread(self.accounts.update_last_login, account.id, now)

        session = self._new_session(
            account,
            created_at=now,
            expires_at=now + self.session_ttl,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        while not self.sessions.insert(session):
            session = self._new_session(
                account,
                created_at=now,
                expires_at=session.expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        access_token = self.tokens.generate_access_token(account, session.session_id)
        refresh_token = self.tokens.generate_refresh_token(account.id, session.session_id)
        self.rate_limiter.record_success(rate_key, attempt_id)

        duration_ms = int((time.monotonic() - started) * 1000)
        details = {
            "sessionRef": session_ref(session.session_id),
            "loginDurationMs": duration_ms,
            "mfaUsed": account.mfa_enabled,
        }
        self.monitor.record_login_attempt(email, ip_address, user_agent, True, details)
        self.audit.log(
            admin_id=account.id,
            admin_email=account.email,
            action="LOGIN_SUCCESS",
            resource=AUTH_RESOURCE,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            success=True,
        )
        logger.info("admin_login_success", admin_id=account.id, ip_address=ip_address)
        refreshed = replace(
            account, failed_login_attempts=0, locked_until=None, last_login=now
        )
        return LoginResult(
            success=True,
            token=access_token,
            refresh_token=refresh_token,
            admin=refreshed.sanitized(),
            session_id=session.session_id,
            expires_at=session.expires_at,
        )

    # Logout

    async def logout(self, session_id: str, ip_address: str, user_agent: str) -> bool:
        """Remove the session if present; always audited, safe to repeat."""
        session = self.sessions.remove(session_id) if session_id else None
        self.audit.log(
            admin_id=session.admin_id if session else UNKNOWN_ADMIN,
            admin_email=session.email if session else UNKNOWN_ADMIN,
            action="LOGOUT",
            resource=AUTH_RESOURCE,
            details={
                "sessionRef": session_ref(session_id) if session_id else None,
                "sessionFound": session is not None,
            },
            ip_address=ip_address,
            user_agent=user_agent,
            success=True,
        )
        if session is not None:
            logger.info("admin_logout", admin_id=session.admin_id)
        return session is not None

    # Refresh

    def _refresh_failure(
        self,
        code: AuthErrorCode,
        message: str,
        *,
        ip_address: str,
        user_agent: str,
        admin_id: str = UNKNOWN_ADMIN,
        admin_email: str = UNKNOWN_ADMIN,
        details: Optional[Dict[str, Any]] = None,
    ) -> RefreshResult:
        self.audit.log(
            admin_id=admin_id,
            admin_email=admin_email,
            action="TOKEN_REFRESH",
            resource=AUTH_RESOURCE,
            details={"reason": code.value, **(details or {})},
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
            error=message,
        )
        logger.info("token_refresh_rejected", code=code.value, admin_id=admin_id)
        return RefreshResult(success=False, error=AuthFailure.of(code, message))

    async def refresh_token(
        self, refresh_token: str, ip_address: str, user_agent: str
    ) -> RefreshResult:
        try:
            return await self._refresh(refresh_token, ip_address, user_agent)
        except Exception as exc:
            logger.error(
                "token_refresh_error", error=str(exc), error_type=type(exc).__name__
            )
            return self._refresh_failure(
                AuthErrorCode.REFRESH_FAILED,
                "Token refresh failed",
                ip_address=ip_address,
                user_agent=user_agent,
                details={"errorType": type(exc).__name__},
            )

    async def _refresh(
        self, refresh_token: str, ip_address: str, user_agent: str
    ) -> RefreshResult:
        common = {"ip_address": ip_address, "user_agent": user_agent}
        try:
            payload = self.tokens.verify_refresh_token(refresh_token)
        except TokenError as exc:
            return self._refresh_failure(exc.code, exc.message, **common)

        old_id = payload["sid"]
        session, state = self.sessions.lookup(old_id)
        if state == SessionState.MISSING or session is None:
            return self._refresh_failure(
                AuthErrorCode.SESSION_NOT_FOUND, "Session not found or expired", **common
            )
        owner = {"admin_id": session.admin_id, "admin_email": session.email}
        if state == SessionState.EXPIRED:
            return self._refresh_failure(
                AuthErrorCode.SESSION_EXPIRED, "Session expired", **owner, **common
            )
        if session.admin_id != payload["sub"]:
            return self._refresh_failure(
                AuthErrorCode.INVALID_REFRESH_TOKEN, "Refresh token does not match session", **owner, **common
            )

        account = await self._find_account(self.accounts.find_account_by_id, session.admin_id)
        if account is None or not account.is_active:
            self.sessions.remove(old_id)
            return self._refresh_failure(
                AuthErrorCode.ADMIN_NOT_FOUND,
                "Admin account not found or inactive",
                **owner,
                **common,
            )

        now = self._now()
        expires_at = now + self.session_ttl
        if expires_at <= session.expires_at:
            expires_at = session.expires_at + timedelta(microseconds=1)
        new_session = self._new_session(
            account,
            created_at=now,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        access_token = self.tokens.generate_access_token(account, new_session.session_id)
        new_refresh = self.tokens.generate_refresh_token(account.id, new_session.session_id)
        rotated = self.sessions.rotate(old_id, new_session)
        if rotated == SessionState.EXPIRED:
            return self._refresh_failure(
                AuthErrorCode.SESSION_EXPIRED, "Session expired", **owner, **common
            )
        if rotated != SessionState.ACTIVE:
            return self._refresh_failure(
                AuthErrorCode.SESSION_NOT_FOUND,
                "Session not found or expired",
                **owner,
                **common,
            )

        self.audit.log(
            admin_id=account.id,
            admin_email=account.email,
            action="TOKEN_REFRESH",
            resource=AUTH_RESOURCE,
            details={
                "oldSessionRef": session_ref(old_id),
                "newSessionRef": session_ref(new_session.session_id),
            },
            ip_address=ip_address,
            user_agent=user_agent,
            success=True,
        )
        logger.info("token_refreshed", admin_id=account.id)
        return RefreshResult(
            success=True,
            access_token=access_token,
            refresh_token=new_refresh,
            session_id=new_session.session_id,
            expires_at=new_session.expires_at,
        )

    # Session queries

    def validate_session(self, session_id: str) -> Optional[Session]:
        return self.sessions.validate_session(session_id)

    def resolve_session(self, authorization: Optional[str]) -> Union[Session, AuthFailure]:
        """Session behind a bearer header, or the failure explaining why not."""
        token = self.tokens.extract_bearer(authorization)
        if not token:
            return AuthFailure.of(AuthErrorCode.INVALID_TOKEN, "Missing bearer token")
        try:
            payload = self.tokens.verify_access_token(token)
        except TokenError as exc:
            return exc.to_failure()
        session, state = self.sessions.lookup(payload["sid"])
        if state == SessionState.EXPIRED:
            return AuthFailure.of(AuthErrorCode.SESSION_EXPIRED, "Session expired")
        if session is None or state != SessionState.ACTIVE or session.admin_id != payload["sub"]:
            return AuthFailure.of(AuthErrorCode.SESSION_NOT_FOUND, "Session not found or expired")
        return session

    async def authenticate(self, authorization: Optional[str]) -> Optional[Session]:
        resolved = self.resolve_session(authorization)
        return resolved if isinstance(resolved, Session) else None

    @staticmethod
    def has_permission(session: Optional[Session], permission: AdminPermission | str) -> bool:
        return SessionRegistry.has_permission(session, permission)

    def get_active_sessions(self, admin_id: Optional[str] = None) -> List[Session]:
        return self.sessions.list_sessions(admin_id)

    async def revoke_all_sessions(
        self,
        admin_id: str,
        ip_address: str,
        user_agent: str,
        *,
        actor_id: Optional[str] = None,
        actor_email: Optional[str] = None,
    ) -> int:
        revoked = self.sessions.revoke_all(admin_id)
        admin_email = revoked[0].email if revoked else (actor_email or UNKNOWN_ADMIN)
        self.audit.log(
            admin_id=admin_id,
            admin_email=admin_email,
            action="REVOKE_ALL_SESSIONS",
            resource=AUTH_RESOURCE,
            resource_id=admin_id,
            details={"revokedSessions": len(revoked), "revokedBy": actor_id or admin_id},
            ip_address=ip_address,
            user_agent=user_agent,
            success=True,
        )
        return len(revoked)

    # Security administration

    def block_ip(
        self,
        ip_address: str,
        reason: str,
        actor_id: str,
        actor_email: str,
        *,
        actor_ip: str = "admin-action",
        actor_user_agent: str = "admin-action",
    ) -> bool:
        newly_blocked = self.monitor.block_ip(ip_address, reason, actor_id, actor_email)
        self.audit.log(
            admin_id=actor_id,
            admin_email=actor_email,
            action="MANUAL_IP_BLOCK",
            resource=AUTH_RESOURCE,
            resource_id=ip_address,
            details={"ipAddress": ip_address, "reason": reason, "alreadyBlocked": not newly_blocked},
            ip_address=actor_ip,
            user_agent=actor_user_agent,
            success=True,
        )
        return newly_blocked

    def unblock_ip(self, ip_address: str, actor_id: str, actor_email: str) -> bool:
        return self.monitor.unblock_ip(ip_address, actor_id, actor_email)

    def get_blocked_ips(self) -> List[Dict[str, Any]]:
        return self.monitor.get_blocked_ips()

    def get_active_security_alerts(self) -> List[SecurityAlert]:
        return self.monitor.get_active_alerts()

    def acknowledge_alert(self, alert_id: str, actor: str) -> bool:
        return self.monitor.acknowledge_alert(alert_id, actor)

    def resolve_alert(self, alert_id: str, actor: str) -> bool:
        return self.monitor.resolve_alert(alert_id, actor)

    def get_security_metrics(
        self, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None
    ) -> SecurityMetrics:
        return self.monitor.get_security_metrics(start_date, end_date)

    # Audit queries

    def get_audit_logs(self, filters: Optional[AuditLogFilter] = None) -> List[AuditLogEntry]:
        return self.audit.get_logs(filters)

    def search_audit_logs(self, term: str, limit: int = 100) -> List[AuditLogEntry]:
        return self.audit.search_logs(term, limit)

    def get_audit_stats(
        self, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None
    ) -> Dict[str, Any]:
        return self.audit.get_stats(start_date, end_date)

    def export_audit_logs(
        self, format: str = "json", filters: Optional[AuditLogFilter] = None
    ) -> str:
        return self.audit.export_logs(format, filters)

    # Lifecycle

    async def start(self) -> None:
        if self.maintenance is not None:
            await self.maintenance.start()

    async def stop(self) -> None:
        if self.maintenance is not None:
            await self.maintenance.stop()

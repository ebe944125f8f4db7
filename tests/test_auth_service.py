"""Tests for the admin login/logout/refresh orchestration."""

import asyncio
import time
from datetime import timedelta

from warden.service.audit import AuditLogFilter
from warden.service.auth import AUTH_RESOURCE, AdminAuthService, session_ref
from warden.service.credentials import TotpVerifier
from warden.service.errors import AuthErrorCode
from warden.storage.models import AlertCategory, LoginCredentials

IP = "198.51.100.20"
UA = "pytest-agent"


def _creds(email, password, mfa_token=None):
    return LoginCredentials(email=email, password=password, mfa_token=mfa_token)


def _auth_entries(service):
    return service.get_audit_logs(AuditLogFilter(resource=AUTH_RESOURCE))


async def _login(service, admin, password):
    result = await service.login(_creds(admin.email, password), IP, UA)
    assert result.success, result.error
    return result


class TestLoginSuccess:
    async def test_issues_tokens_and_session(self, auth_service, admin, password, clock):
        result = await auth_service.login(_creds("OPS@example.com ", password), IP, UA)

        assert result.success is True
        assert result.token and result.refresh_token and result.session_id
        assert result.expires_at == clock.now + timedelta(minutes=15)
        assert result.admin["email"] == "ops@example.com"
        assert "credential_hash" not in result.admin
        assert "mfaSecret" not in result.admin

        session = auth_service.validate_session(result.session_id)
        assert session.admin_id == admin.id
        assert session.ip_address == IP
        payload = auth_service.tokens.verify_access_token(result.token)
        assert payload["sid"] == result.session_id

    async def test_audits_once_without_raw_session_id(self, auth_service, admin, password):
        result = await _login(auth_service, admin, password)
        entries = _auth_entries(auth_service)
        assert [e.action for e in entries] == ["LOGIN_SUCCESS"]
        assert entries[0].details["sessionRef"] == session_ref(result.session_id)
        assert result.session_id not in str(entries[0].details)

    async def test_resets_failed_attempts(self, auth_service, accounts, admin, password):
        await auth_service.login(_creds(admin.email, "wrong"), IP, UA)
        assert accounts.find_account_by_id(admin.id).failed_login_attempts == 1
        await _login(auth_service, admin, password)
        stored = accounts.find_account_by_id(admin.id)
        assert stored.failed_login_attempts == 0
        assert stored.last_login is not None

    async def test_success_does_not_consume_rate_limit(self, auth_service, admin, password):
        for _ in range(12):
            await _login(auth_service, admin, password)
        assert auth_service.rate_limiter.get_info(f"login:{admin.email}:{IP}").total_hits_in_window == 0


class TestLoginFailures:
    async def test_unknown_email(self, auth_service):
        result = await auth_service.login(_creds("ghost@example.com", "whatever"), IP, UA)
        assert result.error.code == AuthErrorCode.INVALID_CREDENTIALS
        entry = _auth_entries(auth_service)[0]
        assert entry.action == "LOGIN_ATTEMPT"
        assert entry.admin_id == "unknown"
        assert entry.details["reason"] == "user_not_found"

    async def test_wrong_password_reports_remaining(self, auth_service, admin):
        result = await auth_service.login(_creds(admin.email, "wrong"), IP, UA)
        assert result.error.code == AuthErrorCode.INVALID_CREDENTIALS
        assert result.error.status_code == 401
        entry = _auth_entries(auth_service)[0]
        assert entry.action == "FAILED_LOGIN"
        assert entry.details["remainingAttempts"] == 4

    async def test_unknown_and_wrong_password_look_alike(self, auth_service, admin):
        missing = await auth_service.login(_creds("ghost@example.com", "x"), IP, UA)
        wrong = await auth_service.login(_creds(admin.email, "x"), IP, UA)
        assert missing.error.message == wrong.error.message
        assert missing.error.status_code == wrong.error.status_code

    async def test_inactive_account(self, auth_service, accounts, admin, password):
        accounts.set_active(admin.id, False)
        result = await auth_service.login(_creds(admin.email, password), IP, UA)
        assert result.error.code == AuthErrorCode.ACCOUNT_INACTIVE
        assert result.error.status_code == 403

    async def test_blocked_ip(self, auth_service, admin, password):
        auth_service.monitor.block_ip(IP, "manual test")
        result = await auth_service.login(_creds(admin.email, password), IP, UA)
        assert result.error.code == AuthErrorCode.IP_BLOCKED
        assert auth_service.validate_session(result.session_id or "") is None

    async def test_rate_limited(self, auth_service, admin, password):
        key = f"login:{admin.email}:{IP}"
        for _ in range(10):
            auth_service.rate_limiter.acquire(key)
        result = await auth_service.login(_creds(admin.email, password), IP, UA)
        assert result.error.code == AuthErrorCode.RATE_LIMITED
        assert result.error.detail["retryAfterSeconds"] >= 1
        alerts = auth_service.get_active_security_alerts()
        assert AlertCategory.RATE_LIMIT_EXCEEDED in [a.category for a in alerts]

    async def test_unexpected_error_is_internal_error(self, auth_service, admin, password):
        def explode(email):
            raise RuntimeError("store offline")

        auth_service.accounts.find_account_by_email = explode
        result = await auth_service.login(_creds(admin.email, password), IP, UA)
        assert result.error.code == AuthErrorCode.INTERNAL_ERROR
        assert [e.action for e in _auth_entries(auth_service)] == ["LOGIN_ERROR"]
        assert auth_service.get_security_metrics().failed_login_attempts == 1

    async def test_slow_account_lookup_times_out(self, auth_service, admin, password):
        auth_service.settings = auth_service.settings.model_copy(
            update={"account_lookup_timeout_seconds": 0.05}
        )

        def slow(email):
            time.sleep(0.3)
            return None

        auth_service.accounts.find_account_by_email = slow
        result = await auth_service.login(_creds(admin.email, password), IP, UA)
        assert result.error.code == AuthErrorCode.INTERNAL_ERROR


class TestLockout:
    async def test_five_failures_lock_then_unlock(self, auth_service, accounts, admin, password, clock):
        codes = []
        for _ in range(5):
            result = await auth_service.login(_creds(admin.email, "wrong"), IP, UA)
            codes.append(result.error.code)
        assert codes == [AuthErrorCode.INVALID_CREDENTIALS] * 5

        stored = accounts.find_account_by_id(admin.id)
        assert stored.failed_login_attempts == 5
        assert stored.locked_until == clock.now + timedelta(minutes=15)

        locked = await auth_service.login(_creds(admin.email, password), IP, UA)
        assert locked.error.code == AuthErrorCode.ACCOUNT_LOCKED
        assert locked.error.status_code == 423
        assert locked.error.detail["lockedUntil"] == stored.locked_until.isoformat()

        clock.advance(minutes=14, seconds=59)
        still = await auth_service.login(_creds(admin.email, password), IP, UA)
        assert still.error.code == AuthErrorCode.ACCOUNT_LOCKED

        clock.advance(seconds=1)
        ok = await auth_service.login(_creds(admin.email, password), IP, UA)
        assert ok.success is True
        assert accounts.find_account_by_id(admin.id).failed_login_attempts == 0

    async def test_lockout_audit_and_alert(self, auth_service, admin):
        for _ in range(5):
            await auth_service.login(_creds(admin.email, "wrong"), IP, UA)
        actions = [e.action for e in _auth_entries(auth_service)]
        assert actions == ["ACCOUNT_LOCKED"] + ["FAILED_LOGIN"] * 4
        alerts = auth_service.get_active_security_alerts()
        assert [a.category for a in alerts] == [AlertCategory.ACCOUNT_LOCKOUT]

    async def test_failure_after_lock_expiry_starts_fresh_count(self, auth_service, accounts, admin, clock):
        for _ in range(5):
            await auth_service.login(_creds(admin.email, "wrong"), IP, UA)
        clock.advance(minutes=15)
        result = await auth_service.login(_creds(admin.email, "wrong"), IP, UA)
        assert result.error.code == AuthErrorCode.INVALID_CREDENTIALS
        stored = accounts.find_account_by_id(admin.id)
        assert stored.failed_login_attempts == 1
        assert stored.locked_until is None


class TestMfa:
    async def test_password_only_requires_mfa(self, auth_service, mfa_admin, password):
        result = await auth_service.login(_creds(mfa_admin.email, password), IP, UA)
        assert result.success is False
        assert result.requires_mfa is True
        assert result.error is None
        assert result.token is None and result.session_id is None
        assert auth_service.sessions.count() == 0
        entry = _auth_entries(auth_service)[0]
        assert entry.action == "MFA_REQUIRED"
        assert entry.success is False

    async def test_valid_code_completes_login(self, auth_service, mfa_admin, password, mfa_secret, clock):
        code = TotpVerifier().code_at(mfa_secret, clock.now)
        result = await auth_service.login(_creds(mfa_admin.email, password, code), IP, UA)
        assert result.success is True
        assert _auth_entries(auth_service)[0].details["mfaUsed"] is True

    async def test_invalid_code(self, auth_service, accounts, mfa_admin, password):
        result = await auth_service.login(_creds(mfa_admin.email, password, "000000"), IP, UA)
        assert result.error.code == AuthErrorCode.INVALID_MFA
        assert accounts.find_account_by_id(mfa_admin.id).failed_login_attempts == 0

    async def test_code_cannot_be_replayed(self, auth_service, mfa_admin, password, mfa_secret, clock):
        code = TotpVerifier().code_at(mfa_secret, clock.now)
        first = await auth_service.login(_creds(mfa_admin.email, password, code), IP, UA)
        second = await auth_service.login(_creds(mfa_admin.email, password, code), IP, UA)
        assert first.success is True
        assert second.error.code == AuthErrorCode.INVALID_MFA

    async def test_previous_step_accepted(self, auth_service, mfa_admin, password, mfa_secret, clock):
        code = TotpVerifier().code_at(mfa_secret, clock.now - timedelta(seconds=30))
        result = await auth_service.login(_creds(mfa_admin.email, password, code), IP, UA)
        assert result.success is True


class TestLogout:
    async def test_logout_removes_session(self, auth_service, admin, password):
        result = await _login(auth_service, admin, password)
        assert await auth_service.logout(result.session_id, IP, UA) is True
        assert auth_service.validate_session(result.session_id) is None
        entry = _auth_entries(auth_service)[0]
        assert entry.action == "LOGOUT"
        assert entry.details["sessionFound"] is True

    async def test_logout_is_idempotent_and_always_audited(self, auth_service, admin, password):
        result = await _login(auth_service, admin, password)
        await auth_service.logout(result.session_id, IP, UA)
        assert await auth_service.logout(result.session_id, IP, UA) is False
        entries = _auth_entries(auth_service)
        assert [e.action for e in entries] == ["LOGOUT", "LOGOUT", "LOGIN_SUCCESS"]
        assert entries[0].details["sessionFound"] is False
        assert entries[0].admin_id == "unknown"


class TestRefresh:
    async def test_rotates_session(self, auth_service, admin, password, clock):
        login = await _login(auth_service, admin, password)
        clock.advance(minutes=5)
        result = await auth_service.refresh_token(login.refresh_token, IP, UA)

        assert result.success is True
        assert result.session_id != login.session_id
        assert result.expires_at == clock.now + timedelta(minutes=15)
        assert auth_service.validate_session(login.session_id) is None
        assert auth_service.validate_session(result.session_id) is not None
        entry = _auth_entries(auth_service)[0]
        assert entry.action == "TOKEN_REFRESH"
        assert entry.details["oldSessionRef"] == session_ref(login.session_id)

    async def test_old_refresh_token_is_dead_after_rotation(self, auth_service, admin, password):
        login = await _login(auth_service, admin, password)
        await auth_service.refresh_token(login.refresh_token, IP, UA)
        replay = await auth_service.refresh_token(login.refresh_token, IP, UA)
        assert replay.error.code == AuthErrorCode.SESSION_NOT_FOUND

    async def test_new_expiry_strictly_later(self, auth_service, admin, password):
        login = await _login(auth_service, admin, password)
        result = await auth_service.refresh_token(login.refresh_token, IP, UA)
        assert result.expires_at > login.expires_at

    async def test_expired_session(self, auth_service, admin, password, clock):
        login = await _login(auth_service, admin, password)
        clock.advance(minutes=15)
        result = await auth_service.refresh_token(login.refresh_token, IP, UA)
        assert result.error.code == AuthErrorCode.SESSION_EXPIRED

    async def test_session_lapsing_during_account_lookup(
        self, auth_service, accounts, admin, password, clock
    ):
        login = await _login(auth_service, admin, password)
        find_by_id = accounts.find_account_by_id

        def slow_lookup(account_id):
            clock.advance(minutes=16)
            return find_by_id(account_id)

        auth_service.accounts.find_account_by_id = slow_lookup
        result = await auth_service.refresh_token(login.refresh_token, IP, UA)

        assert result.success is False
        assert result.error.code == AuthErrorCode.SESSION_EXPIRED
        assert auth_service.sessions.count() == 0
        assert auth_service.get_active_sessions(admin.id) == []
        entry = _auth_entries(auth_service)[0]
        assert entry.action == "TOKEN_REFRESH" and entry.success is False

    async def test_invalid_token(self, auth_service):
        result = await auth_service.refresh_token("garbage", IP, UA)
        assert result.error.code == AuthErrorCode.INVALID_REFRESH_TOKEN
        assert [e.action for e in _auth_entries(auth_service)] == ["TOKEN_REFRESH"]

    async def test_expired_refresh_token(self, auth_service, admin, password, clock):
        login = await _login(auth_service, admin, password)
        clock.advance(days=7)
        result = await auth_service.refresh_token(login.refresh_token, IP, UA)
        assert result.error.code == AuthErrorCode.REFRESH_TOKEN_EXPIRED

    async def test_deactivated_admin(self, auth_service, accounts, admin, password):
        login = await _login(auth_service, admin, password)
        accounts.set_active(admin.id, False)
        result = await auth_service.refresh_token(login.refresh_token, IP, UA)
        assert result.error.code == AuthErrorCode.ADMIN_NOT_FOUND
        assert auth_service.validate_session(login.session_id) is None

    async def test_permission_snapshot_refreshed(self, auth_service, accounts, admin, password, roles):
        login = await _login(auth_service, admin, password)
        accounts.update_account(admin.id, roles=(roles["auditor"],))
        assert auth_service.has_permission(
            auth_service.validate_session(login.session_id), "manage_admins"
        )
        result = await auth_service.refresh_token(login.refresh_token, IP, UA)
        session = auth_service.validate_session(result.session_id)
        assert not auth_service.has_permission(session, "manage_admins")
        assert auth_service.has_permission(session, "audit_logs")

    async def test_concurrent_refresh_has_one_winner(self, auth_service, admin, password):
        login = await _login(auth_service, admin, password)
        results = await asyncio.gather(
            *(auth_service.refresh_token(login.refresh_token, IP, UA) for _ in range(5))
        )
        assert sum(1 for r in results if r.success) == 1
        assert auth_service.sessions.count() == 1
        refreshes = [e for e in _auth_entries(auth_service) if e.action == "TOKEN_REFRESH"]
        assert len(refreshes) == 5


class TestSessionResolution:
    async def test_resolve_bearer(self, auth_service, admin, password):
        login = await _login(auth_service, admin, password)
        session = auth_service.resolve_session(f"Bearer {login.token}")
        assert session.session_id == login.session_id
        assert await auth_service.authenticate(f"Bearer {login.token}") == session

    async def test_token_for_logged_out_session(self, auth_service, admin, password):
        login = await _login(auth_service, admin, password)
        await auth_service.logout(login.session_id, IP, UA)
        failure = auth_service.resolve_session(f"Bearer {login.token}")
        assert failure.code == AuthErrorCode.SESSION_NOT_FOUND

    def test_missing_header(self, auth_service):
        assert auth_service.resolve_session(None).code == AuthErrorCode.INVALID_TOKEN


class TestAdministration:
    async def test_revoke_all_sessions(self, auth_service, admin, password):
        for _ in range(3):
            await _login(auth_service, admin, password)
        revoked = await auth_service.revoke_all_sessions(
            admin.id, IP, UA, actor_id="admin_boss", actor_email="boss@example.com"
        )
        assert revoked == 3
        assert auth_service.get_active_sessions(admin.id) == []
        entry = _auth_entries(auth_service)[0]
        assert entry.action == "REVOKE_ALL_SESSIONS"
        assert entry.details == {"revokedSessions": 3, "revokedBy": "admin_boss"}

    async def test_revoke_with_no_sessions_still_audited(self, auth_service, admin):
        assert await auth_service.revoke_all_sessions(admin.id, IP, UA) == 0
        assert _auth_entries(auth_service)[0].details["revokedSessions"] == 0

    def test_manual_block_writes_both_entries(self, auth_service):
        assert auth_service.block_ip("192.0.2.9", "abuse", "admin_1", "ops@example.com") is True
        actions = [e.action for e in auth_service.get_audit_logs()]
        assert actions == ["MANUAL_IP_BLOCK", "IP_BLOCKED"]
        assert auth_service.get_blocked_ips()[0]["ipAddress"] == "192.0.2.9"
        assert auth_service.unblock_ip("192.0.2.9", "admin_1", "ops@example.com") is True

    async def test_audit_queries(self, auth_service, admin, password):
        await _login(auth_service, admin, password)
        await auth_service.login(_creds(admin.email, "wrong"), IP, UA)
        assert len(auth_service.search_audit_logs("FAILED")) == 1
        stats = auth_service.get_audit_stats()
        assert stats["failedActions"] == 1
        assert "LOGIN_SUCCESS" in auth_service.export_audit_logs("json")


class TestAuditCompleteness:
    async def test_every_call_writes_exactly_one_entry(
        self, auth_service, accounts, admin, mfa_admin, password
    ):
        calls = 0

        async def run(coro):
            nonlocal calls
            calls += 1
            return await coro

        await run(auth_service.login(_creds("ghost@example.com", "x"), IP, UA))
        await run(auth_service.login(_creds(admin.email, "wrong"), IP, UA))
        await run(auth_service.login(_creds(mfa_admin.email, password), IP, UA))
        await run(auth_service.login(_creds(mfa_admin.email, password, "000000"), IP, UA))
        login = await run(auth_service.login(_creds(admin.email, password), IP, UA))
        refreshed = await run(auth_service.refresh_token(login.refresh_token, IP, UA))
        await run(auth_service.refresh_token(login.refresh_token, IP, UA))
        await run(auth_service.refresh_token("junk", IP, UA))
        await run(auth_service.logout(refreshed.session_id, IP, UA))
        await run(auth_service.logout("no-such-session", IP, UA))

        assert len(_auth_entries(auth_service)) == calls


class TestMaintenance:
    async def test_from_settings_builds_worker_when_enabled(self, accounts, settings, clock, credentials):
        service = AdminAuthService.from_settings(
            accounts,
            settings.model_copy(update={"maintenance_enabled": True}),
            clock=clock,
            credentials=credentials,
        )
        assert [job.name for job in service.maintenance.jobs] == [
            "session_sweep",
            "rate_limit_cleanup",
            "monitor_periodic_checks",
            "monitor_cleanup",
        ]
        await service.start()
        assert service.maintenance.running is True
        await service.stop()
        assert service.maintenance.running is False

"""Tests for the login security monitor: alert rules, dedup and IP blocks."""

from datetime import datetime, timedelta, timezone

import pytest

from warden.service.audit import AuditLogFilter, AuditLogger
from warden.service.rate_limiter import RateLimiter, RateLimiterConfig
from warden.service.security_monitor import ACCOUNT_LOCKED_NOW, MONITOR_RESOURCE, SecurityMonitor
from warden.storage.models import AlertCategory, AlertSeverity, AlertStatus


@pytest.fixture
def audit(clock):
    return AuditLogger(clock=clock)


@pytest.fixture
def limiter(clock):
    return RateLimiter(RateLimiterConfig.login(), clock=clock)


@pytest.fixture
def monitor(audit, limiter, clock):
    return SecurityMonitor(audit, limiter, clock=clock)


def _fail(monitor, email="victim@example.com", ip="198.51.100.7", **metadata):
    return monitor.record_login_attempt(email, ip, "pytest", False, metadata or None)


def _categories(monitor):
    return sorted(alert.category.value for alert in monitor.get_active_alerts())


class TestBruteForce:
    def test_ten_rapid_failures_raise_one_critical_alert(self, monitor, clock):
        for _ in range(9):
            assert _fail(monitor) == []
            clock.advance(seconds=10)
        created = _fail(monitor)
        assert [a.category for a in created] == [AlertCategory.BRUTE_FORCE]
        assert created[0].severity == AlertSeverity.CRITICAL
        assert created[0].details["failedAttempts"] == 10

    def test_failures_outside_window_do_not_count(self, monitor, clock):
        for _ in range(9):
            _fail(monitor)
        clock.advance(minutes=6)
        assert _fail(monitor) == []

    def test_open_alert_suppresses_duplicates(self, monitor):
        for _ in range(15):
            _fail(monitor)
        assert _categories(monitor) == ["BRUTE_FORCE"]

    def test_resolved_alert_allows_new_one(self, monitor):
        for _ in range(10):
            _fail(monitor)
        alert = monitor.get_active_alerts()[0]
        assert monitor.resolve_alert(alert.id, "sec@example.com") is True
        created = _fail(monitor)
        assert [a.category for a in created] == [AlertCategory.BRUTE_FORCE]

    def test_twenty_failures_block_the_ip(self, monitor, audit):
        for _ in range(20):
            _fail(monitor)
        assert monitor.is_ip_blocked("198.51.100.7") is True
        blocks = audit.get_logs(AuditLogFilter(action="IP_BLOCKED"))
        assert len(blocks) == 1
        assert blocks[0].resource == MONITOR_RESOURCE
        assert blocks[0].admin_id == "system"


class TestCredentialStuffing:
    def test_failures_across_accounts_from_one_ip(self, monitor):
        ip = "203.0.113.50"
        for i in range(20):
            _fail(monitor, email=f"user{i % 4}@example.com", ip=ip)
        assert "CREDENTIAL_STUFFING" in _categories(monitor)
        assert monitor.is_ip_blocked(ip) is True

    def test_single_account_is_not_stuffing(self, monitor):
        for _ in range(9):
            _fail(monitor, ip="203.0.113.51")
        for _ in range(11):
            _fail(monitor, email="second@example.com", ip="203.0.113.51")
        assert "CREDENTIAL_STUFFING" not in _categories(monitor)


class TestSuspiciousLogin:
    def test_three_ips_for_one_email(self, monitor):
        for ip in ("10.0.0.1", "10.0.0.2"):
            monitor.record_login_attempt("ops@example.com", ip, "ua", True)
        created = monitor.record_login_attempt("ops@example.com", "10.0.0.3", "ua", True)
        assert [a.category for a in created] == [AlertCategory.SUSPICIOUS_LOGIN]
        assert created[0].severity == AlertSeverity.MEDIUM
        assert created[0].details["ipCount"] == 3

    def test_unusual_hours(self, audit, limiter, make_clock):
        clock = make_clock(datetime(2024, 1, 10, 3, 0, tzinfo=timezone.utc))
        monitor = SecurityMonitor(audit, limiter, clock=clock)
        created = []
        for _ in range(5):
            created += monitor.record_login_attempt("ops@example.com", "10.0.0.1", "ua", True)
            clock.advance(minutes=5)
        assert [(a.category, a.severity) for a in created] == [
            (AlertCategory.SUSPICIOUS_LOGIN, AlertSeverity.LOW)
        ]

    def test_daytime_attempts_are_not_unusual(self, monitor):
        for _ in range(5):
            monitor.record_login_attempt("ops@example.com", "10.0.0.1", "ua", True)
        assert monitor.get_active_alerts() == []


class TestOtherRules:
    def test_rate_limited_key_raises_alert(self, monitor, limiter):
        for _ in range(10):
            limiter.acquire("login:ops@example.com:10.0.0.9")
        created = _fail(monitor, email="ops@example.com", ip="10.0.0.9", reason="rate_limited")
        assert AlertCategory.RATE_LIMIT_EXCEEDED in [a.category for a in created]

    def test_account_lock_raises_lockout_alert(self, monitor):
        created = _fail(monitor, reason=ACCOUNT_LOCKED_NOW, failedAttempts=5)
        assert [(a.category, a.severity) for a in created] == [
            (AlertCategory.ACCOUNT_LOCKOUT, AlertSeverity.HIGH)
        ]

    def test_periodic_check_flags_many_failures(self, monitor, clock):
        for _ in range(15):
            _fail(monitor, ip="10.1.1.1")
            clock.advance(minutes=3)
        # Spread out so the rapid-failure rule never fired
        assert "BRUTE_FORCE" not in _categories(monitor)
        created = monitor.run_periodic_checks()
        assert [a.category for a in created] == [AlertCategory.MULTIPLE_FAILURES]
        assert monitor.run_periodic_checks() == []

    def test_malformed_input_is_ignored(self, monitor):
        assert monitor.record_login_attempt(None, "10.0.0.1", "ua", False) == []
        assert monitor.get_security_metrics().total_login_attempts == 0


class TestAlertLifecycle:
    def test_acknowledge_then_resolve(self, monitor, audit):
        _fail(monitor, reason=ACCOUNT_LOCKED_NOW)
        alert = monitor.get_active_alerts()[0]

        assert monitor.acknowledge_alert(alert.id, "sec@example.com") is True
        assert monitor.acknowledge_alert(alert.id, "sec@example.com") is False
        assert monitor.get_alert(alert.id).status == AlertStatus.ACKNOWLEDGED
        assert monitor.get_active_alerts()[0].id == alert.id

        assert monitor.resolve_alert(alert.id, "sec@example.com") is True
        assert monitor.resolve_alert(alert.id, "sec@example.com") is False
        assert monitor.get_active_alerts() == []

        actions = [e.action for e in audit.get_logs(AuditLogFilter(resource=MONITOR_RESOURCE))]
        assert actions == [
            "SECURITY_ALERT_RESOLVED",
            "SECURITY_ALERT_ACKNOWLEDGED",
            "SECURITY_ALERT_CREATED",
        ]

    def test_unknown_alert(self, monitor):
        assert monitor.acknowledge_alert("alert_missing", "x") is False
        assert monitor.resolve_alert("alert_missing", "x") is False

    def test_returned_alerts_are_copies(self, monitor):
        _fail(monitor, reason=ACCOUNT_LOCKED_NOW)
        alert = monitor.get_active_alerts()[0]
        alert.details["tampered"] = True
        assert "tampered" not in monitor.get_alert(alert.id).details


class TestBlockList:
    def test_manual_block_and_unblock(self, monitor, audit):
        assert monitor.block_ip("192.0.2.1", "abuse", "admin_1", "ops@example.com") is True
        assert monitor.block_ip("192.0.2.1", "again", "admin_1", "ops@example.com") is False
        blocked = monitor.get_blocked_ips()
        assert blocked[0]["ipAddress"] == "192.0.2.1"
        assert blocked[0]["blockedBy"] == "admin_1"

        assert monitor.unblock_ip("192.0.2.1", "admin_1", "ops@example.com") is True
        assert monitor.unblock_ip("192.0.2.1", "admin_1", "ops@example.com") is False
        assert monitor.is_ip_blocked("192.0.2.1") is False
        actions = [e.action for e in audit.get_logs()]
        assert actions == ["IP_UNBLOCKED", "IP_BLOCKED"]


class TestMetricsAndCleanup:
    def test_metrics_over_default_window(self, monitor, clock):
        monitor.record_login_attempt("ops@example.com", "10.0.0.1", "ua", True)
        _fail(monitor, reason=ACCOUNT_LOCKED_NOW)
        monitor.block_ip("192.0.2.1", "abuse")
        metrics = monitor.get_security_metrics()
        assert metrics.total_login_attempts == 2
        assert metrics.successful_logins == 1
        assert metrics.failed_login_attempts == 1
        assert metrics.blocked_ips == 1
        assert metrics.account_lockouts == 1
        assert metrics.active_alerts == 1
        assert metrics.to_dict()["blockedIPs"] == 1

        clock.advance(hours=25)
        assert monitor.get_security_metrics().total_login_attempts == 0

    def test_metrics_accept_naive_bounds(self, monitor, clock):
        _fail(monitor)
        naive_now = clock.now.replace(tzinfo=None)
        metrics = monitor.get_security_metrics(
            start_date=datetime(2020, 1, 1), end_date=naive_now + timedelta(minutes=1)
        )
        assert metrics.failed_login_attempts == 1
        assert monitor.get_security_metrics(end_date=datetime(2020, 1, 1)).total_login_attempts == 0

    def test_cleanup_drops_old_attempts_and_resolved_alerts(self, monitor, clock):
        _fail(monitor, reason=ACCOUNT_LOCKED_NOW)
        alert = monitor.get_active_alerts()[0]
        monitor.resolve_alert(alert.id, "sec")
        clock.advance(days=8)
        assert monitor.cleanup_old_data() == 2
        assert monitor.get_alert(alert.id) is None

    def test_reset(self, monitor):
        for _ in range(20):
            _fail(monitor)
        monitor.reset()
        assert monitor.get_active_alerts() == []
        assert monitor.get_blocked_ips() == []

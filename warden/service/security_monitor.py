from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from warden.logging import get_logger
from warden.service.audit import AuditLogger
from warden.service.rate_limiter import RateLimiter
from warden.storage.models import (
    AlertCategory,
    AlertSeverity,
    AlertStatus,
    LoginAttempt,
    SecurityAlert,
    SecurityMetrics,
    as_utc,
    utc_now,
)

logger = get_logger(__name__)

MONITOR_RESOURCE = "security_monitor"
ACCOUNT_LOCKED_NOW = "account_locked_now"


@dataclass(frozen=True)
class SuspiciousPattern:
    threshold: int
    window: timedelta
    description: str


RAPID_FAILURES = SuspiciousPattern(10, timedelta(minutes=5), "Multiple rapid failed login attempts")
MULTIPLE_IPS = SuspiciousPattern(3, timedelta(minutes=30), "Login attempts from multiple IP addresses")
UNUSUAL_TIMING = SuspiciousPattern(5, timedelta(hours=1), "Login attempts at unusual hours")
IP_FAILURES = SuspiciousPattern(20, timedelta(minutes=15), "Failed logins across many accounts from one IP")
PERIODIC_FAILURES = SuspiciousPattern(15, timedelta(hours=1), "Excessive failed login attempts detected")

BRUTE_FORCE_BLOCK_THRESHOLD = 20
CREDENTIAL_STUFFING_MIN_EMAILS = 3
UNUSUAL_HOURS = range(2, 7)
HISTORY_RETENTION = timedelta(hours=24)
CLEANUP_RETENTION = timedelta(days=7)


@dataclass
class _BlockRecord:
    reason: str
    blocked_at: datetime
    blocked_by: str


_AlertKey = Tuple[AlertCategory, Optional[str], Optional[str]]


class SecurityMonitor:
    """Tracks login attempts per email and per IP and raises alerts on abuse.

    Histories, alerts and the block list share one lock. Audit writes for
    created alerts and blocks happen after the lock is released.
    """

    def __init__(
        self,
        audit: AuditLogger,
        rate_limiter: RateLimiter,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.audit = audit
        self.rate_limiter = rate_limiter
        self._clock = clock
        self._lock = threading.RLock()
        self._by_email: Dict[str, List[LoginAttempt]] = {}
        self._by_ip: Dict[str, List[LoginAttempt]] = {}
        self._alerts: Dict[str, SecurityAlert] = {}
        self._alert_keys: Dict[str, _AlertKey] = {}
        self._blocked: Dict[str, _BlockRecord] = {}

    # Attempt recording

    def record_login_attempt(
        self,
        email: str,
        ip_address: str,
        user_agent: str,
        success: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[SecurityAlert]:
        """Record one attempt and evaluate the alert rules; never raises."""
        try:
            if not isinstance(email, str) or not isinstance(ip_address, str):
                logger.warning(
                    "security_monitor_malformed_attempt",
                    email_type=type(email).__name__,
                    ip_type=type(ip_address).__name__,
                )
                return []
            return self._record(email.strip().lower(), ip_address, user_agent or "unknown", success, metadata or {})
        except Exception as exc:
            logger.error("security_monitor_record_failed", error=str(exc))
            return []

    def _record(
        self,
        email: str,
        ip_address: str,
        user_agent: str,
        success: bool,
        metadata: Dict[str, Any],
    ) -> List[SecurityAlert]:
        now = self._clock()
        attempt = LoginAttempt(
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
            timestamp=now,
            metadata=dict(metadata),
        )
        rate_key = f"login:{email}:{ip_address}"
        rate_info = self.rate_limiter.get_info(rate_key)

        created: List[SecurityAlert] = []
        blocks: List[Tuple[str, str]] = []
        with self._lock:
            cutoff = now - HISTORY_RETENTION
            email_history = [a for a in self._by_email.get(email, []) if a.timestamp > cutoff]
            email_history.append(attempt)
            self._by_email[email] = email_history
            ip_history = [a for a in self._by_ip.get(ip_address, []) if a.timestamp > cutoff]
            ip_history.append(attempt)
            self._by_ip[ip_address] = ip_history

            def recent(history: List[LoginAttempt], pattern: SuspiciousPattern) -> List[LoginAttempt]:
                return [a for a in history if now - a.timestamp <= pattern.window]

            rapid = [a for a in recent(email_history, RAPID_FAILURES) if not a.success]
            if len(rapid) >= RAPID_FAILURES.threshold:
                self._maybe_alert(
                    created,
                    AlertCategory.BRUTE_FORCE,
                    AlertSeverity.CRITICAL,
                    email,
                    ip_address,
                    user_agent,
                    {
                        "failedAttempts": len(rapid),
                        "timeWindowSeconds": int(RAPID_FAILURES.window.total_seconds()),
                        "pattern": RAPID_FAILURES.description,
                    },
                )
                if len(rapid) >= BRUTE_FORCE_BLOCK_THRESHOLD:
                    blocks.append(
                        (ip_address, f"Brute force attack detected: {len(rapid)} failed attempts")
                    )

            ip_failures = [a for a in recent(ip_history, IP_FAILURES) if not a.success]
            targeted = {a.email for a in ip_failures}
            if (
                len(ip_failures) >= IP_FAILURES.threshold
                and len(targeted) >= CREDENTIAL_STUFFING_MIN_EMAILS
            ):
                self._maybe_alert(
                    created,
                    AlertCategory.CREDENTIAL_STUFFING,
                    AlertSeverity.CRITICAL,
                    None,
                    ip_address,
                    user_agent,
                    {
                        "failedAttempts": len(ip_failures),
                        "distinctEmails": len(targeted),
                        "timeWindowSeconds": int(IP_FAILURES.window.total_seconds()),
                        "pattern": IP_FAILURES.description,
                    },
                )
                blocks.append(
                    (
                        ip_address,
                        f"Credential stuffing detected: {len(ip_failures)} failures across {len(targeted)} accounts",
                    )
                )

            ips = sorted({a.ip_address for a in recent(email_history, MULTIPLE_IPS)})
            if len(ips) >= MULTIPLE_IPS.threshold:
                self._maybe_alert(
                    created,
                    AlertCategory.SUSPICIOUS_LOGIN,
                    AlertSeverity.MEDIUM,
                    email,
                    ip_address,
                    user_agent,
                    {
                        "uniqueIPs": ips,
                        "ipCount": len(ips),
                        "pattern": MULTIPLE_IPS.description,
                    },
                    dedup_key=(AlertCategory.SUSPICIOUS_LOGIN, email, "multiple_ips"),
                )

            odd_hours = [
                a for a in recent(email_history, UNUSUAL_TIMING) if a.timestamp.hour in UNUSUAL_HOURS
            ]
            if len(odd_hours) >= UNUSUAL_TIMING.threshold:
                self._maybe_alert(
                    created,
                    AlertCategory.SUSPICIOUS_LOGIN,
                    AlertSeverity.LOW,
                    email,
                    ip_address,
                    user_agent,
                    {
                        "unusualHourAttempts": len(odd_hours),
                        "hours": [a.timestamp.hour for a in odd_hours],
                        "pattern": UNUSUAL_TIMING.description,
                    },
                    dedup_key=(AlertCategory.SUSPICIOUS_LOGIN, email, "unusual_timing"),
                )

            if rate_info.is_blocked:
                self._maybe_alert(
                    created,
                    AlertCategory.RATE_LIMIT_EXCEEDED,
                    AlertSeverity.HIGH,
                    email,
                    ip_address,
                    user_agent,
                    {
                        **metadata,
                        "rateLimitInfo": rate_info.to_dict(),
                        "pattern": "Rate limit exceeded for login attempts",
                    },
                )

            if not success and metadata.get("reason") == ACCOUNT_LOCKED_NOW:
                self._maybe_alert(
                    created,
                    AlertCategory.ACCOUNT_LOCKOUT,
                    AlertSeverity.HIGH,
                    email,
                    ip_address,
                    user_agent,
                    {**metadata, "pattern": "Account locked after repeated failures"},
                )

            new_blocks = []
            for ip, reason in blocks:
                if ip not in self._blocked:
                    self._blocked[ip] = _BlockRecord(reason, now, "system")
                    new_blocks.append((ip, reason))

        self._publish(created)
        for ip, reason in new_blocks:
            self._audit_block(ip, reason, "system", "system", now)
        return created

    def _open_alert_for(self, key: _AlertKey) -> Optional[SecurityAlert]:
        for alert_id, alert_key in self._alert_keys.items():
            if alert_key == key and self._alerts[alert_id].is_open:
                return self._alerts[alert_id]
        return None

    def _maybe_alert(
        self,
        created: List[SecurityAlert],
        category: AlertCategory,
        severity: AlertSeverity,
        email: Optional[str],
        ip_address: Optional[str],
        user_agent: Optional[str],
        details: Dict[str, Any],
        *,
        dedup_key: Optional[_AlertKey] = None,
    ) -> Optional[SecurityAlert]:
        key = dedup_key or (category, email, ip_address)
        if self._open_alert_for(key) is not None:
            return None
        alert = SecurityAlert(
            id=f"alert_{uuid.uuid4().hex}",
            category=category,
            severity=severity,
            subject_email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            timestamp=self._clock(),
            details=details,
        )
        self._alerts[alert.id] = alert
        self._alert_keys[alert.id] = key
        created.append(replace(alert, details=dict(details)))
        return alert

    def _publish(self, alerts: List[SecurityAlert]) -> None:
        for alert in alerts:
            logger.warning(
                "security_alert",
                alert_id=alert.id,
                alert_type=alert.category.value,
                severity=alert.severity.value,
                subject=alert.subject_email,
                ip_address=alert.ip_address,
            )
            self.audit.log(
                admin_id="system",
                admin_email=alert.subject_email or "system",
                action="SECURITY_ALERT_CREATED",
                resource=MONITOR_RESOURCE,
                resource_id=alert.id,
                details={
                    "alertId": alert.id,
                    "alertType": alert.category.value,
                    "severity": alert.severity.value,
                    **alert.details,
                },
                ip_address=alert.ip_address or "unknown",
                user_agent=alert.user_agent or "system",
                success=True,
                timestamp=alert.timestamp,
            )

    # IP block list

    def is_ip_blocked(self, ip_address: str) -> bool:
        with self._lock:
            return ip_address in self._blocked

    def block_ip(
        self,
        ip_address: str,
        reason: str,
        actor_id: str = "system",
        actor_email: str = "system",
    ) -> bool:
        """Add ``ip_address`` to the block list; returns False if already blocked."""
        now = self._clock()
        with self._lock:
            if ip_address in self._blocked:
                return False
            self._blocked[ip_address] = _BlockRecord(reason, now, actor_id)
        self._audit_block(ip_address, reason, actor_id, actor_email, now)
        return True

    def _audit_block(
        self, ip_address: str, reason: str, actor_id: str, actor_email: str, now: datetime
    ) -> None:
        logger.warning("ip_blocked", ip_address=ip_address, reason=reason, actor_id=actor_id)
        self.audit.log(
            admin_id=actor_id,
            admin_email=actor_email,
            action="IP_BLOCKED",
            resource=MONITOR_RESOURCE,
            resource_id=ip_address,
            details={"ipAddress": ip_address, "reason": reason, "blockedAt": now.isoformat()},
            ip_address=ip_address,
            user_agent="system",
            success=True,
            timestamp=now,
        )

    def unblock_ip(self, ip_address: str, actor_id: str, actor_email: str) -> bool:
        now = self._clock()
        with self._lock:
            record = self._blocked.pop(ip_address, None)
        if record is None:
            return False
        logger.info("ip_unblocked", ip_address=ip_address, actor_id=actor_id)
        self.audit.log(
            admin_id=actor_id,
            admin_email=actor_email,
            action="IP_UNBLOCKED",
            resource=MONITOR_RESOURCE,
            resource_id=ip_address,
            details={
                "ipAddress": ip_address,
                "unblockedAt": now.isoformat(),
                "blockedReason": record.reason,
            },
            ip_address=ip_address,
            user_agent="admin-action",
            success=True,
            timestamp=now,
        )
        return True

    def get_blocked_ips(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {
                    "ipAddress": ip,
                    "reason": record.reason,
                    "blockedAt": record.blocked_at.isoformat(),
                    "blockedBy": record.blocked_by,
                }
                for ip, record in self._blocked.items()
            ]

    # Alerts

    @staticmethod
    def _public(alert: SecurityAlert) -> SecurityAlert:
        return replace(alert, details=dict(alert.details))

    def get_active_alerts(self) -> List[SecurityAlert]:
        with self._lock:
            open_alerts = [self._public(a) for a in self._alerts.values() if a.is_open]
        open_alerts.sort(key=lambda a: a.timestamp, reverse=True)
        return open_alerts

    def get_alert(self, alert_id: str) -> Optional[SecurityAlert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return self._public(alert) if alert else None

    def acknowledge_alert(self, alert_id: str, actor: str) -> bool:
        now = self._clock()
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.status != AlertStatus.ACTIVE:
                return False
            alert.status = AlertStatus.ACKNOWLEDGED
            alert.acknowledged_at = now
            alert.acknowledged_by = actor
            category = alert.category
            ip_address = alert.ip_address
        self.audit.log(
            admin_id=actor,
            admin_email=actor,
            action="SECURITY_ALERT_ACKNOWLEDGED",
            resource=MONITOR_RESOURCE,
            resource_id=alert_id,
            details={"alertId": alert_id, "alertType": category.value},
            ip_address=ip_address or "unknown",
            user_agent="admin-action",
            success=True,
            timestamp=now,
        )
        return True

    def resolve_alert(self, alert_id: str, actor: str) -> bool:
        now = self._clock()
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.status == AlertStatus.RESOLVED:
                return False
            alert.status = AlertStatus.RESOLVED
            alert.resolved_at = now
            alert.resolved_by = actor
            category = alert.category
            ip_address = alert.ip_address
        self.audit.log(
            admin_id=actor,
            admin_email=actor,
            action="SECURITY_ALERT_RESOLVED",
            resource=MONITOR_RESOURCE,
            resource_id=alert_id,
            details={
                "alertId": alert_id,
                "alertType": category.value,
                "resolvedAt": now.isoformat(),
            },
            ip_address=ip_address or "unknown",
            user_agent="admin-action",
            success=True,
            timestamp=now,
        )
        return True

    # Metrics and maintenance

    def get_security_metrics(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> SecurityMetrics:
        end = as_utc(end_date) or self._clock()
        start = as_utc(start_date) or end - timedelta(hours=24)
        with self._lock:
            attempts = [
                a
                for history in self._by_email.values()
                for a in history
                if start < a.timestamp <= end
            ]
            alerts = list(self._alerts.values())
            blocked = len(self._blocked)
        in_range = [a for a in alerts if start < a.timestamp <= end]
        successful = sum(1 for a in attempts if a.success)
        return SecurityMetrics(
            total_login_attempts=len(attempts),
            failed_login_attempts=len(attempts) - successful,
            successful_logins=successful,
            blocked_ips=blocked,
            active_alerts=sum(1 for a in alerts if a.is_open),
            account_lockouts=sum(
                1 for a in in_range if a.category == AlertCategory.ACCOUNT_LOCKOUT
            ),
            suspicious_activities=sum(
                1
                for a in in_range
                if a.category
                in (
                    AlertCategory.SUSPICIOUS_LOGIN,
                    AlertCategory.BRUTE_FORCE,
                    AlertCategory.CREDENTIAL_STUFFING,
                )
            ),
        )

    def run_periodic_checks(self) -> List[SecurityAlert]:
        now = self._clock()
        created: List[SecurityAlert] = []
        with self._lock:
            for email, history in self._by_email.items():
                failures = [
                    a
                    for a in history
                    if not a.success and now - a.timestamp <= PERIODIC_FAILURES.window
                ]
                if len(failures) >= PERIODIC_FAILURES.threshold:
                    self._maybe_alert(
                        created,
                        AlertCategory.MULTIPLE_FAILURES,
                        AlertSeverity.HIGH,
                        email,
                        failures[-1].ip_address,
                        "periodic-check",
                        {
                            "failureCount": len(failures),
                            "timeWindow": "1 hour",
                            "pattern": PERIODIC_FAILURES.description,
                        },
                        dedup_key=(AlertCategory.MULTIPLE_FAILURES, email, None),
                    )
        self._publish(created)
        return created

    def cleanup_old_data(self) -> int:
        """Drop week-old attempts and long-resolved alerts; returns items removed."""
        cutoff = self._clock() - CLEANUP_RETENTION
        removed = 0
        with self._lock:
            for index in (self._by_email, self._by_ip):
                for key in list(index.keys()):
                    kept = [a for a in index[key] if a.timestamp > cutoff]
                    if index is self._by_email:
                        removed += len(index[key]) - len(kept)
                    if kept:
                        index[key] = kept
                    else:
                        del index[key]
            stale = [
                alert_id
                for alert_id, alert in self._alerts.items()
                if alert.status == AlertStatus.RESOLVED
                and alert.resolved_at is not None
                and alert.resolved_at < cutoff
            ]
            for alert_id in stale:
                del self._alerts[alert_id]
                self._alert_keys.pop(alert_id, None)
            removed += len(stale)
        if removed:
            logger.info("security_monitor_cleanup", removed=removed)
        return removed

    def reset(self) -> None:
        with self._lock:
            self._by_email.clear()
            self._by_ip.clear()
            self._alerts.clear()
            self._alert_keys.clear()
            self._blocked.clear()

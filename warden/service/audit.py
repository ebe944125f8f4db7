from __future__ import annotations

import copy
import csv
import io
import json
import threading
import uuid
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from warden.logging import get_logger
from warden.service.errors import ValidationError
from warden.storage.models import AuditLogEntry, as_utc, utc_now

logger = get_logger(__name__)

CSV_HEADERS = [
    "ID",
    "Admin ID",
    "Admin Email",
    "Action",
    "Resource",
    "Resource ID",
    "Success",
    "Error",
    "IP Address",
    "User Agent",
    "Timestamp",
    "Details",
]


class AuditSink(Protocol):
    def persist(self, entry: AuditLogEntry) -> None: ...


class NullAuditSink:
    def persist(self, entry: AuditLogEntry) -> None:
        return None


class LoggingAuditSink:
    """Mirror audit entries into the structured application log."""

    def __init__(self) -> None:
        self.logger = get_logger("warden.audit")

    def persist(self, entry: AuditLogEntry) -> None:
        emit = self.logger.info if entry.success else self.logger.warning
        emit(
            "audit_entry",
            audit_id=entry.id,
            admin_id=entry.admin_id,
            action=entry.action,
            resource=entry.resource,
            success=entry.success,
            ip_address=entry.ip_address,
            audit_error=entry.error,
        )


class JsonlFileAuditSink:
    """Append one JSON document per entry to a local file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def persist(self, entry: AuditLogEntry) -> None:
        line = json.dumps(entry.to_dict(), default=str)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")


class CallbackAuditSink:
    """Hand entries to an externally supplied ``persist_audit_entry`` callable."""

    def __init__(self, persist_audit_entry: Callable[[AuditLogEntry], Any]) -> None:
        self._callback = persist_audit_entry

    def persist(self, entry: AuditLogEntry) -> None:
        self._callback(entry)


@dataclass(frozen=True)
class AuditLogFilter:
    admin_id: Optional[str] = None
    action: Optional[str] = None
    resource: Optional[str] = None
    success: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: Optional[int] = None
    offset: int = 0

    def __post_init__(self) -> None:
        # Query strings parse to naive datetimes; stored timestamps are UTC
        object.__setattr__(self, "start_date", as_utc(self.start_date))
        object.__setattr__(self, "end_date", as_utc(self.end_date))

    def matches(self, entry: AuditLogEntry) -> bool:
        if self.admin_id is not None and entry.admin_id != self.admin_id:
            return False
        if self.action and self.action.lower() not in entry.action.lower():
            return False
        if self.resource is not None and entry.resource != self.resource:
            return False
        if self.success is not None and entry.success != self.success:
            return False
        if self.start_date is not None and entry.timestamp < self.start_date:
            return False
        if self.end_date is not None and entry.timestamp > self.end_date:
            return False
        return True


class AuditLogger:
    """Append-only record of administrative actions.

    Entries are kept in append order behind a lock; queries return
    newest-first with ties broken by append order. Sinks run after the
    entry is committed and outside the lock, and their failures are logged
    rather than propagated.
    """

    def __init__(
        self,
        sinks: Optional[Iterable[AuditSink]] = None,
        *,
        retention_days: int = 90,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.sinks: List[AuditSink] = list(sinks or [])
        self.retention_days = retention_days
        self._clock = clock
        self._lock = threading.Lock()
        # (sequence, entry) pairs; sequence breaks timestamp ties
        self._entries: List[tuple[int, AuditLogEntry]] = []
        self._seq = 0

    def log(
        self,
        *,
        admin_id: str,
        admin_email: str,
        action: str,
        resource: str,
        details: Optional[Dict[str, Any]] = None,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
        success: bool,
        resource_id: Optional[str] = None,
        error: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            id=f"audit_{uuid.uuid4().hex}",
            admin_id=admin_id,
            admin_email=admin_email,
            action=action,
            resource=resource,
            resource_id=resource_id,
            details=dict(details or {}),
            ip_address=ip_address,
            user_agent=user_agent,
            timestamp=timestamp or self._clock(),
            success=success,
            error=error,
        )
        with self._lock:
            self._seq += 1
            self._entries.append((self._seq, entry))
        self._fan_out(entry)
        return self._detached(entry)

    def _fan_out(self, entry: AuditLogEntry) -> None:
        for sink in self.sinks:
            try:
                sink.persist(self._detached(entry))
            except Exception as exc:
                logger.error(
                    "audit_sink_failed",
                    sink=type(sink).__name__,
                    audit_id=entry.id,
                    error=str(exc),
                )

    def log_success(
        self,
        admin_id: str,
        admin_email: str,
        action: str,
        resource: str,
        details: Optional[Dict[str, Any]],
        ip_address: str,
        user_agent: str,
        resource_id: Optional[str] = None,
    ) -> AuditLogEntry:
        return self.log(
            admin_id=admin_id,
            admin_email=admin_email,
            action=action,
            resource=resource,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            success=True,
            resource_id=resource_id,
        )

    def log_failure(
        self,
        admin_id: str,
        admin_email: str,
        action: str,
        resource: str,
        error: str,
        details: Optional[Dict[str, Any]],
        ip_address: str,
        user_agent: str,
        resource_id: Optional[str] = None,
    ) -> AuditLogEntry:
        return self.log(
            admin_id=admin_id,
            admin_email=admin_email,
            action=action,
            resource=resource,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
            resource_id=resource_id,
            error=error,
        )

    @staticmethod
    def _detached(entry: AuditLogEntry) -> AuditLogEntry:
        return replace(entry, details=copy.deepcopy(entry.details))

    def _newest_first(self) -> List[AuditLogEntry]:
        with self._lock:
            ordered = sorted(
                self._entries, key=lambda pair: (pair[1].timestamp, pair[0]), reverse=True
            )
        return [entry for _, entry in ordered]

    def get_logs(self, filters: Optional[AuditLogFilter] = None) -> List[AuditLogEntry]:
        filters = filters or AuditLogFilter()
        matched = [entry for entry in self._newest_first() if filters.matches(entry)]
        if filters.offset:
            matched = matched[filters.offset:]
        if filters.limit is not None:
            matched = matched[: filters.limit]
        return [self._detached(entry) for entry in matched]

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        entries = self.get_logs(AuditLogFilter(start_date=start_date, end_date=end_date))
        actions = Counter(entry.action for entry in entries)
        resources = Counter(entry.resource for entry in entries)
        successful = sum(1 for entry in entries if entry.success)
        return {
            "totalLogs": len(entries),
            "successfulActions": successful,
            "failedActions": len(entries) - successful,
            "uniqueAdmins": len({entry.admin_id for entry in entries}),
            "topActions": [
                {"action": action, "count": count}
                for action, count in actions.most_common(10)
            ],
            "topResources": [
                {"resource": resource, "count": count}
                for resource, count in resources.most_common(10)
            ],
        }

    def search_logs(self, term: str, limit: int = 100) -> List[AuditLogEntry]:
        needle = term.lower()
        results: List[AuditLogEntry] = []
        for entry in self._newest_first():
            haystacks = [entry.action, entry.resource, entry.admin_email, entry.error or ""]
            if entry.details:
                haystacks.append(json.dumps(entry.details, default=str))
            if any(needle in hay.lower() for hay in haystacks):
                results.append(self._detached(entry))
                if len(results) >= limit:
                    break
        return results

    def export_logs(
        self, format: str = "json", filters: Optional[AuditLogFilter] = None
    ) -> str:
        entries = self.get_logs(filters)
        fmt = (format or "json").lower()
        if fmt == "json":
            return json.dumps([entry.to_dict() for entry in entries], indent=2, default=str)
        if fmt == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(CSV_HEADERS)
            for entry in entries:
                writer.writerow(
                    [
                        entry.id,
                        entry.admin_id,
                        entry.admin_email,
                        entry.action,
                        entry.resource,
                        entry.resource_id or "",
                        "true" if entry.success else "false",
                        entry.error or "",
                        entry.ip_address,
                        entry.user_agent,
                        entry.timestamp.isoformat(),
                        json.dumps(entry.details, default=str),
                    ]
                )
            return buffer.getvalue()
        raise ValidationError(
            f"unsupported export format: {format}", detail={"format": format}
        )

    def cleanup_old_logs(self, retention_days: Optional[int] = None) -> int:
        days = retention_days if retention_days is not None else self.retention_days
        cutoff = self._clock() - timedelta(days=days)
        with self._lock:
            before = len(self._entries)
            self._entries = [pair for pair in self._entries if pair[1].timestamp >= cutoff]
            removed = before - len(self._entries)
        if removed:
            logger.info("audit_retention_purge", removed=removed, retention_days=days)
        return removed

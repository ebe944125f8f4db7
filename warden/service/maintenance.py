"""Background worker for periodic security housekeeping.

The worker wakes on a fixed tick and runs each registered job whose
interval has elapsed:
- sweeping expired sessions
- dropping idle rate-limit keys
- periodic security monitor checks
- pruning old monitor history
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from warden.logging import get_logger

if TYPE_CHECKING:
    from warden.config import Settings
    from warden.service.rate_limiter import RateLimiter
    from warden.service.security_monitor import SecurityMonitor
    from warden.service.sessions import SessionRegistry

logger = get_logger(__name__)

DEFAULT_TICK_SECONDS = 30
MAX_BACKOFF_SECONDS = 300


@dataclass
class MaintenanceJob:
    name: str
    interval: float
    run: Callable[[], object]
    last_run: float = field(default=0.0)


class MaintenanceWorker:
    """Cancelable recurring task driving the housekeeping jobs."""

    def __init__(
        self,
        jobs: Optional[List[MaintenanceJob]] = None,
        *,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.jobs: List[MaintenanceJob] = list(jobs or [])
        self.tick_seconds = tick_seconds
        self._monotonic = monotonic
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def for_services(
        cls,
        settings: "Settings",
        sessions: "SessionRegistry",
        rate_limiter: "RateLimiter",
        monitor: "SecurityMonitor",
    ) -> "MaintenanceWorker":
        jobs = [
            MaintenanceJob(
                "session_sweep", settings.session_cleanup_interval_seconds, sessions.sweep_expired
            ),
            MaintenanceJob(
                "rate_limit_cleanup",
                settings.rate_limit_cleanup_interval_seconds,
                rate_limiter.cleanup,
            ),
            MaintenanceJob(
                "monitor_periodic_checks",
                settings.monitor_check_interval_seconds,
                monitor.run_periodic_checks,
            ),
            MaintenanceJob(
                "monitor_cleanup",
                settings.monitor_cleanup_interval_seconds,
                monitor.cleanup_old_data,
            ),
        ]
        tick = min(DEFAULT_TICK_SECONDS, min(job.interval for job in jobs))
        return cls(jobs, tick_seconds=tick)

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("maintenance_worker_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "maintenance_worker_started",
            tick_seconds=self.tick_seconds,
            jobs=[job.name for job in self.jobs],
        )

    async def stop(self) -> None:
        """Stop the background worker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("maintenance_worker_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_due_jobs()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "maintenance_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.tick_seconds * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "maintenance_worker_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.tick_seconds)

    async def run_due_jobs(self, *, force: bool = False) -> Dict[str, object]:
        """Run every job whose interval has elapsed; returns results by job name."""
        results: Dict[str, object] = {}
        now = self._monotonic()
        for job in self.jobs:
            if not force and job.last_run and (now - job.last_run) < job.interval:
                continue
            job.last_run = now
            try:
                results[job.name] = await asyncio.to_thread(job.run)
            except Exception as exc:
                logger.warning("maintenance_job_failed", job=job.name, error=str(exc))
                results[job.name] = exc
        return results

"""Thread-safety tests: one service shared by several event loops."""

import asyncio
import threading

from warden.service.audit import AuditLogFilter
from warden.service.auth import AUTH_RESOURCE
from warden.storage.models import AlertCategory, LoginCredentials

IP = "198.51.100.30"


def _run_in_threads(count, factory):
    results = []
    lock = threading.Lock()
    barrier = threading.Barrier(count)

    def worker(n):
        barrier.wait()
        result = asyncio.run(factory(n))
        with lock:
            results.append(result)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


class TestParallelLogins:
    def test_parallel_failures_lock_exactly_once(self, auth_service, accounts, admin):
        results = _run_in_threads(
            8,
            lambda n: auth_service.login(
                LoginCredentials(email=admin.email, password="wrong"), IP, "ua"
            ),
        )

        assert all(not r.success for r in results)
        stored = accounts.find_account_by_id(admin.id)
        assert stored.locked_until is not None
        assert stored.failed_login_attempts >= 5

        entries = auth_service.get_audit_logs(AuditLogFilter(resource=AUTH_RESOURCE))
        assert len(entries) == 8
        assert [e.action for e in entries].count("ACCOUNT_LOCKED") == 1
        lockouts = [
            a
            for a in auth_service.get_active_security_alerts()
            if a.category == AlertCategory.ACCOUNT_LOCKOUT
        ]
        assert len(lockouts) == 1

    def test_parallel_successes_get_distinct_sessions(self, auth_service, admin, password):
        results = _run_in_threads(
            10,
            lambda n: auth_service.login(
                LoginCredentials(email=admin.email, password=password), f"10.0.0.{n}", "ua"
            ),
        )
        assert all(r.success for r in results)
        assert len({r.session_id for r in results}) == 10
        assert len(auth_service.get_active_sessions(admin.id)) == 10


class TestParallelRefresh:
    def test_single_winner_across_event_loops(self, auth_service, admin, password):
        login = asyncio.run(
            auth_service.login(LoginCredentials(email=admin.email, password=password), IP, "ua")
        )
        results = _run_in_threads(
            6, lambda n: auth_service.refresh_token(login.refresh_token, IP, "ua")
        )
        assert sum(1 for r in results if r.success) == 1
        assert auth_service.sessions.count() == 1
        refreshes = auth_service.get_audit_logs(AuditLogFilter(action="TOKEN_REFRESH"))
        assert len(refreshes) == 6


class TestSweepDuringLogins:
    def test_sweep_and_logins_interleave(self, auth_service, admin, password, clock):
        stop = threading.Event()
        swept = []

        def sweeper():
            while not stop.is_set():
                swept.append(auth_service.sessions.sweep_expired())

        thread = threading.Thread(target=sweeper)
        thread.start()
        try:
            results = _run_in_threads(
                5,
                lambda n: auth_service.login(
                    LoginCredentials(email=admin.email, password=password), IP, "ua"
                ),
            )
        finally:
            stop.set()
            thread.join()

        assert all(r.success for r in results)
        assert sum(swept) == 0
        clock.advance(minutes=15)
        assert auth_service.sessions.sweep_expired() == 5

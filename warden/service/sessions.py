from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Tuple

from warden.logging import get_logger
from warden.storage.memory import MemorySessionStore
from warden.storage.models import AdminPermission, Session, SessionState, utc_now

logger = get_logger(__name__)


class SessionRegistry:
    """Active admin sessions keyed by session id.

    A session is live while ``now < expires_at``. Expired, revoked and
    rotated sessions are removed from the table; every read that observes
    an expired entry evicts it under the same lock, so a sweep and a
    validation never disagree about a given id.
    """

    def __init__(
        self,
        store: Optional[MemorySessionStore] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store or MemorySessionStore()
        self._clock = clock

    def insert(self, session: Session) -> bool:
        inserted = self.store.insert_if_absent(session)
        if not inserted:
            logger.warning("session_id_collision", admin_id=session.admin_id)
        return inserted

    def lookup(self, session_id: str) -> Tuple[Optional[Session], SessionState]:
        session, state = self.store.lookup_live(session_id, self._clock())
        if state == SessionState.EXPIRED:
            logger.info("session_expired", admin_id=session.admin_id if session else None)
        return session, state

    def validate_session(self, session_id: str) -> Optional[Session]:
        session, state = self.lookup(session_id)
        return session if state == SessionState.ACTIVE else None

    def remove(self, session_id: str) -> Optional[Session]:
        return self.store.pop(session_id)

    def rotate(self, old_session_id: str, new_session: Session) -> SessionState:
        """Swap ``old_session_id`` for ``new_session``.

        ACTIVE on success; MISSING if the old id is gone; EXPIRED if it lapsed
        before the swap, in which case it is evicted.
        """
        state = self.store.replace(old_session_id, new_session, self._clock())
        if state == SessionState.EXPIRED:
            logger.info("session_expired", admin_id=new_session.admin_id)
        return state

    def revoke_all(self, admin_id: str) -> List[Session]:
        revoked = self.store.pop_admin(admin_id)
        if revoked:
            logger.info("sessions_revoked", admin_id=admin_id, count=len(revoked))
        return revoked

    def list_sessions(self, admin_id: Optional[str] = None) -> List[Session]:
        now = self._clock()
        sessions = [s for s in self.store.list(admin_id) if not s.is_expired(now)]
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions

    def sweep_expired(self) -> int:
        removed = self.store.pop_expired(self._clock())
        if removed:
            logger.info("expired_sessions_swept", count=len(removed))
        return len(removed)

    def count(self) -> int:
        return self.store.count()

    @staticmethod
    def has_permission(session: Optional[Session], permission: AdminPermission | str) -> bool:
        if session is None:
            return False
        try:
            wanted = AdminPermission(permission)
        except ValueError:
            return False
        return wanted in session.permissions

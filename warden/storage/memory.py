from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from warden.logging import get_logger
from warden.storage.models import (
    AdminAccount,
    AdminPermission,
    AdminRole,
    CounterAcquire,
    CounterWindow,
    FailedLoginState,
    Session,
    SessionState,
    utc_now,
)


class MemoryCounterStore:
    """Sliding-log attempt counters kept in process memory.

    Every key maps to a list of ``(timestamp, attempt_id)`` pairs ordered by
    timestamp. An attempt stays in the window while ``ts > now - window``.
    All reads and writes go through one lock so the count-then-append in
    :meth:`try_acquire` is atomic per store.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._attempts: Dict[str, List[Tuple[float, str]]] = {}

    @staticmethod
    def _prune(entries: List[Tuple[float, str]], cutoff: float) -> List[Tuple[float, str]]:
        idx = 0
        while idx < len(entries) and entries[idx][0] <= cutoff:
            idx += 1
        return entries[idx:] if idx else entries

    def try_acquire(
        self, key: str, limit: int, window_seconds: float, now: float
    ) -> CounterAcquire:
        with self._lock:
            entries = self._prune(self._attempts.get(key, []), now - window_seconds)
            if len(entries) >= limit:
                self._attempts[key] = entries
                return CounterAcquire(
                    allowed=False,
                    attempt_id=None,
                    count=len(entries),
                    oldest=entries[0][0] if entries else None,
                )
            attempt_id = uuid.uuid4().hex
            entries.append((now, attempt_id))
            self._attempts[key] = entries
            return CounterAcquire(
                allowed=True,
                attempt_id=attempt_id,
                count=len(entries),
                oldest=entries[0][0],
            )

    def release(self, key: str, attempt_id: str) -> bool:
        with self._lock:
            entries = self._attempts.get(key)
            if not entries:
                return False
            remaining = [entry for entry in entries if entry[1] != attempt_id]
            if len(remaining) == len(entries):
                return False
            if remaining:
                self._attempts[key] = remaining
            else:
                self._attempts.pop(key, None)
            return True

    def snapshot(self, key: str, window_seconds: float, now: float) -> CounterWindow:
        with self._lock:
            entries = self._prune(self._attempts.get(key, []), now - window_seconds)
            if not entries:
                self._attempts.pop(key, None)
                return CounterWindow(count=0)
            self._attempts[key] = entries
            return CounterWindow(count=len(entries), oldest=entries[0][0])

    def reset(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(key, None)

    def reset_all(self) -> None:
        with self._lock:
            self._attempts.clear()

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._attempts.keys())

    def purge(self, window_seconds: float, now: float) -> int:
        """Drop keys with no attempts left in the window; returns keys removed."""
        cutoff = now - window_seconds
        removed = 0
        with self._lock:
            for key in list(self._attempts.keys()):
                entries = self._prune(self._attempts[key], cutoff)
                if entries:
                    self._attempts[key] = entries
                else:
                    del self._attempts[key]
                    removed += 1
        return removed


class MemorySessionStore:
    """Active session table with a per-admin index, guarded by one lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._by_admin: Dict[str, set[str]] = {}

    def _add(self, session: Session) -> None:
        self._sessions[session.session_id] = session
        self._by_admin.setdefault(session.admin_id, set()).add(session.session_id)

    def _discard(self, session_id: str) -> Optional[Session]:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        ids = self._by_admin.get(session.admin_id)
        if ids is not None:
            ids.discard(session_id)
            if not ids:
                self._by_admin.pop(session.admin_id, None)
        return session

    def insert_if_absent(self, session: Session) -> bool:
        with self._lock:
            if session.session_id in self._sessions:
                return False
            self._add(session)
            return True

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def lookup_live(
        self, session_id: str, now: datetime
    ) -> Tuple[Optional[Session], SessionState]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None, SessionState.MISSING
            if session.is_expired(now):
                self._discard(session_id)
                return session, SessionState.EXPIRED
            return session, SessionState.ACTIVE

    def pop(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._discard(session_id)

    def replace(self, old_id: str, new_session: Session, now: datetime) -> SessionState:
        """Swap ``old_id`` for ``new_session`` in one step.

        An old session found expired at ``now`` is evicted instead of
        replaced; ACTIVE means the swap happened.
        """
        with self._lock:
            old = self._sessions.get(old_id)
            if old is None or new_session.session_id in self._sessions:
                return SessionState.MISSING
            if old.is_expired(now):
                self._discard(old_id)
                return SessionState.EXPIRED
            self._discard(old_id)
            self._add(new_session)
            return SessionState.ACTIVE

    def pop_admin(self, admin_id: str) -> List[Session]:
        with self._lock:
            ids = list(self._by_admin.get(admin_id, ()))
            removed = [self._discard(sid) for sid in ids]
            return [session for session in removed if session is not None]

    def pop_expired(self, now: datetime) -> List[Session]:
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            removed = [self._discard(sid) for sid in expired]
            return [session for session in removed if session is not None]

    def list(self, admin_id: Optional[str] = None) -> List[Session]:
        with self._lock:
            if admin_id is None:
                return list(self._sessions.values())
            return [self._sessions[sid] for sid in self._by_admin.get(admin_id, ())]

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._by_admin.clear()


class AccountNotFound(KeyError):
    pass


class MemoryAccountStore:
    """Reference account store: argon2 hashes, Fernet-encrypted MFA secrets.

    Accounts optionally persist to ``<fs_root>/state/accounts.json`` so that
    ``scripts/bootstrap_admin.py`` and the API process share one store on a
    single node.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/warden",
        *,
        mfa_encryption_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self._data_lock = threading.RLock()
        self._accounts: Dict[str, AdminAccount] = {}
        self._email_index: Dict[str, str] = {}
        self.fs_root = Path(fs_root)
        self.persist = persist
        if persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        if persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = (
            key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        )
        if not material:
            secret_path = self.fs_root / ".mfa_key"
            try:
                if secret_path.exists():
                    material = secret_path.read_text().strip()
            except OSError as exc:
                self.logger.warning("mfa_key_read_failed", error=str(exc))
            if not material:
                material = secrets.token_urlsafe(64)
                if self.persist:
                    try:
                        secret_path.parent.mkdir(parents=True, exist_ok=True)
                        secret_path.write_text(material)
                        os.chmod(secret_path, 0o600)
                    except OSError as exc:
                        raise RuntimeError("Unable to persist MFA encryption key") from exc
        try:
            return Fernet(self._derive_cipher_key(material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def _encrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    def _public(self, account: AdminAccount) -> AdminAccount:
        # Stored copies hold the encrypted secret; callers get plaintext copies
        return replace(account, mfa_secret=self._decrypt_mfa_secret(account.mfa_secret))

    def _require(self, account_id: str) -> AdminAccount:
        account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    # AccountStore protocol

    def find_account_by_email(self, email: str) -> Optional[AdminAccount]:
        with self._data_lock:
            account_id = self._email_index.get(email.strip().lower())
            if account_id is None:
                return None
            return self._public(self._accounts[account_id])

    def find_account_by_id(self, account_id: str) -> Optional[AdminAccount]:
        with self._data_lock:
            account = self._accounts.get(account_id)
            return self._public(account) if account else None

    def record_failed_login(
        self,
        account_id: str,
        max_attempts: int,
        lockout: timedelta,
        now: datetime,
    ) -> FailedLoginState:
        """Increment the failure counter and lock once it reaches ``max_attempts``.

        An elapsed lock resets the counter first, so a failure after the
        lockout period starts a fresh count of one.
        """
        with self._data_lock:
            account = self._require(account_id)
            attempts = account.failed_login_attempts
            locked_until = account.locked_until
            if locked_until is not None and locked_until <= now:
                attempts = 0
                locked_until = None
            attempts += 1
            locked_now = False
            if locked_until is None and attempts >= max_attempts:
                locked_until = now + lockout
                locked_now = True
            self._accounts[account_id] = replace(
                account,
                failed_login_attempts=attempts,
                locked_until=locked_until,
                updated_at=now,
            )
            self._persist_state()
            return FailedLoginState(
                attempts=attempts, locked_until=locked_until, locked_now=locked_now
            )

    def reset_failed_logins(self, account_id: str) -> None:
        with self._data_lock:
            account = self._require(account_id)
            if account.failed_login_attempts == 0 and account.locked_until is None:
                return
            self._accounts[account_id] = replace(
                account, failed_login_attempts=0, locked_until=None, updated_at=utc_now()
            )
            self._persist_state()

    def update_last_login(self, account_id: str, when: datetime) -> None:
        with self._data_lock:
            account = self._require(account_id)
            self._accounts[account_id] = replace(
                account, last_login=when, updated_at=when
            )
            self._persist_state()

    # Administration

    def create_account(
        self,
        email: str,
        credential_hash: str,
        roles: Iterable[AdminRole] = (),
        *,
        account_id: Optional[str] = None,
        mfa_secret: Optional[str] = None,
        mfa_enabled: bool = False,
        is_active: bool = True,
    ) -> AdminAccount:
        normalized = email.strip().lower()
        with self._data_lock:
            if normalized in self._email_index:
                raise ValueError(f"account already exists for {normalized}")
            account = AdminAccount(
                id=account_id or f"admin_{uuid.uuid4().hex}",
                email=normalized,
                credential_hash=credential_hash,
                roles=tuple(roles),
                mfa_enabled=mfa_enabled,
                mfa_secret=self._encrypt_mfa_secret(mfa_secret),
                is_active=is_active,
            )
            self._accounts[account.id] = account
            self._email_index[normalized] = account.id
            self._persist_state()
            return self._public(account)

    def update_account(self, account_id: str, **changes: Any) -> AdminAccount:
        """Apply field changes (credential hash, roles, MFA, activation)."""
        with self._data_lock:
            account = self._require(account_id)
            if "mfa_secret" in changes:
                changes["mfa_secret"] = self._encrypt_mfa_secret(changes["mfa_secret"])
            if "roles" in changes and "permissions" not in changes:
                changes["permissions"] = frozenset()
            updated = replace(account, updated_at=utc_now(), **changes)
            self._accounts[account_id] = updated
            self._persist_state()
            return self._public(updated)

    def set_active(self, account_id: str, active: bool) -> AdminAccount:
        return self.update_account(account_id, is_active=active)

    # Persistence

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_account(self, account: AdminAccount) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "credential_hash": account.credential_hash,
            "roles": [
                {
                    "name": role.name,
                    "permissions": sorted(p.value for p in role.permissions),
                    "description": role.description,
                }
                for role in account.roles
            ],
            "permissions": sorted(p.value for p in account.permissions),
            "mfa_enabled": account.mfa_enabled,
            "mfa_secret": account.mfa_secret,
            "failed_login_attempts": account.failed_login_attempts,
            "locked_until": self._serialize_datetime(account.locked_until),
            "is_active": account.is_active,
            "last_login": self._serialize_datetime(account.last_login),
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> AdminAccount:
        roles = tuple(
            AdminRole(
                name=role["name"],
                permissions=frozenset(AdminPermission(p) for p in role.get("permissions", [])),
                description=role.get("description", ""),
            )
            for role in data.get("roles", [])
        )
        return AdminAccount(
            id=data["id"],
            email=data["email"],
            credential_hash=data["credential_hash"],
            roles=roles,
            permissions=frozenset(AdminPermission(p) for p in data.get("permissions", [])),
            mfa_enabled=data.get("mfa_enabled", False),
            mfa_secret=data.get("mfa_secret"),
            failed_login_attempts=data.get("failed_login_attempts", 0),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            is_active=data.get("is_active", True),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utc_now(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utc_now(),
        )

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self._accounts.values()]
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist account state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        with self._data_lock:
            self._accounts = {
                a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
            }
            self._email_index = {a.email: a.id for a in self._accounts.values()}
        self.logger.info("account_state_loaded", accounts=len(self._accounts))
        return True

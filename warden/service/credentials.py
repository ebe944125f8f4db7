from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import threading
from datetime import datetime
from typing import Callable, Dict, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.logging import get_logger
from warden.storage.models import utc_now

logger = get_logger(__name__)


class CredentialVerifier:
    """argon2id password hashing and verification."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the account does not exist so both paths cost one hash
        self._dummy_hash = self._pwd_hasher.hash("warden-timing-equaliser")

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_invalid")
            return False

    def dummy_verify(self, password: str) -> None:
        self.verify(self._dummy_hash, password)

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True


class TotpVerifier:
    """Time-based one-time password check against a base32 shared secret.

    Accepts the current step and ``window`` adjacent steps for clock skew.
    A code that verified once is rejected for the rest of its step when an
    ``account_id`` is supplied.
    """

    def __init__(
        self,
        *,
        interval: int = 30,
        digits: int = 6,
        window: int = 1,
        digest: str = "sha1",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.interval = interval
        self.digits = digits
        self.window = window
        self.digest = digest
        self._clock = clock
        self._used_lock = threading.Lock()
        self._last_used: Dict[str, int] = {}

    def _decode_secret(self, secret: str) -> Optional[bytes]:
        cleaned = secret.replace(" ", "").upper()
        padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
        try:
            return base64.b32decode(padded, True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return None

    def _generate_totp(self, key: bytes, counter: int) -> str:
        digest = hmac.new(key, counter.to_bytes(8, "big"), getattr(hashlib, self.digest)).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def code_at(self, secret: str, when: datetime) -> str:
        """Code for ``when``; used by enrolment checks and tests."""
        key = self._decode_secret(secret)
        if key is None:
            return ""
        return self._generate_totp(key, int(when.timestamp() // self.interval))

    def _match(self, key: bytes, code: str) -> Optional[int]:
        current = int(self._clock().timestamp() // self.interval)
        for offset in range(-self.window, self.window + 1):
            counter = current + offset
            if hmac.compare_digest(self._generate_totp(key, counter), code):
                return counter
        return None

    def verify(self, secret: Optional[str], code: Optional[str], *, account_id: Optional[str] = None) -> bool:
        if not secret or not code:
            return False
        code = code.strip()
        if len(code) != self.digits or not code.isdigit():
            return False
        key = self._decode_secret(secret)
        if key is None:
            return False
        counter = self._match(key, code)
        if counter is None:
            return False
        if account_id is None:
            return True
        with self._used_lock:
            if self._last_used.get(account_id, -1) >= counter:
                logger.warning("totp_code_replayed", account_id=account_id)
                return False
            self._last_used[account_id] = counter
        return True

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from warden.config import Settings
from warden.logging import get_logger
from warden.service.errors import AuthErrorCode, TokenError
from warden.storage.models import AdminAccount, utc_now

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class TokenService:
    """HS256 compact JWS tokens bound to a session id.

    Access and refresh tokens are signed with different keys; the refresh
    key is derived from ``JWT_SECRET`` when ``JWT_REFRESH_SECRET`` is unset.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.settings = settings
        self._clock = clock
        self._access_key = settings.jwt_secret.encode()
        if settings.jwt_refresh_secret:
            self._refresh_key = settings.jwt_refresh_secret.encode()
        else:
            self._refresh_key = hmac.new(
                self._access_key, b"warden-refresh-token", hashlib.sha256
            ).digest()
        self._leeway = timedelta(seconds=settings.jwt_leeway_seconds)

    @staticmethod
    def generate_session_id() -> str:
        return secrets.token_urlsafe(32)

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, key: bytes) -> str:
        return self._encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], key: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, key)}"

    def _read_payload(self, token: str) -> Optional[dict[str, Any]]:
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError, AttributeError):
            return None
        return payload if isinstance(payload, dict) else None

    def _decode_jwt(
        self,
        token: str,
        key: bytes,
        token_type: str,
        *,
        expired_code: AuthErrorCode,
        invalid_code: AuthErrorCode,
    ) -> dict[str, Any]:
        if not isinstance(token, str):
            raise TokenError("Invalid token", invalid_code)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenError("Malformed token", invalid_code) from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise TokenError("Malformed token", invalid_code) from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise TokenError("Unsupported token algorithm", invalid_code)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", key)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenError("Invalid token signature", invalid_code)
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenError("Malformed token", invalid_code) from None
        if not isinstance(payload, dict):
            raise TokenError("Malformed token", invalid_code)

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenError("Invalid token issuer", invalid_code)
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenError("Invalid token audience", invalid_code)
        if payload.get("token_type") != token_type:
            raise TokenError("Wrong token type", invalid_code)
        if not payload.get("sub") or not payload.get("sid"):
            raise TokenError("Token is missing subject or session", invalid_code)
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenError("Token has no expiry", invalid_code) from None
        now_ts = (self._clock() - self._leeway).timestamp()
        if exp_ts <= now_ts:
            raise TokenError("Token expired", expired_code)
        return payload

    def _registered_claims(self, subject: str, session_id: str, ttl: timedelta, token_type: str) -> dict[str, Any]:
        now = self._clock()
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "sid": session_id,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }

    def generate_access_token(self, account: AdminAccount, session_id: str) -> str:
        payload = self._registered_claims(
            account.id,
            session_id,
            timedelta(minutes=self.settings.access_token_ttl_minutes),
            ACCESS_TOKEN_TYPE,
        )
        payload.update(
            {
                "email": account.email,
                "roles": [role.name for role in account.roles],
                "permissions": sorted(p.value for p in account.permissions),
            }
        )
        return self._encode_jwt(payload, self._access_key)

    def verify_access_token(self, token: str) -> dict[str, Any]:
        return self._decode_jwt(
            token,
            self._access_key,
            ACCESS_TOKEN_TYPE,
            expired_code=AuthErrorCode.TOKEN_EXPIRED,
            invalid_code=AuthErrorCode.INVALID_TOKEN,
        )

    def generate_refresh_token(self, admin_id: str, session_id: str) -> str:
        payload = self._registered_claims(
            admin_id,
            session_id,
            timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            REFRESH_TOKEN_TYPE,
        )
        return self._encode_jwt(payload, self._refresh_key)

    def verify_refresh_token(self, token: str) -> dict[str, Any]:
        return self._decode_jwt(
            token,
            self._refresh_key,
            REFRESH_TOKEN_TYPE,
            expired_code=AuthErrorCode.REFRESH_TOKEN_EXPIRED,
            invalid_code=AuthErrorCode.INVALID_REFRESH_TOKEN,
        )

    def get_token_expiration(self, token: str) -> Optional[datetime]:
        """Expiry claim of a token without verifying it."""
        payload = self._read_payload(token)
        if not payload:
            return None
        try:
            return datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError):
            return None

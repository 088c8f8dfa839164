from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from classgate.config import Settings
from classgate.logging import get_logger
from classgate.service.calls import call_cache
from classgate.storage.models import UserAccount
from classgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

PASSWORD_RESET = "password_reset"
EMAIL_VERIFICATION = "email_verification"
_ONE_TIME_PURPOSES = frozenset({PASSWORD_RESET, EMAIL_VERIFICATION})


class TokenIssuer:
    """HS256 access/refresh tokens plus opaque single-use tokens.

    Verification fails closed: any structural, cryptographic or claim
    problem yields ``(None, reason)`` and never partial claims.
    """

    def __init__(
        self,
        settings: Settings,
        cache: Optional[RedisCache] = None,
        *,
        leeway_seconds: int = 0,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._leeway = max(0, leeway_seconds)
        self._state_lock = threading.Lock()
        # digest -> (purpose, subject, expires_at) when Redis is unavailable
        self._one_time_tokens: dict[str, tuple[str, str, datetime]] = {}

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # JWT encoding
    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _claims(
        self, user: UserAccount, token_type: str, ttl: timedelta, session_id: Optional[str]
    ) -> dict[str, Any]:
        now = self._now()
        claims = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "role": user.role.value,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        if session_id:
            claims["sid"] = session_id
        return claims

    def issue_access_token(
        self,
        user: UserAccount,
        session_id: Optional[str] = None,
        ttl_minutes: Optional[int] = None,
    ) -> str:
        ttl = timedelta(minutes=ttl_minutes or self.settings.access_token_ttl_minutes)
        return self._encode_jwt(self._claims(user, ACCESS, ttl, session_id))

    def issue_refresh_token(
        self,
        user: UserAccount,
        session_id: Optional[str] = None,
        ttl_minutes: Optional[int] = None,
    ) -> str:
        ttl = timedelta(minutes=ttl_minutes or self.settings.refresh_token_ttl_minutes)
        return self._encode_jwt(self._claims(user, REFRESH, ttl, session_id))

    def verify(
        self, token: str, expected_type: Optional[str] = None
    ) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        """Return ``(claims, None)`` for a good token, else ``(None, reason)``."""
        if not token or not isinstance(token, str):
            return None, "malformed"
        parts = token.split(".")
        if len(parts) != 3:
            return None, "malformed"
        header_b64, payload_b64, sig_b64 = parts

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None, "malformed"
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None, "invalid_algorithm"

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # bytes: compare_digest rejects non-ASCII str instead of returning False
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            return None, "invalid_signature"
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None, "malformed"
        if not isinstance(payload, dict):
            return None, "malformed"

        if payload.get("iss") != self.settings.jwt_issuer:
            return None, "invalid_issuer"
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None, "invalid_audience"

        exp = payload.get("exp")
        if exp is None or isinstance(exp, bool):
            return None, "missing_expiry"
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None, "missing_expiry"
        if exp_ts <= time.time() - self._leeway:
            return None, "expired"

        if not payload.get("sub"):
            return None, "missing_subject"
        token_type = payload.get("token_type")
        if token_type not in (ACCESS, REFRESH):
            return None, "invalid_token_type"
        if expected_type and token_type != expected_type:
            return None, "wrong_token_type"
        return payload, None

    @staticmethod
    def generate_opaque_token() -> str:
        """256 bits from the OS CSPRNG, hex encoded."""
        return secrets.token_hex(32)

    # one-time tokens
    @staticmethod
    def _digest(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    async def store_one_time_token(
        self, purpose: str, subject: str, ttl: timedelta
    ) -> str:
        """Mint a single-use token bound to ``subject``; only its digest is kept."""
        if purpose not in _ONE_TIME_PURPOSES:
            raise ValueError(f"unknown token purpose: {purpose}")
        token = self.generate_opaque_token()
        digest = self._digest(token)
        ttl_seconds = max(1, int(ttl.total_seconds()))
        if self.cache:
            await call_cache(
                self.cache.store_one_time_token, purpose, digest, subject, ttl_seconds
            )
        else:
            with self._state_lock:
                self._one_time_tokens[digest] = (purpose, subject, self._now() + ttl)
        return token

    async def consume_one_time_token(self, purpose: str, token: str) -> Optional[str]:
        """Return the bound subject once; later or expired lookups return None."""
        if not token or purpose not in _ONE_TIME_PURPOSES:
            return None
        digest = self._digest(token)
        if self.cache:
            subject = await call_cache(self.cache.pop_one_time_token, purpose, digest)
            if isinstance(subject, bytes):
                subject = subject.decode()
            return subject or None
        with self._state_lock:
            stored = self._one_time_tokens.get(digest)
            if not stored or stored[0] != purpose:
                return None
            del self._one_time_tokens[digest]
        _, subject, expires_at = stored
        if expires_at <= self._now():
            return None
        return subject

    def cleanup_expired(self) -> int:
        """Purge expired fallback tokens; Redis entries expire on their own."""
        now = self._now()
        with self._state_lock:
            stale = [d for d, (_, _, exp) in self._one_time_tokens.items() if exp <= now]
            for digest in stale:
                del self._one_time_tokens[digest]
        return len(stale)

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from authsvc.config import Settings
from authsvc.logging import get_logger
from authsvc.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    user_id: Optional[str]
    token_type: str
    jti: str
    issued_at: datetime
    expires_at: datetime


def token_fingerprint(token: str) -> str:
    """Stable identifier for a raw token string, used as the revocation key."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenService:
    """Issues and verifies HS256-signed access and refresh tokens."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._clock_skew_leeway = timedelta(seconds=settings.token_clock_skew_seconds)

    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    def refresh_ttl_seconds(self) -> int:
        return self.settings.refresh_token_ttl_minutes * 60

    def issue_access(self, user: User) -> str:
        return self._issue(user, ACCESS, self.access_ttl_seconds())

    def issue_refresh(self, user: User) -> str:
        return self._issue(user, REFRESH, self.refresh_ttl_seconds())

    def _issue(self, user: User, token_type: str, ttl_seconds: int) -> str:
        now = int(time.time())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.email,
            "uid": user.id,
            "token_type": token_type,
            # jti keeps tokens minted in the same second distinct
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl_seconds,
        }
        return self._encode_jwt(payload)

    def verify(
        self, token: Optional[str], expected_type: Optional[str] = None
    ) -> Optional[TokenClaims]:
        """Return the claims of a valid token, or ``None``.

        Signature, issuer, audience and expiry (with leeway) are checked; when
        ``expected_type`` is given the ``token_type`` claim must match it.
        """
        if not token:
            return None
        payload = self._decode_jwt(token)
        if payload is None:
            return None
        token_type = payload.get("token_type")
        if expected_type is not None and token_type != expected_type:
            return None
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            return None
        try:
            issued_at = datetime.fromtimestamp(
                float(payload.get("iat") or 0), tz=timezone.utc
            )
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            return None
        return TokenClaims(
            subject=subject,
            user_id=payload.get("uid"),
            token_type=str(token_type),
            jti=str(payload.get("jti") or ""),
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
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

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError, RecursionError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(
            self._sign(signing_input).encode(), sig_b64.encode("utf-8", "replace")
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError, RecursionError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

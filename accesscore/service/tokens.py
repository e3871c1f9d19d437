from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from accesscore.config import Settings
from accesscore.logging import get_logger
from accesscore.service.clock import Clock, SystemClock
from accesscore.service.errors import InvalidToken

logger = get_logger(__name__)

AUDIENCE_ACCESS = "users"
AUDIENCE_REFRESH = "refresh"

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"
TOKEN_TYPE_UNKNOWN = "unknown"

_ALGORITHM = "HS256"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    token_type: str = "Bearer"


def encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    """Issues and verifies HS256 access and refresh tokens.

    Each audience has its own signing secret, so a refresh token can never
    pass as an access token (or the reverse) even before claims are checked.
    Verification fails closed with :class:`InvalidToken`; it never returns
    partially validated claims.
    """

    def __init__(self, settings: Settings, clock: Optional[Clock] = None) -> None:
        self.settings = settings
        self.clock = clock or SystemClock()
        self._secrets = {
            AUDIENCE_ACCESS: settings.jwt_secret.encode(),
            AUDIENCE_REFRESH: settings.jwt_refresh_secret.encode(),
        }

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def audience_claim(self, audience: str) -> str:
        return f"{self.settings.jwt_issuer}-{audience}"

    def issue_access_token(self, claims: Dict[str, Any]) -> str:
        """Sign an access token for ``claims``.

        ``claims`` must carry ``sub``; ``email``, ``tenantId``, ``role`` and
        an optional ``sid`` are passed through. Registered claims are set here.
        """
        if not claims.get("sub"):
            raise ValueError("access token claims require a subject")
        now = self.clock.now()
        payload = {
            key: claims.get(key)
            for key in ("sub", "email", "tenantId", "role")
        }
        if claims.get("sid"):
            payload["sid"] = claims["sid"]
        payload.update(self._registered_claims(AUDIENCE_ACCESS, now, self.access_ttl))
        return self._encode(payload, AUDIENCE_ACCESS)

    def issue_refresh_token(self, principal_id: str, token_id: str) -> str:
        now = self.clock.now()
        payload: Dict[str, Any] = {"sub": principal_id, "tokenId": token_id}
        payload.update(self._registered_claims(AUDIENCE_REFRESH, now, self.refresh_ttl))
        return self._encode(payload, AUDIENCE_REFRESH)

    def issue_token_pair(self, claims: Dict[str, Any], refresh_token: str) -> TokenPair:
        # expires_in is the TTL used to sign, not a re-decode of the token
        return TokenPair(
            access_token=self.issue_access_token(claims),
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_expires_in=int(self.refresh_ttl.total_seconds()),
        )

    def verify(
        self, token: str, audience: str, *, verify_exp: bool = True
    ) -> Dict[str, Any]:
        secret = self._secrets.get(audience)
        if secret is None:
            raise ValueError(f"unknown audience {audience!r}")
        if not self.validate_token_format(token):
            raise InvalidToken()
        header_b64, payload_b64, sig_b64 = token.split(".")
        try:
            header = json.loads(decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidToken()
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidToken()
        expected_sig = encode_segment(
            hmac.new(secret, f"{header_b64}.{payload_b64}".encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidToken()
        try:
            payload = json.loads(decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidToken()
        if not isinstance(payload, dict):
            raise InvalidToken()
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidToken()
        if payload.get("aud") != self.audience_claim(audience):
            raise InvalidToken()
        if not payload.get("sub"):
            raise InvalidToken()
        if verify_exp and self._claims_expired(payload):
            raise InvalidToken("token expired")
        return payload

    def decode_unsafe(self, token: str) -> Optional[Dict[str, Any]]:
        """Decode the payload without checking the signature or expiry."""
        if not self.validate_token_format(token):
            return None
        try:
            payload = json.loads(decode_segment(token.split(".")[1]))
        except (ValueError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None

    def is_expired(self, token: str) -> bool:
        payload = self.decode_unsafe(token)
        if payload is None:
            return True
        return self._claims_expired(payload)

    def token_type(self, token: str) -> str:
        payload = self.decode_unsafe(token) or {}
        aud = payload.get("aud")
        if aud == self.audience_claim(AUDIENCE_ACCESS):
            return TOKEN_TYPE_ACCESS
        if aud == self.audience_claim(AUDIENCE_REFRESH):
            return TOKEN_TYPE_REFRESH
        return TOKEN_TYPE_UNKNOWN

    @staticmethod
    def validate_token_format(token: Any) -> bool:
        """Cheap structural check run before any signature work."""
        if not isinstance(token, str) or not token:
            return False
        parts = token.split(".")
        if len(parts) != 3:
            return False
        allowed = set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")
        return all(part and set(part) <= allowed for part in parts)

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    def _registered_claims(self, audience: str, now, ttl: timedelta) -> Dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.audience_claim(audience),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }

    def _claims_expired(self, payload: Dict[str, Any]) -> bool:
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return True
        leeway = self.settings.token_clock_skew_seconds
        return exp_ts <= self.clock.now().timestamp() - leeway

    def _encode(self, payload: Dict[str, Any], audience: str) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._secrets[audience], signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{encode_segment(signature)}"

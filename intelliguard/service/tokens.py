from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from intelliguard.logging import get_logger
from intelliguard.service.clock import Clock, SystemClock

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_OPAQUE_TOKEN_BYTES = 48


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    role: str
    account_id: str
    issued_at: int
    expires_at: int
    token_id: str


class TokenSigner:
    """Signs stateless access tokens and mints opaque refresh token values.

    Access tokens are HS256 JWTs checked by signature, issuer, audience and
    expiry only; nothing about them is stored server-side.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta,
        clock: Optional[Clock] = None,
        leeway: timedelta = timedelta(seconds=0),
    ) -> None:
        if not secret:
            raise ValueError("token signer requires a secret")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.clock = clock or SystemClock()
        self._leeway = leeway

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
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
        except (AttributeError, ValueError):
            return None

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        now_ts = self.clock.now().timestamp()
        if exp_ts <= now_ts - self._leeway.total_seconds():
            return None
        return payload

    def sign_access_token(self, *, subject: str, role: str, account_id: str) -> str:
        now = self.clock.now()
        payload = {
            "sub": subject,
            "role": role,
            "uid": account_id,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now.timestamp()),
            "exp": int((now + self.access_ttl).timestamp()),
            "jti": uuid.uuid4().hex,
            "token_type": "access",
        }
        return self._encode_jwt(payload)

    def verify_access_token(self, token: str) -> Optional[AccessClaims]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        subject = payload.get("sub")
        account_id = payload.get("uid")
        if not subject or not account_id:
            return None
        return AccessClaims(
            subject=str(subject),
            role=str(payload.get("role", "")),
            account_id=str(account_id),
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
            token_id=str(payload.get("jti", "")),
        )

    def generate_opaque_token(self) -> str:
        return secrets.token_urlsafe(_OPAQUE_TOKEN_BYTES)

    @property
    def access_ttl_seconds(self) -> int:
        return int(self.access_ttl.total_seconds())

"""
Bearer-token verification for the chat endpoint.

Tokens are compact HS256-signed JSON Web Tokens minted by a trusted party
(the site backend or ``ragchat-token``). Verification is stateless: structure,
algorithm, signature (constant-time), then temporal, issuer and audience
claims. Every failure raises AuthError with a specific internal reason; the
HTTP layer only ever shows the generic public message.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from ragchat.errors import AuthError, AuthNotConfiguredError

HEADER = {"alg": "HS256", "typ": "JWT"}


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(segment: str) -> bytes:
    if "=" in segment:
        raise ValueError("padded segment")
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _sign(signing_input: str, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), signing_input.encode("utf-8"), hashlib.sha256).digest()


def _as_int(value: Any) -> Optional[int]:
    # bool is an int subclass; a JSON true is not a timestamp
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _audience_matches(raw: Any, expected: str) -> bool:
    if isinstance(raw, str):
        return raw == expected
    if isinstance(raw, list):
        return any(isinstance(item, str) and item == expected for item in raw)
    return False


def extract_bearer_token(header: Optional[str]) -> str:
    """Return the token from an 'Authorization: Bearer <token>' value, or ''."""
    if not header:
        return ""
    parts = header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return ""
    return parts[1]


@dataclass
class TokenVerifier:
    """
    Verifies HS256 bearer tokens.

    issuer/audience are only checked when configured (non-empty).
    `clock` returns unix seconds; override it in tests.
    """

    secret: str = field(repr=False)
    issuer: str = ""
    audience: str = ""
    leeway_seconds: float = 10.0
    clock: Callable[[], float] = time.time

    @property
    def configured(self) -> bool:
        return bool(self.secret)

    def verify(self, token: str) -> Dict[str, Any]:
        """
        Validate token and return its claims.

        Raises:
            AuthNotConfiguredError: no secret configured
            AuthError: any structural, signature or claim check failed
        """
        if not self.secret:
            raise AuthNotConfiguredError()
        if not token:
            raise AuthError("missing token", public_message="missing auth token")

        parts = token.split(".")
        if len(parts) != 3:
            raise AuthError("invalid token: expected 3 segments")

        try:
            header = json.loads(_b64url_decode(parts[0]))
        except (ValueError, binascii.Error) as e:
            raise AuthError("invalid token: bad header") from e
        if not isinstance(header, dict):
            raise AuthError("invalid token: bad header")
        if header.get("alg") != "HS256":
            raise AuthError("invalid algorithm")

        try:
            payload = json.loads(_b64url_decode(parts[1]))
        except (ValueError, binascii.Error) as e:
            raise AuthError("invalid token: bad payload") from e
        if not isinstance(payload, dict):
            raise AuthError("invalid token: bad payload")

        try:
            got_sig = _b64url_decode(parts[2])
        except (ValueError, binascii.Error) as e:
            raise AuthError("invalid token: bad signature encoding") from e
        expected_sig = _sign(f"{parts[0]}.{parts[1]}", self.secret)
        if not hmac.compare_digest(got_sig, expected_sig):
            raise AuthError("invalid token: signature mismatch")

        now = int(self.clock())
        leeway = int(self.leeway_seconds)
        if "exp" in payload:
            exp = _as_int(payload["exp"])
            if exp is None:
                raise AuthError("invalid token: exp not numeric")
            if now > exp + leeway:
                raise AuthError("token expired")
        if "iat" in payload:
            iat = _as_int(payload["iat"])
            if iat is None:
                raise AuthError("invalid token: iat not numeric")
            if iat > now + leeway:
                raise AuthError("token not yet valid")

        if self.issuer and payload.get("iss") != self.issuer:
            raise AuthError("invalid issuer")
        if self.audience and not _audience_matches(payload.get("aud"), self.audience):
            raise AuthError("invalid audience")
        return payload


def build_token(
    secret: str,
    issuer: str,
    audience: str,
    ttl_seconds: float,
    now: Optional[float] = None,
) -> Tuple[str, int]:
    """
    Mint a signed token.

    Returns:
        (token, expires_at) with expires_at in unix seconds
    """
    if not secret:
        raise ValueError("jwt secret is required")
    if ttl_seconds <= 0:
        raise ValueError("ttl must be positive")

    issued_at = int(time.time() if now is None else now)
    expires_at = issued_at + int(ttl_seconds)
    payload = {"iss": issuer, "aud": audience, "iat": issued_at, "exp": expires_at}

    segments = [
        _b64url_encode(json.dumps(HEADER, separators=(",", ":")).encode("utf-8")),
        _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8")),
    ]
    signing_input = ".".join(segments)
    signature = _b64url_encode(_sign(signing_input, secret))
    return f"{signing_input}.{signature}", expires_at

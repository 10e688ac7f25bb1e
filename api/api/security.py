"""HMAC-signed bearer tokens.

Token format::

    tpdev.<urlsafe-base64 JSON claims>.<hex HMAC-SHA256 of the claims segment>

Tokens are minted by the identity front-end (or by :meth:`TokenManager.
generate_token` in tests and local tooling) and verified here with the
shared ``JWT_SECRET``.  Verification failures raise :class:`PermissionError`,
which the authentication middleware turns into a 401.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time

from pydantic import BaseModel, Field, SecretStr, ValidationError

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "tpdev."


class TokenClaims(BaseModel):
    """Validated claims carried by a bearer token."""

    sub: str = Field(..., min_length=1, description="Identity-provider user id.")
    email: str | None = None
    agency_id: str | None = Field(default=None, description="Agency the user acts for, if any.")
    role: str = "agent"
    iat: int = 0
    exp: int = Field(..., description="Expiry as a UNIX timestamp.")


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenManager:
    """Create and verify ``tpdev.`` tokens with a shared secret."""

    def __init__(self, secret: SecretStr, default_ttl_seconds: int = 3600) -> None:
        if not secret.get_secret_value():
            raise ValueError("Token secret must not be empty")
        self._key = secret.get_secret_value().encode("utf-8")
        self._default_ttl = default_ttl_seconds

    def _sign(self, segment: str) -> str:
        return hmac.new(self._key, segment.encode("ascii"), hashlib.sha256).hexdigest()

    def generate_token(
        self,
        sub: str,
        *,
        email: str | None = None,
        agency_id: str | None = None,
        role: str = "agent",
        ttl_seconds: int | None = None,
    ) -> str:
        """Mint a signed token for *sub*."""
        now = int(time.time())
        claims = TokenClaims(
            sub=sub,
            email=email,
            agency_id=agency_id,
            role=role,
            iat=now,
            exp=now + (ttl_seconds if ttl_seconds is not None else self._default_ttl),
        )
        segment = _b64encode(json.dumps(claims.model_dump(), separators=(",", ":")).encode("utf-8"))
        return f"{TOKEN_PREFIX}{segment}.{self._sign(segment)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Verify *token* and return its claims.

        Raises
        ------
        PermissionError
            If the token is malformed, the signature does not match, or the
            token has expired.
        """
        if not token.startswith(TOKEN_PREFIX):
            raise PermissionError("unsupported token format")
        # Both the segment and the hex signature are ASCII in a well-formed token.
        if not token.isascii():
            raise PermissionError("malformed token")
        try:
            segment, signature = token[len(TOKEN_PREFIX) :].split(".", 1)
        except ValueError:
            raise PermissionError("malformed token") from None

        if not hmac.compare_digest(self._sign(segment), signature):
            raise PermissionError("bad signature")

        try:
            claims = TokenClaims.model_validate_json(_b64decode(segment))
        except (binascii.Error, ValueError, ValidationError):
            raise PermissionError("malformed claims") from None

        if claims.exp <= int(time.time()):
            raise PermissionError("token expired")
        return claims

"""Bearer token issuance and validation.

Tokens have three dot-separated parts::

    lsdev.<base64url(JSON claims)>.<hex HMAC-SHA256>

The signature covers ``lsdev.<payload>`` and is keyed with
``API_AUTH_SECRET``.  Identity issuance itself (sign-in, refresh, social
login) happens elsewhere; this module only mints tokens for tests and
local tooling and verifies tokens on incoming requests.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time

from pydantic import BaseModel, SecretStr, ValidationError

TOKEN_PREFIX = "lsdev"


class TokenClaims(BaseModel):
    """Claims carried by a bearer token."""

    sub: str
    email: str | None = None
    name: str | None = None
    iat: float | None = None
    exp: float | None = None


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class TokenManager:
    """Signs and validates HMAC bearer tokens."""

    def __init__(self, secret: SecretStr) -> None:
        value = secret.get_secret_value()
        if not value:
            raise ValueError("Token secret must not be empty")
        self._key = value.encode("utf-8")

    def _sign(self, signing_input: str) -> str:
        return hmac.new(self._key, signing_input.encode("ascii"), hashlib.sha256).hexdigest()

    def generate_token(
        self,
        sub: str,
        *,
        email: str | None = None,
        name: str | None = None,
        ttl_seconds: int | None = 3600,
    ) -> str:
        now = time.time()
        claims = TokenClaims(
            sub=sub,
            email=email,
            name=name,
            iat=now,
            exp=now + ttl_seconds if ttl_seconds is not None else None,
        )
        payload = _b64encode(claims.model_dump_json(exclude_none=True).encode("utf-8"))
        signing_input = f"{TOKEN_PREFIX}.{payload}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Verify *token* and return its claims.

        Raises
        ------
        PermissionError
            If the token is malformed, carries a bad signature or has
            expired.
        """
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            raise PermissionError("Malformed token")

        prefix, payload, signature = parts
        expected = self._sign(f"{prefix}.{payload}")
        if not hmac.compare_digest(expected, signature):
            raise PermissionError("Invalid signature")

        try:
            claims = TokenClaims.model_validate(json.loads(_b64decode(payload)))
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
            raise PermissionError("Malformed token payload") from exc

        if not claims.sub:
            raise PermissionError("Token has no subject")
        if claims.exp is not None and claims.exp < time.time():
            raise PermissionError("Token has expired")
        return claims

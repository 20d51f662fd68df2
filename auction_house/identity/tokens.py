"""Bearer token verification based on Ed25519 public key cryptography.

A token is ``<claims>.<signature>`` where ``claims`` is the base64url encoded
canonical JSON object and ``signature`` is the base64url encoded Ed25519
signature over those canonical bytes. Issuing tokens belongs to the identity
provider; this service only verifies them.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import orjson
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from ..realtime.codec import canonical_dumps


class TokenError(ValueError):
    """Raised when a bearer token is missing, malformed, expired or forged."""


@dataclass(frozen=True)
class Identity:
    user_id: str
    name: str


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(value + padding)
    except (binascii.Error, ValueError) as exc:
        raise TokenError("token segment is not base64url") from exc


def parse_timestamp(value: str) -> datetime:
    if not value:
        raise TokenError("timestamp missing")
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
    except ValueError as exc:
        raise TokenError("timestamp is not ISO-8601 compatible") from exc
    if dt.tzinfo is None:
        raise TokenError("timestamp must include timezone information")
    return dt.astimezone(timezone.utc)


def load_public_key(pem: str) -> Ed25519PublicKey:
    if not pem:
        raise TokenError("identity public key not configured")
    key = serialization.load_pem_public_key(pem.encode("utf-8"))
    if not isinstance(key, Ed25519PublicKey):
        raise TokenError("identity public key must be Ed25519")
    return key


def sign_claims(claims: dict[str, Any], private_key_pem: str) -> str:
    """Produce a token for ``claims``; used by local tooling and tests."""
    private_key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
    if not isinstance(private_key, Ed25519PrivateKey):
        raise TokenError("signing key must be Ed25519")
    body = canonical_dumps(claims)
    return f"{_b64encode(body)}.{_b64encode(private_key.sign(body))}"


class IdentityVerifier:
    def __init__(self, public_key_pem: str) -> None:
        self._public_key = load_public_key(public_key_pem) if public_key_pem else None

    def verify(self, token: str, *, now: datetime | None = None) -> Identity:
        if self._public_key is None:
            raise TokenError("identity public key not configured")
        if not token or token.count(".") != 1:
            raise TokenError("token is malformed")
        body_segment, signature_segment = token.split(".")
        body = _b64decode(body_segment)
        try:
            claims = orjson.loads(body)
        except orjson.JSONDecodeError as exc:
            raise TokenError("token claims are not JSON") from exc
        if not isinstance(claims, dict):
            raise TokenError("token claims must be an object")
        # Signature covers the canonical form so key order on the wire is irrelevant.
        try:
            self._public_key.verify(_b64decode(signature_segment), canonical_dumps(claims))
        except InvalidSignature as exc:
            raise TokenError("signature verification failed") from exc
        expires = claims.get("exp")
        if expires:
            reference = now or datetime.now(timezone.utc)
            if parse_timestamp(str(expires)) <= reference:
                raise TokenError("token expired")
        user_id = claims.get("sub")
        if not user_id:
            raise TokenError("token subject missing")
        return Identity(user_id=str(user_id), name=str(claims.get("name") or user_id))

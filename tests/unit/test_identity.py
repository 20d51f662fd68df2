"""Tests for bearer token verification."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from auction_house.identity import Identity, IdentityVerifier, TokenError


@pytest.fixture
def verifier(signing_key_pair) -> IdentityVerifier:
    return IdentityVerifier(signing_key_pair[1])


def test_valid_token(verifier, make_token):
    identity = verifier.verify(make_token("u7", "grace"))
    assert identity == Identity(user_id="u7", name="grace")


def test_name_defaults_to_subject(verifier, signing_key_pair):
    from auction_house.identity.tokens import sign_claims

    token = sign_claims({"sub": "u9"}, signing_key_pair[0])
    assert verifier.verify(token).name == "u9"


def test_unexpired_token_passes(verifier, make_token):
    expires = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()
    assert verifier.verify(make_token("u1", exp=expires)).user_id == "u1"


def test_expired_token_rejected(verifier, make_token):
    token = make_token("u1", exp="2020-01-01T00:00:00Z")
    with pytest.raises(TokenError, match="expired"):
        verifier.verify(token)


def test_tampered_claims_rejected(verifier, make_token):
    token = make_token("u1")
    _, signature = token.split(".")
    forged = make_token("u2").split(".")[0]
    with pytest.raises(TokenError):
        verifier.verify(f"{forged}.{signature}")


def test_foreign_key_rejected(make_token):
    other = Ed25519PrivateKey.generate().public_key()
    pem = other.public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo).decode("utf-8")
    with pytest.raises(TokenError, match="signature"):
        IdentityVerifier(pem).verify(make_token("u1"))


@pytest.mark.parametrize("token", ["", "no-dot", "a.b.c", "!!!.???"])
def test_malformed_tokens(verifier, token):
    with pytest.raises(TokenError):
        verifier.verify(token)


def test_unconfigured_verifier_rejects_everything(make_token):
    with pytest.raises(TokenError, match="not configured"):
        IdentityVerifier("").verify(make_token("u1"))

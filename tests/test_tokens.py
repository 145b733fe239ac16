"""Tests for Ed25519 session tokens."""

import base64

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from tma_auth.errors import ConfigError, TokenError
from tma_auth.storage import IdentityRecord
from tma_auth.tokens import (
    b64url_encode,
    issue_session_token,
    load_ed25519_private_key_from_b64,
    session_signing_key,
    sign_token,
    verify_session_token,
)

from initdata_factory import NOW


SK = Ed25519PrivateKey.from_private_bytes(b"\x07" * 32)
RECORD = IdentityRecord(local_id=5, platform_user_id=42, username="alice", created_at=NOW, updated_at=NOW)


def test_issue_and_verify():
    token = issue_session_token(SK, RECORD, NOW, 3600)
    assert token.startswith("v1.")
    claims = verify_session_token(SK.public_key(), token, NOW + 10)
    assert claims == {"typ": "session", "sub": 5, "tg": 42, "iat": NOW, "exp": NOW + 3600}


def test_expired():
    token = issue_session_token(SK, RECORD, NOW, 60)
    verify_session_token(SK.public_key(), token, NOW + 60)
    with pytest.raises(TokenError):
        verify_session_token(SK.public_key(), token, NOW + 61)


def test_wrong_key():
    token = issue_session_token(SK, RECORD, NOW, 60)
    with pytest.raises(TokenError):
        verify_session_token(Ed25519PrivateKey.generate().public_key(), token, NOW)


def test_tampered_payload():
    version, payload, sig = issue_session_token(SK, RECORD, NOW, 60).split(".")
    forged = b64url_encode(b'{"exp":9999999999,"sub":1,"tg":1,"typ":"session"}')
    with pytest.raises(TokenError):
        verify_session_token(SK.public_key(), ".".join([version, forged, sig]), NOW)


def test_wrong_type():
    token = sign_token(SK, {"typ": "refresh", "exp": NOW + 60})
    with pytest.raises(TokenError):
        verify_session_token(SK.public_key(), token, NOW)


def test_missing_exp():
    token = sign_token(SK, {"typ": "session"})
    with pytest.raises(TokenError):
        verify_session_token(SK.public_key(), token, NOW)


@pytest.mark.parametrize("token", ["", "v1.abc", "v2.a.b", "v1.***.***", "tma auth_date=1"])
def test_bad_format(token):
    with pytest.raises(TokenError):
        verify_session_token(SK.public_key(), token, NOW)


def test_load_private_key():
    sk_b64 = base64.b64encode(b"\x07" * 32).decode()
    sk = load_ed25519_private_key_from_b64(sk_b64)
    assert sk.public_key().public_bytes_raw() == SK.public_key().public_bytes_raw()


@pytest.mark.parametrize("sk_b64", ["not base64!", base64.b64encode(b"short").decode()])
def test_load_private_key_invalid(sk_b64):
    with pytest.raises(ConfigError):
        load_ed25519_private_key_from_b64(sk_b64)


def test_ephemeral_key_when_unset():
    assert session_signing_key("") is not None

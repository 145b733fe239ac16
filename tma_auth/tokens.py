# tma_auth/tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Session tokens handed to the Mini App after a successful init-data login,
# so later API calls need not re-send (and re-verify) initData.
#
# Security model:
#   - Server holds ONE Ed25519 keypair (infrastructure key). This key is
#     unrelated to Telegram's platform key used for init-data verification.
#   - Tokens are self-contained, short-lived and verifiable without DB access.
#   - No refresh, no revocation: a client whose token expired logs in again
#     with fresh initData.
#
# Token wire format:
#
#     v1.<payload_b64url>.<signature_b64url>
#
# Where:
#   - payload is canonical JSON (sorted keys, no whitespace)
#   - signature = Ed25519.sign(payload_bytes)
# -----------------------------------------------------------------------------

import base64
import binascii
import json
import logging
from typing import Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .errors import ConfigError, TokenError
from .storage import IdentityRecord

logger = logging.getLogger(__name__)

TOKEN_VERSION = "v1"
TOKEN_TYPE = "session"


# -----------------------------------------------------------------------------
# Base64 helpers
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 WITHOUT padding."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """URL-safe Base64 with optional missing padding."""
    s = str(s).strip()
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s.encode("ascii"))


# -----------------------------------------------------------------------------
# Key loading
# -----------------------------------------------------------------------------
def load_ed25519_private_key_from_b64(sk_b64: str) -> Ed25519PrivateKey:
    """
    Load a raw Ed25519 private key from Base64.

    The key MUST be exactly 32 bytes (raw Ed25519 seed); no PEM, no headers.
    """
    try:
        raw = base64.b64decode(sk_b64.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigError("SESSION_SIGNING_KEY_B64 is not valid base64") from e
    if len(raw) != 32:
        raise ConfigError("Ed25519 raw private key must be 32 bytes (base64 of 32 bytes)")
    return Ed25519PrivateKey.from_private_bytes(raw)


def session_signing_key(sk_b64: str) -> Ed25519PrivateKey:
    if sk_b64:
        return load_ed25519_private_key_from_b64(sk_b64)
    # tokens will not survive a restart or be shared between workers
    logger.warning("SESSION_SIGNING_KEY_B64 not set: using an ephemeral session signing key")
    return Ed25519PrivateKey.generate()


# -----------------------------------------------------------------------------
# Wire format
# -----------------------------------------------------------------------------
def encode_token(payload_bytes: bytes, sig: bytes) -> str:
    return f"{TOKEN_VERSION}." + b64url_encode(payload_bytes) + "." + b64url_encode(sig)


def decode_token(token: str) -> Tuple[bytes, bytes]:
    """Format validation only; cryptographic verification happens separately."""
    parts = str(token).split(".")
    if len(parts) != 3 or parts[0] != TOKEN_VERSION:
        raise TokenError("bad token format")
    try:
        return b64url_decode(parts[1]), b64url_decode(parts[2])
    except (binascii.Error, ValueError) as e:
        raise TokenError("bad token encoding") from e


# -----------------------------------------------------------------------------
# Sign / verify
# -----------------------------------------------------------------------------
def sign_token(sk: Ed25519PrivateKey, payload_obj: dict) -> str:
    payload_bytes = json.dumps(
        payload_obj,
        separators=(",", ":"),   # no whitespace
        sort_keys=True,          # stable key order
    ).encode("utf-8")
    return encode_token(payload_bytes, sk.sign(payload_bytes))


def issue_session_token(sk: Ed25519PrivateKey, record: IdentityRecord, now: int, ttl_seconds: int) -> str:
    return sign_token(
        sk,
        {
            "typ": TOKEN_TYPE,
            "sub": record.local_id,
            "tg": record.platform_user_id,
            "iat": now,
            "exp": now + int(ttl_seconds),
        },
    )


def verify_session_token(pk: Ed25519PublicKey, token: str, now: int) -> dict:
    """
    Verify a session token and return its claims.

    Raises TokenError on bad format, bad signature, wrong type or expiry.
    """
    payload_bytes, sig = decode_token(token)
    try:
        pk.verify(sig, payload_bytes)
    except InvalidSignature as e:
        raise TokenError("bad token signature") from e

    try:
        claims = json.loads(payload_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise TokenError("bad token payload") from e

    if not isinstance(claims, dict) or claims.get("typ") != TOKEN_TYPE:
        raise TokenError("bad token claims")
    try:
        exp = int(claims["exp"])
    except (KeyError, TypeError, ValueError) as e:
        raise TokenError("bad token claims") from e
    if now > exp:
        raise TokenError("token expired")
    return claims

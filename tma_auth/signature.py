"""
tma_auth/signature.py

Signature verification for Telegram Mini App init data.

Two schemes, selected structurally by which field the payload carries:

  LEGACY  (field "hash")
    secret_key = HMAC-SHA256(key="WebAppData", msg=bot_token)
    hash       = hex( HMAC-SHA256(key=secret_key, msg=data_check_string) )

  CURRENT (field "signature")
    message    = "<bot_id>:WebAppData\\n" + data_check_string
    signature  = base64url( Ed25519.sign(telegram_private_key, message) )

The current scheme lets a third party verify init data with Telegram's
published public key, without ever holding the bot token.

There is no fallback between schemes: a payload carrying "signature" is
never checked against the bot token and vice versa.
"""

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .canonical import current_scheme_message
from .errors import ConfigError, SignatureMismatch, UnknownKey
from .initdata import SignatureScheme

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Platform keys
# -----------------------------------------------------------------------------
# Published by Telegram for third-party validation of init data.
TELEGRAM_PUBLIC_KEYS = {
    "production": "e7bf03a2fa4602af4580703d88dda5bb59f32ed8b02a56c187fe7d34caed242d",
    "test": "40055058a4ee38156a06562e52eece92a771bcd8346a8c4615cb7376eddf72ec",
}

WEB_APP_DATA = b"WebAppData"


def load_ed25519_public_key_from_hex(pk_hex: str) -> Ed25519PublicKey:
    """
    Load a raw Ed25519 public key from hex.

    The key MUST be exactly 32 bytes; no PEM, no headers.
    """
    try:
        raw = bytes.fromhex(str(pk_hex).strip())
    except ValueError as e:
        raise ConfigError("Ed25519 public key must be hex") from e
    if len(raw) != 32:
        raise ConfigError("Ed25519 raw public key must be 32 bytes (64 hex chars)")
    return Ed25519PublicKey.from_public_bytes(raw)


def bot_id_from_token(bot_token: str) -> Optional[int]:
    """Bot tokens look like "<bot_id>:<secret>"; return the numeric prefix."""
    prefix, sep, _ = (bot_token or "").partition(":")
    if not sep or not prefix.isdigit():
        return None
    return int(prefix)


# -----------------------------------------------------------------------------
# Key material
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class VerificationKeyMaterial:
    """
    Everything needed to verify either scheme. Built once at startup and
    passed into the pipeline; never mutated afterwards.

    environment selects which platform public key is trusted
    ("production" or "test").
    """

    bot_token: Optional[str] = field(default=None, repr=False)
    bot_id: Optional[int] = None
    public_keys: Mapping[str, Ed25519PublicKey] = field(default_factory=dict)
    environment: str = "production"

    @property
    def public_key(self) -> Optional[Ed25519PublicKey]:
        return self.public_keys.get(self.environment)

    @classmethod
    def from_settings(cls, settings) -> "VerificationKeyMaterial":
        bot_token = settings.BOT_TOKEN or None
        bot_id = settings.BOT_ID
        if bot_id is None and bot_token:
            bot_id = bot_id_from_token(bot_token)

        public_keys = {
            env: load_ed25519_public_key_from_hex(pk_hex)
            for env, pk_hex in settings.TELEGRAM_PUBLIC_KEYS.items()
            if pk_hex
        }

        if not bot_token:
            logger.warning("BOT_TOKEN not configured: legacy (hash) init data will be rejected")
        if bot_id is None or settings.TELEGRAM_ENV not in public_keys:
            logger.warning(
                "no bot id or public key for env=%s: signed (Ed25519) init data will be rejected",
                settings.TELEGRAM_ENV,
            )

        return cls(
            bot_token=bot_token,
            bot_id=bot_id,
            public_keys=public_keys,
            environment=settings.TELEGRAM_ENV,
        )


# -----------------------------------------------------------------------------
# Legacy scheme (HMAC-SHA256)
# -----------------------------------------------------------------------------
def derive_secret_key(bot_token: str) -> bytes:
    return hmac.new(WEB_APP_DATA, bot_token.encode("utf-8"), hashlib.sha256).digest()


def compute_hash(bot_token: str, canonical: bytes) -> bytes:
    return hmac.new(derive_secret_key(bot_token), canonical, hashlib.sha256).digest()


def sign_legacy(bot_token: str, canonical: bytes) -> str:
    """Hex hash as Telegram puts it in the "hash" field."""
    return compute_hash(bot_token, canonical).hex()


def verify_legacy(canonical: bytes, claimed: bytes, keys: VerificationKeyMaterial) -> None:
    if not keys.bot_token:
        raise UnknownKey("no bot token configured for hash verification")

    expected = compute_hash(keys.bot_token, canonical)

    # compare_digest runs in time independent of where the bytes differ
    if not hmac.compare_digest(expected, claimed):
        raise SignatureMismatch("hash mismatch")


# -----------------------------------------------------------------------------
# Current scheme (Ed25519)
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def sign_current(sk: Ed25519PrivateKey, bot_id: int, canonical: bytes) -> str:
    """base64url signature as Telegram puts it in the "signature" field."""
    return b64url_encode(sk.sign(current_scheme_message(bot_id, canonical)))


def verify_current(canonical: bytes, signature: bytes, keys: VerificationKeyMaterial) -> None:
    pk = keys.public_key
    if pk is None:
        raise UnknownKey(f"no Telegram public key configured for env={keys.environment}")
    if keys.bot_id is None:
        raise UnknownKey("no bot id configured for signature verification")

    try:
        pk.verify(signature, current_scheme_message(keys.bot_id, canonical))
    except InvalidSignature as e:
        raise SignatureMismatch("signature mismatch") from e


# -----------------------------------------------------------------------------
# Dispatch
# -----------------------------------------------------------------------------
def verify(scheme: SignatureScheme, canonical: bytes, signature: bytes, keys: VerificationKeyMaterial) -> None:
    """
    Verify a data-check string under the scheme the payload's fields select.

    Returns None on success; raises SignatureMismatch or UnknownKey.
    """
    if scheme is SignatureScheme.CURRENT:
        verify_current(canonical, signature, keys)
    else:
        verify_legacy(canonical, signature, keys)

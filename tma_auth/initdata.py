"""
tma_auth/initdata.py

Parsing of the Telegram Mini App init payload ("initData").

The payload is a URL-encoded query string handed to the Mini App by the
Telegram client, e.g.

    query_id=AAH...&user=%7B%22id%22%3A42...%7D&auth_date=1700000000&hash=<hex>

Layers:
  - parse()            : purely syntactic, returns an immutable RawInitPayload
  - decode_signature() : hash/signature field -> raw bytes
  - interpret()        : typed view (user id, auth_date); run after verification
  - parse_init_data()  : all three, for callers that only inspect a payload

Nothing in this module evaluates the signature.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional, Tuple
from urllib.parse import parse_qsl

from .errors import ParseError, ParseFailure

logger = logging.getLogger(__name__)


LEGACY_FIELD = "hash"
CURRENT_FIELD = "signature"
SIGNATURE_FIELDS = (LEGACY_FIELD, CURRENT_FIELD)

# "Authorization: tma <initData>" is what the Telegram docs recommend.
AUTH_SCHEME = "tma"

HMAC_SHA256_HEX_LEN = 64
ED25519_SIGNATURE_LEN = 64


class SignatureScheme(str, Enum):
    LEGACY = "legacy"    # HMAC-SHA256, field "hash"
    CURRENT = "current"  # Ed25519, field "signature"


@dataclass(frozen=True)
class RawInitPayload:
    """Decoded key/value pairs, in the order they were received."""

    pairs: Tuple[Tuple[str, str], ...]

    def get(self, key: str) -> Optional[str]:
        for k, v in self.pairs:
            if k == key:
                return v
        return None

    def keys(self) -> list[str]:
        return [k for k, _ in self.pairs]

    def items(self) -> Iterator[Tuple[str, str]]:
        return iter(self.pairs)

    def __contains__(self, key: object) -> bool:
        return any(k == key for k, _ in self.pairs)

    @property
    def signature_field(self) -> str:
        return CURRENT_FIELD if CURRENT_FIELD in self else LEGACY_FIELD

    @property
    def scheme(self) -> SignatureScheme:
        if self.signature_field == CURRENT_FIELD:
            return SignatureScheme.CURRENT
        return SignatureScheme.LEGACY


@dataclass(frozen=True)
class InitDataUser:
    id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    language_code: Optional[str] = None
    is_bot: Optional[bool] = None
    photo_url: Optional[str] = None


@dataclass(frozen=True)
class ParsedInitData:
    payload: RawInitPayload
    scheme: SignatureScheme
    raw_signature: bytes
    auth_date: int
    user: Optional[InitDataUser] = None
    query_id: Optional[str] = None

    @property
    def platform_user_id(self) -> Optional[int]:
        return self.user.id if self.user else None

    @property
    def username(self) -> Optional[str]:
        return self.user.username if self.user else None


def _malformed(detail: str) -> ParseError:
    return ParseError(ParseFailure.MALFORMED, detail)


def extract_init_data(value: Optional[str]) -> Optional[str]:
    """
    Accept either the bare payload or an Authorization header value of the
    form "tma <payload>". Returns None for absent/blank input.
    """
    if value is None:
        return None
    v = value.strip()
    scheme, _, rest = v.partition(" ")
    if scheme.lower() == AUTH_SCHEME:
        v = rest.strip()
    return v or None


def parse(raw: Optional[str]) -> RawInitPayload:
    if raw is None or not raw.strip():
        raise ParseError(ParseFailure.EMPTY, "init data is empty")

    try:
        # lone surrogates survive parse_qsl but have no UTF-8 encoding
        raw.encode("utf-8")
        pairs = parse_qsl(
            raw.strip(),
            keep_blank_values=True,
            strict_parsing=True,
            errors="strict",
        )
    except (ValueError, UnicodeError) as e:
        raise _malformed(f"undecodable init data: {e}") from e

    seen: set[str] = set()
    for k, _ in pairs:
        if k in seen:
            raise _malformed(f"duplicate field: {k}")
        seen.add(k)

    if "auth_date" not in seen:
        raise _malformed("missing field: auth_date")

    present = [f for f in SIGNATURE_FIELDS if f in seen]
    if len(present) != 1:
        raise _malformed("exactly one of hash/signature is required")

    logger.debug("init data parsed: keys=%s", sorted(seen))
    return RawInitPayload(pairs=tuple(pairs))


def _parse_auth_date(value: str) -> int:
    if not value.isascii() or not value.isdigit():
        raise _malformed("auth_date must be a unix timestamp")
    return int(value)


def decode_signature(payload: RawInitPayload) -> bytes:
    """Decode the hash (hex) or signature (base64url) field into raw bytes."""
    value = payload.get(payload.signature_field) or ""

    if payload.scheme is SignatureScheme.LEGACY:
        if len(value) != HMAC_SHA256_HEX_LEN:
            raise _malformed("hash must be 64 hex characters")
        try:
            return bytes.fromhex(value)
        except ValueError as e:
            raise _malformed("hash is not hex") from e

    # base64url, padding optional
    s = value.strip()
    s += "=" * (-len(s) % 4)
    try:
        sig = base64.b64decode(s, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as e:
        raise _malformed("signature is not base64url") from e
    if len(sig) != ED25519_SIGNATURE_LEN:
        raise _malformed("signature must decode to 64 bytes")
    return sig


def _opt_str(obj: dict, key: str) -> Optional[str]:
    v = obj.get(key)
    if v is None:
        return None
    if not isinstance(v, str):
        raise _malformed(f"user.{key} must be a string")
    return v


def _parse_user(value: str) -> InitDataUser:
    try:
        obj = json.loads(value)
    except (json.JSONDecodeError, TypeError) as e:
        raise _malformed("user is not valid JSON") from e

    if not isinstance(obj, dict):
        raise _malformed("user must be a JSON object")

    user_id = obj.get("id")
    # bool is an int subclass; {"id": true} is not a user id
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        raise _malformed("user.id must be an integer")

    is_bot = obj.get("is_bot")
    return InitDataUser(
        id=user_id,
        username=_opt_str(obj, "username"),
        first_name=_opt_str(obj, "first_name"),
        last_name=_opt_str(obj, "last_name"),
        language_code=_opt_str(obj, "language_code"),
        is_bot=is_bot if isinstance(is_bot, bool) else None,
        photo_url=_opt_str(obj, "photo_url"),
    )


def interpret(payload: RawInitPayload, raw_signature: bytes) -> ParsedInitData:
    """
    Typed view of a payload. Run after signature verification so that any
    tampering surfaces as a signature failure, not as a format error.
    """
    auth_date = _parse_auth_date(payload.get("auth_date") or "")

    user_json = payload.get("user")
    user = _parse_user(user_json) if user_json is not None else None

    return ParsedInitData(
        payload=payload,
        scheme=payload.scheme,
        raw_signature=raw_signature,
        auth_date=auth_date,
        user=user,
        query_id=payload.get("query_id"),
    )


def parse_init_data(raw: Optional[str]) -> ParsedInitData:
    """parse() + decode_signature() + interpret(), without verification."""
    payload = parse(raw)
    return interpret(payload, decode_signature(payload))

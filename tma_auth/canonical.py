"""
tma_auth/canonical.py

Data-check string: the exact bytes the platform signed.

Canonicalization contract:
  - every field except hash/signature
  - sorted byte-lexicographically by key (UTF-8)
  - "key=value" pairs joined with "\n"
  - UTF-8 bytes, values exactly as URL-decoded
"""

from __future__ import annotations

from typing import Iterable, Mapping, Tuple, Union

from .initdata import SIGNATURE_FIELDS, RawInitPayload


def _join(pairs: Iterable[Tuple[str, str]]) -> bytes:
    kept = [(k, v) for k, v in pairs if k not in SIGNATURE_FIELDS]
    kept.sort(key=lambda kv: kv[0].encode("utf-8"))
    return "\n".join(f"{k}={v}" for k, v in kept).encode("utf-8")


def canonicalize(payload: RawInitPayload) -> bytes:
    return _join(payload.items())


def build_data_check_string(params: Union[Mapping[str, str], RawInitPayload]) -> bytes:
    """Same rules as canonicalize(), for plain dicts (fixture building)."""
    if isinstance(params, RawInitPayload):
        return canonicalize(params)
    return _join(params.items())


def current_scheme_message(bot_id: int, canonical: bytes) -> bytes:
    """Ed25519-signed message: "<bot_id>:WebAppData\\n" + data-check string."""
    return f"{bot_id}:WebAppData\n".encode("utf-8") + canonical

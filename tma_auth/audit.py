"""
tma_auth/audit.py

Append-only audit trail of authentication attempts.

One JSON object per line in <dir>/auth_audit.jsonl. Lines are linked:

  head_0     = 64 zero hex digits
  head_n     = SHA3-256( raw(head_{n-1}) + canonical_json(event_n) )

where event_n excludes its own "prev_hash" and "hash" fields, which carry
head_{n-1} and head_n. Editing, dropping or swapping lines is detectable
by recomputing the heads (see verify_log_chain and verify_audit.py).

The current head is mirrored in <dir>/auth_audit.state so that truncating
the tail is detectable too. Writers serialize on an flock()ed lock file.
"""

from __future__ import annotations

import json
import logging
import os
import time
import hashlib
from pathlib import Path
from typing import Any, Dict, Optional, Union

import fcntl  # POSIX only

logger = logging.getLogger(__name__)

GENESIS_HASH = "00" * 32

LOG_NAME = "auth_audit.jsonl"
STATE_NAME = "auth_audit.state"
LOCK_NAME = "auth_audit.lock"


# -----------------------------------------------------------------------------
# Canonical JSON
# -----------------------------------------------------------------------------
def canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """Sorted keys, compact separators, UTF-8. Hash input and line format."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    e = dict(event)
    e.pop("prev_hash", None)
    e.pop("hash", None)
    return sha3_256_hex(bytes.fromhex(prev_hash) + canonical_json_bytes(e))


# -----------------------------------------------------------------------------
# Event helpers
# -----------------------------------------------------------------------------
def build_common(
    *,
    telegram_id: Optional[int] = None,
    scheme: Optional[str] = None,
    query_id: Optional[str] = None,
    auth_date: Optional[int] = None,
    canonical_bytes: Optional[bytes] = None,
    signature_bytes: Optional[bytes] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """
    Fields shared by every auth event.

    Any other keyword (request path, caller tags) is kept as-is when it is a
    JSON scalar and stringified otherwise.

    The signed message and signature are recorded as length + SHA3-256
    only; raw init data would replay as a credential.
    """
    out: Dict[str, Any] = {
        k: v if isinstance(v, (str, int, float, bool)) else str(v)
        for k, v in extra.items()
        if v is not None
    }
    out["ts"] = int(time.time())

    if telegram_id is not None:
        out["telegram_id"] = telegram_id
    if scheme:
        out["scheme"] = scheme
    if query_id:
        out["query_id"] = query_id
    if auth_date is not None:
        out["auth_date"] = auth_date
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    if canonical_bytes is not None:
        out["canonical_len"] = len(canonical_bytes)
        out["canonical_sha3_256"] = sha3_256_hex(canonical_bytes)

    if signature_bytes is not None:
        out["signature_len"] = len(signature_bytes)
        out["signature_sha3_256"] = sha3_256_hex(signature_bytes)

    return out


class AuditLog:
    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.log_path = self.directory / LOG_NAME
        self.state_path = self.directory / STATE_NAME
        self.lock_path = self.directory / LOCK_NAME

    def _head_locked(self) -> str:
        """Chain head per the state file, GENESIS_HASH if absent or garbled. Hold the lock."""
        try:
            s = self.state_path.read_text(encoding="utf-8").strip().lower()
        except FileNotFoundError:
            return GENESIS_HASH
        if len(s) == 64 and all(c in "0123456789abcdef" for c in s):
            return s
        return GENESIS_HASH

    def append_event(self, event: Dict[str, Any]) -> str:
        """
        Append one event with hash chaining; returns the new chain head.

        The line is fsync()ed before the state file moves forward.
        """
        self.directory.mkdir(parents=True, exist_ok=True)

        # separate lock file: log and state may not exist yet
        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._head_locked()

                # chain fields from the caller are discarded
                body = {k: v for k, v in event.items() if k not in ("prev_hash", "hash")}
                next_hash = chain_hash(prev_hash, body)
                stored = {**body, "prev_hash": prev_hash, "hash": next_hash}

                with open(self.log_path, "ab") as f:
                    f.write(canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(next_hash + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return next_hash

    def record(self, event: Dict[str, Any]) -> None:
        """append_event() for the request path: an audit failure is logged, not raised."""
        try:
            self.append_event(event)
        except (OSError, ValueError):
            logger.exception("audit append failed: result=%s reason=%s", event.get("result"), event.get("reason"))


# -----------------------------------------------------------------------------
# Verification
# -----------------------------------------------------------------------------
def verify_log_chain(path: Union[str, Path]) -> tuple[bool, Optional[int], str]:
    """
    Recompute every head of an audit log.

    Returns (ok, failing_line_number, last_hash). A missing log is valid.
    """
    path = Path(path)
    prev = GENESIS_HASH
    if not path.exists():
        return True, None, prev

    with open(path, "rb") as f:
        for lineno, raw_line in enumerate(f, start=1):
            raw_line = raw_line.strip()
            if not raw_line:
                continue
            try:
                obj = json.loads(raw_line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                return False, lineno, prev
            if not isinstance(obj, dict) or obj.get("prev_hash") != prev:
                return False, lineno, prev
            if chain_hash(prev, obj) != obj.get("hash"):
                return False, lineno, prev
            prev = obj["hash"]

    return True, None, prev

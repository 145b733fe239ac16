#!/usr/bin/env python3
"""
verify_audit.py: Verify the tamper-evident authentication audit log (JSONL).

Checks:
- every line parses as a JSON object
- hash chaining: prev_hash links to the previous line, hash recomputes as
    SHA3-256( bytes.fromhex(prev_hash) || canonical_json(event_without_hash_fields) )
- optional state file holds the last hash of the log

Exit codes:
- 0: OK
- 1: Verification failed
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from tma_auth.audit import GENESIS_HASH, LOG_NAME, STATE_NAME, verify_log_chain


@dataclass
class VerifyResult:
    ok: bool
    last_hash: Optional[str]
    message: str


def _is_hex64(s: str) -> bool:
    if len(s) != 64:
        return False
    try:
        bytes.fromhex(s)
        return True
    except ValueError:
        return False


def verify_audit(log_path: Path, state_path: Optional[Path] = None) -> VerifyResult:
    if not log_path.exists():
        return VerifyResult(False, None, f"Log not found: {log_path}")

    ok, bad_line, last_hash = verify_log_chain(log_path)
    if not ok:
        return VerifyResult(False, last_hash, f"{log_path}:{bad_line}: chain broken")

    if state_path is not None:
        if not state_path.exists():
            return VerifyResult(False, last_hash, f"State file not found: {state_path}")
        state_val = state_path.read_text(encoding="utf-8").strip()
        if not _is_hex64(state_val):
            return VerifyResult(False, last_hash, f"State file value is not 64-hex: {state_path}")
        if state_val != last_hash:
            return VerifyResult(False, last_hash, f"State mismatch: state={state_val} log_last={last_hash}")

    return VerifyResult(True, last_hash, "OK")


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(description="Verify Mini App auth audit log integrity (hash-chained JSONL).")
    p.add_argument(
        "audit_dir",
        type=Path,
        help=f"Audit directory containing {LOG_NAME} (and {STATE_NAME})",
    )
    p.add_argument(
        "--no-state",
        action="store_true",
        help="Do not compare the chain head against the state file.",
    )
    args = p.parse_args(argv)

    log_path = args.audit_dir / LOG_NAME
    state_path = None if args.no_state else args.audit_dir / STATE_NAME
    res = verify_audit(log_path, state_path)

    if res.ok:
        print("OK")
        if res.last_hash and res.last_hash != GENESIS_HASH:
            print(f"last_hash={res.last_hash}")
        return 0

    print("FAIL", file=sys.stderr)
    print(res.message, file=sys.stderr)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())

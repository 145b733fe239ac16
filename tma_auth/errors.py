"""
tma_auth/errors.py

Typed failures of the init-data authentication pipeline.

Every stage raises one of these and the orchestrator lets it propagate
unchanged, so callers (and tests) can tell the exact cause apart while the
user-facing text stays deliberately coarse:

  ParseError          -> "invalid authentication data"   (400)
  MissingSubject      -> "invalid authentication data"   (400)
  SignatureMismatch   -> "authentication failed"         (401)
  UnknownKey          -> "authentication failed"         (500, alert)
  Expired/FutureDated -> "please reopen the app"         (401)
  StoreError          -> retryable service failure       (503)
"""

from __future__ import annotations

from enum import Enum


INVALID_DATA_MESSAGE = "invalid authentication data"
AUTH_FAILED_MESSAGE = "authentication failed"
STALE_MESSAGE = "please reopen the app"
UNAVAILABLE_MESSAGE = "service temporarily unavailable, please retry"


class ConfigError(Exception):
    """Deployment misconfiguration detected at startup."""


class AuthError(Exception):
    code = "auth_error"
    public_message = AUTH_FAILED_MESSAGE
    status_code = 401
    retryable = False
    # operational alert (deployment fault rather than client fault)
    alert = False

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail


class ParseFailure(str, Enum):
    EMPTY = "empty"
    MALFORMED = "malformed"


class ParseError(AuthError):
    public_message = INVALID_DATA_MESSAGE
    status_code = 400

    def __init__(self, reason: ParseFailure, detail: str = ""):
        super().__init__(detail or reason.value)
        self.reason = reason

    @property
    def code(self) -> str:  # type: ignore[override]
        return f"parse_{self.reason.value}"


class VerificationError(AuthError):
    code = "verification_failed"


class SignatureMismatch(VerificationError):
    code = "signature_mismatch"


class UnknownKey(VerificationError):
    code = "unknown_key"
    status_code = 500
    alert = True


class FreshnessError(AuthError):
    code = "stale"
    public_message = STALE_MESSAGE


class Expired(FreshnessError):
    code = "expired"


class FutureDated(FreshnessError):
    code = "future_dated"


class MissingSubject(AuthError):
    code = "missing_subject"
    public_message = INVALID_DATA_MESSAGE
    status_code = 400


class StoreError(AuthError):
    code = "store_error"
    public_message = UNAVAILABLE_MESSAGE
    status_code = 503
    retryable = True


class TokenError(Exception):
    """Session token could not be decoded, verified or is expired."""

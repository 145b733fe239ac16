# tma_auth/pipeline.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# AuthPipeline composes the stages into one verify-and-resolve operation:
#
#   raw initData
#     -> parse() + decode_signature()  (initdata.py)   ParseError
#     -> canonicalize()                (canonical.py)
#     -> verify()                      (signature.py)  SignatureMismatch / UnknownKey
#     -> interpret()                   (initdata.py)   ParseError
#     -> check_freshness()             (freshness.py)  Expired / FutureDated
#     -> subject present?                              MissingSubject
#     -> resolver.resolve()            (resolver.py)   StoreError
#     -> IdentityRecord
#
# Rules:
#   - The typed view (user JSON, auth_date integer) is only built after the
#     signature verified, so a tampered field always reads as a signature
#     failure.
#   - The first failing stage short-circuits the rest; its exception
#     propagates unchanged (no catch-and-rewrap).
#   - Nothing is retried here. Verification is deterministic; only StoreError
#     is worth a retry, and that is the caller's decision.
#   - Key material is injected at construction; there is no module-level
#     secret.
# -----------------------------------------------------------------------------

import logging
import time
from dataclasses import dataclass
from typing import Optional

from .audit import AuditLog, build_common
from .canonical import canonicalize
from .errors import AuthError, ConfigError, MissingSubject
from .freshness import DEFAULT_CLOCK_SKEW, Seconds, check_freshness
from .initdata import (
    ParsedInitData,
    RawInitPayload,
    SignatureScheme,
    decode_signature,
    interpret,
    parse,
)
from .resolver import IdentityResolver
from .signature import VerificationKeyMaterial, verify
from .storage import IdentityRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedIdentity:
    platform_user_id: int
    username: Optional[str]
    verified_at: int
    scheme: SignatureScheme
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    query_id: Optional[str] = None


class _Progress:
    """What the stages have produced so far; feeds logs and audit events."""

    payload: Optional[RawInitPayload] = None
    signature: Optional[bytes] = None
    canonical: Optional[bytes] = None
    parsed: Optional[ParsedInitData] = None

    @property
    def telegram_id(self) -> Optional[int]:
        return self.parsed.platform_user_id if self.parsed else None

    def audit_fields(self) -> dict:
        out: dict = {}
        if self.payload is not None:
            out["scheme"] = self.payload.scheme.value
            out["query_id"] = self.payload.get("query_id")
        if self.parsed is not None:
            out["telegram_id"] = self.parsed.platform_user_id
            out["auth_date"] = self.parsed.auth_date
        if self.canonical is not None:
            out["canonical_bytes"] = self.canonical
        if self.signature is not None:
            out["signature_bytes"] = self.signature
        return out


def _now_epoch() -> int:
    return int(time.time())


class AuthPipeline:
    def __init__(
        self,
        keys: VerificationKeyMaterial,
        resolver: IdentityResolver,
        max_age: Seconds,
        clock_skew: Seconds = DEFAULT_CLOCK_SKEW,
        audit: Optional[AuditLog] = None,
    ):
        self.keys = keys
        self.resolver = resolver
        self.max_age = max_age
        self.clock_skew = clock_skew
        self.audit = audit

    # -------------------------------------------------------------------------
    # Audit / logging
    # -------------------------------------------------------------------------
    def audit_event(self, result: str, reason: str, progress: Optional[_Progress] = None,
                    context: Optional[dict] = None, **extra) -> None:
        if self.audit is None:
            return
        fields = {str(k): v for k, v in (context or {}).items()}
        if progress is not None:
            fields.update(progress.audit_fields())
        self.audit.record({**build_common(**fields), "result": result, "reason": reason, **extra})

    def record_failure(self, err: AuthError, progress: _Progress, context: Optional[dict]) -> None:
        if err.alert:
            logger.critical("configuration fault during init data verification: %s", err.detail)
        elif err.retryable:
            logger.error("init data authentication failed: code=%s detail=%s", err.code, err.detail)
        else:
            logger.warning("init data rejected: code=%s telegram_id=%s", err.code, progress.telegram_id)
        result = "error" if err.alert or err.retryable else "denied"
        self.audit_event(result, err.code, progress, context)

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------
    def verify(self, raw: Optional[str], now: Optional[int] = None,
               context: Optional[dict] = None) -> VerifiedIdentity:
        """
        Steps 1-5: parse, canonicalize, verify, freshness, subject.

        No store access; safe to run for callers (e.g. bot middleware) that
        only need to know who is asking.
        """
        now = _now_epoch() if now is None else now
        p = _Progress()

        try:
            p.payload = parse(raw)
            p.signature = decode_signature(p.payload)
            p.canonical = canonicalize(p.payload)
            verify(p.payload.scheme, p.canonical, p.signature, self.keys)
            p.parsed = interpret(p.payload, p.signature)
            check_freshness(p.parsed.auth_date, now, self.max_age, self.clock_skew)

            # "user" is optional at parse time
            if p.parsed.user is None:
                raise MissingSubject("init data carries no user id")
        except AuthError as e:
            self.record_failure(e, p, context)
            raise

        user = p.parsed.user
        logger.debug("init data verified: telegram_id=%s scheme=%s", user.id, p.parsed.scheme.value)
        return VerifiedIdentity(
            platform_user_id=user.id,
            username=user.username,
            verified_at=now,
            scheme=p.parsed.scheme,
            first_name=user.first_name,
            last_name=user.last_name,
            query_id=p.parsed.query_id,
        )

    def authenticate(self, raw: Optional[str], now: Optional[int] = None,
                     context: Optional[dict] = None) -> IdentityRecord:
        identity = self.verify(raw, now, context)
        ctx = {**(context or {}), "telegram_id": identity.platform_user_id, "scheme": identity.scheme.value}

        try:
            record = self.resolver.resolve(identity.platform_user_id, identity.username)
        except AuthError as e:
            self.record_failure(e, _Progress(), ctx)
            raise

        self.audit_event("approved", f"{identity.scheme.value}_signature_valid", context=ctx,
                         local_id=record.local_id)
        logger.info("authenticated telegram_id=%s as local_id=%s", identity.platform_user_id, record.local_id)
        return record


# -----------------------------------------------------------------------------
# Development bypass
# -----------------------------------------------------------------------------
class DevelopmentBypass:
    """
    Local-development variant: when no init data is present at all, resolve
    a caller-supplied mock user id without any signature.

    Refuses to be constructed in a production environment. A payload that
    IS present always goes through the real pipeline.
    """

    def __init__(self, pipeline: AuthPipeline, app_env: str):
        if app_env == "production":
            raise ConfigError("development bypass cannot be enabled when APP_ENV=production")
        self.pipeline = pipeline
        logger.warning("DEVELOPMENT BYPASS ENABLED: unsigned mock users will be accepted")

    def authenticate(self, raw: Optional[str], now: Optional[int] = None,
                     mock_user_id: Optional[int] = None, mock_username: Optional[str] = None,
                     context: Optional[dict] = None) -> IdentityRecord:
        if (raw and raw.strip()) or mock_user_id is None:
            return self.pipeline.authenticate(raw, now, context)

        logger.warning("development bypass: resolving unsigned telegram_id=%s", mock_user_id)
        ctx = {**(context or {}), "telegram_id": mock_user_id}
        try:
            record = self.pipeline.resolver.resolve(mock_user_id, mock_username)
        except AuthError as e:
            self.pipeline.record_failure(e, _Progress(), ctx)
            raise

        self.pipeline.audit_event("approved", "development_bypass", context=ctx, local_id=record.local_id)
        return record

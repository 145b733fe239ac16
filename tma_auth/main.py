# tma_auth/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" orchestration glue:
#   - It wires HTTP endpoints to the pipeline implemented elsewhere.
#   - It MUST NOT implement crypto itself (crypto lives in signature.py +
#     tokens.py).
#   - It maps typed AuthError failures to HTTP status + a coarse public
#     message; the precise cause only goes to logs and the audit log.
#
# Key modules / responsibilities:
#   - config.py     : environment-driven settings (bot token, keys, max age)
#   - initdata.py   : init payload parsing
#   - canonical.py  : data-check string
#   - signature.py  : HMAC-SHA256 / Ed25519 verification
#   - freshness.py  : auth_date replay window
#   - storage.py    : identity store (SQLite / in-memory)
#   - resolver.py   : verified identity -> identity record
#   - pipeline.py   : composition of the above
#   - tokens.py     : Ed25519 session tokens issued after login
#   - audit.py      : append-only audit log (security telemetry, forensics)
#
# Init data may arrive in the JSON body ("initData"), the
# X-Telegram-Init-Data header, or "Authorization: tma <initData>".
# -----------------------------------------------------------------------------

import logging
import time
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from .audit import AuditLog
from .config import Settings, load_settings
from .errors import AuthError, TokenError
from .initdata import extract_init_data
from .models import AuthRequest
from .pipeline import AuthPipeline, DevelopmentBypass
from .resolver import IdentityResolver
from .signature import VerificationKeyMaterial
from .storage import IdentityRecord, IdentityStore, SqliteIdentityStore
from .tokens import issue_session_token, session_signing_key, verify_session_token

logger = logging.getLogger(__name__)

_logging_configured = False


def configure_logging(level: str = "INFO") -> None:
    global _logging_configured
    if _logging_configured:
        return
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _logging_configured = True


def _now_epoch() -> int:
    # Keep time source centralized for easier testing/mocking.
    return int(time.time())


def _request_context(request: Request) -> dict:
    return {
        "request_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def create_app(settings: Optional[Settings] = None, store: Optional[IdentityStore] = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.LOG_LEVEL)

    keys = VerificationKeyMaterial.from_settings(settings)
    store = store or SqliteIdentityStore(settings.DATABASE_PATH)
    audit = AuditLog(settings.AUDIT_DIR) if settings.AUDIT_ENABLED else None

    pipeline = AuthPipeline(
        keys=keys,
        resolver=IdentityResolver(store),
        max_age=settings.INIT_DATA_MAX_AGE_SECONDS,
        clock_skew=settings.CLOCK_SKEW_SECONDS,
        audit=audit,
    )
    bypass = DevelopmentBypass(pipeline, settings.APP_ENV) if settings.DEV_BYPASS else None

    signing_key = session_signing_key(settings.SESSION_SIGNING_KEY_B64)
    verify_key = signing_key.public_key()

    app = FastAPI(title="Telegram Mini App Auth", version="0.1.0")
    app.state.settings = settings
    app.state.pipeline = pipeline
    app.state.store = store

    # -------------------------------------------------------------------------
    # Error mapping
    # -------------------------------------------------------------------------
    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        if exc.alert:
            logger.critical("ALERT %s on %s: %s", exc.code, request.url.path, exc.detail)
        body = {"ok": False, "error": exc.public_message}
        headers = {"Retry-After": "1"} if exc.retryable else None
        return JSONResponse(status_code=exc.status_code, content=body, headers=headers)

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    # -------------------------------------------------------------------------
    # Routes
    # -------------------------------------------------------------------------
    @app.get("/health")
    def health():
        return {"ok": True}

    @app.post("/api/v1/auth/telegram")
    def auth_telegram(
        request: Request,
        body: Optional[AuthRequest] = None,
        x_telegram_init_data: Optional[str] = Header(default=None),
        authorization: Optional[str] = Header(default=None),
    ):
        raw = (
            (body.initData if body else None)
            or extract_init_data(x_telegram_init_data)
            or (extract_init_data(authorization) if authorization and authorization.lower().startswith("tma ") else None)
        )
        now = _now_epoch()
        ctx = _request_context(request)

        if bypass is not None:
            record = bypass.authenticate(
                raw, now,
                mock_user_id=body.mockUserId if body else None,
                mock_username=body.mockUsername if body else None,
                context=ctx,
            )
        else:
            record = pipeline.authenticate(raw, now, context=ctx)

        token = issue_session_token(signing_key, record, now, settings.SESSION_TTL_SECONDS)
        return {
            "ok": True,
            "user": record.public_view(),
            "token": token,
            "expires_at": now + settings.SESSION_TTL_SECONDS,
        }

    def current_identity(authorization: Optional[str] = Header(default=None)) -> IdentityRecord:
        if not authorization or not authorization.lower().startswith("bearer "):
            raise HTTPException(401, "missing bearer token", headers={"WWW-Authenticate": "Bearer"})
        try:
            claims = verify_session_token(verify_key, authorization[7:].strip(), _now_epoch())
        except TokenError as e:
            logger.info("session token rejected: %s", e)
            raise HTTPException(401, "invalid or expired token")

        record = store.get_by_local_id(int(claims["sub"]))
        if record is None or record.platform_user_id != claims.get("tg"):
            raise HTTPException(401, "unknown identity")
        return record

    @app.get("/api/v1/auth/me")
    def me(record: IdentityRecord = Depends(current_identity)):
        return {"ok": True, "user": record.public_view()}

    return app

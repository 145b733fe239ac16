"""Builders for signed init data used across the test modules."""

import json
from urllib.parse import urlencode

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from tma_auth.canonical import build_data_check_string
from tma_auth.signature import VerificationKeyMaterial, sign_current, sign_legacy


BOT_TOKEN = "123456:ABC-DEF1234ghIkl-zyx57W2v1u123ew11"
BOT_ID = 123456
NOW = 1_700_000_000
MAX_AGE = 86400

# stands in for Telegram's private key
PLATFORM_SK = Ed25519PrivateKey.from_private_bytes(bytes(range(32)))
PLATFORM_PK_HEX = PLATFORM_SK.public_key().public_bytes_raw().hex()


def make_keys(bot_token=BOT_TOKEN, bot_id=BOT_ID, environment="test", with_public_key=True):
    public_keys = {"test": PLATFORM_SK.public_key()} if with_public_key else {}
    return VerificationKeyMaterial(
        bot_token=bot_token,
        bot_id=bot_id,
        public_keys=public_keys,
        environment=environment,
    )


def make_params(user_id=42, username="alice", auth_date=NOW, extra=None, include_user=True):
    params = {
        "query_id": "AAHdF6IQAAAAAN0XohDhrOrc",
        "auth_date": str(auth_date),
    }
    if include_user:
        user = {"id": user_id, "first_name": "Test", "last_name": "User", "language_code": "en"}
        if username is not None:
            user["username"] = username
        params["user"] = json.dumps(user, separators=(",", ":"))
    if extra:
        params.update(extra)
    return params


def sign_params(params, scheme="legacy", bot_token=BOT_TOKEN, sk=PLATFORM_SK, bot_id=BOT_ID):
    """Return a copy of params with hash (legacy) or signature (current) added."""
    signed = dict(params)
    dcs = build_data_check_string(params)
    if scheme == "legacy":
        signed["hash"] = sign_legacy(bot_token, dcs)
    else:
        signed["signature"] = sign_current(sk, bot_id, dcs)
    return signed


def make_init_data(scheme="legacy", **kwargs):
    signer = {k: kwargs.pop(k) for k in ("bot_token", "sk", "bot_id") if k in kwargs}
    return urlencode(sign_params(make_params(**kwargs), scheme=scheme, **signer))

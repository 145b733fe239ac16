from typing import Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from .signature import TELEGRAM_PUBLIC_KEYS, bot_id_from_token


class Settings(BaseSettings):
    # application secret (legacy "hash" scheme); "<bot_id>:<secret>"
    BOT_TOKEN: str = ""

    # application id (current "signature" scheme); derived from BOT_TOKEN if unset
    BOT_ID: Optional[int] = None

    # which Telegram public key to trust
    TELEGRAM_ENV: Literal["production", "test"] = "production"
    TELEGRAM_PUBLIC_KEYS: dict[str, str] = dict(TELEGRAM_PUBLIC_KEYS)

    # replay window
    INIT_DATA_MAX_AGE_SECONDS: int = 86400
    CLOCK_SKEW_SECONDS: int = 30

    DATABASE_PATH: str = "identities.sqlite3"

    AUDIT_DIR: str = "audit"
    AUDIT_ENABLED: bool = True

    # raw 32-byte Ed25519 seed, base64; empty -> ephemeral key
    SESSION_SIGNING_KEY_B64: str = ""
    SESSION_TTL_SECONDS: int = 3600

    # "development" allows the unsigned mock-user bypass
    APP_ENV: Literal["production", "development"] = "production"
    DEV_BYPASS: bool = False

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

    @field_validator("BOT_TOKEN", "SESSION_SIGNING_KEY_B64", mode="before")
    @classmethod
    def strip_secret(cls, v):
        return (v or "").strip()

    @field_validator("TELEGRAM_ENV", "APP_ENV", mode="before")
    @classmethod
    def normalize_env(cls, v):
        return str(v or "").strip().lower() or "production"

    @field_validator("TELEGRAM_PUBLIC_KEYS")
    @classmethod
    def normalize_public_keys(cls, v: dict[str, str]) -> dict[str, str]:
        out = {}
        for env, pk_hex in v.items():
            pk_hex = (pk_hex or "").strip().lower()
            if pk_hex and (len(pk_hex) != 64 or any(c not in "0123456789abcdef" for c in pk_hex)):
                raise ValueError(f"TELEGRAM_PUBLIC_KEYS[{env}] must be 64 hex chars")
            out[env.strip().lower()] = pk_hex
        return out

    @field_validator("INIT_DATA_MAX_AGE_SECONDS")
    @classmethod
    def positive_max_age(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("INIT_DATA_MAX_AGE_SECONDS must be > 0")
        return v

    @field_validator("CLOCK_SKEW_SECONDS", "SESSION_TTL_SECONDS")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return (v or "INFO").strip().upper()

    @model_validator(mode="after")
    def check_bot_binding(self):
        # BOT_ID must agree with the token it claims to belong to
        token_id = bot_id_from_token(self.BOT_TOKEN)
        if self.BOT_ID is not None and token_id is not None and self.BOT_ID != token_id:
            raise ValueError(f"BOT_ID {self.BOT_ID} does not match BOT_TOKEN prefix {token_id}")
        if self.DEV_BYPASS and self.APP_ENV == "production":
            raise ValueError("DEV_BYPASS requires APP_ENV=development")
        return self


def load_settings(**overrides) -> Settings:
    return Settings(**overrides)

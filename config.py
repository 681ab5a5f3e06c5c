"""
Runtime configuration

Everything is read from the environment (a local .env file is honoured).
Credentials are not validated here: a missing payment or notification
secret only becomes an error when the feature that needs it is used.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Config:
    database_url: Optional[str] = None
    database_name: Optional[str] = None

    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"

    payment_key_id: Optional[str] = None
    payment_key_secret: Optional[str] = None
    payment_api_base: str = "https://api.razorpay.com"
    payment_timeout: float = 10.0
    payment_currency: str = "INR"

    notify_account_sid: Optional[str] = None
    notify_auth_token: Optional[str] = None
    notify_from_number: Optional[str] = None
    notify_admin_phone: Optional[str] = None
    notify_api_base: str = "https://api.twilio.com"

    log_level: str = "INFO"
    log_json: bool = False
    settings_change_feed: bool = False

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            database_url=_env("DATABASE_URL"),
            database_name=_env("DATABASE_NAME"),
            jwt_secret=_env("AUTH_JWT_SECRET"),
            jwt_algorithm=_env("AUTH_JWT_ALGORITHM", "HS256"),
            payment_key_id=_env("PAYMENT_KEY_ID"),
            payment_key_secret=_env("PAYMENT_KEY_SECRET"),
            payment_api_base=_env("PAYMENT_API_BASE", "https://api.razorpay.com"),
            payment_timeout=_env_float("PAYMENT_TIMEOUT_SECONDS", 10.0),
            payment_currency=_env("PAYMENT_CURRENCY", "INR"),
            notify_account_sid=_env("NOTIFY_ACCOUNT_SID"),
            notify_auth_token=_env("NOTIFY_AUTH_TOKEN"),
            notify_from_number=_env("NOTIFY_FROM_NUMBER"),
            notify_admin_phone=_env("NOTIFY_ADMIN_PHONE"),
            notify_api_base=_env("NOTIFY_API_BASE", "https://api.twilio.com"),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            log_json=(_env("LOG_JSON", "false").lower() == "true"),
            settings_change_feed=(_env("SETTINGS_CHANGE_FEED", "false").lower() == "true"),
        )


def get_config() -> Config:
    """FastAPI dependency; tests override it with a hand-built Config."""
    return Config.from_env()

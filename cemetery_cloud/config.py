"""Runtime configuration read from the environment (and an optional .env file)."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None or value == "" else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_list(name: str) -> List[str]:
    raw = os.getenv(name) or ""
    return [part.strip() for part in raw.split(",") if part.strip()]


def normalize_database_url(url: str) -> str:
    # Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./cemetery.db"
    jwt_secret: str = "dev_secret_change_me"
    token_ttl_hours: int = 8
    app_mode: str = "prod"
    plots_per_cemetery_limit: int = 10

    disable_email: bool = False
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_secure: bool = False
    smtp_user: str = ""
    smtp_pass: str = ""
    mail_from: str = "no-reply@example.com"
    notify_to: List[str] = field(default_factory=list)

    @property
    def is_demo(self) -> bool:
        return self.app_mode == "demo"

    @property
    def email_enabled(self) -> bool:
        return bool(
            not self.disable_email
            and self.smtp_host
            and self.smtp_user
            and self.smtp_pass
            and self.notify_to
        )

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        smtp_user = _getenv_str("SMTP_USER", "")
        return cls(
            database_url=normalize_database_url(
                _getenv_str("DATABASE_URL", cls.database_url)
            ),
            jwt_secret=_getenv_str("JWT_SECRET", cls.jwt_secret),
            token_ttl_hours=_getenv_int("TOKEN_TTL_HOURS", cls.token_ttl_hours),
            app_mode=_getenv_str("APP_MODE", cls.app_mode).lower(),
            plots_per_cemetery_limit=_getenv_int(
                "PLOTS_PER_CEMETERY_LIMIT", cls.plots_per_cemetery_limit
            ),
            disable_email=_getenv_bool("DISABLE_EMAIL", False),
            smtp_host=_getenv_str("SMTP_HOST", ""),
            smtp_port=_getenv_int("SMTP_PORT", cls.smtp_port),
            smtp_secure=_getenv_bool("SMTP_SECURE", False),
            smtp_user=smtp_user,
            smtp_pass=_getenv_str("SMTP_PASS", ""),
            mail_from=_getenv_str("MAIL_FROM", smtp_user or cls.mail_from),
            notify_to=_getenv_list("NOTIFY_TO"),
        )

"""Environment-backed configuration helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# .env рядом с backend
load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env", override=False)

# fallback: корень репо
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env", override=False)

IDENTITY_POLICIES = ("reject", "stub")


@dataclass(slots=True)
class Settings:
    database_url: str
    kit_api_key: str | None
    kit_form_id: str | None
    kit_api_base: str
    kit_timeout_sec: float
    frontend_domain: str
    survey_responses_table: str
    user_tags_table: str
    subscriber_table: str
    identity_policy: str
    rate_limit_max: int
    rate_limit_window_sec: int
    tag_upsert_workers: int
    log_level: str
    trust_proxy_headers: bool = False

    @classmethod
    def load(cls) -> "Settings":
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL is not set")
        # SQLAlchemy no longer accepts the legacy Heroku scheme
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)

        policy = os.getenv("IDENTITY_POLICY", "reject").strip().lower()
        if policy not in IDENTITY_POLICIES:
            raise RuntimeError(
                f"IDENTITY_POLICY must be one of {', '.join(IDENTITY_POLICIES)}, got {policy!r}"
            )

        return cls(
            database_url=database_url,
            kit_api_key=os.getenv("KIT_API_KEY"),
            kit_form_id=os.getenv("KIT_FORM_ID"),
            kit_api_base=os.getenv("KIT_API_BASE", "https://api.kit.com"),
            kit_timeout_sec=float(os.getenv("KIT_TIMEOUT_SEC", "10")),
            frontend_domain=os.getenv("FRONTEND_DOMAIN", "*"),
            survey_responses_table=os.getenv("SURVEY_RESPONSES_TABLE_NAME", "survey_responses"),
            user_tags_table=os.getenv("USER_TAGS_TABLE_NAME", "user_tags"),
            subscriber_table=os.getenv("SUBSCRIBER_TABLE_NAME", "subscribers"),
            identity_policy=policy,
            rate_limit_max=int(os.getenv("RATE_LIMIT_MAX", "5")),
            rate_limit_window_sec=int(os.getenv("RATE_LIMIT_WINDOW_SEC", "60")),
            tag_upsert_workers=int(os.getenv("TAG_UPSERT_WORKERS", "8")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            trust_proxy_headers=os.getenv("TRUST_PROXY_HEADERS", "false").strip().lower() in ("1", "true", "yes"),
        )

    @property
    def kit_enabled(self) -> bool:
        return bool(self.kit_api_key and self.kit_api_key.strip())

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.frontend_domain.split(",") if origin.strip()]

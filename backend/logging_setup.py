"""
Logging setup with contextvars-based metadata injection.

- Adds the current submission id into every log line.
- Tunes noisy third-party loggers (httpx, sqlalchemy).
"""

from __future__ import annotations

import contextvars
import logging

cv_submission_id = contextvars.ContextVar("submission_id", default="-")


class ContextInjectFilter(logging.Filter):
    """Inject context variables into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.submission = cv_submission_id.get() or "-"
        return True


def set_submission_context(submission_id: str | None) -> contextvars.Token:
    return cv_submission_id.set(submission_id or "-")


def reset_submission_context(token: contextvars.Token) -> None:
    cv_submission_id.reset(token)


def mask_email(email: str | None) -> str:
    """Keep the first three characters for correlation, hide the rest."""
    value = (email or "").strip()
    return "***" if len(value) <= 3 else f"{value[:3]}***"


def configure_logging(level: str | int = logging.INFO) -> None:
    """Configure root logging once at process start."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s s=%(submission)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    handler.addFilter(ContextInjectFilter())
    root.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logging.getLogger(__name__).info("Logging configured (level=%s)", logging.getLevelName(level))

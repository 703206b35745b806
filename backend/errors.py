"""Error taxonomy for the submission pipeline.

Errors raised before the survey response is durably stored reach the caller;
anything after that point is logged and folded into the response summary.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List


@dataclass(frozen=True, slots=True)
class Violation:
    field: str
    code: str
    message: str
    value: Any = None

    def as_dict(self) -> dict[str, Any]:
        return {"field": self.field, "code": self.code, "message": self.message, "value": self.value}


class SurveyServiceError(RuntimeError):
    """Base error for the survey service."""

    status_code = 500
    public_message = "Internal server error"


class ValidationError(SurveyServiceError):
    """Payload is malformed. Carries every violation found, not just the first."""

    status_code = 400
    public_message = "Validation failed"

    def __init__(self, violations: List[Violation]) -> None:
        self.violations = list(violations)
        summary = "; ".join(f"{v.field}: {v.code}" for v in self.violations)
        super().__init__(f"Invalid submission ({summary})")


class IdentityNotFound(SurveyServiceError):
    """No subscriber exists for the submitted email."""

    status_code = 404
    public_message = "Subscriber not found"

    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__("Email not found in subscriber database")


class PersistenceError(SurveyServiceError):
    """Durable write failed."""

    status_code = 500
    public_message = "Failed to save survey response"


class TagUpsertError(SurveyServiceError):
    """A single tag upsert failed. Never fatal to a submission."""

    def __init__(self, tag: str, reason: str) -> None:
        self.tag = tag
        self.reason = reason
        super().__init__(f"Tag {tag} upsert failed: {reason}")


class TagUpdateFailed(PersistenceError):
    """None of the requested tags could be written."""

    public_message = "Failed to update tags"


class ExternalSyncError(SurveyServiceError):
    """Kit rejected the request or could not be reached."""

    status_code = 502
    public_message = "Kit.com sync failed"

    def __init__(self, message: str, *, status: int | None = None, body: str | None = None) -> None:
        self.status = status
        self.body = body
        super().__init__(message)


class RateLimited(SurveyServiceError):
    """Caller exceeded the submission window."""

    status_code = 429
    public_message = "Too many requests"

    def __init__(self, caller: str, retry_after: int) -> None:
        self.caller = caller
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded, retry in {retry_after}s")

"""Reading and editing a subscriber's tags outside the survey flow (manual edits, imports)."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import PydanticCustomError
from typing_extensions import TypedDict

from db import TAG_SOURCES
from errors import IdentityNotFound, TagUpdateFailed, ValidationError, Violation
from logging_setup import mask_email
from subscribers import Identity, SubscriberDirectory
from survey_catalog import dedupe, is_known_tag
from tag_store import TagStore, TagUpsertResult
from validation import is_valid_email, violations_from

logger = logging.getLogger(__name__)


class UserTags(TypedDict):
    email: str
    tags: List[str]
    lastUpdated: Optional[str]


class TagUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    email: str
    tags: List[str] = Field(min_length=1)
    source: str = "manual"

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        if not is_valid_email(value):
            raise PydanticCustomError("invalid_email", "Invalid email format")
        return value.lower()

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, value: List[str]) -> List[str]:
        invalid = [tag for tag in value if not is_known_tag(tag)]
        if invalid:
            raise PydanticCustomError(
                "invalid_tags",
                "Invalid tags: {tags}",
                {"tags": ", ".join(invalid), "invalid": invalid},
            )
        return dedupe(value)

    @field_validator("source")
    @classmethod
    def _check_source(cls, value: str) -> str:
        if value not in TAG_SOURCES:
            raise PydanticCustomError(
                "invalid_source",
                "Tag source must be one of: {allowed}",
                {"allowed": ", ".join(TAG_SOURCES)},
            )
        return value


class UserTagService:
    def __init__(self, *, subscribers: SubscriberDirectory, tags: TagStore) -> None:
        self._subscribers = subscribers
        self._tags = tags

    def list_tags(self, email: str) -> UserTags:
        email = email.strip().lower()
        if not is_valid_email(email):
            raise ValidationError([Violation("email", "invalid_email", "Invalid email format", email)])
        self._require_subscriber(email)

        records = self._tags.tags_for(email)
        last = max((r["updated_at"] for r in records), default=None)
        return UserTags(
            email=email,
            tags=[r["tag_name"] for r in records],
            lastUpdated=last.isoformat() if last is not None else None,
        )

    def update_tags(self, raw: Any) -> TagUpsertResult:
        try:
            update = TagUpdate.model_validate(raw)
        except PydanticValidationError as exc:
            raise ValidationError(violations_from(exc)) from None

        identity = self._require_subscriber(update.email)
        result = self._tags.upsert_tags(update.email, update.tags, update.source, identity.id)
        if not result.succeeded:
            raise TagUpdateFailed(f"No tags saved for {mask_email(update.email)}")
        if result.failed:
            logger.error("Failed to save tags: %s", ", ".join(sorted(result.failed)))
        logger.info(
            "Tags updated for %s from %s: %d/%d",
            mask_email(update.email),
            update.source,
            len(result.succeeded),
            result.requested,
        )
        return result

    def _require_subscriber(self, email: str) -> Identity:
        identity = self._subscribers.find_by_email(email)
        if identity is None:
            logger.warning("Subscriber not found: %s", mask_email(email))
            raise IdentityNotFound(email)
        return identity

"""Survey submission pipeline.

RECEIVED -> VALIDATED -> STORED -> TAGGED -> DONE, strictly in that order.
Only failures up to and including the response insert reach the caller;
tag upserts and the Kit sync are summarised, never fatal.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from typing_extensions import TypedDict

from errors import IdentityNotFound, PersistenceError, RateLimited, ValidationError
from kit_client import SYNC_SKIPPED, KitClient, SyncOutcome
from logging_setup import mask_email, reset_submission_context, set_submission_context
from rate_limit import RateLimiter
from response_store import ResponseStore
from subscribers import Identity, SubscriberDirectory
from tag_store import TagStore, TagUpsertResult
from validation import SurveySubmission, validate_submission

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    REJECTED = "rejected"
    STORED = "stored"
    STORAGE_FAILED = "storage_failed"
    TAGGED = "tagged"
    DONE = "done"


class SubmissionSummary(TypedDict):
    responseId: str
    tagsRequested: int
    tagsAdded: int
    tagsFailed: int
    recommendationsCount: int
    kitSyncStatus: str
    kitSyncMessage: str


@dataclass
class SubmissionResult:
    response_id: str
    tags: TagUpsertResult
    recommendations_count: int
    sync: SyncOutcome

    def summary(self) -> SubmissionSummary:
        return SubmissionSummary(
            responseId=self.response_id,
            tagsRequested=self.tags.requested,
            tagsAdded=len(self.tags.succeeded),
            tagsFailed=len(self.tags.failed),
            recommendationsCount=self.recommendations_count,
            kitSyncStatus=self.sync.status,
            kitSyncMessage=self.sync.detail,
        )


class SubmissionService:
    def __init__(
        self,
        *,
        responses: ResponseStore,
        tags: TagStore,
        kit: KitClient,
        subscribers: SubscriberDirectory,
        identity_policy: str = "reject",
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self._responses = responses
        self._tags = tags
        self._kit = kit
        self._subscribers = subscribers
        self._identity_policy = identity_policy
        self._rate_limiter = rate_limiter

    def process(self, raw: Any, caller: str = "anonymous") -> SubmissionResult:
        token = set_submission_context(uuid.uuid4().hex[:8])
        try:
            return self._run(raw, caller)
        finally:
            reset_submission_context(token)

    def _run(self, raw: Any, caller: str) -> SubmissionResult:
        logger.debug("stage=%s", Stage.RECEIVED.value)
        if self._rate_limiter is not None and not self._rate_limiter.is_allowed(caller):
            retry_after = self._rate_limiter.retry_after(caller)
            logger.warning("Rate limit hit for caller %s", caller)
            raise RateLimited(caller, retry_after)

        try:
            submission = validate_submission(raw)
        except ValidationError as exc:
            logger.warning("%s: %d violation(s)", Stage.REJECTED.value, len(exc.violations))
            raise
        logger.debug("stage=%s", Stage.VALIDATED.value)

        logger.info(
            "Processing survey for %s (tags=%d, recommendations=%d)",
            mask_email(submission.email),
            len(submission.tags),
            len(submission.recommendations),
        )

        identity = self._resolve_identity(submission)

        try:
            response_id = self._responses.append(submission, identity.id)
        except PersistenceError:
            logger.error("%s for %s", Stage.STORAGE_FAILED.value, mask_email(submission.email))
            raise
        logger.debug("stage=%s", Stage.STORED.value)

        tag_result = self._save_tags(submission, identity)
        logger.debug("stage=%s", Stage.TAGGED.value)
        sync = self._kit.sync(submission.email, submission.tags)
        self._record_sync(response_id, submission.email, sync)

        logger.info("Survey processing completed (response %s)", response_id)
        logger.debug("stage=%s", Stage.DONE.value)
        return SubmissionResult(
            response_id=response_id,
            tags=tag_result,
            recommendations_count=len(submission.recommendations),
            sync=sync,
        )

    def _resolve_identity(self, submission: SurveySubmission) -> Identity:
        identity = self._subscribers.find_by_email(submission.email)
        if identity is not None:
            return identity
        if self._identity_policy == "stub":
            logger.info("Creating stub subscriber for %s", mask_email(submission.email))
            return self._subscribers.create(submission.email, submission.name)
        logger.warning("Subscriber not found: %s", mask_email(submission.email))
        raise IdentityNotFound(submission.email)

    def _save_tags(self, submission: SurveySubmission, identity: Identity) -> TagUpsertResult:
        try:
            result = self._tags.upsert_tags(submission.email, submission.tags, "survey", identity.id)
        except Exception as exc:
            # the response row already exists; report every tag as failed instead of erroring
            logger.exception("Tag upsert aborted for %s", mask_email(submission.email))
            return TagUpsertResult(failed={tag: str(exc) for tag in submission.tags})
        if result.failed:
            logger.error("Failed to save tags: %s", ", ".join(sorted(result.failed)))
        return result

    def _record_sync(self, response_id: str, email: str, sync: SyncOutcome) -> None:
        if sync.status == SYNC_SKIPPED:
            logger.info("Kit.com sync skipped: %s", sync.detail)
            return
        self._responses.patch_sync_status(response_id, email, sync.status, datetime.now(timezone.utc))
        if sync.error is not None:
            self._responses.record_sync_failure(response_id, email, sync.error)

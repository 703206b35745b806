"""Append-only store of survey responses (the audit trail)."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, List

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from typing_extensions import TypedDict

from db import SYNC_FAILED, SYNC_PENDING, SYNC_STATUSES, Database
from errors import PersistenceError
from logging_setup import mask_email
from validation import SurveySubmission

logger = logging.getLogger(__name__)


class SurveyResponseRecord(TypedDict, total=False):
    response_id: str
    subscriber_id: str
    email: str
    name: str
    survey_data: dict[str, Any]
    recommendations: list[str]
    selected_tags: list[str]
    custom_responses: dict[str, str]
    completed: bool
    completed_at: datetime
    kit_sync_status: str
    kit_synced_at: datetime | None
    created_at: datetime


class ResponseStore:
    def __init__(self, db: Database) -> None:
        self._db = db
        self._table = db.tables.survey_responses
        self._failures = db.tables.kit_sync_failures

    def append(self, submission: SurveySubmission, identity_ref: str) -> str:
        """Create a new response row with sync status ``pending``."""
        response_id = uuid.uuid4().hex
        stmt = insert(self._table).values(
            response_id=response_id,
            subscriber_id=identity_ref,
            email=submission.email,
            name=submission.name,
            survey_data=json.dumps(submission.survey_data.model_dump(), ensure_ascii=False),
            recommendations=json.dumps(submission.recommendations, ensure_ascii=False),
            selected_tags=json.dumps(submission.tags, ensure_ascii=False),
            custom_responses=json.dumps(submission.free_text, ensure_ascii=False),
            completed=submission.completed,
            completed_at=submission.completed_at,
            kit_sync_status=SYNC_PENDING,
            kit_synced_at=None,
            created_at=datetime.now(timezone.utc),
        )
        try:
            with self._db.begin() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("Saving survey response for %s failed: %s", mask_email(submission.email), exc)
            raise PersistenceError(f"Could not save survey response: {exc}") from exc

        logger.info("Survey response %s saved for %s", response_id, mask_email(submission.email))
        return response_id

    def patch_sync_status(
        self,
        response_id: str,
        email: str,
        status: str,
        synced_at: datetime | None = None,
    ) -> None:
        """Best-effort status update. Failures are logged, never raised."""
        if status not in SYNC_STATUSES:
            logger.error("Refusing unknown sync status %r for %s", status, response_id)
            return
        stmt = (
            update(self._table)
            .where(self._table.c.response_id == response_id)
            .where(self._table.c.email == email.lower())
            .values(kit_sync_status=status, kit_synced_at=synced_at or datetime.now(timezone.utc))
        )
        try:
            with self._db.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("Failed to update Kit sync status for %s: %s", response_id, exc)
            return
        if result.rowcount == 0:
            logger.warning("No survey response %s to mark %s", response_id, status)
            return
        logger.info("Kit sync status for %s set to %s", response_id, status)

    def record_sync_failure(self, response_id: str, email: str, reason: str | None) -> None:
        """Best-effort failure log entry for the retry job."""
        stmt = insert(self._failures).values(
            response_id=response_id,
            email=email.lower(),
            failure_reason=reason,
            retry_count=0,
            created_at=datetime.now(timezone.utc),
        )
        try:
            with self._db.begin() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("Failed to record Kit sync failure for %s: %s", response_id, exc)

    def mark_retry(self, response_id: str) -> None:
        table = self._failures
        stmt = (
            update(table)
            .where(table.c.response_id == response_id)
            .values(retry_count=table.c.retry_count + 1, last_retry_at=datetime.now(timezone.utc))
        )
        try:
            with self._db.begin() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("Failed to bump retry counter for %s: %s", response_id, exc)

    def get(self, response_id: str) -> SurveyResponseRecord | None:
        stmt = select(self._table).where(self._table.c.response_id == response_id)
        with self._db.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        return _to_record(row) if row is not None else None

    def failed_syncs(self, limit: int = 50) -> List[SurveyResponseRecord]:
        """Responses whose Kit sync failed, oldest first."""
        stmt = (
            select(self._table)
            .where(self._table.c.kit_sync_status == SYNC_FAILED)
            .order_by(self._table.c.completed_at.asc())
            .limit(limit)
        )
        with self._db.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_to_record(row) for row in rows]

    def failure_count(self, response_id: str) -> int:
        stmt = select(self._failures.c.id).where(self._failures.c.response_id == response_id)
        with self._db.connect() as conn:
            return len(conn.execute(stmt).all())


def _to_record(row: Any) -> SurveyResponseRecord:
    return SurveyResponseRecord(
        response_id=row["response_id"],
        subscriber_id=row["subscriber_id"],
        email=row["email"],
        name=row["name"],
        survey_data=json.loads(row["survey_data"]),
        recommendations=json.loads(row["recommendations"]),
        selected_tags=json.loads(row["selected_tags"]),
        custom_responses=json.loads(row["custom_responses"]),
        completed=bool(row["completed"]),
        completed_at=row["completed_at"],
        kit_sync_status=row["kit_sync_status"],
        kit_synced_at=row["kit_synced_at"],
        created_at=row["created_at"],
    )

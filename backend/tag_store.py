"""Current-state tag table keyed by (email, tag name)."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, List

from sqlalchemy import func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from typing_extensions import TypedDict

from db import TAG_SOURCES, Database
from errors import TagUpsertError
from logging_setup import mask_email
from survey_catalog import dedupe

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


class TagRecord(TypedDict):
    email: str
    tag_name: str
    tag_source: str
    subscriber_id: str | None
    created_at: datetime
    updated_at: datetime


@dataclass
class TagUpsertResult:
    succeeded: set[str] = field(default_factory=set)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def requested(self) -> int:
        return len(self.succeeded) + len(self.failed)


class TagStore:
    """Each tag is written in its own transaction; one failure never rolls back another."""

    def __init__(self, db: Database, *, max_workers: int = 8) -> None:
        self._db = db
        self._table = db.tables.user_tags
        self._max_workers = max(1, max_workers)

    def upsert_tags(
        self,
        email: str,
        tags: Iterable[str],
        source: str = "survey",
        identity_ref: str | None = None,
    ) -> TagUpsertResult:
        if source not in TAG_SOURCES:
            raise ValueError(f"Unknown tag source: {source}")

        email = email.strip().lower()
        names = dedupe(tags)
        result = TagUpsertResult()
        if not names:
            return result

        workers = min(self._max_workers, len(names))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tag-upsert") as pool:
            futures = {
                tag: pool.submit(self._upsert_one, email, tag, source, identity_ref)
                for tag in names
            }
            for tag, future in futures.items():
                try:
                    future.result()
                except TagUpsertError as exc:
                    logger.error("%s", exc)
                    result.failed[tag] = exc.reason
                else:
                    result.succeeded.add(tag)

        logger.info(
            "Tags saved for %s: %d/%d successful",
            mask_email(email),
            len(result.succeeded),
            len(names),
        )
        return result

    def tags_for(self, email: str) -> List[TagRecord]:
        stmt = (
            select(self._table)
            .where(self._table.c.email == email.strip().lower())
            .order_by(self._table.c.tag_name)
        )
        with self._db.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [
            TagRecord(
                email=row["email"],
                tag_name=row["tag_name"],
                tag_source=row["tag_source"],
                subscriber_id=row["subscriber_id"],
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    def _upsert_one(self, email: str, tag: str, source: str, identity_ref: str | None) -> None:
        now = datetime.now(timezone.utc)
        values = {
            "email": email,
            "tag_name": tag,
            "tag_source": source,
            "subscriber_id": identity_ref,
            "created_at": now,
            "updated_at": now,
        }
        try:
            dialect_insert = _DIALECT_INSERTS.get(self._db.dialect)
            if dialect_insert is not None:
                self._native_upsert(dialect_insert, values)
            else:
                self._portable_upsert(values)
        except SQLAlchemyError as exc:
            raise TagUpsertError(tag, str(exc)) from exc

    def _native_upsert(self, dialect_insert: Any, values: dict[str, Any]) -> None:
        table = self._table
        stmt = dialect_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["email", "tag_name"],
            set_={
                "tag_source": stmt.excluded.tag_source,
                "updated_at": stmt.excluded.updated_at,
                "subscriber_id": func.coalesce(stmt.excluded.subscriber_id, table.c.subscriber_id),
            },
        )
        with self._db.begin() as conn:
            conn.execute(stmt)

    def _portable_upsert(self, values: dict[str, Any]) -> None:
        # update-then-insert; a concurrent insert of the same pair falls back to update
        if self._update_existing(values):
            return
        try:
            with self._db.begin() as conn:
                conn.execute(insert(self._table).values(**values))
        except IntegrityError:
            if not self._update_existing(values):
                raise

    def _update_existing(self, values: dict[str, Any]) -> bool:
        table = self._table
        changes = {"tag_source": values["tag_source"], "updated_at": values["updated_at"]}
        if values["subscriber_id"] is not None:
            changes["subscriber_id"] = values["subscriber_id"]
        stmt = (
            update(table)
            .where(table.c.email == values["email"])
            .where(table.c.tag_name == values["tag_name"])
            .values(**changes)
        )
        with self._db.begin() as conn:
            return conn.execute(stmt).rowcount > 0

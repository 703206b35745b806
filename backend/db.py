"""Database engine and table definitions."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Connection, Engine

from config import Settings

logger = logging.getLogger(__name__)

SYNC_PENDING = "pending"
SYNC_SUCCESS = "success"
SYNC_FAILED = "failed"
SYNC_STATUSES = (SYNC_PENDING, SYNC_SUCCESS, SYNC_FAILED)

TAG_SOURCES = ("survey", "manual", "import")


@dataclass(frozen=True)
class Tables:
    metadata: MetaData
    survey_responses: Table
    user_tags: Table
    subscribers: Table
    kit_sync_failures: Table


def define_tables(
    *,
    survey_responses: str = "survey_responses",
    user_tags: str = "user_tags",
    subscribers: str = "subscribers",
    kit_sync_failures: str = "kit_sync_failures",
) -> Tables:
    metadata = MetaData()

    responses = Table(
        survey_responses,
        metadata,
        Column("response_id", String(32), primary_key=True),
        Column("subscriber_id", String(64), nullable=False, index=True),
        Column("email", String(255), nullable=False, index=True),
        Column("name", String(255)),
        Column("survey_data", Text, nullable=False),
        Column("recommendations", Text, nullable=False),
        Column("selected_tags", Text, nullable=False),
        Column("custom_responses", Text, nullable=False),
        Column("completed", Boolean, nullable=False, default=True),
        Column("completed_at", DateTime(timezone=True), nullable=False, index=True),
        # only these two columns change after insert
        Column("kit_sync_status", String(16), nullable=False, default=SYNC_PENDING, index=True),
        Column("kit_synced_at", DateTime(timezone=True), nullable=True),
        Column("created_at", DateTime(timezone=True), nullable=False),
    )

    tags = Table(
        user_tags,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("subscriber_id", String(64), nullable=True, index=True),
        Column("email", String(255), nullable=False, index=True),
        Column("tag_name", String(100), nullable=False, index=True),
        Column("tag_source", String(16), nullable=False, default="survey"),
        Column("created_at", DateTime(timezone=True), nullable=False),
        Column("updated_at", DateTime(timezone=True), nullable=False),
        UniqueConstraint("email", "tag_name", name=f"uq_{user_tags}_email_tag"),
    )

    subscriber_table = Table(
        subscribers,
        metadata,
        Column("id", String(64), primary_key=True),
        Column("email", String(255), nullable=False, unique=True),
        Column("name", String(255)),
        Column("created_at", DateTime(timezone=True), nullable=False),
    )

    failures = Table(
        kit_sync_failures,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("response_id", String(32), nullable=False, index=True),
        Column("email", String(255), nullable=False, index=True),
        Column("failure_reason", Text),
        Column("retry_count", Integer, nullable=False, default=0),
        Column("last_retry_at", DateTime(timezone=True), nullable=True),
        Column("created_at", DateTime(timezone=True), nullable=False),
    )

    return Tables(metadata, responses, tags, subscriber_table, failures)


class Database:
    """Owns the engine; built once at startup and disposed on shutdown."""

    def __init__(self, url: str, tables: Tables | None = None) -> None:
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine: Engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)
        self.tables = tables or define_tables()

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(
            settings.database_url,
            define_tables(
                survey_responses=settings.survey_responses_table,
                user_tags=settings.user_tags_table,
                subscribers=settings.subscriber_table,
            ),
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def create_all(self) -> None:
        self.tables.metadata.create_all(self.engine)
        logger.info("Tables ready on %s", self.dialect)

    @contextmanager
    def begin(self) -> Iterator[Connection]:
        """One transaction: commit on success, rollback on error."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        with self.engine.connect() as conn:
            yield conn

    def dispose(self) -> None:
        self.engine.dispose()

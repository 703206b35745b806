"""Subscriber lookup used to link submissions to a known person."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from db import Database
from errors import PersistenceError
from logging_setup import mask_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Identity:
    id: str
    email: str
    name: str | None = None


class SubscriberDirectory:
    def __init__(self, db: Database) -> None:
        self._db = db
        self._table = db.tables.subscribers

    def find_by_email(self, email: str) -> Identity | None:
        stmt = select(self._table).where(self._table.c.email == email.strip().lower())
        try:
            with self._db.connect() as conn:
                row = conn.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Subscriber lookup failed: {exc}") from exc
        if row is None:
            return None
        return Identity(id=row["id"], email=row["email"], name=row["name"])

    def create(self, email: str, name: str | None = None) -> Identity:
        """Insert a subscriber; returns the existing one if the email is taken."""
        email = email.strip().lower()
        identity = Identity(id=uuid.uuid4().hex, email=email, name=name)
        stmt = insert(self._table).values(
            id=identity.id,
            email=email,
            name=name,
            created_at=datetime.now(timezone.utc),
        )
        try:
            with self._db.begin() as conn:
                conn.execute(stmt)
        except IntegrityError:
            existing = self.find_by_email(email)
            if existing is not None:
                return existing
            raise PersistenceError(f"Could not create subscriber {mask_email(email)}")
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Subscriber insert failed: {exc}") from exc
        logger.info("Created subscriber %s", mask_email(email))
        return identity

"""Thin Kit.com client that pushes survey tags onto a subscriber."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List

import httpx

from config import Settings
from db import SYNC_FAILED, SYNC_SUCCESS
from errors import ExternalSyncError
from logging_setup import mask_email
from survey_catalog import dedupe, is_other_tag

logger = logging.getLogger(__name__)

USER_AGENT = "TherapyTools-Survey/1.0"

# not persisted: a skipped sync leaves the response pending
SYNC_SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class SyncOutcome:
    status: str
    detail: str
    synced_tags: tuple[str, ...] = ()
    error: str | None = None
    http_status: int | None = None


def exportable_tags(tags: Iterable[str]) -> List[str]:
    """Tags Kit should see: free-text sentinels never leave this service."""
    return [tag for tag in dedupe(tags) if tag and not is_other_tag(tag)]


class KitClient:
    def __init__(self, settings: Settings, *, transport: httpx.BaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport

    def is_enabled(self) -> bool:
        return self._settings.kit_enabled

    def sync(self, email: str, tags: Iterable[str]) -> SyncOutcome:
        """Upsert the subscriber's tags in Kit. Never raises."""
        to_send = exportable_tags(tags)

        if not self.is_enabled():
            logger.warning("KIT_API_KEY not configured, skipping Kit.com sync")
            return SyncOutcome(SYNC_SKIPPED, "Kit.com API key not configured")

        if not to_send:
            logger.info("No valid tags to sync to Kit.com")
            return SyncOutcome(SYNC_SKIPPED, "No valid tags to sync")

        logger.info("Syncing %d tags to Kit.com for %s", len(to_send), mask_email(email))
        try:
            self._put_subscriber(email, to_send)
        except ExternalSyncError as exc:
            logger.error("Kit.com sync failed for %s: %s", mask_email(email), exc)
            return SyncOutcome(
                SYNC_FAILED,
                str(exc),
                error=exc.body if exc.body is not None else str(exc),
                http_status=exc.status,
            )

        logger.info("Kit.com sync successful for %s", mask_email(email))
        return SyncOutcome(SYNC_SUCCESS, "Tags synced successfully to Kit.com", synced_tags=tuple(to_send))

    def _payload(self, email: str, tags: List[str]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "email": email,
            "tags": [{"name": tag} for tag in tags],
        }
        if self._settings.kit_form_id:
            payload["form_id"] = self._settings.kit_form_id
        return payload

    def _put_subscriber(self, email: str, tags: List[str]) -> None:
        headers = {
            "Authorization": f"Bearer {(self._settings.kit_api_key or '').strip()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        try:
            with httpx.Client(
                base_url=self._settings.kit_api_base,
                timeout=self._settings.kit_timeout_sec,
                transport=self._transport,
            ) as client:
                response = client.put("/subscribers", json=self._payload(email, tags), headers=headers)
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ExternalSyncError(
                f"Kit.com request timed out after {self._settings.kit_timeout_sec:g}s"
            ) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise ExternalSyncError(
                f"Kit.com API error: {status}",
                status=status,
                body=exc.response.text,
            ) from exc
        except httpx.RequestError as exc:
            raise ExternalSyncError(f"Failed to connect to Kit.com API: {exc}") from exc

from __future__ import annotations

import copy
import json
from typing import Any, Callable, List

import httpx
import pytest
from sqlalchemy import func, select

from config import Settings
from db import Database
from subscribers import SubscriberDirectory

VALID_PAYLOAD: dict[str, Any] = {
    "name": "Jane Doe",
    "email": "Jane.Doe@Example.com",
    "surveyData": {
        "setting": "setting_mixed",
        "profession": "role_therapist",
        "populations": ["pop_adults", "pop_couples"],
        "interests": ["interest_art", "interest_sandtray"],
        "frequency": "freq_weekly",
        "modalities": ["mod_cbt", "mod_dbt"],
    },
    "recommendations": ["Creative Canvas", "Feelings Wheel"],
    "selectedTags": [
        "setting_mixed",
        "role_therapist",
        "pop_adults",
        "pop_couples",
        "interest_art",
        "interest_sandtray",
        "freq_weekly",
        "mod_cbt",
        "mod_dbt",
    ],
    "customResponses": {},
    "timestamp": "2025-03-01T12:00:00Z",
    "completed": True,
}


def make_payload(**overrides: Any) -> dict[str, Any]:
    payload = copy.deepcopy(VALID_PAYLOAD)
    survey_overrides = overrides.pop("surveyData", None)
    if survey_overrides:
        payload["surveyData"].update(survey_overrides)
    payload.update(overrides)
    return payload


def make_settings(tmp_path, **overrides: Any) -> Settings:
    values: dict[str, Any] = dict(
        database_url=f"sqlite:///{tmp_path / 'survey.db'}",
        kit_api_key="test-kit-key",
        kit_form_id=None,
        kit_api_base="https://kit.test",
        kit_timeout_sec=10.0,
        frontend_domain="*",
        survey_responses_table="survey_responses",
        user_tags_table="user_tags",
        subscriber_table="subscribers",
        identity_policy="reject",
        rate_limit_max=100,
        rate_limit_window_sec=60,
        tag_upsert_workers=4,
        log_level="WARNING",
    )
    values.update(overrides)
    return Settings(**values)


def count_rows(db: Database, table) -> int:
    with db.connect() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar_one()


class FakeKit:
    """Records requests sent to Kit and answers with a configurable response."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self._responder: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200, json={"subscriber": {"id": 1}}
        )
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._responder(request)

    def respond(self, status: int, body: str = "") -> None:
        self._responder = lambda request: httpx.Response(status, text=body)

    def time_out(self) -> None:
        def raise_timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        self._responder = raise_timeout

    def payloads(self) -> List[dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def db(settings: Settings):
    database = Database.from_settings(settings)
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def subscriber(db: Database):
    return SubscriberDirectory(db).create("jane.doe@example.com", "Jane Doe")


@pytest.fixture
def fake_kit() -> FakeKit:
    return FakeKit()

"""GET /user/tags/{email} and POST /user/tags."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from app import create_app
from conftest import count_rows, make_payload
from errors import TagUpsertError
from tag_store import TagStore


@pytest.fixture
def client(settings, db, fake_kit):
    app = create_app(settings, db=db, kit_transport=fake_kit.transport)
    with TestClient(app) as test_client:
        yield test_client


def test_manual_tags_are_upserted_with_their_source(client, db, subscriber) -> None:
    response = client.post(
        "/user/tags",
        json={"email": "JANE.DOE@example.com", "tags": ["interest_music", "pop_teens", "interest_music"]},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Tags updated successfully"
    assert body["tagsAdded"] == 2
    assert body["tagsFailed"] == []

    rows = {r["tag_name"]: r for r in TagStore(db).tags_for("jane.doe@example.com")}
    assert set(rows) == {"interest_music", "pop_teens"}
    assert rows["interest_music"]["tag_source"] == "manual"
    assert rows["interest_music"]["subscriber_id"] == subscriber.id


def test_import_source_overwrites_survey_source(client, db, subscriber) -> None:
    assert client.post("/survey-submission", json=make_payload()).status_code == 200

    response = client.post(
        "/user/tags",
        json={"email": "jane.doe@example.com", "tags": ["pop_adults"], "source": "import"},
    )

    assert response.status_code == 200
    rows = {r["tag_name"]: r for r in TagStore(db).tags_for("jane.doe@example.com")}
    assert rows["pop_adults"]["tag_source"] == "import"
    assert rows["pop_couples"]["tag_source"] == "survey"
    assert count_rows(db, db.tables.user_tags) == 9


def test_update_for_unknown_subscriber_is_404(client, db) -> None:
    response = client.post("/user/tags", json={"email": "nobody@example.com", "tags": ["pop_adults"]})

    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Subscriber not found"
    assert count_rows(db, db.tables.user_tags) == 0


def test_update_rejects_tags_outside_catalog_and_bad_source(client, db, subscriber) -> None:
    response = client.post(
        "/user/tags",
        json={"email": "jane.doe@example.com", "tags": ["pop_adults", "vip"], "source": "crm"},
    )

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Validation failed"
    errors = {e["field"]: e for e in body["details"]["errors"]}
    assert errors["tags"]["code"] == "invalid_tags"
    assert errors["tags"]["value"] == ["vip"]
    assert errors["source"]["code"] == "invalid_source"
    assert count_rows(db, db.tables.user_tags) == 0


def test_list_tags_for_subscriber(client, subscriber) -> None:
    client.post("/user/tags", json={"email": "jane.doe@example.com", "tags": ["pop_teens", "interest_art"]})

    response = client.get("/user/tags/Jane.Doe@example.com")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["email"] == "jane.doe@example.com"
    assert body["tags"] == ["interest_art", "pop_teens"]
    assert body["lastUpdated"] is not None


def test_list_tags_empty_for_subscriber_without_tags(client, subscriber) -> None:
    body = client.get("/user/tags/jane.doe@example.com").json()

    assert body["tags"] == []
    assert body["lastUpdated"] is None


def test_list_tags_for_unknown_subscriber_is_404(client) -> None:
    response = client.get("/user/tags/nobody@example.com")

    assert response.status_code == 404
    assert response.json()["error"] == "Subscriber not found"


def test_list_tags_rejects_malformed_email(client) -> None:
    response = client.get("/user/tags/not-an-email")

    assert response.status_code == 400
    assert response.json()["details"]["field"] == "email"


def test_partial_and_total_upsert_failures(client, subscriber, monkeypatch) -> None:
    original = TagStore._upsert_one
    broken = {"pop_teens"}

    def flaky(self, email, tag, source, identity_ref):
        if tag in broken:
            raise TagUpsertError(tag, "locked")
        return original(self, email, tag, source, identity_ref)

    monkeypatch.setattr(TagStore, "_upsert_one", flaky)

    partial = client.post("/user/tags", json={"email": "jane.doe@example.com", "tags": ["pop_teens", "pop_adults"]})
    assert partial.status_code == 200
    assert partial.json()["tagsAdded"] == 1
    assert partial.json()["tagsFailed"] == ["pop_teens"]

    total = client.post("/user/tags", json={"email": "jane.doe@example.com", "tags": ["pop_teens"]})
    assert total.status_code == 500
    assert total.json()["error"] == "Failed to update tags"

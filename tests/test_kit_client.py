import dataclasses

from conftest import make_settings
from kit_client import SYNC_SKIPPED, KitClient, exportable_tags


def test_sync_sends_single_put_with_bearer_and_tags(tmp_path, fake_kit) -> None:
    settings = make_settings(tmp_path, kit_form_id="12345")
    client = KitClient(settings, transport=fake_kit.transport)

    outcome = client.sync("jane.doe@example.com", ["pop_adults", "mod_cbt", "pop_adults"])

    assert outcome.status == "success"
    assert outcome.synced_tags == ("pop_adults", "mod_cbt")
    [request] = fake_kit.requests
    assert request.method == "PUT"
    assert request.url == "https://kit.test/subscribers"
    assert request.headers["authorization"] == "Bearer test-kit-key"
    assert fake_kit.payloads() == [
        {
            "email": "jane.doe@example.com",
            "tags": [{"name": "pop_adults"}, {"name": "mod_cbt"}],
            "form_id": "12345",
        }
    ]


def test_other_sentinels_never_leave_the_service(settings, fake_kit) -> None:
    client = KitClient(settings, transport=fake_kit.transport)

    client.sync("jane.doe@example.com", ["role_other", "mod_other", "pop_teens"])

    [payload] = fake_kit.payloads()
    assert payload["tags"] == [{"name": "pop_teens"}]
    assert "form_id" not in payload


def test_only_sentinels_means_skipped_without_network(settings, fake_kit) -> None:
    client = KitClient(settings, transport=fake_kit.transport)

    outcome = client.sync("jane.doe@example.com", ["role_other", "mod_other"])

    assert outcome.status == SYNC_SKIPPED
    assert fake_kit.requests == []


def test_missing_credential_means_skipped_without_network(settings, fake_kit) -> None:
    client = KitClient(dataclasses.replace(settings, kit_api_key=None), transport=fake_kit.transport)

    outcome = client.sync("jane.doe@example.com", ["pop_teens"])

    assert outcome.status == SYNC_SKIPPED
    assert outcome.detail == "Kit.com API key not configured"
    assert fake_kit.requests == []


def test_error_status_maps_to_failed_with_raw_body(settings, fake_kit) -> None:
    fake_kit.respond(422, '{"errors":["Tag limit reached"]}')
    client = KitClient(settings, transport=fake_kit.transport)

    outcome = client.sync("jane.doe@example.com", ["pop_teens"])

    assert outcome.status == "failed"
    assert outcome.http_status == 422
    assert outcome.error == '{"errors":["Tag limit reached"]}'
    assert outcome.detail == "Kit.com API error: 422"


def test_timeout_maps_to_failed(settings, fake_kit) -> None:
    fake_kit.time_out()
    client = KitClient(settings, transport=fake_kit.transport)

    outcome = client.sync("jane.doe@example.com", ["pop_teens"])

    assert outcome.status == "failed"
    assert "timed out" in outcome.detail
    assert outcome.http_status is None


def test_exportable_tags() -> None:
    assert exportable_tags(["mod_other", "", "mod_cbt", "mod_cbt"]) == ["mod_cbt"]

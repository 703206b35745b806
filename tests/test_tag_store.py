import time

import pytest
from sqlalchemy.exc import OperationalError

from conftest import VALID_PAYLOAD, count_rows
from errors import TagUpsertError
from tag_store import TagStore

NINE_TAGS = list(VALID_PAYLOAD["selectedTags"])


def test_repeat_upsert_keeps_one_row_per_tag_and_refreshes_timestamp(db) -> None:
    store = TagStore(db, max_workers=4)

    first = store.upsert_tags("jane.doe@example.com", NINE_TAGS, "survey")
    before = {row["tag_name"]: row for row in store.tags_for("jane.doe@example.com")}
    time.sleep(0.01)
    second = store.upsert_tags("Jane.Doe@example.com", NINE_TAGS, "survey")
    after = {row["tag_name"]: row for row in store.tags_for("jane.doe@example.com")}

    assert first.succeeded == set(NINE_TAGS) and not first.failed
    assert second.succeeded == set(NINE_TAGS) and not second.failed
    assert count_rows(db, db.tables.user_tags) == 9
    for tag in NINE_TAGS:
        assert after[tag]["created_at"] == before[tag]["created_at"]
        assert after[tag]["updated_at"] > before[tag]["updated_at"]


def test_last_write_wins_on_source(db) -> None:
    store = TagStore(db)
    store.upsert_tags("a@example.com", ["pop_teens"], "survey", identity_ref="sub-1")
    store.upsert_tags("a@example.com", ["pop_teens"], "manual")

    [row] = store.tags_for("a@example.com")
    assert row["tag_source"] == "manual"
    assert row["subscriber_id"] == "sub-1"


def test_tags_are_scoped_by_email(db) -> None:
    store = TagStore(db)
    store.upsert_tags("a@example.com", ["pop_adults"], "survey")
    store.upsert_tags("b@example.com", ["pop_adults", "pop_couples"], "import")

    assert [r["tag_name"] for r in store.tags_for("a@example.com")] == ["pop_adults"]
    assert [r["tag_name"] for r in store.tags_for("b@example.com")] == ["pop_adults", "pop_couples"]


def test_one_failing_tag_does_not_block_the_others(db, monkeypatch) -> None:
    store = TagStore(db, max_workers=4)
    original = TagStore._upsert_one

    def flaky(self, email, tag, source, identity_ref):
        if tag == "mod_dbt":
            raise TagUpsertError(tag, "disk full")
        return original(self, email, tag, source, identity_ref)

    monkeypatch.setattr(TagStore, "_upsert_one", flaky)

    result = store.upsert_tags("jane.doe@example.com", NINE_TAGS, "survey")

    assert result.failed == {"mod_dbt": "disk full"}
    assert result.succeeded == set(NINE_TAGS) - {"mod_dbt"}
    assert result.requested == 9
    assert count_rows(db, db.tables.user_tags) == 8


def test_database_errors_become_per_tag_failures(db, monkeypatch) -> None:
    store = TagStore(db)

    def broken(self, dialect_insert, values):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(TagStore, "_native_upsert", broken)

    result = store.upsert_tags("a@example.com", ["pop_adults", "pop_teens"], "survey")

    assert not result.succeeded
    assert set(result.failed) == {"pop_adults", "pop_teens"}
    assert "database is locked" in result.failed["pop_adults"]


def test_portable_upsert_path(db, monkeypatch) -> None:
    monkeypatch.setattr("tag_store._DIALECT_INSERTS", {})
    store = TagStore(db)

    store.upsert_tags("a@example.com", ["pop_adults", "pop_teens"], "survey")
    store.upsert_tags("a@example.com", ["pop_adults"], "manual")

    rows = {r["tag_name"]: r for r in store.tags_for("a@example.com")}
    assert count_rows(db, db.tables.user_tags) == 2
    assert rows["pop_adults"]["tag_source"] == "manual"


def test_unknown_source_is_rejected(db) -> None:
    with pytest.raises(ValueError):
        TagStore(db).upsert_tags("a@example.com", ["pop_adults"], "crm")


def test_empty_tag_set_is_a_no_op(db) -> None:
    result = TagStore(db).upsert_tags("a@example.com", [], "survey")
    assert result.requested == 0
    assert count_rows(db, db.tables.user_tags) == 0

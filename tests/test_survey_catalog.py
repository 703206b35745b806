import pytest

from survey_catalog import (
    QUESTION_TAGS,
    allowed_tags,
    answer_tags,
    is_known_tag,
    is_other_tag,
    question_tags,
)


def test_catalog_has_six_questions_and_expected_vocabulary_size() -> None:
    assert list(QUESTION_TAGS) == ["setting", "profession", "populations", "interests", "frequency", "modalities"]
    assert len(allowed_tags()) == 42
    assert allowed_tags() == sorted(allowed_tags())


def test_other_sentinels() -> None:
    assert is_other_tag("role_other")
    assert is_other_tag("mod_other")
    assert not is_other_tag("mod_cbt")
    assert is_known_tag("role_other")


def test_question_tags_unknown_question() -> None:
    with pytest.raises(KeyError):
        question_tags("favourite_colour")


def test_answer_tags_flattens_in_question_order_without_duplicates() -> None:
    answers = {
        "modalities": ["mod_cbt", "mod_cbt"],
        "setting": "setting_mixed",
        "populations": ["pop_teens"],
    }
    assert answer_tags(answers) == ["setting_mixed", "pop_teens", "mod_cbt"]

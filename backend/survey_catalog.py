"""Canonical survey tags, grouped by question.

Values must match the tag names configured in Kit byte for byte: a tag
accepted here but unknown to Kit is silently dropped on their side.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Iterable, List, Mapping

QUESTION_TAGS: dict[str, tuple[str, ...]] = {
    "setting": (
        "setting_inperson",
        "setting_mostly_inperson",
        "setting_mixed",
        "setting_mostly_online",
        "setting_online_only",
    ),
    "profession": (
        "role_therapist",
        "role_social_worker",
        "role_psychologist",
        "role_school_counselor",
        "role_student",
        "role_clergy",
        "role_sud_counselor",
        "role_peer_specialist",
        "role_other",
    ),
    "populations": (
        "pop_children10u",
        "pop_teens",
        "pop_adults",
        "pop_couples",
        "pop_families",
        "pop_groups",
        "pop_all_day",
    ),
    "interests": (
        "interest_sandtray",
        "interest_art",
        "interest_feelings_wheel",
        "interest_humans",
        "interest_tumbling",
        "interest_jeopardy",
        "interest_bingo",
        "interest_mandala",
    ),
    "frequency": (
        "freq_daily",
        "freq_weekly",
        "freq_monthly",
        "freq_occasionally",
    ),
    "modalities": (
        "mod_cbt",
        "mod_dbt",
        "mod_solutions",
        "mod_expressive",
        "mod_emdr",
        "mod_couples",
        "mod_ifs",
        "mod_eclectic",
        "mod_other",
    ),
}

SINGLE_SELECT = ("setting", "profession", "frequency")
MULTI_SELECT = ("populations", "interests", "modalities")

OTHER_SUFFIX = "_other"

# sentinel tag -> (surveyData field, customResponses field)
OTHER_TEXT_FIELDS: dict[str, tuple[str, str]] = {
    "role_other": ("profession_other", "role_other"),
    "mod_other": ("modality_other", "mod_other"),
}


@lru_cache(maxsize=1)
def _union() -> frozenset[str]:
    return frozenset(tag for tags in QUESTION_TAGS.values() for tag in tags)


def allowed_tags() -> List[str]:
    """All catalog tags, sorted."""
    return sorted(_union())


def is_known_tag(tag: str) -> bool:
    return tag in _union()


def question_tags(question: str) -> tuple[str, ...]:
    try:
        return QUESTION_TAGS[question]
    except KeyError:
        raise KeyError(f"Unknown survey question: {question}") from None


def is_other_tag(tag: str) -> bool:
    """True for the free-text sentinels (role_other, mod_other)."""
    return tag.endswith(OTHER_SUFFIX)


def answer_tags(answers: Mapping[str, object]) -> List[str]:
    """Flatten question answers into catalog tags, in question order, deduplicated."""
    flattened: List[str] = []
    for question in QUESTION_TAGS:
        value = answers.get(question)
        if value is None:
            continue
        if isinstance(value, str):
            flattened.append(value)
        else:
            flattened.extend(value)  # type: ignore[arg-type]
    return dedupe(flattened)


def dedupe(tags: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for tag in tags:
        if tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result

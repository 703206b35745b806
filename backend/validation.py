"""Survey submission validation and normalisation.

Structure and catalog checks run through pydantic so every problem with a
payload is reported in one response. Cross-field rules (free text only next
to its ``*_other`` answer) run on the parsed model afterwards.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StringConstraints, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import PydanticCustomError
from typing_extensions import Annotated

from errors import ValidationError, Violation
from survey_catalog import OTHER_TEXT_FIELDS, QUESTION_TAGS, answer_tags, dedupe, is_known_tag, question_tags

NAME_MAX = 255
FREE_TEXT_MAX = 500
SANITIZED_MAX = 1000

EMAIL_RE = re.compile(r"^[^\s@<>\"']+@[^\s@<>\"']+\.[^\s@<>\"']+$")
_UNSAFE_CHARS = re.compile(r"[<>\"']")


def sanitize_text(value: str) -> str:
    """Drop angle brackets and quotes, trim, cap length.

    Normalisation only: persistence still goes through bound parameters.
    """
    return _UNSAFE_CHARS.sub("", value.strip())[:SANITIZED_MAX].strip()


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_RE.match(value or ""))


def _catalog_member(question: str) -> Callable[[str], str]:
    allowed = question_tags(question)

    def check(value: str) -> str:
        if value not in allowed:
            raise PydanticCustomError(
                "invalid_tag",
                "{value} is not an allowed {question} answer",
                {"value": value, "question": question},
            )
        return value

    return check


def _optional_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = sanitize_text(value)
    return cleaned or None


SettingTag = Annotated[str, AfterValidator(_catalog_member("setting"))]
ProfessionTag = Annotated[str, AfterValidator(_catalog_member("profession"))]
PopulationTag = Annotated[str, AfterValidator(_catalog_member("populations"))]
InterestTag = Annotated[str, AfterValidator(_catalog_member("interests"))]
FrequencyTag = Annotated[str, AfterValidator(_catalog_member("frequency"))]
ModalityTag = Annotated[str, AfterValidator(_catalog_member("modalities"))]
FreeText = Annotated[
    Optional[Annotated[str, StringConstraints(max_length=FREE_TEXT_MAX)]],
    AfterValidator(_optional_text),
]


class SurveyAnswers(BaseModel):
    """The six onboarding answers plus their free-text companions."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    setting: SettingTag
    profession: ProfessionTag
    populations: List[PopulationTag] = Field(min_length=1)
    interests: List[InterestTag] = Field(min_length=1)
    frequency: FrequencyTag
    modalities: List[ModalityTag] = Field(min_length=1)
    profession_other: FreeText = None
    modality_other: FreeText = None

    def selected(self) -> List[str]:
        """Catalog tags chosen across the six questions."""
        return answer_tags(self.model_dump(include=set(QUESTION_TAGS)))


class CustomResponses(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    role_other: FreeText = None
    mod_other: FreeText = None


class SurveySubmission(BaseModel):
    """Validated, sanitised onboarding submission."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=NAME_MAX)
    email: str
    survey_data: SurveyAnswers = Field(alias="surveyData")
    recommendations: List[str] = Field(default_factory=list)
    selected_tags: List[str] = Field(alias="selectedTags", min_length=1)
    custom_responses: CustomResponses = Field(default_factory=CustomResponses, alias="customResponses")
    timestamp: Optional[datetime] = None
    completed: bool = True

    @field_validator("name")
    @classmethod
    def _clean_name(cls, value: str) -> str:
        cleaned = sanitize_text(value)
        if not cleaned:
            raise PydanticCustomError("empty", "Name is required")
        return cleaned

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        if not is_valid_email(value):
            raise PydanticCustomError("invalid_email", "Invalid email format")
        return value.lower()

    @field_validator("recommendations")
    @classmethod
    def _clean_recommendations(cls, value: List[str]) -> List[str]:
        return [item for item in (sanitize_text(v) for v in value) if item]

    @field_validator("selected_tags")
    @classmethod
    def _check_selected_tags(cls, value: List[str]) -> List[str]:
        invalid = [tag for tag in value if not is_known_tag(tag)]
        if invalid:
            raise PydanticCustomError(
                "invalid_tags",
                "Invalid tags: {tags}",
                {"tags": ", ".join(invalid), "invalid": invalid},
            )
        return dedupe(value)

    @property
    def completed_at(self) -> datetime:
        if self.timestamp is None:
            return datetime.now(timezone.utc)
        if self.timestamp.tzinfo is None:
            return self.timestamp.replace(tzinfo=timezone.utc)
        return self.timestamp

    @property
    def tags(self) -> List[str]:
        """Tag set to persist: answer-derived tags first, then any extra selected ones."""
        return dedupe(self.survey_data.selected() + self.selected_tags)

    @property
    def free_text(self) -> dict[str, str]:
        """Free-text answers keyed by sentinel tag. Stored locally, never exported."""
        answers = self.survey_data
        custom = self.custom_responses
        values = {
            "role_other": custom.role_other or answers.profession_other,
            "mod_other": custom.mod_other or answers.modality_other,
        }
        return {key: text for key, text in values.items() if text}


def validate_submission(raw: Any) -> SurveySubmission:
    """Return a normalised submission or raise ``ValidationError`` listing every violation."""
    try:
        submission = SurveySubmission.model_validate(raw)
    except PydanticValidationError as exc:
        violations = violations_from(exc)
        reported = {v.field for v in violations}
        orphaned = [v for v in _raw_free_text_violations(raw) if v.field not in reported]
        raise ValidationError(violations + orphaned) from None

    violations = _free_text_violations(submission)
    if violations:
        raise ValidationError(violations)
    return submission


def _free_text_violations(submission: SurveySubmission) -> List[Violation]:
    return _orphaned_free_text(
        set(submission.survey_data.selected()),
        submission.survey_data.model_dump(),
        submission.custom_responses.model_dump(),
    )


def _raw_free_text_violations(raw: Any) -> List[Violation]:
    """Same rule applied to an unparsed payload, so it is reported next to structural errors."""
    if not isinstance(raw, dict):
        return []
    answers = raw.get("surveyData")
    answers = answers if isinstance(answers, dict) else {}
    custom = raw.get("customResponses")
    custom = custom if isinstance(custom, dict) else {}

    chosen: set[str] = set()
    for question in QUESTION_TAGS:
        value = answers.get(question)
        if isinstance(value, str):
            chosen.add(value.strip())
        elif isinstance(value, list):
            chosen.update(item.strip() for item in value if isinstance(item, str))

    def text_only(values: dict[str, Any]) -> dict[str, str]:
        cleaned = {key: sanitize_text(value) for key, value in values.items() if isinstance(value, str)}
        return {key: value for key, value in cleaned.items() if value}

    return _orphaned_free_text(chosen, text_only(answers), text_only(custom))


def _orphaned_free_text(chosen: set[str], answers: dict[str, Any], custom: dict[str, Any]) -> List[Violation]:
    violations: List[Violation] = []
    for sentinel, (answer_field, custom_field) in OTHER_TEXT_FIELDS.items():
        if sentinel in chosen:
            continue
        for field, text in ((f"surveyData.{answer_field}", answers.get(answer_field)),
                            (f"customResponses.{custom_field}", custom.get(custom_field))):
            if text:
                violations.append(
                    Violation(
                        field=field,
                        code="other_not_selected",
                        message=f"Free text is only accepted when {sentinel} is selected",
                        value=text,
                    )
                )
    return violations


def violations_from(exc: PydanticValidationError) -> List[Violation]:
    violations: List[Violation] = []
    for error in exc.errors(include_url=False):
        field = ".".join(str(part) for part in error["loc"]) or "body"
        kind = error["type"]
        if kind == "missing":
            violations.append(Violation(field=field, code="required", message=f"{field} is required"))
            continue
        ctx = error.get("ctx") or {}
        value = ctx.get("invalid", error.get("input"))
        violations.append(Violation(field=field, code=kind, message=error["msg"], value=_jsonable(value)))
    return violations


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)

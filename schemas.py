"""Pydantic schemas for generator output, events and API payloads."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

__all__ = [
    "AnswerChoice",
    "CandidateItem",
    "GeneratedBatch",
    "GenerationEvent",
    "InteractionRequest",
    "parse_json_safe",
]


class AnswerChoice(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(min_length=1)
    is_correct: bool = Field(default=False, alias="isCorrect")


class CandidateItem(BaseModel):
    """A generated question before it is stored."""

    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(alias="question", min_length=1)
    answers: List[AnswerChoice] = Field(default_factory=list)
    topic: str = Field(alias="category", min_length=1)
    subtopic: Optional[str] = None
    branch: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    difficulty: str = "medium"
    learning_capsule: Optional[str] = Field(default=None, alias="learningCapsule")
    source: str = "generated"
    duplicate: bool = Field(
        default=False,
        description="Set by the dedup filter when the item repeats stored or batch content.",
    )

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return [str(tag).strip() for tag in value if str(tag).strip()]

    @property
    def correct_answer(self) -> Optional[str]:
        for answer in self.answers:
            if answer.is_correct:
                return answer.text
        return None


class GeneratedBatch(BaseModel):
    questions: List[CandidateItem] = Field(default_factory=list)


class GenerationEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal[
        "generation_started",
        "generation_completed",
        "generation_failed",
        "profile_save_failed",
    ]
    user_id: str = Field(alias="userId", min_length=1)
    primary_topics: List[str] = Field(default_factory=list, alias="primaryTopics")
    adjacent_topics: List[str] = Field(default_factory=list, alias="adjacentTopics")
    generated: int = Field(default=0, ge=0)
    saved: int = Field(default=0, ge=0)
    duplicates: int = Field(default=0, ge=0)
    milestone: Optional[int] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="createdAt"
    )


class InteractionRequest(BaseModel):
    user_id: str = Field(min_length=1)
    topic: str = Field(min_length=1)
    question_id: str = Field(min_length=1)
    outcome: Literal["correct", "incorrect", "skipped"]
    subtopic: Optional[str] = None
    branch: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    question_text: Optional[str] = None
    timestamp: Optional[datetime] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"user_id"})


_T = TypeVar("_T", bound=BaseModel)


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    while start != -1:
        depth = 0
        for idx in range(start, len(text)):
            char = text[idx]
            if char == "{" and (idx == 0 or text[idx - 1] != "\\"):
                depth += 1
            elif char == "}" and (idx == 0 or text[idx - 1] != "\\"):
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except ValueError:
                        break
                    return candidate, start, idx + 1
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model`` with a fallback JSON extraction pass.

    Generators often wrap the JSON reply in prose or code fences; the fallback
    pulls out the first balanced object and validates that instead.
    """

    first_error: Exception | None = None
    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, end = _find_first_json_object(text)
    except ValueError:
        if first_error:
            raise first_error
        raise

    trailing = text[end:].strip().strip("`").strip()
    if trailing:
        if isinstance(first_error, ValidationError):
            raise first_error
        raise ValueError("Trailing content detected after JSON object")

    return model.model_validate_json(snippet)

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

if TYPE_CHECKING:
    from engines.interactions import InteractionRecord
    from engines.profile import Profile
    from engines.topic_selector import TopicSpec
    from schemas import CandidateItem


class Diagnostic(str, Enum):
    """Reason codes attached to results that did not fully succeed."""

    VALIDATION_ERROR = "validation_error"
    PERSISTENCE_ERROR = "persistence_error"
    GENERATION_ERROR = "generation_error"
    SUSPICIOUS_STATE = "suspicious_state"
    NOT_MILESTONE = "not_milestone"
    ALREADY_PROCESSED = "already_processed"
    THROTTLED = "throttled"
    IN_FLIGHT = "in_flight"


class PersistenceError(RuntimeError):
    """A backing store was unreachable or rejected a read/write."""


class GenerationError(RuntimeError):
    """The question generator failed or returned unusable output."""


class ProfileStore:
    async def load(self, user_id: str) -> Optional["Profile"]:
        raise NotImplementedError

    async def save(self, user_id: str, profile: "Profile") -> None:
        raise NotImplementedError

    async def record_change(self, record: "InteractionRecord") -> None:
        """Optional audit hook for per-event weight changes."""
        return None


class ContentGenerator:
    async def generate(
        self, spec: "TopicSpec", recent_question_texts: Sequence[str]
    ) -> List["CandidateItem"]:
        raise NotImplementedError


class ContentRepository:
    async def exists_fingerprint(self, fingerprint: str) -> bool:
        raise NotImplementedError

    async def insert(self, item: "CandidateItem") -> str:
        raise NotImplementedError


class EventSink:
    def emit(self, event: Dict[str, Any]) -> None:
        raise NotImplementedError

"""Answer/skip ingestion: recent-interaction log and weight updates."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterator, List, Mapping, Optional, Tuple

from engines.cold_start import ColdStartPolicy
from engines.profile import Profile
from engines.weight_tree import Outcome, parse_timestamp

logger = logging.getLogger(__name__)

LEVELS = ("topic", "subtopic", "branch")
GENERAL_SUBTOPIC = "General"


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class InteractionEvent:
    topic: str
    outcome: Outcome
    question_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    subtopic: Optional[str] = None
    branch: Optional[str] = None
    tags: Tuple[str, ...] = ()
    question_text: Optional[str] = None

    @property
    def path(self) -> Tuple[str, ...]:
        """Hierarchy path for this event; a branch without subtopic hangs under ``General``."""

        names = [self.topic]
        if self.subtopic or self.branch:
            names.append(self.subtopic or GENERAL_SUBTOPIC)
        if self.branch:
            names.append(self.branch)
        return tuple(names)

    @property
    def is_answer(self) -> bool:
        return self.outcome is not Outcome.SKIPPED

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "InteractionEvent":
        """Build an event from a loosely typed mapping; raises ``ValueError`` when malformed."""

        if not isinstance(payload, Mapping):
            raise ValueError("interaction payload must be a mapping")
        topic = _clean(payload.get("topic") or payload.get("category"))
        if topic is None:
            raise ValueError("interaction topic is required")
        question_id = _clean(payload.get("question_id") or payload.get("questionId"))
        if question_id is None:
            raise ValueError("interaction question_id is required")
        outcome = Outcome.parse(payload.get("outcome"))
        raw_tags = payload.get("tags") or ()
        if isinstance(raw_tags, str):
            raw_tags = [raw_tags]
        tags = tuple(tag for tag in (_clean(item) for item in raw_tags) if tag)
        timestamp = parse_timestamp(payload.get("timestamp")) or datetime.now(timezone.utc)
        return cls(
            topic=topic,
            outcome=outcome,
            question_id=question_id,
            timestamp=timestamp,
            subtopic=_clean(payload.get("subtopic")),
            branch=_clean(payload.get("branch")),
            tags=tags,
            question_text=_clean(payload.get("question_text") or payload.get("questionText")),
        )


def _is_valid(event: Any) -> bool:
    if not isinstance(event, InteractionEvent):
        return False
    if not isinstance(event.outcome, Outcome):
        return False
    if not _clean(event.topic) or not _clean(event.question_id):
        return False
    for name in (event.subtopic, event.branch):
        if name is not None and not _clean(name):
            return False
    return True


class RecentInteractionLog:
    """Most-recent-first, bounded list of events for one session."""

    def __init__(self, capacity: int = 20):
        self.capacity = max(1, int(capacity))
        self._entries: Deque[InteractionEvent] = deque(maxlen=self.capacity)

    def push(self, event: InteractionEvent) -> None:
        self._entries.appendleft(event)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[InteractionEvent]:
        return iter(self._entries)

    def entries(self) -> List[InteractionEvent]:
        return list(self._entries)

    def question_texts(self) -> List[str]:
        return [event.question_text for event in self._entries if event.question_text]


@dataclass
class SessionContext:
    """Per-user state owned by the caller and passed to every engine call."""

    user_id: str
    profile: Profile
    recent: RecentInteractionLog


@dataclass(frozen=True)
class SkipCompensation:
    applied: bool = False
    topic: float = 0.0
    subtopic: float = 0.0
    branch: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "topicCompensation": self.topic,
            "subtopicCompensation": self.subtopic,
            "branchCompensation": self.branch,
        }


@dataclass
class InteractionRecord:
    user_id: str
    event: InteractionEvent
    old_weights: Dict[str, float]
    new_weights: Dict[str, float]
    skip_compensation: SkipCompensation
    counted: bool
    total_answered: int

    def to_dict(self) -> Dict[str, Any]:
        event = self.event
        return {
            "userId": self.user_id,
            "timestamp": event.timestamp.isoformat(),
            "questionId": event.question_id,
            "interactionType": event.outcome.value,
            "questionText": event.question_text,
            "category": event.topic,
            "subtopic": event.subtopic,
            "branch": event.branch,
            "oldWeights": dict(self.old_weights),
            "newWeights": dict(self.new_weights),
            "skipCompensation": self.skip_compensation.to_dict(),
            "counted": self.counted,
            "totalAnswered": self.total_answered,
        }


class InteractionRecorder:
    def __init__(
        self,
        *,
        count_skips_as_answers: bool = False,
        cold_start: Optional[ColdStartPolicy] = None,
    ):
        self.count_skips_as_answers = count_skips_as_answers
        self.cold_start = cold_start or ColdStartPolicy()

    def record(self, context: SessionContext, event: InteractionEvent) -> Optional[InteractionRecord]:
        """Apply ``event`` to the session in memory.

        Returns ``None`` without touching any state when the user id is missing
        or the event is malformed. Persistence is the caller's concern.
        """

        if context is None or not _clean(context.user_id) or not _is_valid(event):
            logger.debug("Ignoring invalid interaction for user %r: %r", getattr(context, "user_id", None), event)
            return None

        context.recent.push(event)

        tree = context.profile.tree
        path = event.path
        old_weights: Dict[str, float] = {}
        new_weights: Dict[str, float] = {}
        for depth in range(1, len(path) + 1):
            level = LEVELS[depth - 1]
            prefix = path[:depth]
            old_weights[level] = tree.get(prefix)
            new_weights[level] = tree.adjust(prefix, event.outcome, now=event.timestamp)

        compensation = SkipCompensation()
        if event.outcome is Outcome.SKIPPED:
            compensation = SkipCompensation(
                applied=True,
                **{level: round(old_weights[level] - new_weights[level], 6) for level in old_weights},
            )

        counted = event.is_answer or self.count_skips_as_answers
        profile = context.profile
        if counted:
            profile.count_answer()
            if not profile.cold_start_complete and self.cold_start.classify(profile.total_answered).complete:
                profile.cold_start_complete = True
                logger.info("Cold start complete for %s", context.user_id)

        logger.debug(
            "Recorded %s for %s on %s: %s -> %s",
            event.outcome.value,
            context.user_id,
            "/".join(path),
            old_weights,
            new_weights,
        )
        return InteractionRecord(
            user_id=context.user_id,
            event=event,
            old_weights=old_weights,
            new_weights=new_weights,
            skip_compensation=compensation,
            counted=counted,
            total_answered=context.profile.total_answered,
        )

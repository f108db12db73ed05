"""Milestone-driven generation with per-user in-flight guarding."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from engines.base import (
    ContentGenerator,
    ContentRepository,
    Diagnostic,
    EventSink,
    GenerationError,
    PersistenceError,
)
from engines.config import TriggerConfig
from engines.dedup import DedupEngine, DedupReport
from engines.interactions import SessionContext
from engines.topic_selector import TopicSelector, TopicSpec

logger = logging.getLogger(__name__)


class TriggerState(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    GENERATING = "generating"
    COOLDOWN = "cooldown"


@dataclass
class MilestoneState:
    last_attempt_at: Optional[float] = None
    last_processed_count: int = 0
    checking: bool = False
    in_flight: bool = False


@dataclass
class GenerationOutcome:
    user_id: str
    triggered: bool
    milestone: Optional[int] = None
    diagnostic: Optional[Diagnostic] = None
    generated: int = 0
    saved: int = 0
    duplicates: int = 0
    error: Optional[str] = None
    spec: Optional[TopicSpec] = None
    report: Optional[DedupReport] = None

    @property
    def ok(self) -> bool:
        return self.triggered and self.diagnostic is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "triggered": self.triggered,
            "milestone": self.milestone,
            "diagnostic": self.diagnostic.value if self.diagnostic else None,
            "generated": self.generated,
            "saved": self.saved,
            "duplicates": self.duplicates,
            "error": self.error,
        }


class GenerationTrigger:
    """Decide when to request new questions and run the generation pipeline.

    A milestone is every ``milestone_interval`` answered questions. The claim
    (guards, then recording the milestone and raising the in-flight flag)
    happens under a lock before any await, so each milestone fires at most
    once even when answers arrive concurrently. Nothing here raises to the
    caller; failures come back as :class:`GenerationOutcome` diagnostics and
    as ``generation_failed`` events.
    """

    def __init__(
        self,
        selector: TopicSelector,
        generator: ContentGenerator,
        dedup: DedupEngine,
        repository: ContentRepository,
        events: EventSink,
        config: TriggerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.selector = selector
        self.generator = generator
        self.dedup = dedup
        self.repository = repository
        self.events = events
        self.config = config or TriggerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._states: Dict[str, MilestoneState] = {}

    def milestone_state(self, user_id: str) -> MilestoneState:
        with self._lock:
            return self._states.setdefault(user_id, MilestoneState())

    def state_for(self, user_id: str) -> TriggerState:
        state = self.milestone_state(user_id)
        if state.in_flight:
            return TriggerState.GENERATING
        if state.checking:
            return TriggerState.CHECKING
        if (
            state.last_attempt_at is not None
            and self._clock() - state.last_attempt_at < self.config.cooldown_seconds
        ):
            return TriggerState.COOLDOWN
        return TriggerState.IDLE

    def _claim(
        self, context: SessionContext, total: Optional[int] = None
    ) -> Tuple[Optional[int], Optional[Diagnostic]]:
        if total is None:
            total = context.profile.total_answered
        interval = self.config.milestone_interval
        with self._lock:
            state = self._states.setdefault(context.user_id, MilestoneState())
            state.checking = True
            try:
                if total <= 0 or total % interval != 0:
                    return None, Diagnostic.NOT_MILESTONE
                if state.in_flight:
                    return None, Diagnostic.IN_FLIGHT
                if total <= state.last_processed_count:
                    return None, Diagnostic.ALREADY_PROCESSED
                now = self._clock()
                if (
                    state.last_attempt_at is not None
                    and now - state.last_attempt_at < self.config.cooldown_seconds
                ):
                    return None, Diagnostic.THROTTLED
                state.last_attempt_at = now
                state.last_processed_count = total
                state.in_flight = True
                return total, None
            finally:
                state.checking = False

    async def maybe_generate(
        self, context: SessionContext, total: Optional[int] = None
    ) -> GenerationOutcome:
        """Check the milestone for ``total`` answers and generate if it is claimed.

        ``total`` is the count produced by the triggering answer; it defaults to
        the live profile count. Passing it keeps a milestone from being skipped
        when several answers are recorded before this coroutine runs.
        """

        milestone, diagnostic = self._claim(context, total)
        if diagnostic is not None:
            logger.debug(
                "No generation for %s at %s answers: %s",
                context.user_id,
                total if total is not None else context.profile.total_answered,
                diagnostic.value,
            )
            return GenerationOutcome(context.user_id, triggered=False, diagnostic=diagnostic)

        logger.info("Milestone %s reached for %s; generating", milestone, context.user_id)
        try:
            return await self._run(context, milestone)
        finally:
            self.milestone_state(context.user_id).in_flight = False

    async def _run(self, context: SessionContext, milestone: int) -> GenerationOutcome:
        user_id = context.user_id
        spec = self.selector.build_spec(context)
        outcome = GenerationOutcome(user_id, triggered=True, milestone=milestone, spec=spec)
        self._emit("generation_started", outcome)

        try:
            candidates = await asyncio.wait_for(
                self.generator.generate(spec, context.recent.question_texts()),
                timeout=self.config.generator_timeout,
            )
        except asyncio.TimeoutError:
            return self._fail(
                outcome,
                Diagnostic.GENERATION_ERROR,
                f"generator timed out after {self.config.generator_timeout:g}s",
            )
        except (GenerationError, ValidationError) as exc:
            return self._fail(outcome, Diagnostic.GENERATION_ERROR, str(exc))
        except Exception as exc:
            logger.exception("Generator raised unexpectedly for %s", user_id)
            return self._fail(
                outcome, Diagnostic.GENERATION_ERROR, f"unexpected generator error: {exc!r}"
            )

        outcome.generated = len(candidates or [])
        if not candidates:
            return self._fail(outcome, Diagnostic.GENERATION_ERROR, "generator returned no questions")

        try:
            survivors, report = await self.dedup.filter(candidates, self.repository)
        except PersistenceError as exc:
            return self._fail(outcome, Diagnostic.PERSISTENCE_ERROR, str(exc))
        outcome.report = report
        outcome.duplicates = report.duplicates

        errors: List[str] = []
        for item in survivors:
            try:
                await self.repository.insert(item)
            except PersistenceError as exc:
                errors.append(str(exc))
                logger.warning("Failed to store generated question %r: %s", item.text[:80], exc)
                continue
            outcome.saved += 1

        if errors and outcome.saved == 0:
            return self._fail(outcome, Diagnostic.PERSISTENCE_ERROR, errors[0])
        if errors:
            outcome.error = f"{len(errors)} question(s) could not be stored"

        logger.info(
            "Generation for %s finished: %d generated, %d duplicates, %d saved",
            user_id,
            outcome.generated,
            outcome.duplicates,
            outcome.saved,
        )
        self._emit("generation_completed", outcome)
        return outcome

    def _fail(self, outcome: GenerationOutcome, diagnostic: Diagnostic, error: str) -> GenerationOutcome:
        outcome.diagnostic = diagnostic
        outcome.error = error
        logger.warning("Generation failed for %s: %s", outcome.user_id, error)
        self._emit("generation_failed", outcome, reason=diagnostic.value)
        return outcome

    def _emit(self, event_type: str, outcome: GenerationOutcome, *, reason: Optional[str] = None) -> None:
        spec = outcome.spec
        event = {
            "type": event_type,
            "userId": outcome.user_id,
            "primaryTopics": spec.enhanced_topics if spec else [],
            "adjacentTopics": list(spec.adjacent_topics) if spec else [],
            "generated": outcome.generated,
            "saved": outcome.saved,
            "duplicates": outcome.duplicates,
            "milestone": outcome.milestone,
            "error": outcome.error,
            "reason": reason,
        }
        try:
            self.events.emit(event)
        except Exception:
            logger.exception("Event sink rejected %s event for %s", event_type, outcome.user_id)

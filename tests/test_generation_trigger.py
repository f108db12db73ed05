import asyncio
import random

import pytest

from engines.base import (
    ContentGenerator,
    ContentRepository,
    Diagnostic,
    EventSink,
    GenerationError,
    PersistenceError,
)
from engines.config import TriggerConfig
from engines.dedup import DedupEngine
from engines.generation_trigger import GenerationTrigger, TriggerState
from engines.interactions import RecentInteractionLog, SessionContext
from engines.profile import Profile
from engines.topic_selector import TopicSelector
from schemas import AnswerChoice, CandidateItem
from topic_relations import TopicRelationMap


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class _StubGenerator(ContentGenerator):
    def __init__(self, items=None, error=None, delay=0.0):
        self.items = items if items is not None else [_item("Which planet is the largest?", "Jupiter")]
        self.error = error
        self.delay = delay
        self.calls = []

    async def generate(self, spec, recent_question_texts):
        self.calls.append((spec, list(recent_question_texts)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return [item.model_copy() for item in self.items]


class _StubRepository(ContentRepository):
    def __init__(self, fail_insert=False):
        self.fail_insert = fail_insert
        self.inserted = []

    async def exists_fingerprint(self, fingerprint):
        return False

    async def insert(self, item):
        if self.fail_insert:
            raise PersistenceError("disk full")
        self.inserted.append(item)
        return f"gen_{len(self.inserted):08d}"


class _ListSink(EventSink):
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)


def _item(text, answer):
    return CandidateItem(
        text=text,
        topic="Science",
        answers=[AnswerChoice(text=answer, is_correct=True), AnswerChoice(text="Mars")],
    )


def _context(total: int = 0) -> SessionContext:
    return SessionContext("alice", Profile(total_answered=total), RecentInteractionLog())


def _trigger(generator=None, repository=None, clock=None, config=None):
    sink = _ListSink()
    trigger = GenerationTrigger(
        TopicSelector(TopicRelationMap(rng=random.Random(1))),
        generator or _StubGenerator(),
        DedupEngine(),
        repository or _StubRepository(),
        sink,
        config or TriggerConfig(),
        clock=clock or _Clock(),
    )
    return trigger, sink


def test_milestone_fires_once_per_multiple_of_six():
    clock = _Clock()
    generator = _StubGenerator()
    trigger, _ = _trigger(generator=generator, clock=clock)
    context = _context()

    fired = []
    for _ in range(6):
        context.profile.count_answer()
        outcome = asyncio.run(trigger.maybe_generate(context))
        fired.append(outcome.triggered)
    assert fired == [False, False, False, False, False, True]

    repeat = asyncio.run(trigger.maybe_generate(context))
    assert repeat.triggered is False
    assert repeat.diagnostic is Diagnostic.ALREADY_PROCESSED

    clock.now += 31
    for _ in range(6):
        context.profile.count_answer()
    again = asyncio.run(trigger.maybe_generate(context))
    assert again.triggered is True
    assert again.milestone == 12
    assert len(generator.calls) == 2


def test_non_milestone_reports_diagnostic():
    trigger, sink = _trigger()
    outcome = asyncio.run(trigger.maybe_generate(_context(5)))
    assert outcome.diagnostic is Diagnostic.NOT_MILESTONE
    assert sink.events == []


def test_cooldown_throttles_a_new_milestone():
    clock = _Clock()
    trigger, _ = _trigger(clock=clock)
    context = _context(6)
    assert asyncio.run(trigger.maybe_generate(context)).triggered
    for _ in range(6):
        context.profile.count_answer()
    throttled = asyncio.run(trigger.maybe_generate(context))
    assert throttled.diagnostic is Diagnostic.THROTTLED
    assert trigger.state_for("alice") is TriggerState.COOLDOWN

    clock.now += 30
    assert trigger.state_for("alice") is TriggerState.IDLE
    assert asyncio.run(trigger.maybe_generate(context)).triggered


def test_concurrent_calls_generate_only_once():
    generator = _StubGenerator(delay=0.01)
    trigger, _ = _trigger(generator=generator)
    context = _context(6)

    async def _run():
        return await asyncio.gather(*(trigger.maybe_generate(context) for _ in range(5)))

    outcomes = asyncio.run(_run())
    assert sum(outcome.triggered for outcome in outcomes) == 1
    assert len(generator.calls) == 1
    assert trigger.state_for("alice") is not TriggerState.GENERATING


def test_success_persists_survivors_and_emits_events():
    items = [
        _item("Which planet is the largest planet in our solar system?", "Jupiter"),
        _item("What is the largest planet in the solar system?", "Jupiter"),
        _item("Which gas makes up most of the air?", "Nitrogen"),
    ]
    repository = _StubRepository()
    trigger, sink = _trigger(generator=_StubGenerator(items), repository=repository)
    outcome = asyncio.run(trigger.maybe_generate(_context(6)))

    assert outcome.ok
    assert outcome.generated == 3
    assert outcome.duplicates == 1
    assert outcome.saved == 2
    assert len(repository.inserted) == 2
    assert [event["type"] for event in sink.events] == ["generation_started", "generation_completed"]
    completed = sink.events[-1]
    assert completed["saved"] == 2
    assert completed["primaryTopics"] == ["Science", "History", "Geography"]


@pytest.mark.parametrize(
    "generator, reason",
    [
        (_StubGenerator(error=GenerationError("boom")), "boom"),
        (_StubGenerator(items=[]), "no questions"),
    ],
)
def test_generation_failures_emit_failed_event(generator, reason):
    trigger, sink = _trigger(generator=generator)
    outcome = asyncio.run(trigger.maybe_generate(_context(6)))
    assert outcome.triggered
    assert outcome.diagnostic is Diagnostic.GENERATION_ERROR
    assert outcome.saved == 0
    assert reason in outcome.error
    assert sink.events[-1]["type"] == "generation_failed"
    assert trigger.state_for("alice") is not TriggerState.GENERATING


def test_generator_timeout_is_reported():
    trigger, sink = _trigger(
        generator=_StubGenerator(delay=0.5),
        config=TriggerConfig(generator_timeout=0.01),
    )
    outcome = asyncio.run(trigger.maybe_generate(_context(6)))
    assert outcome.diagnostic is Diagnostic.GENERATION_ERROR
    assert "timed out" in outcome.error
    assert sink.events[-1]["type"] == "generation_failed"


def test_insert_failures_are_persistence_errors():
    trigger, sink = _trigger(repository=_StubRepository(fail_insert=True))
    outcome = asyncio.run(trigger.maybe_generate(_context(6)))
    assert outcome.diagnostic is Diagnostic.PERSISTENCE_ERROR
    assert sink.events[-1]["reason"] == "persistence_error"


def test_failing_event_sink_does_not_break_generation():
    class _BrokenSink(EventSink):
        def emit(self, event):
            raise ValueError("sink down")

    trigger = GenerationTrigger(
        TopicSelector(TopicRelationMap(rng=random.Random(1))),
        _StubGenerator(),
        DedupEngine(),
        _StubRepository(),
        _BrokenSink(),
        clock=_Clock(),
    )
    outcome = asyncio.run(trigger.maybe_generate(_context(6)))
    assert outcome.ok
    assert outcome.saved == 1


def test_explicit_total_is_used_instead_of_the_live_count():
    trigger, _ = _trigger()
    context = _context(7)
    outcome = asyncio.run(trigger.maybe_generate(context, total=6))
    assert outcome.triggered is True
    assert outcome.milestone == 6
    assert asyncio.run(trigger.maybe_generate(context)).diagnostic is Diagnostic.NOT_MILESTONE


def test_unexpected_generator_exception_becomes_a_failed_outcome():
    trigger, sink = _trigger(generator=_StubGenerator(error=AttributeError("no find")))
    outcome = asyncio.run(trigger.maybe_generate(_context(6)))
    assert outcome.diagnostic is Diagnostic.GENERATION_ERROR
    assert "no find" in outcome.error
    assert sink.events[-1]["type"] == "generation_failed"
    assert trigger.state_for("alice") is not TriggerState.GENERATING

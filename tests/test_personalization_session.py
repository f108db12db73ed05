import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from engines.base import (
    ContentGenerator,
    ContentRepository,
    Diagnostic,
    EventSink,
    PersistenceError,
    ProfileStore,
)
from engines.interactions import InteractionEvent
from engines.profile import Profile
from engines.weight_tree import Outcome, WeightTree
from personalization import SessionState, build_registry
from schemas import AnswerChoice, CandidateItem


class _MemoryStore(ProfileStore):
    def __init__(self, stored=None, fail_save=False):
        self.stored = dict(stored or {})
        self.fail_save = fail_save
        self.loads = 0
        self.saves = []
        self.changes = []

    async def load(self, user_id):
        self.loads += 1
        data = self.stored.get(user_id)
        return Profile.from_dict(data) if data is not None else None

    async def save(self, user_id, profile):
        if self.fail_save:
            raise PersistenceError("disk full")
        self.stored[user_id] = profile.to_dict()
        self.saves.append(profile.total_answered)

    async def record_change(self, record):
        self.changes.append(record.to_dict())


class _SequencedStore(_MemoryStore):
    """Returns the queued profiles in order, then whatever is stored."""

    def __init__(self, sequence):
        super().__init__()
        self.sequence = list(sequence)

    async def load(self, user_id):
        self.loads += 1
        if self.sequence:
            return self.sequence.pop(0)
        return await super().load(user_id)


class _StubGenerator(ContentGenerator):
    def __init__(self):
        self.specs = []

    async def generate(self, spec, recent_question_texts):
        self.specs.append(spec)
        return [
            CandidateItem(
                text="Which particle carries a negative charge?",
                topic="Science",
                answers=[AnswerChoice(text="Electron", is_correct=True), AnswerChoice(text="Proton")],
            )
        ]


class _MemoryRepository(ContentRepository):
    def __init__(self):
        self.items = []

    async def exists_fingerprint(self, fingerprint):
        return False

    async def insert(self, item):
        self.items.append(item)
        return f"gen_{len(self.items):08d}"


class _ListSink(EventSink):
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)


def _registry(store, generator=None, repository=None, sink=None):
    return build_registry(
        store=store,
        generator=generator or _StubGenerator(),
        repository=repository or _MemoryRepository(),
        events=sink or _ListSink(),
        clock=lambda: 1000.0,
    )


def _answer(index, topic="Science", outcome=Outcome.CORRECT, **kwargs):
    return InteractionEvent(topic=topic, outcome=outcome, question_id=f"q{index}", **kwargs)


def test_sixth_answer_generates_for_the_top_topic_and_persists():
    store = _MemoryStore()
    generator = _StubGenerator()
    repository = _MemoryRepository()
    sink = _ListSink()
    registry = _registry(store, generator, repository, sink)

    async def _run():
        session = await registry.get("alice")
        results = [await session.record(_answer(index)) for index in range(6)]
        await registry.drain()
        return session, results

    session, results = asyncio.run(_run())

    assert [result.total_answered for result in results] == [1, 2, 3, 4, 5, 6]
    outcomes = [result.generation.result() for result in results]
    assert [outcome.triggered for outcome in outcomes] == [False] * 5 + [True]
    assert outcomes[5].milestone == 6
    assert generator.specs[0].primary_topics[0] == "Science"
    assert len(repository.items) == 1
    assert [event["type"] for event in sink.events] == ["generation_started", "generation_completed"]

    assert session.state is SessionState.LOADED
    assert store.stored["alice"]["totalAnswered"] == 6
    assert len(store.changes) == 6
    assert store.loads == 1


def test_milestone_fires_for_the_answer_that_reached_it():
    generator = _StubGenerator()
    registry = _registry(_MemoryStore(), generator)

    async def _run():
        session = await registry.get("alice")
        results = [await session.record(_answer(index)) for index in range(7)]
        await registry.drain()
        return results

    results = asyncio.run(_run())

    outcomes = [result.generation.result() for result in results]
    assert [outcome.triggered for outcome in outcomes] == [False] * 5 + [True, False]
    assert outcomes[5].milestone == 6
    assert outcomes[6].diagnostic is Diagnostic.NOT_MILESTONE
    assert len(generator.specs) == 1


def test_profile_is_loaded_once_per_session():
    stored = Profile(total_answered=4)
    stored.tree.adjust("History", Outcome.CORRECT)
    store = _MemoryStore({"bob": stored.to_dict()})
    registry = _registry(store)

    async def _run():
        session = await registry.get("bob")
        await asyncio.gather(session.start(), session.start(), registry.get("bob"))
        await session.record(_answer(1, topic="History"))
        await registry.drain()
        return session

    session = asyncio.run(_run())
    assert store.loads == 1
    assert session.profile.total_answered == 5
    assert registry.peek("bob") is session
    assert registry.peek("carol") is None


def test_invalid_interaction_is_rejected_without_side_effects():
    store = _MemoryStore()
    registry = _registry(store)

    async def _run():
        session = await registry.get("alice")
        result = await session.record(_answer(1, topic="   "))
        await registry.drain()
        return session, result

    session, result = asyncio.run(_run())
    assert result.accepted is False
    assert result.diagnostic is Diagnostic.VALIDATION_ERROR
    assert result.to_dict()["diagnostic"] == "validation_error"
    assert session.profile.total_answered == 0
    assert store.saves == []


def test_save_failure_keeps_memory_and_emits_event():
    store = _MemoryStore(fail_save=True)
    sink = _ListSink()
    registry = _registry(store, sink=sink)

    async def _run():
        session = await registry.get("alice")
        await session.record(_answer(1))
        await registry.drain()
        return session

    session = asyncio.run(_run())
    assert session.state is SessionState.DIRTY
    assert session.profile.total_answered == 1
    failures = [event for event in sink.events if event["type"] == "profile_save_failed"]
    assert failures and failures[0]["error"] == "disk full"


def test_all_default_stored_profile_does_not_overwrite_local_progress():
    local = Profile(WeightTree(), total_answered=8)
    local.tree.adjust("Science", Outcome.CORRECT)
    store = _SequencedStore([Profile(), Profile()])
    registry = _registry(store)

    async def _run():
        session = registry._factory("alice")
        session.context.profile = local
        result = await session.start()
        await session.flush()
        return session, result

    session, result = asyncio.run(_run())
    assert result.diagnostic is Diagnostic.SUSPICIOUS_STATE
    assert store.loads == 2
    assert session.profile.total_answered == 8
    assert session.profile.tree.get("Science") > 0.5
    assert store.stored["alice"]["totalAnswered"] == 8


def test_suspicious_state_recovers_when_reload_has_data():
    local = Profile(total_answered=2)
    local.tree.adjust("Science", Outcome.CORRECT)
    real = Profile(total_answered=10)
    real.tree.adjust("History", Outcome.CORRECT)
    store = _SequencedStore([Profile(), real])
    registry = _registry(store)

    async def _run():
        session = registry._factory("alice")
        session.context.profile = local
        result = await session.start()
        await session.flush()
        return session, result

    session, result = asyncio.run(_run())
    assert result.diagnostic is None
    assert session.profile.total_answered == 10
    assert session.profile.tree.get("History") > 0.5


def test_idle_profile_decays_on_load():
    three_days_ago = datetime.now(timezone.utc) - timedelta(days=3)
    stored = Profile(last_refreshed=three_days_ago)
    stored.tree.adjust("Science", Outcome.CORRECT, now=three_days_ago)
    before = stored.tree.get("Science")
    store = _MemoryStore({"alice": stored.to_dict()})
    registry = _registry(store)

    async def _run():
        session = await registry.get("alice")
        await registry.drain()
        return session

    session = asyncio.run(_run())
    assert session.profile.tree.get("Science") < before
    assert store.saves == [0]


def test_snapshot_reports_state_and_cold_start():
    registry = _registry(_MemoryStore())

    async def _run():
        session = await registry.get("alice")
        await session.record(_answer(1))
        await registry.drain()
        return session.snapshot()

    snapshot = asyncio.run(_run())
    assert snapshot["userId"] == "alice"
    assert snapshot["state"] == "loaded"
    assert snapshot["triggerState"] == "idle"
    assert snapshot["coldStart"]["phase"] == 1
    assert snapshot["profile"]["totalAnswered"] == 1


@pytest.mark.parametrize("outcome, counted", [(Outcome.SKIPPED, False), (Outcome.INCORRECT, True)])
def test_generation_is_only_considered_for_counted_answers(outcome, counted):
    registry = _registry(_MemoryStore())

    async def _run():
        session = await registry.get("alice")
        result = await session.record(_answer(1, outcome=outcome))
        await registry.drain()
        return result

    result = asyncio.run(_run())
    assert (result.generation is not None) is counted

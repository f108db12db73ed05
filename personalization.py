"""Per-user personalization sessions.

A :class:`PersonalizationSession` owns one user's profile and recent log. It
loads the profile from the :class:`~engines.base.ProfileStore` once, at
start, and from then on only writes to the store. Saves are fire-and-forget:
a failed save is logged, reported as a ``profile_save_failed`` event and
retried with the next mutation, while the in-memory profile stays
authoritative.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from engines.base import (
    ContentGenerator,
    ContentRepository,
    Diagnostic,
    EventSink,
    PersistenceError,
    ProfileStore,
)
from engines.cold_start import ColdStartPolicy, ColdStartStatus
from engines.config import PersonalizationConfig
from engines.dedup import DedupEngine
from engines.generation_trigger import GenerationOutcome, GenerationTrigger
from engines.interactions import (
    InteractionEvent,
    InteractionRecord,
    InteractionRecorder,
    RecentInteractionLog,
    SessionContext,
)
from engines.profile import Profile
from engines.topic_selector import TopicSelector, TopicSpec
from engines.weight_tree import WeightTree
from topic_relations import TopicRelationMap

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    PENDING = "pending"
    LOADED = "loaded"
    DIRTY = "dirty"


@dataclass
class LoadResult:
    ok: bool
    state: SessionState
    found: bool = False
    diagnostic: Optional[Diagnostic] = None


@dataclass
class RecordResult:
    accepted: bool
    total_answered: int
    cold_start: ColdStartStatus
    diagnostic: Optional[Diagnostic] = None
    record: Optional[InteractionRecord] = None
    generation: Optional["asyncio.Task[GenerationOutcome]"] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "totalAnswered": self.total_answered,
            "coldStart": self.cold_start.to_dict(),
            "diagnostic": self.diagnostic.value if self.diagnostic else None,
            "generationScheduled": self.generation is not None,
            "record": self.record.to_dict() if self.record else None,
        }


class PersonalizationSession:
    def __init__(
        self,
        user_id: str,
        *,
        store: ProfileStore,
        recorder: InteractionRecorder,
        selector: TopicSelector,
        trigger: GenerationTrigger,
        events: EventSink,
        config: PersonalizationConfig | None = None,
        profile: Optional[Profile] = None,
    ):
        self.config = config or PersonalizationConfig()
        self.store = store
        self.recorder = recorder
        self.selector = selector
        self.trigger = trigger
        self.events = events
        self.context = SessionContext(
            user_id=user_id,
            profile=profile or Profile(WeightTree(self.config.weights)),
            recent=RecentInteractionLog(self.config.recent_log_capacity),
        )
        self.state = SessionState.PENDING
        self._start_task: Optional[asyncio.Task] = None
        self._save_lock: Optional[asyncio.Lock] = None
        self._version = 0
        self._saved_version = 0
        self._tasks: Set[asyncio.Task] = set()

    @property
    def user_id(self) -> str:
        return self.context.user_id

    @property
    def profile(self) -> Profile:
        return self.context.profile

    # -- loading -------------------------------------------------------------

    async def start(self) -> LoadResult:
        """Load the stored profile once; later calls return the first result."""

        if self._start_task is None:
            self._start_task = asyncio.ensure_future(self._load_once())
        return await self._start_task

    async def _load_once(self) -> LoadResult:
        if not self.user_id:
            return LoadResult(ok=False, state=self.state, diagnostic=Diagnostic.VALIDATION_ERROR)
        try:
            loaded = await self.store.load(self.user_id)
        except PersistenceError as exc:
            logger.warning("Profile load failed for %s: %s", self.user_id, exc)
            self.state = SessionState.DIRTY
            return LoadResult(ok=False, state=self.state, diagnostic=Diagnostic.PERSISTENCE_ERROR)

        if loaded is None:
            self.state = SessionState.LOADED if self.profile.is_all_default() else SessionState.DIRTY
            self._refresh()
            return LoadResult(ok=True, state=self.state, found=False)

        if loaded.is_all_default() and not self.profile.is_all_default():
            return await self._recover_suspicious()

        self._adopt(loaded)
        return LoadResult(ok=True, state=self.state, found=True)

    async def _recover_suspicious(self) -> LoadResult:
        logger.warning(
            "Stored profile for %s is all-default while the local profile is not; forcing one reload",
            self.user_id,
        )
        try:
            reloaded = await self.store.load(self.user_id)
        except PersistenceError as exc:
            logger.warning("Forced reload failed for %s: %s", self.user_id, exc)
            reloaded = None
        if reloaded is not None and not reloaded.is_all_default():
            self._adopt(reloaded)
            return LoadResult(ok=True, state=self.state, found=True)

        logger.warning(
            "Keeping local profile for %s instead of the all-default stored copy", self.user_id
        )
        self.state = SessionState.DIRTY
        self._schedule_save()
        return LoadResult(
            ok=True, state=self.state, found=True, diagnostic=Diagnostic.SUSPICIOUS_STATE
        )

    def _adopt(self, loaded: Profile) -> None:
        loaded.advance_to(self.profile.total_answered)
        self.context.profile = loaded
        self.state = SessionState.LOADED
        self._refresh()

    def _refresh(self) -> None:
        days = self.profile.refresh()
        if days:
            logger.info("Decayed %s's weights for %d idle day(s)", self.user_id, days)
            self._mark_dirty()

    # -- recording -------------------------------------------------------------

    def cold_start_status(self) -> ColdStartStatus:
        return self.selector.cold_start.classify(
            self.profile.total_answered, self.profile.cold_start_complete
        )

    async def record(self, event: InteractionEvent) -> RecordResult:
        """Apply an interaction, persist in the background and maybe start generation."""

        if self.state is SessionState.PENDING:
            await self.start()

        record = self.recorder.record(self.context, event)
        if record is None:
            return RecordResult(
                accepted=False,
                total_answered=self.profile.total_answered,
                cold_start=self.cold_start_status(),
                diagnostic=Diagnostic.VALIDATION_ERROR,
            )

        status = self.cold_start_status()
        self._mark_dirty(record)

        generation = None
        if record.counted:
            generation = self._spawn(
                self.trigger.maybe_generate(self.context, total=record.total_answered)
            )
        return RecordResult(
            accepted=True,
            total_answered=record.total_answered,
            cold_start=status,
            record=record,
            generation=generation,
        )

    def build_spec(self) -> TopicSpec:
        return self.selector.build_spec(self.context)

    # -- persistence -------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _mark_dirty(self, record: Optional[InteractionRecord] = None) -> None:
        self.state = SessionState.DIRTY
        self._schedule_save(record)

    def _schedule_save(self, record: Optional[InteractionRecord] = None) -> None:
        self._version += 1
        try:
            self._spawn(self._save(self._version, record))
        except RuntimeError:
            logger.debug("No running loop; deferring save for %s", self.user_id)

    async def _save(self, version: int, record: Optional[InteractionRecord]) -> None:
        if self._save_lock is None:
            self._save_lock = asyncio.Lock()
        async with self._save_lock:
            if record is not None:
                try:
                    await self.store.record_change(record)
                except PersistenceError as exc:
                    logger.warning("Weight change log failed for %s: %s", self.user_id, exc)
            if version <= self._saved_version:
                return
            target = self._version
            try:
                await self.store.save(self.user_id, self.profile.copy())
            except PersistenceError as exc:
                self._report_save_failure(exc)
                return
            self._saved_version = target
            if self._saved_version == self._version:
                self.state = SessionState.LOADED

    def _report_save_failure(self, exc: Exception) -> None:
        logger.warning("Profile save failed for %s: %s", self.user_id, exc)
        try:
            self.events.emit(
                {"type": "profile_save_failed", "userId": self.user_id, "error": str(exc)}
            )
        except Exception:
            logger.exception("Event sink rejected profile_save_failed for %s", self.user_id)

    async def flush(self) -> None:
        """Wait for pending saves and generation runs started by this session."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "state": self.state.value,
            "triggerState": self.trigger.state_for(self.user_id).value,
            "coldStart": self.cold_start_status().to_dict(),
            "recentInteractions": len(self.context.recent),
            "profile": self.profile.to_dict(),
        }


class SessionRegistry:
    """Per-process map of live sessions, owned by the host application."""

    def __init__(self, factory: Callable[[str], PersonalizationSession]):
        self._factory = factory
        self._sessions: Dict[str, PersonalizationSession] = {}

    async def get(self, user_id: str) -> PersonalizationSession:
        session = self._sessions.get(user_id)
        if session is None:
            session = self._factory(user_id)
            self._sessions[user_id] = session
        await session.start()
        return session

    def peek(self, user_id: str) -> Optional[PersonalizationSession]:
        return self._sessions.get(user_id)

    async def drain(self) -> None:
        for session in list(self._sessions.values()):
            await session.flush()


def build_registry(
    *,
    store: ProfileStore,
    generator: ContentGenerator,
    repository: ContentRepository,
    events: EventSink,
    relations: Optional[TopicRelationMap] = None,
    config: Optional[PersonalizationConfig] = None,
    clock: Optional[Callable[[], float]] = None,
) -> SessionRegistry:
    """Wire the engines once and hand out sessions that share them."""

    config = config or PersonalizationConfig()
    selector = TopicSelector(relations, ColdStartPolicy(config.cold_start), config.selector)
    trigger_kwargs = {"clock": clock} if clock is not None else {}
    trigger = GenerationTrigger(
        selector,
        generator,
        DedupEngine(config.dedup),
        repository,
        events,
        config.trigger,
        **trigger_kwargs,
    )
    recorder = InteractionRecorder(
        count_skips_as_answers=config.count_skips_as_answers,
        cold_start=selector.cold_start,
    )

    def _factory(user_id: str) -> PersonalizationSession:
        return PersonalizationSession(
            user_id,
            store=store,
            recorder=recorder,
            selector=selector,
            trigger=trigger,
            events=events,
            config=config,
        )

    return SessionRegistry(_factory)

"""Tunable constants shared by the personalization engines.

Every numeric policy of the feed lives here so hosts can override it from the
environment (see :meth:`PersonalizationConfig.from_env`) or pass explicit
instances in tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Tuple

from env_validation import get_env_bool, get_env_float, get_env_int

DEFAULT_WEIGHT = 0.5

_GENERIC_ANSWERS: FrozenSet[str] = frozenset(
    {"true", "false", "yes", "no"} | {str(number) for number in range(0, 11)}
)

_STOPWORDS: FrozenSet[str] = frozenset(
    """
    the a an is are was were be been being to of and in that have for on with as at
    this by from which or what who where why how when there here do does did has had
    can could will would should shall must may might many most some any all one two
    three four five its it's their they them these those your my our his her hers she he
    """.split()
)

_PATTERN_FAMILIES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("size", ("largest", "biggest", "most extensive", "highest", "greatest")),
    ("location", ("where", "which continent", "which region", "which country")),
    ("definition", ("what is", "what are", "define", "describe")),
)


@dataclass(frozen=True)
class LevelSteps:
    """Step size per hierarchy level (topic, subtopic, branch)."""

    topic: float
    subtopic: float
    branch: float

    def for_depth(self, depth: int) -> float:
        if depth <= 1:
            return self.topic
        if depth == 2:
            return self.subtopic
        return self.branch


@dataclass(frozen=True)
class WeightAdjustmentConfig:
    correct: LevelSteps = field(default_factory=lambda: LevelSteps(0.10, 0.16, 0.20))
    incorrect: LevelSteps = field(default_factory=lambda: LevelSteps(0.04, 0.06, 0.10))
    skip: LevelSteps = field(default_factory=lambda: LevelSteps(0.02, 0.03, 0.04))
    default_weight: float = DEFAULT_WEIGHT
    default_tolerance: float = 0.01
    decay_per_day: float = 0.05
    decay_floor: float = 0.1


@dataclass(frozen=True)
class ColdStartConfig:
    phase_two_at: int = 3
    phase_three_at: int = 12
    complete_at: int = 20
    exploration_by_phase: Dict[int, float] = field(
        default_factory=lambda: {1: 0.5, 2: 0.4, 3: 0.3}
    )
    complete_exploration: float = 0.25


@dataclass(frozen=True)
class SelectorConfig:
    plain_topics: int = 3
    subtopic_combos: int = 2
    branch_combos: int = 2
    qualifying_weight: float = DEFAULT_WEIGHT
    neighbours_per_topic: int = 2
    max_adjacent: int = 4
    preference_limit: int = 3
    batch_size: int = 12
    default_topics: Tuple[str, ...] = ("Science", "History", "Geography")


@dataclass(frozen=True)
class TriggerConfig:
    milestone_interval: int = 6
    cooldown_seconds: float = 30.0
    generator_timeout: float = 60.0


@dataclass(frozen=True)
class DedupThresholds:
    """Named thresholds for exact, keyword and pattern based duplicate checks."""

    keyword_overlap_cap: int = 3
    keyword_overlap_ratio: float = 0.5
    pattern_min_shared: int = 1
    audit_max_word_difference: int = 3
    intent_jaccard: float = 0.3
    min_keyword_length: int = 3
    generic_answers: FrozenSet[str] = _GENERIC_ANSWERS
    stopwords: FrozenSet[str] = _STOPWORDS
    pattern_families: Tuple[Tuple[str, Tuple[str, ...]], ...] = _PATTERN_FAMILIES


@dataclass(frozen=True)
class PersonalizationConfig:
    weights: WeightAdjustmentConfig = field(default_factory=WeightAdjustmentConfig)
    cold_start: ColdStartConfig = field(default_factory=ColdStartConfig)
    selector: SelectorConfig = field(default_factory=SelectorConfig)
    trigger: TriggerConfig = field(default_factory=TriggerConfig)
    dedup: DedupThresholds = field(default_factory=DedupThresholds)
    recent_log_capacity: int = 20
    count_skips_as_answers: bool = False

    @classmethod
    def from_env(cls) -> "PersonalizationConfig":
        trigger = TriggerConfig(
            milestone_interval=max(1, get_env_int("MILESTONE_INTERVAL", 6)),
            cooldown_seconds=max(0.0, get_env_float("GENERATION_COOLDOWN_SECONDS", 30.0)),
            generator_timeout=max(1.0, get_env_float("GENERATION_TIMEOUT", 60.0)),
        )
        return cls(
            trigger=trigger,
            count_skips_as_answers=get_env_bool("COUNT_SKIPS_AS_ANSWERS", False),
        )

"""Recency-weighted topic ranking and generation topic specs."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from engines.cold_start import ColdStartPolicy
from engines.config import SelectorConfig
from engines.interactions import SessionContext
from topic_relations import TopicRelationMap

logger = logging.getLogger(__name__)

HIERARCHY_SEPARATOR = ":"


def recency_weight(index: int, log_length: int) -> float:
    """Linear decay from 1.0 (most recent) towards 0.5 (oldest)."""

    if log_length <= 0:
        return 1.0
    return 1.0 - (index / log_length) * 0.5


def split_hierarchical(entries: Iterable[str]) -> Tuple[List[str], List[Tuple[str, str]]]:
    """Split ``topic:secondary`` entries into main topics and (topic, secondary) pairs."""

    main: List[str] = []
    pairs: List[Tuple[str, str]] = []
    for entry in entries:
        topic, _, secondary = str(entry).partition(HIERARCHY_SEPARATOR)
        topic, secondary = topic.strip(), secondary.strip()
        if not topic:
            continue
        if topic not in main:
            main.append(topic)
        if secondary and (topic, secondary) not in pairs:
            pairs.append((topic, secondary))
    return main, pairs


@dataclass
class TopicSpec:
    primary_topics: List[str]
    subtopic_combos: List[Tuple[str, str]] = field(default_factory=list)
    branch_combos: List[Tuple[str, str]] = field(default_factory=list)
    adjacent_topics: List[str] = field(default_factory=list)
    preferred_subtopics: List[str] = field(default_factory=list)
    preferred_branches: List[str] = field(default_factory=list)
    preferred_tags: List[str] = field(default_factory=list)
    phase: Optional[int] = None
    cold_start_complete: bool = False
    exploration_ratio: float = 0.0
    primary_count: int = 0
    adjacent_count: int = 0
    used_defaults: bool = False

    @property
    def enhanced_topics(self) -> List[str]:
        combos = [
            f"{topic}{HIERARCHY_SEPARATOR}{secondary}"
            for topic, secondary in [*self.subtopic_combos, *self.branch_combos]
        ]
        return [*self.primary_topics, *combos]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primaryTopics": list(self.primary_topics),
            "enhancedTopics": self.enhanced_topics,
            "adjacentTopics": list(self.adjacent_topics),
            "preferredSubtopics": list(self.preferred_subtopics),
            "preferredBranches": list(self.preferred_branches),
            "preferredTags": list(self.preferred_tags),
            "phase": self.phase,
            "coldStartComplete": self.cold_start_complete,
            "explorationRatio": self.exploration_ratio,
            "primaryCount": self.primary_count,
            "adjacentCount": self.adjacent_count,
            "usedDefaults": self.used_defaults,
        }


class TopicSelector:
    def __init__(
        self,
        relations: TopicRelationMap | None = None,
        cold_start: ColdStartPolicy | None = None,
        config: SelectorConfig | None = None,
    ):
        self.relations = relations or TopicRelationMap()
        self.cold_start = cold_start or ColdStartPolicy()
        self.config = config or SelectorConfig()

    def score(self, topic: str, index: int, log_length: int) -> float:
        return recency_weight(index, log_length)

    def rank_topics(self, context: SessionContext) -> List[Tuple[str, float]]:
        """Topics seen in the log or the tree, best first.

        Score is the summed recency weight of log entries on the topic plus the
        topic's own weight. Ties keep first-seen order (log before tree).
        """

        entries = context.recent.entries()
        tree = context.profile.tree
        scores: Dict[str, float] = {}
        for index, event in enumerate(entries):
            scores[event.topic] = scores.get(event.topic, 0.0) + self.score(
                event.topic, index, len(entries)
            )
        for topic in tree.topics:
            scores.setdefault(topic, 0.0)
        ranked = [(topic, total + tree.get((topic,))) for topic, total in scores.items()]
        ranked.sort(key=lambda item: item[1], reverse=True)
        return ranked

    def _preferences(self, context: SessionContext, attribute: str) -> List[str]:
        entries = context.recent.entries()
        scores: Dict[str, float] = defaultdict(float)
        for index, event in enumerate(entries):
            values: Sequence[Optional[str]]
            if attribute == "tags":
                values = event.tags
            else:
                values = (getattr(event, attribute),)
            for value in values:
                if value:
                    scores[value] += recency_weight(index, len(entries))
        ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
        return [name for name, _ in ranked[: self.config.preference_limit]]

    def _combos(
        self, context: SessionContext, ranked: Sequence[str]
    ) -> Tuple[List[Tuple[str, str]], List[Tuple[str, str]]]:
        tree = context.profile.tree
        cfg = self.config
        subtopics: List[Tuple[str, str]] = []
        branches: List[Tuple[str, str]] = []
        for topic in ranked:
            if tree.get((topic,)) < cfg.qualifying_weight:
                continue
            best_sub = tree.best_child((topic,))
            if best_sub and len(subtopics) < cfg.subtopic_combos:
                subtopics.append((topic, best_sub[0]))
            if len(branches) < cfg.branch_combos:
                best_branch: Optional[Tuple[str, float]] = None
                node = tree.node((topic,))
                for subtopic in (node.children if node else {}):
                    candidate = tree.best_child((topic, subtopic))
                    if candidate and (best_branch is None or candidate[1] > best_branch[1]):
                        best_branch = candidate
                if best_branch:
                    branches.append((topic, best_branch[0]))
            if len(subtopics) >= cfg.subtopic_combos and len(branches) >= cfg.branch_combos:
                break
        return subtopics, branches

    def build_spec(self, context: SessionContext) -> TopicSpec:
        cfg = self.config
        profile = context.profile
        ranked = [topic for topic, _ in self.rank_topics(context)]
        used_defaults = not ranked
        if used_defaults:
            primary = list(cfg.default_topics)
            subtopics: List[Tuple[str, str]] = []
            branches: List[Tuple[str, str]] = []
        else:
            primary = ranked[: cfg.plain_topics]
            subtopics, branches = self._combos(context, ranked)

        adjacent = self.relations.adjacent_for(
            primary, per_topic=cfg.neighbours_per_topic, limit=cfg.max_adjacent
        )
        status = self.cold_start.classify(profile.total_answered, profile.cold_start_complete)
        primary_count, adjacent_count = self.cold_start.split_batch(cfg.batch_size, status)
        if not adjacent:
            primary_count, adjacent_count = primary_count + adjacent_count, 0

        spec = TopicSpec(
            primary_topics=primary,
            subtopic_combos=subtopics,
            branch_combos=branches,
            adjacent_topics=adjacent,
            preferred_subtopics=self._preferences(context, "subtopic"),
            preferred_branches=self._preferences(context, "branch"),
            preferred_tags=self._preferences(context, "tags"),
            phase=status.phase,
            cold_start_complete=status.complete,
            exploration_ratio=status.exploration_ratio,
            primary_count=primary_count,
            adjacent_count=adjacent_count,
            used_defaults=used_defaults,
        )
        logger.debug("Topic spec for %s: %s", context.user_id, spec.enhanced_topics)
        return spec

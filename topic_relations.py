"""Static topic relation table used to widen generation beyond primary topics."""

from __future__ import annotations

import json
import logging
import os
import random
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import yaml

logger = logging.getLogger(__name__)

DEFAULT_RELATIONS: Dict[str, List[str]] = {
    "Science": ["Physics", "Biology", "Chemistry", "Astronomy", "Technology"],
    "Physics": ["Science", "Astronomy", "Mathematics"],
    "Biology": ["Science", "Medicine", "Nature"],
    "Chemistry": ["Science", "Medicine", "Physics"],
    "Astronomy": ["Science", "Physics", "Space"],
    "Technology": ["Science", "Computers", "Engineering"],
    "History": ["Ancient History", "Modern History", "Politics", "Geography"],
    "Ancient History": ["History", "Archaeology", "Mythology"],
    "Modern History": ["History", "Politics", "Geography"],
    "Geography": ["History", "Nature", "Countries"],
    "Countries": ["Geography", "Culture", "Politics"],
    "Arts": ["Literature", "Music", "Visual Arts", "Movies"],
    "Literature": ["Arts", "History", "Language"],
    "Music": ["Arts", "Entertainment", "Culture"],
    "Movies": ["Arts", "Entertainment", "Pop Culture"],
    "General Knowledge": ["Trivia", "Facts", "Science", "History"],
    "Trivia": ["General Knowledge", "Entertainment", "Pop Culture"],
}

DEFAULT_FALLBACK: List[str] = ["General Knowledge", "Trivia", "Science", "History"]


def load_relation_table(path: str | Path) -> Dict[str, List[str]]:
    """Read a ``{topic: [related, ...]}`` table from JSON or YAML."""

    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in {".json", ".jsonc"}:
        raw = json.loads(path.read_text(encoding="utf-8"))
    elif suffix in {".yml", ".yaml"}:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    else:
        raise ValueError(f"Unsupported topic relation format: {path}")
    if not isinstance(raw, dict):
        raise ValueError(f"Topic relation file must contain a mapping: {path}")
    table: Dict[str, List[str]] = {}
    for topic, related in raw.items():
        if isinstance(related, str):
            related = [related]
        if not isinstance(related, list):
            raise ValueError(f"Related topics for {topic!r} must be a list")
        table[str(topic)] = [str(item) for item in related if str(item).strip()]
    return table


class TopicRelationMap:
    """Symmetric, case-insensitive neighbour lookup over a relation table.

    Ties between neighbours are broken by shuffling with the injected
    ``random.Random`` so tests can pin the order with a seed.
    """

    def __init__(
        self,
        relations: Optional[Mapping[str, Sequence[str]]] = None,
        *,
        rng: Optional[random.Random] = None,
        fallback: Optional[Sequence[str]] = None,
    ):
        self._rng = rng or random.Random()
        self._fallback = list(DEFAULT_FALLBACK if fallback is None else fallback)
        self._names: Dict[str, str] = {}
        self._neighbours: Dict[str, List[str]] = {}
        for topic, related in (DEFAULT_RELATIONS if relations is None else relations).items():
            for other in related:
                self._link(topic, other)

    def _key(self, topic: str) -> str:
        return topic.strip().lower()

    def _link(self, left: str, right: str) -> None:
        left_key, right_key = self._key(left), self._key(right)
        if not left_key or not right_key or left_key == right_key:
            return
        self._names.setdefault(left_key, left.strip())
        self._names.setdefault(right_key, right.strip())
        for source, target in ((left_key, right_key), (right_key, left_key)):
            bucket = self._neighbours.setdefault(source, [])
            if target not in bucket:
                bucket.append(target)

    def neighbours(self, topic: str) -> List[str]:
        """All known neighbours of ``topic`` in table order (empty when unknown)."""

        return [self._names[key] for key in self._neighbours.get(self._key(topic), [])]

    def related(self, topic: str, count: int = 2, *, exclude: Iterable[str] = ()) -> List[str]:
        skip = {self._key(name) for name in exclude} | {self._key(topic)}
        candidates = self.neighbours(topic) or self._fallback
        shuffled = [name for name in candidates if self._key(name) not in skip]
        self._rng.shuffle(shuffled)
        return shuffled[: max(0, count)]

    def adjacent_for(
        self, topics: Iterable[str], *, per_topic: int = 2, limit: int = 4
    ) -> List[str]:
        """Neighbours of ``topics`` excluding the topics themselves, capped at ``limit``."""

        topics = list(topics)
        excluded = {self._key(topic) for topic in topics}
        adjacent: List[str] = []
        seen = set(excluded)
        for topic in topics:
            for name in self.related(topic, per_topic, exclude=seen):
                key = self._key(name)
                if key in seen:
                    continue
                seen.add(key)
                adjacent.append(name)
                if len(adjacent) >= limit:
                    return adjacent
        return adjacent

    @classmethod
    def from_file(cls, path: str | Path, *, rng: Optional[random.Random] = None) -> "TopicRelationMap":
        return cls(load_relation_table(path), rng=rng)

    @classmethod
    def from_env(cls, *, rng: Optional[random.Random] = None) -> "TopicRelationMap":
        path = os.getenv("TOPIC_RELATIONS_PATH")
        if not path:
            return cls(rng=rng)
        logger.info("Loading topic relations from %s", path)
        return cls.from_file(path, rng=rng)

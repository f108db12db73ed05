"""Hierarchical interest weights (topic -> subtopic -> branch).

A :class:`WeightTree` stores one weight in ``[0, 1]`` per node. Reads never
create nodes; writes create any missing node along the path with the default
weight before adjusting the target level.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Sequence, Tuple, Union

from engines.config import WeightAdjustmentConfig

MAX_DEPTH = 3
_CHILD_KEYS = ("subtopics", "branches")

PathLike = Union[str, Sequence[str]]


class Outcome(str, Enum):
    CORRECT = "correct"
    INCORRECT = "incorrect"
    SKIPPED = "skipped"

    @classmethod
    def parse(cls, value: Any) -> "Outcome":
        if isinstance(value, Outcome):
            return value
        key = str(value or "").strip().lower()
        if key == "skip":
            key = "skipped"
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown outcome: {value!r}") from None


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class WeightNode:
    weight: float = 0.5
    children: Dict[str, "WeightNode"] = field(default_factory=dict)
    last_viewed: Optional[datetime] = None


def normalise_path(path: PathLike) -> Tuple[str, ...]:
    """Return ``path`` as a tuple of stripped names.

    Strings are split on ``/``. Raises ``ValueError`` for empty paths, paths
    deeper than three levels and blank names.
    """

    if isinstance(path, str):
        parts = path.split("/")
    else:
        parts = list(path)
    names = tuple(str(part).strip() for part in parts if part is not None)
    if not names:
        raise ValueError("path must contain at least a topic")
    if len(names) > MAX_DEPTH:
        raise ValueError(f"path deeper than {MAX_DEPTH} levels: {names!r}")
    if any(not name for name in names):
        raise ValueError(f"path contains a blank name: {names!r}")
    return names


class WeightTree:
    def __init__(
        self,
        config: WeightAdjustmentConfig | None = None,
        topics: Dict[str, WeightNode] | None = None,
    ):
        self.config = config or WeightAdjustmentConfig()
        self.topics: Dict[str, WeightNode] = topics if topics is not None else {}

    def node(self, path: PathLike) -> Optional[WeightNode]:
        names = normalise_path(path)
        children = self.topics
        current: Optional[WeightNode] = None
        for name in names:
            current = children.get(name)
            if current is None:
                return None
            children = current.children
        return current

    def get(self, path: PathLike) -> float:
        found = self.node(path)
        if found is None:
            return self.config.default_weight
        return found.weight

    def _ensure(self, names: Tuple[str, ...], now: datetime) -> WeightNode:
        children = self.topics
        current: Optional[WeightNode] = None
        for name in names:
            current = children.get(name)
            if current is None:
                current = WeightNode(weight=self.config.default_weight)
                children[name] = current
            current.last_viewed = now
            children = current.children
        assert current is not None
        return current

    def step(self, depth: int, outcome: Outcome, weight: float) -> float:
        """Signed delta applied to a node at ``depth`` currently at ``weight``."""

        outcome = Outcome.parse(outcome)
        if outcome is Outcome.CORRECT:
            return self.config.correct.for_depth(depth) * (1.0 - weight)
        if outcome is Outcome.INCORRECT:
            return -self.config.incorrect.for_depth(depth) * weight
        return -self.config.skip.for_depth(depth) * weight

    def adjust(self, path: PathLike, outcome: Outcome, *, now: Optional[datetime] = None) -> float:
        """Apply ``outcome`` to the node at ``path`` and return its new weight.

        Only the deepest level named by ``path`` changes; ancestors that did not
        exist yet are created at the default weight.
        """

        names = normalise_path(path)
        target = self._ensure(names, now or _utcnow())
        target.weight = _clamp(target.weight + self.step(len(names), outcome, target.weight))
        return target.weight

    def iter_nodes(self) -> Iterator[Tuple[Tuple[str, ...], WeightNode]]:
        stack = [((name,), node) for name, node in reversed(list(self.topics.items()))]
        while stack:
            path, node = stack.pop()
            yield path, node
            for name, child in reversed(list(node.children.items())):
                stack.append((path + (name,), child))

    def is_all_default(self) -> bool:
        default = self.config.default_weight
        tolerance = self.config.default_tolerance
        return all(abs(node.weight - default) <= tolerance for _, node in self.iter_nodes())

    def best_child(self, path: PathLike) -> Optional[Tuple[str, float]]:
        parent = self.node(path)
        if parent is None or not parent.children:
            return None
        name, child = max(parent.children.items(), key=lambda item: item[1].weight)
        return name, child.weight

    def decay(self, days: int, *, now: Optional[datetime] = None) -> int:
        """Pull stale weights down by ``days * decay_per_day``.

        Nodes viewed within the last day are left alone, and no weight is pushed
        below ``decay_floor`` (weights already under the floor stay as they are).
        Returns the number of nodes changed.
        """

        if days < 1:
            return 0
        now = now or _utcnow()
        amount = days * self.config.decay_per_day
        floor = self.config.decay_floor
        changed = 0
        for _, node in self.iter_nodes():
            if node.last_viewed is not None and now - node.last_viewed <= timedelta(days=1):
                continue
            if node.weight <= floor:
                continue
            decayed = max(floor, node.weight - amount)
            if decayed != node.weight:
                node.weight = decayed
                changed += 1
        return changed

    def to_dict(self) -> Dict[str, Any]:
        return {name: self._node_to_dict(node, 0) for name, node in self.topics.items()}

    def _node_to_dict(self, node: WeightNode, depth: int) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"weight": round(node.weight, 6)}
        if node.last_viewed is not None:
            payload["lastViewed"] = node.last_viewed.isoformat()
        if node.children and depth < len(_CHILD_KEYS):
            payload[_CHILD_KEYS[depth]] = {
                name: self._node_to_dict(child, depth + 1) for name, child in node.children.items()
            }
        return payload

    @classmethod
    def from_dict(
        cls, data: Optional[Dict[str, Any]], config: WeightAdjustmentConfig | None = None
    ) -> "WeightTree":
        tree = cls(config)
        for name, raw in (data or {}).items():
            node = tree._node_from_dict(raw, 0)
            if name and node is not None:
                tree.topics[str(name)] = node
        return tree

    def _node_from_dict(self, raw: Any, depth: int) -> Optional[WeightNode]:
        if isinstance(raw, (int, float)):
            return WeightNode(weight=_clamp(raw))
        if not isinstance(raw, dict):
            return None
        try:
            weight = _clamp(raw.get("weight", self.config.default_weight))
        except (TypeError, ValueError):
            weight = self.config.default_weight
        node = WeightNode(weight=weight, last_viewed=parse_timestamp(raw.get("lastViewed")))
        if depth < len(_CHILD_KEYS):
            for name, child_raw in (raw.get(_CHILD_KEYS[depth]) or {}).items():
                child = self._node_from_dict(child_raw, depth + 1)
                if name and child is not None:
                    node.children[str(name)] = child
        return node

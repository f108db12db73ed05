from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from engines.config import WeightAdjustmentConfig
from engines.weight_tree import WeightTree, parse_timestamp


class Profile:
    """A user's interest weights plus the counters that drive generation.

    ``total_answered`` only moves forward; use :meth:`count_answer` or
    :meth:`advance_to` to change it.
    """

    def __init__(
        self,
        tree: WeightTree | None = None,
        *,
        cold_start_complete: bool = False,
        total_answered: int = 0,
        last_refreshed: Optional[datetime] = None,
    ):
        self.tree = tree or WeightTree()
        self.cold_start_complete = bool(cold_start_complete)
        self._total_answered = max(0, int(total_answered))
        self.last_refreshed = last_refreshed or datetime.now(timezone.utc)

    @property
    def total_answered(self) -> int:
        return self._total_answered

    def count_answer(self) -> int:
        self._total_answered += 1
        return self._total_answered

    def advance_to(self, total: int) -> int:
        self._total_answered = max(self._total_answered, int(total))
        return self._total_answered

    def is_all_default(self) -> bool:
        return self.tree.is_all_default()

    def refresh(self, now: Optional[datetime] = None) -> int:
        """Apply daily decay once at least a full day has passed; returns days applied."""

        now = now or datetime.now(timezone.utc)
        days = (now - self.last_refreshed).days
        if days < 1:
            return 0
        self.tree.decay(days, now=now)
        self.last_refreshed = now
        return days

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topics": self.tree.to_dict(),
            "coldStartComplete": self.cold_start_complete,
            "totalAnswered": self._total_answered,
            "lastRefreshed": self.last_refreshed.isoformat(),
        }

    @classmethod
    def from_dict(
        cls, data: Optional[Dict[str, Any]], config: WeightAdjustmentConfig | None = None
    ) -> "Profile":
        data = data or {}

        def _int(key: str) -> int:
            try:
                return max(0, int(data.get(key) or 0))
            except (TypeError, ValueError):
                return 0

        return cls(
            WeightTree.from_dict(data.get("topics"), config),
            cold_start_complete=bool(data.get("coldStartComplete", False)),
            total_answered=_int("totalAnswered"),
            last_refreshed=parse_timestamp(data.get("lastRefreshed")),
        )

    def copy(self) -> "Profile":
        return Profile.from_dict(self.to_dict(), self.tree.config)

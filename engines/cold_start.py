from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from engines.config import ColdStartConfig


@dataclass(frozen=True)
class ColdStartStatus:
    complete: bool
    phase: Optional[int]
    exploration_ratio: float

    def to_dict(self) -> dict:
        return {
            "complete": self.complete,
            "phase": self.phase,
            "explorationRatio": self.exploration_ratio,
        }


class ColdStartPolicy:
    """Classify a profile into cold-start phases 1-3 or complete.

    The phase only biases how much of a generation batch goes to adjacent
    topics; it never blocks generation.
    """

    def __init__(self, config: ColdStartConfig | None = None):
        self.config = config or ColdStartConfig()

    def classify(self, total_answered: int, cold_start_complete: bool = False) -> ColdStartStatus:
        total = max(0, int(total_answered))
        cfg = self.config
        if cold_start_complete or total >= cfg.complete_at:
            return ColdStartStatus(True, None, cfg.complete_exploration)
        if total < cfg.phase_two_at:
            phase = 1
        elif total < cfg.phase_three_at:
            phase = 2
        else:
            phase = 3
        ratio = cfg.exploration_by_phase.get(phase, cfg.complete_exploration)
        return ColdStartStatus(False, phase, ratio)

    def split_batch(self, batch_size: int, status: ColdStartStatus) -> tuple[int, int]:
        """Return ``(primary, adjacent)`` item counts for a batch."""

        size = max(0, int(batch_size))
        adjacent = min(size, int(round(size * status.exploration_ratio)))
        return size - adjacent, adjacent

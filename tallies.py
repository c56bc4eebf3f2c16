"""
Bin tallies for the live histogram.
"""

import math
import numpy as np

from physics import right_probability


class BinTallies:
    """Landing counts per bin, one slot per possible right-deflection count."""

    def __init__(self, bin_count: int):
        self.counts = np.zeros(bin_count, dtype=np.int64)

    def __len__(self) -> int:
        return len(self.counts)

    @property
    def total(self) -> int:
        return int(self.counts.sum())

    def reset(self, bin_count: int | None = None) -> None:
        n = len(self.counts) if bin_count is None else bin_count
        self.counts = np.zeros(n, dtype=np.int64)

    def record(self, bin_index: int) -> None:
        idx = int(np.clip(bin_index, 0, len(self.counts) - 1))
        self.counts[idx] += 1

    def mean(self) -> float:
        total = self.total
        if total == 0:
            return 0.0
        return float(np.dot(np.arange(len(self.counts)), self.counts) / total)

    def percentages(self) -> np.ndarray:
        total = self.total
        if total == 0:
            return np.zeros(len(self.counts))
        return self.counts * (100.0 / total)

    def as_records(self) -> list:
        """Histogram rows in bar-chart form: [{"bin": "0", "count": n}, ...]."""
        return [{"bin": str(i), "count": int(c)} for i, c in enumerate(self.counts)]

    # ── Binomial reference ───────────────────────────────────────────────────

    @staticmethod
    def expected_mean(rows: int, bias: float) -> float:
        return right_probability(bias) * rows

    @staticmethod
    def expected_sd(rows: int, bias: float) -> float:
        p = right_probability(bias)
        return math.sqrt(max(0.0, rows * p * (1 - p)))

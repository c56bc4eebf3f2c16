"""
Galton Board Lattice Geometry
Peg coordinates, row heights and bin centers for a triangular quincunx.
"""

import math
import numpy as np
from dataclasses import dataclass, field

# ──────────────────────────────────────────────
# Board geometry (canvas pixels, scale = 1.0)
# ──────────────────────────────────────────────
BASE_WIDTH: float = 520.0
BASE_SPACING: float = 28.0       # distance between adjacent pegs / rows
TOP_MARGIN: float = 40.0
BOARD_TOP_OFFSET: float = 20.0   # first peg row sits below the top margin
PEG_RADIUS: float = 3.0


@dataclass(frozen=True)
class LatticeConfig:
    """Immutable lattice parameters. Invalid values fail at construction."""
    row_count: int
    spacing: float = BASE_SPACING
    center_x: float = BASE_WIDTH / 2
    top_y: float = TOP_MARGIN + BOARD_TOP_OFFSET

    def __post_init__(self):
        if isinstance(self.row_count, bool) or not isinstance(self.row_count, (int, np.integer)):
            raise ValueError(f"row_count must be an integer, got {self.row_count!r}")
        if self.row_count < 1:
            raise ValueError(f"row_count must be >= 1, got {self.row_count}")
        if not math.isfinite(self.spacing) or self.spacing <= 0:
            raise ValueError(f"spacing must be a positive finite number, got {self.spacing!r}")
        if not (math.isfinite(self.center_x) and math.isfinite(self.top_y)):
            raise ValueError("center_x and top_y must be finite")

    @classmethod
    def from_scale(cls, row_count: int, scale: float = 1.0) -> "LatticeConfig":
        """Board layout of the interactive widget, scaled uniformly."""
        if not math.isfinite(scale) or scale <= 0:
            raise ValueError(f"scale must be a positive finite number, got {scale!r}")
        width = round(BASE_WIDTH * scale)
        return cls(
            row_count=row_count,
            spacing=BASE_SPACING * scale,
            center_x=width / 2,
            top_y=(TOP_MARGIN + BOARD_TOP_OFFSET) * scale,
        )


@dataclass(frozen=True, eq=False)
class Lattice:
    """Derived peg / bin layout for one LatticeConfig."""
    config: LatticeConfig
    peg_rows: list = field(repr=False)
    row_ys: np.ndarray = field(repr=False)
    bin_centers: np.ndarray = field(repr=False)

    @property
    def row_count(self) -> int:
        return self.config.row_count

    @property
    def spacing(self) -> float:
        return self.config.spacing

    @property
    def center_x(self) -> float:
        return self.config.center_x

    @property
    def top_y(self) -> float:
        return self.config.top_y

    @property
    def bin_count(self) -> int:
        return self.config.row_count + 1

    @property
    def half_width(self) -> float:
        return self.row_count * self.spacing / 2

    # Outer extent of the bottom peg row; deflection targets never leave it.
    @property
    def left_bound(self) -> float:
        return self.center_x - self.half_width

    @property
    def right_bound(self) -> float:
        return self.center_x + self.half_width

    # Side walls sit half a spacing outside the bounds.
    @property
    def left_wall(self) -> float:
        return self.left_bound - self.spacing / 2

    @property
    def right_wall(self) -> float:
        return self.right_bound + self.spacing / 2

    @property
    def bottom_y(self) -> float:
        """Top edge of the bins, one spacing below the last peg row."""
        return self.top_y + self.row_count * self.spacing


def generate_lattice(row_count: int, spacing: float = BASE_SPACING,
                     center_x: float = BASE_WIDTH / 2,
                     top_y: float = TOP_MARGIN + BOARD_TOP_OFFSET) -> Lattice:
    """
    Build the peg lattice.

    Row r holds r+1 pegs spaced `spacing` apart, centered on center_x, at
    y = top_y + r*spacing. The row_count+1 bin centers span the width of the
    bottom row (row_count*spacing), also centered on center_x.
    """
    return build_lattice(LatticeConfig(row_count, float(spacing),
                                       float(center_x), float(top_y)))


def build_lattice(config: LatticeConfig) -> Lattice:
    """Lattice for an already validated config."""
    rows, s, cx = config.row_count, config.spacing, config.center_x
    row_ys = config.top_y + np.arange(rows, dtype=float) * s

    peg_rows = []
    for r in range(rows):
        start_x = cx - r * s / 2
        xs = start_x + np.arange(r + 1, dtype=float) * s
        pegs = np.column_stack([xs, np.full(r + 1, row_ys[r])])
        peg_rows.append(pegs)

    bin_start = cx - rows * s / 2
    bin_centers = bin_start + np.arange(rows + 1, dtype=float) * s

    return Lattice(config=config, peg_rows=peg_rows,
                   row_ys=row_ys, bin_centers=bin_centers)

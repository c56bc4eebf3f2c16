"""
Galton Board Simulation Core
Per-ball motion models, weighted left/right deflection, and the frame-driven
engine that owns the live ball set.
"""

import enum
import itertools
import numpy as np
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from lattice import Lattice

# ──────────────────────────────────────────────
# Constants (canvas pixels, milliseconds)
# ──────────────────────────────────────────────
BALL_RADIUS: float = 3.2
STEP_MS: float = 140.0            # tween model: duration of one row segment
MIN_STEP_MS: float = 40.0
TWEEN_DROP_OFFSET: float = 0.6    # drop height above the first row, in spacings
GRAVITY_DROP_OFFSET: float = 0.8
DEFAULT_SEED: int = 12345

# ── Runtime-editable behavior constants ───────────────────────────────────────
# Read by name every call, so server.py can mutate them live via:
#   import physics as _phys;  _phys.GRAVITY = 900.0
GRAVITY: float = 1200.0           # px/s^2
BOUNCE_VY: float = 120.0          # upward kick at each peg row, px/s
AIR_DAMPING: float = 0.002        # per-tick velocity decay (vy decays at half rate)
TWEEN_MS: float = 140.0           # gravity model: horizontal tween duration
MAX_DT: float = 0.033             # s, frame gap clamp
WALL_RESTITUTION: float = 0.6

Rng = Callable[[], float]


def clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def ease_in_out(u: float) -> float:
    """Quadratic ease-in-out on [0, 1]."""
    return 2 * u * u if u < 0.5 else -1 + (4 - 2 * u) * u


def right_probability(bias: float) -> float:
    """Probability of a rightward deflection, always clamped to [0, 1]."""
    return clamp(0.5 + bias, 0.0, 1.0)


def make_rng(seed: Optional[int] = DEFAULT_SEED) -> Rng:
    """Seeded uniform [0, 1) generator. seed=None draws fresh OS entropy."""
    return np.random.default_rng(seed).random


class BallState(enum.Enum):
    FALLING = 0
    DEFLECTING = 1
    LANDED = 2


@dataclass(eq=False)
class Ball:
    """One ball in flight. Bin index on landing is right_count."""
    ball_id: int
    position: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0]))
    velocity: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0]))
    p_right: float = 0.5
    radius: float = BALL_RADIUS
    row: int = 0
    right_count: int = 0
    state: BallState = BallState.FALLING
    # Active transition: start -> target over duration_ms beginning at t0.
    start: Optional[np.ndarray] = None
    target: Optional[np.ndarray] = None
    t0: Optional[float] = None
    duration_ms: float = STEP_MS
    # Per-ball draw source; None uses the engine generator.
    rng: Optional[Rng] = None

    def __post_init__(self):
        self.position = np.array(self.position, dtype=float)
        self.velocity = np.array(self.velocity, dtype=float)
        self.start = self.position.copy() if self.start is None else np.array(self.start, dtype=float)
        self.target = self.position.copy() if self.target is None else np.array(self.target, dtype=float)

    @property
    def done(self) -> bool:
        return self.state is BallState.LANDED

    @property
    def bin_index(self) -> int:
        return self.right_count

    def progress(self, now: float) -> float:
        """Normalized progress of the active transition."""
        if self.t0 is None:
            self.t0 = now
        return clamp((now - self.t0) / self.duration_ms, 0.0, 1.0)


def deflect(ball: Ball, rng: Rng) -> int:
    """Weighted coin flip at a peg row. Returns +1 (right) or -1 (left).

    A ball carrying its own `rng` draws from it instead of the shared one.
    """
    draw = ball.rng if ball.rng is not None else rng
    go_right = draw() < ball.p_right
    if go_right:
        ball.right_count += 1
    ball.row += 1
    return 1 if go_right else -1


# ──────────────────────────────────────────────
# Motion models
# ──────────────────────────────────────────────
class TweenMotion:
    """Model A: each row transition is an eased tween of fixed duration.

    The first segment falls one spacing straight down onto the apex peg.
    Every following segment starts with a deflection decision and moves
    half a spacing sideways and one spacing down. The ball lands when the
    segment after the last decision completes.
    """
    name = "tween"
    drop_offset = TWEEN_DROP_OFFSET

    def spawn(self, ball: Ball, lattice: Lattice, step_ms: float) -> None:
        ball.duration_ms = max(MIN_STEP_MS, step_ms)
        ball.start = ball.position.copy()
        ball.target = ball.position + np.array([0.0, lattice.spacing])
        ball.state = BallState.FALLING

    def advance(self, ball: Ball, now: float, dt: float,
                lattice: Lattice, rng: Rng) -> bool:
        if ball.done:
            return False
        u = ball.progress(now)
        ball.position = ball.start + (ball.target - ball.start) * ease_in_out(u)
        if u < 1.0:
            return False

        if ball.row >= lattice.row_count:
            ball.position = ball.target.copy()
            ball.state = BallState.LANDED
            return True

        direction = deflect(ball, rng)
        tx = clamp(ball.target[0] + direction * lattice.spacing / 2,
                   lattice.left_bound, lattice.right_bound)
        ball.start = ball.target.copy()
        ball.target = np.array([tx, ball.target[1] + lattice.spacing])
        ball.t0 = now
        ball.state = BallState.DEFLECTING
        return False


class GravityMotion:
    """Model B: gravity-integrated fall with a horizontal tween per row.

    Crossing a peg row's height triggers the deflection decision, an upward
    bounce and a horizontal tween that overrides vx until it completes.
    """
    name = "gravity"
    drop_offset = GRAVITY_DROP_OFFSET

    def spawn(self, ball: Ball, lattice: Lattice, step_ms: float) -> None:
        ball.velocity[:] = 0.0
        ball.duration_ms = TWEEN_MS
        ball.state = BallState.FALLING

    def advance(self, ball: Ball, now: float, dt: float,
                lattice: Lattice, rng: Rng) -> bool:
        if ball.done:
            return False

        ball.velocity[1] += GRAVITY * dt
        ball.velocity[0] *= (1 - AIR_DAMPING)
        ball.velocity[1] *= (1 - AIR_DAMPING * 0.5)

        if ball.state is BallState.DEFLECTING:
            u = ball.progress(now)
            ball.position[0] = ball.start[0] + (ball.target[0] - ball.start[0]) * ease_in_out(u)
            if u >= 1.0:
                ball.state = BallState.FALLING
        else:
            ball.position[0] += ball.velocity[0] * dt

        ball.position[1] += ball.velocity[1] * dt

        if ball.row < lattice.row_count and ball.position[1] >= lattice.row_ys[ball.row]:
            self._bounce(ball, now, lattice, rng)

        self._check_walls(ball, lattice)

        if ball.row >= lattice.row_count and ball.position[1] >= lattice.bottom_y - ball.radius:
            ball.state = BallState.LANDED
            return True
        return False

    @staticmethod
    def _bounce(ball: Ball, now: float, lattice: Lattice, rng: Rng) -> None:
        direction = deflect(ball, rng)
        ball.velocity[1] = -abs(BOUNCE_VY)
        ball.velocity[0] = 0.0
        tx = clamp(ball.position[0] + direction * lattice.spacing / 2,
                   lattice.left_bound + ball.radius,
                   lattice.right_bound - ball.radius)
        ball.start = ball.position.copy()
        ball.target = np.array([tx, ball.position[1]])
        ball.t0 = now
        ball.duration_ms = TWEEN_MS
        ball.state = BallState.DEFLECTING

    @staticmethod
    def _check_walls(ball: Ball, lattice: Lattice) -> None:
        left = lattice.left_wall + ball.radius
        right = lattice.right_wall - ball.radius
        if ball.position[0] < left:
            ball.position[0] = left
            ball.velocity[0] = abs(ball.velocity[0]) * WALL_RESTITUTION
        if ball.position[0] > right:
            ball.position[0] = right
            ball.velocity[0] = -abs(ball.velocity[0]) * WALL_RESTITUTION


MOTION_MODELS = {
    TweenMotion.name: TweenMotion,
    GravityMotion.name: GravityMotion,
}


def make_motion(model: str):
    try:
        return MOTION_MODELS[model]()
    except KeyError:
        raise ValueError(
            f"Unknown motion model '{model}'. Use one of {sorted(MOTION_MODELS)}."
        ) from None


# ──────────────────────────────────────────────
# Engine
# ──────────────────────────────────────────────
class GaltonEngine:
    """Owns the lattice, the live balls and the shared generator.

    The engine never reads a clock: the driver passes `now` (ms) to tick().
    """

    def __init__(self, lattice: Lattice, model: str = "tween", bias: float = 0.0,
                 step_ms: float = STEP_MS, seed: Optional[int] = DEFAULT_SEED,
                 rng: Optional[Rng] = None, ball_radius: float = BALL_RADIUS):
        self.lattice = lattice
        self.motion = make_motion(model)
        self.bias = bias
        self.step_ms = step_ms
        self.ball_radius = ball_radius
        self.seed = seed
        self.rng: Rng = rng if rng is not None else make_rng(seed)
        self.balls: List[Ball] = []
        self.events: List[Dict] = []
        self._ids = itertools.count()
        self._last_now: Optional[float] = None

    @property
    def model(self) -> str:
        return self.motion.name

    @property
    def p_right(self) -> float:
        return right_probability(self.bias)

    # ── Configuration ────────────────────────────────────────────────────────

    def set_lattice(self, lattice: Lattice) -> None:
        """Swap geometry. Live balls are meaningless under a new lattice."""
        self.lattice = lattice
        self.reset()

    def set_model(self, model: str) -> None:
        self.motion = make_motion(model)
        self.reset()

    def reseed(self, seed: Optional[int]) -> None:
        self.seed = seed
        self.rng = make_rng(seed)

    def reset(self) -> None:
        self.balls.clear()
        self.events.clear()
        self._last_now = None

    # ── Balls ────────────────────────────────────────────────────────────────

    def drop(self, now: Optional[float] = None, bias: Optional[float] = None,
             step_ms: Optional[float] = None) -> Ball:
        """Append a fresh ball above the apex peg.

        With now=None the first transition starts at the next tick.
        """
        lat = self.lattice
        ball = Ball(
            next(self._ids),
            position=[lat.center_x, lat.top_y - lat.spacing * self.motion.drop_offset],
            p_right=right_probability(self.bias if bias is None else bias),
            radius=self.ball_radius,
        )
        self.motion.spawn(ball, lat, self.step_ms if step_ms is None else step_ms)
        ball.t0 = now
        self.balls.append(ball)
        return ball

    def positions(self) -> np.ndarray:
        if not self.balls:
            return np.empty((0, 2))
        return np.array([b.position for b in self.balls])

    # ── Main update ──────────────────────────────────────────────────────────

    def tick(self, now: float) -> List[int]:
        """Advance every live ball once. Returns the bins of balls that landed."""
        self.events.clear()
        if self._last_now is None:
            dt = 0.0
        else:
            dt = clamp((now - self._last_now) / 1000.0, 0.0, MAX_DT)
        self._last_now = now

        landed: List[int] = []
        for ball in self.balls:
            if self.motion.advance(ball, now, dt, self.lattice, self.rng):
                landed.append(ball.bin_index)
                self.events.append({"type": "landed", "ball": ball.ball_id,
                                    "bin": ball.bin_index})
        if landed:
            self.balls[:] = [b for b in self.balls if not b.done]
        return landed

    def simulate(self, frame_ms: float = 1000.0 / 60, max_time_ms: float = 120_000.0,
                 start_ms: float = 0.0) -> dict:
        """
        Tick at a fixed frame interval until no ball is live or max_time_ms.

        Returns:
            dict with "bins" (landing bins in landing order) and "elapsed_ms".
        """
        bins: List[int] = []
        t = 0.0
        while self.balls and t < max_time_ms:
            t += frame_ms
            bins.extend(self.tick(start_ms + t))
        return {"bins": bins, "elapsed_ms": t}

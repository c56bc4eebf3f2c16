"""
Drop Preset System
Canned, reproducible board scenarios: forced-right, forced-left, a seeded
single drop, a biased batch and a gravity-model batch.
"""

from lattice import LatticeConfig, build_lattice
from physics import GaltonEngine, DEFAULT_SEED

# Tick interval for preset runs (60 fps)
_FRAME_MS = 1000.0 / 60


def _always(value: float):
    """Generator stub returning a constant draw."""
    return lambda: value


def _build(rows: int, model: str = "tween", bias: float = 0.0,
           seed: int = DEFAULT_SEED, rng=None) -> GaltonEngine:
    lattice = build_lattice(LatticeConfig.from_scale(rows))
    return GaltonEngine(lattice, model=model, bias=bias, seed=seed, rng=rng)


def _finish(engine: GaltonEngine, balls: list, run: bool) -> dict:
    bins, elapsed = [], 0.0
    if run:
        result = engine.simulate(frame_ms=_FRAME_MS)
        bins, elapsed = result["bins"], result["elapsed_ms"]
    return {"engine": engine, "ball": balls[0], "balls": balls,
            "bins": bins, "elapsed_ms": elapsed}


class DropPreset:
    """Each preset builds an engine → drops balls → simulate → result dict."""

    @staticmethod
    def scenario_1_all_right(rows: int = 5, model: str = "tween", run=True) -> dict:
        """Every draw is 0.0, below any p_right > 0: the ball ends in the last bin."""
        engine = _build(rows, model=model, rng=_always(0.0))
        balls = [engine.drop(now=0.0)]
        return _finish(engine, balls, run)

    @staticmethod
    def scenario_2_all_left(rows: int = 5, model: str = "tween", run=True) -> dict:
        """Every draw is 1.0, never below p_right: the ball ends in bin 0."""
        engine = _build(rows, model=model, rng=_always(1.0))
        balls = [engine.drop(now=0.0)]
        return _finish(engine, balls, run)

    @staticmethod
    def scenario_3_seeded_single(seed: int = DEFAULT_SEED, rows: int = 12,
                                 model: str = "tween", run=True) -> dict:
        """One ball on a fresh seeded generator."""
        engine = _build(rows, model=model, seed=seed)
        balls = [engine.drop(now=0.0)]
        return _finish(engine, balls, run)

    @staticmethod
    def scenario_4_biased_batch(bias: float = 0.2, count: int = 500,
                                seed: int = DEFAULT_SEED, rows: int = 12,
                                run=True) -> dict:
        """A batch tilted right by `bias`, all released together."""
        engine = _build(rows, bias=bias, seed=seed)
        balls = [engine.drop(now=0.0) for _ in range(count)]
        return _finish(engine, balls, run)

    @staticmethod
    def scenario_5_gravity_bounce(count: int = 20, seed: int = DEFAULT_SEED,
                                  rows: int = 12, run=True) -> dict:
        """Gravity model: balls bounce row by row down to the bins."""
        engine = _build(rows, model="gravity", seed=seed)
        balls = [engine.drop(now=0.0) for _ in range(count)]
        return _finish(engine, balls, run)


# Scenario map used by the server (keys 1-5)
SCENARIOS = {
    "1": (DropPreset.scenario_1_all_right,      "1: All right"),
    "2": (DropPreset.scenario_2_all_left,       "2: All left"),
    "3": (DropPreset.scenario_3_seeded_single,  "3: Seeded single"),
    "4": (DropPreset.scenario_4_biased_batch,   "4: Biased batch"),
    "5": (DropPreset.scenario_5_gravity_bounce, "5: Gravity bounce"),
}

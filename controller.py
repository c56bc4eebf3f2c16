"""
GaltonController — Layer 2 (Board Logic)

Owns the simulation engine, the bin tallies and every control setting.
Communicates with Layer 3 (server.py or any other driver) via:
  - pending_events : rendering commands (spawn_ball, landed, clear_balls)

Layer 3 calls:
  ctrl.step(now)              — release scheduled drops + advance balls, every frame
  ctrl.pending_events         — list of dicts to consume and act on
  ctrl.engine.positions()     — current ball positions for drawing
  ctrl.tallies                — histogram counts
"""

import csv
import json
import logging
from pathlib import Path

from lattice import LatticeConfig, build_lattice
from physics import GaltonEngine, BALL_RADIUS, DEFAULT_SEED, STEP_MS
from tallies import BinTallies

logger = logging.getLogger(__name__)


class GaltonController:
    """Layer 2: board configuration, drop scheduling and tally bookkeeping."""

    # ── Class-level constants (UI control limits) ─────────────────────────────
    ROWS_MIN, ROWS_MAX             = 5, 20
    BIAS_MIN, BIAS_MAX             = -0.25, 0.25
    STEP_MS_MIN, STEP_MS_MAX       = 60, 500
    INTERVAL_MIN, INTERVAL_MAX     = 40, 1500
    BATCH_MIN, BATCH_MAX           = 1, 200
    SCALE_MIN, SCALE_MAX           = 0.7, 1.6

    DEFAULT_ROWS          = 12
    DEFAULT_BATCH         = 50
    DEFAULT_INTERVAL_MS   = 500
    BATCH_STAGGER_MIN_MS  = 8
    BATCH_STAGGER_FACTOR  = 0.04     # of step_ms
    AUTO_BATCH_MIN_MS     = 500
    HEADLESS_FRAME_MS     = 1000.0 / 60

    # ── Constructor ───────────────────────────────────────────────────────────

    def __init__(self, rows: int = DEFAULT_ROWS, bias: float = 0.0,
                 step_ms: float = STEP_MS, scale: float = 1.0,
                 seed: int | None = DEFAULT_SEED, model: str = "tween",
                 rng=None):
        self._check_rows(rows)
        self._check_range("bias", bias, self.BIAS_MIN, self.BIAS_MAX)
        self._check_range("step_ms", step_ms, self.STEP_MS_MIN, self.STEP_MS_MAX)
        self._check_range("scale", scale, self.SCALE_MIN, self.SCALE_MAX)
        self.rows  = rows
        self.bias  = float(bias)
        self.scale = float(scale)
        self.step_ms = float(step_ms)
        self.drop_interval_ms = self.DEFAULT_INTERVAL_MS
        self.balls_per_batch  = self.DEFAULT_BATCH

        lattice = build_lattice(LatticeConfig.from_scale(rows, scale))
        self.engine = GaltonEngine(
            lattice, model=model, bias=bias, step_ms=step_ms, seed=seed,
            rng=rng, ball_radius=self._ball_radius(),
        )
        self.tallies = BinTallies(lattice.bin_count)

        # Auto-run state
        self.running = False
        self._next_auto_drop: float | None = None
        self._scheduled_drops: list[float] = []   # due times, ascending

        self.status_msg = ""

        # Event queue (L3 rendering commands)
        self.pending_events: list[dict] = []

    # ── Derived geometry ──────────────────────────────────────────────────────

    @property
    def lattice(self):
        return self.engine.lattice

    @property
    def model(self) -> str:
        return self.engine.model

    @property
    def seed(self):
        return self.engine.seed

    @property
    def scheduled_drop_count(self) -> int:
        return len(self._scheduled_drops)

    def _ball_radius(self) -> float:
        return max(2.0, BALL_RADIUS * self.scale)

    def auto_interval_ms(self) -> float:
        """Gap between automatic drops while running."""
        if self.model == "tween":
            return max(self.AUTO_BATCH_MIN_MS, self.step_ms * (self.rows + 2))
        return max(self.INTERVAL_MIN, self.drop_interval_ms)

    def batch_stagger_ms(self) -> float:
        return max(self.BATCH_STAGGER_MIN_MS, self.step_ms * self.BATCH_STAGGER_FACTOR)

    # ──────────────────────────────────────────────────────────────────────────
    # Main loop
    # ──────────────────────────────────────────────────────────────────────────

    def step(self, now: float) -> list[int]:
        """Release due drops, advance every ball, tally landings. Called every frame."""
        if self.running and self._next_auto_drop is not None and now >= self._next_auto_drop:
            self._auto_drop(now)
            self._next_auto_drop = now + self.auto_interval_ms()

        while self._scheduled_drops and self._scheduled_drops[0] <= now:
            self._scheduled_drops.pop(0)
            self.drop(now)

        landed = self.engine.tick(now)
        for ev in self.engine.events:
            self.tallies.record(ev["bin"])
            self.pending_events.append(ev)
        return landed

    def _auto_drop(self, now: float) -> None:
        if self.model == "tween":
            self.drop_batch(self.balls_per_batch, now)
        else:
            self.drop(now)

    # ──────────────────────────────────────────────────────────────────────────
    # Ball management
    # ──────────────────────────────────────────────────────────────────────────

    def drop(self, now: float | None = None):
        """Drop one ball with the current bias and speed."""
        ball = self.engine.drop(now=now, bias=self.bias, step_ms=self.step_ms)
        self.pending_events.append({"type": "spawn_ball", "ball": ball})
        return ball

    def load_scenario(self, scenario_fn, label: str) -> None:
        """Replace the board with a drop-preset scenario (keys 1-5)."""
        result = scenario_fn(run=False)
        engine = result["engine"]
        seed = self.seed
        for b in engine.balls:
            b.t0 = None      # start at the next frame, not at preset time 0
            b.rng = engine.rng
        # Preset draws stay with the preset's balls; later drops are seeded.
        engine.reseed(seed)
        self.engine  = engine
        self.rows    = engine.lattice.row_count
        self.scale   = 1.0
        self.bias    = engine.bias
        self.step_ms = engine.step_ms
        self._scheduled_drops.clear()
        self.tallies.reset(self.lattice.bin_count)

        self.pending_events.append({"type": "clear_balls"})
        for b in engine.balls:
            self.pending_events.append({"type": "spawn_ball", "ball": b})
        self.status_msg = f"Scenario {label}"
        logger.info("[SCN] loaded %s (%d balls)", label, len(engine.balls))

    def drop_batch(self, count: int, now: float) -> None:
        """Schedule `count` drops a few milliseconds apart, starting at `now`."""
        self._check_range("batch size", count, self.BATCH_MIN, self.BATCH_MAX)
        gap = self.batch_stagger_ms()
        due = [now + i * gap for i in range(int(count))]
        self._scheduled_drops = sorted(self._scheduled_drops + due)

    def start(self, now: float) -> None:
        if self.running:
            return
        self.running = True
        self._next_auto_drop = now
        self.status_msg = "Running..."

    def stop(self) -> None:
        """Stop scheduling new drops; balls in flight still land."""
        self.running = False
        self._next_auto_drop = None
        self.status_msg = "Stopped."

    def toggle(self, now: float) -> None:
        if self.running:
            self.stop()
        else:
            self.start(now)

    def reset(self) -> None:
        """Discard every live ball and pending drop, zero the tallies."""
        self.engine.reset()
        self._scheduled_drops.clear()
        self.tallies.reset(self.lattice.bin_count)
        self.pending_events.append({"type": "clear_balls"})
        self.status_msg = ""

    def reseed(self, seed: int | None) -> None:
        self.engine.reseed(seed)
        logger.info("[RNG] reseeded with %s", seed)

    # ──────────────────────────────────────────────────────────────────────────
    # Settings
    # ──────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _check_range(name: str, value, lo, hi) -> None:
        if not lo <= value <= hi:
            raise ValueError(f"{name} must be in [{lo}, {hi}], got {value}")

    @classmethod
    def _check_rows(cls, rows) -> None:
        if isinstance(rows, bool) or not isinstance(rows, int):
            raise ValueError(f"rows must be an integer, got {rows!r}")
        cls._check_range("rows", rows, cls.ROWS_MIN, cls.ROWS_MAX)

    def _rebuild_lattice(self, rows: int, scale: float) -> None:
        config = LatticeConfig.from_scale(rows, scale)
        self.rows, self.scale = rows, scale
        self.engine.ball_radius = self._ball_radius()
        self.engine.set_lattice(build_lattice(config))
        self._scheduled_drops.clear()
        self.tallies.reset(self.lattice.bin_count)
        self.pending_events.append({"type": "clear_balls"})

    def set_rows(self, rows: int) -> None:
        """Change the row count. Bins change meaning, so balls and tallies go."""
        self._check_rows(rows)
        if rows == self.rows:
            return
        self._rebuild_lattice(rows, self.scale)
        logger.info("[CFG] rows=%d, tallies reset", rows)

    def set_scale(self, scale: float) -> None:
        self._check_range("scale", scale, self.SCALE_MIN, self.SCALE_MAX)
        if scale == self.scale:
            return
        self._rebuild_lattice(self.rows, scale)

    def set_bias(self, bias: float) -> None:
        """Applies to balls dropped from now on."""
        self._check_range("bias", bias, self.BIAS_MIN, self.BIAS_MAX)
        self.bias = float(bias)
        self.engine.bias = self.bias

    def set_step_ms(self, step_ms: float) -> None:
        self._check_range("step_ms", step_ms, self.STEP_MS_MIN, self.STEP_MS_MAX)
        self.step_ms = float(step_ms)
        self.engine.step_ms = self.step_ms

    def set_drop_interval(self, interval_ms: float) -> None:
        self._check_range("drop interval", interval_ms, self.INTERVAL_MIN, self.INTERVAL_MAX)
        self.drop_interval_ms = float(interval_ms)

    def set_balls_per_batch(self, count: int) -> None:
        self._check_range("balls per batch", count, self.BATCH_MIN, self.BATCH_MAX)
        self.balls_per_batch = int(count)

    def set_model(self, model: str) -> None:
        """Switch motion model. In-flight balls belong to the old model."""
        if model == self.model:
            return
        self.engine.set_model(model)
        self._scheduled_drops.clear()
        self.tallies.reset(self.lattice.bin_count)
        self.pending_events.append({"type": "clear_balls"})

    # ──────────────────────────────────────────────────────────────────────────
    # Statistics
    # ──────────────────────────────────────────────────────────────────────────

    def stats(self) -> dict:
        return {
            "total":         self.tallies.total,
            "mean":          round(self.tallies.mean(), 4),
            "expected_mean": round(BinTallies.expected_mean(self.rows, self.bias), 4),
            "expected_sd":   round(BinTallies.expected_sd(self.rows, self.bias), 4),
            "p_right":       round(self.engine.p_right, 4),
        }

    # ──────────────────────────────────────────────────────────────────────────
    # Advanced Command Panel
    # ──────────────────────────────────────────────────────────────────────────

    def get_state(self) -> dict:
        return {
            "rows":             self.rows,
            "bias":             self.bias,
            "step_ms":          self.step_ms,
            "drop_interval_ms": self.drop_interval_ms,
            "balls_per_batch":  self.balls_per_batch,
            "scale":            self.scale,
            "seed":             self.seed,
            "model":            self.model,
            "running":          self.running,
            "live":             len(self.engine.balls),
            "tallies":          [int(c) for c in self.tallies.counts],
        }

    def get_state_json(self) -> str:
        """Current settings and tallies as compact single-line JSON."""
        return json.dumps(self.get_state(), separators=(',', ':'))

    _SETTERS = {
        "rows":             "set_rows",
        "bias":             "set_bias",
        "step_ms":          "set_step_ms",
        "drop_interval_ms": "set_drop_interval",
        "balls_per_batch":  "set_balls_per_batch",
        "scale":            "set_scale",
        "model":            "set_model",
    }

    def execute_command(self, text: str, now: float | None = None) -> None:
        """Parse a JSON command string and dispatch to handlers."""
        if not text:
            self.status_msg = "Empty command."
            return
        try:
            data = json.loads(text.replace('\r', ''))
        except json.JSONDecodeError as exc:
            logger.warning("[CMD] JSON parse error: %s", exc)
            self.status_msg = f"JSON error: {exc}"
            return
        if not isinstance(data, dict):
            self.status_msg = "Command must be a JSON object."
            return

        cmd = str(data.get("cmd", "")).lower().strip()
        logger.debug("[CMD] cmd=%s", cmd)
        try:
            if cmd == "set":
                self._cmd_set(data)
            elif cmd == "drop":
                count = int(data.get("count", 1))
                self._check_range("count", count, self.BATCH_MIN, self.BATCH_MAX)
                if count == 1 or now is None:
                    for _ in range(count):
                        self.drop(now)
                else:
                    self.drop_batch(count, now)
                self.status_msg = f"drop: {count} ball(s)."
            elif cmd == "reset":
                self.reset()
                self.status_msg = "reset: tallies cleared."
            elif cmd == "reseed":
                self.reseed(data.get("seed"))
                self.status_msg = f"reseed: seed={self.seed}."
            else:
                self.status_msg = f"Unknown cmd '{cmd}'. Use set/drop/reset/reseed."
        except (TypeError, ValueError) as exc:
            logger.warning("[CMD] %s rejected: %s", cmd, exc)
            self.status_msg = f"{cmd}: {exc}"

    def _cmd_set(self, data: dict) -> None:
        """set: apply any of rows/bias/step_ms/drop_interval_ms/balls_per_batch/scale/model/seed."""
        updated = []
        for key, setter in self._SETTERS.items():
            if key in data:
                getattr(self, setter)(data[key])
                updated.append(key)
        if "seed" in data:
            self.reseed(data["seed"])
            updated.append("seed")
        if not updated:
            self.status_msg = f"set: one of {sorted(list(self._SETTERS) + ['seed'])} required."
            return
        self.status_msg = f"set: {updated} updated."

    # ──────────────────────────────────────────────────────────────────────────
    # Export
    # ──────────────────────────────────────────────────────────────────────────

    def export_tallies_csv(self, path: str | Path) -> Path:
        """Write bin, count, percent rows. Returns the resolved path."""
        out = Path(path).resolve()
        pct = self.tallies.percentages()
        try:
            out.parent.mkdir(parents=True, exist_ok=True)
            with open(out, "w", newline="", encoding="utf-8") as f:
                writer = csv.writer(f)
                writer.writerow(["bin", "count", "percent"])
                for i, c in enumerate(self.tallies.counts):
                    writer.writerow([i, int(c), f"{pct[i]:.2f}"])
        except OSError as exc:
            logger.error("[CSV] Write failed for %s: %s", out, exc)
            raise
        logger.info("[CSV] Saved %d bins → %s", len(self.tallies), out)
        return out

    # ──────────────────────────────────────────────────────────────────────────
    # Headless batch API
    # ──────────────────────────────────────────────────────────────────────────

    def simulate_drops(
        self,
        count: int,
        *,
        seed: int | None = None,
        bias: float | None = None,
        rows: int | None = None,
        model: str | None = None,
        frame_ms: float | None = None,
        rng=None,
    ) -> dict:
        """Headless batch simulation.

        Non-destructive: runs on a fresh engine and does NOT touch the live
        balls, the tallies or the controller's generator.

        Args:
            count:    Balls dropped together at t=0.
            seed:     Generator seed (defaults to the controller's seed).
            bias:     Bias override (defaults to the controller's bias).
            rows:     Row count override.
            model:    "tween" or "gravity" (defaults to the controller's model).
            frame_ms: Tick interval. Defaults to 60 fps. For the tween model a
                      frame of step_ms completes one row per tick.
            rng:      Custom uniform generator; takes precedence over seed.

        Returns:
            ``dict`` with keys ``bins`` (landing order), ``tallies``,
            ``total``, ``mean``, ``expected_mean``, ``expected_sd`` and
            ``elapsed_ms``.
        """
        rows = self.rows if rows is None else rows
        bias = self.bias if bias is None else bias
        engine = GaltonEngine(
            build_lattice(LatticeConfig.from_scale(rows, self.scale)),
            model=self.model if model is None else model,
            bias=bias,
            step_ms=self.step_ms,
            seed=self.seed if seed is None else seed,
            rng=rng,
            ball_radius=self._ball_radius(),
        )
        for _ in range(count):
            engine.drop(now=0.0)
        result = engine.simulate(frame_ms=frame_ms or self.HEADLESS_FRAME_MS)

        tallies = BinTallies(rows + 1)
        for b in result["bins"]:
            tallies.record(b)
        return {
            "bins":          result["bins"],
            "tallies":       [int(c) for c in tallies.counts],
            "total":         tallies.total,
            "mean":          tallies.mean(),
            "expected_mean": BinTallies.expected_mean(rows, bias),
            "expected_sd":   BinTallies.expected_sd(rows, bias),
            "elapsed_ms":    result["elapsed_ms"],
        }

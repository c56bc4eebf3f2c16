"""
Galton Board Web Server — Layer 3 (FastAPI + WebSocket)

Runs the frame loop that drives the controller and streams ball positions,
landing events and the live histogram to browser clients over WebSocket.
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from controller import GaltonController
from drop_presets import SCENARIOS
from lattice import PEG_RADIUS
import physics as _phys

LOG_FORMAT = "%(levelname)s: %(message)s"

logger = logging.getLogger(__name__)

# ── Controller ──────────────────────────────────────────────────────────────

ctrl = GaltonController()


# ── Lifespan (startup/shutdown) ─────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(frame_loop())
    yield
    task.cancel()


app = FastAPI(lifespan=lifespan)

clients: list[WebSocket] = []

# ── Physics params (runtime-editable module constants) ──────────────────────

PHYSICS_PARAMS = [
    ("GRAVITY",          "Gravity",        100.0, 4000.0, 50.0),
    ("BOUNCE_VY",        "Bounce Speed",     0.0,  600.0, 10.0),
    ("AIR_DAMPING",      "Air Damping",      0.0,    0.05, 0.001),
    ("TWEEN_MS",         "Sideways Tween",  20.0,  600.0, 10.0),
    ("WALL_RESTITUTION", "Wall Rest.",       0.0,    1.0, 0.05),
    ("MAX_DT",           "Max Frame dt",   0.005,    0.1, 0.001),
]

PARAM_DEFAULTS = {attr: getattr(_phys, attr) for attr, *_ in PHYSICS_PARAMS}

# ── Async frame loop ────────────────────────────────────────────────────────

TARGET_FPS = 60
FRAME_DT = 1.0 / TARGET_FPS


def now_ms() -> float:
    return time.perf_counter() * 1000.0


async def frame_loop():
    """Main loop running at ~60 fps."""
    while True:
        frame_start = time.perf_counter()

        ctrl.step(frame_start * 1000.0)

        if clients:
            frame_msg = _build_frame_message()
            dead: list[WebSocket] = []
            for ws in clients:
                try:
                    await ws.send_text(frame_msg)
                except Exception:
                    dead.append(ws)
            for ws in dead:
                if ws in clients:
                    clients.remove(ws)
        else:
            ctrl.pending_events.clear()

        elapsed = time.perf_counter() - frame_start
        sleep_time = FRAME_DT - elapsed
        await asyncio.sleep(sleep_time if sleep_time > 0 else 0)


def _ball_data(b) -> dict:
    return {
        "id":    b.ball_id,
        "pos":   [round(float(b.position[0]), 3), round(float(b.position[1]), 3)],
        "row":   b.row,
        "state": b.state.name,
    }


def _build_frame_message() -> str:
    """Serialize current state into a JSON frame message, draining events."""
    events = []
    for ev in ctrl.pending_events:
        if ev.get("type") == "spawn_ball" and "ball" in ev:
            events.append({"type": "spawn_ball", "ball": _ball_data(ev["ball"])})
        else:
            events.append(ev)
    ctrl.pending_events.clear()

    frame = {
        "type":      "frame",
        "balls":     [_ball_data(b) for b in ctrl.engine.balls],
        "events":    events,
        "tallies":   [int(c) for c in ctrl.tallies.counts],
        "histogram": ctrl.tallies.as_records(),
        "stats":     ctrl.stats(),
        "running":   ctrl.running,
        "status":    ctrl.status_msg,
    }
    return json.dumps(frame, separators=(',', ':'))


def _build_init_message() -> str:
    lat = ctrl.lattice
    return json.dumps({
        "type":        "init",
        "rows":        lat.row_count,
        "spacing":     lat.spacing,
        "center_x":    lat.center_x,
        "top_y":       lat.top_y,
        "bottom_y":    lat.bottom_y,
        "peg_rows":    [[[round(float(x), 3), round(float(y), 3)] for x, y in row]
                        for row in lat.peg_rows],
        "bin_centers": [round(float(x), 3) for x in lat.bin_centers],
        "peg_radius":  PEG_RADIUS * ctrl.scale,
        "ball_radius": ctrl.engine.ball_radius,
        "model":       ctrl.model,
        "limits": {
            "rows":             [ctrl.ROWS_MIN, ctrl.ROWS_MAX],
            "bias":             [ctrl.BIAS_MIN, ctrl.BIAS_MAX],
            "step_ms":          [ctrl.STEP_MS_MIN, ctrl.STEP_MS_MAX],
            "drop_interval_ms": [ctrl.INTERVAL_MIN, ctrl.INTERVAL_MAX],
            "balls_per_batch":  [ctrl.BATCH_MIN, ctrl.BATCH_MAX],
            "scale":            [ctrl.SCALE_MIN, ctrl.SCALE_MAX],
        },
    })


# ── Physics params helpers ──────────────────────────────────────────────────

def _get_params_data() -> list:
    """Return all physics params with current values."""
    result = []
    for attr, label, mn, mx, step in PHYSICS_PARAMS:
        result.append({
            "attr": attr, "label": label,
            "value": round(getattr(_phys, attr), 6),
            "min": mn, "max": mx, "step": step,
        })
    return result


def _adjust_param(idx: int, direction: int, fine: bool = False) -> float | None:
    if not 0 <= idx < len(PHYSICS_PARAMS):
        return None
    attr, label, mn, mx, step = PHYSICS_PARAMS[idx]
    s = step / 10.0 if fine else step
    new_val = max(mn, min(mx, getattr(_phys, attr) + direction * s))
    setattr(_phys, attr, new_val)
    return new_val


def _reset_params() -> None:
    for attr, dflt in PARAM_DEFAULTS.items():
        setattr(_phys, attr, dflt)


# ── Command dispatch ────────────────────────────────────────────────────────

def _handle_command(msg: dict) -> list[str]:
    """Apply one client command. Returns reply messages for the sender only."""
    cmd = msg.get("cmd", "")
    now = now_ms()
    replies: list[str] = []

    if cmd == "drop":
        ctrl.drop(now)
    elif cmd == "drop_batch":
        count = int(msg.get("count", ctrl.balls_per_batch))
        ctrl.drop_batch(count, now)
    elif cmd == "start":
        ctrl.start(now)
    elif cmd == "stop":
        ctrl.stop()
    elif cmd == "toggle":
        ctrl.toggle(now)
    elif cmd == "reset":
        ctrl.reset()
    elif cmd == "reseed":
        ctrl.reseed(msg.get("seed"))
    elif cmd == "scenario":
        key = str(msg.get("key", ""))
        if key in SCENARIOS:
            fn, label = SCENARIOS[key]
            ctrl.load_scenario(fn, label)
            replies.append(_build_init_message())
    elif cmd in ("set", "execute"):
        text = msg.get("text") if cmd == "execute" else json.dumps({**msg, "cmd": "set"})
        rows_before, scale_before, model_before = ctrl.rows, ctrl.scale, ctrl.model
        ctrl.execute_command(text or "", now=now)
        if (ctrl.rows, ctrl.scale, ctrl.model) != (rows_before, scale_before, model_before):
            replies.append(_build_init_message())
    elif cmd == "get_state":
        replies.append(json.dumps({"type": "state_json", "data": ctrl.get_state_json()}))
    elif cmd == "get_params":
        replies.append(json.dumps({"type": "params", "data": _get_params_data()}))
    elif cmd == "adjust_param":
        idx = int(msg.get("index", 0))
        new_val = _adjust_param(idx, int(msg.get("direction", 0)), bool(msg.get("fine", False)))
        if new_val is not None:
            replies.append(json.dumps({
                "type": "param_update", "index": idx, "value": round(new_val, 6),
            }))
    elif cmd == "reset_params":
        _reset_params()
        replies.append(json.dumps({"type": "params", "data": _get_params_data()}))
    else:
        logger.debug("[WS] ignoring unknown cmd %r", cmd)
    return replies


# ── WebSocket endpoint ──────────────────────────────────────────────────────

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    clients.append(ws)
    await ws.send_text(_build_init_message())

    try:
        while True:
            data = await ws.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue
            if not isinstance(msg, dict):
                continue
            try:
                replies = _handle_command(msg)
            except (TypeError, ValueError) as exc:
                logger.warning("[WS] bad command %r: %s", msg.get("cmd"), exc)
                continue
            for reply in replies:
                await ws.send_text(reply)
    except WebSocketDisconnect:
        pass
    finally:
        if ws in clients:
            clients.remove(ws)


@app.get("/state")
async def state():
    return ctrl.get_state()


# ── Run with uvicorn ────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, force=True)
    uvicorn.run("server:app", host="0.0.0.0", port=8000, reload=False)

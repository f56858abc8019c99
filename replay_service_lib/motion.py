"""Human-like input pacing: eased cursor paths and per-character typing delays."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import Iterator, Optional

from .service_models import CursorSettings

FRAME_MS = 16.0
MIN_PATH_STEPS = 10
JUMP_DISTANCE_PX = 5.0


@dataclass(frozen=True)
class Waypoint:
    x: float
    y: float
    hold_ms: float


def ease_in_out_cubic(t: float) -> float:
    t = max(0.0, min(1.0, t))
    if t < 0.5:
        return 4 * t * t * t
    return 1 - math.pow(-2 * t + 2, 3) / 2


def path_duration_ms(distance: float, settings: CursorSettings) -> float:
    return max(settings.min_move_duration_ms, distance / settings.max_speed_px_per_sec * 1000.0)


def path_step_count(duration_ms: float) -> int:
    return max(MIN_PATH_STEPS, int(duration_ms // FRAME_MS))


def cursor_path(
    start: tuple[float, float],
    end: tuple[float, float],
    settings: Optional[CursorSettings] = None,
) -> Iterator[Waypoint]:
    """
    Yield eased waypoints from ``start`` to ``end`` (both included).

    Short hops under 5px collapse to the endpoint alone. The generator is
    finite and single-use.
    """
    settings = settings or CursorSettings()
    sx, sy = start
    ex, ey = end
    dx, dy = ex - sx, ey - sy
    distance = math.hypot(dx, dy)

    if distance < JUMP_DISTANCE_PX:
        yield Waypoint(ex, ey, 0.0)
        return

    duration = path_duration_ms(distance, settings)
    steps = path_step_count(duration)
    hold = duration / steps
    for i in range(steps + 1):
        e = ease_in_out_cubic(i / steps)
        yield Waypoint(sx + dx * e, sy + dy * e, hold)


def typing_delays(
    text: str,
    chars_per_sec: float,
    randomize: float = 0.0,
    rng: Optional[random.Random] = None,
) -> Iterator[float]:
    base = 1000.0 / chars_per_sec
    uniform = (rng or random).uniform
    for _ in text:
        if randomize:
            yield base * (1 + uniform(-0.5, 0.5) * randomize)
        else:
            yield base


def should_paste(text: str, threshold: Optional[int]) -> bool:
    return threshold is not None and len(text) > threshold

"""Transform planner: decompose a speed factor into legal atempo steps.

The ffmpeg ``atempo`` filter only accepts a factor in [0.5, 2.0] per
instance. Speeds between 0.25 and 4.0 are reached by chaining two
instances, the first pinned at the nearest bound.
"""

import math
from typing import List

from speedshift.exceptions import InvalidSpeed

MIN_SPEED = 0.25
MAX_SPEED = 4.0

MIN_STEP = 0.5
MAX_STEP = 2.0


def validate_speed(speed) -> float:
    """Coerce ``speed`` to float and check it against the supported domain."""
    try:
        value = float(speed)
    except (TypeError, ValueError):
        raise InvalidSpeed(speed, MIN_SPEED, MAX_SPEED)

    if math.isnan(value) or value < MIN_SPEED or value > MAX_SPEED:
        raise InvalidSpeed(speed, MIN_SPEED, MAX_SPEED)
    return value


def plan(speed) -> List[float]:
    """Return the ordered per-step factors whose product equals ``speed``.

    Raises:
        InvalidSpeed: if ``speed`` is outside [0.25, 4.0].
    """
    value = validate_speed(speed)

    if MIN_STEP <= value <= MAX_STEP:
        return [value]
    if value < MIN_STEP:
        return [MIN_STEP, value / MIN_STEP]
    return [MAX_STEP, value / MAX_STEP]


def product(steps: List[float]) -> float:
    """Effective speed of a step list."""
    return math.prod(steps)


def build_filter(steps: List[float]) -> str:
    """Render a step list as an ffmpeg audio filter chain."""
    if not steps:
        raise ValueError("Step list is empty")
    return ",".join(f"atempo={step!r}" for step in steps)

from __future__ import annotations

import math
import re
from typing import Iterable, Optional

MIN_LAP_MS = 10_000  # 10 seconds
MAX_LAP_MS = 1_800_000  # 30 minutes

_LAP_TIME_RE = re.compile(r"^(?:(\d+):)?(\d+)(?:\.(\d{1,3}))?$")


def round_ms(value: float) -> int:
    """
    Round to the nearest whole millisecond, halves away from zero.
    Python's round() uses banker's rounding, which would turn 87332.5 into 87332.
    """
    if value < 0:
        return -math.floor(-value + 0.5)
    return math.floor(value + 0.5)


def average(values: Iterable[int]) -> float:
    vals = list(values)
    if not vals:
        return 0.0
    return sum(vals) / len(vals)


def mean_ms(values: Iterable[int]) -> Optional[int]:
    vals = list(values)
    if not vals:
        return None
    return round_ms(average(vals))


def parse_lap_time(text: str) -> Optional[int]:
    """
    Parse "1:23.456", "1:23", "23.456" or "23" into milliseconds.
    A fraction shorter than three digits is right-padded ("1:23.4" -> 1:23.400).
    Returns None for anything else, including a seconds part of 60 or more.
    """
    match = _LAP_TIME_RE.match(text.strip())
    if not match:
        return None

    minutes = int(match.group(1)) if match.group(1) else 0
    seconds = int(match.group(2))
    millis = int(match.group(3).ljust(3, "0")) if match.group(3) else 0

    if seconds >= 60:
        return None
    return minutes * 60_000 + seconds * 1000 + millis


def format_lap_time(ms: int) -> str:
    minutes, rest = divmod(ms, 60_000)
    seconds, millis = divmod(rest, 1000)
    return f"{minutes}:{seconds:02d}.{millis:03d}"


def time_difference(time_ms: int, reference_ms: int) -> str:
    diff = time_ms - reference_ms
    if diff == 0:
        return "0.000"
    sign = "+" if diff > 0 else "-"
    return f"{sign}{abs(diff) / 1000:.3f}"


def is_valid_lap_time(ms: int) -> bool:
    return MIN_LAP_MS <= ms <= MAX_LAP_MS

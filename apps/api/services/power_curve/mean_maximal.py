"""Mean-maximal curve construction.

The mean-maximal value for a duration d is the highest average of any
contiguous d-sample window of a per-second series. A prefix-sum array
turns every window sum into one subtraction, so each duration costs O(n)
and a whole curve O(n * D) for D durations.
"""
from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import numpy as np

from .models import CurvePoint, SportMetric


def _bucket_range(start: int, stop: int, step: int) -> Tuple[int, ...]:
    return tuple(range(start, stop + 1, step))


# Dense under a minute, sparser beyond. Shared read-only across threads.
DURATION_BUCKETS: Tuple[int, ...] = (
    _bucket_range(1, 60, 1)
    + _bucket_range(65, 300, 5)
    + _bucket_range(330, 1200, 30)
    + _bucket_range(1260, 3600, 60)
    + _bucket_range(3900, 21600, 300)
)


def speed_to_pace(speed_mps: float) -> float:
    """m/s -> min/km."""
    return 60.0 / (speed_mps * 3.6)


def _prefix_sums(series: Sequence[float]) -> np.ndarray:
    values = np.asarray(series, dtype=np.float64)
    prefix = np.empty(values.size + 1, dtype=np.float64)
    prefix[0] = 0.0
    np.cumsum(values, out=prefix[1:])
    return prefix


def _window_means(prefix: np.ndarray, duration: int) -> np.ndarray:
    return (prefix[duration:] - prefix[:-duration]) / duration


def best_window(series: Sequence[float], duration: int) -> Optional[Tuple[int, float]]:
    """(start index, mean) of the first window with the highest mean."""
    if duration <= 0 or duration > len(series):
        return None
    means = _window_means(_prefix_sums(series), duration)
    start = int(np.argmax(means))
    return start, float(means[start])


def mean_maximal(series: Sequence[float], duration: int) -> Optional[float]:
    found = best_window(series, duration)
    return found[1] if found is not None else None


def build_curve(
    series: Sequence[float],
    metric: SportMetric,
    durations: Sequence[int] = DURATION_BUCKETS,
) -> List[CurvePoint]:
    """Mean-maximal value for every duration the series is long enough for.

    Non-positive means carry no signal and are omitted. Pace sports report
    min/km, so the best (highest) speed becomes the best (lowest) pace.
    """
    n = len(series)
    if n == 0:
        return []

    prefix = _prefix_sums(series)
    points: List[CurvePoint] = []
    for duration in durations:
        if duration <= 0 or duration > n:
            continue
        best = float(_window_means(prefix, duration).max())
        if best <= 0:
            continue
        value = speed_to_pace(best) if metric is SportMetric.PACE else best
        points.append(CurvePoint(duration_seconds=duration, value=value))
    return points

"""Select and flatten the per-second series an activity should be analyzed on.

Missing-vs-zero policy:
    A missing sample (None, "undefined", non-numeric, NaN/inf) is dropped.
    A zero is a real reading (coasting, standing still) and is kept.

Source priority:
    1. the dedicated series for the sport's metric (power_series or speed_series)
    2. per-point extraction from embedded track points
    3. empty list ("no data", not an error)
"""
from __future__ import annotations

import logging
import math
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from .models import ActivitySnapshot, SportMetric, metric_for_sport

logger = logging.getLogger(__name__)

# Track-point keys tried in order, per metric.
_TRACK_KEYS = {
    SportMetric.POWER: ("power",),
    SportMetric.PACE: ("speed", "enhanced_speed"),
}


def coerce_sample(raw: Any) -> Optional[float]:
    """Turn one raw sample into a float, or None when it is missing.

    File parsers sometimes wrap values as {"value": x}; those are unwrapped.
    Booleans are not samples.
    """
    if isinstance(raw, dict):
        raw = raw.get("value")
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        if raw.strip().lower() in ("", "undefined", "null", "nan"):
            return None
        try:
            raw = float(raw)
        except ValueError:
            return None
    if not isinstance(raw, (int, float)):
        return None
    value = float(raw)
    if not math.isfinite(value):
        return None
    return value


def clean_series(raw_series: Optional[Iterable[Any]]) -> List[float]:
    if not raw_series:
        return []
    cleaned = []
    for raw in raw_series:
        value = coerce_sample(raw)
        if value is not None:
            cleaned.append(value)
    return cleaned


def _from_track_points(track_points: Sequence[Any], keys: Tuple[str, ...]) -> List[float]:
    values: List[float] = []
    for point in track_points:
        if not isinstance(point, dict):
            continue
        for key in keys:
            value = coerce_sample(point.get(key))
            if value is not None:
                values.append(value)
                break
    return values


def extract_series(
    activity: ActivitySnapshot,
    sport: Optional[str] = None,
    metric: Optional[SportMetric] = None,
) -> List[float]:
    """Return the flat, null-filtered series for the activity's primary metric.

    `metric` overrides the sport's own metric (CP tests always read power).
    """
    if metric is None:
        metric = metric_for_sport(sport or activity.sport)

    explicit = activity.power_series if metric is SportMetric.POWER else activity.speed_series
    series = clean_series(explicit)
    if series:
        return series

    if activity.track_points:
        series = _from_track_points(activity.track_points, _TRACK_KEYS[metric])
        if series:
            return series

    logger.debug(f"No {metric.value} data for activity {activity.id}")
    return []

"""Critical power model fitting.

Hyperbolic power-duration model:  P = CP + W' / t

Two-point (or any number of efforts, linear form):
    Ordinary least squares of P against 1/t. The intercept is CP and the
    slope is W'. The slope is in watt-seconds, i.e. already joules.

Three-point:
    CP is scanned from 10% to 90% of the weakest effort's power in 1 W
    steps. For each candidate, W' is the mean of (P_i - CP) * t_i and the
    candidate is scored by R^2 of CP + W'/t_i against the observed powers.
    Among equal R^2 the first candidate scanned (lowest CP) is kept.

Fewer than two valid efforts never raises; the fit is simply unavailable.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from .cp_detection import THREE_POINT, TWO_POINT, get_protocol
from .models import CPResult, Effort

logger = logging.getLogger(__name__)

SCAN_LOW_FRACTION = 0.10
SCAN_HIGH_FRACTION = 0.90
SCAN_STEP_WATTS = 1.0


def _r_squared(observed: Sequence[float], predicted: Sequence[float]) -> float:
    mean = sum(observed) / len(observed)
    ss_res = sum((o - p) ** 2 for o, p in zip(observed, predicted))
    ss_tot = sum((o - mean) ** 2 for o in observed)
    if ss_tot == 0:
        return 1.0 if ss_res < 1e-12 else 0.0
    return 1.0 - ss_res / ss_tot


def fit_two_point(efforts: Sequence[Effort]) -> Optional[Tuple[float, float, float]]:
    """(cp, w_prime, r_squared) from OLS on P vs 1/t, or None if singular."""
    xs = [1.0 / e.duration_seconds for e in efforts]
    ys = [e.value for e in efforts]
    n = len(xs)

    sum_x = sum(xs)
    sum_y = sum(ys)
    sum_xy = sum(x * y for x, y in zip(xs, ys))
    sum_xx = sum(x * x for x in xs)

    denominator = n * sum_xx - sum_x * sum_x
    if abs(denominator) < 1e-18:
        return None

    slope = (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n

    predicted = [intercept + slope * x for x in xs]
    return intercept, slope, _r_squared(ys, predicted)


def fit_three_point(efforts: Sequence[Effort]) -> Optional[Tuple[float, float, float]]:
    """(cp, w_prime, r_squared) from the CP grid scan."""
    powers = [e.value for e in efforts]
    durations = [e.duration_seconds for e in efforts]
    min_power = min(powers)
    low = min_power * SCAN_LOW_FRACTION
    high = min_power * SCAN_HIGH_FRACTION
    if high <= low:
        return None

    best: Optional[Tuple[float, float, float]] = None
    steps = int((high - low) // SCAN_STEP_WATTS)
    for i in range(steps + 1):
        cp = low + i * SCAN_STEP_WATTS
        w_prime = sum((p - cp) * t for p, t in zip(powers, durations)) / len(powers)
        predicted = [cp + w_prime / t for t in durations]
        r2 = _r_squared(powers, predicted)
        # Strictly greater: ties keep the lowest CP scanned.
        if best is None or r2 > best[2]:
            best = (cp, w_prime, r2)
    return best


def _wants_three_point(valid: Sequence[Effort], protocol_key: Optional[str]) -> bool:
    if len(valid) < 3 or len({e.duration_seconds for e in valid}) < 3:
        return False
    protocol = get_protocol(protocol_key)
    return protocol is None or protocol.model == THREE_POINT


def fit_critical_power(
    efforts: Sequence[Effort],
    protocol_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[CPResult]:
    valid = [e for e in efforts if e.is_valid]
    rejected = tuple(e for e in efforts if not e.is_valid)
    if len(valid) < 2:
        return None

    model = TWO_POINT
    fit = None
    if _wants_three_point(valid, protocol_key):
        fit = fit_three_point(valid)
        model = THREE_POINT
    if fit is None:
        fit = fit_two_point(valid)
        model = TWO_POINT
    if fit is None:
        logger.info(f"CP fit unavailable for protocol {protocol_key}: efforts share one duration")
        return None

    cp, w_prime, r_squared = fit
    activity_ids: List = []
    for effort in valid:
        if effort.activity_id is not None and effort.activity_id not in activity_ids:
            activity_ids.append(effort.activity_id)

    return CPResult(
        protocol=protocol_key,
        model=model,
        cp_watts=cp,
        w_prime_joules=w_prime,
        efforts_used=tuple(valid),
        efforts_rejected=rejected,
        test_date=now or datetime.now(timezone.utc),
        r_squared=r_squared,
        activity_ids=tuple(activity_ids),
    )

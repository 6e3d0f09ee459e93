"""
Threshold tuning helpers for the control-chart detectors.

Both charts translate a false-alert target ("at most one false alert per N
samples") into a control limit:

- EWMA uses the two-sided normal quantile z = Phi^-1(1 - 1/(2N)).
- CUSUM inverts Siegmund's in-control ARL approximation
  ARL0 = (exp(2k(h + 1.166)) - 2k(h + 1.166) - 1) / (2k^2)
  for the decision interval h (sigma units).

Baseline quality then widens (low quality) or slightly relaxes (high quality)
the resulting limit.
"""

from __future__ import annotations

import math
from typing import Optional

from .schema import CusumSide
from .statistics import clamp, is_finite, normal_ppf

MIN_LAMBDA = 1e-3
MAX_LAMBDA = 0.9
MIN_Z_MULTIPLIER = 2.0
MAX_Z_MULTIPLIER = 5.0
MIN_K_FACTOR = 0.1
MAX_K_FACTOR = 1.0

LOW_QUALITY = 0.6
HIGH_QUALITY = 0.9
LOW_QUALITY_MAX_WIDENING = 0.25
HIGH_QUALITY_MAX_RELAXATION = 0.05


def clamp_lambda(lam: float, default: float = 0.2) -> float:
    if not is_finite(lam):
        return default
    return min(max(lam, MIN_LAMBDA), MAX_LAMBDA)


def clamp_k_factor(k_factor: float, default: float = 0.5) -> float:
    if not is_finite(k_factor):
        return default
    return min(max(k_factor, MIN_K_FACTOR), MAX_K_FACTOR)


def control_limit_multiplier(target_false_alerts_per_n: float) -> float:
    n = max(2.0, float(target_false_alerts_per_n)) if is_finite(target_false_alerts_per_n) else 336.0
    z = normal_ppf(1.0 - 1.0 / (2.0 * n))
    return clamp(z, MIN_Z_MULTIPLIER, MAX_Z_MULTIPLIER)


def quality_adjustment(quality: Optional[float]) -> float:
    """
    Multiplicative factor applied to a control limit.

    Quality below 0.6 widens the limit by up to 25% (at quality 0); quality
    above 0.9 relaxes it by up to 5% (at quality 1). Unknown quality is neutral.
    """

    if quality is None or not is_finite(quality):
        return 1.0
    q = clamp(quality)
    if q < LOW_QUALITY:
        return 1.0 + LOW_QUALITY_MAX_WIDENING * (LOW_QUALITY - q) / LOW_QUALITY
    if q > HIGH_QUALITY:
        return 1.0 - HIGH_QUALITY_MAX_RELAXATION * (q - HIGH_QUALITY) / (1.0 - HIGH_QUALITY)
    return 1.0


def siegmund_arl(h: float, k: float) -> float:
    """In-control average run length of a one-sided CUSUM (sigma units)."""

    b = 2.0 * k * (h + 1.166)
    if b > 700:
        return math.inf
    return (math.exp(b) - b - 1.0) / (2.0 * k * k)


def cusum_decision_interval(
    k_factor: float,
    target_false_alerts_per_n: float,
    sided: CusumSide = CusumSide.UPPER,
    baseline_quality_score: Optional[float] = None,
    arl_multiplier: float = 1000.0,
    h_min: float = 4.0,
    h_max: float = 60.0,
) -> float:
    """
    Decision interval multiplier H for a CUSUM chart.

    The in-control ARL target is N * arl_multiplier. Two-sided monitoring
    doubles the target so each side carries half of the false-alarm budget.
    """

    k = clamp_k_factor(k_factor)
    n = max(2.0, float(target_false_alerts_per_n))
    target = n * max(1.0, arl_multiplier)
    if sided == CusumSide.BOTH:
        target *= 2.0

    low, high = 0.0, 200.0
    for _ in range(100):
        mid = (low + high) / 2.0
        if siegmund_arl(mid, k) < target:
            low = mid
        else:
            high = mid
    h = high * quality_adjustment(baseline_quality_score)
    return clamp(h, h_min, h_max)

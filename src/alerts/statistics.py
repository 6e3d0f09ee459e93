"""
Statistics primitives shared by baselines and detectors.

All functions are pure and tolerate empty input and non-finite values:
non-finite entries are filtered out and degenerate input yields a neutral
value (0.0 for location/scale, 1.0 for p-values) instead of raising.

Notes:
- Normal CDF/inverse-CDF come from ``statistics.NormalDist``.
- The regularized incomplete beta uses the Lentz continued fraction and
  backs the Student-t tail used for correlation p-values.
- Fisher's exact test enumerates the hypergeometric support with a ratio
  recurrence anchored at the mode, so it stays O(n) and never underflows
  at the observed cell.
"""

from __future__ import annotations

import math
import statistics
from typing import Iterable, List, Optional, Sequence, Tuple

MAD_TO_SIGMA = 1.4826
IQR_TO_SIGMA = 1.349
MEAN_AD_TO_SIGMA = 1.253314

_STANDARD_NORMAL = statistics.NormalDist()


def is_finite(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def finite_values(values: Iterable[Optional[float]]) -> List[float]:
    return [float(v) for v in values if is_finite(v)]


def clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    if not is_finite(value):
        return lower
    return min(max(value, lower), upper)


def mean(values: Iterable[Optional[float]]) -> float:
    data = finite_values(values)
    if not data:
        return 0.0
    return math.fsum(data) / len(data)


def median(values: Iterable[Optional[float]]) -> float:
    data = finite_values(values)
    if not data:
        return 0.0
    return statistics.median(data)


def quantile(values: Iterable[Optional[float]], q: float) -> float:
    """Quantile with linear interpolation between closest ranks."""

    data = sorted(finite_values(values))
    if not data:
        return 0.0
    q = clamp(q)
    position = (len(data) - 1) * q
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return data[lower]
    fraction = position - lower
    return data[lower] + (data[upper] - data[lower]) * fraction


def iqr(values: Iterable[Optional[float]]) -> float:
    data = finite_values(values)
    return quantile(data, 0.75) - quantile(data, 0.25)


def mad(values: Iterable[Optional[float]], center: Optional[float] = None) -> float:
    data = finite_values(values)
    if not data:
        return 0.0
    center = statistics.median(data) if center is None else center
    return statistics.median(abs(v - center) for v in data)


def mad_sigma(values: Iterable[Optional[float]]) -> float:
    return MAD_TO_SIGMA * mad(values)


def variance(values: Iterable[Optional[float]], sample: bool = False) -> float:
    data = finite_values(values)
    n = len(data)
    if n < (2 if sample else 1):
        return 0.0
    mu = math.fsum(data) / n
    ss = math.fsum((v - mu) ** 2 for v in data)
    return ss / (n - 1 if sample else n)


def std(values: Iterable[Optional[float]], sample: bool = False) -> float:
    return math.sqrt(variance(values, sample=sample))


def robust_sigma(values: Iterable[Optional[float]], floor: float = 1e-6) -> float:
    """
    Robust normal-equivalent sigma.

    Falls back from MAD to IQR and then to the standard deviation when more
    than half of the values are identical, and never returns less than floor.
    """

    data = finite_values(values)
    for estimate in (
        mad_sigma(data),
        iqr(data) / IQR_TO_SIGMA,
        std(data, sample=len(data) > 1),
    ):
        if estimate > floor:
            return estimate
    return floor


def robust_z_scores(values: Sequence[float]) -> List[float]:
    """
    Modified z-scores (0.6745 * (x - median) / MAD).

    When the MAD is zero the mean absolute deviation is used instead; when
    that is zero too every score is 0.
    """

    data = finite_values(values)
    if not data:
        return []
    center = statistics.median(data)
    spread = mad(data, center)
    if spread > 0:
        return [0.6745 * (v - center) / spread for v in data]
    mean_ad = math.fsum(abs(v - center) for v in data) / len(data)
    if mean_ad > 0:
        return [(v - center) / (MEAN_AD_TO_SIGMA * mean_ad) for v in data]
    return [0.0 for _ in data]


def autocorrelation(values: Iterable[Optional[float]], lag: int = 1) -> float:
    data = finite_values(values)
    n = len(data)
    if lag <= 0 or n <= lag + 1:
        return 0.0
    mu = math.fsum(data) / n
    denom = math.fsum((v - mu) ** 2 for v in data)
    if denom <= 0:
        return 0.0
    num = math.fsum((data[i] - mu) * (data[i + lag] - mu) for i in range(n - lag))
    return num / denom


def normal_cdf(x: float) -> float:
    return _STANDARD_NORMAL.cdf(x)


def normal_ppf(p: float) -> float:
    if p <= 0.0:
        return -math.inf
    if p >= 1.0:
        return math.inf
    return _STANDARD_NORMAL.inv_cdf(p)


def _beta_continued_fraction(x: float, a: float, b: float, max_iter: int = 300) -> float:
    tiny = 1e-300
    eps = 3e-14
    qab = a + b
    qap = a + 1.0
    qam = a - 1.0
    c = 1.0
    d = 1.0 - qab * x / qap
    if abs(d) < tiny:
        d = tiny
    d = 1.0 / d
    h = d
    for m in range(1, max_iter + 1):
        m2 = 2 * m
        aa = m * (b - m) * x / ((qam + m2) * (a + m2))
        d = 1.0 + aa * d
        if abs(d) < tiny:
            d = tiny
        c = 1.0 + aa / c
        if abs(c) < tiny:
            c = tiny
        d = 1.0 / d
        h *= d * c
        aa = -(a + m) * (qab + m) * x / ((a + m2) * (qap + m2))
        d = 1.0 + aa * d
        if abs(d) < tiny:
            d = tiny
        c = 1.0 + aa / c
        if abs(c) < tiny:
            c = tiny
        d = 1.0 / d
        delta = d * c
        h *= delta
        if abs(delta - 1.0) < eps:
            break
    return h


def regularized_incomplete_beta(x: float, a: float, b: float) -> float:
    if x <= 0.0:
        return 0.0
    if x >= 1.0:
        return 1.0
    log_front = (
        math.lgamma(a + b) - math.lgamma(a) - math.lgamma(b)
        + a * math.log(x) + b * math.log1p(-x)
    )
    front = math.exp(log_front)
    if x < (a + 1.0) / (a + b + 2.0):
        return front * _beta_continued_fraction(x, a, b) / a
    return 1.0 - front * _beta_continued_fraction(1.0 - x, b, a) / b


def student_t_two_tailed(t: float, df: float) -> float:
    if df <= 0:
        return 1.0
    if not is_finite(t):
        return 0.0
    return clamp(regularized_incomplete_beta(df / (df + t * t), df / 2.0, 0.5))


def pearson(x: Sequence[float], y: Sequence[float]) -> Tuple[float, float]:
    """
    Pearson correlation and its two-tailed p-value.

    Pairs are truncated to the shorter series and pairs with a non-finite
    member are dropped. Returns (0.0, 1.0) when fewer than three pairs remain
    or either side has zero variance.
    """

    pairs = [(a, b) for a, b in zip(x, y) if is_finite(a) and is_finite(b)]
    n = len(pairs)
    if n < 3:
        return 0.0, 1.0
    mx = math.fsum(a for a, _ in pairs) / n
    my = math.fsum(b for _, b in pairs) / n
    sxx = math.fsum((a - mx) ** 2 for a, _ in pairs)
    syy = math.fsum((b - my) ** 2 for _, b in pairs)
    if sxx <= 0 or syy <= 0:
        return 0.0, 1.0
    sxy = math.fsum((a - mx) * (b - my) for a, b in pairs)
    r = max(-1.0, min(1.0, sxy / math.sqrt(sxx * syy)))
    if abs(r) >= 1.0:
        return r, 0.0
    df = n - 2
    t = r * math.sqrt(df / (1.0 - r * r))
    return r, student_t_two_tailed(t, df)


def log_choose(n: int, k: int) -> float:
    if k < 0 or k > n:
        return -math.inf
    return math.lgamma(n + 1) - math.lgamma(k + 1) - math.lgamma(n - k + 1)


def fisher_exact_two_tailed(a: int, b: int, c: int, d: int) -> float:
    """
    Two-tailed Fisher exact p-value for the table [[a, b], [c, d]].

    Sums every table with the same margins whose probability does not exceed
    the observed table's probability.
    """

    a, b, c, d = (int(round(v)) for v in (a, b, c, d))
    if min(a, b, c, d) < 0:
        raise ValueError("contingency cells must be non-negative")
    row1 = a + b
    row2 = c + d
    col1 = a + c
    n = row1 + row2
    low = max(0, col1 - row2)
    high = min(row1, col1)
    if n == 0 or low == high:
        return 1.0

    mode = int((row1 + 1) * (col1 + 1) / (n + 2))
    mode = min(max(mode, low), high)
    weights = [0.0] * (high - low + 1)
    weights[mode - low] = 1.0
    for x in range(mode, high):
        weights[x + 1 - low] = (
            weights[x - low] * (row1 - x) * (col1 - x) / ((x + 1) * (row2 - col1 + x + 1))
        )
    for x in range(mode, low, -1):
        weights[x - 1 - low] = (
            weights[x - low] * x * (row2 - col1 + x) / ((row1 - x + 1) * (col1 - x + 1))
        )

    observed = weights[a - low] * (1.0 + 1e-7)
    total = math.fsum(weights)
    tail = math.fsum(w for w in weights if w <= observed)
    return clamp(tail / total)


def linear_fit(
    xs: Sequence[float], ys: Sequence[float], weights: Optional[Sequence[float]] = None
) -> Optional[Tuple[float, float]]:
    if weights is None:
        weights = [1.0] * len(xs)
    sw = math.fsum(weights)
    if sw <= 0:
        return None
    sx = math.fsum(w * x for w, x in zip(weights, xs))
    sy = math.fsum(w * y for w, y in zip(weights, ys))
    sxx = math.fsum(w * x * x for w, x in zip(weights, xs))
    sxy = math.fsum(w * x * y for w, x, y in zip(weights, xs, ys))
    denom = sw * sxx - sx * sx
    if abs(denom) < 1e-12:
        return None
    slope = (sw * sxy - sx * sy) / denom
    intercept = (sy - slope * sx) / sw
    return slope, intercept


def huber_regression(
    xs: Sequence[float],
    ys: Sequence[float],
    delta: float = 1.345,
    max_iter: int = 50,
    tol: float = 1e-9,
) -> Optional[Tuple[float, float]]:
    """
    Robust linear fit by iteratively reweighted least squares (Huber loss).

    Returns (slope, intercept), or None with fewer than three finite pairs or
    no spread in x.
    """

    pairs = [(x, y) for x, y in zip(xs, ys) if is_finite(x) and is_finite(y)]
    if len(pairs) < 3:
        return None
    px = [p[0] for p in pairs]
    py = [p[1] for p in pairs]
    fit = linear_fit(px, py)
    if fit is None:
        return None

    for _ in range(max_iter):
        slope, intercept = fit
        residuals = [y - (slope * x + intercept) for x, y in pairs]
        scale = mad_sigma(residuals)
        if scale <= 0:
            break
        cutoff = delta * scale
        weights = [1.0 if abs(r) <= cutoff else cutoff / abs(r) for r in residuals]
        new_fit = linear_fit(px, py, weights)
        if new_fit is None:
            break
        converged = abs(new_fit[0] - slope) < tol and abs(new_fit[1] - intercept) < tol
        fit = new_fit
        if converged:
            break
    return fit

"""
Detectors for statistically meaningful change.

Implements six independent, side-effect-free detectors:
- EWMA control chart (gradual trend)
- CUSUM chart (small sustained shift)
- Beta-binomial rate shift (Bayesian)
- Association (Fisher exact + log-odds + correlation)
- Burst (sliding-window clustering)
- Tau-U (intervention phase comparison)

Each detector returns None when evidence is insufficient (below minimum
support or no threshold breach) and a DetectorResult otherwise. Arguments no
data could satisfy (negative counts, a non-positive window) raise
DetectorError. Options left as None fall back to ``config.detectors``.
"""

from __future__ import annotations

import logging
import math
from typing import List, NamedTuple, Optional, Sequence, Tuple

from src.core.config import config
from src.core.exceptions import DetectorError

from .schema import (
    BurstEvent,
    ContingencyTable,
    CusumSide,
    DetectorResult,
    SourceRef,
    SourceType,
    TrendPoint,
)
from .statistics import (
    IQR_TO_SIGMA,
    clamp,
    fisher_exact_two_tailed,
    finite_values,
    is_finite,
    mean,
    median,
    normal_cdf,
    pearson,
    robust_sigma,
)
from .tuning import (
    clamp_k_factor,
    clamp_lambda,
    control_limit_multiplier,
    cusum_decision_interval,
    quality_adjustment,
)

logger = logging.getLogger(__name__)

SIGMA_FLOOR = 1e-6
LOG_ODDS_Z = 1.959964


class BetaPrior(NamedTuple):
    alpha: float
    beta: float


JEFFREYS_PRIOR = BetaPrior(0.5, 0.5)


def _reference(
    values: Sequence[float],
    min_points: int,
    center: Optional[float],
    sigma: Optional[float],
) -> Tuple[float, float, str]:
    """
    Reference location/scale for a control chart.

    Supplied baseline values win. Otherwise both are estimated robustly from
    the leading half of the series so a late shift does not contaminate its
    own reference.
    """

    calibration = values[: max(min_points // 2, len(values) // 2)]
    source = "baseline"
    if center is None or not is_finite(center):
        center = median(calibration)
        source = "series"
    if sigma is None or not is_finite(sigma) or sigma <= 0:
        sigma = robust_sigma(calibration, SIGMA_FLOOR)
        source = "series" if source == "series" else "mixed"
    return float(center), max(float(sigma), SIGMA_FLOOR), source


def detect_ewma_trend(
    series: Sequence[TrendPoint],
    *,
    lam: Optional[float] = None,
    baseline_median: Optional[float] = None,
    baseline_iqr: Optional[float] = None,
    min_points: Optional[int] = None,
    target_false_alerts_per_n: Optional[int] = None,
    baseline_quality_score: Optional[float] = None,
    recent_window: Optional[int] = None,
    sustained_required: Optional[int] = None,
    label: str = "Trend",
) -> Optional[DetectorResult]:
    """
    EWMA control chart with a sustained-breach rule.

    z_t = lam * x_t + (1 - lam) * z_{t-1}, seeded at the baseline median.
    Limits are center +/- z_crit * sigma0 * sqrt(lam / (2 - lam)); an alert
    needs `sustained_required` of the last `recent_window` EWMA values beyond
    the same limit. Non-finite points are skipped.
    """

    cfg = config.detectors.ewma
    lam = clamp_lambda(cfg.lam if lam is None else lam, default=cfg.lam)
    min_points = max(5, cfg.min_points if min_points is None else int(min_points))
    window = max(3, cfg.recent_window if recent_window is None else int(recent_window))
    required = cfg.sustained_required if sustained_required is None else int(sustained_required)
    required = min(max(2, required), window)
    target_n = target_false_alerts_per_n or config.detectors.target_false_alerts_per_n

    points = [p for p in series if is_finite(p.value)]
    if len(points) < min_points:
        return None
    values = [float(p.value) for p in points]

    sigma_hint = None
    if baseline_iqr is not None and is_finite(baseline_iqr) and baseline_iqr > 0:
        sigma_hint = baseline_iqr / IQR_TO_SIGMA
    center, sigma0, reference_source = _reference(values, min_points, baseline_median, sigma_hint)

    z_multiplier = control_limit_multiplier(target_n) * quality_adjustment(baseline_quality_score)
    sigma_ewma = sigma0 * math.sqrt(lam / (2.0 - lam))
    half_width = z_multiplier * sigma_ewma
    upper = center + half_width
    lower = center - half_width

    ewma = center
    history: List[float] = []
    for value in values:
        ewma = lam * value + (1.0 - lam) * ewma
        history.append(ewma)

    recent = history[-window:]
    upper_hits = sum(1 for v in recent if v > upper)
    lower_hits = sum(1 for v in recent if v < lower)
    if upper_hits >= lower_hits:
        direction, sustained = "increase", upper_hits
    else:
        direction, sustained = "decrease", lower_hits

    logger.debug(
        "EWMA evaluated: label=%s points=%d sustained=%d/%d limit=%.4f",
        label, len(values), sustained, window, half_width,
    )
    if sustained < required:
        return None

    z_score = (history[-1] - center) / sigma_ewma
    score = clamp(abs(z_score) / max(4.0, z_multiplier + 1.0))
    confidence = clamp(
        0.6 + (sustained - required) * 0.08 + min(0.2, abs(z_score) / 10.0),
        0.6,
        0.97,
    )

    details = {
        "lambda": lam,
        "baseline_median": center,
        "sigma0": sigma0,
        "sigma_ewma": sigma_ewma,
        "z_multiplier": z_multiplier,
        "upper_limit": upper,
        "lower_limit": lower,
        "sustained_points": sustained,
        "recent_window": window,
        "direction": direction,
        "z_score": z_score,
        "latest_value": values[-1],
        "ewma_latest": history[-1],
        "latest_timestamp": points[-1].timestamp,
        "reference_source": reference_source,
    }
    return DetectorResult(
        score=score,
        confidence=confidence,
        impact_hint=f"Sustained {direction} relative to baseline",
        sources=[SourceRef(type=SourceType.PATTERN_ENGINE, label=label, details=details)],
        threshold_applied=z_multiplier,
        analysis={"detector": "ewma", **details},
    )


def detect_cusum_shift(
    series: Sequence[TrendPoint],
    *,
    k_factor: Optional[float] = None,
    decision_interval: Optional[float] = None,
    min_points: Optional[int] = None,
    target_false_alerts_per_n: Optional[int] = None,
    baseline_quality_score: Optional[float] = None,
    sided: CusumSide = CusumSide.UPPER,
    baseline_mean: Optional[float] = None,
    baseline_sigma: Optional[float] = None,
    label: str = "Shift",
) -> Optional[DetectorResult]:
    """
    Tabular CUSUM.

    S+_t = max(0, S+_{t-1} + x_t - (mu + k)) and S-_t = max(0, S-_{t-1} +
    (mu - k) - x_t) with k = k_factor * sigma. Alerts when the monitored
    side's maximum exceeds h = H * sigma. `decision_interval` fixes H in sigma
    units; otherwise H is derived from k_factor and the false-alert target.
    """

    cfg = config.detectors.cusum
    k_factor = clamp_k_factor(cfg.k_factor if k_factor is None else k_factor, default=cfg.k_factor)
    min_points = max(5, cfg.min_points if min_points is None else int(min_points))
    target_n = target_false_alerts_per_n or config.detectors.target_false_alerts_per_n
    sided = CusumSide(sided)

    points = [p for p in series if is_finite(p.value)]
    if len(points) < min_points:
        return None
    values = [float(p.value) for p in points]
    if max(values) - min(values) <= 0:
        return None

    mu, sigma, reference_source = _reference(values, min_points, baseline_mean, baseline_sigma)

    if decision_interval is not None and is_finite(decision_interval) and decision_interval > 0:
        h_multiplier = max(1.0, float(decision_interval))
    else:
        h_multiplier = cusum_decision_interval(
            k_factor,
            target_n,
            sided=sided,
            baseline_quality_score=baseline_quality_score,
            arl_multiplier=cfg.arl_multiplier,
            h_min=cfg.h_min,
            h_max=cfg.h_max,
        )
    k = k_factor * sigma
    h = h_multiplier * sigma

    s_upper = s_lower = 0.0
    max_upper = max_lower = 0.0
    idx_upper = idx_lower = -1
    for i, value in enumerate(values):
        s_upper = max(0.0, s_upper + value - (mu + k))
        s_lower = max(0.0, s_lower + (mu - k) - value)
        if s_upper > max_upper:
            max_upper, idx_upper = s_upper, i
        if s_lower > max_lower:
            max_lower, idx_lower = s_lower, i

    if sided == CusumSide.UPPER:
        side, max_cusum, index = "upper", max_upper, idx_upper
    elif sided == CusumSide.LOWER:
        side, max_cusum, index = "lower", max_lower, idx_lower
    elif max_upper >= max_lower:
        side, max_cusum, index = "upper", max_upper, idx_upper
    else:
        side, max_cusum, index = "lower", max_lower, idx_lower

    logger.debug(
        "CUSUM evaluated: label=%s points=%d side=%s max=%.4f h=%.4f",
        label, len(values), side, max_cusum, h,
    )
    if index < 0 or max_cusum <= h:
        return None

    ratio = max_cusum / h
    score = clamp((ratio - 1.0) / 2.0)
    confidence = clamp(0.65 + math.log1p(ratio - 1.0) * 0.2, 0.65, 0.98)

    details = {
        "baseline_mean": mu,
        "sigma": sigma,
        "k_factor": k_factor,
        "reference_value": k,
        "decision_interval": h,
        "decision_interval_multiplier": h_multiplier,
        "max_cusum": max_cusum,
        "exceed_index": index,
        "exceed_timestamp": points[index].timestamp,
        "exceed_value": values[index],
        "threshold_ratio": ratio,
        "side": side,
        "latest_timestamp": points[-1].timestamp,
        "reference_source": reference_source,
    }
    return DetectorResult(
        score=score,
        confidence=confidence,
        impact_hint="Sustained small shift detected via CUSUM",
        sources=[SourceRef(type=SourceType.PATTERN_ENGINE, label=label, details=details)],
        threshold_applied=h_multiplier,
        analysis={"detector": "cusum", **details},
    )


def _normalize_prior(prior: Optional[Tuple[float, float]]) -> BetaPrior:
    if prior is None:
        return JEFFREYS_PRIOR
    alpha, beta = prior
    alpha = alpha if is_finite(alpha) and alpha > 0 else JEFFREYS_PRIOR.alpha
    beta = beta if is_finite(beta) and beta > 0 else JEFFREYS_PRIOR.beta
    return BetaPrior(float(alpha), float(beta))


def detect_beta_rate_shift(
    successes: float,
    trials: float,
    *,
    baseline_prior: Optional[Tuple[float, float]] = None,
    delta: Optional[float] = None,
    min_support: Optional[int] = None,
    probability_threshold: Optional[float] = None,
    label: str = "Rate",
) -> Optional[DetectorResult]:
    """
    Bayesian test for a rate increase.

    Posterior Beta(alpha + s, beta + n - s); P(rate > baseline + delta) uses
    the normal approximation to the posterior. Non-positive prior parameters
    fall back to the Jeffreys prior Beta(0.5, 0.5).
    """

    cfg = config.detectors.beta_rate
    min_support = max(1, cfg.min_support if min_support is None else int(min_support))
    delta = clamp(cfg.delta if delta is None else delta, 0.0, 0.5)
    threshold_probability = cfg.probability_threshold if probability_threshold is None else probability_threshold

    if not is_finite(trials) or trials <= 0 or trials < min_support:
        return None
    trials = float(trials)
    successes = clamp(float(successes) if is_finite(successes) else 0.0, 0.0, trials)

    prior = _normalize_prior(baseline_prior)
    baseline_rate = prior.alpha / (prior.alpha + prior.beta)
    post_alpha = prior.alpha + successes
    post_beta = prior.beta + trials - successes
    total = post_alpha + post_beta
    post_mean = post_alpha / total
    post_sd = math.sqrt(post_alpha * post_beta / (total * total * (total + 1.0)))

    rate_threshold = clamp(baseline_rate + delta, 0.0, 0.9999)
    if post_sd > 0:
        probability = 1.0 - normal_cdf((rate_threshold - post_mean) / post_sd)
    else:
        probability = 1.0 if post_mean > rate_threshold else 0.0

    logger.debug(
        "Beta-rate evaluated: label=%s trials=%d successes=%d p=%.4f",
        label, int(trials), int(successes), probability,
    )
    if probability < threshold_probability:
        return None

    effect = max(0.0, post_mean - baseline_rate)
    score = clamp(effect / max(delta, 1e-3))
    confidence = clamp(probability, threshold_probability, 0.99)
    credible_interval = (
        clamp(post_mean - 1.96 * post_sd),
        clamp(post_mean + 1.96 * post_sd),
    )

    details = {
        "successes": int(successes),
        "trials": int(trials),
        "observed_rate": successes / trials,
        "baseline_rate": baseline_rate,
        "prior_alpha": prior.alpha,
        "prior_beta": prior.beta,
        "posterior_alpha": post_alpha,
        "posterior_beta": post_beta,
        "posterior_mean": post_mean,
        "credible_interval": list(credible_interval),
        "delta": delta,
        "rate_threshold": rate_threshold,
        "probability_exceeds": probability,
    }
    return DetectorResult(
        score=score,
        confidence=confidence,
        impact_hint=f"Rate increased by {effect * 100:.1f} pts over baseline",
        sources=[SourceRef(type=SourceType.PATTERN_ENGINE, label=label, details=details)],
        threshold_applied=rate_threshold,
        analysis={"detector": "beta_rate", **details},
    )


def detect_association(
    table: ContingencyTable,
    *,
    series_x: Optional[Sequence[float]] = None,
    series_y: Optional[Sequence[float]] = None,
    min_support: Optional[int] = None,
    label: str = "Association",
    context_factor: Optional[str] = None,
) -> Optional[DetectorResult]:
    """
    Association between an exposure and an outcome.

    Reports only when the 95% log-odds confidence interval excludes zero.
    Zero cells get a 0.5 continuity correction for the log-odds; the Fisher
    exact p-value uses the raw counts. Paired series (truncated to their
    common length, at least five points) add a Pearson correlation.
    """

    min_support = max(1, config.detectors.association.min_support if min_support is None else int(min_support))
    cells = (table.a, table.b, table.c, table.d)
    if any(not is_finite(v) or v < 0 for v in cells):
        raise DetectorError(f"Invalid contingency cells: {table.as_dict()}")
    total = sum(cells)
    if total < min_support:
        return None

    ca, cb, cc, cd = (float(v) if v > 0 else 0.5 for v in cells)
    log_odds = math.log((ca * cd) / (cb * cc))
    standard_error = math.sqrt(1.0 / ca + 1.0 / cb + 1.0 / cc + 1.0 / cd)
    ci_low = log_odds - LOG_ODDS_Z * standard_error
    ci_high = log_odds + LOG_ODDS_Z * standard_error

    logger.debug(
        "Association evaluated: label=%s total=%d log_or=%.4f ci=(%.4f, %.4f)",
        label, total, log_odds, ci_low, ci_high,
    )
    if ci_low <= 0.0 <= ci_high:
        return None

    p_exact = fisher_exact_two_tailed(*cells)

    correlation: Optional[float] = None
    correlation_p: Optional[float] = None
    if series_x is not None and series_y is not None:
        n = min(len(series_x), len(series_y))
        if n >= 5:
            correlation, correlation_p = pearson(series_x[:n], series_y[:n])

    evidence = [1.0 - p_exact, 1.0 - 1.0 / (1.0 + abs(log_odds))]
    if correlation_p is not None:
        evidence.append(1.0 - correlation_p)
    confidence = clamp(max(evidence), 0.7, 0.99)
    if correlation is not None:
        score = clamp(min(abs(correlation), abs(log_odds) / 2.0))
    else:
        score = clamp(abs(log_odds) / 2.0)

    details = {
        "contingency": table.as_dict(),
        "odds_ratio": math.exp(log_odds),
        "log_odds": log_odds,
        "log_odds_ci": [ci_low, ci_high],
        "direction": "positive" if log_odds > 0 else "negative",
        "correlation": correlation,
        "correlation_p_value": correlation_p,
        "p_value_exact": p_exact,
        "context": context_factor,
        "support": total,
    }
    return DetectorResult(
        score=score,
        confidence=confidence,
        impact_hint=f"{label}: odds ratio {math.exp(log_odds):.2f}",
        sources=[SourceRef(type=SourceType.PATTERN_ENGINE, label=label, details=details)],
        threshold_applied=0.0,
        analysis={"detector": "association", **details},
    )


def detect_burst(
    events: Sequence[BurstEvent],
    *,
    window_minutes: Optional[float] = None,
    min_events: Optional[int] = None,
    min_density_ratio: Optional[float] = None,
    label: str = "Burst episode",
) -> Optional[DetectorResult]:
    """
    Densest sliding window of `window_minutes`.

    Alerts when the densest window holds at least `min_events` events and at
    least `min_density_ratio` times the count a uniform background over the
    observed span would put in one window (the span is taken as at least four
    windows).
    """

    cfg = config.detectors.burst
    window_minutes = float(cfg.window_minutes if window_minutes is None else window_minutes)
    min_events = max(3, cfg.min_events if min_events is None else int(min_events))
    min_density_ratio = cfg.min_density_ratio if min_density_ratio is None else float(min_density_ratio)
    if not is_finite(window_minutes) or window_minutes <= 0:
        raise DetectorError(f"Burst window must be positive, got {window_minutes}")

    valid = sorted(
        (e for e in events if is_finite(e.timestamp) and is_finite(e.value)),
        key=lambda e: e.timestamp,
    )
    n = len(valid)
    if n < min_events:
        return None

    window_ms = window_minutes * 60_000.0
    best_count = 0
    best_start = best_end = 0
    start = 0
    for end in range(n):
        while valid[end].timestamp - valid[start].timestamp > window_ms:
            start += 1
        count = end - start + 1
        if count > best_count:
            best_count, best_start, best_end = count, start, end

    if best_count < min_events:
        return None

    span_ms = valid[-1].timestamp - valid[0].timestamp
    expected = n * window_ms / max(span_ms, 4.0 * window_ms)
    density_ratio = best_count / max(expected, 1e-9)
    logger.debug(
        "Burst evaluated: label=%s events=%d best=%d density_ratio=%.3f",
        label, n, best_count, density_ratio,
    )
    if density_ratio < min_density_ratio:
        return None

    cluster = valid[best_start:best_end + 1]
    start_ts = cluster[0].timestamp
    end_ts = cluster[-1].timestamp
    duration_minutes = (end_ts - start_ts) / 60_000.0
    intensities = [e.value for e in cluster]
    mean_intensity = math.fsum(intensities) / len(intensities)

    paired = [(e.value, e.paired_value) for e in cluster if is_finite(e.paired_value)]
    cross_correlation = 0.0
    if len(paired) >= 3:
        cross_correlation, _ = pearson([p[0] for p in paired], [p[1] for p in paired])

    frequency_ratio = clamp(best_count / (2.0 * min_events))
    density_score = clamp(density_ratio / (2.0 * max(min_density_ratio, 1.0)))
    score = clamp(0.5 * frequency_ratio + 0.5 * density_score)
    confidence = clamp(
        0.6 + (best_count - min_events) * 0.08 + abs(cross_correlation) * 0.2 + density_score * 0.12,
        0.6,
        0.95,
    )

    details = {
        "window_minutes": window_minutes,
        "event_count": best_count,
        "duration_minutes": duration_minutes,
        "density_per_minute": best_count / max(duration_minutes, 1e-3),
        "density_ratio": density_ratio,
        "mean_intensity": mean_intensity,
        "peak_intensity": max(intensities),
        "start_timestamp": start_ts,
        "end_timestamp": end_ts,
        "cross_correlation": cross_correlation,
        "latest_timestamp": valid[-1].timestamp,
    }
    return DetectorResult(
        score=score,
        confidence=confidence,
        impact_hint="Clustered high-intensity episode detected",
        sources=[SourceRef(type=SourceType.PATTERN_ENGINE, label=label, details=details)],
        threshold_applied=float(min_events),
        analysis={"detector": "burst", **details},
    )


TAU_U_HEADLINES = {
    "improving": "Intervention shows improving trend",
    "worsening": "Outcome trending down",
    "no_change": "Outcome stable",
}
TAU_U_RECOMMENDATIONS = {
    "improving": "Continue intervention and monitor for sustained gains.",
    "worsening": "Review fidelity of implementation and consider alternative strategies.",
    "no_change": "Maintain current plan and gather additional data next week.",
}


def _sign(value: float) -> int:
    return (value > 0) - (value < 0)


def _phase_summary(values: List[float]) -> dict:
    return {
        "count": len(values),
        "mean": mean(values),
        "median": median(values),
    }


def detect_tau_u(
    phase_a: Sequence[float],
    phase_b: Sequence[float],
    *,
    min_phase_points: Optional[int] = None,
    outcome_effect: Optional[float] = None,
    outcome_p_value: Optional[float] = None,
    label: str = "Tau-U intervention analysis",
    latest_timestamp: Optional[int] = None,
) -> Optional[DetectorResult]:
    """
    Tau-U comparison of a baseline phase (A) with an intervention phase (B).

    S counts B-over-A pairs minus A-over-B pairs; the Kendall S of phase A
    against time is subtracted to correct for baseline trend. The effect size
    is the corrected S over nA * nB and the two-tailed p-value comes from the
    normal approximation with variance nA * nB * (nA + nB + 1) / 3.

    Unlike the change detectors this reports whenever both phases have
    enough finite values; callers decide which effect sizes matter.
    """

    cfg = config.detectors.tau_u
    min_phase_points = max(2, cfg.min_phase_points if min_phase_points is None else int(min_phase_points))
    outcome_effect = cfg.outcome_effect if outcome_effect is None else float(outcome_effect)
    outcome_p_value = cfg.outcome_p_value if outcome_p_value is None else float(outcome_p_value)

    baseline = finite_values(phase_a)
    treatment = finite_values(phase_b)
    n_a, n_b = len(baseline), len(treatment)
    if n_a < min_phase_points or n_b < min_phase_points:
        return None

    comparisons = n_a * n_b
    s = 0
    ties = 0
    for a in baseline:
        for b in treatment:
            sign = _sign(b - a)
            s += sign
            if sign == 0:
                ties += 1

    trend = sum(
        _sign(baseline[j] - baseline[i]) for i in range(n_a) for j in range(i + 1, n_a)
    )
    adjusted = s - trend
    effect = adjusted / comparisons
    variance = comparisons * (n_a + n_b + 1) / 3.0
    z_score = adjusted / math.sqrt(variance)
    p_value = clamp(2.0 * (1.0 - normal_cdf(abs(z_score))))
    improvement_probability = (s + comparisons) / (2.0 * comparisons)

    if effect >= outcome_effect and p_value <= outcome_p_value:
        outcome = "improving"
    elif effect <= -outcome_effect and p_value <= outcome_p_value:
        outcome = "worsening"
    else:
        outcome = "no_change"

    recommendations = [TAU_U_RECOMMENDATIONS[outcome]]
    if p_value > 0.05:
        recommendations.append("Collect additional data points to increase confidence.")

    logger.debug(
        "Tau-U evaluated: label=%s n_a=%d n_b=%d effect=%.4f p=%.4f outcome=%s",
        label, n_a, n_b, effect, p_value, outcome,
    )

    details = {
        "outcome": outcome,
        "effect_size": effect,
        "p_value": p_value,
        "z_score": z_score,
        "comparisons": comparisons,
        "trend_adjustment": trend,
        "ties": ties,
        "improvement_probability": improvement_probability,
        "phase_a": _phase_summary(baseline),
        "phase_b": _phase_summary(treatment),
        "recommendations": recommendations,
        "summary": (
            f"Tau-U effect size {effect:.2f} with p ~ {p_value:.3f}. "
            f"Improvement probability {improvement_probability * 100:.1f}%."
        ),
    }
    analysis = {"detector": "tau_u", **details}
    if latest_timestamp is not None:
        analysis["latest_timestamp"] = latest_timestamp
    return DetectorResult(
        score=clamp(abs(effect)),
        confidence=max(0.05, 1.0 - p_value),
        impact_hint=TAU_U_HEADLINES[outcome],
        sources=[SourceRef(type=SourceType.PATTERN_ENGINE, label=label, details=details)],
        threshold_applied=outcome_effect,
        analysis=analysis,
    )

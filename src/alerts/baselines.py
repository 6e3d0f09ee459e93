"""
Baseline estimation for per-student behavioral metrics.

Computes robust location/scale per metric and look-back window (median and
MAD-derived sigma, resistant to the outliers common in hand-logged data),
Beta priors for sensory rates, environmental summaries, and an overall
reliability score. Pure compute over supplied entries: persistence and caching
belong to the caller.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from src.core.config import BaselineConfig, config
from src.data.schema import EmotionEntry, SensoryEntry, TrackingEntry
from src.data.series import (
    MS_PER_DAY,
    collect_emotions,
    collect_sensory,
    from_epoch_ms,
    normalize_timestamp,
    to_epoch_ms,
)

from .schema import (
    BaselineQuality,
    DataSufficiency,
    EnvironmentalBaseline,
    MetricBaseline,
    MetricKey,
    SensoryBaseline,
    StudentBaseline,
    TrendSummary,
)
from .statistics import (
    clamp,
    finite_values,
    huber_regression,
    iqr,
    is_finite,
    median,
    pearson,
    robust_sigma,
    robust_z_scores,
)

logger = logging.getLogger(__name__)

ENVIRONMENT_FACTORS = ("noise_level", "temperature", "humidity", "student_count")
MEDIAN_SE_FACTOR = 1.2533
CI_Z = 1.96
MIN_TREND_POINTS = 5


class BaselineService:
    """
    Builds StudentBaseline snapshots from raw entries.

    Notes:
    - Statistics are computed for every configured window (default 7/14/30 days).
    - Degenerate input (single point, all-equal values) yields sigma at the
      configured floor rather than an error.
    - Data is sufficient when either the session or the unique-day minimum is met.
    """

    def __init__(self, baseline_config: Optional[BaselineConfig] = None):
        self.config = baseline_config or config.baselines

    def compute_baseline(
        self,
        student_id: str,
        emotions: Sequence[EmotionEntry] = (),
        sensory: Sequence[SensoryEntry] = (),
        tracking: Sequence[TrackingEntry] = (),
        now: Optional[datetime] = None,
    ) -> StudentBaseline:
        emotion_rows = collect_emotions(emotions, tracking)
        sensory_rows = collect_sensory(sensory, tracking)
        session_rows = self._sessions(tracking)

        stamps = [ts for ts, _ in emotion_rows] + [ts for ts, _ in sensory_rows] + [ts for ts, _ in session_rows]
        if now is not None:
            now_ms = to_epoch_ms(now)
        elif stamps:
            now_ms = max(stamps)
        else:
            now_ms = to_epoch_ms(datetime.now(timezone.utc))

        windows = sorted({int(w) for w in self.config.windows if w > 0})
        emotion_stats: Dict[str, MetricBaseline] = {}
        sensory_stats: Dict[str, SensoryBaseline] = {}
        environment_stats: Dict[str, EnvironmentalBaseline] = {}
        insufficient: List[str] = []
        kept_total = 0
        removed_total = 0

        for window in windows:
            cutoff = now_ms - window * MS_PER_DAY

            grouped: Dict[str, List[Tuple[int, float]]] = defaultdict(list)
            for ts, entry in emotion_rows:
                if cutoff <= ts <= now_ms and is_finite(entry.intensity):
                    name = (entry.emotion or "unknown").strip().lower() or "unknown"
                    grouped[name].append((ts, float(entry.intensity)))
            for name, rows in grouped.items():
                key = MetricKey(name, window)
                stats = self._emotion_stats(key, rows, cutoff)
                emotion_stats[str(key)] = stats
                if stats.count < 3:
                    insufficient.append(str(key))
                if window == windows[-1]:
                    kept_total += stats.count
                    removed_total += stats.outliers_removed

            behaviors: Dict[str, List[float]] = defaultdict(list)
            for ts, entry in sensory_rows:
                if cutoff <= ts <= now_ms and is_finite(entry.intensity):
                    behaviors[entry.behavior].append(float(entry.intensity))
            for behavior, values in behaviors.items():
                key = MetricKey(behavior, window)
                sensory_stats[str(key)] = self._sensory_prior(key, values)

            sessions = [(ts, s) for ts, s in session_rows if cutoff <= ts <= now_ms]
            for factor in ENVIRONMENT_FACTORS:
                key = MetricKey(factor, window)
                stats = self._environment_stats(key, sessions)
                if stats is not None:
                    environment_stats[str(key)] = stats

        quality = self._quality(
            emotion_rows,
            sensory_rows,
            session_rows,
            emotion_stats,
            windows,
            now_ms,
            kept_total,
            removed_total,
            insufficient,
        )
        logger.debug(
            "Baseline computed: student=%s emotion_keys=%d sensory_keys=%d reliability=%.3f",
            student_id, len(emotion_stats), len(sensory_stats), quality.reliability_score,
        )
        return StudentBaseline(
            student_id=student_id,
            computed_at=from_epoch_ms(now_ms),
            windows=windows,
            emotion=emotion_stats,
            sensory=sensory_stats,
            environment=environment_stats,
            quality=quality,
        )

    def _sessions(self, tracking: Sequence[TrackingEntry]) -> List[Tuple[int, TrackingEntry]]:
        rows = []
        for session in tracking:
            ts = normalize_timestamp(session.timestamp)
            if ts is not None:
                rows.append((ts, session))
        rows.sort(key=lambda row: row[0])
        return rows

    def _emotion_stats(
        self, key: MetricKey, rows: List[Tuple[int, float]], cutoff: int
    ) -> MetricBaseline:
        values = [v for _, v in rows]
        scores = robust_z_scores(values)
        kept = [row for row, z in zip(rows, scores) if abs(z) <= self.config.outlier_z]
        if len(kept) < 3:
            kept = rows
        kept_values = [v for _, v in kept]

        center = median(kept_values)
        sigma = robust_sigma(kept_values, self.config.sigma_floor)
        half_width = CI_Z * MEDIAN_SE_FACTOR * sigma / math.sqrt(len(kept_values))

        trend = None
        if len(kept) >= MIN_TREND_POINTS:
            fit = huber_regression([(ts - cutoff) / MS_PER_DAY for ts, _ in kept], kept_values)
            if fit is not None:
                slope = fit[0]
                significant = abs(slope) * key.window_days >= sigma
                if not significant:
                    direction = "stable"
                else:
                    direction = "increasing" if slope > 0 else "decreasing"
                trend = TrendSummary(slope_per_day=slope, direction=direction, significant=significant)

        return MetricBaseline(
            metric=key.metric,
            window_days=key.window_days,
            median=center,
            iqr=iqr(kept_values),
            sigma=sigma,
            count=len(kept_values),
            confidence_interval=(center - half_width, center + half_width),
            trend=trend,
            outliers_removed=len(rows) - len(kept),
        )

    def _sensory_prior(self, key: MetricKey, values: List[float]) -> SensoryBaseline:
        trials = len(values)
        successes = sum(1 for v in values if v >= self.config.high_intensity)
        alpha = 0.5 + successes
        beta = 0.5 + trials - successes
        return SensoryBaseline(
            behavior=key.metric,
            window_days=key.window_days,
            rate=alpha / (alpha + beta),
            alpha=alpha,
            beta=beta,
            trials=trials,
            successes=successes,
        )

    def _environment_stats(
        self, key: MetricKey, sessions: List[Tuple[int, TrackingEntry]]
    ) -> Optional[EnvironmentalBaseline]:
        values: List[float] = []
        outcomes: List[float] = []
        for _, session in sessions:
            value = session.environmental_value(key.metric)
            if not is_finite(value):
                continue
            values.append(float(value))
            intensities = finite_values(e.intensity for e in session.emotions)
            outcomes.append(max(intensities) if intensities else math.nan)
        if not values:
            return None

        correlation = None
        paired = [(v, o) for v, o in zip(values, outcomes) if is_finite(o)]
        if len(paired) >= 5:
            correlation, _ = pearson([p[0] for p in paired], [p[1] for p in paired])

        return EnvironmentalBaseline(
            factor=key.metric,
            window_days=key.window_days,
            median=median(values),
            iqr=iqr(values),
            count=len(values),
            correlation_with_emotion=correlation,
        )

    def _quality(
        self,
        emotion_rows,
        sensory_rows,
        session_rows,
        emotion_stats: Dict[str, MetricBaseline],
        windows: List[int],
        now_ms: int,
        kept_total: int,
        removed_total: int,
        insufficient: List[str],
    ) -> BaselineQuality:
        stamps = [ts for ts, _ in emotion_rows] + [ts for ts, _ in sensory_rows] + [ts for ts, _ in session_rows]
        total_sessions = len(session_rows) if session_rows else len(set(stamps))
        unique_days = len({ts // MS_PER_DAY for ts in stamps})

        is_sufficient = (
            total_sessions >= self.config.min_sessions
            or unique_days >= self.config.min_unique_days
        )
        recommendations = []
        if not is_sufficient:
            recommendations.append(
                f"Collect at least {self.config.min_sessions} sessions "
                f"or {self.config.min_unique_days} days of data"
            )

        sample_score = 0.5 * min(1.0, total_sessions / self.config.min_sessions) + 0.5 * min(
            1.0, unique_days / self.config.min_unique_days
        )

        if stamps:
            days_since_last = max(0.0, (now_ms - max(stamps)) / MS_PER_DAY)
            recency_score = math.exp(-days_since_last / self.config.recency_scale_days)
        else:
            recency_score = 0.0

        raw = [e.intensity for _, e in emotion_rows] + [e.intensity for _, e in sensory_rows]
        completeness = len(finite_values(raw)) / len(raw) if raw else 0.0

        drifts = []
        longest = windows[-1] if windows else 0
        for stats in emotion_stats.values():
            if stats.window_days != longest or stats.trend is None:
                continue
            drift = abs(stats.trend.slope_per_day) * longest / max(4.0 * stats.sigma, self.config.sigma_floor)
            drifts.append(clamp(drift))
        stability = 1.0 - (sum(drifts) / len(drifts) if drifts else 0.0)

        considered = kept_total + removed_total
        outlier_rate = removed_total / considered if considered else 0.0

        reliability = (
            0.4 * sample_score + 0.2 * recency_score + 0.2 * completeness + 0.2 * stability
        ) * (1.0 - 0.5 * outlier_rate)
        if not is_sufficient:
            reliability *= 0.5

        return BaselineQuality(
            reliability_score=clamp(reliability),
            sample_score=clamp(sample_score),
            recency_score=clamp(recency_score),
            completeness_score=clamp(completeness),
            stability_score=clamp(stability),
            outlier_rate=clamp(outlier_rate),
            data_sufficiency=DataSufficiency(
                is_sufficient=is_sufficient,
                total_sessions=total_sessions,
                unique_days=unique_days,
                recommendations=recommendations,
            ),
            insufficient_keys=sorted(set(insufficient)),
        )
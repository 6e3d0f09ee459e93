"""
Alert detection engine.

Consumes raw per-student entries, builds each detector's input, runs every
applicable detector in isolation, and assembles surviving results into scored
AlertEvent objects deduplicated within the hour. Interventions are reviewed
with a Tau-U comparison of their baseline and intervention phases.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from src.core.config import DetectorConfig, EngineConfig, config
from src.data.schema import EmotionEntry, Goal, Intervention, SensoryEntry, TrackingEntry, TrendPoint
from src.data.series import (
    build_association_dataset,
    build_burst_events,
    build_phase_data,
    build_emotion_series,
    build_sensory_aggregates,
    from_epoch_ms,
    to_epoch_ms,
)
from src.governance.policies import AlertPolicies
from src.governance.schema import AlertSettings
from src.governance.settings import validate_alert_settings

from .detectors import (
    detect_association,
    detect_beta_rate_shift,
    detect_burst,
    detect_cusum_shift,
    detect_ewma_trend,
    detect_tau_u,
)
from .schema import AlertEvent, AlertKind, CusumSide, DetectorResult, StudentBaseline
from .scoring import SeverityMapper, aggregate_score, rank_sources, recency_score
from .statistics import IQR_TO_SIGMA, clamp

logger = logging.getLogger(__name__)

REVIEWED_INTERVENTION_STATUSES = ("active", "completed")


class DetectionInput(BaseModel):
    """
    Raw streams for one student.

    Fields:
    - emotions/sensory: top-level entries (take precedence over the entries
      nested in tracking sessions)
    - tracking: sessions carrying environmental data and nested entries
    - interventions/goals: intervention plans and the goals they target,
      compared before and after each implementation date
    - baseline: optional precomputed baseline; detectors estimate their own
      reference from the series when absent
    - settings: alert settings (sensitivity per kind)
    - now: evaluation time for recency scoring (default: current time)
    - series_limit: most recent points kept per series
    """

    student_id: str
    emotions: List[EmotionEntry] = Field(default_factory=list)
    sensory: List[SensoryEntry] = Field(default_factory=list)
    tracking: List[TrackingEntry] = Field(default_factory=list)
    interventions: List[Intervention] = Field(default_factory=list)
    goals: List[Goal] = Field(default_factory=list)
    baseline: Optional[StudentBaseline] = None
    settings: Optional[AlertSettings] = None
    now: Optional[datetime] = None
    series_limit: Optional[int] = None


def safe_detect(name: str, detector: Callable[..., Optional[DetectorResult]], *args: Any, **kwargs: Any) -> Optional[DetectorResult]:
    """
    Run one detector, treating any exception as "no result".
    """

    try:
        return detector(*args, **kwargs)
    except Exception as exc:
        logger.warning("Detector %s failed: %s", name, exc, exc_info=True)
        return None


@dataclass
class AlertCandidate:
    """
    Detector results grouped under one (kind, context) before scoring.
    """

    kind: AlertKind
    context_key: str
    label: str
    tier: float
    latest_ms: int
    results: List[DetectorResult] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


def _is_decrease(result: DetectorResult) -> bool:
    return result.analysis.get("direction") == "decrease" or result.analysis.get("side") == "lower"


def _latest_ms(results: List[DetectorResult], fallback: int) -> int:
    stamps = [r.analysis.get("latest_timestamp") for r in results]
    stamps = [int(s) for s in stamps if isinstance(s, (int, float))]
    return max(stamps) if stamps else fallback


class AlertDetectionEngine:
    """
    Orchestrates detectors for one student at a time.

    Notes:
    - Stateless apart from the policies used for batch deduplication; safe to
      share across threads.
    - A failing detector never aborts the others.
    - run_detection never raises; an unexpected failure yields no alerts.
    """

    def __init__(
        self,
        policies: Optional[AlertPolicies] = None,
        engine_config: Optional[EngineConfig] = None,
        detector_config: Optional[DetectorConfig] = None,
    ):
        self.policies = policies or AlertPolicies()
        self.engine = engine_config or config.engine
        self.detectors = detector_config or config.detectors
        self._severity_mapper = SeverityMapper(self.engine)

    def series_limit(self, requested: Optional[int]) -> int:
        limit = self.engine.series_limit if requested is None else int(requested)
        return int(clamp(limit, self.engine.series_limit_min, self.engine.series_limit_max))

    def run_detection(self, request: DetectionInput) -> List[AlertEvent]:
        try:
            return self._run(request)
        except Exception:
            logger.exception("Detection failed for student %s", request.student_id)
            return []

    def _run(self, request: DetectionInput) -> List[AlertEvent]:
        now = request.now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        limit = self.series_limit(request.series_limit)
        settings = validate_alert_settings(request.settings).normalized

        candidates: List[AlertCandidate] = []
        candidates.extend(self._emotion_candidates(request, limit))
        candidates.extend(self._sensory_candidates(request, limit))
        candidates.extend(self._association_candidates(request, limit))
        candidates.extend(self._burst_candidates(request, limit))
        candidates.extend(self._intervention_candidates(request))

        alerts = []
        for candidate in candidates:
            alert = self._build_alert(request.student_id, candidate, settings, now)
            if alert is not None:
                alerts.append(alert)

        deduplicated = self.policies.deduplicate_alerts(alerts)
        surfaced = [a.model_copy(update={"governance": None}) for a in deduplicated]
        surfaced.sort(key=lambda a: (a.severity.rank, a.confidence), reverse=True)
        logger.info(
            "Detection complete: student=%s candidates=%d alerts=%d",
            request.student_id, len(candidates), len(surfaced),
        )
        return surfaced

    def _emotion_candidates(self, request: DetectionInput, limit: int) -> List[AlertCandidate]:
        baseline = request.baseline
        quality = baseline.quality.reliability_score if baseline is not None else None
        tiers = self.engine.detector_tiers
        out = []

        for name, series in build_emotion_series(request.emotions, request.tracking, limit).items():
            stats = baseline.emotion_stats(name) if baseline is not None else None
            label = name.replace("_", " ").capitalize()
            ewma = safe_detect(
                "ewma",
                detect_ewma_trend,
                series,
                lam=self.detectors.ewma.lam,
                baseline_median=stats.median if stats else None,
                baseline_iqr=stats.sigma * IQR_TO_SIGMA if stats else None,
                min_points=self.detectors.ewma.min_points,
                target_false_alerts_per_n=self.detectors.target_false_alerts_per_n,
                baseline_quality_score=quality,
                label=f"{label} trend",
            )
            cusum = safe_detect(
                "cusum",
                detect_cusum_shift,
                series,
                k_factor=self.detectors.cusum.k_factor,
                min_points=self.detectors.cusum.min_points,
                target_false_alerts_per_n=self.detectors.target_false_alerts_per_n,
                baseline_quality_score=quality,
                sided=CusumSide.UPPER,
                baseline_mean=stats.median if stats else None,
                baseline_sigma=stats.sigma if stats else None,
                label=f"{label} shift",
            )
            results = [r for r in (ewma, cusum) if r is not None]
            if not results:
                continue

            kind = AlertKind.PATTERN_DETECTED if all(_is_decrease(r) for r in results) else AlertKind.BEHAVIOR_SPIKE
            tier = tiers.get("ewma_cusum", 1.0) if len(results) == 2 else tiers.get("single_trend", 0.8)
            out.append(
                AlertCandidate(
                    kind=kind,
                    context_key=f"emotion:{name}",
                    label=f"{label} intensity change",
                    tier=tier,
                    latest_ms=_latest_ms(results, _last_point_ms(series)),
                    results=results,
                )
            )
        return out

    def _sensory_candidates(self, request: DetectionInput, limit: int) -> List[AlertCandidate]:
        cfg = self.detectors.beta_rate
        aggregates = build_sensory_aggregates(
            request.sensory, request.tracking, high_intensity=cfg.high_intensity, series_limit=limit
        )
        out = []
        for behavior, aggregate in aggregates.items():
            prior = request.baseline.sensory_prior(behavior) if request.baseline is not None else None
            result = safe_detect(
                "beta_rate",
                detect_beta_rate_shift,
                aggregate.successes,
                aggregate.trials,
                baseline_prior=(prior.alpha, prior.beta) if prior else (1.0, 1.0),
                delta=cfg.delta,
                min_support=cfg.min_support,
                probability_threshold=cfg.probability_threshold,
                label=f"{behavior} high-intensity rate",
            )
            if result is None:
                continue
            out.append(
                AlertCandidate(
                    kind=AlertKind.BEHAVIOR_SPIKE,
                    context_key=f"sensory:{behavior}",
                    label=f"Sensory {behavior} rate increase",
                    tier=self.engine.detector_tiers.get("beta_rate", 0.9),
                    latest_ms=aggregate.last_timestamp,
                    results=[result],
                )
            )
        return out

    def _association_candidates(self, request: DetectionInput, limit: int) -> List[AlertCandidate]:
        cfg = self.detectors.association
        dataset = build_association_dataset(
            request.tracking,
            high_noise=cfg.high_noise,
            high_emotion=cfg.high_emotion,
            min_support=cfg.min_support,
            series_limit=limit,
        )
        if dataset is None:
            return []
        result = safe_detect(
            "association",
            detect_association,
            dataset.table,
            series_x=dataset.series_x,
            series_y=dataset.series_y,
            min_support=cfg.min_support,
            label=dataset.label,
            context_factor=dataset.context_factor,
        )
        if result is None:
            return []
        return [
            AlertCandidate(
                kind=AlertKind.CONTEXT_ASSOCIATION,
                context_key=f"environment:{dataset.context_factor}",
                label=dataset.label,
                tier=self.engine.detector_tiers.get("association", 0.85),
                latest_ms=dataset.last_timestamp,
                results=[result],
            )
        ]

    def _burst_candidates(self, request: DetectionInput, limit: int) -> List[AlertCandidate]:
        cfg = self.detectors.burst
        events = build_burst_events(
            request.emotions,
            request.sensory,
            request.tracking,
            high_intensity=cfg.high_intensity,
            pairing_window_minutes=cfg.pairing_window_minutes,
            series_limit=limit,
        )
        if len(events) < cfg.min_events:
            return []
        result = safe_detect(
            "burst",
            detect_burst,
            events,
            window_minutes=cfg.window_minutes,
            min_events=cfg.min_events,
            min_density_ratio=cfg.min_density_ratio,
        )
        if result is None:
            return []
        return [
            AlertCandidate(
                kind=AlertKind.BEHAVIOR_SPIKE,
                context_key="burst:emotions",
                label="High-intensity burst",
                tier=self.engine.detector_tiers.get("burst", 1.0),
                latest_ms=_latest_ms([result], events[-1].timestamp),
                results=[result],
            )
        ]

    def _intervention_candidates(self, request: DetectionInput) -> List[AlertCandidate]:
        cfg = self.detectors.tau_u
        out = []
        for intervention in request.interventions:
            status = (intervention.status or "").strip().lower()
            if status and status not in REVIEWED_INTERVENTION_STATUSES:
                continue
            goal = _linked_goal(intervention, request.goals)
            phases = build_phase_data(
                intervention,
                goal,
                baseline_window_days=cfg.baseline_window_days,
                min_phase_points=cfg.min_phase_points,
            )
            if phases is None:
                continue
            result = safe_detect(
                "tau_u",
                detect_tau_u,
                phases.phase_a,
                phases.phase_b,
                min_phase_points=cfg.min_phase_points,
                outcome_effect=cfg.outcome_effect,
                outcome_p_value=cfg.outcome_p_value,
                label=intervention.title or "Tau-U intervention analysis",
                latest_timestamp=phases.last_timestamp,
            )
            if result is None or abs(result.analysis["effect_size"]) < cfg.min_effect:
                continue
            out.append(
                AlertCandidate(
                    kind=AlertKind.INTERVENTION_DUE,
                    context_key=f"intervention:{intervention.id}",
                    label=intervention.title or "Intervention review",
                    tier=self.engine.detector_tiers.get("tau_u", 1.0),
                    latest_ms=phases.last_timestamp,
                    results=[result],
                    metadata={
                        "intervention_id": intervention.id,
                        "goal_id": goal.id if goal is not None else None,
                        "phase_label": result.analysis["outcome"],
                    },
                )
            )
        return out

    def _build_alert(
        self,
        student_id: str,
        candidate: AlertCandidate,
        settings: AlertSettings,
        now: datetime,
    ) -> Optional[AlertEvent]:
        level = settings.sensitivity_for(candidate.kind).value
        scale = self.engine.sensitivity_scale.get(level, 1.0) or 1.0
        results = [
            r.model_copy(update={"score": clamp(r.score / scale)})
            for r in candidate.results
            if r.confidence >= self.engine.min_confidence
        ]
        if not results:
            return None

        impact = max(r.score for r in results)
        confidence = max(r.confidence for r in results)
        created_at = from_epoch_ms(candidate.latest_ms)
        recency = recency_score(created_at, now, self.engine.recency_decay_hours)
        score = aggregate_score(impact, confidence, recency, candidate.tier, self.engine)
        severity = self._severity_mapper.severity(score)

        raw_id = f"{student_id}|{candidate.kind.value}|{candidate.context_key}|{candidate.latest_ms}"
        alert = AlertEvent(
            id="alert_" + hashlib.sha1(raw_id.encode("utf-8")).hexdigest()[:16],
            student_id=student_id,
            kind=candidate.kind,
            severity=severity,
            confidence=clamp(confidence),
            created_at=created_at,
            sources=rank_sources(results, self.engine.max_sources),
            metadata={
                "context_key": candidate.context_key,
                "label": candidate.label,
                "aggregate_score": score,
                "impact": impact,
                "recency": recency,
                "tier": candidate.tier,
                "sensitivity": level,
                "impact_hints": [r.impact_hint for r in results],
                "detectors": [r.analysis.get("detector") for r in results],
                "evaluated_at": to_epoch_ms(now),
                **candidate.metadata,
            },
        )
        return alert.model_copy(update={"dedupe_key": self.policies.calculate_dedupe_key(alert)})


def _last_point_ms(series: List[TrendPoint]) -> int:
    return series[-1].timestamp if series else 0


def _linked_goal(intervention: Intervention, goals: List[Goal]) -> Optional[Goal]:
    """
    Goal whose intervention list names this intervention, else the first
    related goal.
    """
    for goal in goals:
        if intervention.id in goal.interventions:
            return goal
    if intervention.related_goals:
        first = intervention.related_goals[0]
        return next((goal for goal in goals if goal.id == first), None)
    return None

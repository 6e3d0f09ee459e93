"""
Schema definitions for alert detection.

Detector inputs (TrendPoint, BurstEvent, ContingencyTable) are defined with
the other prepared inputs in src.data.schema and re-exported here. Detector
outputs, baselines and alerts are pydantic models so they serialize cleanly
for the presentation layer and the governance store.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from src.core.exceptions import BaselineError
from src.data.schema import BurstEvent, ContingencyTable, TrendPoint


class AlertKind(str, Enum):
    """Kinds of alerts surfaced to teachers."""

    SAFETY = "safety"
    BEHAVIOR_SPIKE = "behavior_spike"
    CONTEXT_ASSOCIATION = "context_association"
    INTERVENTION_DUE = "intervention_due"
    DATA_QUALITY = "data_quality"
    IMPROVEMENT_NOTED = "improvement_noted"
    PATTERN_DETECTED = "pattern_detected"


class AlertSeverity(str, Enum):
    """Severity levels, most urgent first."""

    CRITICAL = "critical"
    IMPORTANT = "important"
    MODERATE = "moderate"
    LOW = "low"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK: Dict[AlertSeverity, int] = {
    AlertSeverity.CRITICAL: 4,
    AlertSeverity.IMPORTANT: 3,
    AlertSeverity.MODERATE: 2,
    AlertSeverity.LOW: 1,
}


class AlertStatus(str, Enum):
    NEW = "new"
    ACKNOWLEDGED = "acknowledged"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    SNOOZED = "snoozed"
    DISMISSED = "dismissed"


class SourceType(str, Enum):
    PATTERN_ENGINE = "pattern_engine"
    TEACHER_ACTION = "teacher_action"
    SENSOR = "sensor"
    MANUAL = "manual"
    BASELINE = "baseline"
    POLICY = "policy"


class SensitivityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CusumSide(str, Enum):
    UPPER = "upper"
    LOWER = "lower"
    BOTH = "both"


class SourceRef(BaseModel):
    """
    Evidence reference attached to detector results and alerts.

    Fields:
    - type: where the evidence comes from
    - label: short human-readable label
    - details: detector-specific numbers backing the label
    """

    type: SourceType
    label: str
    details: Dict[str, Any] = Field(default_factory=dict)


class DetectorResult(BaseModel):
    """
    Immutable outcome of a detector invocation.

    Absence of evidence is represented by the detector returning None, so a
    DetectorResult always describes an actual detection.
    """

    model_config = ConfigDict(frozen=True)

    score: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    impact_hint: str = ""
    sources: List[SourceRef] = Field(default_factory=list)
    threshold_applied: Optional[float] = None
    analysis: Dict[str, Any] = Field(default_factory=dict)


class GovernanceStatus(BaseModel):
    """
    Governance flags attached to an alert by the policy layer.

    Fields:
    - throttled: suppressed by exponential backoff for its dedupe key
    - deduplicated: absorbed into another alert with the same key
    - has_duplicates: survivor that absorbed at least one duplicate
    - snoozed: key is snoozed
    - quiet_hours: created inside the quiet-hours window
    - cap_exceeded: severity's daily cap already reached
    - next_eligible_at: when a throttled key may surface again
    """

    throttled: bool = False
    deduplicated: bool = False
    has_duplicates: bool = False
    snoozed: bool = False
    quiet_hours: bool = False
    cap_exceeded: bool = False
    next_eligible_at: Optional[datetime] = None

    @property
    def blocked(self) -> bool:
        return self.throttled or self.snoozed or self.quiet_hours or self.cap_exceeded

    def merge(self, **updates: Any) -> "GovernanceStatus":
        """
        Return a copy with only the explicitly passed fields overridden.

        A value of None means "not computed" and leaves the field untouched.
        """

        unknown = set(updates) - set(type(self).model_fields)
        if unknown:
            raise ValueError(f"Unknown governance fields: {sorted(unknown)}")
        changes = {k: v for k, v in updates.items() if v is not None}
        return self.model_copy(update=changes)


class AlertEvent(BaseModel):
    """
    Alert produced by the detection engine.

    Fields:
    - id: stable identifier derived from student, kind, context and time
    - student_id: student the alert concerns
    - kind/severity/confidence: classification of the alert
    - created_at: timestamp of the latest evidence
    - dedupe_key: precomputed dedupe key (takes precedence over recomputation)
    - sources: ranked evidence (at most three)
    - metadata: context key, label, detector analysis
    - governance: attached by the policy layer only
    """

    id: str
    student_id: str
    kind: AlertKind
    severity: AlertSeverity
    confidence: float = Field(ge=0.0, le=1.0)
    status: AlertStatus = AlertStatus.NEW
    created_at: datetime
    dedupe_key: Optional[str] = None
    sources: List[SourceRef] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    governance: Optional[GovernanceStatus] = None

    @property
    def context_key(self) -> str:
        value = self.metadata.get("context_key") or self.metadata.get("class_period")
        return str(value) if value else "na"


class MetricKey(NamedTuple):
    """Compound key (metric identifier, window length in days), e.g. "stress:14"."""

    metric: str
    window_days: int

    def __str__(self) -> str:
        return f"{self.metric}:{self.window_days}"

    @classmethod
    def parse(cls, raw: str) -> "MetricKey":
        metric, sep, window = raw.rpartition(":")
        if not sep or not metric or not window.isdigit():
            raise BaselineError(f"Invalid metric key: {raw!r}")
        return cls(metric, int(window))


class TrendSummary(BaseModel):
    slope_per_day: float
    direction: str
    significant: bool


class MetricBaseline(BaseModel):
    """
    Robust location/scale for one metric over one window.

    Fields:
    - median: robust center
    - iqr: interquartile range of the kept values
    - sigma: MAD-derived sigma, floored to a small positive value
    - count: points used after outlier removal
    - confidence_interval: 95% interval for the median
    - outliers_removed: points dropped by the robust z filter
    """

    metric: str
    window_days: int
    median: float
    iqr: float
    sigma: float
    count: int
    confidence_interval: Tuple[float, float]
    trend: Optional[TrendSummary] = None
    outliers_removed: int = 0


class SensoryBaseline(BaseModel):
    """Beta prior over the high-intensity rate of one sensory behavior."""

    behavior: str
    window_days: int
    rate: float = Field(ge=0.0, le=1.0)
    alpha: float = Field(gt=0.0)
    beta: float = Field(gt=0.0)
    trials: int
    successes: int


class EnvironmentalBaseline(BaseModel):
    factor: str
    window_days: int
    median: float
    iqr: float
    count: int
    correlation_with_emotion: Optional[float] = None


class DataSufficiency(BaseModel):
    is_sufficient: bool
    total_sessions: int
    unique_days: int
    recommendations: List[str] = Field(default_factory=list)


class BaselineQuality(BaseModel):
    """
    Data quality summary for a student's baseline.

    reliability_score blends sample size, recency, completeness and
    stability, discounted by the outlier rate.
    """

    reliability_score: float = Field(ge=0.0, le=1.0)
    sample_score: float = Field(ge=0.0, le=1.0)
    recency_score: float = Field(ge=0.0, le=1.0)
    completeness_score: float = Field(ge=0.0, le=1.0)
    stability_score: float = Field(ge=0.0, le=1.0)
    outlier_rate: float = Field(ge=0.0, le=1.0)
    data_sufficiency: DataSufficiency
    insufficient_keys: List[str] = Field(default_factory=list)


class StudentBaseline(BaseModel):
    """
    Baselines for one student, keyed by str(MetricKey).

    Always recomputed and replaced, never mutated in place.
    """

    model_config = ConfigDict(frozen=True)

    student_id: str
    computed_at: datetime
    windows: List[int]
    emotion: Dict[str, MetricBaseline] = Field(default_factory=dict)
    sensory: Dict[str, SensoryBaseline] = Field(default_factory=dict)
    environment: Dict[str, EnvironmentalBaseline] = Field(default_factory=dict)
    quality: BaselineQuality

    def emotion_stats(
        self, metric: str, windows: Sequence[int] = (14, 7, 30)
    ) -> Optional[MetricBaseline]:
        for window in windows:
            stats = self.emotion.get(str(MetricKey(metric, window)))
            if stats is not None:
                return stats
        return None

    def sensory_prior(
        self, behavior: str, windows: Sequence[int] = (14, 7, 30)
    ) -> Optional[SensoryBaseline]:
        for window in windows:
            stats = self.sensory.get(str(MetricKey(behavior, window)))
            if stats is not None:
                return stats
        return None

    def environment_stats(
        self, factor: str, windows: Sequence[int] = (14, 7, 30)
    ) -> Optional[EnvironmentalBaseline]:
        for window in windows:
            stats = self.environment.get(str(MetricKey(factor, window)))
            if stats is not None:
                return stats
        return None

"""
Builders turning raw entries into detector inputs.

Each builder is pure: it never mutates the supplied entries, sorts by time,
skips entries whose timestamp cannot be interpreted, and keeps only the most
recent ``series_limit`` observations so detector cost stays bounded.

Design:
- Emotion series: one TrendPoint series per emotion name
- Sensory aggregates: high-intensity successes / trials per behavior
- Association dataset: noise exposure vs high emotion outcome, per session
- Burst events: high-intensity emotions paired with nearby sensory intensity
- Intervention phases: baseline (A) vs intervention (B) measurements
"""

import bisect
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from src.data.schema import (
    BurstEvent,
    ContingencyTable,
    EmotionEntry,
    Goal,
    Intervention,
    SensoryEntry,
    TrackingEntry,
    TrendPoint,
)

logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60_000
MS_PER_DAY = 86_400_000


def to_epoch_ms(ts: datetime) -> int:
    """
    Convert a datetime to epoch milliseconds.

    Naive datetimes are interpreted as UTC.
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return int(round(ts.timestamp() * 1000))


def from_epoch_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def normalize_timestamp(value: object) -> Optional[int]:
    """
    Normalize a timestamp to epoch milliseconds.

    Args:
        value: datetime, epoch milliseconds (int/float) or ISO-8601 string

    Returns:
        Epoch milliseconds, or None if the value cannot be interpreted
    """
    if isinstance(value, datetime):
        return to_epoch_ms(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            return to_epoch_ms(datetime.fromisoformat(raw))
        except ValueError:
            logger.debug("Skipping unparseable timestamp %r", value)
            return None
    return None


def is_finite(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _intensity(value: Optional[float]) -> float:
    return float(value) if is_finite(value) else math.nan


def truncate_series(series: List[TrendPoint], limit: int) -> List[TrendPoint]:
    if limit <= 0 or len(series) <= limit:
        return series
    return series[-limit:]


def collect_emotions(
    emotions: Sequence[EmotionEntry], tracking: Sequence[TrackingEntry]
) -> List[Tuple[int, EmotionEntry]]:
    """
    Timestamped emotion entries, oldest first.

    Top-level entries win; nested tracking entries are used only when no
    top-level entries were supplied (callers pass one or the other).
    Nested entries without their own timestamp inherit the session time.
    """
    out: List[Tuple[int, EmotionEntry]] = []
    if emotions:
        for entry in emotions:
            ts = normalize_timestamp(entry.timestamp)
            if ts is not None:
                out.append((ts, entry))
    else:
        for session in tracking:
            session_ts = normalize_timestamp(session.timestamp)
            for entry in session.emotions:
                ts = normalize_timestamp(entry.timestamp)
                ts = session_ts if ts is None else ts
                if ts is not None:
                    out.append((ts, entry))
    out.sort(key=lambda item: item[0])
    return out


def collect_sensory(
    sensory: Sequence[SensoryEntry], tracking: Sequence[TrackingEntry]
) -> List[Tuple[int, SensoryEntry]]:
    out: List[Tuple[int, SensoryEntry]] = []
    if sensory:
        for entry in sensory:
            ts = normalize_timestamp(entry.timestamp)
            if ts is not None:
                out.append((ts, entry))
    else:
        for session in tracking:
            session_ts = normalize_timestamp(session.timestamp)
            for entry in session.sensory_inputs:
                ts = normalize_timestamp(entry.timestamp)
                ts = session_ts if ts is None else ts
                if ts is not None:
                    out.append((ts, entry))
    out.sort(key=lambda item: item[0])
    return out


def build_emotion_series(
    emotions: Sequence[EmotionEntry],
    tracking: Sequence[TrackingEntry] = (),
    series_limit: int = 365,
) -> Dict[str, List[TrendPoint]]:
    """
    Build one time-ordered series per emotion.

    Missing intensities become NaN points so detectors can skip them.
    """
    grouped: Dict[str, List[TrendPoint]] = {}
    for ts, entry in collect_emotions(emotions, tracking):
        name = (entry.emotion or "unknown").strip().lower() or "unknown"
        grouped.setdefault(name, []).append(TrendPoint(ts, _intensity(entry.intensity)))
    return {name: truncate_series(points, series_limit) for name, points in grouped.items()}


@dataclass(frozen=True)
class SensoryAggregate:
    """
    High-intensity rate sample for one sensory behavior.

    Fields:
    - behavior: normalized behavior name
    - successes: events at or above the high-intensity cutoff
    - trials: events with a finite intensity
    - last_timestamp: most recent event (epoch ms)
    """

    behavior: str
    successes: int
    trials: int
    last_timestamp: int


def build_sensory_aggregates(
    sensory: Sequence[SensoryEntry],
    tracking: Sequence[TrackingEntry] = (),
    high_intensity: float = 4.0,
    series_limit: int = 365,
) -> Dict[str, SensoryAggregate]:
    grouped: Dict[str, List[Tuple[int, float]]] = {}
    for ts, entry in collect_sensory(sensory, tracking):
        if not is_finite(entry.intensity):
            continue
        grouped.setdefault(entry.behavior, []).append((ts, float(entry.intensity)))

    aggregates: Dict[str, SensoryAggregate] = {}
    for behavior, rows in grouped.items():
        rows = rows[-series_limit:] if series_limit > 0 else rows
        successes = sum(1 for _, value in rows if value >= high_intensity)
        aggregates[behavior] = SensoryAggregate(
            behavior=behavior,
            successes=successes,
            trials=len(rows),
            last_timestamp=rows[-1][0],
        )
    return aggregates


@dataclass(frozen=True)
class AssociationDataset:
    """
    Exposure/outcome table plus the paired raw series behind it.
    """

    table: ContingencyTable
    series_x: List[float] = field(default_factory=list)
    series_y: List[float] = field(default_factory=list)
    label: str = "Environment association"
    context_factor: str = "noise_level"
    last_timestamp: int = 0


def build_association_dataset(
    tracking: Sequence[TrackingEntry],
    high_noise: float = 70.0,
    high_emotion: float = 4.0,
    min_support: int = 5,
    series_limit: int = 365,
) -> Optional[AssociationDataset]:
    """
    Cross-tabulate high noise exposure against high emotion intensity.

    A session counts when it has a finite noise level and at least one finite
    emotion intensity; its outcome is the maximum intensity in the session.

    Returns:
        AssociationDataset, or None when fewer than min_support sessions qualify
    """
    rows: List[Tuple[int, float, float]] = []
    for session in tracking:
        ts = normalize_timestamp(session.timestamp)
        noise = session.environmental_value("noise_level")
        intensities = [e.intensity for e in session.emotions if is_finite(e.intensity)]
        if ts is None or not is_finite(noise) or not intensities:
            continue
        rows.append((ts, float(noise), float(max(intensities))))

    rows.sort(key=lambda row: row[0])
    if series_limit > 0:
        rows = rows[-series_limit:]
    if len(rows) < min_support:
        return None

    a = b = c = d = 0
    for _, noise, emotion in rows:
        exposed = noise >= high_noise
        outcome = emotion >= high_emotion
        if exposed and outcome:
            a += 1
        elif exposed:
            b += 1
        elif outcome:
            c += 1
        else:
            d += 1

    return AssociationDataset(
        table=ContingencyTable(a, b, c, d),
        series_x=[row[1] for row in rows],
        series_y=[row[2] for row in rows],
        last_timestamp=rows[-1][0],
    )


def build_burst_events(
    emotions: Sequence[EmotionEntry],
    sensory: Sequence[SensoryEntry] = (),
    tracking: Sequence[TrackingEntry] = (),
    high_intensity: float = 4.0,
    pairing_window_minutes: float = 1.0,
    series_limit: int = 365,
) -> List[BurstEvent]:
    """
    High-intensity emotion events, each paired with the mean intensity of
    sensory events within +/- pairing_window_minutes.
    """
    sensory_rows = [
        (ts, float(entry.intensity))
        for ts, entry in collect_sensory(sensory, tracking)
        if is_finite(entry.intensity)
    ]
    sensory_ts = [row[0] for row in sensory_rows]
    pairing_ms = pairing_window_minutes * MS_PER_MINUTE

    events: List[BurstEvent] = []
    for ts, entry in collect_emotions(emotions, tracking):
        if not is_finite(entry.intensity) or entry.intensity < high_intensity:
            continue
        lo = bisect.bisect_left(sensory_ts, ts - pairing_ms)
        hi = bisect.bisect_right(sensory_ts, ts + pairing_ms)
        nearby = [sensory_rows[i][1] for i in range(lo, hi)]
        paired = sum(nearby) / len(nearby) if nearby else None
        events.append(BurstEvent(ts, float(entry.intensity), paired))

    if series_limit > 0:
        events = events[-series_limit:]
    return events


@dataclass(frozen=True)
class PhaseData:
    """
    Baseline (A) and intervention (B) measurements around an implementation
    date, each oldest first.
    """

    phase_a: List[float]
    phase_b: List[float]
    timestamps_a: List[int]
    timestamps_b: List[int]
    implementation_ts: int

    @property
    def last_timestamp(self) -> int:
        return self.timestamps_b[-1] if self.timestamps_b else self.implementation_ts


def build_phase_data(
    intervention: Intervention,
    goal: Optional[Goal] = None,
    baseline_window_days: int = 60,
    min_phase_points: int = 5,
) -> Optional[PhaseData]:
    """
    Split goal progress and intervention effectiveness at the implementation
    date.

    Points at or after the implementation date form phase B; earlier points
    within ``baseline_window_days`` form phase A. Points with an invalid
    timestamp or a non-finite value are skipped.

    Returns:
        PhaseData, or None without an implementation date or when either
        phase has fewer than min_phase_points values
    """
    implementation_ts = normalize_timestamp(intervention.implementation_date)
    if implementation_ts is None:
        return None

    window_ms = baseline_window_days * MS_PER_DAY
    raw: List[Tuple[object, object]] = [
        (point.timestamp, point.value) for point in (goal.data_points if goal else [])
    ]
    raw.extend((point.timestamp, point.effectiveness) for point in intervention.data_collection)

    phase_a: List[Tuple[int, float]] = []
    phase_b: List[Tuple[int, float]] = []
    for timestamp, value in raw:
        ts = normalize_timestamp(timestamp)
        if ts is None or not is_finite(value):
            continue
        if ts >= implementation_ts:
            phase_b.append((ts, float(value)))
        elif implementation_ts - ts <= window_ms:
            phase_a.append((ts, float(value)))

    if len(phase_a) < min_phase_points or len(phase_b) < min_phase_points:
        logger.debug(
            "Insufficient phase data for intervention %s: a=%d b=%d",
            intervention.id, len(phase_a), len(phase_b),
        )
        return None

    phase_a.sort(key=lambda row: row[0])
    phase_b.sort(key=lambda row: row[0])
    return PhaseData(
        phase_a=[row[1] for row in phase_a],
        phase_b=[row[1] for row in phase_b],
        timestamps_a=[row[0] for row in phase_a],
        timestamps_b=[row[0] for row in phase_b],
        implementation_ts=implementation_ts,
    )

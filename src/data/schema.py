"""
Raw entry records supplied by the tracking application.

These models describe what callers hand to the Baseline Service and the
Detection Engine. They are intentionally permissive: behavioral data is logged
by hand, so intensities may be missing or non-finite and timestamps arrive as
datetimes, epoch milliseconds or ISO-8601 strings. Cleaning happens in the
series builders, never at construction time.

Design rationale:
- Unknown fields are ignored so upstream schema growth never breaks ingestion
- Timestamps are normalized lazily (invalid ones are skipped, not rejected)
- Tracking entries nest the emotion/sensory entries of one session
- Interventions and goals carry the phase data for outcome analysis
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Timestamp = Union[datetime, int, float, str]


@dataclass(frozen=True)
class TrendPoint:
    """
    Single observation of a metric, as consumed by the trend detectors.

    Plain frozen dataclass: series routinely hold thousands of points.

    Attributes:
        timestamp: Epoch milliseconds
        value: Measurement; NaN/inf marks a missing sample
    """

    timestamp: int
    value: float


@dataclass(frozen=True)
class BurstEvent:
    """
    Event considered by the burst detector.

    Attributes:
        timestamp: Epoch milliseconds
        value: Event intensity
        paired_value: Optional co-occurring measurement (e.g., sensory intensity)
    """

    timestamp: int
    value: float
    paired_value: Optional[float] = None


@dataclass(frozen=True)
class ContingencyTable:
    """
    2x2 table with exposure rows and outcome columns.

        a = exposed & outcome      b = exposed & no outcome
        c = unexposed & outcome    d = unexposed & no outcome
    """

    a: int
    b: int
    c: int
    d: int

    @property
    def total(self) -> int:
        return self.a + self.b + self.c + self.d

    def as_dict(self) -> Dict[str, int]:
        return {"a": self.a, "b": self.b, "c": self.c, "d": self.d}


class EmotionEntry(BaseModel):
    """
    A single logged emotion observation.

    Attributes:
        emotion: Emotion name (e.g., "anxious", "happy")
        intensity: Intensity on the 1-5 scale (None/NaN when missing)
        timestamp: When the emotion was observed
        sub_emotion: Optional finer-grained label
    """

    model_config = ConfigDict(extra="ignore")

    emotion: str = Field("unknown", description="Emotion name")
    intensity: Optional[float] = Field(None, description="Intensity (1-5)")
    timestamp: Optional[Timestamp] = Field(None, description="Observation time")
    sub_emotion: Optional[str] = None


class SensoryEntry(BaseModel):
    """
    A single logged sensory event.

    Attributes:
        sensory_type: Sensory channel (e.g., "auditory", "tactile")
        type: Legacy alias for sensory_type
        response: Observed response (e.g., "avoiding", "seeking")
        intensity: Intensity on the 1-5 scale
        timestamp: When the event was observed
    """

    model_config = ConfigDict(extra="ignore")

    sensory_type: Optional[str] = None
    type: Optional[str] = None
    response: Optional[str] = None
    intensity: Optional[float] = None
    timestamp: Optional[Timestamp] = None

    @property
    def behavior(self) -> str:
        for candidate in (self.sensory_type, self.type, self.response):
            if candidate and candidate.strip():
                return candidate.strip().lower()
        return "unknown"


class RoomConditions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    noise_level: Optional[float] = Field(None, description="Noise level in dB")
    temperature: Optional[float] = None
    humidity: Optional[float] = None


class ClassroomContext(BaseModel):
    model_config = ConfigDict(extra="ignore")

    student_count: Optional[float] = None
    activity: Optional[str] = None


class EnvironmentalData(BaseModel):
    """
    Environmental metadata recorded with a tracking session.
    """

    model_config = ConfigDict(extra="ignore")

    room_conditions: Optional[RoomConditions] = None
    classroom: Optional[ClassroomContext] = None
    class_period: Optional[str] = None


class TrackingEntry(BaseModel):
    """
    One tracking session with nested observations.

    Attributes:
        timestamp: Session time
        emotions: Emotions logged during the session
        sensory_inputs: Sensory events logged during the session
        environmental_data: Room/classroom context
    """

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    student_id: Optional[str] = None
    timestamp: Optional[Timestamp] = None
    emotions: List[EmotionEntry] = Field(default_factory=list)
    sensory_inputs: List[SensoryEntry] = Field(default_factory=list)
    environmental_data: Optional[EnvironmentalData] = None

    def environmental_value(self, factor: str) -> Optional[float]:
        """
        Look up an environmental factor by name.

        Args:
            factor: One of noise_level, temperature, humidity, student_count

        Returns:
            The recorded value, or None when absent
        """
        env = self.environmental_data
        if env is None:
            return None
        if factor == "student_count":
            return env.classroom.student_count if env.classroom else None
        if env.room_conditions is None:
            return None
        return getattr(env.room_conditions, factor, None)


class GoalDataPoint(BaseModel):
    model_config = ConfigDict(extra="ignore")

    timestamp: Optional[Timestamp] = None
    value: Optional[float] = None


class Goal(BaseModel):
    """
    A tracked goal and its progress measurements.

    Attributes:
        id: Goal identifier
        interventions: Ids of the interventions working toward this goal
        data_points: Progress measurements (higher is better)
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    title: Optional[str] = None
    interventions: List[str] = Field(default_factory=list)
    data_points: List[GoalDataPoint] = Field(default_factory=list)


class InterventionDataPoint(BaseModel):
    model_config = ConfigDict(extra="ignore")

    timestamp: Optional[Timestamp] = None
    effectiveness: Optional[float] = None


class Intervention(BaseModel):
    """
    A support strategy applied to a student from a given date.

    Attributes:
        id: Intervention identifier
        title: Display name
        status: Lifecycle status (e.g., "active", "completed", "discontinued")
        implementation_date: Start of the intervention phase
        related_goals: Ids of goals this intervention targets
        data_collection: Effectiveness ratings (higher is better)
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    title: Optional[str] = None
    status: Optional[str] = None
    implementation_date: Optional[Timestamp] = None
    related_goals: List[str] = Field(default_factory=list)
    data_collection: List[InterventionDataPoint] = Field(default_factory=list)

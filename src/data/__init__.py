"""
Data module: Raw entry records and detector-input builders.

Converts hand-logged student entries into bounded, time-ordered detector
inputs. Pipeline:

    Raw entries (emotion / sensory / tracking sessions)
        ↓
    Validation (src/data/schema.py) → EmotionEntry, SensoryEntry, TrackingEntry,
                                        Intervention, Goal
        ↓
    Timestamp normalization (src/data/series.py) → epoch milliseconds
        ↓
    Builders (src/data/series.py) → TrendPoint series, sensory aggregates,
                                    contingency tables, burst events,
                                    intervention phases
        ↓
    Ready for detection (src/alerts)
"""

from src.data.schema import (
    BurstEvent,
    ContingencyTable,
    EmotionEntry,
    EnvironmentalData,
    Goal,
    Intervention,
    SensoryEntry,
    TrackingEntry,
    TrendPoint,
)
from src.data.series import (
    AssociationDataset,
    PhaseData,
    SensoryAggregate,
    build_association_dataset,
    build_burst_events,
    build_emotion_series,
    build_phase_data,
    build_sensory_aggregates,
    normalize_timestamp,
)

__all__ = [
    # Schema
    "EmotionEntry",
    "SensoryEntry",
    "TrackingEntry",
    "EnvironmentalData",
    "Intervention",
    "Goal",
    "TrendPoint",
    "BurstEvent",
    "ContingencyTable",

    # Builders
    "normalize_timestamp",
    "build_emotion_series",
    "build_sensory_aggregates",
    "build_association_dataset",
    "build_burst_events",
    "build_phase_data",
    "SensoryAggregate",
    "AssociationDataset",
    "PhaseData",
]

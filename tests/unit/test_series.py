"""
Unit tests for the series builders.
"""

import math
from datetime import datetime, timedelta, timezone

import pytest

from src.data.schema import EmotionEntry, Goal, Intervention, SensoryEntry, TrackingEntry
from src.data.series import (
    build_association_dataset,
    build_burst_events,
    build_emotion_series,
    build_phase_data,
    build_sensory_aggregates,
    normalize_timestamp,
)

T0 = datetime(2025, 3, 4, 10, 0, tzinfo=timezone.utc)
T0_MS = int(T0.timestamp() * 1000)


class TestNormalizeTimestamp:
    """Timestamp normalization."""

    def test_aware_datetime(self):
        assert normalize_timestamp(T0) == T0_MS

    def test_naive_datetime_is_utc(self):
        assert normalize_timestamp(T0.replace(tzinfo=None)) == T0_MS

    def test_epoch_milliseconds(self):
        assert normalize_timestamp(T0_MS) == T0_MS
        assert normalize_timestamp(float(T0_MS)) == T0_MS

    @pytest.mark.parametrize("raw", ["2025-03-04T10:00:00Z", "2025-03-04T10:00:00+00:00"])
    def test_iso_strings(self, raw):
        assert normalize_timestamp(raw) == T0_MS

    def test_offset_string(self):
        assert normalize_timestamp("2025-03-04T11:00:00+01:00") == T0_MS

    @pytest.mark.parametrize("raw", ["not a date", "", None, True, float("nan"), float("inf"), [1]])
    def test_invalid_values(self, raw):
        assert normalize_timestamp(raw) is None


class TestEmotionSeries:
    """Emotion series builder."""

    def test_groups_and_sorts_by_time(self):
        entries = [
            EmotionEntry(emotion="Anxious", intensity=3, timestamp=T0 + timedelta(hours=2)),
            EmotionEntry(emotion="anxious", intensity=2, timestamp=T0),
            EmotionEntry(emotion="happy", intensity=4, timestamp=T0 + timedelta(hours=1)),
        ]
        series = build_emotion_series(entries)

        assert set(series) == {"anxious", "happy"}
        assert [p.value for p in series["anxious"]] == [2.0, 3.0]
        assert series["anxious"][0].timestamp < series["anxious"][1].timestamp

    def test_skips_invalid_timestamps_and_keeps_missing_intensity(self):
        entries = [
            EmotionEntry(emotion="anxious", intensity=2, timestamp="garbage"),
            EmotionEntry(emotion="anxious", intensity=None, timestamp=T0),
            EmotionEntry(emotion="anxious", intensity=3, timestamp=T0 + timedelta(hours=1)),
        ]
        points = build_emotion_series(entries)["anxious"]

        assert len(points) == 2
        assert math.isnan(points[0].value)
        assert points[1].value == 3.0

    def test_series_limit_keeps_most_recent(self, synthetic):
        entries = synthetic.emotion_entries("calm", [float(i) for i in range(50)])
        points = build_emotion_series(entries, series_limit=10)["calm"]

        assert len(points) == 10
        assert points[0].value == 40.0
        assert points[-1].value == 49.0

    def test_nested_entries_inherit_session_time(self):
        session = TrackingEntry(
            timestamp=T0,
            emotions=[{"emotion": "anxious", "intensity": 4}],
        )
        points = build_emotion_series([], [session])["anxious"]
        assert points[0].timestamp == T0_MS

    def test_top_level_entries_win_over_nested(self):
        session = TrackingEntry(timestamp=T0, emotions=[{"emotion": "nested", "intensity": 4}])
        top = [EmotionEntry(emotion="top", intensity=1, timestamp=T0)]
        assert set(build_emotion_series(top, [session])) == {"top"}

    def test_does_not_mutate_inputs(self):
        entries = [EmotionEntry(emotion="anxious", intensity=2, timestamp="2025-03-04T10:00:00Z")]
        build_emotion_series(entries)
        assert entries[0].timestamp == "2025-03-04T10:00:00Z"


class TestSensoryAggregates:
    """Sensory aggregates."""

    def test_counts_high_intensity(self):
        entries = [
            SensoryEntry(sensory_type="Auditory", intensity=v, timestamp=T0 + timedelta(minutes=i))
            for i, v in enumerate([5, 4, 2, 1, None])
        ]
        agg = build_sensory_aggregates(entries)["auditory"]

        assert agg.trials == 4
        assert agg.successes == 2
        assert agg.last_timestamp == T0_MS + 3 * 60_000

    def test_behavior_falls_back_to_legacy_fields(self):
        entries = [
            SensoryEntry(type="tactile", intensity=4, timestamp=T0),
            SensoryEntry(response="seeking", intensity=4, timestamp=T0),
            SensoryEntry(intensity=4, timestamp=T0),
        ]
        assert set(build_sensory_aggregates(entries)) == {"tactile", "seeking", "unknown"}


class TestAssociationDataset:
    """Noise/emotion association dataset."""

    def test_cross_tabulates_sessions(self):
        def session(hours, noise, intensity):
            return TrackingEntry(
                timestamp=T0 + timedelta(hours=hours),
                emotions=[{"emotion": "frustrated", "intensity": intensity}],
                environmental_data={"room_conditions": {"noise_level": noise}},
            )

        sessions = [
            session(0, 80, 5),
            session(1, 80, 2),
            session(2, 50, 4),
            session(3, 50, 1),
            session(4, 50, 1),
        ]
        dataset = build_association_dataset(sessions)

        assert dataset is not None
        assert dataset.table.as_dict() == {"a": 1, "b": 1, "c": 1, "d": 2}
        assert dataset.series_x == [80.0, 80.0, 50.0, 50.0, 50.0]
        assert dataset.last_timestamp == T0_MS + 4 * 3_600_000

    def test_requires_min_support(self, synthetic):
        sessions = synthetic.tracking_sessions(4, seed=1)
        assert build_association_dataset(sessions, min_support=5) is None

    def test_skips_sessions_without_noise(self):
        sessions = [
            TrackingEntry(timestamp=T0, emotions=[{"emotion": "calm", "intensity": 1}])
            for _ in range(10)
        ]
        assert build_association_dataset(sessions) is None


class TestBurstEvents:
    """Burst event builder."""

    def test_pairs_nearby_sensory_intensity(self):
        emotions = [
            EmotionEntry(emotion="angry", intensity=5, timestamp=T0),
            EmotionEntry(emotion="angry", intensity=2, timestamp=T0 + timedelta(minutes=1)),
            EmotionEntry(emotion="angry", intensity=4, timestamp=T0 + timedelta(minutes=30)),
        ]
        sensory = [
            SensoryEntry(sensory_type="auditory", intensity=3, timestamp=T0 + timedelta(seconds=20)),
            SensoryEntry(sensory_type="auditory", intensity=5, timestamp=T0 - timedelta(seconds=40)),
        ]
        events = build_burst_events(emotions, sensory)

        assert len(events) == 2
        assert events[0].paired_value == pytest.approx(4.0)
        assert events[1].paired_value is None

    def test_accepts_epoch_and_string_timestamps(self):
        base = datetime(2025, 3, 4, 10, 0, tzinfo=timezone.utc)
        emotions = [
            EmotionEntry(emotion="angry", intensity=5, timestamp=T0_MS),
            EmotionEntry(emotion="angry", intensity=5, timestamp=(base + timedelta(minutes=1)).isoformat()),
        ]
        events = build_burst_events(emotions)
        assert [e.timestamp for e in events] == [T0_MS, T0_MS + 60_000]


class TestPhaseData:
    """Baseline/intervention phase split."""

    @staticmethod
    def intervention(points, **overrides):
        fields = {
            "id": "int-1",
            "implementation_date": T0,
            "data_collection": [
                {"timestamp": T0 + timedelta(days=offset), "effectiveness": value}
                for offset, value in points
            ],
        }
        fields.update(overrides)
        return Intervention(**fields)

    def test_splits_at_implementation_date(self):
        points = [(-day, 2.0) for day in range(1, 6)] + [(day, 4.0) for day in range(0, 5)]
        phases = build_phase_data(self.intervention(points))

        assert phases is not None
        assert phases.phase_a == [2.0] * 5
        assert phases.phase_b == [4.0] * 5
        assert phases.timestamps_a == sorted(phases.timestamps_a)
        assert phases.timestamps_b[0] == T0_MS
        assert phases.last_timestamp == T0_MS + 4 * 86_400_000

    def test_baseline_window_excludes_old_points(self):
        points = [(-day, 2.0) for day in range(1, 6)] + [(-90, 1.0)] + [(day, 4.0) for day in range(5)]
        phases = build_phase_data(self.intervention(points), baseline_window_days=60)
        assert phases.phase_a == [2.0] * 5

    def test_merges_goal_measurements(self):
        goal = Goal(
            id="goal-1",
            data_points=[{"timestamp": T0 - timedelta(days=d), "value": 1.0} for d in range(1, 4)],
        )
        points = [(-10, 2.0), (-9, 2.0)] + [(day, 4.0) for day in range(5)]
        phases = build_phase_data(self.intervention(points), goal)

        assert phases is not None
        assert phases.phase_a == [2.0, 2.0, 1.0, 1.0, 1.0]

    def test_skips_invalid_points(self):
        points = [(-day, 2.0) for day in range(1, 6)] + [(day, 4.0) for day in range(5)]
        valid = [{"timestamp": T0 + timedelta(days=o), "effectiveness": v} for o, v in points]
        invalid = [
            {"timestamp": "garbage", "effectiveness": 9.0},
            {"timestamp": T0, "effectiveness": None},
            {"timestamp": T0, "effectiveness": float("nan")},
        ]
        intervention = Intervention(id="int-1", implementation_date=T0, data_collection=valid + invalid)

        phases = build_phase_data(intervention)
        assert len(phases.phase_b) == 5

    def test_requires_implementation_date(self):
        points = [(-day, 2.0) for day in range(1, 6)] + [(day, 4.0) for day in range(5)]
        assert build_phase_data(self.intervention(points, implementation_date=None)) is None

    def test_requires_points_in_both_phases(self):
        points = [(-day, 2.0) for day in range(1, 5)] + [(day, 4.0) for day in range(5)]
        assert build_phase_data(self.intervention(points)) is None

"""
Unit tests for alert scoring and severity mapping.
"""

import math
from datetime import datetime, timedelta, timezone

import pytest

from src.alerts.schema import AlertSeverity, DetectorResult, SourceRef, SourceType
from src.alerts.scoring import SeverityMapper, aggregate_score, rank_sources, recency_score
from src.core.config import EngineConfig

NOW = datetime(2025, 3, 4, 10, 0, tzinfo=timezone.utc)


def result(score, confidence, label):
    return DetectorResult(
        score=score,
        confidence=confidence,
        sources=[SourceRef(type=SourceType.PATTERN_ENGINE, label=label)],
    )


class TestRecency:
    def test_fresh_evidence(self):
        assert recency_score(NOW, NOW) == 1.0
        assert recency_score(NOW + timedelta(hours=1), NOW) == 1.0

    def test_exponential_decay(self):
        assert recency_score(NOW - timedelta(hours=24), NOW) == pytest.approx(math.exp(-1))
        assert recency_score(NOW - timedelta(hours=12), NOW, decay_hours=12) == pytest.approx(math.exp(-1))


class TestAggregateScore:
    def test_weights(self):
        engine = EngineConfig()
        assert aggregate_score(1.0, 1.0, 1.0, 1.0, engine) == pytest.approx(1.0)
        assert aggregate_score(0.0, 0.0, 0.0, 0.0, engine) == 0.0
        assert aggregate_score(1.0, 0.0, 0.0, 0.0, engine) == pytest.approx(engine.impact_weight)

    def test_inputs_are_clamped(self):
        engine = EngineConfig()
        assert aggregate_score(5.0, 2.0, float("nan"), -1.0, engine) == pytest.approx(
            engine.impact_weight + engine.confidence_weight
        )


class TestSeverityMapper:
    @pytest.mark.parametrize(
        "score,severity",
        [
            (0.95, AlertSeverity.CRITICAL),
            (0.85, AlertSeverity.CRITICAL),
            (0.7, AlertSeverity.IMPORTANT),
            (0.6, AlertSeverity.MODERATE),
            (0.2, AlertSeverity.LOW),
        ],
    )
    def test_default_cutoffs(self, score, severity):
        assert SeverityMapper(EngineConfig()).severity(score) == severity

    def test_custom_cutoffs(self):
        mapper = SeverityMapper(EngineConfig(critical_cutoff=0.99))
        assert mapper.severity(0.95) == AlertSeverity.IMPORTANT


class TestRankSources:
    def test_ranked_by_weight(self):
        results = [result(0.2, 0.9, "weak"), result(0.9, 0.9, "strong"), result(0.5, 0.8, "middle")]
        ranked = rank_sources(results)

        assert [s.label for s in ranked] == ["strong", "middle", "weak"]
        assert [s.details["rank"] for s in ranked] == ["S1", "S2", "S3"]

    def test_limit_and_no_mutation(self):
        results = [result(0.1 * i, 0.9, f"r{i}") for i in range(1, 6)]
        ranked = rank_sources(results, limit=2)

        assert [s.label for s in ranked] == ["r5", "r4"]
        assert all("rank" not in r.sources[0].details for r in results)

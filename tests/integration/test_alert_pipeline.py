"""
Integration test for the full alerting pipeline.

Tests end-to-end flow from raw entries through baselines and detection to the
governance gate, with state persisted on disk.
"""

import json
import random
from datetime import datetime, timedelta, timezone

import pytest

from src.alerts.baselines import BaselineService
from src.alerts.engine import AlertDetectionEngine, DetectionInput
from src.alerts.schema import AlertKind, AlertSeverity
from src.data.schema import EmotionEntry
from src.governance.policies import AlertPolicies
from src.governance.settings import get_preset
from src.governance.storage import FileStore

T0 = datetime(2025, 3, 4, 10, 0, tzinfo=timezone.utc)
STUDENT = "student-42"


def anxious_history(n=200, step_at=150, seed=7, start=T0):
    rng = random.Random(seed)
    return [
        EmotionEntry(
            emotion="anxious",
            intensity=(2.0 if i < step_at else 4.5) + rng.gauss(0.0, 0.3),
            timestamp=start + timedelta(hours=i),
        )
        for i in range(n)
    ]


@pytest.mark.integration
class TestAlertPipeline:
    """Baseline -> detection -> governance."""

    @pytest.fixture
    def history(self):
        return anxious_history()

    @pytest.fixture
    def baseline(self, history):
        calm = history[:150]
        return BaselineService().compute_baseline(STUDENT, emotions=calm, now=calm[-1].timestamp)

    @pytest.fixture
    def clock(self, clock, history):
        clock.now = history[-1].timestamp
        return clock

    @pytest.fixture
    def state_dir(self, tmp_path):
        return tmp_path / "policy-state"

    def test_baseline_reflects_calm_period(self, baseline):
        stats = baseline.emotion_stats("anxious")

        assert stats is not None
        assert stats.median == pytest.approx(2.0, abs=0.15)
        assert 0.15 < stats.sigma < 0.45
        assert baseline.quality.data_sufficiency.is_sufficient

    def test_detection_with_baseline(self, history, baseline, clock, state_dir):
        engine = AlertDetectionEngine(policies=AlertPolicies(FileStore(state_dir), clock))
        alerts = engine.run_detection(
            DetectionInput(student_id=STUDENT, emotions=history, baseline=baseline, now=clock())
        )

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.kind == AlertKind.BEHAVIOR_SPIKE
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.metadata["detectors"] == ["ewma", "cusum"]
        assert alert.sources[0].details["reference_source"] == "baseline"

    def test_governance_gate_persists_across_instances(self, history, baseline, clock, state_dir):
        settings = get_preset("highschool", STUDENT)
        engine = AlertDetectionEngine(policies=AlertPolicies(FileStore(state_dir), clock))
        request = DetectionInput(
            student_id=STUDENT, emotions=history, baseline=baseline, settings=settings, now=clock()
        )
        alert = engine.run_detection(request)[0]

        first = AlertPolicies(FileStore(state_dir), clock)
        assert first.can_create_alert(alert, settings).allowed

        # A fresh instance over the same directory sees the throttle schedule
        second = AlertPolicies(FileStore(state_dir), clock)
        decision = second.can_create_alert(alert, settings)
        assert decision.reasons == ["throttled", "cap_exceeded"]
        assert second.get_today_counts(STUDENT, alert.created_at)[AlertSeverity.CRITICAL] == 1

        # Rerunning detection an hour later: throttle has elapsed but the cap is used up
        clock.advance(hours=1)
        rerun = engine.run_detection(request.model_copy(update={"now": clock()}))[0]
        assert rerun.id == alert.id
        assert second.can_create_alert(rerun, settings).reasons == ["cap_exceeded"]

        trail = json.loads(second.export_audit_trail(STUDENT, limit=0))
        assert [entry["allowed"] for entry in trail] == [True, False, False]

    def test_quiet_hours_block_alerts_created_at_night(self, clock, state_dir):
        settings = get_preset("highschool", STUDENT)
        night = anxious_history(start=T0 + timedelta(hours=6))
        calm = night[:150]
        baseline = BaselineService().compute_baseline(STUDENT, emotions=calm, now=calm[-1].timestamp)
        alert = AlertDetectionEngine().run_detection(
            DetectionInput(student_id=STUDENT, emotions=night, baseline=baseline, now=night[-1].timestamp)
        )[0]
        assert alert.created_at == datetime(2025, 3, 12, 23, 0, tzinfo=timezone.utc)

        # Reviewed the next morning: the creation time decides
        clock.now = datetime(2025, 3, 13, 9, 0, tzinfo=timezone.utc)
        policies = AlertPolicies(FileStore(state_dir), clock)
        decision = policies.can_create_alert(alert, settings)

        assert not decision.allowed
        assert decision.reasons == ["quiet_hours"]
        assert decision.governance.quiet_hours
        assert policies.get_today_counts(STUDENT, alert.created_at)[AlertSeverity.CRITICAL] == 0

"""
Pytest configuration and shared fixtures.

Provides test configuration instances, a seeded synthetic data generator,
governance stores and a controllable clock for unit and integration tests.
"""

import random
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import pytest

from src.alerts.schema import AlertEvent, AlertKind, AlertSeverity
from src.core.config import Config
from src.data.schema import BurstEvent, EmotionEntry, TrackingEntry, TrendPoint
from src.governance.policies import AlertPolicies
from src.governance.schema import AlertSettings
from src.governance.storage import InMemoryStore

T0 = datetime(2025, 3, 4, 10, 0, tzinfo=timezone.utc)  # a Tuesday
T0_MS = int(T0.timestamp() * 1000)
HOUR_MS = 3_600_000
MINUTE_MS = 60_000


class SyntheticData:
    """
    Seeded generator for behavioral test data.

    Every method takes an explicit seed so individual Monte Carlo trials are
    reproducible on their own.
    """

    def series(
        self,
        values: List[float],
        start_ms: int = T0_MS,
        step_ms: int = HOUR_MS,
    ) -> List[TrendPoint]:
        return [TrendPoint(start_ms + i * step_ms, float(v)) for i, v in enumerate(values)]

    def gaussian(self, n: int, seed: int, mean: float = 0.0, sigma: float = 1.0) -> List[float]:
        rng = random.Random(seed)
        return [rng.gauss(mean, sigma) for _ in range(n)]

    def step_series(
        self, n: int, step_at: int, step: float, seed: int, sigma: float = 1.0
    ) -> List[TrendPoint]:
        values = self.gaussian(n, seed, 0.0, sigma)
        shifted = [v + step if i >= step_at else v for i, v in enumerate(values)]
        return self.series(shifted)

    def binomial(self, n: int, p: float, seed: int) -> int:
        rng = random.Random(seed)
        return sum(1 for _ in range(n) if rng.random() < p)

    def burst_events(
        self,
        cluster: int,
        background: int,
        seed: int,
        background_span_minutes: float = 30.0,
        cluster_span_minutes: float = 10.0,
    ) -> List[BurstEvent]:
        rng = random.Random(seed)
        center = T0_MS
        events = []
        for _ in range(cluster):
            offset = rng.uniform(0.0, cluster_span_minutes) * MINUTE_MS
            events.append(BurstEvent(int(center + offset), rng.uniform(4.0, 5.0), rng.uniform(3.0, 5.0)))
        for _ in range(background):
            offset = rng.uniform(-background_span_minutes, background_span_minutes) * MINUTE_MS
            events.append(BurstEvent(int(center + offset), rng.uniform(4.0, 5.0)))
        return sorted(events, key=lambda e: e.timestamp)

    def emotion_entries(
        self,
        emotion: str,
        values: List[float],
        start: datetime = T0,
        step: timedelta = timedelta(hours=1),
    ) -> List[EmotionEntry]:
        return [
            EmotionEntry(emotion=emotion, intensity=v, timestamp=start + i * step)
            for i, v in enumerate(values)
        ]

    def tracking_sessions(
        self,
        n: int,
        seed: int,
        noise_effect: bool = True,
        start: datetime = T0,
    ) -> List[TrackingEntry]:
        """
        Sessions with noise readings; when noise_effect is set, loud sessions
        mostly carry high-intensity emotions.
        """
        rng = random.Random(seed)
        sessions = []
        for i in range(n):
            loud = rng.random() < 0.5
            noise = rng.uniform(75.0, 90.0) if loud else rng.uniform(40.0, 60.0)
            if noise_effect:
                high = rng.random() < (0.8 if loud else 0.2)
            else:
                high = rng.random() < 0.5
            intensity = rng.choice([4, 5]) if high else rng.choice([1, 2, 3])
            sessions.append(
                TrackingEntry(
                    id=f"session-{i}",
                    timestamp=start + timedelta(hours=i),
                    emotions=[{"emotion": "frustrated", "intensity": intensity}],
                    environmental_data={"room_conditions": {"noise_level": noise}},
                )
            )
        return sessions


class FixedClock:
    """Controllable clock returning aware UTC datetimes."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def mock_config(tmp_path):
    """
    Fixture providing test configuration with explicit values.

    Ensures tests run consistently regardless of .env settings.
    """
    return Config(log_level="WARNING", logs_dir=tmp_path / "logs")


@pytest.fixture
def synthetic() -> SyntheticData:
    return SyntheticData()


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def policies(memory_store, clock) -> AlertPolicies:
    return AlertPolicies(store=memory_store, clock=clock)


@pytest.fixture
def open_settings() -> AlertSettings:
    """Settings without quiet hours so gates other than time can be exercised."""

    return AlertSettings(student_id="student-1")


@pytest.fixture
def make_alert() -> Callable[..., AlertEvent]:
    """Factory for alert events with sensible defaults."""

    counter = {"n": 0}

    def _make(
        severity: AlertSeverity = AlertSeverity.MODERATE,
        kind: AlertKind = AlertKind.BEHAVIOR_SPIKE,
        created_at: datetime = T0,
        student_id: str = "student-1",
        context_key: str = "emotion:anxious",
        alert_id: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> AlertEvent:
        counter["n"] += 1
        return AlertEvent(
            id=alert_id or f"alert-{counter['n']}",
            student_id=student_id,
            kind=kind,
            severity=severity,
            confidence=0.8,
            created_at=created_at,
            dedupe_key=dedupe_key,
            metadata={"context_key": context_key},
        )

    return _make


def pytest_configure(config):
    """
    Pytest hook for custom configuration.

    Registers custom markers used throughout tests.
    """
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running (deferred CI)"
    )

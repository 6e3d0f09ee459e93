"""
Scoring and severity mapping for alert candidates.

Blends detector impact, confidence, recency and detector tier into one
aggregate score and maps it to a severity with configurable cutoffs.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Sequence

from src.core.config import EngineConfig

from .schema import AlertSeverity, DetectorResult, SourceRef
from .statistics import clamp


def recency_score(latest: datetime, now: datetime, decay_hours: float = 24.0) -> float:
    """
    exp(-hours_since / decay_hours), 1.0 for evidence at or after ``now``.
    """

    hours = (now - latest).total_seconds() / 3600.0
    if hours <= 0:
        return 1.0
    return math.exp(-hours / max(decay_hours, 1e-6))


def aggregate_score(
    impact: float,
    confidence: float,
    recency: float,
    tier: float,
    engine: EngineConfig,
) -> float:
    """
    Weighted blend of the four signals, clamped to [0, 1].
    """

    score = (
        engine.impact_weight * clamp(impact)
        + engine.confidence_weight * clamp(confidence)
        + engine.recency_weight * clamp(recency)
        + engine.tier_weight * clamp(tier)
    )
    return clamp(score)


@dataclass
class SeverityMapper:
    """
    Maps aggregate scores to severity levels.
    """

    engine: EngineConfig

    def severity(self, score: float) -> AlertSeverity:
        if score >= self.engine.critical_cutoff:
            return AlertSeverity.CRITICAL
        if score >= self.engine.important_cutoff:
            return AlertSeverity.IMPORTANT
        if score >= self.engine.moderate_cutoff:
            return AlertSeverity.MODERATE
        return AlertSeverity.LOW


def rank_sources(results: Sequence[DetectorResult], limit: int = 3) -> List[SourceRef]:
    """
    Top sources across results, ordered by the owning result's score * confidence.

    Each returned source is a copy labelled with its rank ("S1", "S2", ...).
    """

    weighted = []
    for result in results:
        weight = result.score * result.confidence
        for source in result.sources:
            weighted.append((weight, source))
    weighted.sort(key=lambda item: item[0], reverse=True)

    ranked = []
    for position, (_, source) in enumerate(weighted[:limit], start=1):
        details = dict(source.details)
        details["rank"] = f"S{position}"
        ranked.append(source.model_copy(update={"details": details}))
    return ranked

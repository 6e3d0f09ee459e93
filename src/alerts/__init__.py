"""
Alerts module: Statistical change detection for per-student behavioral data.

Implements robust baselines, five change detectors (EWMA, CUSUM, Beta-rate,
association, burst), the Tau-U intervention outcome detector and candidate
scoring. The orchestrating engine lives in src.alerts.engine, which also
depends on src.governance.
"""

from .baselines import BaselineService
from .detectors import (
	detect_association,
	detect_beta_rate_shift,
	detect_burst,
	detect_cusum_shift,
	detect_ewma_trend,
	detect_tau_u,
)
from .schema import (
	AlertEvent,
	AlertKind,
	AlertSeverity,
	AlertStatus,
	CusumSide,
	DetectorResult,
	GovernanceStatus,
	MetricKey,
	SourceRef,
	SourceType,
	StudentBaseline,
)
from .scoring import SeverityMapper, aggregate_score, rank_sources, recency_score

__all__ = [
	"BaselineService",
	"StudentBaseline",
	"MetricKey",
	"AlertEvent",
	"AlertKind",
	"AlertSeverity",
	"AlertStatus",
	"CusumSide",
	"DetectorResult",
	"GovernanceStatus",
	"SourceRef",
	"SourceType",
	"detect_ewma_trend",
	"detect_cusum_shift",
	"detect_beta_rate_shift",
	"detect_association",
	"detect_burst",
	"detect_tau_u",
	"SeverityMapper",
	"aggregate_score",
	"rank_sources",
	"recency_score",
]

"""
Application configuration for the Student Alert Sentinel.

Provides environment-aware settings with conservative defaults. Detector
tuning, baseline windows, engine scoring weights and governance limits are all
configurable to avoid hard-coded "magic numbers".
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EwmaConfig(BaseModel):
	"""
	EWMA trend detector defaults.

	Notes:
	- lam: smoothing weight of the newest point (clamped to [0.001, 0.9]).
	- min_points: finite points required before evaluating the chart.
	- recent_window/sustained_required: "k of last n" breach rule.
	"""

	lam: float = Field(0.2, gt=0.0, lt=1.0)
	min_points: int = Field(20, ge=5)
	recent_window: int = Field(5, ge=3)
	sustained_required: int = Field(3, ge=2)


class CusumConfig(BaseModel):
	"""
	CUSUM shift detector defaults.

	Notes:
	- k_factor: reference offset in sigma units (clamped to [0.1, 1.0]).
	- arl_multiplier: in-control ARL target is N * arl_multiplier, so each
	  N-point window carries roughly a 1/arl_multiplier false alarm chance.
	- h_min/h_max: clamp on the derived decision interval multiplier.
	"""

	k_factor: float = Field(0.5, gt=0.0, le=1.0)
	min_points: int = Field(20, ge=5)
	arl_multiplier: float = Field(1000.0, ge=1.0)
	h_min: float = Field(4.0, gt=0.0)
	h_max: float = Field(60.0, gt=0.0)


class BetaRateConfig(BaseModel):
	"""
	Beta-binomial rate shift defaults.

	Notes:
	- delta: minimum rate increase over baseline worth alerting on.
	- probability_threshold: posterior probability required to alert.
	- high_intensity: sensory intensity counted as a "success".
	"""

	delta: float = Field(0.1, ge=0.0, le=0.5)
	min_support: int = Field(5, ge=1)
	probability_threshold: float = Field(0.9, gt=0.5, lt=1.0)
	high_intensity: float = Field(4.0, ge=0.0)


class AssociationConfig(BaseModel):
	"""
	Association detector defaults.

	Notes:
	- high_noise: noise level (dB) treated as exposure.
	- high_emotion: max emotion intensity treated as outcome.
	"""

	min_support: int = Field(5, ge=1)
	high_noise: float = Field(70.0, ge=0.0)
	high_emotion: float = Field(4.0, ge=0.0)


class BurstConfig(BaseModel):
	"""
	Burst detector defaults.

	Notes:
	- min_density_ratio: densest window must hold this many times the count
	  expected under a uniform background.
	- pairing_window_minutes: sensory events within this distance are paired
	  with an emotion event.
	"""

	window_minutes: float = Field(15.0, gt=0.0)
	min_events: int = Field(3, ge=3)
	min_density_ratio: float = Field(2.0, ge=1.0)
	high_intensity: float = Field(4.0, ge=0.0)
	pairing_window_minutes: float = Field(1.0, ge=0.0)


class TauUConfig(BaseModel):
	"""
	Tau-U intervention outcome defaults.

	Notes:
	- baseline_window_days: phase A keeps points this close before the
	  implementation date.
	- min_phase_points: finite points required in each phase.
	- outcome_effect/outcome_p_value: an outcome is improving or worsening
	  only when |effect| and p clear both.
	- min_effect: smaller effects never become alerts.
	"""

	baseline_window_days: int = Field(60, ge=1)
	min_phase_points: int = Field(5, ge=2)
	outcome_effect: float = Field(0.2, ge=0.0, le=1.0)
	outcome_p_value: float = Field(0.1, gt=0.0, le=1.0)
	min_effect: float = Field(0.2, ge=0.0, le=1.0)


class DetectorConfig(BaseModel):
	"""
	Detector suite configuration.

	target_false_alerts_per_n: false-alert denominator N (336 is one false
	alert per 14 days at 24 samples/day).
	"""

	target_false_alerts_per_n: int = Field(336, ge=2)
	ewma: EwmaConfig = EwmaConfig()
	cusum: CusumConfig = CusumConfig()
	beta_rate: BetaRateConfig = BetaRateConfig()
	association: AssociationConfig = AssociationConfig()
	burst: BurstConfig = BurstConfig()
	tau_u: TauUConfig = TauUConfig()


class BaselineConfig(BaseModel):
	"""
	Configuration for baseline estimation.

	Notes:
	- windows: look-back windows in days.
	- min_sessions/min_unique_days: data is sufficient when either is met.
	- outlier_z: robust z-score above which points are dropped.
	- sigma_floor: lower bound for sigma on degenerate input.
	"""

	windows: List[int] = Field(default_factory=lambda: [7, 14, 30])
	min_sessions: int = Field(10, ge=1)
	min_unique_days: int = Field(7, ge=1)
	outlier_z: float = Field(3.5, gt=0.0)
	sigma_floor: float = Field(1e-6, gt=0.0)
	recency_scale_days: float = Field(7.0, gt=0.0)
	high_intensity: float = Field(4.0, ge=0.0)


class EngineConfig(BaseModel):
	"""
	Detection engine scoring configuration.

	Notes:
	- series_limit: most recent points kept per series (clamped to
	  [series_limit_min, series_limit_max]).
	- *_weight: aggregate score blend; they sum to 1.0.
	- sensitivity_scale: divides the detector score per sensitivity level.
	"""

	series_limit: int = Field(365, ge=1)
	series_limit_min: int = Field(10, ge=1)
	series_limit_max: int = Field(10_000, ge=10)

	impact_weight: float = Field(0.4, ge=0.0, le=1.0)
	confidence_weight: float = Field(0.25, ge=0.0, le=1.0)
	recency_weight: float = Field(0.2, ge=0.0, le=1.0)
	tier_weight: float = Field(0.15, ge=0.0, le=1.0)
	recency_decay_hours: float = Field(24.0, gt=0.0)

	critical_cutoff: float = Field(0.85, ge=0.0, le=1.0)
	important_cutoff: float = Field(0.7, ge=0.0, le=1.0)
	moderate_cutoff: float = Field(0.55, ge=0.0, le=1.0)

	min_confidence: float = Field(0.1, ge=0.0, le=1.0)
	max_sources: int = Field(3, ge=1)

	sensitivity_scale: Dict[str, float] = Field(
		default_factory=lambda: {"high": 0.8, "medium": 1.0, "low": 1.25}
	)
	detector_tiers: Dict[str, float] = Field(
		default_factory=lambda: {
			"ewma_cusum": 1.0,
			"single_trend": 0.8,
			"beta_rate": 0.9,
			"association": 0.85,
			"burst": 1.0,
			"tau_u": 1.0,
		}
	)


class GovernanceConfig(BaseModel):
	"""
	Alert governance configuration.

	Notes:
	- namespace: optional prefix for every persisted key.
	- throttle_base_by_severity: exponential backoff base per severity.
	- max_backoff_exponent: attempts beyond this no longer grow the delay.
	- audit_max_entries: audit trail entries kept per student.
	"""

	namespace: str = ""
	dedupe_window_ms: int = Field(60 * 60 * 1000, ge=0)
	max_throttle_delay_ms: int = Field(6 * 60 * 60 * 1000, ge=0)
	max_backoff_exponent: int = Field(10, ge=0)
	audit_max_entries: int = Field(200, ge=1)
	audit_default_limit: int = Field(100, ge=1)

	throttle_base_by_severity: Dict[str, float] = Field(
		default_factory=lambda: {
			"critical": 1.3,
			"important": 1.6,
			"moderate": 2.0,
			"low": 2.5,
		}
	)


class Config(BaseSettings):
	"""
	Global configuration with environment overrides.
	"""

	model_config = SettingsConfigDict(
		env_prefix="ALERTS_",
		env_file=".env",
		env_nested_delimiter="__",
		extra="ignore",
	)

	log_level: str = Field("INFO", description="Default logging level")
	logs_dir: Path = Field(Path("logs"), description="Directory for log files")
	detectors: DetectorConfig = DetectorConfig()
	baselines: BaselineConfig = BaselineConfig()
	engine: EngineConfig = EngineConfig()
	governance: GovernanceConfig = GovernanceConfig()

	def model_post_init(self, __context: object) -> None:
		self.logs_dir.mkdir(parents=True, exist_ok=True)


config = Config()

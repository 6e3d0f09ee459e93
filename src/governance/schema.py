"""
Schema definitions for alert governance.

Settings arrive from an external configuration UI and are never trusted raw:
every model here validates its own fields, and
src.governance.settings.validate_alert_settings drops invalid fields back to
these defaults instead of failing.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

from src.alerts.schema import AlertKind, AlertSeverity, GovernanceStatus, SensitivityLevel

HHMM_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
UNLIMITED_CAP = 2**53 - 1
GLOBAL_STUDENT_ID = "__global__"


def parse_hhmm(value: str) -> int:
    """Minutes after midnight for an "HH:MM" string."""

    match = HHMM_PATTERN.match(value)
    if match is None:
        raise ValueError(f"expected HH:MM, got {value!r}")
    return int(match.group(1)) * 60 + int(match.group(2))


class QuietHours(BaseModel):
    """
    Quiet-hours window.

    Fields:
    - start/end: "HH:MM"; the window crosses midnight when start > end
    - timezone: IANA zone used to read the wall clock (default: the
      timestamp's own offset)
    - days_of_week: optional mask, 0 = Sunday ... 6 = Saturday; for windows
      crossing midnight the day the window started is checked
    """

    start: str = "22:00"
    end: str = "07:00"
    timezone: Optional[str] = None
    days_of_week: Optional[List[int]] = None

    @field_validator("start", "end")
    @classmethod
    def _check_hhmm(cls, value: str) -> str:
        parse_hhmm(value)
        return value

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @field_validator("days_of_week")
    @classmethod
    def _check_days(cls, value: Optional[List[int]]) -> Optional[List[int]]:
        if value is None:
            return value
        invalid = [d for d in value if d < 0 or d > 6]
        if invalid:
            raise ValueError(f"days must be in 0..6, got {invalid}")
        return sorted(set(value))

    @property
    def start_minutes(self) -> int:
        return parse_hhmm(self.start)

    @property
    def end_minutes(self) -> int:
        return parse_hhmm(self.end)

    @property
    def crosses_midnight(self) -> bool:
        return self.start_minutes > self.end_minutes


class DailyCaps(BaseModel):
    """Maximum alerts surfaced per severity per calendar day (UTC)."""

    critical: int = Field(1, ge=0)
    important: int = Field(2, ge=0)
    moderate: int = Field(4, ge=0)
    low: int = Field(UNLIMITED_CAP, ge=0)

    def for_severity(self, severity: AlertSeverity) -> int:
        return getattr(self, AlertSeverity(severity).value)


class SnoozePreferences(BaseModel):
    default_hours: float = Field(24.0, gt=0.0)
    dont_show_again_days: float = Field(7.0, gt=0.0)


class ThrottleSettings(BaseModel):
    """
    Per-severity throttle overrides.

    Missing severities use the configured defaults.
    """

    base_by_severity: Dict[AlertSeverity, float] = Field(default_factory=dict)
    max_delay_by_severity_ms: Dict[AlertSeverity, int] = Field(default_factory=dict)

    @field_validator("base_by_severity")
    @classmethod
    def _check_bases(cls, value: Dict[AlertSeverity, float]) -> Dict[AlertSeverity, float]:
        invalid = {k.value: v for k, v in value.items() if not v > 1.0}
        if invalid:
            raise ValueError(f"backoff base must be > 1, got {invalid}")
        return value

    @field_validator("max_delay_by_severity_ms")
    @classmethod
    def _check_delays(cls, value: Dict[AlertSeverity, int]) -> Dict[AlertSeverity, int]:
        invalid = {k.value: v for k, v in value.items() if v < 0}
        if invalid:
            raise ValueError(f"max delay must be >= 0, got {invalid}")
        return value


def default_sensitivity() -> Dict[AlertKind, SensitivityLevel]:
    return {
        AlertKind.SAFETY: SensitivityLevel.HIGH,
        AlertKind.BEHAVIOR_SPIKE: SensitivityLevel.MEDIUM,
        AlertKind.CONTEXT_ASSOCIATION: SensitivityLevel.MEDIUM,
        AlertKind.INTERVENTION_DUE: SensitivityLevel.MEDIUM,
        AlertKind.DATA_QUALITY: SensitivityLevel.LOW,
        AlertKind.IMPROVEMENT_NOTED: SensitivityLevel.LOW,
        AlertKind.PATTERN_DETECTED: SensitivityLevel.MEDIUM,
    }


class AlertSettings(BaseModel):
    """
    Per-student alert settings.

    Fields:
    - student_id: owner ("__global__" for defaults)
    - quiet_hours: optional quiet window (None disables it)
    - daily_caps: per-severity daily caps
    - sensitivity_by_kind: per-kind sensitivity overrides
    - snooze_preferences: default snooze lengths
    - throttle: optional backoff overrides
    """

    student_id: str = GLOBAL_STUDENT_ID
    quiet_hours: Optional[QuietHours] = None
    daily_caps: DailyCaps = Field(default_factory=DailyCaps)
    sensitivity_by_kind: Dict[AlertKind, SensitivityLevel] = Field(default_factory=default_sensitivity)
    snooze_preferences: SnoozePreferences = Field(default_factory=SnoozePreferences)
    throttle: Optional[ThrottleSettings] = None

    def sensitivity_for(self, kind: AlertKind) -> SensitivityLevel:
        return self.sensitivity_by_kind.get(kind, SensitivityLevel.MEDIUM)


class SettingsValidation(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    normalized: AlertSettings


class PolicyDecision(BaseModel):
    """
    Outcome of the creation gate.

    reasons lists every gate that blocked the alert: snoozed, quiet_hours,
    throttled, cap_exceeded.
    """

    allowed: bool
    reasons: List[str] = Field(default_factory=list)
    governance: GovernanceStatus
    dedupe_key: str


class PolicyAuditEntry(BaseModel):
    """
    Audit record for one creation-gate decision.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    student_id: str
    alert_id: str
    kind: AlertKind
    severity: AlertSeverity
    dedupe_key: str
    allowed: bool
    reasons: List[str] = Field(default_factory=list)
    governance: GovernanceStatus
    decided_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

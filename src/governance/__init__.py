"""
Governance module: Policies deciding whether detected alerts may surface.

Covers deduplication, quiet hours, daily caps, exponential-backoff throttling,
snooze and a bounded audit trail, over a pluggable key-value store.
"""

from .policies import (
	AlertPolicies,
	ThrottlePhase,
	ThrottleState,
	calculate_dedupe_key,
	dedupe_key_for,
	get_throttle_delay_for,
	is_in_quiet_hours,
)
from .schema import (
	AlertSettings,
	DailyCaps,
	PolicyAuditEntry,
	PolicyDecision,
	QuietHours,
	SettingsValidation,
	SnoozePreferences,
	ThrottleSettings,
)
from .settings import (
	PolicyPreset,
	assert_valid_alert_settings,
	default_alert_settings,
	describe_policy,
	get_preset,
	merge_settings,
	validate_alert_settings,
)
from .storage import FileStore, InMemoryStore, KeyValueStore

__all__ = [
	"AlertPolicies",
	"ThrottlePhase",
	"ThrottleState",
	"calculate_dedupe_key",
	"dedupe_key_for",
	"get_throttle_delay_for",
	"is_in_quiet_hours",
	"AlertSettings",
	"DailyCaps",
	"PolicyAuditEntry",
	"PolicyDecision",
	"QuietHours",
	"SettingsValidation",
	"SnoozePreferences",
	"ThrottleSettings",
	"PolicyPreset",
	"assert_valid_alert_settings",
	"default_alert_settings",
	"describe_policy",
	"get_preset",
	"merge_settings",
	"validate_alert_settings",
	"FileStore",
	"InMemoryStore",
	"KeyValueStore",
]

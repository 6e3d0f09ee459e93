"""
Alert governance policies.

Decides whether an alert may surface, on top of the detection engine:
- Deduplication: same student, kind and context within one UTC hour collapse
- Quiet hours: time-of-day window with optional weekday mask
- Daily caps: per-severity counters per calendar day (UTC)
- Throttle: exponential backoff per dedupe key, as an explicit
  Eligible / Scheduled state machine
- Snooze: per-key suppression until an absolute time
- Audit: one bounded entry per creation-gate decision

State lives in a KeyValueStore under
``[{namespace}:]alerts:policy:{student_id}:{throttle|snooze|daily|audit}``.
Storage failures are logged and treated as "no prior state" so a broken store
never suppresses alerts indefinitely.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from src.alerts.schema import AlertEvent, AlertKind, AlertSeverity, GovernanceStatus
from src.core.config import GovernanceConfig, config
from src.core.exceptions import StorageError

from .schema import AlertSettings, PolicyAuditEntry, PolicyDecision, QuietHours
from .settings import SettingsInput, validate_alert_settings
from .storage import InMemoryStore, KeyValueStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
DAILY_RETENTION_DAYS = 7


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _to_ms(ts: datetime) -> int:
    return int(round(_as_utc(ts).timestamp() * 1000))


def _from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def calculate_dedupe_key(
    student_id: str, kind: AlertKind, context_key: str, created_at: datetime
) -> str:
    """
    Deterministic dedupe key for (student, kind, context, UTC hour).

    Returns:
        "dk_" followed by 16 hex characters
    """
    hour = _as_utc(created_at).strftime("%Y-%m-%dT%H")
    raw = f"{student_id}|{AlertKind(kind).value}|{context_key}|{hour}"
    return "dk_" + hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


def dedupe_key_for(alert: AlertEvent) -> str:
    """Precomputed key on the alert wins over recomputation."""

    if alert.dedupe_key:
        return alert.dedupe_key
    return calculate_dedupe_key(alert.student_id, alert.kind, alert.context_key, alert.created_at)


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _sunday_weekday(ts: datetime) -> int:
    """Day of week with 0 = Sunday."""

    return (ts.weekday() + 1) % 7


def is_in_quiet_hours(quiet_hours: Optional[QuietHours], at: datetime) -> bool:
    """
    Check whether a moment falls inside a quiet-hours window.

    Bounds are inclusive. For windows crossing midnight the weekday mask is
    checked against the day the window started: the current day in the
    evening part and the previous day in the morning part.
    """
    if quiet_hours is None:
        return False
    local = _as_utc(at) if at.tzinfo is None else at
    if quiet_hours.timezone:
        local = local.astimezone(ZoneInfo(quiet_hours.timezone))

    minutes = local.hour * 60 + local.minute
    start = quiet_hours.start_minutes
    end = quiet_hours.end_minutes
    today = _sunday_weekday(local)

    if not quiet_hours.crosses_midnight:
        if not start <= minutes <= end:
            return False
        window_day = today
    elif minutes >= start:
        window_day = today
    elif minutes <= end:
        window_day = (today + 6) % 7
    else:
        return False

    days = quiet_hours.days_of_week
    if not days:
        return True
    return window_day in days


def _throttle_params(
    severity: AlertSeverity,
    settings: Optional[AlertSettings],
    governance_config: GovernanceConfig,
) -> Tuple[float, int]:
    severity = AlertSeverity(severity)
    base = governance_config.throttle_base_by_severity.get(severity.value, 2.0)
    cap = governance_config.max_throttle_delay_ms
    overrides = settings.throttle if settings is not None else None
    if overrides is not None:
        base = overrides.base_by_severity.get(severity, base)
        per_severity = overrides.max_delay_by_severity_ms.get(severity)
        if per_severity is not None and per_severity > 0:
            cap = min(cap, per_severity)
    return base, cap


def get_throttle_delay_for(
    severity: AlertSeverity,
    attempts: int,
    settings: Optional[AlertSettings] = None,
    governance_config: Optional[GovernanceConfig] = None,
) -> int:
    """
    Exponential backoff delay in milliseconds.

    delay = min(cap, base ** min(max_exponent, attempts) * 1000)
    """
    governance_config = governance_config or config.governance
    base, cap = _throttle_params(severity, settings, governance_config)
    exponent = min(governance_config.max_backoff_exponent, max(0, int(attempts)))
    return int(min(cap, (base ** exponent) * 1000))


class ThrottlePhase(str, Enum):
    ELIGIBLE = "eligible"
    SCHEDULED = "scheduled"


@dataclass
class ThrottleState:
    """
    Persisted throttle state for one dedupe key.

    Fields:
    - attempts: surfacings counted toward the backoff exponent
    - until_ms: end of the current schedule (None when eligible)
    - last_until_ms: end of the previous schedule; new schedules never start
      before it
    - last_seen_ms: last time the key surfaced (drives the attempt cooldown)
    """

    attempts: int = 0
    until_ms: Optional[int] = None
    last_until_ms: Optional[int] = None
    last_seen_ms: Optional[int] = None

    @property
    def phase(self) -> ThrottlePhase:
        return ThrottlePhase.SCHEDULED if self.until_ms is not None else ThrottlePhase.ELIGIBLE

    @classmethod
    def from_dict(cls, raw: Any) -> "ThrottleState":
        """Rebuild from persisted JSON; fields that are not integers reset to defaults."""

        if not isinstance(raw, dict):
            return cls()
        attempts = _int_or_none(raw.get("attempts"))
        return cls(
            attempts=max(0, attempts) if attempts is not None else 0,
            until_ms=_int_or_none(raw.get("until_ms")),
            last_until_ms=_int_or_none(raw.get("last_until_ms")),
            last_seen_ms=_int_or_none(raw.get("last_seen_ms")),
        )


class AlertPolicies:
    """
    Governance gate for alert creation.

    Notes:
    - Every read-modify-write on the store runs under one re-entrant lock, so
      two alerts evaluated concurrently cannot both pass a cap check before
      either is counted.
    - Throttle schedules and snooze expirations only move forward, except
      through reset_throttle and clear_snooze.
    - The clock is injectable for tests; it must return aware datetimes.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        clock: Optional[Clock] = None,
        governance_config: Optional[GovernanceConfig] = None,
    ):
        self.store = store if store is not None else InMemoryStore()
        self.clock = clock or utc_now
        self.config = governance_config or config.governance
        self._lock = threading.RLock()

    # --------------------
    # Storage helpers
    # --------------------

    def _key(self, student_id: str, suffix: str) -> str:
        ns = f"{self.config.namespace}:" if self.config.namespace else ""
        return f"{ns}alerts:policy:{student_id}:{suffix}"

    def _read(self, key: str, default: Any) -> Any:
        try:
            raw = self.store.get(key)
            if raw is None:
                return default
            value = json.loads(raw.decode("utf-8"))
        except (StorageError, OSError) as exc:
            logger.warning("Failed to read policy state %s: %s", key, exc)
            return default
        except ValueError as exc:
            logger.warning("Discarding corrupt policy state %s: %s", key, exc)
            return default
        if not isinstance(value, type(default)):
            logger.warning("Discarding policy state %s with unexpected shape", key)
            return default
        return value

    def _write(self, key: str, value: Any) -> None:
        try:
            self.store.set(key, json.dumps(value, separators=(",", ":")).encode("utf-8"))
        except (StorageError, OSError) as exc:
            logger.warning("Failed to write policy state %s: %s", key, exc)

    def _now(self) -> datetime:
        return _as_utc(self.clock())

    # --------------------
    # Dedupe and quiet hours
    # --------------------

    def calculate_dedupe_key(self, alert: AlertEvent) -> str:
        return dedupe_key_for(alert)

    def is_in_quiet_hours(self, settings: SettingsInput = None, at: Optional[datetime] = None) -> bool:
        normalized = validate_alert_settings(settings).normalized
        return is_in_quiet_hours(normalized.quiet_hours, at or self._now())

    def apply_quiet_hours(
        self, alerts: Sequence[AlertEvent], settings: SettingsInput = None
    ) -> List[AlertEvent]:
        """Annotate each alert with governance.quiet_hours at its creation time."""

        quiet = validate_alert_settings(settings).normalized.quiet_hours
        return [
            self.merge_governance(alert, quiet_hours=is_in_quiet_hours(quiet, alert.created_at))
            for alert in alerts
        ]

    @staticmethod
    def merge_governance(alert: AlertEvent, **updates: Any) -> AlertEvent:
        """Copy of alert with the passed governance fields overridden."""

        current = alert.governance or GovernanceStatus()
        return alert.model_copy(update={"governance": current.merge(**updates)})

    def deduplicate_alerts(
        self,
        alerts: Sequence[AlertEvent],
        window_ms: Optional[int] = None,
        include_suppressed: bool = False,
    ) -> List[AlertEvent]:
        """
        Collapse alerts sharing a dedupe key within the window.

        The winner is the higher severity, ties going to the most recent. It is
        marked has_duplicates; absorbed alerts are marked deduplicated and only
        returned (after the survivors) when include_suppressed is set.
        """
        window_ms = self.config.dedupe_window_ms if window_ms is None else window_ms
        ordered = sorted(alerts, key=lambda a: _to_ms(a.created_at))
        survivors: List[AlertEvent] = []
        suppressed: List[AlertEvent] = []
        last_by_key: Dict[str, int] = {}

        for alert in ordered:
            key = dedupe_key_for(alert)
            current = self.merge_governance(alert, deduplicated=False, has_duplicates=False)
            index = last_by_key.get(key)
            if index is None:
                survivors.append(current)
                last_by_key[key] = len(survivors) - 1
                continue

            previous = survivors[index]
            prev_ms = _to_ms(previous.created_at)
            curr_ms = _to_ms(current.created_at)
            if abs(curr_ms - prev_ms) > window_ms:
                survivors.append(current)
                last_by_key[key] = len(survivors) - 1
                continue

            prev_rank = previous.severity.rank
            curr_rank = current.severity.rank
            if curr_rank > prev_rank or (curr_rank == prev_rank and curr_ms >= prev_ms):
                winner, loser = current, previous
            else:
                winner, loser = previous, current
            survivors[index] = self.merge_governance(winner, has_duplicates=True, deduplicated=False)
            suppressed.append(self.merge_governance(loser, deduplicated=True, has_duplicates=False))

        if include_suppressed:
            return survivors + suppressed
        return survivors

    # --------------------
    # Throttle
    # --------------------

    def _load_throttles(self, student_id: str) -> Dict[str, Any]:
        return self._read(self._key(student_id, "throttle"), {})

    def _throttle_step(
        self, alert: AlertEvent, settings: Optional[AlertSettings], commit: bool
    ) -> Tuple[bool, Optional[datetime]]:
        key = dedupe_key_for(alert)
        states = self._load_throttles(alert.student_id)
        state = ThrottleState.from_dict(states.get(key))
        now_ms = _to_ms(self._now())

        if state.phase is ThrottlePhase.SCHEDULED:
            if now_ms < state.until_ms:
                return True, _from_ms(state.until_ms)
            state.last_until_ms = state.until_ms
            state.until_ms = None

        _, max_delay = _throttle_params(alert.severity, settings, self.config)
        if state.last_seen_ms is not None and now_ms - state.last_seen_ms > max_delay:
            state.attempts = 0

        if commit:
            delay = get_throttle_delay_for(alert.severity, state.attempts, settings, self.config)
            state.until_ms = max(now_ms, state.last_until_ms or 0) + delay
            state.attempts += 1
            state.last_seen_ms = now_ms
            states[key] = asdict(state)
            self._write(self._key(alert.student_id, "throttle"), states)
            logger.debug(
                "Throttle scheduled: student=%s key=%s attempts=%d delay_ms=%d",
                alert.student_id, key, state.attempts, delay,
            )
        return False, None

    def get_throttle_delay_for(self, alert: AlertEvent, settings: SettingsInput = None) -> int:
        """Delay the next surfacing of this alert's key would schedule."""

        normalized = validate_alert_settings(settings).normalized
        state = ThrottleState.from_dict(self._load_throttles(alert.student_id).get(dedupe_key_for(alert)))
        return get_throttle_delay_for(alert.severity, state.attempts, normalized, self.config)

    def should_throttle(
        self, alert: AlertEvent, settings: SettingsInput = None, commit: bool = True
    ) -> Tuple[bool, Optional[datetime]]:
        """
        Evaluate and advance the throttle state machine for an alert's key.

        Eligible keys pass and, when commit is set, are scheduled for
        ``max(now, previous until) + delay(attempts)``. Scheduled keys are
        throttled until the schedule elapses; the schedule is never
        recomputed while active.

        Returns:
            (throttled, next_eligible_at)
        """
        normalized = validate_alert_settings(settings).normalized
        with self._lock:
            return self._throttle_step(alert, normalized, commit)

    def reset_throttle(self, student_id: str, dedupe_key: str) -> None:
        with self._lock:
            states = self._load_throttles(student_id)
            if states.pop(dedupe_key, None) is not None:
                self._write(self._key(student_id, "throttle"), states)

    # --------------------
    # Daily caps
    # --------------------

    def _load_daily(self, student_id: str) -> Dict[str, Dict[str, int]]:
        return self._read(self._key(student_id, "daily"), {})

    def _counts_for(self, daily: Dict[str, Dict[str, int]], day: str) -> Dict[AlertSeverity, int]:
        stored = daily.get(day)
        if not isinstance(stored, dict):
            stored = {}
        counts = {}
        for severity in AlertSeverity:
            value = _int_or_none(stored.get(severity.value))
            counts[severity] = max(0, value) if value is not None else 0
        return counts

    def get_today_counts(self, student_id: str, at: Optional[datetime] = None) -> Dict[AlertSeverity, int]:
        """Per-severity counts of alerts created on the UTC day of ``at`` (default now)."""

        day = _as_utc(at or self._now()).date().isoformat()
        return self._counts_for(self._load_daily(student_id), day)

    def record_alert_created(self, alert: AlertEvent) -> None:
        """Count an alert against its creation day; only the last few days are kept."""

        with self._lock:
            daily = self._load_daily(alert.student_id)
            day = _as_utc(alert.created_at).date().isoformat()
            counts = {s.value: n for s, n in self._counts_for(daily, day).items() if n}
            counts[alert.severity.value] = counts.get(alert.severity.value, 0) + 1
            daily[day] = counts
            for stale in sorted(daily)[:-DAILY_RETENTION_DAYS]:
                del daily[stale]
            self._write(self._key(alert.student_id, "daily"), daily)

    def enforce_cap_limits(
        self,
        alerts: Sequence[AlertEvent],
        settings: SettingsInput = None,
        existing_counts: Optional[Dict[AlertSeverity, int]] = None,
    ) -> List[AlertEvent]:
        """
        Mark alerts beyond their severity's daily cap, preserving input order.

        Alerts are processed in creation order with one running counter per
        (day, severity), seeded from persisted counts (or existing_counts).
        Only alerts within the cap consume it. Nothing is persisted.
        """
        if not alerts:
            return []
        caps = validate_alert_settings(settings).normalized.daily_caps

        with self._lock:
            daily_by_student: Dict[str, Dict[str, Dict[str, int]]] = {}
            running: Dict[Tuple[str, str, AlertSeverity], int] = {}
            flags: Dict[int, bool] = {}

            order = sorted(range(len(alerts)), key=lambda i: _to_ms(alerts[i].created_at))
            for i in order:
                alert = alerts[i]
                day = _as_utc(alert.created_at).date().isoformat()
                counter = (alert.student_id, day, alert.severity)
                if counter not in running:
                    if existing_counts is not None:
                        seed = existing_counts.get(alert.severity, 0)
                    else:
                        if alert.student_id not in daily_by_student:
                            daily_by_student[alert.student_id] = self._load_daily(alert.student_id)
                        seed = self._counts_for(daily_by_student[alert.student_id], day)[alert.severity]
                    running[counter] = seed

                exceeded = running[counter] >= caps.for_severity(alert.severity)
                flags[i] = exceeded
                if not exceeded:
                    running[counter] += 1

        return [self.merge_governance(alert, cap_exceeded=flags[i]) for i, alert in enumerate(alerts)]

    # --------------------
    # Snooze
    # --------------------

    def _load_snoozes(self, student_id: str) -> Dict[str, int]:
        return self._read(self._key(student_id, "snooze"), {})

    def snooze(
        self,
        student_id: str,
        dedupe_key: str,
        hours: Optional[float] = None,
        settings: SettingsInput = None,
    ) -> datetime:
        """
        Suppress a dedupe key for a number of hours.

        Defaults to the settings' snooze preference. An existing later
        expiration is kept.

        Returns:
            Effective snooze expiration
        """
        if hours is None:
            hours = validate_alert_settings(settings).normalized.snooze_preferences.default_hours
        until_ms = _to_ms(self._now() + timedelta(hours=float(hours)))
        with self._lock:
            snoozes = self._load_snoozes(student_id)
            existing = snoozes.get(dedupe_key)
            if isinstance(existing, int) and existing > until_ms:
                until_ms = existing
            snoozes[dedupe_key] = until_ms
            self._write(self._key(student_id, "snooze"), snoozes)
        logger.info("Snoozed %s for student %s until %s", dedupe_key, student_id, _from_ms(until_ms))
        return _from_ms(until_ms)

    def dont_show_for_days(
        self,
        student_id: str,
        dedupe_key: str,
        days: Optional[float] = None,
        settings: SettingsInput = None,
    ) -> datetime:
        if days is None:
            days = validate_alert_settings(settings).normalized.snooze_preferences.dont_show_again_days
        return self.snooze(student_id, dedupe_key, hours=float(days) * 24.0)

    def is_snoozed(self, student_id: str, dedupe_key: str, at: Optional[datetime] = None) -> bool:
        until_ms = self._load_snoozes(student_id).get(dedupe_key)
        if not isinstance(until_ms, int):
            return False
        return until_ms > _to_ms(at or self._now())

    def clear_snooze(self, student_id: str, dedupe_key: str) -> None:
        with self._lock:
            snoozes = self._load_snoozes(student_id)
            if snoozes.pop(dedupe_key, None) is not None:
                self._write(self._key(student_id, "snooze"), snoozes)

    # --------------------
    # Creation gate
    # --------------------

    def can_create_alert(self, alert: AlertEvent, settings: SettingsInput = None) -> PolicyDecision:
        """
        Single entrypoint composing every gate.

        The alert is allowed iff it is not snoozed, was not created inside
        quiet hours, is not throttled and is within its daily cap. Flags from
        earlier passes (deduplication) carry through to the decision. An
        allowed alert schedules its throttle and counts against the cap. One
        audit entry is written either way.
        """
        validation = validate_alert_settings(settings)
        normalized = validation.normalized
        key = dedupe_key_for(alert)

        with self._lock:
            now = self._now()
            snoozed = self.is_snoozed(alert.student_id, key, now)
            quiet = is_in_quiet_hours(normalized.quiet_hours, alert.created_at)
            throttled, next_eligible_at = self._throttle_step(alert, normalized, commit=False)
            day = _as_utc(alert.created_at).date().isoformat()
            count = self._counts_for(self._load_daily(alert.student_id), day)[alert.severity]
            cap_exceeded = count >= normalized.daily_caps.for_severity(alert.severity)

            reasons = []
            if snoozed:
                reasons.append("snoozed")
            if quiet:
                reasons.append("quiet_hours")
            if throttled:
                reasons.append("throttled")
            if cap_exceeded:
                reasons.append("cap_exceeded")
            allowed = not reasons

            if allowed:
                self._throttle_step(alert, normalized, commit=True)
                self.record_alert_created(alert)

            governance = (alert.governance or GovernanceStatus()).merge(
                snoozed=snoozed,
                quiet_hours=quiet,
                throttled=throttled,
                cap_exceeded=cap_exceeded,
                next_eligible_at=next_eligible_at,
            )
            self._audit(
                PolicyAuditEntry(
                    student_id=alert.student_id,
                    alert_id=alert.id,
                    kind=alert.kind,
                    severity=alert.severity,
                    dedupe_key=key,
                    allowed=allowed,
                    reasons=reasons,
                    governance=governance,
                    decided_at=now,
                )
            )

        if allowed:
            logger.debug("Alert %s allowed by policies", alert.id)
        else:
            logger.debug("Alert %s blocked by policies: %s", alert.id, reasons)
        return PolicyDecision(allowed=allowed, reasons=reasons, governance=governance, dedupe_key=key)

    # --------------------
    # Audit
    # --------------------

    def _audit(self, entry: PolicyAuditEntry) -> None:
        key = self._key(entry.student_id, "audit")
        entries = self._read(key, [])
        entries.append(entry.model_dump(mode="json"))
        if len(entries) > self.config.audit_max_entries:
            entries = entries[-self.config.audit_max_entries:]
        self._write(key, entries)

    def get_audit_trail(self, student_id: str, limit: Optional[int] = None) -> List[PolicyAuditEntry]:
        """
        Recent audit entries, most recent last.

        A limit of zero or less returns every retained entry.
        """
        limit = self.config.audit_default_limit if limit is None else limit
        raw = self._read(self._key(student_id, "audit"), [])
        if limit > 0:
            raw = raw[-limit:]
        entries = []
        for item in raw:
            try:
                entries.append(PolicyAuditEntry.model_validate(item))
            except ValidationError as exc:
                logger.warning("Skipping malformed audit entry for %s: %s", student_id, exc)
        return entries

    def clear_audit_trail(self, student_id: str) -> None:
        with self._lock:
            self._write(self._key(student_id, "audit"), [])

    def export_audit_trail(self, student_id: str, limit: Optional[int] = None) -> str:
        """Audit trail as a JSON array string."""

        entries = self.get_audit_trail(student_id, limit)
        return json.dumps([entry.model_dump(mode="json") for entry in entries])

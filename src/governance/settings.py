"""
Alert settings validation, presets and merging.

Settings come from an external configuration UI. They are validated one
section at a time: an invalid field is reported and replaced by its default
while the rest of the section is kept, so a single typo never disables
governance altogether.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from src.alerts.schema import AlertKind, SensitivityLevel
from src.core.exceptions import ConfigurationError, SettingsValidationError

from .schema import (
    GLOBAL_STUDENT_ID,
    UNLIMITED_CAP,
    AlertSettings,
    DailyCaps,
    QuietHours,
    SettingsValidation,
    SnoozePreferences,
    ThrottleSettings,
    default_sensitivity,
)

logger = logging.getLogger(__name__)

SettingsInput = Union[AlertSettings, Mapping[str, Any], None]
M = TypeVar("M", bound=BaseModel)


def _format_error(path: str, err: Dict[str, Any]) -> str:
    loc = ".".join(str(part) for part in err.get("loc", ()))
    where = f"{path}.{loc}" if loc else path
    return f"{where}: {err.get('msg', 'invalid value')}"


def _validate_section(
    model: Type[M], raw: Any, path: str, errors: List[str]
) -> M:
    """
    Validate one settings section, dropping only the offending fields.

    Args:
        model: Section model class
        raw: Raw section value (mapping, model instance or None)
        path: Section name used in error messages
        errors: Error list appended to in place

    Returns:
        Validated section, with invalid fields reset to defaults
    """
    if raw is None:
        return model()
    if isinstance(raw, model):
        raw = raw.model_dump()
    if not isinstance(raw, Mapping):
        errors.append(f"{path}: must be an object")
        return model()

    data = dict(raw)
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        for err in exc.errors():
            errors.append(_format_error(path, err))
            loc = err.get("loc") or ()
            if loc:
                data.pop(loc[0], None)

    try:
        return model.model_validate(data)
    except ValidationError as exc:
        errors.extend(_format_error(path, err) for err in exc.errors())
        return model()


def _validate_quiet_hours(raw: Any, errors: List[str]) -> Optional[QuietHours]:
    if raw is None:
        return None
    if isinstance(raw, QuietHours):
        return raw
    if not isinstance(raw, Mapping):
        errors.append("quiet_hours: must be an object")
        return None

    data = dict(raw)
    # A window without valid bounds is meaningless: disable it.
    try:
        QuietHours.model_validate({"start": data.get("start"), "end": data.get("end")})
    except ValidationError:
        errors.append("quiet_hours: start and end must be valid HH:MM times")
        return None

    days = data.get("days_of_week")
    if days is not None:
        if isinstance(days, (list, tuple, set)):
            kept = [d for d in days if isinstance(d, int) and not isinstance(d, bool) and 0 <= d <= 6]
            if len(kept) != len(days):
                errors.append("quiet_hours.days_of_week: days must be integers in 0..6")
            data["days_of_week"] = kept or None
        else:
            errors.append("quiet_hours.days_of_week: must be a list of integers")
            data["days_of_week"] = None

    return _validate_section(QuietHours, data, "quiet_hours", errors)


def _validate_sensitivity(raw: Any, errors: List[str]) -> Dict[AlertKind, SensitivityLevel]:
    merged = default_sensitivity()
    if raw is None:
        return merged
    if not isinstance(raw, Mapping):
        errors.append("sensitivity_by_kind: must be an object")
        return merged

    for kind, level in raw.items():
        try:
            merged[AlertKind(kind)] = SensitivityLevel(level)
        except ValueError:
            errors.append(f"sensitivity_by_kind.{kind}: invalid kind or level {level!r}")
    return merged


def validate_alert_settings(settings: SettingsInput = None) -> SettingsValidation:
    """
    Validate and normalize alert settings.

    Args:
        settings: Candidate settings (model, partial mapping or None)

    Returns:
        SettingsValidation with the error list and normalized settings; the
        normalized settings are always usable
    """
    errors: List[str] = []
    if settings is None:
        return SettingsValidation(is_valid=True, errors=[], normalized=AlertSettings())
    if isinstance(settings, AlertSettings):
        raw: Mapping[str, Any] = settings.model_dump()
    elif isinstance(settings, Mapping):
        raw = settings
    else:
        errors.append("settings: must be an object")
        return SettingsValidation(is_valid=False, errors=errors, normalized=AlertSettings())

    student_id = raw.get("student_id", GLOBAL_STUDENT_ID)
    if not isinstance(student_id, str) or not student_id.strip():
        errors.append("student_id: must be a non-empty string")
        student_id = GLOBAL_STUDENT_ID

    throttle = None
    if raw.get("throttle") is not None:
        throttle = _validate_section(ThrottleSettings, raw.get("throttle"), "throttle", errors)

    normalized = AlertSettings(
        student_id=student_id,
        quiet_hours=_validate_quiet_hours(raw.get("quiet_hours"), errors),
        daily_caps=_validate_section(DailyCaps, raw.get("daily_caps"), "daily_caps", errors),
        sensitivity_by_kind=_validate_sensitivity(raw.get("sensitivity_by_kind"), errors),
        snooze_preferences=_validate_section(
            SnoozePreferences, raw.get("snooze_preferences"), "snooze_preferences", errors
        ),
        throttle=throttle,
    )

    if errors:
        logger.warning("Alert settings for %s failed validation: %s", student_id, errors)
    return SettingsValidation(is_valid=not errors, errors=errors, normalized=normalized)


def assert_valid_alert_settings(settings: SettingsInput = None) -> AlertSettings:
    """
    Validate settings and return the normalized model.

    Raises:
        SettingsValidationError: If any field is invalid
    """
    result = validate_alert_settings(settings)
    if not result.is_valid:
        raise SettingsValidationError(result.errors)
    return result.normalized


def default_alert_settings(student_id: str = GLOBAL_STUDENT_ID) -> AlertSettings:
    """Defaults used by the configuration UI: quiet hours 22:00-07:00."""

    return AlertSettings(
        student_id=student_id,
        quiet_hours=QuietHours(start="22:00", end="07:00"),
    )


class PolicyPreset(str, Enum):
    ELEMENTARY = "elementary"
    MIDDLE = "middle"
    HIGHSCHOOL = "highschool"
    SPECIAL_NEEDS = "special_needs"


_PRESET_OVERRIDES: Dict[PolicyPreset, Dict[str, Any]] = {
    PolicyPreset.ELEMENTARY: {
        "daily_caps": {"critical": 1, "important": 2, "moderate": 3, "low": 6},
        "quiet_hours": {"start": "19:00", "end": "07:00"},
    },
    PolicyPreset.MIDDLE: {
        "daily_caps": {"critical": 1, "important": 2, "moderate": 4, "low": 8},
        "quiet_hours": {"start": "21:00", "end": "07:00"},
    },
    PolicyPreset.HIGHSCHOOL: {
        "daily_caps": {"critical": 1, "important": 2, "moderate": 5, "low": 10},
        "quiet_hours": {"start": "22:00", "end": "07:00"},
    },
    PolicyPreset.SPECIAL_NEEDS: {
        "daily_caps": {"critical": 1, "important": 2, "moderate": 3, "low": 4},
        "quiet_hours": {"start": "18:00", "end": "08:00"},
        "snooze_preferences": {"default_hours": 36, "dont_show_again_days": 10},
    },
}


def get_preset(preset: Union[PolicyPreset, str], student_id: str = GLOBAL_STUDENT_ID) -> AlertSettings:
    """
    Settings preset for a school level.

    Raises:
        ConfigurationError: If the preset name is unknown
    """
    try:
        key = PolicyPreset(preset)
    except ValueError as exc:
        raise ConfigurationError(f"Unknown policy preset: {preset!r}") from exc
    return merge_settings(default_alert_settings(student_id), _PRESET_OVERRIDES[key])


def _deep_merge(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(result.get(key), Mapping):
            result[key] = _deep_merge(dict(result[key]), value)
        else:
            result[key] = value
    return result


def merge_settings(
    base: AlertSettings, overrides: Union[AlertSettings, Mapping[str, Any], None] = None
) -> AlertSettings:
    """
    Deep-merge overrides onto base settings, then normalize.

    Model overrides contribute only the fields that were explicitly set.
    """
    if overrides is None:
        return base
    if isinstance(overrides, AlertSettings):
        overrides = overrides.model_dump(mode="json", exclude_unset=True)
    merged = _deep_merge(base.model_dump(mode="json"), overrides)
    return validate_alert_settings(merged).normalized


def describe_policy(settings: AlertSettings) -> str:
    """Human-readable summary of quiet hours, caps and snooze defaults."""

    parts = []
    if settings.quiet_hours is not None:
        parts.append(f"Quiet hours from {settings.quiet_hours.start} to {settings.quiet_hours.end}.")
    caps = settings.daily_caps
    low = "unlimited" if caps.low >= UNLIMITED_CAP else str(caps.low)
    parts.append(
        f"Daily caps: critical {caps.critical}, important {caps.important}, "
        f"moderate {caps.moderate}, low {low}."
    )
    snooze = settings.snooze_preferences
    parts.append(
        f"Default snooze: {snooze.default_hours:g}h; "
        f"don't show again: {snooze.dont_show_again_days:g} days."
    )
    return " ".join(parts)

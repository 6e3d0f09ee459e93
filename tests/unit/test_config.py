"""
Unit tests for configuration and logging setup.
"""

import logging

from src.core.config import Config
from src.core.exceptions import (
    AlertEngineError,
    BaselineError,
    DetectorError,
    SettingsValidationError,
    StorageError,
)
from src.core.logging_config import setup_logging


class TestConfig:
    """Test the settings object and its nested sections."""

    def test_defaults(self, mock_config):
        assert mock_config.log_level == "WARNING"
        assert mock_config.engine.series_limit == 365
        assert mock_config.detectors.target_false_alerts_per_n == 336
        assert mock_config.detectors.cusum.k_factor == 0.5
        assert mock_config.detectors.ewma.lam == 0.2
        assert mock_config.detectors.tau_u.baseline_window_days == 60
        assert mock_config.detectors.tau_u.min_phase_points == 5
        assert mock_config.governance.throttle_base_by_severity["critical"] == 1.3
        assert mock_config.governance.audit_max_entries == 200

    def test_scoring_weights_sum_to_one(self, mock_config):
        engine = mock_config.engine
        total = engine.impact_weight + engine.confidence_weight + engine.recency_weight + engine.tier_weight
        assert abs(total - 1.0) < 1e-9

    def test_logs_dir_is_created(self, tmp_path):
        target = tmp_path / "nested" / "logs"
        Config(logs_dir=target)
        assert target.is_dir()

    def test_nested_environment_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("ALERTS_ENGINE__SERIES_LIMIT", "500")
        monkeypatch.setenv("ALERTS_GOVERNANCE__NAMESPACE", "school-a")
        settings = Config(logs_dir=tmp_path)
        assert settings.engine.series_limit == 500
        assert settings.governance.namespace == "school-a"


class TestExceptions:
    """Test the exception taxonomy."""

    def test_hierarchy(self):
        assert issubclass(StorageError, AlertEngineError)
        assert issubclass(SettingsValidationError, AlertEngineError)
        assert issubclass(DetectorError, AlertEngineError)
        assert issubclass(DetectorError, ValueError)
        assert issubclass(BaselineError, ValueError)

    def test_settings_validation_error_carries_errors(self):
        error = SettingsValidationError(["daily_caps.low: bad", "quiet_hours: bad"])
        assert error.errors == ["daily_caps.low: bad", "quiet_hours: bad"]
        assert "daily_caps.low" in str(error)


def test_setup_logging_attaches_console_and_file(tmp_path):
    logger = setup_logging("src.config_test", level="DEBUG", logs_dir=tmp_path)
    try:
        kinds = {type(h).__name__ for h in logger.handlers}
        assert kinds == {"StreamHandler", "RotatingFileHandler"}
        assert logger.level == logging.DEBUG

        logger.info("hello")
        for handler in logger.handlers:
            handler.flush()
        assert "hello" in (tmp_path / "src_config_test.log").read_text()

        # A second call must not duplicate handlers
        assert len(setup_logging("src.config_test", logs_dir=tmp_path).handlers) == 2
    finally:
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)

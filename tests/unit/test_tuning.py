"""
Unit tests for control-limit tuning helpers.
"""

import pytest

from src.alerts.schema import CusumSide
from src.alerts.tuning import (
    clamp_k_factor,
    clamp_lambda,
    control_limit_multiplier,
    cusum_decision_interval,
    quality_adjustment,
    siegmund_arl,
)


def test_lambda_and_k_factor_clamping():
    assert clamp_lambda(0.0) == pytest.approx(1e-3)
    assert clamp_lambda(5.0) == pytest.approx(0.9)
    assert clamp_lambda(float("nan"), default=0.3) == 0.3
    assert clamp_k_factor(0.01) == pytest.approx(0.1)
    assert clamp_k_factor(3.0) == pytest.approx(1.0)


def test_control_limit_multiplier_for_default_target():
    z = control_limit_multiplier(336)
    assert 2.9 < z < 3.05


def test_control_limit_multiplier_is_bounded():
    assert control_limit_multiplier(2) == pytest.approx(2.0)
    assert control_limit_multiplier(10**12) == pytest.approx(5.0)


@pytest.mark.parametrize(
    "quality, expected",
    [(None, 1.0), (0.0, 1.25), (0.3, 1.125), (0.75, 1.0), (1.0, 0.95)],
)
def test_quality_adjustment(quality, expected):
    assert quality_adjustment(quality) == pytest.approx(expected)


def test_decision_interval_meets_arl_target():
    h = cusum_decision_interval(0.5, 336)
    assert 10.5 < h < 11.3
    assert siegmund_arl(h, 0.5) == pytest.approx(336 * 1000, rel=0.01)


def test_two_sided_decision_interval_is_wider():
    upper = cusum_decision_interval(0.5, 336, sided=CusumSide.UPPER)
    both = cusum_decision_interval(0.5, 336, sided=CusumSide.BOTH)
    assert both > upper
    assert siegmund_arl(both, 0.5) == pytest.approx(2 * 336 * 1000, rel=0.01)


def test_low_quality_widens_decision_interval():
    neutral = cusum_decision_interval(0.5, 336)
    widened = cusum_decision_interval(0.5, 336, baseline_quality_score=0.0)
    assert widened == pytest.approx(neutral * 1.25)


def test_decision_interval_is_clamped():
    assert cusum_decision_interval(1.0, 2, arl_multiplier=1.0) == pytest.approx(4.0)
    assert cusum_decision_interval(0.1, 10**6, h_max=20.0) == pytest.approx(20.0)

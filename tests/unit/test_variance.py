import math

import pytest

from sensor_recon.core.domain.variance import (
    Classification,
    auto_reject_reason,
    classify,
    has_server_data,
    variance_pct,
)
from sensor_recon.utils.exceptions import ValidationError


@pytest.mark.parametrize(
    "server, expected",
    [
        (104.0, Classification.PRE_VERIFIED),
        (96.0, Classification.PRE_VERIFIED),
        (107.0, Classification.NEEDS_MANUAL_REVIEW),
        (115.0, Classification.AUTO_REJECT),
        (80.0, Classification.AUTO_REJECT),
    ],
)
def test_classify_reference_values(server, expected):
    assert classify(100.0, server) is expected


def test_thresholds_are_strict():
    # exactly 5% is not pre-verified, exactly 10% is not rejected
    assert variance_pct(100.0, 105.0) == pytest.approx(5.0)
    assert classify(100.0, 105.0) is Classification.NEEDS_MANUAL_REVIEW
    assert variance_pct(100.0, 110.0) == pytest.approx(10.0)
    assert classify(100.0, 110.0) is Classification.NEEDS_MANUAL_REVIEW


def test_just_past_thresholds():
    assert classify(100.0, 104.99) is Classification.PRE_VERIFIED
    assert classify(100.0, 110.01) is Classification.AUTO_REJECT


@pytest.mark.parametrize("server", [None, 0, 0.0, -3.5, math.nan])
def test_missing_or_non_positive_server_reading_is_no_data(server):
    assert has_server_data(server) is False
    assert variance_pct(100.0, server) is None
    assert classify(100.0, server) is Classification.NO_DATA


def test_variance_is_normalized_to_installer_value():
    # |50 - 40| / 40
    assert variance_pct(40.0, 50.0) == pytest.approx(25.0)
    # |40 - 50| / 50
    assert variance_pct(50.0, 40.0) == pytest.approx(20.0)


@pytest.mark.parametrize("user", [0, -1, "abc", None])
def test_invalid_installer_reading(user):
    with pytest.raises(ValidationError):
        classify(user, 100.0)


def test_auto_reject_reason_mentions_two_decimal_variance():
    reason = auto_reject_reason(variance_pct(100.0, 115.0))
    assert "15.00%" in reason
    assert reason.lower().startswith("auto-rejected")

"""
Installer reading vs. device-reported reading.

variance = |server - user| / user * 100, normalized to the installer's value.
"""
from __future__ import annotations

import math
from enum import Enum

from sensor_recon.utils.exceptions import ValidationError

PRE_VERIFY_BELOW_PCT = 5.0
AUTO_REJECT_ABOVE_PCT = 10.0


class Classification(str, Enum):
    NO_DATA = "no_data"
    AUTO_REJECT = "auto_reject"
    PRE_VERIFIED = "pre_verified"
    NEEDS_MANUAL_REVIEW = "needs_manual_review"


def has_server_data(server_reading: float | None) -> bool:
    """Null or non-positive means "nothing reported yet", never a real zero."""
    return server_reading is not None and not math.isnan(server_reading) and server_reading > 0


def _check_user_reading(user_reading: float) -> float:
    try:
        u = float(user_reading)
    except (TypeError, ValueError):
        raise ValidationError("Installer reading must be numeric.") from None
    if not u > 0:
        raise ValidationError("Installer reading must be greater than zero.")
    return u


def variance_pct(user_reading: float, server_reading: float | None) -> float | None:
    """Percentage variance, or None while there is no server data."""
    u = _check_user_reading(user_reading)
    if not has_server_data(server_reading):
        return None
    return abs(float(server_reading) - u) / u * 100.0


def classify(user_reading: float, server_reading: float | None) -> Classification:
    v = variance_pct(user_reading, server_reading)
    if v is None:
        return Classification.NO_DATA
    if v > AUTO_REJECT_ABOVE_PCT:
        return Classification.AUTO_REJECT
    if v < PRE_VERIFY_BELOW_PCT:
        return Classification.PRE_VERIFIED
    return Classification.NEEDS_MANUAL_REVIEW


def auto_reject_reason(variance: float) -> str:
    return f"Auto-rejected: variance {variance:.2f}% > {AUTO_REJECT_ABOVE_PCT:g}%"


__all__ = [
    "AUTO_REJECT_ABOVE_PCT",
    "PRE_VERIFY_BELOW_PCT",
    "Classification",
    "auto_reject_reason",
    "classify",
    "has_server_data",
    "variance_pct",
]

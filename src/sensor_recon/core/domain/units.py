from __future__ import annotations

from sensor_recon.utils.exceptions import ValidationError

# centimeters per unit
_TO_CM: dict[str, float] = {
    "cm": 1.0,
    "mm": 0.1,
    "m": 100.0,
    "in": 2.54,
    "ft": 30.48,
}

SUPPORTED_UNITS = tuple(_TO_CM)


def to_centimeters(value: float | int | str, unit: str = "cm") -> float:
    """Installer readings are stored in centimeters whatever unit was entered."""
    key = (unit or "cm").strip().lower()
    if key not in _TO_CM:
        raise ValidationError(f"Unsupported unit '{unit}'. Use one of: {', '.join(SUPPORTED_UNITS)}.",
                              title="Invalid Sensor Reading")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Please enter a valid numeric sensor reading.", title="Invalid Sensor Reading") from None
    return round(number * _TO_CM[key], 4)

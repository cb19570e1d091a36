"""
Field-level edit diffs with append-only original-value preservation.

Every changed field gets its previous value appended to the installation's
history (version = max(existing) + 1, starting at 1) before the live value is
overwritten. Histories are per field and independent of each other.
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sensor_recon.core.domain.models import EDITABLE_FIELDS, EDITED_BY_VERIFIER_TAG, Installation
from sensor_recon.utils.exceptions import ValidationError

_LOCATION_ID_RE = re.compile(r"^\d+$")
_COORDINATE_BOUNDS = {"latitude": 90.0, "longitude": 180.0}


@dataclass(frozen=True)
class FieldChange:
    field: str
    old: Any
    new: Any
    version: int

    @property
    def original_key(self) -> str:
        return f"original_{self.field}_{self.version}"


def _coord(value: Any, name: str) -> float | None:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name.capitalize()} must be numeric.", title="Invalid Coordinates") from None
    bound = _COORDINATE_BOUNDS[name]
    if not -bound <= number <= bound:
        raise ValidationError(f"{name.capitalize()} must be between -{bound:g} and {bound:g}.",
                              title="Invalid Coordinates")
    return number


def normalize_proposal(proposed: Mapping[str, Any]) -> dict[str, Any]:
    """Validate and normalize the proposed values. Only keys present are considered."""
    unknown = set(proposed) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Fields cannot be edited: {', '.join(sorted(unknown))}.")

    out: dict[str, Any] = {}
    if "deviceId" in proposed:
        device_id = str(proposed["deviceId"] or "").strip()
        if not device_id:
            raise ValidationError("Device ID cannot be empty.", title="Invalid Device ID")
        out["deviceId"] = device_id

    if "sensorReading" in proposed:
        try:
            reading = float(proposed["sensorReading"])
        except (TypeError, ValueError):
            raise ValidationError("Sensor reading must be numeric.", title="Invalid Sensor Reading") from None
        if not reading > 0:
            raise ValidationError("Sensor reading must be greater than zero.", title="Invalid Sensor Reading")
        out["sensorReading"] = reading

    if "locationId" in proposed:
        location_id = str(proposed["locationId"] or "").strip()
        if not location_id or not _LOCATION_ID_RE.match(location_id):
            raise ValidationError("Location ID must contain digits only.", title="Invalid Location ID")
        out["locationId"] = location_id

    for name in ("latitude", "longitude"):
        if name in proposed:
            out[name] = _coord(proposed[name], name)

    return out


def _differs(name: str, current: Any, new: Any) -> bool:
    if name in _COORDINATE_BOUNDS:
        # null and absent compare equal
        cur = None if current in (None, "") else float(current)
        return cur != new
    if name == "sensorReading":
        return current is None or float(current) != float(new)
    return (str(current).strip() if current is not None else None) != new


def compute_changes(installation: Installation, proposed: Mapping[str, Any]) -> list[FieldChange]:
    """Diff the normalized proposal against the stored values. Does not mutate."""
    normalized = normalize_proposal(proposed)
    changes: list[FieldChange] = []
    for name in EDITABLE_FIELDS:
        if name not in normalized:
            continue
        current = installation.get_field(name)
        new = normalized[name]
        if _differs(name, current, new):
            changes.append(FieldChange(name, current, new, installation.next_version(name)))
    return changes


def apply_changes(installation: Installation, changes: list[FieldChange]) -> Installation:
    """Preserve originals, overwrite live values and tag the record."""
    for change in changes:
        version = installation.preserve_original(change.field, change.old)
        if version != change.version:
            raise ValidationError("Installation history changed while editing; reload and retry.")
        installation.set_field(change.field, change.new)
    installation.add_tag(EDITED_BY_VERIFIER_TAG)
    return installation


__all__ = ["FieldChange", "apply_changes", "compute_changes", "normalize_proposal"]

"""
Device and Installation documents.

Field names in `to_document()` / `from_document()` are the persisted contract read
by dashboards and exporters, so they stay camelCase. Prior values of edited fields
live in a typed history (`Installation.history`) and are rendered as
`original_<field>_<version>` keys.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from sensor_recon.utils.time import iso_utc, parse_ts

SYSTEM_AUTO_REJECT_ACTOR = "System (Auto-rejected)"
EDITED_BY_VERIFIER_TAG = "edited by verifier"

# fields a verifier may edit (document names)
EDITABLE_FIELDS: tuple[str, ...] = ("deviceId", "sensorReading", "locationId", "latitude", "longitude")

_ORIGINAL_KEY_RE = re.compile(r"^original_(?P<field>[A-Za-z]+)_(?P<version>\d+)$")


class DeviceStatus(str, Enum):
    PENDING = "pending"
    INSTALLED = "installed"
    VERIFIED = "verified"
    FLAGGED = "flagged"


class InstallationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FLAGGED = "flagged"


def _ts_out(value: datetime | None) -> str | None:
    return iso_utc(value) if value is not None else None


def _float_or_none(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ============= DEVICE =============

@dataclass
class Device:
    id: str
    team_id: str | None = None
    box_number: str | None = None
    box_opened: bool | None = None
    assigned_installer_id: str | None = None
    assigned_installer_name: str | None = None
    status: DeviceStatus = DeviceStatus.PENDING
    created_at: datetime | None = None
    updated_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KEYS = (
        "id", "teamId", "boxNumber", "boxOpened", "assignedInstallerId",
        "assignedInstallerName", "status", "createdAt", "updatedAt",
    )

    def to_document(self) -> dict[str, Any]:
        doc = dict(self.extra)
        doc.update(
            {
                "id": self.id,
                "teamId": self.team_id,
                "boxNumber": self.box_number,
                "boxOpened": self.box_opened,
                "assignedInstallerId": self.assigned_installer_id,
                "assignedInstallerName": self.assigned_installer_name,
                "status": self.status.value,
                "createdAt": _ts_out(self.created_at),
                "updatedAt": _ts_out(self.updated_at),
            }
        )
        return doc

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> Device:
        box = doc.get("boxNumber")
        return cls(
            id=str(doc["id"]),
            team_id=doc.get("teamId") or None,
            box_number=str(box).strip() if box not in (None, "") else None,
            box_opened=doc.get("boxOpened"),
            assigned_installer_id=doc.get("assignedInstallerId") or None,
            assigned_installer_name=doc.get("assignedInstallerName"),
            status=DeviceStatus(doc.get("status") or DeviceStatus.PENDING.value),
            created_at=parse_ts(doc.get("createdAt")),
            updated_at=parse_ts(doc.get("updatedAt")),
            extra={k: v for k, v in doc.items() if k not in cls._KEYS},
        )


# ============= INSTALLATION =============

@dataclass(frozen=True)
class FieldVersion:
    """One preserved prior value of an edited field."""

    version: int
    value: Any


# attribute name -> document key
_INSTALLATION_KEYS: dict[str, str] = {
    "id": "id",
    "device_id": "deviceId",
    "team_id": "teamId",
    "installed_by": "installedBy",
    "installed_by_name": "installedByName",
    "location_id": "locationId",
    "original_location_id": "originalLocationId",
    "sensor_reading": "sensorReading",
    "latitude": "latitude",
    "longitude": "longitude",
    "latest_dis_cm": "latestDisCm",
    "latest_dis_timestamp": "latestDisTimestamp",
    "status": "status",
    "system_pre_verified": "systemPreVerified",
    "system_pre_verified_at": "systemPreVerifiedAt",
    "server_refreshed_at": "serverRefreshedAt",
    "flagged_reason": "flaggedReason",
    "verified_by": "verifiedBy",
    "verified_at": "verifiedAt",
    "tags": "tags",
    "image_urls": "imageUrls",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
}
_DOC_TO_ATTR = {v: k for k, v in _INSTALLATION_KEYS.items()}
_TS_ATTRS = frozenset(
    {"system_pre_verified_at", "server_refreshed_at", "verified_at", "created_at", "updated_at"}
)


@dataclass
class Installation:
    id: str
    device_id: str
    sensor_reading: float
    location_id: str
    team_id: str | None = None
    installed_by: str | None = None
    installed_by_name: str | None = None
    original_location_id: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    latest_dis_cm: float | None = None
    latest_dis_timestamp: str | None = None
    status: InstallationStatus = InstallationStatus.PENDING
    system_pre_verified: bool = False
    system_pre_verified_at: datetime | None = None
    server_refreshed_at: datetime | None = None
    flagged_reason: str | None = None
    verified_by: str | None = None
    verified_at: datetime | None = None
    tags: list[str] = field(default_factory=list)
    image_urls: list[str] = field(default_factory=list)
    history: dict[str, list[FieldVersion]] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    # -------- state helpers --------

    @property
    def has_server_data(self) -> bool:
        return self.latest_dis_cm is not None and self.latest_dis_cm > 0

    @property
    def is_auto_flagged(self) -> bool:
        if self.status is not InstallationStatus.FLAGGED:
            return False
        if self.verified_by and self.verified_by.startswith("System"):
            return True
        return bool(self.flagged_reason and "auto-rejected" in self.flagged_reason.lower())

    @property
    def accepts_reconciliation(self) -> bool:
        """Pending or flagged by the system; human decisions are final for the engine."""
        return self.status is InstallationStatus.PENDING or self.is_auto_flagged

    # -------- editable fields by document name --------

    def get_field(self, name: str) -> Any:
        return getattr(self, _DOC_TO_ATTR[name])

    def set_field(self, name: str, value: Any) -> None:
        setattr(self, _DOC_TO_ATTR[name], value)

    # -------- history --------

    def versions(self, name: str) -> list[FieldVersion]:
        return list(self.history.get(name, ()))

    def next_version(self, name: str) -> int:
        versions = self.history.get(name)
        return max(v.version for v in versions) + 1 if versions else 1

    def preserve_original(self, name: str, value: Any) -> int:
        """Append the current value to the field history; never overwrites."""
        version = self.next_version(name)
        self.history.setdefault(name, []).append(FieldVersion(version, value))
        return version

    def add_tag(self, tag: str) -> bool:
        """Add tag once; returns True if it was missing."""
        if tag in self.tags:
            return False
        self.tags.append(tag)
        return True

    # -------- documents --------

    def to_document(self) -> dict[str, Any]:
        doc = dict(self.extra)
        for attr, key in _INSTALLATION_KEYS.items():
            value = getattr(self, attr)
            if attr in _TS_ATTRS:
                value = _ts_out(value)
            elif attr == "status":
                value = value.value
            elif attr in ("tags", "image_urls"):
                value = list(value)
            doc[key] = value
        for name, versions in self.history.items():
            for v in versions:
                doc[f"original_{name}_{v.version}"] = v.value
        return doc

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> Installation:
        kwargs: dict[str, Any] = {}
        history: dict[str, list[FieldVersion]] = {}
        extra: dict[str, Any] = {}

        for key, value in doc.items():
            m = _ORIGINAL_KEY_RE.match(key)
            if m:
                history.setdefault(m.group("field"), []).append(FieldVersion(int(m.group("version")), value))
                continue
            attr = _DOC_TO_ATTR.get(key)
            if attr is None:
                extra[key] = value
                continue
            kwargs[attr] = value

        for attr in _TS_ATTRS:
            kwargs[attr] = parse_ts(kwargs.get(attr))
        for attr in ("sensor_reading", "latitude", "longitude", "latest_dis_cm"):
            kwargs[attr] = _float_or_none(kwargs.get(attr))

        # tags are a set in meaning: keep first occurrence order
        tags = kwargs.get("tags") or []
        kwargs["tags"] = list(dict.fromkeys(str(t) for t in tags))
        kwargs["image_urls"] = list(kwargs.get("image_urls") or [])
        kwargs["status"] = InstallationStatus(kwargs.get("status") or InstallationStatus.PENDING.value)
        kwargs["system_pre_verified"] = bool(kwargs.get("system_pre_verified"))
        kwargs["device_id"] = str(kwargs.get("device_id") or "")
        kwargs["location_id"] = str(kwargs.get("location_id") or "")
        if kwargs.get("sensor_reading") is None:
            kwargs["sensor_reading"] = 0.0

        for versions in history.values():
            versions.sort(key=lambda v: v.version)

        return cls(history=history, extra=extra, **kwargs)


__all__ = [
    "EDITABLE_FIELDS",
    "EDITED_BY_VERIFIER_TAG",
    "SYSTEM_AUTO_REJECT_ACTOR",
    "Device",
    "DeviceStatus",
    "FieldVersion",
    "Installation",
    "InstallationStatus",
]

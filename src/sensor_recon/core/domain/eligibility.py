"""
Eligibility of a device for a new installation.

Pure decision over a snapshot: run it when the installer validates the device and
again right before the submission is written (state may change in between).
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from sensor_recon.core.domain.models import Device, Installation
from sensor_recon.utils.exceptions import EligibilityError


class EligibilityCode(str, Enum):
    DEVICE_NOT_FOUND = "device_not_found"
    TEAM_MISMATCH = "team_mismatch"
    INSTALLER_NOT_ASSIGNED = "installer_not_assigned"
    ASSIGNED_TO_OTHER_INSTALLER = "assigned_to_other_installer"
    BOX_NOT_OPENED = "box_not_opened"
    ALREADY_INSTALLED = "already_installed"


_MESSAGES: dict[EligibilityCode, tuple[str, str]] = {
    EligibilityCode.DEVICE_NOT_FOUND: (
        "Device Not Found",
        "This device ID is not in the device registry.",
    ),
    EligibilityCode.TEAM_MISMATCH: (
        "Wrong Team",
        "This device belongs to a different team.",
    ),
    EligibilityCode.INSTALLER_NOT_ASSIGNED: (
        "Device Not Assigned",
        "This device has not been assigned to an installer yet.",
    ),
    EligibilityCode.ASSIGNED_TO_OTHER_INSTALLER: (
        "Assigned To Another Installer",
        "This device is assigned to a different installer.",
    ),
    EligibilityCode.BOX_NOT_OPENED: (
        "Box Not Opened",
        "The box containing this device has not been opened for your team.",
    ),
    EligibilityCode.ALREADY_INSTALLED: (
        "Device Already Installed",
        "An installation already exists for this device.",
    ),
}


@dataclass(frozen=True)
class EligibilityDecision:
    code: EligibilityCode | None = None

    @property
    def ok(self) -> bool:
        return self.code is None

    @property
    def title(self) -> str:
        return _MESSAGES[self.code][0] if self.code else "Device Validated"

    @property
    def description(self) -> str:
        return _MESSAGES[self.code][1] if self.code else "Device is ready for installation."

    def to_error(self) -> EligibilityError:
        if self.code is None:
            raise ValueError("decision is ok")
        return EligibilityError(self.description, code=self.code.value, title=self.title)

    def raise_for_error(self) -> None:
        if self.code is not None:
            raise self.to_error()


OK = EligibilityDecision()


def validate(
    device: Device | None,
    installer_id: str,
    installer_team_id: str | None,
    existing_installation: Installation | None,
    *,
    requires_assignment: bool = False,
) -> EligibilityDecision:
    """First failing check wins; order matters."""
    if device is None:
        return EligibilityDecision(EligibilityCode.DEVICE_NOT_FOUND)

    if device.team_id and installer_team_id and device.team_id != installer_team_id:
        return EligibilityDecision(EligibilityCode.TEAM_MISMATCH)

    if requires_assignment:
        if not device.assigned_installer_id:
            return EligibilityDecision(EligibilityCode.INSTALLER_NOT_ASSIGNED)
        if device.assigned_installer_id != installer_id:
            return EligibilityDecision(EligibilityCode.ASSIGNED_TO_OTHER_INSTALLER)

    if device.box_number and device.box_opened is not True:
        return EligibilityDecision(EligibilityCode.BOX_NOT_OPENED)

    if existing_installation is not None:
        return EligibilityDecision(EligibilityCode.ALREADY_INSTALLED)

    return OK


def role_requires_assignment(role: str | None, roles: Iterable[str]) -> bool:
    return bool(role) and role.strip().lower() in {r.strip().lower() for r in roles}


__all__ = [
    "EligibilityCode",
    "EligibilityDecision",
    "OK",
    "role_requires_assignment",
    "validate",
]

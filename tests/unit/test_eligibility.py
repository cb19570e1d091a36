import pytest

from sensor_recon.core.domain.eligibility import (
    EligibilityCode,
    role_requires_assignment,
    validate,
)
from sensor_recon.core.domain.models import Device, Installation
from sensor_recon.utils.exceptions import EligibilityError


def _device(**kw) -> Device:
    kw.setdefault("team_id", "team-1")
    return Device(id="DEV001", **kw)


def _existing() -> Installation:
    return Installation(id="DEV001_1", device_id="DEV001", sensor_reading=100.0, location_id="12")


def test_ok_for_free_device():
    decision = validate(_device(), "inst-1", "team-1", None)
    assert decision.ok
    assert decision.code is None
    assert decision.title == "Device Validated"


def test_device_not_found():
    decision = validate(None, "inst-1", "team-1", None)
    assert decision.code is EligibilityCode.DEVICE_NOT_FOUND


def test_team_mismatch_only_when_both_sides_set():
    assert validate(_device(team_id="team-2"), "inst-1", "team-1", None).code is EligibilityCode.TEAM_MISMATCH
    assert validate(_device(team_id=None), "inst-1", "team-1", None).ok
    assert validate(_device(team_id="team-2"), "inst-1", None, None).ok


def test_assignment_checks_only_for_roles_that_require_it():
    free = _device()
    assert validate(free, "inst-1", "team-1", None).ok
    assert (
        validate(free, "inst-1", "team-1", None, requires_assignment=True).code
        is EligibilityCode.INSTALLER_NOT_ASSIGNED
    )
    other = _device(assigned_installer_id="inst-2")
    assert (
        validate(other, "inst-1", "team-1", None, requires_assignment=True).code
        is EligibilityCode.ASSIGNED_TO_OTHER_INSTALLER
    )
    mine = _device(assigned_installer_id="inst-1")
    assert validate(mine, "inst-1", "team-1", None, requires_assignment=True).ok


@pytest.mark.parametrize("opened", [None, False])
def test_box_not_opened(opened):
    device = _device(box_number="B-7", box_opened=opened)
    assert validate(device, "inst-1", "team-1", None).code is EligibilityCode.BOX_NOT_OPENED


def test_box_not_opened_wins_over_existing_installation():
    device = _device(box_number="B-7", box_opened=False)
    assert validate(device, "inst-1", "team-1", _existing()).code is EligibilityCode.BOX_NOT_OPENED


def test_opened_box_passes():
    device = _device(box_number="B-7", box_opened=True)
    assert validate(device, "inst-1", "team-1", None).ok


def test_already_installed():
    assert validate(_device(), "inst-1", "team-1", _existing()).code is EligibilityCode.ALREADY_INSTALLED


def test_first_failing_check_wins():
    device = _device(team_id="team-2", box_number="B-7", box_opened=False)
    decision = validate(device, "inst-1", "team-1", _existing(), requires_assignment=True)
    assert decision.code is EligibilityCode.TEAM_MISMATCH


def test_decision_raises_typed_error():
    decision = validate(None, "inst-1", "team-1", None)
    with pytest.raises(EligibilityError) as ei:
        decision.raise_for_error()
    assert ei.value.code == "device_not_found"
    assert ei.value.title == "Device Not Found"


def test_role_requires_assignment_is_case_insensitive():
    assert role_requires_assignment("Installer", ["installer"])
    assert not role_requires_assignment("admin", ["installer"])
    assert not role_requires_assignment(None, ["installer"])

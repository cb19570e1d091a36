import pytest

from sensor_recon.core.domain.models import EDITED_BY_VERIFIER_TAG, Installation
from sensor_recon.core.domain.versioning import apply_changes, compute_changes, normalize_proposal
from sensor_recon.utils.exceptions import ValidationError


def _inst(**kw) -> Installation:
    kw.setdefault("sensor_reading", 100.0)
    kw.setdefault("location_id", "12")
    return Installation(id="DEV001_1", device_id="DEV001", **kw)


def test_two_edit_rounds_keep_both_originals():
    inst = _inst()

    apply_changes(inst, compute_changes(inst, {"sensorReading": 110}))
    apply_changes(inst, compute_changes(inst, {"sensorReading": "120"}))

    doc = inst.to_document()
    assert doc["original_sensorReading_1"] == 100.0
    assert doc["original_sensorReading_2"] == 110.0
    assert doc["sensorReading"] == 120.0
    assert doc["tags"].count(EDITED_BY_VERIFIER_TAG) == 1


def test_history_survives_document_round_trip():
    inst = _inst()
    apply_changes(inst, compute_changes(inst, {"sensorReading": 110}))
    again = Installation.from_document(inst.to_document())

    assert [v.value for v in again.versions("sensorReading")] == [100.0]
    change = compute_changes(again, {"sensorReading": 130})[0]
    assert change.version == 2
    assert change.original_key == "original_sensorReading_2"


def test_histories_are_per_field():
    inst = _inst()
    apply_changes(inst, compute_changes(inst, {"sensorReading": 110, "locationId": "34"}))
    apply_changes(inst, compute_changes(inst, {"locationId": "56"}))

    assert [v.version for v in inst.versions("sensorReading")] == [1]
    assert [(v.version, v.value) for v in inst.versions("locationId")] == [(1, "12"), (2, "34")]


def test_unchanged_values_produce_no_changes():
    inst = _inst(latitude=None)
    assert compute_changes(inst, {"sensorReading": "100", "locationId": " 12 "}) == []
    # null and absent coordinates compare equal
    assert compute_changes(inst, {"latitude": None}) == []
    assert compute_changes(inst, {"latitude": ""}) == []


def test_coordinate_change_from_null():
    inst = _inst()
    changes = compute_changes(inst, {"latitude": "41.5", "longitude": -8.25})
    assert [(c.field, c.old, c.new) for c in changes] == [("latitude", None, 41.5), ("longitude", None, -8.25)]


def test_compute_changes_does_not_mutate():
    inst = _inst()
    compute_changes(inst, {"sensorReading": 150})
    assert inst.sensor_reading == 100.0
    assert inst.history == {}
    assert inst.tags == []


@pytest.mark.parametrize(
    "proposal",
    [
        {"sensorReading": 0},
        {"sensorReading": "abc"},
        {"locationId": "12a"},
        {"deviceId": "  "},
        {"latitude": 91},
        {"longitude": "east"},
        {"status": "verified"},
    ],
)
def test_invalid_proposals_rejected(proposal):
    with pytest.raises(ValidationError):
        normalize_proposal(proposal)


def test_tag_added_once_across_rounds():
    inst = _inst()
    for value in (101, 102, 103):
        apply_changes(inst, compute_changes(inst, {"sensorReading": value}))
    assert inst.tags == [EDITED_BY_VERIFIER_TAG]
    assert [v.value for v in inst.versions("sensorReading")] == [100.0, 101.0, 102.0]

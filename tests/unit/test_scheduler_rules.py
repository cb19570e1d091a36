from datetime import UTC, datetime, timedelta

from sensor_recon.core.application.scheduler import (
    StalenessWindow,
    installer_window,
    is_due,
    needs_attention,
    select_due,
    verifier_window,
)
from sensor_recon.core.domain.models import SYSTEM_AUTO_REJECT_ACTOR, Installation, InstallationStatus
from sensor_recon.core.infrastructure.settings import Settings

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
WINDOW = 120.0


def _inst(iid="i1", *, latest=None, refreshed=None, status=InstallationStatus.PENDING, **kw) -> Installation:
    return Installation(
        id=iid,
        device_id="DEV001",
        sensor_reading=100.0,
        location_id="12",
        latest_dis_cm=latest,
        server_refreshed_at=refreshed,
        status=status,
        **kw,
    )


def test_needs_attention():
    assert needs_attention(_inst(latest=None))
    assert needs_attention(_inst(latest=0.0))
    assert needs_attention(_inst(latest=107.0))
    assert not needs_attention(_inst(latest=104.0))
    # exactly 5% is not stale-worthy
    assert not needs_attention(_inst(latest=105.0))


def test_never_refreshed_is_due():
    assert is_due(_inst(), NOW, WINDOW)


def test_recently_refreshed_is_not_due():
    assert not is_due(_inst(refreshed=NOW - timedelta(seconds=60)), NOW, WINDOW)
    assert is_due(_inst(refreshed=NOW - timedelta(seconds=121)), NOW, WINDOW)


def test_verified_and_human_flagged_never_due():
    old = NOW - timedelta(days=3)
    assert not is_due(_inst(status=InstallationStatus.VERIFIED, refreshed=old), NOW, WINDOW)
    human = _inst(status=InstallationStatus.FLAGGED, refreshed=old, verified_by="alice", flagged_reason="wrong pole")
    assert not is_due(human, NOW, WINDOW)


def test_auto_flagged_with_high_variance_is_due():
    auto = _inst(
        status=InstallationStatus.FLAGGED,
        latest=130.0,
        refreshed=NOW - timedelta(days=2),
        verified_by=SYSTEM_AUTO_REJECT_ACTOR,
    )
    assert is_due(auto, NOW, WINDOW)


def test_select_due_filters_good_readings():
    stale = NOW - timedelta(hours=1)
    items = [
        _inst("good", latest=101.0, refreshed=stale),
        _inst("high", latest=120.0, refreshed=stale),
        _inst("none", latest=None, refreshed=stale),
        _inst("fresh", latest=None, refreshed=NOW),
    ]
    assert [i.id for i in select_due(items, NOW, WINDOW)] == ["high", "none"]


def test_window_scopes():
    s = Settings()
    mine = installer_window(s, "inst-1")
    assert mine.window_sec == s.intervals.INSTALLER_STALENESS
    assert mine.accepts({"installedBy": "inst-1", "status": "pending"})
    assert not mine.accepts({"installedBy": "inst-2", "status": "pending"})
    assert not mine.accepts({"installedBy": "inst-1", "status": "flagged"})

    team = verifier_window(s, "team-1")
    assert team.accepts({"teamId": "team-1", "status": "flagged"})
    assert not team.accepts({"teamId": "team-1", "status": "verified"})
    assert verifier_window(s).accepts({"teamId": "any", "status": "pending"})


def test_window_default_scope_matches_everything():
    w = StalenessWindow("x", 1.0, 1.0)
    assert w.scope == {}
    assert w.accepts({"status": "pending"})

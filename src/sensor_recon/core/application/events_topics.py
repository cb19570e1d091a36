"""
Event topics registry.

Single source of truth for event names published on the bus and written to
the audit table. Document change feeds use `documents.<collection>` and are
defined by the storage layer.
"""

from __future__ import annotations

from typing import Final, Literal, Optional, TypedDict

from sensor_recon.utils.time import iso_utc

# ============================================================================
# RECONCILIATION
# ============================================================================

RECONCILE_NO_DATA: Final[str] = "reconcile.no_data"
RECONCILE_PRE_VERIFIED: Final[str] = "reconcile.pre_verified"
RECONCILE_NEEDS_REVIEW: Final[str] = "reconcile.needs_review"
RECONCILE_AUTO_REJECTED: Final[str] = "reconcile.auto_rejected"
RECONCILE_TRANSIENT_ERROR: Final[str] = "reconcile.transient_error"

# ============================================================================
# HUMAN DECISIONS & EDITS
# ============================================================================

INSTALLATION_SUBMITTED: Final[str] = "installation.submitted"
INSTALLATION_APPROVED: Final[str] = "installation.approved"
INSTALLATION_REJECTED: Final[str] = "installation.rejected"
INSTALLATION_EDITED: Final[str] = "installation.edited"
INSTALLATION_DELETED: Final[str] = "installation.deleted"

# ============================================================================
# ADMINISTRATIVE
# ============================================================================

LOCATION_REASSIGNED: Final[str] = "admin.location_reassigned"
DEVICES_IMPORTED: Final[str] = "admin.devices_imported"
BOX_ASSIGNED: Final[str] = "admin.box_assigned"
BOX_OPENED: Final[str] = "admin.box_opened"
INSTALLER_ASSIGNED: Final[str] = "admin.installer_assigned"


# ============================================================================
# PAYLOAD SCHEMAS
# ============================================================================

class BaseEventPayload(TypedDict):
    """Base payload with common fields"""
    trace_id: Optional[str]
    timestamp: str  # ISO format


class ReconcilePayload(BaseEventPayload):
    installation_id: str
    device_id: str
    classification: str
    variance_pct: Optional[float]
    latest_dis_cm: Optional[float]


class DecisionPayload(BaseEventPayload):
    installation_id: str
    device_id: str
    decision: Literal["approved", "rejected", "deleted"]
    actor: str
    reason: Optional[str]


def build_reconcile_event(
    installation_id: str,
    device_id: str,
    classification: str,
    variance_pct: Optional[float],
    latest_dis_cm: Optional[float],
    trace_id: Optional[str],
) -> ReconcilePayload:
    return ReconcilePayload(
        trace_id=trace_id,
        timestamp=iso_utc(),
        installation_id=installation_id,
        device_id=device_id,
        classification=classification,
        variance_pct=round(variance_pct, 2) if variance_pct is not None else None,
        latest_dis_cm=latest_dis_cm,
    )


def build_decision_event(
    installation_id: str,
    device_id: str,
    decision: Literal["approved", "rejected", "deleted"],
    actor: str,
    reason: Optional[str],
    trace_id: Optional[str],
) -> DecisionPayload:
    return DecisionPayload(
        trace_id=trace_id,
        timestamp=iso_utc(),
        installation_id=installation_id,
        device_id=device_id,
        decision=decision,
        actor=actor,
        reason=reason,
    )

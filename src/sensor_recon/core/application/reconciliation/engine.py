"""
Installer reading vs. telemetry reading, for one installation at a time.

fetch -> classify -> persist:
  - telemetry TransientError: nothing written, caller retries on a later tick
  - no data yet: only `serverRefreshedAt` advances (keeps pollers from hot-looping)
  - data: reading recorded, then flags per classification; AUTO_REJECT also flags the device

Writes are field-level merges without a transaction around the preceding read,
so a concurrent edit of the same fields is last-writer-wins.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sensor_recon.core.application import events_topics as topics
from sensor_recon.core.application.ports import TelemetryPort
from sensor_recon.core.domain.models import (
    SYSTEM_AUTO_REJECT_ACTOR,
    DeviceStatus,
    Installation,
    InstallationStatus,
)
from sensor_recon.core.domain.variance import Classification, auto_reject_reason, classify, variance_pct
from sensor_recon.core.infrastructure.events.bus import AsyncEventBus
from sensor_recon.core.infrastructure.storage.facade import StorageFacade
from sensor_recon.utils.exceptions import NotFoundError, TransientError, ValidationError
from sensor_recon.utils.logging import get_logger
from sensor_recon.utils.metrics import inc
from sensor_recon.utils.single_flight import SingleFlight
from sensor_recon.utils.time import iso_utc
from sensor_recon.utils.trace import trace_context

_log = get_logger("recon.engine")


class ReconcileResult(str, Enum):
    UPDATED = "updated"
    NO_DATA = "no_data"
    TRANSIENT_ERROR = "transient_error"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ReconcileOutcome:
    installation: Installation
    result: ReconcileResult
    classification: Classification | None = None
    variance_pct: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "installation_id": self.installation.id,
            "result": self.result.value,
            "classification": self.classification.value if self.classification else None,
            "variance_pct": round(self.variance_pct, 2) if self.variance_pct is not None else None,
            "error": self.error,
            "installation": self.installation.to_document(),
        }


_EVENT_BY_CLASSIFICATION = {
    Classification.AUTO_REJECT: topics.RECONCILE_AUTO_REJECTED,
    Classification.PRE_VERIFIED: topics.RECONCILE_PRE_VERIFIED,
    Classification.NEEDS_MANUAL_REVIEW: topics.RECONCILE_NEEDS_REVIEW,
}


@dataclass
class ReconciliationEngine:
    storage: StorageFacade
    telemetry: TelemetryPort
    bus: AsyncEventBus | None = None
    inflight: SingleFlight = field(default_factory=SingleFlight)

    # -------------------------
    # automatic reconciliation
    # -------------------------
    async def reconcile(self, installation: Installation) -> ReconcileOutcome:
        """One fetch/classify/persist pass. Safe to repeat."""
        if not installation.accepts_reconciliation:
            _log.debug(
                "reconcile_skipped",
                extra={"installation_id": installation.id, "status": installation.status.value},
            )
            return ReconcileOutcome(installation, ReconcileResult.SKIPPED)

        with trace_context(prefix="recon_") as tid:
            _log.info(
                "reconcile_started",
                extra={"installation_id": installation.id, "device_id": installation.device_id},
            )
            try:
                reading = await self.telemetry.fetch(installation.device_id)
            except TransientError as exc:
                inc("reconcile_total", result=ReconcileResult.TRANSIENT_ERROR.value)
                _log.warning(
                    "reconcile_transient_error",
                    extra={"installation_id": installation.id, "error": exc.description},
                )
                await self._publish(
                    topics.RECONCILE_TRANSIENT_ERROR,
                    topics.build_reconcile_event(installation.id, installation.device_id, "error", None, None, tid),
                    key=installation.id,
                )
                return ReconcileOutcome(installation, ReconcileResult.TRANSIENT_ERROR, error=exc.description)

            now = iso_utc()
            if not reading.has_data:
                updated = await self.storage.installations.update_fields(installation.id, {"serverRefreshedAt": now})
                inc("reconcile_total", result=ReconcileResult.NO_DATA.value)
                _log.info("reconcile_no_data", extra={"installation_id": installation.id})
                await self._publish(
                    topics.RECONCILE_NO_DATA,
                    topics.build_reconcile_event(installation.id, installation.device_id, "no_data", None, None, tid),
                    key=installation.id,
                )
                return ReconcileOutcome(updated, ReconcileResult.NO_DATA, Classification.NO_DATA)

            server = float(reading.dis_cm)  # has_data implies a positive number
            variance = variance_pct(installation.sensor_reading, server)
            classification = classify(installation.sensor_reading, server)
            fields = self._fields_for(installation, classification, variance, server, reading.timestamp, now)

            updated = await self.storage.installations.update_fields(installation.id, fields)

            if classification is Classification.AUTO_REJECT:
                await self._set_device_status(installation.device_id, DeviceStatus.FLAGGED)
                self.storage.audit.write(
                    topics.RECONCILE_AUTO_REJECTED,
                    {"reason": fields["flaggedReason"], "sensorReading": installation.sensor_reading,
                     "latestDisCm": server, "trace_id": tid},
                    entity_id=installation.id,
                    actor=SYSTEM_AUTO_REJECT_ACTOR,
                )

            inc("reconcile_total", result=ReconcileResult.UPDATED.value)
            inc("reconcile_classification_total", classification=classification.value)
            _log.info(
                "reconcile_classified",
                extra={
                    "installation_id": installation.id,
                    "classification": classification.value,
                    "variance_pct": round(variance, 2) if variance is not None else None,
                },
            )
            await self._publish(
                _EVENT_BY_CLASSIFICATION[classification],
                topics.build_reconcile_event(
                    installation.id, installation.device_id, classification.value, variance, server, tid
                ),
                key=installation.id,
            )
            return ReconcileOutcome(updated, ReconcileResult.UPDATED, classification, variance)

    @staticmethod
    def _fields_for(
        installation: Installation,
        classification: Classification,
        variance: float | None,
        server: float,
        server_ts: str | None,
        now: str,
    ) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "latestDisCm": server,
            "latestDisTimestamp": server_ts,
            "serverRefreshedAt": now,
        }
        if classification is Classification.AUTO_REJECT:
            fields.update(
                status=InstallationStatus.FLAGGED.value,
                flaggedReason=auto_reject_reason(variance or 0.0),
                verifiedBy=SYSTEM_AUTO_REJECT_ACTOR,
                verifiedAt=now,
                systemPreVerified=False,
                systemPreVerifiedAt=None,
            )
        elif classification is Classification.PRE_VERIFIED and installation.status is InstallationStatus.PENDING:
            fields.update(systemPreVerified=True, systemPreVerifiedAt=now)
        else:
            # manual review, or a good reading on an auto-flagged record (pre-verify is pending-only)
            fields.update(systemPreVerified=False, systemPreVerifiedAt=None)
        return fields

    # -------------------------
    # by id, with duplicate suppression
    # -------------------------
    async def _reconcile_fresh(self, installation_id: str) -> ReconcileOutcome:
        # re-read right before the pass; not transactional
        installation = await self.storage.installations.get(installation_id)
        if installation is None:
            raise NotFoundError(f"Installation {installation_id} does not exist.")
        return await self.reconcile(installation)

    async def trigger(self, installation_id: str) -> ReconcileOutcome:
        """Manual trigger: joins an attempt already in flight for the same id."""
        return await self.inflight.do(installation_id, lambda: self._reconcile_fresh(installation_id))

    async def try_trigger(self, installation_id: str) -> tuple[bool, ReconcileOutcome | None]:
        """Scheduler path: refuses to start when an attempt for the id is in flight."""
        return await self.inflight.try_do(installation_id, lambda: self._reconcile_fresh(installation_id))

    # -------------------------
    # human overrides
    # -------------------------
    async def approve(self, installation_id: str, verifier: str) -> Installation:
        verifier = (verifier or "").strip()
        if not verifier:
            raise ValidationError("Verifier name is required.", title="Verifier Required")
        installation = await self._require(installation_id)

        with trace_context(prefix="verify_") as tid:
            updated = await self.storage.installations.update_fields(
                installation_id,
                {
                    "status": InstallationStatus.VERIFIED.value,
                    "verifiedBy": verifier,
                    "verifiedAt": iso_utc(),
                    "systemPreVerified": False,
                },
            )
            await self._set_device_status(installation.device_id, DeviceStatus.VERIFIED)
            self.storage.audit.write(
                topics.INSTALLATION_APPROVED,
                {"previous_status": installation.status.value, "trace_id": tid},
                entity_id=installation_id,
                actor=verifier,
            )
            inc("verifier_decisions_total", decision="approved")
            _log.info("installation_approved", extra={"installation_id": installation_id, "verifier": verifier})
            await self._publish(
                topics.INSTALLATION_APPROVED,
                topics.build_decision_event(installation_id, installation.device_id, "approved", verifier, None, tid),
                key=installation_id,
            )
        return updated

    async def reject(self, installation_id: str, verifier: str, reason: str) -> Installation:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Please provide a reason for rejection.", title="Reason Required")
        verifier = (verifier or "").strip()
        if not verifier:
            raise ValidationError("Verifier name is required.", title="Verifier Required")
        installation = await self._require(installation_id)

        with trace_context(prefix="verify_") as tid:
            updated = await self.storage.installations.update_fields(
                installation_id,
                {
                    "status": InstallationStatus.FLAGGED.value,
                    "flaggedReason": reason,
                    "verifiedBy": verifier,
                    "verifiedAt": iso_utc(),
                    "systemPreVerified": False,
                },
            )
            await self._set_device_status(installation.device_id, DeviceStatus.FLAGGED)
            self.storage.audit.write(
                topics.INSTALLATION_REJECTED,
                {"previous_status": installation.status.value, "reason": reason, "trace_id": tid},
                entity_id=installation_id,
                actor=verifier,
            )
            inc("verifier_decisions_total", decision="rejected")
            _log.info("installation_rejected", extra={"installation_id": installation_id, "verifier": verifier})
            await self._publish(
                topics.INSTALLATION_REJECTED,
                topics.build_decision_event(installation_id, installation.device_id, "rejected", verifier, reason, tid),
                key=installation_id,
            )
        return updated

    # -------------------------
    # helpers
    # -------------------------
    async def _require(self, installation_id: str) -> Installation:
        installation = await self.storage.installations.get(installation_id)
        if installation is None:
            raise NotFoundError(f"Installation {installation_id} does not exist.")
        return installation

    async def _set_device_status(self, device_id: str, status: DeviceStatus) -> None:
        try:
            await self.storage.devices.update_fields(device_id, {"status": status.value})
        except NotFoundError:
            # devices come from an external import and may be missing
            _log.warning("device_missing_for_status", extra={"device_id": device_id, "status": status.value})

    async def _publish(self, topic: str, payload: dict[str, Any], *, key: str | None = None) -> None:
        if self.bus is not None:
            await self.bus.publish(topic, dict(payload), key=key)


__all__ = ["ReconcileOutcome", "ReconcileResult", "ReconciliationEngine"]

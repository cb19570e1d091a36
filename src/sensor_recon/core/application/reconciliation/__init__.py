from sensor_recon.core.application.reconciliation.engine import (
    ReconcileOutcome,
    ReconcileResult,
    ReconciliationEngine,
)

__all__ = ["ReconcileOutcome", "ReconcileResult", "ReconciliationEngine"]

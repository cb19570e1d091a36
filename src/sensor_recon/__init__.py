"""Installation verification and telemetry reconciliation service."""

__version__ = "0.3.0"

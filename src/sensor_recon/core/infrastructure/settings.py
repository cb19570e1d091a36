"""
Settings for sensor-recon.
Single source of configuration.

Philosophy:
- ENV = only what differs between deployments (paths, endpoints, secrets)
- Code = sensible defaults for intervals and limits
- Override = any default can be overridden from ENV
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


# ============= CODE DEFAULTS (not ENV) =============

@dataclass
class BackgroundIntervals:
    """Polling intervals and staleness windows (seconds)"""
    INSTALLER_POLL: float = 15.0          # installer session tick
    INSTALLER_STALENESS: float = 120.0    # short window: pick up fresh data for own submissions
    VERIFIER_POLL: float = 300.0          # verifier dashboard tick
    VERIFIER_STALENESS: float = 86400.0   # long window: nudge stale no-data / high-variance items


# ============= HELPERS =============

def _get_env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _get_bool(name: str, default: bool = False) -> bool:
    val = _get_env(name, str(default))
    return val.lower() in ("1", "true", "yes", "on")


def _get_int(name: str, default: int = 0) -> int:
    val = _get_env(name, str(default))
    try:
        return int(val) if val else default
    except ValueError:
        return default


def _get_float(name: str, default: float = 0.0) -> float:
    val = _get_env(name, str(default))
    try:
        return float(val) if val else default
    except ValueError:
        return default


def _get_list(name: str, default: str = "") -> list[str]:
    raw = _get_env(name, default)
    return [s.strip() for s in raw.split(",") if s.strip()]


def _get_secret(name: str, default: str = "") -> str:
    """
    Secret value; `<NAME>_FILE` pointing at a file wins over the plain variable.
    """
    file_path = _get_env(f"{name}_FILE")
    if file_path:
        try:
            return Path(file_path).read_text(encoding="utf-8").strip()
        except OSError:
            pass
    return _get_env(name, default)


# ============= SETTINGS =============

@dataclass
class Settings:
    """
    Runtime configuration.

    Structure:
    - storage / external services from ENV
    - limits and intervals from code defaults (ENV override)
    """

    # --- storage ---
    DB_PATH: str = "./data/sensor_recon.sqlite3"
    BATCH_LIMIT: int = 500

    # --- telemetry service ---
    TELEMETRY_BASE_URL: str = "https://op1.smarttive.com"
    TELEMETRY_API_KEY: str = ""
    TELEMETRY_TIMEOUT_SEC: float = 10.0
    TELEMETRY_RETRIES: int = 1
    TELEMETRY_DEVICE_KEY_LENGTH: int = 0  # 0 = whole device id, N = last N characters

    # --- object store (installation images) ---
    OBJECT_STORE_ROOT: str = "./data/objects"
    OBJECT_STORE_BASE_URL: str = ""
    MAX_IMAGE_BYTES: int = 5 * 1024 * 1024

    # --- roles ---
    ASSIGNMENT_REQUIRED_ROLES: list[str] = field(default_factory=lambda: ["installer"])

    # --- scheduling ---
    SCHEDULER_MAX_CONCURRENCY: int = 8
    SCHEDULER_AUTOSTART: bool = True
    intervals: BackgroundIntervals = field(default_factory=BackgroundIntervals)

    # --- http surface ---
    HTTP_HOST: str = "0.0.0.0"
    HTTP_PORT: int = 8080

    @classmethod
    def build(cls) -> Settings:
        """Defaults from code, overridden by ENV."""
        d = cls()
        intervals = BackgroundIntervals(
            INSTALLER_POLL=_get_float("INSTALLER_POLL_SEC", d.intervals.INSTALLER_POLL),
            INSTALLER_STALENESS=_get_float("INSTALLER_STALENESS_SEC", d.intervals.INSTALLER_STALENESS),
            VERIFIER_POLL=_get_float("VERIFIER_POLL_SEC", d.intervals.VERIFIER_POLL),
            VERIFIER_STALENESS=_get_float("VERIFIER_STALENESS_SEC", d.intervals.VERIFIER_STALENESS),
        )
        return cls(
            DB_PATH=_get_env("DB_PATH", d.DB_PATH),
            BATCH_LIMIT=_get_int("BATCH_LIMIT", d.BATCH_LIMIT),
            TELEMETRY_BASE_URL=_get_env("TELEMETRY_BASE_URL", d.TELEMETRY_BASE_URL).rstrip("/"),
            TELEMETRY_API_KEY=_get_secret("TELEMETRY_API_KEY"),
            TELEMETRY_TIMEOUT_SEC=_get_float("TELEMETRY_TIMEOUT_SEC", d.TELEMETRY_TIMEOUT_SEC),
            TELEMETRY_RETRIES=_get_int("TELEMETRY_RETRIES", d.TELEMETRY_RETRIES),
            TELEMETRY_DEVICE_KEY_LENGTH=_get_int("TELEMETRY_DEVICE_KEY_LENGTH", d.TELEMETRY_DEVICE_KEY_LENGTH),
            OBJECT_STORE_ROOT=_get_env("OBJECT_STORE_ROOT", d.OBJECT_STORE_ROOT),
            OBJECT_STORE_BASE_URL=_get_env("OBJECT_STORE_BASE_URL", d.OBJECT_STORE_BASE_URL),
            MAX_IMAGE_BYTES=_get_int("MAX_IMAGE_BYTES", d.MAX_IMAGE_BYTES),
            ASSIGNMENT_REQUIRED_ROLES=_get_list("ASSIGNMENT_REQUIRED_ROLES", "installer"),
            SCHEDULER_MAX_CONCURRENCY=_get_int("SCHEDULER_MAX_CONCURRENCY", d.SCHEDULER_MAX_CONCURRENCY),
            SCHEDULER_AUTOSTART=_get_bool("SCHEDULER_AUTOSTART", d.SCHEDULER_AUTOSTART),
            intervals=intervals,
            HTTP_HOST=_get_env("HTTP_HOST", d.HTTP_HOST),
            HTTP_PORT=_get_int("HTTP_PORT", d.HTTP_PORT),
        )

    def validate(self) -> None:
        """Fail fast on nonsensical limits."""
        if not 1 <= self.BATCH_LIMIT <= 500:
            raise ValueError("BATCH_LIMIT must be within 1..500")
        if self.TELEMETRY_DEVICE_KEY_LENGTH < 0:
            raise ValueError("TELEMETRY_DEVICE_KEY_LENGTH must be >= 0")
        if self.intervals.INSTALLER_STALENESS <= 0 or self.intervals.VERIFIER_STALENESS <= 0:
            raise ValueError("staleness windows must be > 0")


_SETTINGS: Settings | None = None


def get_settings(*, reload: bool = False) -> Settings:
    global _SETTINGS
    if _SETTINGS is None or reload:
        s = Settings.build()
        s.validate()
        _SETTINGS = s
    return _SETTINGS


__all__ = ["BackgroundIntervals", "Settings", "get_settings"]

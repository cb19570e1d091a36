"""
Dependency composition.
Assembly of all system components.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from sensor_recon.core.application.audit import AuditEngine
from sensor_recon.core.application.ports import ObjectStorePort, TelemetryPort
from sensor_recon.core.application.reconciliation.engine import ReconciliationEngine
from sensor_recon.core.application.scheduler import StalenessScheduler, installer_window, verifier_window
from sensor_recon.core.infrastructure.events.bus import AsyncEventBus
from sensor_recon.core.infrastructure.objects import LocalObjectStore
from sensor_recon.core.infrastructure.settings import Settings, get_settings
from sensor_recon.core.infrastructure.storage.facade import StorageFacade
from sensor_recon.core.infrastructure.telemetry.client import TelemetryClient
from sensor_recon.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AppContainer:
    """
    Application dependency container.
    Holds all initialized components.
    """
    settings: Settings
    bus: AsyncEventBus
    storage: StorageFacade
    telemetry: TelemetryPort
    objects: ObjectStorePort
    engine: ReconciliationEngine
    audit: AuditEngine
    verifier_scheduler: StalenessScheduler
    installer_schedulers: dict[str, StalenessScheduler] = field(default_factory=dict)

    async def start(self) -> None:
        """Start all components"""
        await self.bus.start()
        if self.settings.SCHEDULER_AUTOSTART:
            await self.verifier_scheduler.start()
        logger.info("container_started", extra={"scheduler_autostart": self.settings.SCHEDULER_AUTOSTART})

    async def stop(self) -> None:
        """Stop all components gracefully"""
        for sched in [*self.installer_schedulers.values(), self.verifier_scheduler]:
            try:
                await sched.stop()
            except Exception:
                logger.error("scheduler_stop_failed", extra={"window": sched.window.name}, exc_info=True)
        self.installer_schedulers.clear()
        await self.bus.close()
        aclose = getattr(self.telemetry, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception:
                logger.warning("telemetry_close_failed", exc_info=True)
        self.storage.close()
        logger.info("container_stopped")

    # -------- installer sessions --------

    async def start_installer_session(self, installer_id: str) -> StalenessScheduler:
        """Short-window scheduler bound to one installer's session lifetime."""
        sched = self.installer_schedulers.get(installer_id)
        if sched is None:
            sched = StalenessScheduler(
                self.engine,
                installer_window(self.settings, installer_id),
                max_concurrency=self.settings.SCHEDULER_MAX_CONCURRENCY,
            )
            self.installer_schedulers[installer_id] = sched
        if not sched.running:
            await sched.start()
        return sched

    async def stop_installer_session(self, installer_id: str) -> bool:
        sched = self.installer_schedulers.pop(installer_id, None)
        if sched is None:
            return False
        await sched.stop()
        return True


class ComponentFactory:
    """Factory for creating system components"""

    @staticmethod
    def create_event_bus(settings: Settings) -> AsyncEventBus:
        bus = AsyncEventBus()
        bus.attach_logger_dlq()
        return bus

    @staticmethod
    def create_storage(settings: Settings, bus: AsyncEventBus) -> StorageFacade:
        return StorageFacade.open(settings.DB_PATH, bus, batch_limit=settings.BATCH_LIMIT)

    @staticmethod
    def create_telemetry(settings: Settings) -> TelemetryClient:
        if not settings.TELEMETRY_API_KEY:
            logger.warning("telemetry_api_key_missing")
        return TelemetryClient.from_settings(settings)

    @staticmethod
    def create_object_store(settings: Settings) -> LocalObjectStore:
        return LocalObjectStore.from_settings(settings)


def build_container(
    settings: Optional[Settings] = None,
    *,
    storage: Optional[StorageFacade] = None,
    bus: Optional[AsyncEventBus] = None,
    telemetry: Optional[TelemetryPort] = None,
    objects: Optional[ObjectStorePort] = None,
) -> AppContainer:
    """Wire everything; any component can be passed in (tests, CLI)."""
    s = settings or get_settings()
    bus = bus or ComponentFactory.create_event_bus(s)
    storage = storage or ComponentFactory.create_storage(s, bus)
    telemetry = telemetry or ComponentFactory.create_telemetry(s)
    objects = objects or ComponentFactory.create_object_store(s)

    engine = ReconciliationEngine(storage=storage, telemetry=telemetry, bus=bus)
    audit = AuditEngine(storage=storage, objects=objects, bus=bus, max_image_bytes=s.MAX_IMAGE_BYTES)
    verifier = StalenessScheduler(engine, verifier_window(s), max_concurrency=s.SCHEDULER_MAX_CONCURRENCY)

    return AppContainer(
        settings=s,
        bus=bus,
        storage=storage,
        telemetry=telemetry,
        objects=objects,
        engine=engine,
        audit=audit,
        verifier_scheduler=verifier,
    )


async def compose(settings: Optional[Settings] = None) -> AppContainer:
    """Build the container for the running event loop."""
    container = build_container(settings)
    logger.info("container_composed", extra={"db_path": container.settings.DB_PATH})
    return container


__all__ = ["AppContainer", "ComponentFactory", "build_container", "compose"]

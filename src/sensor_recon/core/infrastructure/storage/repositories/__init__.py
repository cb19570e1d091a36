from sensor_recon.core.infrastructure.storage.repositories.audit import AuditRepo
from sensor_recon.core.infrastructure.storage.repositories.devices import DevicesRepo
from sensor_recon.core.infrastructure.storage.repositories.installations import InstallationsRepo

__all__ = ["AuditRepo", "DevicesRepo", "InstallationsRepo"]

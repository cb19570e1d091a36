"""
Installation image storage on the local filesystem.

Paths:
  submission: installations/<deviceId>/<deviceId>_<kind>_<ms>_<name>
  verifier edit: installations/<installationId>/<installationId>_edit_<ms>_<name>
"""
from __future__ import annotations

import asyncio
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from sensor_recon.core.infrastructure.settings import Settings
from sensor_recon.utils.exceptions import ValidationError
from sensor_recon.utils.logging import get_logger
from sensor_recon.utils.time import now_ms

if TYPE_CHECKING:
    from sensor_recon.core.application.ports import ObjectStorePort

_log = get_logger("objects")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class ImageUpload:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def validate_image(upload: ImageUpload, *, max_bytes: int) -> None:
    if not (upload.content_type or "").lower().startswith("image/"):
        raise ValidationError("Please upload an image file.", title="Invalid File")
    if upload.size == 0:
        raise ValidationError("Image file is empty.", title="Invalid File")
    if upload.size > max_bytes:
        raise ValidationError(
            f"Image must be less than {max_bytes // (1024 * 1024)}MB.", title="File Too Large"
        )


def safe_name(name: str) -> str:
    base = PurePosixPath(name.replace("\\", "/")).name
    return _UNSAFE_CHARS.sub("_", base).strip("._") or "image"


def image_path(owner_id: str, kind: str, filename: str, *, ts_ms: int | None = None) -> str:
    ts = now_ms() if ts_ms is None else ts_ms
    owner = safe_name(owner_id)
    return f"installations/{owner}/{owner}_{kind}_{ts}_{safe_name(filename)}"


class LocalObjectStore:
    def __init__(self, root: str | Path, *, base_url: str = "") -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    @classmethod
    def from_settings(cls, s: Settings) -> LocalObjectStore:
        return cls(s.OBJECT_STORE_ROOT, base_url=s.OBJECT_STORE_BASE_URL)

    def url_for(self, path: str) -> str:
        if self.base_url:
            return f"{self.base_url}/{path}"
        return (self.root / path).resolve().as_uri()

    def _write(self, target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def _target(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise ValidationError("Invalid object path.")
        return target

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        target = self._target(path)
        await asyncio.to_thread(self._write, target, data)
        _log.info("object_stored", extra={"path": path, "bytes": len(data), "content_type": content_type})
        return self.url_for(path)

    async def delete(self, path: str) -> None:
        await asyncio.to_thread(self._target(path).unlink, missing_ok=True)
        _log.info("object_deleted", extra={"path": path})


async def discard_objects(objects: ObjectStorePort, paths: Iterable[str]) -> None:
    """Remove uploads whose record was never written. Failures are logged, not raised."""
    for path in paths:
        try:
            await objects.delete(path)
        except Exception as exc:
            _log.warning("object_discard_failed", extra={"path": path, "error": str(exc)})


__all__ = ["ImageUpload", "LocalObjectStore", "discard_objects", "image_path", "safe_name", "validate_image"]

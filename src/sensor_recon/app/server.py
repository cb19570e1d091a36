from __future__ import annotations

import base64
import binascii
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from sensor_recon import __version__
from sensor_recon.app.compose import AppContainer, compose
from sensor_recon.core.application.use_cases.boxes import assign_box, assign_installer, import_devices, open_box
from sensor_recon.core.application.use_cases.delete_installation import delete_installation
from sensor_recon.core.application.use_cases.reassign_location import reassign_from
from sensor_recon.core.application.use_cases.submit_installation import (
    Installer,
    SubmitInputs,
    precheck,
    submit,
)
from sensor_recon.core.application.use_cases.verification_queue import verification_queue
from sensor_recon.core.infrastructure.objects import ImageUpload
from sensor_recon.utils.exceptions import (
    ConflictError,
    NotFoundError,
    ReconError,
    TransientError,
    ValidationError,
)
from sensor_recon.utils.logging import get_logger
from sensor_recon.utils.metrics import export_text, inc, observe

logger = get_logger(__name__)


# ---------------- request models ----------------

class ImagePayload(BaseModel):
    filename: str
    content_type: str
    data_base64: str

    def to_upload(self) -> ImageUpload:
        try:
            data = base64.b64decode(self.data_base64, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError("Image data is not valid base64.", title="Invalid File") from None
        return ImageUpload(filename=self.filename, content_type=self.content_type, data=data)


class InstallerPayload(BaseModel):
    installer_id: str
    installer_name: str
    team_id: Optional[str] = None
    role: str = "installer"

    def to_installer(self) -> Installer:
        return Installer(id=self.installer_id, name=self.installer_name, team_id=self.team_id, role=self.role)


class PrecheckRequest(InstallerPayload):
    device_id: str


class SubmitRequest(InstallerPayload):
    device_id: str
    location_id: str
    sensor_reading: float | str
    unit: str = "cm"
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    images: list[ImagePayload] = Field(default_factory=list)


class ApproveRequest(BaseModel):
    verifier: str


class RejectRequest(BaseModel):
    verifier: str
    reason: str


class EditRequest(BaseModel):
    editor: str
    fields: dict[str, Any] = Field(default_factory=dict)
    image: Optional[ImagePayload] = None


class ReassignRequest(BaseModel):
    location_id: str
    new_location_id: str
    actor: Optional[str] = None


class OpenBoxRequest(BaseModel):
    box_number: str
    team_id: Optional[str] = None
    actor: Optional[str] = None


class AssignBoxRequest(BaseModel):
    device_ids: list[str]
    box_number: str
    team_id: str
    actor: Optional[str] = None


class AssignInstallerRequest(BaseModel):
    device_ids: list[str]
    installer_id: Optional[str] = None
    installer_name: Optional[str] = None
    actor: Optional[str] = None


class ImportDevicesRequest(BaseModel):
    devices: list[dict[str, Any]]
    actor: Optional[str] = None


class VisibilityRequest(BaseModel):
    active: bool


_STATUS_BY_ERROR: tuple[tuple[type[ReconError], int], ...] = (
    (NotFoundError, 404),
    (ConflictError, 409),
    (TransientError, 503),
    (ValidationError, 400),
)


def status_for(exc: ReconError) -> int:
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return 500


# ---------------- app factory ----------------

@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    if app.state.container is None:
        app.state.container = await compose()
    container: AppContainer = app.state.container
    await container.start()
    try:
        yield
    finally:
        try:
            await container.stop()
        except Exception:
            logger.exception("container_stop_failed")


def create_app(container: Optional[AppContainer] = None) -> FastAPI:
    app = FastAPI(title="sensor-recon API", version=__version__, lifespan=_lifespan)
    app.state.container = container

    def _c(request: Request) -> AppContainer:
        return request.app.state.container

    @app.exception_handler(ReconError)
    async def _recon_error(request: Request, exc: ReconError) -> JSONResponse:
        status = status_for(exc)
        inc("http_errors_total", code=exc.code, status=str(status))
        logger.info("request_failed", extra={"path": request.url.path, "code": exc.code, "status": status})
        return JSONResponse(status_code=status, content=exc.to_dict())

    # ---------------- metrics middleware ----------------

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        method = request.method
        t0 = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            # the router fills in the matched route while handling the request
            route = request.scope.get("route")
            path_template = getattr(route, "path", None) or "unmatched"
            inc("http_requests_total", path=path_template, method=method)
            observe("http_request_ms", (time.perf_counter() - t0) * 1000.0, {"path": path_template, "method": method})
        return response

    # ---------------- base endpoints ----------------

    @app.get("/health", response_class=JSONResponse)
    async def health(request: Request) -> dict[str, Any]:
        c = _c(request)
        db_ok = await c.storage.ping()
        return {
            "status": "ok" if db_ok else "degraded",
            "db": db_ok,
            "verifier_scheduler": {"running": c.verifier_scheduler.running, "active": c.verifier_scheduler.active},
            "installer_sessions": sorted(c.installer_schedulers),
        }

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint() -> Response:
        return PlainTextResponse(export_text(), media_type="text/plain; version=0.0.4")

    # ---------------- installations ----------------

    @app.post("/installations/precheck")
    async def precheck_endpoint(body: PrecheckRequest, request: Request) -> dict[str, Any]:
        c = _c(request)
        decision = await precheck(
            storage=c.storage, settings=c.settings, installer=body.to_installer(), device_id=body.device_id
        )
        return {
            "ok": decision.ok,
            "code": decision.code.value if decision.code else None,
            "title": decision.title,
            "description": decision.description,
        }

    @app.post("/installations", status_code=201)
    async def submit_endpoint(body: SubmitRequest, request: Request) -> dict[str, Any]:
        c = _c(request)
        inputs = SubmitInputs(
            device_id=body.device_id,
            location_id=body.location_id,
            sensor_reading=body.sensor_reading,
            unit=body.unit,
            latitude=body.latitude,
            longitude=body.longitude,
            images=[img.to_upload() for img in body.images],
        )
        installation = await submit(
            storage=c.storage,
            objects=c.objects,
            settings=c.settings,
            installer=body.to_installer(),
            inputs=inputs,
            bus=c.bus,
        )
        return installation.to_document()

    @app.get("/installations/queue")
    async def queue_endpoint(request: Request, team_id: Optional[str] = None) -> dict[str, Any]:
        items = await verification_queue(storage=_c(request).storage, team_id=team_id)
        return {"count": len(items), "items": [i.to_document() for i in items]}

    @app.get("/installations/{installation_id}")
    async def get_installation(installation_id: str, request: Request) -> dict[str, Any]:
        installation = await _c(request).storage.installations.get(installation_id)
        if installation is None:
            raise NotFoundError(f"Installation {installation_id} does not exist.")
        return installation.to_document()

    @app.post("/installations/{installation_id}/reconcile")
    async def reconcile_endpoint(installation_id: str, request: Request) -> dict[str, Any]:
        outcome = await _c(request).engine.trigger(installation_id)
        return outcome.to_dict()

    @app.post("/installations/{installation_id}/approve")
    async def approve_endpoint(installation_id: str, body: ApproveRequest, request: Request) -> dict[str, Any]:
        installation = await _c(request).engine.approve(installation_id, body.verifier)
        return installation.to_document()

    @app.post("/installations/{installation_id}/reject")
    async def reject_endpoint(installation_id: str, body: RejectRequest, request: Request) -> dict[str, Any]:
        installation = await _c(request).engine.reject(installation_id, body.verifier, body.reason)
        return installation.to_document()

    @app.patch("/installations/{installation_id}")
    async def edit_endpoint(installation_id: str, body: EditRequest, request: Request) -> dict[str, Any]:
        result = await _c(request).audit.apply_edit(
            installation_id,
            body.fields,
            editor=body.editor,
            image=body.image.to_upload() if body.image else None,
        )
        return result.to_dict()

    @app.delete("/installations/{installation_id}")
    async def delete_endpoint(installation_id: str, request: Request, actor: str = "") -> dict[str, Any]:
        c = _c(request)
        await delete_installation(storage=c.storage, installation_id=installation_id, actor=actor, bus=c.bus)
        return {"deleted": installation_id}

    # ---------------- administration ----------------

    @app.post("/admin/locations/reassign")
    async def reassign_endpoint(body: ReassignRequest, request: Request) -> dict[str, Any]:
        c = _c(request)
        count = await reassign_from(
            storage=c.storage,
            location_id=body.location_id,
            new_location_id=body.new_location_id,
            actor=body.actor,
            bus=c.bus,
        )
        return {"updated": count}

    @app.post("/admin/devices/import")
    async def import_endpoint(body: ImportDevicesRequest, request: Request) -> dict[str, Any]:
        created = await import_devices(storage=_c(request).storage, records=body.devices, actor=body.actor)
        return {"created": created}

    @app.post("/admin/boxes/assign")
    async def assign_box_endpoint(body: AssignBoxRequest, request: Request) -> dict[str, Any]:
        count = await assign_box(
            storage=_c(request).storage,
            device_ids=body.device_ids,
            box_number=body.box_number,
            team_id=body.team_id,
            actor=body.actor,
        )
        return {"updated": count}

    @app.post("/admin/boxes/open")
    async def open_box_endpoint(body: OpenBoxRequest, request: Request) -> dict[str, Any]:
        c = _c(request)
        count = await open_box(
            storage=c.storage, box_number=body.box_number, team_id=body.team_id, actor=body.actor, bus=c.bus
        )
        return {"opened": count}

    @app.post("/admin/devices/assign-installer")
    async def assign_installer_endpoint(body: AssignInstallerRequest, request: Request) -> dict[str, Any]:
        c = _c(request)
        count = await assign_installer(
            storage=c.storage,
            device_ids=body.device_ids,
            installer_id=body.installer_id,
            installer_name=body.installer_name,
            actor=body.actor,
            bus=c.bus,
        )
        return {"updated": count}

    # ---------------- schedulers ----------------

    @app.post("/sessions/installer/{installer_id}/start")
    async def start_session(installer_id: str, request: Request) -> dict[str, Any]:
        sched = await _c(request).start_installer_session(installer_id)
        return {"installer_id": installer_id, "running": sched.running, "active": sched.active}

    @app.post("/sessions/installer/{installer_id}/visibility")
    async def session_visibility(installer_id: str, body: VisibilityRequest, request: Request) -> dict[str, Any]:
        sched = _c(request).installer_schedulers.get(installer_id)
        if sched is None:
            raise NotFoundError(f"No session for installer {installer_id}.")
        sched.set_active(body.active)
        return {"installer_id": installer_id, "active": sched.active}

    @app.post("/sessions/installer/{installer_id}/stop")
    async def stop_session(installer_id: str, request: Request) -> dict[str, Any]:
        stopped = await _c(request).stop_installer_session(installer_id)
        return {"installer_id": installer_id, "stopped": stopped}

    @app.post("/scheduler/verifier/run-once")
    async def verifier_run_once(request: Request) -> dict[str, Any]:
        return await _c(request).verifier_scheduler.run_once()

    return app


app = create_app()

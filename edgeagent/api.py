from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Query

from . import db
from .dataservice import DataServiceOrchestrator
from .docker_ops import ContainerRuntime, DockerRuntime
from .errors import AlreadyExists, DataServiceError, NoContainers, NotFound, RuntimeCallError, RuntimeTimeout
from .handler import MessageHandler
from .ledger import StatusLedger
from .manifest import ManifestUniqueID
from .runtime import RuntimeState
from .settings import settings


def _error_status(e: Exception) -> int:
    if isinstance(e, AlreadyExists):
        return 409
    if isinstance(e, (NotFound, NoContainers)):
        return 404
    if isinstance(e, RuntimeTimeout):
        return 504
    if isinstance(e, DataServiceError):
        return 504 if e.timed_out else 500
    if isinstance(e, RuntimeCallError):
        return 502
    return 422


def create_app(
    runtime: ContainerRuntime | None = None,
    ledger: StatusLedger | None = None,
    state: RuntimeState | None = None,
) -> FastAPI:
    runtime = runtime if runtime is not None else DockerRuntime()
    ledger = ledger if ledger is not None else StatusLedger(settings.ledger_path)
    state = state or RuntimeState()
    handler = MessageHandler(DataServiceOrchestrator(runtime, ledger), state)

    app = FastAPI(title="Edge Agent")
    app.state.runtime = runtime
    app.state.ledger = ledger
    app.state.handler = handler

    @app.on_event("startup")
    def startup() -> None:
        db.init_db()
        ledger.init_known_manifests()
        db.log_event("INFO", "Edge agent started")

    @app.post("/messages")
    def post_message(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        try:
            row = handler.process_message(payload)
        except (DataServiceError, RuntimeCallError, ValueError) as e:
            raise HTTPException(status_code=_error_status(e), detail=str(e))
        return row.to_dict()

    @app.get("/manifests")
    def list_manifests() -> list[dict[str, Any]]:
        return [r.to_dict() for r in ledger.get_known_manifests()]

    @app.get("/manifests/{name}/{version}")
    def get_manifest(name: str, version: str) -> dict[str, Any]:
        try:
            return ledger.require(ManifestUniqueID(name, version)).to_dict()
        except NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.get("/manifests/{name}/{version}/logs")
    def get_logs(
        name: str,
        version: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[dict[str, Any]]:
        try:
            logs = handler.orchestrator.container_logs(ManifestUniqueID(name, version), since=since, until=until)
        except (DataServiceError, RuntimeCallError) as e:
            raise HTTPException(status_code=_error_status(e), detail=str(e))
        return [
            {
                "containerID": cl.container_id,
                "dockerLogs": [{"time": ln.time, "stream": ln.stream, "log": ln.log} for ln in cl.lines],
            }
            for cl in logs
        ]

    @app.get("/events")
    def events(
        limit: int = Query(100, ge=1, le=1000),
        manifest_name: str | None = None,
        version: str | None = None,
    ) -> list[dict[str, Any]]:
        return db.latest_events(limit, manifest_name=manifest_name, version=version)

    @app.get("/health")
    def health() -> dict[str, Any]:
        available = getattr(runtime, "available", None)
        return {
            "status": "healthy",
            "docker": available() if callable(available) else None,
            "in_flight": [
                {
                    "manifestName": c.unique_id.manifest_name,
                    "versionNumber": c.unique_id.version_number,
                    "command": c.command,
                    "startedAt": c.started_at,
                }
                for c in state.list_in_flight()
            ],
        }

    return app


app = create_app()

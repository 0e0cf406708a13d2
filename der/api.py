from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException

from .api_models import BackendStatus, HealthResponse, StatusResponse, SyncSummary
from .docker_ops import RuntimeUnavailable
from .registrator import Registrator


def create_app(registrator: Registrator) -> FastAPI:
    """Small status surface for supervisors and operators."""
    app = FastAPI(title="Docker etcd Registrator")

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(
            hostname=registrator.settings.hostname,
            backends=[b.name for b in registrator.backends],
        )

    @app.get("/backends", response_model=StatusResponse)
    def backends() -> StatusResponse:
        st = registrator.status()
        return StatusResponse(
            hostname=st["hostname"],
            backends=[BackendStatus(**b) for b in st["backends"]],
        )

    @app.post("/sync", response_model=list[SyncSummary])
    async def sync() -> list[SyncSummary]:
        try:
            results = await registrator.sync_all()
        except RuntimeUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return [
            SyncSummary(backend=r.backend, added=r.added, removed=r.removed, errors=r.errors, ok=r.ok)
            for r in results
        ]

    return app


def create_server(registrator: Registrator) -> Any:
    """uvicorn server for the status API, or None when it is disabled."""
    settings = registrator.settings
    if not settings.api_port:
        return None
    import uvicorn

    config = uvicorn.Config(
        create_app(registrator),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
    return uvicorn.Server(config)

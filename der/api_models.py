from __future__ import annotations

from pydantic import BaseModel, Field


class BackendStatus(BaseModel):
    name: str
    prefix: str = Field(..., description="etcd directory owned by this backend")
    prune_depth: int
    containers: dict[str, list[str]] = Field(default_factory=dict, description="Container id -> keys written for it")


class HealthResponse(BaseModel):
    status: str = "healthy"
    hostname: str
    backends: list[str]


class StatusResponse(BaseModel):
    hostname: str
    backends: list[BackendStatus]


class SyncSummary(BaseModel):
    backend: str
    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    ok: bool

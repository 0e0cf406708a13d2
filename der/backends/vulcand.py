from __future__ import annotations

import asyncio
import copy
import json
from typing import Any, Mapping

from ..etcd import EtcdError, EtcdKeyNotFound
from ..reconciler import ADD_CONCURRENCY, SyncResult, bounded_gather
from ..service import ServiceDescriptor
from .base import RegistryBackend

BACKEND_DEFAULTS: dict[str, Any] = {
    "Type": "http",
    "Settings": {},
}

FRONTEND_DEFAULTS: dict[str, Any] = {
    "Type": "http",
    "BackendId": None,
    "Route": None,
    "Settings": {},
}


def _coerce(value: Any) -> Any:
    if value == "true":
        return True
    if value == "false":
        return False
    return value


def _segment_name(segment: str, existing: Mapping[str, Any]) -> str:
    """Map an env-style segment onto the key it addresses.

    Keys already present are matched case-insensitively (so BACKENDID hits
    BackendId); other all-caps segments are capitalized (TIMEOUT -> Timeout);
    anything else is taken as written.
    """
    for key in existing:
        if key.lower() == segment.lower():
            return key
    if segment.isupper():
        return segment.capitalize()
    return segment


def flatten_attributes(attributes: Mapping[str, Any], prefix: str, defaults: Mapping[str, Any]) -> dict[str, Any]:
    """Build a nested definition from prefixed attributes.

    `<prefix>SETTINGS_TIMEOUT=true` on top of a deep copy of `defaults` sets
    obj["Settings"]["Timeout"] = True.
    """
    obj: dict[str, Any] = copy.deepcopy(dict(defaults))
    for name, val in sorted(attributes.items()):
        if not name.startswith(prefix) or len(name) == len(prefix):
            continue
        segments = [s for s in name[len(prefix):].split("_") if s]
        if not segments:
            continue
        curr = obj
        for seg in segments[:-1]:
            key = _segment_name(seg, curr)
            if not isinstance(curr.get(key), dict):
                curr[key] = {}
            curr = curr[key]
        curr[_segment_name(segments[-1], curr)] = _coerce(val)
    return obj


def _has_prefix(svc: ServiceDescriptor, prefix: str) -> bool:
    return any(k.startswith(prefix) for k in svc.attributes)


class VulcandBackend(RegistryBackend):
    """Vulcand backends/servers and frontends.

    Layout under the prefix:
      backends/<name>/backend                          backend definition
      backends/<name>/servers/<ident>                  one per container port
      frontends/<name>/frontend                        frontend definition
      frontends/<name>/registrator-catalog/<ident>     marks who still wants it

    A frontend can be shared by containers on several hosts, so its
    definition is only dropped once the catalog directory is empty.
    """

    name = "vulcand"
    prune_depth = 2

    backend_prefix = "VULCAND_BE_"
    frontend_prefix = "VULCAND_FE_"

    def __init__(self, store, hostname: str, prefix: str = "/vulcand"):
        super().__init__(store, hostname, prefix)

    def server_key(self, svc: ServiceDescriptor) -> str | None:
        if _has_prefix(svc, self.backend_prefix):
            return f"{self.prefix}/backends/{svc.name}/servers/{self.ident(svc)}"
        self.logger.debug("Ignore backend %s:%s, no %s attributes", svc.name, svc.port, self.backend_prefix)
        return None

    def catalog_key(self, svc: ServiceDescriptor) -> str | None:
        if _has_prefix(svc, self.frontend_prefix):
            return f"{self.prefix}/frontends/{svc.name}/registrator-catalog/{self.ident(svc)}"
        self.logger.debug("Ignore frontend %s:%s, no %s attributes", svc.name, svc.port, self.frontend_prefix)
        return None

    def keys_for(self, svc: ServiceDescriptor) -> list[str]:
        return [k for k in (self.server_key(svc), self.catalog_key(svc)) if k]

    def backend_definition(self, svc: ServiceDescriptor) -> dict[str, Any]:
        return flatten_attributes(svc.attributes, self.backend_prefix, BACKEND_DEFAULTS)

    def frontend_definition(self, svc: ServiceDescriptor) -> dict[str, Any]:
        fe = flatten_attributes(svc.attributes, self.frontend_prefix, FRONTEND_DEFAULTS)
        if not fe.get("BackendId"):
            fe["BackendId"] = svc.name
        return fe

    async def add_service(self, svc: ServiceDescriptor) -> None:
        outcomes = await asyncio.gather(
            self.add_backend(svc),
            self.add_frontend(svc),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    async def add_backend(self, svc: ServiceDescriptor) -> None:
        server_key = self.server_key(svc)
        if server_key is None:
            return
        base = f"{self.prefix}/backends/{svc.name}"
        be = self.backend_definition(svc)

        self.logger.info("Vulcand backend: %s %s:%s [%s]", svc.name, svc.ip, svc.port, base)
        await self.store.set(f"{base}/backend", json.dumps(be))
        server = {"URL": f"{be.get('Type', 'http')}://{svc.ip}:{svc.port}"}
        await self.store.set(server_key, json.dumps(server))
        self._remember(svc.container_id, server_key)

    async def add_frontend(self, svc: ServiceDescriptor) -> None:
        catalog_key = self.catalog_key(svc)
        if catalog_key is None:
            return
        base = f"{self.prefix}/frontends/{svc.name}"
        fe = self.frontend_definition(svc)

        self.logger.info("Vulcand frontend: %s Route:%s [%s]", svc.name, fe.get("Route"), base)
        await self.store.set(catalog_key, "1")
        self._remember(svc.container_id, catalog_key)
        await self.store.set(f"{base}/frontend", json.dumps(fe))

    async def repair(self, services: list[ServiceDescriptor], result: SyncResult) -> None:
        """Re-write backend and frontend definitions that went missing.

        A prune drops backends/<name> or frontends/<name> as a whole once its
        servers or catalog directory is empty. Another container of the same
        name registering at that moment keeps its identity key but can lose
        the definition, which identity-key diffing never notices.
        """
        wanted: dict[str, dict[str, Any]] = {}
        for svc in sorted(services, key=lambda s: (s.name, s.container_id, s.port)):
            if _has_prefix(svc, self.backend_prefix):
                wanted.setdefault(f"{self.prefix}/backends/{svc.name}/backend", self.backend_definition(svc))
            if _has_prefix(svc, self.frontend_prefix):
                wanted.setdefault(f"{self.prefix}/frontends/{svc.name}/frontend", self.frontend_definition(svc))

        async def _ensure(key: str) -> None:
            try:
                await self.store.get(key)
            except EtcdKeyNotFound:
                self.logger.info("Restoring missing %s", key)
                await self.store.set(key, json.dumps(wanted[key]))

        keys = sorted(wanted)
        outcomes = await bounded_gather(keys, ADD_CONCURRENCY, _ensure)
        for key, outcome in zip(keys, outcomes):
            if isinstance(outcome, EtcdError):
                self.logger.error("Could not restore %s: %s", key, outcome)
                result.errors.append(f"repair {key}: {outcome}")
            elif isinstance(outcome, BaseException):
                raise outcome

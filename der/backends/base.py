from __future__ import annotations

import logging
import posixpath
from typing import Any, Iterable

from ..etcd import EtcdError, EtcdKeyNotFound, RetryingStore, deep_find_keys, host_key_pattern
from ..reconciler import DELETE_CONCURRENCY, SyncResult, bounded_gather, reconcile
from ..service import ServiceDescriptor


class RegistryBackend:
    """Shared add/remove/sync machinery for registry projections.

    Subclasses implement `keys_for` (which identity keys a descriptor owns in
    this backend) and `add_service` (write them), and set `prune_depth`.
    """

    name = "backend"
    prune_depth = 1

    def __init__(self, store: RetryingStore, hostname: str, prefix: str):
        self.store = store
        self.hostname = hostname
        self.prefix = "/" + prefix.strip("/")
        self.cid_cache: dict[str, list[str]] = {}
        self.logger = logging.getLogger(f"der.backends.{self.name}")

    # -- to implement -----------------------------------------------------

    def keys_for(self, svc: ServiceDescriptor) -> list[str]:
        raise NotImplementedError

    async def add_service(self, svc: ServiceDescriptor) -> None:
        raise NotImplementedError

    async def repair(self, services: list[ServiceDescriptor], result: SyncResult) -> None:
        """Restore shared, non-identity keys of running services. Nothing by default."""

    # -- shared -----------------------------------------------------------

    def ident(self, svc: ServiceDescriptor) -> str:
        return svc.ident(self.hostname)

    def _remember(self, container_id: str, key: str) -> None:
        keys = self.cid_cache.setdefault(container_id, [])
        if key not in keys:
            keys.append(key)

    async def sync(self, services: list[ServiceDescriptor]) -> SyncResult:
        return await reconcile(self, services)

    async def registry_keys(self) -> list[str]:
        """Identity keys this host currently has under the prefix."""
        return await self._find_keys(host_key_pattern(self.hostname))

    async def find_keys_by_cid(self, container_id: str) -> list[str]:
        return await self._find_keys(host_key_pattern(self.hostname, container_id))

    async def _find_keys(self, pattern: Any) -> list[str]:
        try:
            root = await self.store.get(self.prefix, recursive=True)
        except EtcdKeyNotFound:
            return []
        return deep_find_keys(root, pattern)

    async def remove_service_by_cid(self, container_id: str) -> SyncResult:
        keys = self.cid_cache.pop(container_id, None)
        if keys is None:
            # not in cache (e.g. registrator restarted), search the registry
            keys = await self.find_keys_by_cid(container_id)
        result = SyncResult(backend=self.name)
        if keys:
            await self.remove_by_keys(keys, result)
        return result

    async def remove_by_keys(self, keys: list[str], result: SyncResult | None = None) -> SyncResult:
        result = result or SyncResult(backend=self.name)
        deleted: list[str] = []

        async def _delete(key: str) -> None:
            self.logger.info("%s remove: %s", self.name, key)
            try:
                await self.store.delete(key)
            except EtcdKeyNotFound:
                pass
            deleted.append(key)

        outcomes = await bounded_gather(keys, DELETE_CONCURRENCY, _delete)
        for key, outcome in zip(keys, outcomes):
            if isinstance(outcome, EtcdError):
                self.logger.error("Could not delete %s: %s", key, outcome)
                result.errors.append(f"delete {key}: {outcome}")
            elif isinstance(outcome, BaseException):
                raise outcome
        result.removed.extend(deleted)
        await self.prune(deleted, result)
        return result

    def _prune_targets(self, keys: Iterable[str]) -> dict[str, str]:
        """Map probe directory -> directory to drop when the probe is empty."""
        targets: dict[str, str] = {}
        if self.prune_depth <= 0:
            return targets
        for key in keys:
            probe = posixpath.dirname(key)
            target = probe
            for _ in range(self.prune_depth - 1):
                target = posixpath.dirname(target)
            if target.startswith(self.prefix + "/"):
                targets[probe] = target
        return targets

    async def prune(self, deleted: list[str], result: SyncResult | None = None) -> None:
        """Drop directories left empty by `deleted`, up to `prune_depth` levels."""
        targets = self._prune_targets(deleted)

        async def _check(probe: str) -> None:
            target = targets[probe]
            try:
                node = await self.store.get(probe)
            except EtcdKeyNotFound:
                return
            if node.nodes:
                return
            self.logger.debug("%s is empty, removing %s", probe, target)
            try:
                await self.store.delete(target, recursive=True)
            except EtcdKeyNotFound:
                return

        probes = list(targets)
        outcomes = await bounded_gather(probes, DELETE_CONCURRENCY, _check)
        for probe, outcome in zip(probes, outcomes):
            if isinstance(outcome, EtcdError):
                self.logger.error("Could not prune %s: %s", targets[probe], outcome)
                if result is not None:
                    result.errors.append(f"prune {targets[probe]}: {outcome}")
            elif isinstance(outcome, BaseException):
                raise outcome

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "prefix": self.prefix,
            "prune_depth": self.prune_depth,
            "containers": {cid: list(keys) for cid, keys in self.cid_cache.items()},
        }

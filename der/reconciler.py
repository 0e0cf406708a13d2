from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, TypeVar

from .etcd import EtcdError
from .service import ServiceDescriptor

if TYPE_CHECKING:
    from .backends.base import RegistryBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")

ADD_CONCURRENCY = 10
DELETE_CONCURRENCY = 5


async def bounded_gather(items: Iterable[T], limit: int, fn: Callable[[T], Awaitable[Any]]) -> list[Any]:
    """Run `fn` over `items` with at most `limit` in flight.

    Exceptions are returned in place of results, like gather(return_exceptions=True).
    """
    sem = asyncio.Semaphore(max(1, limit))

    async def _one(item: T) -> Any:
        async with sem:
            return await fn(item)

    return await asyncio.gather(*(_one(i) for i in items), return_exceptions=True)


@dataclass
class SyncResult:
    backend: str
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def writes(self) -> int:
        return len(self.added) + len(self.removed)


def running_map(backend: "RegistryBackend", services: list[ServiceDescriptor]) -> dict[str, ServiceDescriptor]:
    """Identity key -> descriptor for every key the backend would own."""
    out: dict[str, ServiceDescriptor] = {}
    for svc in services:
        for key in backend.keys_for(svc):
            out[key] = svc
    return out


def plan(running_keys: set[str], registry_keys: set[str]) -> tuple[set[str], set[str]]:
    """Return (to_add, to_delete)."""
    return running_keys - registry_keys, registry_keys - running_keys


async def reconcile(backend: "RegistryBackend", services: list[ServiceDescriptor]) -> SyncResult:
    """Bring the backend's slice of the registry in line with `services`.

    Registry read failures propagate; individual add/delete failures are
    collected in the result and do not stop the batch.
    """
    result = SyncResult(backend=backend.name)
    running = running_map(backend, services)
    registry = set(await backend.registry_keys())

    # both sets come from the same snapshot, before anything is written
    to_add, to_delete = plan(set(running), registry)

    pending: dict[tuple[str, int], ServiceDescriptor] = {}
    for key in sorted(to_add):
        svc = running[key]
        pending.setdefault((svc.container_id, svc.port), svc)

    if pending:
        logger.debug("%s: adding %d already running services", backend.name, len(pending))
        descriptors = list(pending.values())
        outcomes = await bounded_gather(descriptors, ADD_CONCURRENCY, backend.add_service)
        for svc, outcome in zip(descriptors, outcomes):
            if isinstance(outcome, EtcdError):
                logger.error("%s: could not add %s (%s): %s", backend.name, svc.name, svc.container_id, outcome)
                result.errors.append(f"add {svc.ident(backend.hostname)}: {outcome}")
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.added.extend(k for k in backend.keys_for(svc) if k in to_add)

    if to_delete:
        logger.debug("%s: removing %d obsolete services", backend.name, len(to_delete))
        await backend.remove_by_keys(sorted(to_delete), result)

    await backend.repair(services, result)

    if result.writes or result.errors:
        logger.info(
            "%s sync: %d added, %d removed, %d errors",
            backend.name,
            len(result.added),
            len(result.removed),
            len(result.errors),
        )
    return result


class Reconciler:
    """Runs a full sync on a coarse timer."""

    def __init__(self, sync_all: Callable[[], Awaitable[object]], interval_s: float):
        self.sync_all = sync_all
        self.interval_s = max(0.001, float(interval_s))
        self._task: asyncio.Task | None = None

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop(), name="periodic-sync")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            logger.info("Periodic sync of etcd with running containers")
            await self.sync_all()

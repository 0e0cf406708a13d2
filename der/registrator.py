from __future__ import annotations

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from docker.errors import DockerException

from .backends import RegistryBackend, build_backends
from .debounce import LifecycleDebouncer
from .docker_ops import DockerRuntime, InvalidContainer, LifecycleEvent, RuntimeUnavailable, classify_docker_error
from .etcd import EtcdAccessDenied, EtcdClient, EtcdError, RetryingStore
from .reconciler import Reconciler, SyncResult
from .service import parse_container, parse_containers
from .settings import Settings

logger = logging.getLogger(__name__)


class StoreUnavailable(Exception):
    """No etcd endpoint answered at startup."""


class AccessDenied(Exception):
    """etcd refused our credentials."""


def build_store(settings: Settings) -> RetryingStore:
    client = EtcdClient(
        endpoints=settings.etcd_endpoints,
        timeout_s=settings.etcd_timeout_s,
        cafile=settings.etcd_cafile,
        certfile=settings.etcd_certfile,
        keyfile=settings.etcd_keyfile,
        username=settings.etcd_username,
        password=settings.etcd_password,
    )
    return RetryingStore(client)


class Registrator:
    """Wires Docker lifecycle events to every registry backend.

    Startup: check Docker and etcd, start the event reader, run a full sync,
    then keep syncing on a coarse timer. Every debounced appeared/gone
    notification goes to every backend.
    """

    def __init__(
        self,
        settings: Settings,
        runtime: DockerRuntime | None = None,
        store: RetryingStore | None = None,
        backends: list[RegistryBackend] | None = None,
    ):
        self.settings = settings
        self.runtime = runtime or DockerRuntime(max_cid_length=settings.max_cid_length, timeout_s=settings.docker_timeout_s)
        self.store = store or build_store(settings)
        self.backends = backends if backends is not None else build_backends(settings, self.store)
        self.debouncer = LifecycleDebouncer(settings.debounce_s, self.service_appeared, self.service_gone)
        self.reconciler = Reconciler(self.sync_all, settings.sync_interval_s)
        self.last_sync: list[SyncResult] = []
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()
        self._fatal: asyncio.Future | None = None
        self._stopping = False

    # -- connectivity ------------------------------------------------------

    async def check_connectivity(self) -> None:
        """Raise RuntimeUnavailable (or RuntimeAccessDenied), StoreUnavailable or AccessDenied."""
        await asyncio.to_thread(self.runtime.ping)
        try:
            info = await self.store.client.version()
        except EtcdAccessDenied as e:
            raise AccessDenied(f"Access to etcd denied: {e}") from e
        except EtcdError as e:
            raise StoreUnavailable(str(e)) from e
        logger.info("Connected to etcd %s (%s)", ", ".join(self.settings.etcd_endpoints), info.get("etcdserver", "?"))

    def _fail(self, exc: BaseException) -> None:
        if self._fatal is not None and not self._fatal.done():
            self._fatal.set_exception(exc)

    # -- lifecycle notifications ------------------------------------------

    @asynccontextmanager
    async def _exclusive(self, container_id: str) -> AsyncIterator[None]:
        """Serialize appeared/gone handling per container.

        The lock is dropped from the map only once nobody holds or awaits it.
        """
        lock = self._locks.setdefault(container_id, asyncio.Lock())
        self._lock_users[container_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[container_id] -= 1
            if self._lock_users[container_id] <= 0:
                del self._lock_users[container_id]
                self._locks.pop(container_id, None)

    async def service_appeared(self, container_id: str) -> None:
        async with self._exclusive(container_id):
            try:
                record = await self.runtime.inspect_async(container_id)
            except InvalidContainer as e:
                logger.warning("Skipping container %s: %s", container_id, e)
                return
            except DockerException as e:
                self._fail(classify_docker_error(e))
                return
            if record is None:
                return
            services = parse_container(record, self.settings.registration)
            if not services:
                return
            await asyncio.gather(*(self._add_all(b, services) for b in self.backends))

    async def _add_all(self, backend: RegistryBackend, services: list) -> None:
        for svc in services:
            try:
                await backend.add_service(svc)
            except EtcdError as e:
                logger.error("%s: could not add %s (%s): %s", backend.name, svc.name, svc.container_id, e)

    async def service_gone(self, container_id: str) -> None:
        async with self._exclusive(container_id):
            outcomes = await asyncio.gather(
                *(b.remove_service_by_cid(container_id) for b in self.backends),
                return_exceptions=True,
            )
        for backend, outcome in zip(self.backends, outcomes):
            if isinstance(outcome, EtcdError):
                logger.error("%s: could not look up keys of %s: %s", backend.name, container_id, outcome)
            elif isinstance(outcome, BaseException):
                raise outcome

    def handle_event(self, event: LifecycleEvent) -> None:
        if event.status == "start":
            self.debouncer.start(event.container_id)
        elif event.status == "die":
            self.debouncer.die(event.container_id)

    # -- full sync --------------------------------------------------------

    async def sync_all(self) -> list[SyncResult]:
        """Sync every backend against the running containers.

        Docker failures propagate (fatal); an etcd read failure only aborts
        that backend's round.
        """
        logger.info("Sync etcd with running containers")
        try:
            records = await self.runtime.list_running_async()
        except DockerException as e:
            raise classify_docker_error(e) from e
        services = parse_containers(records, self.settings.registration)

        async def _one(backend: RegistryBackend) -> SyncResult:
            try:
                return await backend.sync(services)
            except EtcdError as e:
                logger.error("%s: etcd get %s failed, sync aborted: %s", backend.name, backend.prefix, e)
                return SyncResult(backend=backend.name, errors=[f"get {backend.prefix}: {e}"])

        self.last_sync = list(await asyncio.gather(*(_one(b) for b in self.backends)))
        return self.last_sync

    # -- main loop --------------------------------------------------------

    def _on_docker_event(
        self,
        loop: asyncio.AbstractEventLoop,
        events: asyncio.Queue[LifecycleEvent | None],
        event: LifecycleEvent | None,
    ) -> None:
        # called from the event reader thread
        try:
            loop.call_soon_threadsafe(events.put_nowait, event)
        except RuntimeError:
            # loop already closed during shutdown
            logger.debug("Dropping docker event %s after shutdown", event)

    async def _consume_events(self, events: asyncio.Queue[LifecycleEvent | None]) -> None:
        while True:
            event = await events.get()
            if event is None:
                if not self._stopping:
                    self._fail(self.runtime.failure or RuntimeUnavailable("Lost connection to the Docker daemon"))
                return
            self.handle_event(event)

    async def run(self, api_server: Any = None) -> None:
        """Run until stopped; raises the first fatal connectivity error."""
        loop = asyncio.get_running_loop()
        self._fatal = loop.create_future()
        events: asyncio.Queue[LifecycleEvent | None] = asyncio.Queue()

        tasks: list[asyncio.Task] = []
        try:
            await self.check_connectivity()
            for b in self.backends:
                logger.info("%s etcd path: %s", b.name, b.prefix)

            self.runtime.watch(lambda ev: self._on_docker_event(loop, events, ev))
            logger.info("Docker daemon connected")
            tasks.append(asyncio.create_task(self._consume_events(events), name="docker-events"))
            if api_server is not None:
                tasks.append(asyncio.create_task(api_server.serve(), name="status-api"))

            await self.sync_all()
            self.reconciler.start()
            done_waiters = [self._fatal, *tasks]
            if self.reconciler.task is not None:
                done_waiters.append(self.reconciler.task)
            done, _ = await asyncio.wait(done_waiters, return_when=asyncio.FIRST_COMPLETED)
            if self._fatal.done():
                self._fatal.result()
            for fut in done:
                if not fut.cancelled() and fut.exception() is not None:
                    raise fut.exception()
        finally:
            await self.shutdown(tasks)

    async def shutdown(self, tasks: list[asyncio.Task] | None = None) -> None:
        self._stopping = True
        self.debouncer.close()
        await self.reconciler.stop()
        self.runtime.close()
        for t in tasks or []:
            t.cancel()
        for t in tasks or []:
            try:
                await t
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug("Task %s ended with %s", t.get_name(), e)
        await self.debouncer.drain()
        await self.store.aclose()

    def status(self) -> dict[str, Any]:
        return {
            "hostname": self.settings.hostname,
            "backends": [b.describe() for b in self.backends],
        }

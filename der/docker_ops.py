from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from threading import Thread
from typing import Any, Callable, Iterator, Mapping

import docker
from docker.errors import DockerException, NotFound

logger = logging.getLogger(__name__)

NON_BRIDGE_MODES = {"host", "none"}
WATCHED_EVENTS = ("start", "die")


class RuntimeUnavailable(Exception):
    """The Docker daemon cannot be reached (or the event stream was lost)."""


class RuntimeAccessDenied(RuntimeUnavailable):
    """The Docker socket refused us (EACCES)."""


class InvalidContainer(ValueError):
    """Inspect payload is missing fields we need."""


@dataclass(frozen=True)
class Port:
    port: int
    protocol: str
    container_ip: str
    host_ip: str | None = None
    host_port: int | None = None


@dataclass(frozen=True)
class ContainerRecord:
    id: str
    name: str
    image: str
    network_mode: str
    ports: tuple[Port, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def bridged(self) -> bool:
        mode = self.network_mode or "bridge"
        return mode not in NON_BRIDGE_MODES and not mode.startswith("container:")


@dataclass(frozen=True)
class LifecycleEvent:
    status: str  # start|die
    container_id: str


def _container_ip(network_settings: Mapping[str, Any], network_mode: str) -> str:
    ip = network_settings.get("IPAddress") or ""
    if ip:
        return ip
    networks = network_settings.get("Networks") or {}
    preferred = networks.get(network_mode) or {}
    if preferred.get("IPAddress"):
        return preferred["IPAddress"]
    for net in networks.values():
        if net and net.get("IPAddress"):
            return net["IPAddress"]
    return ""


def parse_inspect(obj: Mapping[str, Any], max_cid_length: int = 16) -> ContainerRecord:
    """Pick the interesting parts out of a `docker inspect` payload."""
    try:
        cid = obj["Id"][:max_cid_length]
        name = obj["Name"].lstrip("/")
        network_mode = obj["HostConfig"]["NetworkMode"]
        network_settings = obj["NetworkSettings"] or {}
        raw_env = (obj.get("Config") or {}).get("Env") or []
        image = obj.get("Image") or (obj.get("Config") or {}).get("Image") or ""
    except (KeyError, TypeError, AttributeError) as e:
        raise InvalidContainer(f"Malformed inspect payload: missing {e}") from e

    container_ip = _container_ip(network_settings, network_mode)

    ports: list[Port] = []
    for port_proto, bindings in (network_settings.get("Ports") or {}).items():
        number, _, protocol = port_proto.partition("/")
        try:
            port_number = int(number)
        except ValueError:
            raise InvalidContainer(f"Container {cid}: bad port spec {port_proto!r}") from None
        host_ip = host_port = None
        if bindings:
            host_ip = bindings[0].get("HostIp") or None
            raw_host_port = bindings[0].get("HostPort")
            try:
                host_port = int(raw_host_port) if raw_host_port else None
            except (TypeError, ValueError):
                raise InvalidContainer(f"Container {cid}: bad host port {raw_host_port!r} for {port_proto}") from None
        ports.append(
            Port(
                port=port_number,
                protocol=protocol or "tcp",
                container_ip=container_ip,
                host_ip=host_ip,
                host_port=host_port,
            )
        )

    env: dict[str, str] = {}
    for item in raw_env:
        key, _, value = item.partition("=")
        env[key] = value

    return ContainerRecord(
        id=cid,
        name=name,
        image=image,
        network_mode=network_mode,
        ports=tuple(ports),
        env=env,
    )


def _permission_denied(exc: BaseException) -> bool:
    seen: set[int] = set()
    cur: BaseException | None = exc
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        if isinstance(cur, PermissionError) or "permission denied" in str(cur).lower():
            return True
        cur = cur.__cause__ or cur.__context__
    return False


def classify_docker_error(exc: DockerException) -> RuntimeUnavailable:
    if _permission_denied(exc):
        return RuntimeAccessDenied(f"Access to the Docker daemon denied: {exc}")
    return RuntimeUnavailable(f"Docker daemon not reachable: {exc}")


class DockerRuntime:
    """Thin adapter over the docker SDK.

    The SDK is blocking, so the async helpers push calls onto a worker thread,
    and the event stream is read by a dedicated daemon thread.
    """

    def __init__(self, client: Any = None, max_cid_length: int = 16, timeout_s: int = 60):
        self._client = client
        self.max_cid_length = max_cid_length
        self.timeout_s = timeout_s
        self._stream: Any = None
        self._thr: Thread | None = None
        self.failure: RuntimeUnavailable | None = None

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env(timeout=self.timeout_s)
            except DockerException as e:
                raise classify_docker_error(e) from e
        return self._client

    def ping(self) -> None:
        try:
            self.client.ping()
        except DockerException as e:
            raise classify_docker_error(e) from e

    def inspect(self, container_id: str) -> ContainerRecord:
        cont = self.client.containers.get(container_id)
        return parse_inspect(cont.attrs, self.max_cid_length)

    def list_running(self) -> list[ContainerRecord]:
        """Inspect every running container; malformed ones are skipped."""
        try:
            containers = self.client.containers.list()
        except DockerException as e:
            raise classify_docker_error(e) from e
        records: list[ContainerRecord] = []
        for cont in containers:
            try:
                records.append(parse_inspect(cont.attrs, self.max_cid_length))
            except InvalidContainer as e:
                logger.warning("Skipping container %s: %s", getattr(cont, "id", "?"), e)
        return records

    async def inspect_async(self, container_id: str) -> ContainerRecord | None:
        """Inspect after the fact; a container that vanished yields None."""
        try:
            return await asyncio.to_thread(self.inspect, container_id)
        except NotFound:
            logger.info("Container %s vanished before it could be inspected", container_id)
            return None

    async def list_running_async(self) -> list[ContainerRecord]:
        return await asyncio.to_thread(self.list_running)

    def iter_events(self) -> Iterator[LifecycleEvent]:
        """Yield start/die events until the stream closes."""
        try:
            self._stream = self.client.events(
                decode=True,
                filters={"type": "container", "event": list(WATCHED_EVENTS)},
            )
        except DockerException as e:
            raise classify_docker_error(e) from e
        for raw in self._stream:
            status = raw.get("status") or raw.get("Action")
            cid = raw.get("id") or (raw.get("Actor") or {}).get("ID")
            if status not in WATCHED_EVENTS or not cid:
                logger.debug("Ignore %r event for %s", status, cid)
                continue
            yield LifecycleEvent(status=status, container_id=cid[: self.max_cid_length])

    def watch(self, on_event: Callable[[LifecycleEvent | None], None]) -> None:
        """Start the event reader thread.

        `on_event(None)` is delivered once when the stream ends, for whatever
        reason; the caller decides whether that is fatal.
        """
        if self._thr and self._thr.is_alive():
            return

        def _loop() -> None:
            try:
                for ev in self.iter_events():
                    on_event(ev)
            except RuntimeUnavailable as e:
                self.failure = e
                logger.error("%s", e)
            except Exception as e:
                self.failure = RuntimeUnavailable(f"Docker event stream failed: {type(e).__name__}: {e}")
                logger.error("%s", self.failure)
            finally:
                on_event(None)

        self._thr = Thread(target=_loop, name="docker-events", daemon=True)
        self._thr.start()

    def close(self) -> None:
        if self._stream is not None:
            try:
                self._stream.close()
            except (DockerException, OSError) as e:
                logger.debug("Closing event stream: %s", e)
            self._stream = None

import posixpath
import sys

import pytest

# Ensure project root is importable (so `import der...` works without installing)
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from der.docker_ops import ContainerRecord, Port  # noqa: E402
from der.etcd import EtcdError, EtcdKeyNotFound, EtcdNode, RetryingStore  # noqa: E402

HOST = "node1"


class FakeEtcd:
    """In-memory etcd v2 keyspace with explicit directories.

    Like etcd, a directory survives its last child being deleted.
    `failures` maps (op, key) -> list of errors raised on successive calls.
    """

    def __init__(self):
        self.data: dict[str, str] = {}
        self.dirs: set[str] = {"/"}
        self.writes: list[tuple[str, str]] = []
        self.gets: list[str] = []
        self.failures: dict[tuple[str, str], list[Exception]] = {}
        self.closed = False

    def _maybe_fail(self, op: str, key: str) -> None:
        errs = self.failures.get((op, key))
        if errs:
            raise errs.pop(0)

    def _children(self, key: str) -> list[str]:
        base = key.rstrip("/") + "/" if key != "/" else "/"
        out = set()
        for k in list(self.data) + list(self.dirs):
            if k != key and k.startswith(base) and "/" not in k[len(base):]:
                out.add(k)
        return sorted(out)

    def _node(self, key: str, recursive: bool, depth: int = 0) -> EtcdNode:
        if key in self.data:
            return EtcdNode(key=key, value=self.data[key])
        node = EtcdNode(key=key, dir=True)
        if recursive or depth == 0:
            node.nodes = [self._node(c, recursive, depth + 1) if (recursive or c in self.data) else EtcdNode(key=c, dir=True) for c in self._children(key)]
        return node

    async def get(self, key, recursive=False):
        self.gets.append(key)
        self._maybe_fail("get", key)
        if key not in self.data and key not in self.dirs:
            raise EtcdKeyNotFound("Key not found", 404, 100, key)
        return self._node(key, recursive)

    async def set(self, key, value):
        self._maybe_fail("set", key)
        parent = posixpath.dirname(key)
        while parent not in self.dirs:
            self.dirs.add(parent)
            parent = posixpath.dirname(parent)
        self.data[key] = value
        self.writes.append(("set", key))

    async def delete(self, key, recursive=False):
        self._maybe_fail("delete", key)
        if key in self.data:
            del self.data[key]
        elif key in self.dirs:
            if not recursive:
                raise EtcdError("Not a file", 403, 102, key)
            prefix = key.rstrip("/") + "/"
            self.data = {k: v for k, v in self.data.items() if not k.startswith(prefix)}
            self.dirs = {d for d in self.dirs if d != key and not d.startswith(prefix)}
        else:
            raise EtcdKeyNotFound("Key not found", 404, 100, key)
        self.writes.append(("delete", key))

    async def version(self):
        return {"etcdserver": "2.3.8", "etcdcluster": "2.3.0"}

    async def aclose(self):
        self.closed = True

    def keys_under(self, prefix: str) -> list[str]:
        return sorted(k for k in self.data if k.startswith(prefix.rstrip("/") + "/"))


class FakeRuntime:
    """Stands in for DockerRuntime; containers are ContainerRecords keyed by id."""

    def __init__(self, records=(), list_error=None):
        self.records = {r.id: r for r in records}
        self.list_error = list_error
        self.failure = None
        self.on_event = None
        self.closed = False

    def ping(self):
        return None

    async def inspect_async(self, cid):
        return self.records.get(cid)

    async def list_running_async(self):
        if self.list_error is not None:
            raise self.list_error
        return list(self.records.values())

    def watch(self, on_event):
        self.on_event = on_event

    def close(self):
        self.closed = True


async def _no_sleep(_s):
    return None


@pytest.fixture
def etcd():
    return FakeEtcd()


@pytest.fixture
def store(etcd):
    return RetryingStore(etcd, sleep=_no_sleep)


def make_record(
    cid="abc123",
    name="web",
    ports=((8080, "tcp"),),
    env=None,
    network_mode="bridge",
    ip="10.0.0.5",
    host_ip=None,
    host_port=None,
):
    return ContainerRecord(
        id=cid,
        name=name,
        image="example/web:1.0",
        network_mode=network_mode,
        ports=tuple(Port(port=p, protocol=proto, container_ip=ip, host_ip=host_ip, host_port=host_port) for p, proto in ports),
        env=dict(env or {}),
    )


def inspect_payload(cid="abc123def4567890ffff", name="/web", env=None, ports=None, network_mode="bridge", ip="10.0.0.5"):
    """A trimmed `docker inspect` document."""
    return {
        "Id": cid,
        "Name": name,
        "Image": "sha256:deadbeef",
        "Config": {"Env": env if env is not None else ["SERVICE_NAME=web", "PATH=/usr/bin"], "Image": "example/web:1.0"},
        "HostConfig": {"NetworkMode": network_mode},
        "NetworkSettings": {
            "IPAddress": ip,
            "Ports": ports if ports is not None else {"8080/tcp": None},
            "Networks": {"bridge": {"IPAddress": ip}},
        },
    }

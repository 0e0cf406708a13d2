import asyncio
import dataclasses
import json

import pytest
from docker.errors import DockerException

from der.backends.skydns import SkydnsBackend
from der.backends.vulcand import VulcandBackend
from der.docker_ops import LifecycleEvent, RuntimeUnavailable
from der.registrator import AccessDenied, Registrator, StoreUnavailable
from der.etcd import EtcdAccessDenied, EtcdConnectionError
from der.settings import Settings

from conftest import HOST, FakeRuntime, make_record

ENV = {
    "SERVICE_NAME": "web",
    "SERVICE_VULCAND_BE_TYPE": "http",
    "SERVICE_VULCAND_FE_ROUTE": "Path(`/`)",
}


def _settings(**kw):
    base = dict(hostname=HOST, debounce_s=0.01, sync_interval_s=3600)
    base.update(kw)
    return Settings(**base)


def _registrator(store, runtime, **kw):
    backends = [SkydnsBackend(store, HOST), VulcandBackend(store, HOST)]
    return Registrator(_settings(**kw), runtime=runtime, store=store, backends=backends)


@pytest.mark.asyncio
async def test_appeared_is_written_to_every_backend(store, etcd):
    runtime = FakeRuntime([make_record(env=ENV)])
    reg = _registrator(store, runtime)

    await reg.service_appeared("abc123")

    assert json.loads(etcd.data["/skydns/local/skydns/web/node1-abc123-8080"])["host"] == "10.0.0.5"
    assert "/vulcand/backends/web/servers/node1-abc123-8080" in etcd.data
    assert "/vulcand/frontends/web/registrator-catalog/node1-abc123-8080" in etcd.data


@pytest.mark.asyncio
async def test_vanished_or_ignored_container_writes_nothing(store, etcd):
    runtime = FakeRuntime([make_record(cid="ign000", env={"SERVICE_IGNORE": "1"})])
    reg = _registrator(store, runtime)

    await reg.service_appeared("gone00")
    await reg.service_appeared("ign000")

    assert etcd.writes == []


@pytest.mark.asyncio
async def test_gone_removes_from_every_backend(store, etcd):
    runtime = FakeRuntime([make_record(env=ENV)])
    reg = _registrator(store, runtime)
    await reg.service_appeared("abc123")

    await reg.service_gone("abc123")

    assert etcd.keys_under("/skydns") == []
    assert etcd.keys_under("/vulcand") == []
    assert "abc123" not in reg._locks


@pytest.mark.asyncio
async def test_events_flow_through_debouncer(store, etcd):
    runtime = FakeRuntime([make_record(env=ENV)])
    reg = _registrator(store, runtime)

    reg.handle_event(LifecycleEvent("start", "abc123"))
    await asyncio.sleep(0.1)
    assert "/skydns/local/skydns/web/node1-abc123-8080" in etcd.data

    reg.handle_event(LifecycleEvent("die", "abc123"))
    await reg.debouncer.drain()
    assert etcd.keys_under("/skydns") == []


@pytest.mark.asyncio
async def test_sync_all_reports_per_backend(store, etcd):
    etcd.data["/skydns/local/skydns/old/node1-dead00-80"] = "{}"
    etcd.dirs.update({"/skydns", "/skydns/local", "/skydns/local/skydns", "/skydns/local/skydns/old"})
    runtime = FakeRuntime([make_record(env=ENV), make_record(cid="def456", network_mode="host")])
    reg = _registrator(store, runtime)

    results = await reg.sync_all()

    by_name = {r.backend: r for r in results}
    assert by_name["skydns"].added == ["/skydns/local/skydns/web/node1-abc123-8080"]
    assert by_name["skydns"].removed == ["/skydns/local/skydns/old/node1-dead00-80"]
    assert len(by_name["vulcand"].added) == 2
    assert reg.last_sync == results


@pytest.mark.asyncio
async def test_sync_all_raises_when_docker_is_gone(store):
    reg = _registrator(store, FakeRuntime(list_error=DockerException("Connection refused")))
    with pytest.raises(RuntimeUnavailable):
        await reg.sync_all()


@pytest.mark.asyncio
async def test_check_connectivity_maps_store_errors(store, etcd, monkeypatch):
    reg = _registrator(store, FakeRuntime())

    async def denied():
        raise EtcdAccessDenied("denied", 401)

    monkeypatch.setattr(etcd, "version", denied)
    with pytest.raises(AccessDenied):
        await reg.check_connectivity()

    async def down():
        raise EtcdConnectionError("No etcd endpoint reachable")

    monkeypatch.setattr(etcd, "version", down)
    with pytest.raises(StoreUnavailable):
        await reg.check_connectivity()


@pytest.mark.asyncio
async def test_run_stops_when_event_stream_is_lost(store, etcd):
    runtime = FakeRuntime([make_record(env=ENV)])
    reg = _registrator(store, runtime)

    async def lose_stream():
        while runtime.on_event is None:
            await asyncio.sleep(0.01)
        runtime.failure = RuntimeUnavailable("Docker event stream failed")
        runtime.on_event(None)

    helper = asyncio.create_task(lose_stream())
    with pytest.raises(RuntimeUnavailable, match="event stream"):
        await asyncio.wait_for(reg.run(), timeout=5)
    await helper

    # the startup sync ran before the stream was lost
    assert "/skydns/local/skydns/web/node1-abc123-8080" in etcd.data
    assert runtime.closed
    assert etcd.closed


def test_status_lists_backends(store):
    reg = _registrator(store, FakeRuntime())
    st = reg.status()
    assert st["hostname"] == HOST
    assert [b["name"] for b in st["backends"]] == ["skydns", "vulcand"]


def test_unknown_backend_is_a_config_error(store):
    settings = dataclasses.replace(_settings(), backends=("skydns", "consul"))
    with pytest.raises(ValueError, match="consul"):
        Registrator(settings, runtime=FakeRuntime(), store=store)


@pytest.mark.asyncio
async def test_restart_during_slow_registration_leaves_no_orphans(store, etcd, monkeypatch):
    runtime = FakeRuntime([make_record()])
    reg = Registrator(_settings(), runtime=runtime, store=store, backends=[SkydnsBackend(store, HOST)])
    gates = [asyncio.Event(), asyncio.Event()]
    real_set = etcd.set
    calls = 0

    async def slow_set(key, value):
        nonlocal calls
        gate = gates[calls] if calls < len(gates) else None
        calls += 1
        if gate is not None:
            await gate.wait()
        await real_set(key, value)

    monkeypatch.setattr(etcd, "set", slow_set)

    first_up = asyncio.create_task(reg.service_appeared("abc123"))
    first_down = asyncio.create_task(reg.service_gone("abc123"))
    second_up = asyncio.create_task(reg.service_appeared("abc123"))
    await asyncio.sleep(0.01)

    gates[0].set()
    await asyncio.gather(first_up, first_down)
    await asyncio.sleep(0.01)
    assert not second_up.done()

    second_down = asyncio.create_task(reg.service_gone("abc123"))
    await asyncio.sleep(0.01)
    # the second die waits for the registration still in flight
    assert not second_down.done()

    gates[1].set()
    await asyncio.gather(second_up, second_down)

    assert etcd.keys_under("/skydns") == []
    assert reg._locks == {}

import json

import pytest

from der.backends.vulcand import BACKEND_DEFAULTS, FRONTEND_DEFAULTS, VulcandBackend, flatten_attributes
from der.service import parse_container

from conftest import HOST, make_record

PREFIX = "/vulcand"

ENV = {
    "SERVICE_NAME": "web",
    "SERVICE_VULCAND_BE_TYPE": "http",
    "SERVICE_VULCAND_FE_ROUTE": "PathRegexp(`/.*`)",
    "SERVICE_VULCAND_FE_SETTINGS_TIMEOUT": "true",
}


@pytest.fixture
def vulcand(store):
    return VulcandBackend(store, HOST, PREFIX)


def _service(cid="abc123", env=ENV):
    [svc] = parse_container(make_record(cid=cid, env=env))
    return svc


def test_flatten_attributes_nests_and_coerces():
    fe = flatten_attributes(
        {"VULCAND_FE_ROUTE": "Host(`x`)", "VULCAND_FE_SETTINGS_TIMEOUT": "true", "NAME": "web"},
        "VULCAND_FE_",
        FRONTEND_DEFAULTS,
    )
    assert fe["Route"] == "Host(`x`)"
    assert fe["Settings"] == {"Timeout": True}
    assert fe["Type"] == "http"
    # defaults are never mutated
    assert FRONTEND_DEFAULTS["Settings"] == {}


def test_flatten_matches_existing_keys_case_insensitively():
    fe = flatten_attributes({"VULCAND_FE_BACKENDID": "other"}, "VULCAND_FE_", FRONTEND_DEFAULTS)
    assert fe["BackendId"] == "other"
    be = flatten_attributes({"VULCAND_BE_TYPE": "https"}, "VULCAND_BE_", BACKEND_DEFAULTS)
    assert be == {"Type": "https", "Settings": {}}


@pytest.mark.asyncio
async def test_add_writes_both_halves(vulcand, etcd):
    await vulcand.add_service(_service())

    assert json.loads(etcd.data["/vulcand/backends/web/backend"]) == {"Type": "http", "Settings": {}}
    assert json.loads(etcd.data["/vulcand/backends/web/servers/node1-abc123-8080"]) == {"URL": "http://10.0.0.5:8080"}
    assert etcd.data["/vulcand/frontends/web/registrator-catalog/node1-abc123-8080"] == "1"
    fe = json.loads(etcd.data["/vulcand/frontends/web/frontend"])
    assert fe == {
        "Type": "http",
        "BackendId": "web",
        "Route": "PathRegexp(`/.*`)",
        "Settings": {"Timeout": True},
    }
    assert sorted(vulcand.cid_cache["abc123"]) == [
        "/vulcand/backends/web/servers/node1-abc123-8080",
        "/vulcand/frontends/web/registrator-catalog/node1-abc123-8080",
    ]


@pytest.mark.asyncio
async def test_halves_without_attributes_are_skipped(vulcand, etcd):
    await vulcand.add_service(_service(env={"SERVICE_VULCAND_BE_TYPE": "http"}))
    assert etcd.keys_under("/vulcand/frontends") == []
    assert "/vulcand/backends/web/servers/node1-abc123-8080" in etcd.data

    plain = _service(cid="def456", env={})
    assert vulcand.keys_for(plain) == []
    etcd.writes.clear()
    await vulcand.add_service(plain)
    assert etcd.writes == []


@pytest.mark.asyncio
async def test_remove_last_container_prunes_two_levels(vulcand, etcd):
    await vulcand.add_service(_service())

    result = await vulcand.remove_service_by_cid("abc123")

    assert result.ok
    assert len(result.removed) == 2
    assert etcd.keys_under(PREFIX) == []
    assert "/vulcand/backends/web" not in etcd.dirs
    assert "/vulcand/frontends/web" not in etcd.dirs
    assert "/vulcand/backends" in etcd.dirs


@pytest.mark.asyncio
async def test_shared_frontend_survives_while_another_host_uses_it(vulcand, etcd, store):
    await vulcand.add_service(_service())
    other = VulcandBackend(store, "node2", PREFIX)
    await other.add_service(_service(cid="fff000"))

    await vulcand.remove_service_by_cid("abc123")

    assert etcd.keys_under("/vulcand/frontends/web") == [
        "/vulcand/frontends/web/frontend",
        "/vulcand/frontends/web/registrator-catalog/node2-fff000-8080",
    ]
    assert "/vulcand/backends/web/servers/node2-fff000-8080" in etcd.data
    assert "/vulcand/backends/web/backend" in etcd.data


@pytest.mark.asyncio
async def test_sync_is_idempotent(vulcand, etcd):
    services = [_service(), _service(cid="def456")]
    first = await vulcand.sync(services)
    assert len(first.added) == 4

    etcd.writes.clear()
    second = await vulcand.sync(services)
    assert second.writes == 0
    assert etcd.writes == []

    third = await vulcand.sync([services[1]])
    assert sorted(third.removed) == [
        "/vulcand/backends/web/servers/node1-abc123-8080",
        "/vulcand/frontends/web/registrator-catalog/node1-abc123-8080",
    ]
    assert "/vulcand/frontends/web/frontend" in etcd.data


@pytest.mark.asyncio
async def test_sync_restores_definitions_lost_to_a_concurrent_prune(vulcand, etcd):
    services = [_service()]
    await vulcand.sync(services)
    del etcd.data["/vulcand/backends/web/backend"]
    del etcd.data["/vulcand/frontends/web/frontend"]

    result = await vulcand.sync(services)

    assert result.ok and result.writes == 0
    assert json.loads(etcd.data["/vulcand/backends/web/backend"]) == {"Type": "http", "Settings": {}}
    assert json.loads(etcd.data["/vulcand/frontends/web/frontend"])["BackendId"] == "web"

    etcd.writes.clear()
    await vulcand.sync(services)
    assert etcd.writes == []

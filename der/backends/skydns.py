from __future__ import annotations

import json

from ..service import ServiceDescriptor
from .base import RegistryBackend


def _int_attr(value: object, default: int) -> int | str:
    if value is None or value == "":
        return default
    try:
        return int(str(value))
    except ValueError:
        return str(value)


class SkydnsBackend(RegistryBackend):
    """SkyDNS records: <prefix>/<name>/<hostname>-<cid>-<port> -> JSON."""

    name = "skydns"
    prune_depth = 1

    def __init__(self, store, hostname: str, prefix: str = "/skydns/local/skydns"):
        super().__init__(store, hostname, prefix)

    def key_for(self, svc: ServiceDescriptor) -> str:
        return f"{self.prefix}/{svc.name}/{self.ident(svc)}"

    def keys_for(self, svc: ServiceDescriptor) -> list[str]:
        return [self.key_for(svc)]

    @staticmethod
    def record(svc: ServiceDescriptor) -> dict:
        text = ",".join([svc.protocol, *svc.tags])
        return {
            "host": svc.ip,
            "port": int(svc.port),
            "priority": _int_attr(svc.attributes.get("SKYDNS_PRIORITY"), 1),
            "weight": _int_attr(svc.attributes.get("SKYDNS_WEIGHT"), 1),
            "text": text,
        }

    async def add_service(self, svc: ServiceDescriptor) -> None:
        key = self.key_for(svc)
        self.logger.info("SkyDNS service: %s %s:%s [%s]", svc.name, svc.ip, svc.port, key)
        await self.store.set(key, json.dumps(self.record(svc)))
        self._remember(svc.container_id, key)

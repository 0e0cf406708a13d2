"""Registry projections: one class per downstream consumer."""
from __future__ import annotations

from ..etcd import RetryingStore
from ..settings import Settings
from .base import RegistryBackend
from .skydns import SkydnsBackend
from .vulcand import VulcandBackend

BACKENDS: dict[str, type[RegistryBackend]] = {
    SkydnsBackend.name: SkydnsBackend,
    VulcandBackend.name: VulcandBackend,
}


def build_backends(settings: Settings, store: RetryingStore) -> list[RegistryBackend]:
    prefixes = {
        SkydnsBackend.name: settings.skydns_prefix,
        VulcandBackend.name: settings.vulcand_prefix,
    }
    unknown = [b for b in settings.backends if b not in BACKENDS]
    if unknown:
        raise ValueError(f"Unknown backend(s): {', '.join(unknown)}. Use: {', '.join(BACKENDS)}")
    out: list[RegistryBackend] = []
    for name in dict.fromkeys(settings.backends):
        out.append(BACKENDS[name](store, settings.hostname, prefixes[name]))
    return out


__all__ = ["BACKENDS", "RegistryBackend", "SkydnsBackend", "VulcandBackend", "build_backends"]

from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from typing import Mapping


def _env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(env: Mapping[str, str], name: str, default: str) -> tuple[str, ...]:
    raw = env.get(name) or default
    return tuple(x.strip() for x in raw.split(",") if x.strip())


def _normalize_endpoint(ep: str) -> str:
    ep = ep.strip().rstrip("/")
    if "://" not in ep:
        ep = f"http://{ep}"
    return ep


@dataclass(frozen=True)
class Registration:
    """How descriptors pick the address they advertise."""

    public: bool = False
    public_ip: str | None = None
    force_public_ip: bool = False


@dataclass(frozen=True)
class Settings:
    # Identity
    hostname: str = socket.gethostname()

    # etcd
    etcd_endpoints: tuple[str, ...] = ("http://127.0.0.1:4001",)
    etcd_cafile: str | None = None
    etcd_certfile: str | None = None
    etcd_keyfile: str | None = None
    etcd_username: str | None = None
    etcd_password: str | None = None
    etcd_timeout_s: float = 5.0

    # Backends
    backends: tuple[str, ...] = ("skydns", "vulcand")
    skydns_prefix: str = "/skydns/local/skydns"
    vulcand_prefix: str = "/vulcand"

    # Docker
    docker_timeout_s: int = 60
    max_cid_length: int = 16

    # Reconciliation
    debounce_s: float = 2.0
    sync_interval_s: int = 3600 * 8

    # Public registration (REGISTER=public)
    register_public: bool = False
    public_ip: str | None = None
    force_public_ip: bool = False

    # Status API, port 0 disables it
    api_host: str = "127.0.0.1"
    api_port: int = 0

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        endpoints = _env_list(env, "ETCD_ENDPOINTS", "http://127.0.0.1:4001")
        return cls(
            hostname=env.get("HOSTNAME") or socket.gethostname(),
            etcd_endpoints=tuple(_normalize_endpoint(ep) for ep in endpoints),
            etcd_cafile=env.get("ETCD_CAFILE"),
            etcd_certfile=env.get("ETCD_CERTFILE"),
            etcd_keyfile=env.get("ETCD_KEYFILE"),
            etcd_username=env.get("ETCD_USERNAME"),
            etcd_password=env.get("ETCD_PASSWORD"),
            etcd_timeout_s=_env_float(env, "ETCD_TIMEOUT_S", 5.0),
            backends=tuple(b.lower() for b in _env_list(env, "REGISTRATOR_BACKENDS", "skydns,vulcand")),
            skydns_prefix=(env.get("SKYDNS_ETCD_PREFIX") or "/skydns/local/skydns").rstrip("/"),
            vulcand_prefix=(env.get("VULCAND_ETCD_PREFIX") or "/vulcand").rstrip("/"),
            docker_timeout_s=_env_int(env, "DOCKER_TIMEOUT_S", 60),
            debounce_s=max(0.0, _env_float(env, "REGISTRATOR_DEBOUNCE_S", 2.0)),
            sync_interval_s=max(1, _env_int(env, "REGISTRATOR_SYNC_INTERVAL_S", 3600 * 8)),
            register_public=(env.get("REGISTER") or "").strip().lower() == "public",
            public_ip=env.get("REGISTER_PUBLIC_IP") or None,
            force_public_ip=_env_bool(env, "FORCE_PUBLIC_IP", False),
            api_host=env.get("REGISTRATOR_API_HOST", "127.0.0.1"),
            api_port=_env_int(env, "REGISTRATOR_API_PORT", 0),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )

    @property
    def registration(self) -> Registration:
        return Registration(
            public=self.register_public,
            public_ip=self.public_ip,
            force_public_ip=self.force_public_ip,
        )

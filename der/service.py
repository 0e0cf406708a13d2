from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Union

from .docker_ops import ContainerRecord, Port
from .settings import Registration

logger = logging.getLogger(__name__)

ATTRIBUTE_RE = re.compile(r"^SERVICE_(?:([0-9]+)_)?(.+)$")
WILDCARD_HOST_IPS = {"", "0.0.0.0", "::"}

AttributeValue = Union[str, list[str]]
Attributes = dict[str, AttributeValue]


@dataclass(frozen=True)
class ServiceDescriptor:
    """One registrable container port."""

    name: str
    protocol: str
    port: int
    ip: str
    container_id: str
    image: str
    attributes: Attributes = field(default_factory=dict, compare=False, hash=False)

    def ident(self, hostname: str) -> str:
        """Registry identity segment, unique per running container port on a host."""
        return f"{hostname}-{self.container_id}-{self.port}"

    @property
    def tags(self) -> list[str]:
        tags = self.attributes.get("TAGS")
        return list(tags) if isinstance(tags, list) else []


def parse_attributes(env: Mapping[str, str]) -> dict[str, Attributes]:
    """Group SERVICE_* variables by scope ("common" or the port number)."""
    scopes: dict[str, Attributes] = {"common": {}}
    for key, val in env.items():
        m = ATTRIBUTE_RE.match(key)
        if not m:
            continue
        scope = m.group(1) or "common"
        attr = m.group(2)
        value: AttributeValue = val
        if attr.lower() == "tags":
            attr = "TAGS"
            value = [t.strip() for t in val.split(",") if t.strip()]
        scopes.setdefault(scope, {})[attr] = value
    return scopes


def _truthy(value: Any) -> bool:
    if isinstance(value, list):
        return bool(value)
    return value is not None and str(value).strip().lower() not in {"", "0", "false", "no"}


def _public_address(record: ContainerRecord, port: Port, registration: Registration) -> tuple[str, int] | None:
    if not port.host_port:
        logger.debug("Omit %s:%s of %s, port not published", record.name, port.port, record.id)
        return None
    if port.host_ip in WILDCARD_HOST_IPS or port.host_ip is None or registration.force_public_ip:
        if not registration.public_ip:
            logger.warning(
                "Port %s of %s listens on all interfaces but REGISTER_PUBLIC_IP is not set; not registering it",
                port.port,
                record.id,
            )
            return None
        if registration.force_public_ip:
            logger.debug("Forcing public IP %s", registration.public_ip)
        return registration.public_ip, port.host_port
    return port.host_ip, port.host_port


def parse_container(record: ContainerRecord, registration: Registration | None = None) -> list[ServiceDescriptor] | None:
    """Split a container into per-port service descriptors.

    Returns None when the whole container is excluded (non-bridge networking
    or SERVICE_IGNORE), otherwise one descriptor per port that survives
    per-port IGNORE and public-registration filtering.
    """
    registration = registration or Registration()
    if not record.bridged:
        logger.debug("Omit container %s, network mode %s", record.id, record.network_mode)
        return None

    scopes = parse_attributes(record.env)
    common = scopes["common"]
    if _truthy(common.get("IGNORE")):
        logger.debug("Omit container %s, SERVICE_IGNORE", record.id)
        return None

    services: list[ServiceDescriptor] = []
    for port in record.ports:
        attributes: Attributes = {**common, **scopes.get(str(port.port), {})}
        if _truthy(attributes.get("IGNORE")):
            logger.debug("Omit %s:%s, SERVICE_%s_IGNORE", record.id, port.port, port.port)
            continue

        ip, number = port.container_ip, port.port
        if registration.public:
            address = _public_address(record, port, registration)
            if address is None:
                continue
            ip, number = address

        name = attributes.get("NAME")
        svc = ServiceDescriptor(
            name=name if isinstance(name, str) and name else record.name,
            protocol=port.protocol,
            port=number,
            ip=ip,
            container_id=record.id,
            image=record.image,
            attributes=attributes,
        )
        logger.debug("Service %s (%s:%s) from %s", svc.name, svc.ip, svc.port, svc.container_id)
        services.append(svc)
    return services


def parse_containers(records: list[ContainerRecord], registration: Registration | None = None) -> list[ServiceDescriptor]:
    """Batch form used by full syncs; excluded containers contribute nothing."""
    out: list[ServiceDescriptor] = []
    for record in records:
        out.extend(parse_container(record, registration) or [])
    return out

"""Data model for long-running processes (LRPs) and the events that describe them."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, ClassVar

CF_ROUTER = "cf-router"
TCP_ROUTER = "tcp-router"
INTERNAL_ROUTER = "internal-router"


class Presence(IntEnum):
    """Where an actual LRP instance stands in its life on a cell."""

    ORDINARY = 0
    EVACUATING = 1
    SUSPECT = 2


class PreferredAddress(IntEnum):
    """Which address an instance prefers routers to use."""

    UNKNOWN = 0
    INSTANCE = 1
    HOST = 2


class ActualLRPState(str, Enum):
    """Lifecycle state of an actual LRP instance."""

    UNCLAIMED = "UNCLAIMED"
    CLAIMED = "CLAIMED"
    RUNNING = "RUNNING"
    CRASHED = "CRASHED"


class MetricTagDynamicValue(IntEnum):
    """Values a metric tag can take from the instance it is attached to."""

    INVALID = 0
    INDEX = 1
    INSTANCE_GUID = 2


@dataclass(frozen=True)
class MetricTagValue:
    """A metric tag that is either a fixed string or filled in per instance."""

    static: str = ""
    dynamic: MetricTagDynamicValue = MetricTagDynamicValue.INVALID


@dataclass(frozen=True)
class ModificationTag:
    """Version stamp of a record."""

    epoch: str = ""
    index: int = 0


@dataclass(frozen=True)
class PortMapping:
    """Mapping of a host port to a container port, with optional TLS proxy ports."""

    host_port: int = 0
    container_port: int = 0
    host_tls_proxy_port: int = 0
    container_tls_proxy_port: int = 0


@dataclass
class ActualLRP:
    """A running (or scheduled) instance of a long-running process."""

    process_guid: str = ""
    index: int = 0
    domain: str = ""
    instance_guid: str = ""
    cell_id: str = ""
    address: str = ""
    instance_address: str = ""
    preferred_address: PreferredAddress = PreferredAddress.UNKNOWN
    ports: list[PortMapping] = field(default_factory=list)
    state: ActualLRPState = ActualLRPState.UNCLAIMED
    presence: Presence = Presence.ORDINARY
    since: int = 0
    modification_tag: ModificationTag = field(default_factory=ModificationTag)
    availability_zone: str = ""
    routable: bool | None = None

    def routable_exists(self) -> bool:
        """True when the routable flag has been reported at all."""
        return self.routable is not None

    def set_routable(self, routable: bool) -> None:
        self.routable = bool(routable)


@dataclass
class DesiredLRP:
    """The desired state of a long-running process, including its routes."""

    process_guid: str = ""
    domain: str = ""
    log_guid: str = ""
    instances: int = 0
    ports: list[int] = field(default_factory=list)
    routes: dict[str, Any] | None = None
    modification_tag: ModificationTag | None = None


@dataclass(frozen=True)
class TCPRoute:
    """A TCP route from an external port to a container port."""

    router_group_guid: str = ""
    external_port: int = 0
    container_port: int = 0


def tcp_routes_from_routing_info(routes: Mapping[str, Any] | None) -> list[TCPRoute]:
    """Read the TCP routes out of a routing-info mapping.

    Raises ValueError when the TCP router entry is malformed.
    """
    if not routes:
        return []
    raw = routes.get(TCP_ROUTER)
    if isinstance(raw, (str, bytes, bytearray)):
        raw = json.loads(raw)
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError("tcp routes must be a list")
    result = []
    for entry in raw:
        if not isinstance(entry, Mapping):
            raise ValueError("each tcp route must be an object")
        try:
            result.append(
                TCPRoute(
                    router_group_guid=str(entry.get("router_group_guid") or ""),
                    external_port=int(entry.get("external_port") or 0),
                    container_port=int(entry.get("container_port") or 0),
                )
            )
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid tcp route: {entry!r}") from exc
    return result


@dataclass
class DesiredLRPCreatedEvent:
    desired_lrp: DesiredLRP
    trace_id: str = ""
    event_type: ClassVar[str] = "desired_lrp_created"

    @property
    def key(self) -> str:
        return self.desired_lrp.process_guid


@dataclass
class DesiredLRPChangedEvent:
    before: DesiredLRP
    after: DesiredLRP
    trace_id: str = ""
    event_type: ClassVar[str] = "desired_lrp_changed"

    @property
    def key(self) -> str:
        return self.before.process_guid


@dataclass
class DesiredLRPRemovedEvent:
    desired_lrp: DesiredLRP
    trace_id: str = ""
    event_type: ClassVar[str] = "desired_lrp_removed"

    @property
    def key(self) -> str:
        return self.desired_lrp.process_guid


@dataclass
class ActualLRPInstanceCreatedEvent:
    actual_lrp: ActualLRP | None
    trace_id: str = ""
    event_type: ClassVar[str] = "actual_lrp_instance_created"

    @property
    def key(self) -> str:
        return self.actual_lrp.instance_guid if self.actual_lrp else ""


@dataclass
class ActualLRPInstanceChangedEvent:
    before: ActualLRP | None
    after: ActualLRP | None
    trace_id: str = ""
    event_type: ClassVar[str] = "actual_lrp_instance_changed"

    @property
    def key(self) -> str:
        for lrp in (self.after, self.before):
            if lrp is not None:
                return lrp.instance_guid
        return ""


@dataclass
class ActualLRPInstanceRemovedEvent:
    actual_lrp: ActualLRP | None
    trace_id: str = ""
    event_type: ClassVar[str] = "actual_lrp_instance_removed"

    @property
    def key(self) -> str:
        return self.actual_lrp.instance_guid if self.actual_lrp else ""


def desired_lrp_data(lrp: DesiredLRP | None) -> dict[str, Any]:
    """Log fields for a desired LRP, limited to the routers this service knows."""
    if lrp is None or lrp.routes is None:
        return {}
    routes = {name: lrp.routes.get(name) for name in (CF_ROUTER, TCP_ROUTER, INTERNAL_ROUTER)}
    return {
        "process-guid": lrp.process_guid,
        "routes": routes,
        "domain": lrp.domain,
        "instances": lrp.instances,
    }


def actual_lrp_data(actual_lrp: ActualLRP) -> dict[str, Any]:
    """Log fields for an actual LRP."""
    return {
        "process-guid": actual_lrp.process_guid,
        "index": actual_lrp.index,
        "domain": actual_lrp.domain,
        "instance-guid": actual_lrp.instance_guid,
        "cell-id": actual_lrp.cell_id,
        "address": actual_lrp.address,
        "ports": list(actual_lrp.ports),
        "evacuating": actual_lrp.presence == Presence.EVACUATING,
        "state": actual_lrp.state.value,
    }
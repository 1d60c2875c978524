"""Endpoints, routes and the registry messages built from them."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from routeemit.lrp import (
    ActualLRP,
    DesiredLRP,
    MetricTagDynamicValue,
    MetricTagValue,
    ModificationTag,
    PreferredAddress,
    Presence,
    tcp_routes_from_routing_info,
)

_log = logging.getLogger(__name__)

_COMPONENT = "route-emitter"


@dataclass
class RegistryMessage:
    """A route registration or unregistration message for the router."""

    host: str = ""
    port: int = 0
    tls_port: int = 0
    uris: list[str] = field(default_factory=list)
    protocol: str = ""
    app: str = ""
    route_service_url: str = ""
    private_instance_id: str = ""
    private_instance_index: str = ""
    server_cert_domain_san: str = ""
    isolation_segment: str = ""
    endpoint_updated_at_ns: int = 0
    tags: dict[str, str] | None = None
    availability_zone: str = ""
    options: Any = None

    def to_json(self) -> str:
        """Encode the message, leaving out empty optional fields."""
        payload: dict[str, Any] = {"host": self.host, "port": self.port}
        if self.tls_port:
            payload["tls_port"] = self.tls_port
        payload["uris"] = list(self.uris)
        optional = (
            ("protocol", self.protocol),
            ("app", self.app),
            ("route_service_url", self.route_service_url),
            ("private_instance_id", self.private_instance_id),
            ("private_instance_index", self.private_instance_index),
            ("server_cert_domain_san", self.server_cert_domain_san),
            ("isolation_segment", self.isolation_segment),
            ("endpoint_updated_at_ns", self.endpoint_updated_at_ns),
            ("tags", self.tags),
            ("availability_zone", self.availability_zone),
        )
        payload.update((name, value) for name, value in optional if value)
        if self.options is not None:
            payload["options"] = self.options
        return json.dumps(payload)

    @classmethod
    def from_json(cls, text: str | bytes) -> RegistryMessage:
        """Decode a message; raises ValueError on malformed input."""
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("registry message must be a JSON object")
        tags = data.get("tags")
        try:
            return cls(
                host=data.get("host") or "",
                port=int(data.get("port") or 0),
                tls_port=int(data.get("tls_port") or 0),
                uris=list(data.get("uris") or []),
                protocol=data.get("protocol") or "",
                app=data.get("app") or "",
                route_service_url=data.get("route_service_url") or "",
                private_instance_id=data.get("private_instance_id") or "",
                private_instance_index=data.get("private_instance_index") or "",
                server_cert_domain_san=data.get("server_cert_domain_san") or "",
                isolation_segment=data.get("isolation_segment") or "",
                endpoint_updated_at_ns=int(data.get("endpoint_updated_at_ns") or 0),
                tags=dict(tags) if tags is not None else None,
                availability_zone=data.get("availability_zone") or "",
                options=data.get("options"),
            )
        except TypeError as exc:
            raise ValueError(f"invalid registry message: {exc}") from exc


def _route_count(messages: Iterable[RegistryMessage]) -> int:
    return sum(len(message.uris) for message in messages)


@dataclass
class MessagesToEmit:
    """Registration and unregistration messages produced by a table change."""

    registration_messages: list[RegistryMessage] = field(default_factory=list)
    unregistration_messages: list[RegistryMessage] = field(default_factory=list)
    internal_registration_messages: list[RegistryMessage] = field(default_factory=list)
    internal_unregistration_messages: list[RegistryMessage] = field(default_factory=list)

    def merge(self, other: MessagesToEmit) -> MessagesToEmit:
        return MessagesToEmit(
            registration_messages=[*self.registration_messages, *other.registration_messages],
            unregistration_messages=[*self.unregistration_messages, *other.unregistration_messages],
            internal_registration_messages=[
                *self.internal_registration_messages,
                *other.internal_registration_messages,
            ],
            internal_unregistration_messages=[
                *self.internal_unregistration_messages,
                *other.internal_unregistration_messages,
            ],
        )

    def route_registration_count(self) -> int:
        return _route_count(self.registration_messages)

    def route_unregistration_count(self) -> int:
        return _route_count(self.unregistration_messages)

    def internal_route_registration_count(self) -> int:
        return _route_count(self.internal_registration_messages)

    def internal_route_unregistration_count(self) -> int:
        return _route_count(self.internal_unregistration_messages)


@dataclass(frozen=True)
class ExternalServiceGreetingMessage:
    """Registration timing advertised by the router."""

    minimum_register_interval: int = 0
    prune_threshold_in_seconds: int = 0


@dataclass(frozen=True)
class EndpointKey:
    instance_guid: str
    evacuating: bool

    def __str__(self) -> str:
        evacuating = "true" if self.evacuating else "false"
        return f'{{"InstanceGUID": "{self.instance_guid}", "Evacuating": {evacuating}}}'


@dataclass(frozen=True)
class Address:
    host: str
    port: int


@dataclass(frozen=True)
class Endpoint:
    """One addressable port of a running instance."""

    instance_guid: str = ""
    index: int = 0
    host: str = ""
    container_ip: str = ""
    port: int = 0
    container_port: int = 0
    tls_proxy_port: int = 0
    container_tls_proxy_port: int = 0
    presence: Presence = Presence.ORDINARY
    isolation_segment: str = ""
    since: int = 0
    modification_tag: ModificationTag | None = None
    preferred_address: PreferredAddress = PreferredAddress.UNKNOWN
    availability_zone: str = ""

    def key(self) -> EndpointKey:
        return EndpointKey(self.instance_guid, self.presence == Presence.EVACUATING)

    def is_direct_instance_route(self, default_is_direct_instance_route: bool) -> bool:
        """Whether the container address should be advertised instead of the host."""
        if self.preferred_address == PreferredAddress.INSTANCE:
            return True
        if self.preferred_address == PreferredAddress.HOST:
            return False
        return bool(default_is_direct_instance_route)


@dataclass(frozen=True)
class TCPRouteMapping:
    """A mapping of a router group's external port to a backend address."""

    router_group_guid: str = ""
    external_port: int = 0
    host_ip: str = ""
    host_port: int = 0
    host_tls_port: int = -1
    instance_id: str = ""
    sni_hostname: str | None = None
    ttl: int | None = 0
    modification_tag: ModificationTag | None = None


@dataclass(frozen=True)
class ExternalEndpointInfo:
    """An external TCP port on a router group."""

    router_group_guid: str = ""
    port: int = 0
    tls_enabled: bool = False

    def hash(self) -> ExternalEndpointInfo:
        return self

    def message_for(self, endpoint, direct_instance_route, emit_endpoint_updated_at):
        """Build the TCP route mapping for an endpoint; HTTP slots are None."""
        tls_host_port = -1
        tls_container_port = -1
        instance_id = ""
        if self.tls_enabled:
            tls_host_port = endpoint.tls_proxy_port
            tls_container_port = endpoint.container_tls_proxy_port
            instance_id = endpoint.instance_guid
        if endpoint.is_direct_instance_route(direct_instance_route):
            host, port, tls_port = endpoint.container_ip, endpoint.container_port, tls_container_port
        else:
            host, port, tls_port = endpoint.host, endpoint.port, tls_host_port
        mapping = TCPRouteMapping(
            router_group_guid=self.router_group_guid,
            external_port=self.port & 0xFFFF,
            host_ip=host,
            host_port=port & 0xFFFF,
            host_tls_port=tls_port,
            instance_id=instance_id,
        )
        return None, mapping, None


class ExternalEndpointInfos(list):
    """A list of external endpoint infos."""

    def has_no_external_ports(self) -> bool:
        if not self:
            _log.debug("no-external-port")
            return True
        return False

    def contains_external_port(self, port: int) -> bool:
        return any(info.port == port for info in self)


class _RouteHash(NamedTuple):
    hostname: str
    route_service_url: str
    isolation_segment: str
    log_guid: str
    protocol: str


@dataclass
class Route:
    """An HTTP route to a process."""

    hostname: str = ""
    route_service_url: str = ""
    isolation_segment: str = ""
    log_guid: str = ""
    protocol: str = ""
    metric_tags: dict[str, MetricTagValue] | None = None
    options: Any = None

    def hash(self) -> _RouteHash:
        """Identity of the route for diffing; ignores tags and options."""
        return _RouteHash(
            self.hostname,
            self.route_service_url,
            self.isolation_segment,
            self.log_guid,
            self.protocol,
        )

    def message_for(self, endpoint, direct_instance_address, emit_endpoint_updated_at):
        if endpoint.is_direct_instance_route(direct_instance_address):
            generator = internal_address_registry_message_for
        else:
            generator = registry_message_for
        return generator(endpoint, self, emit_endpoint_updated_at), None, None


@dataclass(frozen=True)
class InternalRoute:
    """A route on the internal (container-to-container) network."""

    hostname: str = ""
    container_ip: str = ""
    log_guid: str = ""

    def hash(self) -> InternalRoute:
        return self

    def message_for(self, endpoint, direct_instance_address, emit_endpoint_updated_at):
        return None, None, internal_endpoint_registry_message_for(endpoint, self, emit_endpoint_updated_at)


@dataclass
class RoutableEndpoints:
    domain: str = ""
    routes: list = field(default_factory=list)
    endpoints: dict[EndpointKey, Endpoint] = field(default_factory=dict)
    desired_instances: int = 0
    modification_tag: ModificationTag | None = None

    def copy(self) -> RoutableEndpoints:
        """A copy whose route list and endpoint map can change independently."""
        return RoutableEndpoints(
            domain=self.domain,
            routes=list(self.routes),
            endpoints=dict(self.endpoints),
            desired_instances=self.desired_instances,
            modification_tag=self.modification_tag,
        )


@dataclass
class InternalRoutableEndpoints:
    routes: list[InternalRoute] = field(default_factory=list)
    endpoints: dict[EndpointKey, Endpoint] = field(default_factory=dict)
    desired_instances: int = 0
    modification_tag: ModificationTag | None = None


@dataclass(frozen=True)
class RoutingKey:
    process_guid: str
    container_port: int


class RoutingKeys(Sequence):
    """An ordered, immutable collection of routing keys."""

    def __init__(self, keys: Iterable[RoutingKey] = ()):
        self._keys = tuple(keys)

    def __getitem__(self, index):
        if isinstance(index, slice):
            return RoutingKeys(self._keys[index])
        return self._keys[index]

    def __len__(self) -> int:
        return len(self._keys)

    def __eq__(self, other) -> bool:
        if isinstance(other, RoutingKeys):
            return self._keys == other._keys
        if isinstance(other, (list, tuple)):
            return self._keys == tuple(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._keys)

    def __repr__(self) -> str:
        return f"RoutingKeys({list(self._keys)!r})"

    def remove(self, other: Iterable[RoutingKey]) -> RoutingKeys:
        """Keys of this collection that are not in ``other``."""
        excluded = set(other)
        return RoutingKeys(key for key in self._keys if key not in excluded)


def _instance_index(endpoint: Endpoint) -> str:
    return str(endpoint.index) if endpoint.instance_guid else ""


def _since(endpoint: Endpoint, emit_endpoint_updated_at: bool) -> int:
    return endpoint.since if emit_endpoint_updated_at else 0


def _metric_tags(metric_tags: dict[str, MetricTagValue] | None, endpoint: Endpoint) -> dict[str, str]:
    tags = {}
    for name, value in (metric_tags or {}).items():
        if value.dynamic > 0:
            if value.dynamic == MetricTagDynamicValue.INDEX:
                tags[name] = str(endpoint.index)
            elif value.dynamic == MetricTagDynamicValue.INSTANCE_GUID:
                tags[name] = endpoint.instance_guid
            else:
                tags[name] = ""
        else:
            tags[name] = value.static
    tags["component"] = _COMPONENT
    return tags


def registry_message_for(endpoint: Endpoint, route: Route, emit_endpoint_updated_at: bool) -> RegistryMessage:
    """Registration of a route at the endpoint's host address."""
    return RegistryMessage(
        uris=[route.hostname],
        host=endpoint.host,
        port=endpoint.port,
        tls_port=endpoint.tls_proxy_port,
        protocol=route.protocol,
        app=route.log_guid,
        isolation_segment=route.isolation_segment,
        tags=_metric_tags(route.metric_tags, endpoint),
        availability_zone=endpoint.availability_zone,
        endpoint_updated_at_ns=_since(endpoint, emit_endpoint_updated_at),
        private_instance_id=endpoint.instance_guid,
        private_instance_index=_instance_index(endpoint),
        server_cert_domain_san=endpoint.instance_guid,
        route_service_url=route.route_service_url,
        options=route.options,
    )


def internal_address_registry_message_for(
    endpoint: Endpoint, route: Route, emit_endpoint_updated_at: bool
) -> RegistryMessage:
    """Registration of a route at the endpoint's container address."""
    return RegistryMessage(
        uris=[route.hostname],
        host=endpoint.container_ip,
        port=endpoint.container_port,
        tls_port=endpoint.container_tls_proxy_port,
        protocol=route.protocol,
        app=route.log_guid,
        isolation_segment=route.isolation_segment,
        tags=_metric_tags(route.metric_tags, endpoint),
        availability_zone=endpoint.availability_zone,
        server_cert_domain_san=endpoint.instance_guid,
        private_instance_id=endpoint.instance_guid,
        private_instance_index=_instance_index(endpoint),
        endpoint_updated_at_ns=_since(endpoint, emit_endpoint_updated_at),
        route_service_url=route.route_service_url,
    )


def internal_endpoint_registry_message_for(
    endpoint: Endpoint, route: InternalRoute, emit_endpoint_updated_at: bool
) -> RegistryMessage:
    """Registration of an internal route, also under the instance-indexed name."""
    index = _instance_index(endpoint)
    return RegistryMessage(
        uris=[route.hostname, f"{index}.{route.hostname}"],
        host=endpoint.container_ip,
        app=route.log_guid,
        tags={"component": _COMPONENT},
        availability_zone=endpoint.availability_zone,
        endpoint_updated_at_ns=_since(endpoint, emit_endpoint_updated_at),
        private_instance_index=index,
    )


def endpoints_from_actual(actual_lrp: ActualLRP) -> list[Endpoint]:
    """One endpoint per port mapping of the instance."""
    return [
        Endpoint(
            instance_guid=actual_lrp.instance_guid,
            index=actual_lrp.index,
            host=actual_lrp.address,
            container_ip=actual_lrp.instance_address,
            port=mapping.host_port,
            container_port=mapping.container_port,
            presence=actual_lrp.presence,
            modification_tag=actual_lrp.modification_tag,
            tls_proxy_port=mapping.host_tls_proxy_port,
            container_tls_proxy_port=mapping.container_tls_proxy_port,
            since=actual_lrp.since,
            preferred_address=actual_lrp.preferred_address,
            availability_zone=actual_lrp.availability_zone,
        )
        for mapping in actual_lrp.ports
        if mapping is not None
    ]


def routing_keys_from_actual(actual_lrp: ActualLRP) -> RoutingKeys:
    """Keys for every container port, including TLS proxy ports when both are set."""
    keys = []
    for mapping in actual_lrp.ports:
        if mapping is None:
            continue
        keys.append(RoutingKey(actual_lrp.process_guid, mapping.container_port))
        if mapping.host_tls_proxy_port and mapping.container_tls_proxy_port:
            keys.append(RoutingKey(actual_lrp.process_guid, mapping.container_tls_proxy_port))
    return RoutingKeys(keys)


def routing_keys_from_desired(desired: DesiredLRP) -> RoutingKeys:
    """Keys for the container ports of the desired LRP's TCP routes."""
    try:
        routes = tcp_routes_from_routing_info(desired.routes)
    except ValueError:
        return RoutingKeys()
    return RoutingKeys(RoutingKey(desired.process_guid, route.container_port) for route in routes)
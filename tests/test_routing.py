import dataclasses
import json

from routeemit.lrp import (
    TCP_ROUTER,
    ActualLRP,
    ActualLRPState,
    DesiredLRP,
    MetricTagDynamicValue,
    MetricTagValue,
    ModificationTag,
    PortMapping,
    PreferredAddress,
    Presence,
)
from routeemit.routing import (
    Endpoint,
    EndpointKey,
    ExternalEndpointInfo,
    ExternalEndpointInfos,
    InternalRoute,
    MessagesToEmit,
    RegistryMessage,
    RoutableEndpoints,
    Route,
    RoutingKey,
    RoutingKeys,
    TCPRouteMapping,
    endpoints_from_actual,
    internal_address_registry_message_for,
    internal_endpoint_registry_message_for,
    registry_message_for,
    routing_keys_from_actual,
    routing_keys_from_desired,
)


# --- route hash -----------------------------------------------------------

def test_route_hash_uniquely_identifies_route():
    route_a = Route("routeA.com", "routeA-service-url", "routeA-iso-seg", "routeA-log-guid", "protocolA")
    route_b = Route("routeA.com", "routeA-service-url", "routeA-iso-seg", "routeA-log-guid", "protocolA")
    route_c = Route("routeA.com", "routeA-service-url", "routeC-iso-seg", "routeA-log-guid", "protocolC")
    assert route_a.hash() == route_b.hash()
    assert route_a.hash() != route_c.hash()


# --- endpoints from actual ------------------------------------------------

def _actual(presence, preferred, *ports):
    return ActualLRP(
        process_guid="process-guid",
        index=0,
        domain="domain",
        instance_guid="instance-guid",
        cell_id="cell-id",
        address="1.1.1.1",
        instance_address="2.2.2.2",
        preferred_address=preferred,
        ports=list(ports),
        presence=presence,
        state=ActualLRPState.RUNNING,
        modification_tag=ModificationTag(epoch="abc", index=0),
        availability_zone="some-zone",
    )


def _endpoint(presence, preferred, port, container_port, tls=0, container_tls=0):
    return Endpoint(
        instance_guid="instance-guid",
        presence=presence,
        host="1.1.1.1",
        container_ip="2.2.2.2",
        port=port,
        container_port=container_port,
        tls_proxy_port=tls,
        container_tls_proxy_port=container_tls,
        preferred_address=preferred,
        modification_tag=ModificationTag(epoch="abc", index=0),
        availability_zone="some-zone",
    )


def test_endpoints_from_actual_not_evacuating():
    actual = _actual(Presence.ORDINARY, PreferredAddress.HOST, PortMapping(11, 44), PortMapping(66, 99))
    endpoints = endpoints_from_actual(actual)
    assert len(endpoints) == 2
    assert set(endpoints) == {
        _endpoint(Presence.ORDINARY, PreferredAddress.HOST, 11, 44),
        _endpoint(Presence.ORDINARY, PreferredAddress.HOST, 66, 99),
    }


def test_endpoints_from_actual_with_tls_proxy_ports():
    actual = _actual(
        Presence.ORDINARY,
        PreferredAddress.INSTANCE,
        PortMapping(11, 44, 61004, 61005),
        PortMapping(66, 99, 61006, 61007),
    )
    assert set(endpoints_from_actual(actual)) == {
        _endpoint(Presence.ORDINARY, PreferredAddress.INSTANCE, 11, 44, 61004, 61005),
        _endpoint(Presence.ORDINARY, PreferredAddress.INSTANCE, 66, 99, 61006, 61007),
    }


def test_endpoints_from_actual_evacuating():
    actual = _actual(Presence.EVACUATING, PreferredAddress.HOST, PortMapping(11, 44), PortMapping(66, 99))
    endpoints = endpoints_from_actual(actual)
    assert set(endpoints) == {
        _endpoint(Presence.EVACUATING, PreferredAddress.HOST, 11, 44),
        _endpoint(Presence.EVACUATING, PreferredAddress.HOST, 66, 99),
    }
    assert all(e.key() == EndpointKey("instance-guid", True) for e in endpoints)


# --- routing keys ---------------------------------------------------------

def test_routing_keys_from_actual():
    keys = routing_keys_from_actual(_actual(Presence.ORDINARY, PreferredAddress.HOST, PortMapping(11, 44), PortMapping(66, 99)))
    assert len(keys) == 2
    assert RoutingKey("process-guid", 44) in keys
    assert RoutingKey("process-guid", 99) in keys


def test_routing_keys_from_actual_with_tls_proxy_ports():
    keys = routing_keys_from_actual(
        _actual(
            Presence.ORDINARY,
            PreferredAddress.HOST,
            PortMapping(11, 44, 61004, 61005),
            PortMapping(66, 99, 61006, 61007),
        )
    )
    assert len(keys) == 4
    for port in (44, 99, 61005, 61007):
        assert RoutingKey("process-guid", port) in keys


def test_routing_keys_from_actual_without_ports():
    assert len(routing_keys_from_actual(_actual(Presence.ORDINARY, PreferredAddress.HOST))) == 0


def test_routing_keys_from_desired():
    desired = DesiredLRP(
        domain="tests",
        process_guid="process-guid",
        ports=[8080, 9090],
        routes={TCP_ROUTER: [{"external_port": 61000, "container_port": 8080}, {"external_port": 61001, "container_port": 9090}]},
        log_guid="abc-guid",
    )
    keys = routing_keys_from_desired(desired)
    assert len(keys) == 2
    assert RoutingKey("process-guid", 8080) in keys
    assert RoutingKey("process-guid", 9090) in keys


def test_routing_keys_from_desired_without_ports():
    desired = DesiredLRP(domain="tests", process_guid="process-guid", routes={TCP_ROUTER: []}, log_guid="abc-guid")
    assert len(routing_keys_from_desired(desired)) == 0


def test_routing_keys_from_desired_with_bad_routes():
    desired = DesiredLRP(process_guid="process-guid", routes={TCP_ROUTER: "{broken"})
    assert routing_keys_from_desired(desired) == RoutingKeys()


def test_routing_keys_remove():
    a, b, c = RoutingKey("pg", 1), RoutingKey("pg", 2), RoutingKey("pg", 3)
    assert RoutingKeys([a, b, c]).remove(RoutingKeys([b])) == RoutingKeys([a, c])
    assert RoutingKeys([a]).remove(RoutingKeys([a])) == []


# --- messages to emit -----------------------------------------------------

def _messages1():
    return [
        RegistryMessage(host="1.1.1.1", port=61000, app="log-guid-2", uris=["host1.example.com"]),
        RegistryMessage(host="1.1.1.1", port=61001, app="log-guid-1", uris=["host1.example.com"]),
        RegistryMessage(host="1.1.1.1", port=61003, app="log-guid-2", uris=["host2.example.com", "host3.example.com"]),
        RegistryMessage(host="1.1.1.1", port=61004, app="log-guid-3", uris=["host3.example.com"]),
    ]


def _internal_messages():
    return [
        RegistryMessage(host="1.1.1.1", uris=["host1.internal.local", "host2.internal.local"]),
        RegistryMessage(host="1.1.1.1", uris=["host3.internal.local", "host4.internal.local"]),
    ]


def test_route_registration_count():
    assert MessagesToEmit(registration_messages=_messages1()).route_registration_count() == 5
    assert MessagesToEmit(unregistration_messages=_messages1()).route_registration_count() == 0


def test_route_unregistration_count():
    assert MessagesToEmit(unregistration_messages=_messages1()).route_unregistration_count() == 5
    assert MessagesToEmit(registration_messages=_messages1()).route_unregistration_count() == 0


def test_internal_route_registration_count():
    assert MessagesToEmit(internal_registration_messages=_internal_messages()).internal_route_registration_count() == 4
    assert MessagesToEmit(internal_unregistration_messages=_internal_messages()).internal_route_registration_count() == 0


def test_internal_route_unregistration_count():
    assert MessagesToEmit(internal_unregistration_messages=_internal_messages()).internal_route_unregistration_count() == 4
    assert MessagesToEmit(internal_registration_messages=_internal_messages()).internal_route_unregistration_count() == 0


def test_merge_concatenates_in_order():
    first, second = _messages1()[:2]
    left = MessagesToEmit(registration_messages=[first])
    right = MessagesToEmit(registration_messages=[second], unregistration_messages=[first])
    merged = left.merge(right)
    assert merged == MessagesToEmit(registration_messages=[first, second], unregistration_messages=[first])
    assert left.registration_messages == [first]


# --- registry message serialization ---------------------------------------

def _expected_message():
    return RegistryMessage(
        host="1.1.1.1",
        port=61001,
        uris=["host-1.example.com"],
        app="app-guid",
        server_cert_domain_san="instance-guid",
        private_instance_id="instance-guid",
        private_instance_index="0",
        route_service_url="https://hello.com",
        endpoint_updated_at_ns=1000,
        tags={"component": "route-emitter", "foo": "bar", "doo": "0", "goo": "instance-guid"},
        availability_zone="some-zone",
    )


def _expected_json():
    return {
        "host": "1.1.1.1",
        "port": 61001,
        "uris": ["host-1.example.com"],
        "app": "app-guid",
        "private_instance_id": "instance-guid",
        "server_cert_domain_san": "instance-guid",
        "private_instance_index": "0",
        "route_service_url": "https://hello.com",
        "endpoint_updated_at_ns": 1000,
        "tags": {"component": "route-emitter", "doo": "0", "foo": "bar", "goo": "instance-guid"},
        "availability_zone": "some-zone",
    }


def test_marshals_correctly():
    assert json.loads(_expected_message().to_json()) == _expected_json()


def test_unmarshals_correctly():
    assert RegistryMessage.from_json(json.dumps(_expected_json())) == _expected_message()


def test_tls_port_round_trip():
    expected = dataclasses.replace(_expected_message(), tls_port=61007)
    payload = dict(_expected_json(), tls_port=61007)
    assert RegistryMessage.from_json(json.dumps(payload)) == expected
    assert json.loads(expected.to_json()) == payload


def test_protocol_round_trip():
    expected = dataclasses.replace(_expected_message(), protocol="http2")
    payload = dict(_expected_json(), protocol="http2")
    assert RegistryMessage.from_json(json.dumps(payload)) == expected


def test_options_round_trip():
    options = {"lb_algo": "least-connection"}
    expected = dataclasses.replace(_expected_message(), options=options)
    payload = dict(_expected_json(), options=options)
    assert RegistryMessage.from_json(json.dumps(payload)) == expected
    assert json.loads(expected.to_json()) == payload


def test_from_json_rejects_non_object():
    try:
        RegistryMessage.from_json("[1, 2]")
    except ValueError as exc:
        assert "object" in str(exc)
    else:
        raise AssertionError("expected ValueError")


# --- registry message builders --------------------------------------------

def _endpoint_for_messages():
    return Endpoint(
        instance_guid="instance-guid",
        index=0,
        host="1.1.1.1",
        container_ip="1.2.3.4",
        port=61001,
        container_port=11,
        since=2000,
        availability_zone="some-zone",
    )


def _route_for_messages(with_guid_tag=True):
    tags = {
        "foo": MetricTagValue(static="bar"),
        "doo": MetricTagValue(dynamic=MetricTagDynamicValue.INDEX),
    }
    if with_guid_tag:
        tags["goo"] = MetricTagValue(dynamic=MetricTagDynamicValue.INSTANCE_GUID)
    return Route(hostname="host-1.example.com", log_guid="app-guid", route_service_url="https://hello.com", metric_tags=tags)


def test_registry_message_for():
    expected = dataclasses.replace(_expected_message(), endpoint_updated_at_ns=2000)
    assert registry_message_for(_endpoint_for_messages(), _route_for_messages(), True) == expected


def test_registry_message_for_omits_updated_at():
    expected = dataclasses.replace(_expected_message(), endpoint_updated_at_ns=0)
    assert registry_message_for(_endpoint_for_messages(), _route_for_messages(), False) == expected


def test_registry_message_for_tls_port():
    endpoint = dataclasses.replace(_endpoint_for_messages(), tls_proxy_port=61005)
    expected = dataclasses.replace(_expected_message(), endpoint_updated_at_ns=2000, tls_port=61005)
    assert registry_message_for(endpoint, _route_for_messages(), True) == expected


def test_registry_message_for_index_greater_than_zero():
    endpoint = dataclasses.replace(_endpoint_for_messages(), index=2)
    expected = _expected_message()
    expected.endpoint_updated_at_ns = 2000
    expected.private_instance_index = "2"
    expected.tags["doo"] = "2"
    assert registry_message_for(endpoint, _route_for_messages(), True) == expected


def test_registry_message_for_route_options():
    route = _route_for_messages()
    route.options = {"lb_algo": "least-connection"}
    expected = dataclasses.replace(
        _expected_message(), endpoint_updated_at_ns=2000, options={"lb_algo": "least-connection"}
    )
    assert registry_message_for(_endpoint_for_messages(), route, True) == expected


def _expected_internal_address():
    return RegistryMessage(
        host="1.2.3.4",
        port=11,
        uris=["host-1.example.com"],
        app="app-guid",
        private_instance_id="instance-guid",
        private_instance_index="0",
        server_cert_domain_san="instance-guid",
        route_service_url="https://hello.com",
        endpoint_updated_at_ns=2000,
        tags={"component": "route-emitter", "foo": "bar", "doo": "0"},
        availability_zone="some-zone",
    )


def test_internal_address_registry_message_for():
    message = internal_address_registry_message_for(_endpoint_for_messages(), _route_for_messages(False), True)
    assert message == _expected_internal_address()


def test_internal_address_registry_message_omits_updated_at():
    expected = dataclasses.replace(_expected_internal_address(), endpoint_updated_at_ns=0)
    message = internal_address_registry_message_for(_endpoint_for_messages(), _route_for_messages(False), False)
    assert message == expected


def test_internal_address_registry_message_tls_port():
    endpoint = dataclasses.replace(_endpoint_for_messages(), container_tls_proxy_port=61007)
    expected = dataclasses.replace(_expected_internal_address(), tls_port=61007)
    assert internal_address_registry_message_for(endpoint, _route_for_messages(False), True) == expected


def test_internal_address_registry_message_index_greater_than_zero():
    endpoint = dataclasses.replace(_endpoint_for_messages(), index=2)
    expected = _expected_internal_address()
    expected.private_instance_index = "2"
    expected.tags["doo"] = "2"
    assert internal_address_registry_message_for(endpoint, _route_for_messages(False), True) == expected


def _expected_internal_endpoint():
    return RegistryMessage(
        host="1.2.3.4",
        uris=["host-1.example.com", "0.host-1.example.com"],
        app="app-guid",
        tags={"component": "route-emitter"},
        endpoint_updated_at_ns=2000,
        private_instance_index="0",
        availability_zone="some-zone",
    )


def test_internal_endpoint_registry_message_for():
    route = InternalRoute(hostname="host-1.example.com", log_guid="app-guid", container_ip="5.6.7.8")
    assert internal_endpoint_registry_message_for(_endpoint_for_messages(), route, True) == _expected_internal_endpoint()


def test_internal_endpoint_registry_message_omits_updated_at():
    route = InternalRoute(hostname="host-1.example.com", log_guid="app-guid", container_ip="5.6.7.8")
    expected = dataclasses.replace(_expected_internal_endpoint(), endpoint_updated_at_ns=0)
    assert internal_endpoint_registry_message_for(_endpoint_for_messages(), route, False) == expected


# --- routes and endpoint infos --------------------------------------------

def test_route_message_for_chooses_address():
    route = _route_for_messages()
    host_endpoint = dataclasses.replace(_endpoint_for_messages(), preferred_address=PreferredAddress.HOST)
    http, tcp, internal = route.message_for(host_endpoint, True, True)
    assert (http.host, http.port, tcp, internal) == ("1.1.1.1", 61001, None, None)
    instance_endpoint = dataclasses.replace(_endpoint_for_messages(), preferred_address=PreferredAddress.INSTANCE)
    http, _, _ = route.message_for(instance_endpoint, False, True)
    assert (http.host, http.port) == ("1.2.3.4", 11)


def test_internal_route_message_for():
    route = InternalRoute(hostname="host-1.example.com", log_guid="app-guid")
    http, tcp, internal = route.message_for(_endpoint_for_messages(), False, True)
    assert http is None and tcp is None
    assert internal == _expected_internal_endpoint()
    assert route.hash() == InternalRoute(hostname="host-1.example.com", log_guid="app-guid")


def test_is_direct_instance_route():
    endpoint = _endpoint_for_messages()
    assert endpoint.is_direct_instance_route(True) is True
    assert endpoint.is_direct_instance_route(False) is False
    assert dataclasses.replace(endpoint, preferred_address=PreferredAddress.HOST).is_direct_instance_route(True) is False
    assert dataclasses.replace(endpoint, preferred_address=PreferredAddress.INSTANCE).is_direct_instance_route(False) is True


def test_endpoint_key_string():
    assert str(EndpointKey("ig-1", False)) == '{"InstanceGUID": "ig-1", "Evacuating": false}'
    assert _endpoint_for_messages().key() == EndpointKey("instance-guid", False)


def test_external_endpoint_info_message_for_host():
    info = ExternalEndpointInfo(router_group_guid="router-group-guid", port=61000)
    endpoint = Endpoint(instance_guid="instance-guid", host="some-ip", port=61006, container_port=5222,
                        preferred_address=PreferredAddress.HOST)
    http, mapping, internal = info.message_for(endpoint, False, False)
    assert http is None and internal is None
    assert mapping == TCPRouteMapping(
        router_group_guid="router-group-guid", external_port=61000, host_ip="some-ip",
        host_port=61006, host_tls_port=-1, ttl=0,
    )
    assert info.hash() == info


def test_external_endpoint_info_message_for_tls_container():
    info = ExternalEndpointInfo(router_group_guid="rg", port=61000, tls_enabled=True)
    endpoint = Endpoint(instance_guid="ig", container_ip="2.2.2.2", container_port=8080,
                        container_tls_proxy_port=61443, preferred_address=PreferredAddress.INSTANCE)
    _, mapping, _ = info.message_for(endpoint, False, False)
    assert (mapping.host_ip, mapping.host_port, mapping.host_tls_port, mapping.instance_id) == ("2.2.2.2", 8080, 61443, "ig")


def test_external_endpoint_infos():
    infos = ExternalEndpointInfos([ExternalEndpointInfo(port=61000)])
    assert infos.has_no_external_ports() is False
    assert infos.contains_external_port(61000) is True
    assert infos.contains_external_port(61001) is False
    assert ExternalEndpointInfos().has_no_external_ports() is True


def test_routable_endpoints_copy_is_independent():
    endpoint = _endpoint_for_messages()
    original = RoutableEndpoints(domain="d", routes=[_route_for_messages()], endpoints={endpoint.key(): endpoint},
                                 desired_instances=2)
    clone = original.copy()
    assert clone == original
    clone.routes.append(_route_for_messages(False))
    clone.endpoints.clear()
    assert len(original.routes) == 1
    assert original.endpoints == {endpoint.key(): endpoint}
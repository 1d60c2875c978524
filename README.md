# routeemit

`routeemit` turns events about desired and actual long-running processes
(LRPs) into routing table changes, and passes the resulting HTTP registry
messages and TCP route mappings on to emitters. It also builds registry
messages from endpoints and routes, and serialises them to the router's
JSON form.

## Installation

```
pip install routeemit
```

For the test suite:

```
pip install "routeemit[test]"
pytest
```

## Modules

- `routeemit.lrp` holds the process and event model: `ActualLRP`,
  `DesiredLRP`, `PortMapping`, `ModificationTag`, `MetricTagValue`,
  `TCPRoute`, the enums `Presence`, `PreferredAddress`, `ActualLRPState`
  and `MetricTagDynamicValue`, and the events `DesiredLRPCreatedEvent`,
  `DesiredLRPChangedEvent`, `DesiredLRPRemovedEvent`,
  `ActualLRPInstanceCreatedEvent`, `ActualLRPInstanceChangedEvent` and
  `ActualLRPInstanceRemovedEvent`. `tcp_routes_from_routing_info` reads the
  TCP routes out of a desired LRP's routes (raising `ValueError` on a
  malformed entry). `desired_lrp_data` and `actual_lrp_data` return
  dictionaries summarising an LRP for logs.
- `routeemit.routing` holds `Endpoint`, `EndpointKey`, `Route`,
  `InternalRoute`, `ExternalEndpointInfo`, `ExternalEndpointInfos`,
  `TCPRouteMapping`, `RegistryMessage`, `MessagesToEmit`,
  `RoutableEndpoints`, `InternalRoutableEndpoints`, `RoutingKey`,
  `RoutingKeys` and `ExternalServiceGreetingMessage`, and the functions
  `registry_message_for`, `internal_address_registry_message_for`,
  `internal_endpoint_registry_message_for`, `endpoints_from_actual`,
  `routing_keys_from_actual` and `routing_keys_from_desired`.
- `routeemit.matchers` compares messages: `match_messages_to_emit` and
  `match_registry_message`.
- `routeemit.handler` provides `Handler`.

## Building a registry message

```python
from routeemit.routing import Endpoint, Route, registry_message_for

endpoint = Endpoint(
    instance_guid="instance-guid",
    index=0,
    host="1.1.1.1",
    port=61001,
    container_port=11,
)
route = Route(hostname="host-1.example.com", log_guid="app-guid")

message = registry_message_for(endpoint, route, True)
print(message.to_json())
```

`registry_message_for` uses the endpoint's host address and port;
`internal_address_registry_message_for` uses its container address and
port. Both set the `component` tag to `route-emitter` and fill in metric
tags from the route, taking dynamic tags from the endpoint's index or
instance GUID. Passing `False` as the last argument leaves
`endpoint_updated_at_ns` at zero.

`Route.message_for` and `ExternalEndpointInfo.message_for` pick the
container address when `Endpoint.is_direct_instance_route` says so: always
for `PreferredAddress.INSTANCE`, never for `PreferredAddress.HOST`, and
according to the given default otherwise.

`RegistryMessage.to_json` writes the router's field names (`host`, `port`,
`uris`, `private_instance_id` and so on) and leaves out empty optional
fields. `RegistryMessage.from_json` reads the same JSON back and raises
`ValueError` when the input is not a JSON object.

## Counting and merging messages

```python
from routeemit.routing import MessagesToEmit

messages = MessagesToEmit(registration_messages=[message])
messages.route_registration_count()  # one per URI across all messages
```

`MessagesToEmit.merge` returns a new value holding the messages of both,
in order. There are matching counts for unregistrations and for internal
registrations and unregistrations.

## Comparing messages

`match_messages_to_emit(actual, expected)` is true when each of the four
message lists holds the same messages, regardless of the order of the
messages or of the URIs in them. `match_registry_message(actual, expected)`
compares URIs in any order and the host, ports, app, route service URL,
instance id and index, certificate SAN, isolation segment and tags; it
does not compare protocol, timestamps, availability zone or options. Both
raise `TypeError` when `actual` is of the wrong type.

## Handling events

`Handler` works with collaborators that you supply:

- a routing table with `set_routes`, `remove_routes`, `add_endpoint`,
  `remove_endpoint`, `swap`, `get_external_routing_events`,
  `get_internal_routing_events`, `has_external_routes`,
  `http_associations_count` and `tcp_associations_count`;
- a NATS emitter and a routing-API emitter, each with `emit` (either may be
  `None`);
- a metrics client with `increment_counter_with_delta` and `send_metric`;
- an unregistration cache with `add` and `remove`;
- optionally, a `table_factory` called as
  `table_factory(False, tcp_tls_enabled, metron_client)` to build the fresh
  table used during `sync`.

```python
from routeemit.handler import Handler

handler = Handler(
    routing_table,
    nats_emitter,
    routing_api_emitter,
    False,
    False,
    metron_client,
    unregistration_cache,
    table_factory,
)
handler.handle_event(event)
handler.emit_external()
```

- `handle_event` dispatches on the event class. Actual LRP creations and
  removals only touch the table when the instance is running; a change
  adds, removes or (when an instance starts evacuating) does both. Events
  with a missing LRP and unknown events are logged and otherwise ignored.
- `emit_external` and `emit_internal` emit every route the table reports;
  `emit_external` also sends the `RoutesSynced` counter and `RoutesTotal`
  gauge.
- `sync` builds a new table from full lists of desired and actual LRPs,
  applies cached events to it with emission switched off, swaps it into
  the routing table, updates the unregistration cache and emits the
  result. In local mode it also sends `HTTPRouteCount` and
  `TCPRouteCount`. It raises `ValueError` when no table factory was given.
- `refresh_desired` sets and emits the routes of each desired LRP;
  `should_refresh_desired` is true when the table has no external routes
  for an instance.

Each emission sends the `RoutesRegistered` and `RoutesUnregistered`
counters. Errors raised by the emitters and the metrics client are logged
through the standard `logging` module and not raised. An error from the
unregistration cache while handling a change event is logged and the
messages for that event are not emitted. Errors raised by the routing
table are not caught.

## What this package does not do

`routeemit` contains no routing table, no NATS or routing-API emitter, no
unregistration cache and no metrics client: `Handler` only drives the
objects it is given. It does not connect to any event stream or router,
and it has no command-line program.
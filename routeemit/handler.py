"""Turns LRP events into routing table changes and emits the resulting routes."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from routeemit.lrp import (
    ActualLRP,
    ActualLRPInstanceChangedEvent,
    ActualLRPInstanceCreatedEvent,
    ActualLRPInstanceRemovedEvent,
    ActualLRPState,
    DesiredLRP,
    DesiredLRPChangedEvent,
    DesiredLRPCreatedEvent,
    DesiredLRPRemovedEvent,
    Presence,
    actual_lrp_data,
    desired_lrp_data,
)
from routeemit.routing import MessagesToEmit

_log = logging.getLogger(__name__)

_ROUTES_TOTAL_METRIC = "RoutesTotal"
_ROUTES_SYNCED_COUNTER = "RoutesSynced"
_ROUTES_REGISTERED_COUNTER = "RoutesRegistered"
_ROUTES_UNREGISTERED_COUNTER = "RoutesUnregistered"
_HTTP_ROUTE_COUNT = "HTTPRouteCount"
_TCP_ROUTE_COUNT = "TCPRouteCount"


def _merge_mappings(first, second):
    if first is None:
        return second
    if second is None:
        return first
    return first.merge(second)


def _trace_logger(trace_id: str) -> logging.LoggerAdapter:
    return logging.LoggerAdapter(_log, {"trace_id": trace_id})


class Handler:
    """Applies LRP events to a routing table and emits what changed.

    The routing table, emitters, metric client and unregistration cache are
    duck-typed collaborators; failures they raise are logged, not propagated.
    ``table_factory(direct_instance_route, tcp_tls_enabled, metron_client)``
    builds the fresh table used by :meth:`sync`.
    """

    def __init__(
        self,
        routing_table,
        nats_emitter,
        routing_api_emitter,
        local_mode: bool,
        tcp_tls_enabled: bool,
        metron_client,
        unregistration_cache,
        table_factory: Callable[..., Any] | None = None,
    ):
        self.routing_table = routing_table
        self.nats_emitter = nats_emitter
        self.routing_api_emitter = routing_api_emitter
        self.local_mode = local_mode
        self.tcp_tls_enabled = tcp_tls_enabled
        self.metron_client = metron_client
        self.unregistration_cache = unregistration_cache
        self.table_factory = table_factory

    def handle_event(self, event) -> None:
        """Dispatch one event; unknown or malformed events are logged."""
        log = _trace_logger(getattr(event, "trace_id", ""))
        if isinstance(event, DesiredLRPCreatedEvent):
            self._handle_desired_create(log, event.desired_lrp)
        elif isinstance(event, DesiredLRPChangedEvent):
            try:
                self._handle_desired_update(log, event.before, event.after)
            except Exception as exc:
                log.error("failed-to-handle-desired-update: %s", exc)
        elif isinstance(event, DesiredLRPRemovedEvent):
            self._handle_desired_delete(log, event.desired_lrp)
        elif isinstance(event, ActualLRPInstanceCreatedEvent):
            if event.actual_lrp is None:
                log.error("nil-actual-lrp event-type=%s", event.event_type)
                return
            self._handle_actual_create(log, event.actual_lrp)
        elif isinstance(event, ActualLRPInstanceChangedEvent):
            log.debug("received-actual-lrp-changed-event before=%r after=%r", event.before, event.after)
            if event.before is None or event.after is None:
                log.error("nil-actual-lrp event-type=%s", event.event_type)
                return
            try:
                self._handle_actual_update(log, event.before, event.after)
            except Exception as exc:
                log.error("failed-to-handle-actual-update: %s", exc)
        elif isinstance(event, ActualLRPInstanceRemovedEvent):
            if event.actual_lrp is None:
                log.error("nil-actual-lrp event-type=%s", event.event_type)
                return
            log.debug("received-actual-lrp-instance-removed-event lrp=%s", actual_lrp_data(event.actual_lrp))
            self._handle_actual_delete(log, event.actual_lrp)
        else:
            log.error(
                "did-not-handle-unrecognizable-event event-type=%s",
                getattr(event, "event_type", type(event).__name__),
            )

    def emit_external(self) -> None:
        """Emit every external route in the table and report route metrics."""
        routing_events, messages = self.routing_table.get_external_routing_events()

        _log.debug("emitting-nats-messages messages=%r", messages)
        if self.nats_emitter is not None:
            try:
                self.nats_emitter.emit(messages)
            except Exception as exc:
                _log.error("failed-to-emit-nats-routes: %s", exc)

        _log.debug("emitting-routing-api-messages messages=%r", routing_events)
        if self.routing_api_emitter is not None:
            try:
                self.routing_api_emitter.emit(routing_events)
            except Exception as exc:
                _log.error("failed-to-emit-tcp-routes: %s", exc)

        try:
            self.metron_client.increment_counter_with_delta(
                _ROUTES_SYNCED_COUNTER, messages.route_registration_count()
            )
        except Exception as exc:
            _log.error("failed-send-routes-synced-count-metric: %s", exc)
        try:
            self.metron_client.send_metric(_ROUTES_TOTAL_METRIC, self.routing_table.http_associations_count())
        except Exception as exc:
            _log.error("failed-to-send-total-route-count-metric: %s", exc)

    def emit_internal(self) -> None:
        """Emit every internal route in the table."""
        _, messages = self.routing_table.get_internal_routing_events()
        _log.debug("emitting-nats-messages messages=%r", messages)
        if self.nats_emitter is not None:
            try:
                self.nats_emitter.emit(messages)
            except Exception as exc:
                _log.error("failed-to-emit-nats-routes: %s", exc)

    def sync(
        self,
        desired: Iterable[DesiredLRP],
        actuals: Iterable[ActualLRP],
        domains,
        cached_events: Mapping[str, Any] | None,
    ) -> None:
        """Rebuild the table from a full snapshot plus cached events, then swap it in.

        Raises ValueError when the handler has no table factory.
        """
        if self.table_factory is None:
            raise ValueError("sync requires a table factory")
        _log.debug("sync starting")
        try:
            new_table = self.table_factory(False, self.tcp_tls_enabled, self.metron_client)
            for lrp in desired:
                new_table.set_routes(None, lrp)
            for lrp in actuals:
                new_table.add_endpoint(lrp)

            saved = (self.routing_table, self.nats_emitter, self.routing_api_emitter)
            self.routing_table, self.nats_emitter, self.routing_api_emitter = new_table, None, None
            try:
                for event in (cached_events or {}).values():
                    self.handle_event(event)
            finally:
                self.routing_table, self.nats_emitter, self.routing_api_emitter = saved

            route_mappings, messages = self.routing_table.swap(new_table, domains)
            counts = (
                len(messages.registration_messages),
                len(messages.unregistration_messages),
                len(messages.internal_registration_messages),
                len(messages.internal_unregistration_messages),
            )
            _log.debug("start-emitting-messages counts=%s", counts)
            try:
                self.unregistration_cache.add(messages.unregistration_messages)
            except Exception as exc:
                _log.error("failed-to-add-messages-to-cache: %s", exc)
            try:
                self.unregistration_cache.remove(messages.registration_messages)
            except Exception as exc:
                _log.error("failed-to-remove-messages-from-cache: %s", exc)
            self._emit_messages(_log, messages, route_mappings)
            _log.debug("done-emitting-messages counts=%s", counts)

            if self.local_mode:
                try:
                    self.metron_client.send_metric(_HTTP_ROUTE_COUNT, self.routing_table.http_associations_count())
                except Exception as exc:
                    _log.error("failed-to-send-http-routes-count-metric: %s", exc)
                try:
                    self.metron_client.send_metric(_TCP_ROUTE_COUNT, self.routing_table.tcp_associations_count())
                except Exception as exc:
                    _log.error("failed-to-send-tcp-route-count-metric: %s", exc)
        finally:
            _log.debug("sync completed")

    def refresh_desired(self, desired_lrps: Iterable[DesiredLRP]) -> None:
        """Set the routes of each desired LRP and emit the result."""
        for desired_lrp in desired_lrps:
            route_mappings, messages = self.routing_table.set_routes(None, desired_lrp)
            self._emit_messages(_log, messages, route_mappings)

    def should_refresh_desired(self, actual_lrp: ActualLRP) -> bool:
        """True when the table has no external routes for the instance."""
        return not self.routing_table.has_external_routes(actual_lrp)

    def _handle_desired_create(self, log, desired_lrp: DesiredLRP) -> None:
        log.debug("handling-desired-create lrp=%s", desired_lrp_data(desired_lrp).get("process-guid"))
        route_mappings, messages = self.routing_table.set_routes(None, desired_lrp)
        self._emit_messages(log, messages, route_mappings)

    def _handle_desired_update(self, log, before: DesiredLRP, after: DesiredLRP) -> None:
        route_mappings, messages = self.routing_table.set_routes(before, after)
        self.unregistration_cache.add(messages.unregistration_messages)
        self.unregistration_cache.remove(messages.registration_messages)
        self._emit_messages(log, messages, route_mappings)

    def _handle_desired_delete(self, log, desired_lrp: DesiredLRP) -> None:
        route_mappings, messages = self.routing_table.remove_routes(desired_lrp)
        self._emit_messages(log, messages, route_mappings)

    def _handle_actual_create(self, log, actual_lrp: ActualLRP) -> None:
        if actual_lrp.state != ActualLRPState.RUNNING:
            return
        route_mappings, messages = self.routing_table.add_endpoint(actual_lrp)
        self._emit_messages(log, messages, route_mappings)

    def _handle_actual_update(self, log, before: ActualLRP, after: ActualLRP) -> None:
        messages = MessagesToEmit()
        route_mappings = None
        if after.state == ActualLRPState.RUNNING:
            if not after.routable_exists() or after.routable:
                route_mappings, messages = self.routing_table.add_endpoint(after)
            elif before.routable:
                route_mappings, messages = self.routing_table.remove_endpoint(after)

            if (
                before.state == ActualLRPState.RUNNING
                and before.presence == Presence.ORDINARY
                and after.presence == Presence.EVACUATING
            ):
                removed_mappings, removed_messages = self.routing_table.remove_endpoint(before)
                route_mappings = _merge_mappings(route_mappings, removed_mappings)
                messages = messages.merge(removed_messages)
        elif before.state == ActualLRPState.RUNNING:
            route_mappings, messages = self.routing_table.remove_endpoint(before)

        self.unregistration_cache.add(messages.unregistration_messages)
        self.unregistration_cache.remove(messages.registration_messages)
        self._emit_messages(log, messages, route_mappings)

    def _handle_actual_delete(self, log, actual_lrp: ActualLRP | None) -> None:
        if actual_lrp is None or actual_lrp.state != ActualLRPState.RUNNING:
            return
        route_mappings, messages = self.routing_table.remove_endpoint(actual_lrp)
        self._emit_messages(log, messages, route_mappings)

    def _emit_messages(self, log, messages: MessagesToEmit, route_mappings) -> None:
        if self.nats_emitter is not None:
            log.debug("emit-messages messages=%r", messages)
            try:
                self.nats_emitter.emit(messages)
            except Exception as exc:
                log.error("failed-to-emit-http-routes: %s", exc)
            try:
                self.metron_client.increment_counter_with_delta(
                    _ROUTES_REGISTERED_COUNTER, messages.route_registration_count()
                )
            except Exception as exc:
                log.error("failed-to-emit-registration-message-count: %s", exc)
            try:
                self.metron_client.increment_counter_with_delta(
                    _ROUTES_UNREGISTERED_COUNTER, messages.route_unregistration_count()
                )
            except Exception as exc:
                log.error("failed-to-emit-unregistration-message-count: %s", exc)
        else:
            log.info("no-emitter-configured-skipping-emit-messages messages=%r", messages)

        if self.routing_api_emitter is not None:
            try:
                self.routing_api_emitter.emit(route_mappings)
            except Exception as exc:
                log.error("failed-to-emit-http-routes: %s", exc)
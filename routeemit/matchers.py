"""Order-insensitive comparisons of registry messages."""

from __future__ import annotations

import dataclasses
from collections import Counter

from routeemit.routing import MessagesToEmit, RegistryMessage

_MESSAGE_LISTS = (
    "registration_messages",
    "unregistration_messages",
    "internal_registration_messages",
    "internal_unregistration_messages",
)

_COMPARED_FIELDS = (
    "host",
    "port",
    "tls_port",
    "app",
    "route_service_url",
    "private_instance_id",
    "private_instance_index",
    "server_cert_domain_san",
    "isolation_segment",
    "tags",
)


def _normalized(message: RegistryMessage) -> RegistryMessage:
    tags = dict(sorted(message.tags.items())) if message.tags is not None else None
    return dataclasses.replace(message, uris=sorted(message.uris), tags=tags)


def _same_messages(actual: list[RegistryMessage], expected: list[RegistryMessage]) -> bool:
    if len(actual) != len(expected):
        return False
    fixed_actual = sorted((_normalized(m) for m in actual), key=repr)
    fixed_expected = sorted((_normalized(m) for m in expected), key=repr)
    return all(a == e for a, e in zip(fixed_actual, fixed_expected))


def match_messages_to_emit(actual, expected: MessagesToEmit) -> bool:
    """True when both hold the same messages, ignoring message and URI order.

    Raises TypeError when ``actual`` is not a MessagesToEmit.
    """
    if not isinstance(actual, MessagesToEmit):
        raise TypeError(f"{actual!r} is not a MessagesToEmit")
    return all(
        _same_messages(getattr(actual, name), getattr(expected, name)) for name in _MESSAGE_LISTS
    )


def match_registry_message(actual, expected: RegistryMessage) -> bool:
    """True when the routing-relevant fields agree; URIs compare in any order.

    Protocol, timestamps, availability zone and options are not compared.
    Raises TypeError when ``actual`` is not a RegistryMessage.
    """
    if not isinstance(actual, RegistryMessage):
        raise TypeError(f"{actual!r} is not a RegistryMessage")
    if Counter(actual.uris) != Counter(expected.uris):
        return False
    return all(getattr(actual, name) == getattr(expected, name) for name in _COMPARED_FIELDS)
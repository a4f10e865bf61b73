"""Connection and reflection-based discovery for one gRPC endpoint.

``apply_endpoint()`` opens a channel, asks the server's reflection service
for its services, and resolves the selected service/method pair into a
:class:`MethodSignature` whose input/output descriptors drive the codec
and the schema synthesizer.  No generated stubs are involved: descriptors
are fetched with ``grpc_reflection``'s ``ProtoReflectionDescriptorDatabase``
into a private ``DescriptorPool`` per discovery.

Failures raise a :class:`~grpc_call.errors.SetupError` subclass whose
``discovery`` attribute carries whatever was resolved before the failure
(the opened channel and the catalogs), so the caller can publish partial
catalogs and release the channel later.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field, replace
from typing import Final

import grpc
from google.protobuf.descriptor import Descriptor, MethodDescriptor, ServiceDescriptor
from google.protobuf.descriptor_pool import DescriptorPool
from grpc_reflection.v1alpha.proto_reflection_descriptor_database import ProtoReflectionDescriptorDatabase

from grpc_call._debug import fmt_descriptor, wire_channel_logger, wire_reflection_logger
from grpc_call.errors import ConfigurationError, DiscoveryError, ResolutionError, SetupError

__all__ = [
    "REFLECTION_SERVICE_NAMES",
    "ChannelFactory",
    "Discovery",
    "Endpoint",
    "MethodSignature",
    "ReflectionSession",
    "apply_endpoint",
    "open_channel",
    "reflection_session",
]

_logger = logging.getLogger("grpc_call.discovery")

REFLECTION_SERVICE_NAMES: Final[frozenset[str]] = frozenset(
    {
        "grpc.reflection.v1alpha.ServerReflection",
        "grpc.reflection.v1.ServerReflection",
    }
)
"""Reflection's own services, never offered for selection."""

_KEEPALIVE_OPTIONS: Final[tuple[tuple[str, int], ...]] = (
    ("grpc.keepalive_time_ms", 10_000),
    ("grpc.keepalive_timeout_ms", 5_000),
    ("grpc.keepalive_permit_without_calls", 1),
    ("grpc.http2.max_pings_without_data", 0),
)


# ---------------------------------------------------------------------------
# Endpoint + channel
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Endpoint:
    """Where and how to connect.

    Attributes:
        address: ``host:port`` target (any gRPC target URI is accepted).
        insecure: Plaintext when ``True``; TLS with system roots otherwise.
        keep_alive: Send HTTP/2 keepalive pings, even while idle.

    """

    address: str
    insecure: bool = False
    keep_alive: bool = False

    def channel_options(self) -> list[tuple[str, int]]:
        """gRPC channel options implied by this endpoint."""
        return list(_KEEPALIVE_OPTIONS) if self.keep_alive else []


ChannelFactory = Callable[[Endpoint], grpc.Channel]
"""Opens a channel for an endpoint; injectable for tests and custom credentials."""


def open_channel(endpoint: Endpoint) -> grpc.Channel:
    """Open a channel to *endpoint* (plaintext or TLS per its flag).

    Channels connect lazily; connection problems surface on first use.
    """
    options = endpoint.channel_options()
    if wire_channel_logger.isEnabledFor(logging.DEBUG):
        wire_channel_logger.debug(
            "open_channel: address=%s insecure=%s keep_alive=%s",
            endpoint.address,
            endpoint.insecure,
            endpoint.keep_alive,
        )
    if endpoint.insecure:
        return grpc.insecure_channel(endpoint.address, options=options)
    return grpc.secure_channel(endpoint.address, grpc.ssl_channel_credentials(), options=options)


# ---------------------------------------------------------------------------
# MethodSignature + Discovery
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MethodSignature:
    """A resolved method: its full path and input/output descriptors.

    Equality compares names only, so signatures resolved by two
    discoveries of an unchanged server compare equal even though their
    descriptors come from different pools.

    Attributes:
        service: Fully qualified service name.
        method: Method short name.
        input_type: Full name of the request message.
        output_type: Full name of the response message.
        input: Request message descriptor.
        output: Response message descriptor.
        descriptor: The method descriptor itself.

    """

    service: str
    method: str
    input_type: str
    output_type: str
    input: Descriptor = field(compare=False, repr=False)
    output: Descriptor = field(compare=False, repr=False)
    descriptor: MethodDescriptor = field(compare=False, repr=False)

    @classmethod
    def from_descriptor(cls, service: str, descriptor: MethodDescriptor) -> MethodSignature:
        """Build a signature from a method descriptor of *service*."""
        return cls(
            service=service,
            method=descriptor.name,
            input_type=descriptor.input_type.full_name,
            output_type=descriptor.output_type.full_name,
            input=descriptor.input_type,
            output=descriptor.output_type,
            descriptor=descriptor,
        )

    @property
    def path(self) -> str:
        """Wire path of the method, ``/<service>/<method>``."""
        return f"/{self.service}/{self.method}"


@dataclass(frozen=True)
class Discovery:
    """Outcome (possibly partial) of one ``apply_endpoint()`` run.

    Attributes:
        endpoint: The endpoint that was applied.
        channel: The channel opened for it; owned by the caller.
        services: Service catalog, sorted, without reflection services.
        methods: Methods of the selected service in declaration order.
        signature: The resolved method, or ``None``.

    """

    endpoint: Endpoint
    channel: grpc.Channel = field(compare=False, repr=False)
    services: tuple[str, ...] = ()
    methods: tuple[str, ...] = ()
    signature: MethodSignature | None = None


# ---------------------------------------------------------------------------
# Reflection session
# ---------------------------------------------------------------------------


class ReflectionSession:
    """Reflection client bound to one channel for one discovery.

    Descriptors returned by the session stay valid after ``close()``;
    only further reflection lookups are refused.
    """

    __slots__ = ("_db", "_pool")

    def __init__(self, channel: grpc.Channel) -> None:
        """Initialize a reflection database and a private descriptor pool on *channel*."""
        self._db: ProtoReflectionDescriptorDatabase | None = ProtoReflectionDescriptorDatabase(channel)
        self._pool: DescriptorPool | None = DescriptorPool(self._db)

    def _require_open(self) -> tuple[ProtoReflectionDescriptorDatabase, DescriptorPool]:
        if self._db is None or self._pool is None:
            raise RuntimeError("reflection session is closed")
        return self._db, self._pool

    def list_services(self) -> list[str]:
        """List every service name the server reports, reflection included."""
        db, _ = self._require_open()
        names = list(db.get_services())
        if wire_reflection_logger.isEnabledFor(logging.DEBUG):
            wire_reflection_logger.debug("list_services: %s", names)
        return names

    def find_service(self, full_name: str) -> ServiceDescriptor:
        """Resolve the file containing *full_name* and return the service by short name.

        Raises:
            KeyError: If the server cannot provide the symbol's file or the
                file does not declare the service.

        """
        _, pool = self._require_open()
        file_desc = pool.FindFileContainingSymbol(full_name)
        short_name = full_name.rsplit(".", 1)[-1]
        service = file_desc.services_by_name[short_name]
        if wire_reflection_logger.isEnabledFor(logging.DEBUG):
            wire_reflection_logger.debug(
                "find_service: %s in %s, methods=%s",
                full_name,
                file_desc.name,
                [m.name for m in service.methods],
            )
        return service

    def close(self) -> None:
        """Drop the reflection client; idempotent."""
        self._db = None
        self._pool = None


@contextlib.contextmanager
def reflection_session(channel: grpc.Channel) -> Iterator[ReflectionSession]:
    """Open a reflection session scoped to the ``with`` block."""
    session = ReflectionSession(channel)
    try:
        yield session
    finally:
        session.close()


# ---------------------------------------------------------------------------
# apply_endpoint
# ---------------------------------------------------------------------------


def apply_endpoint(
    endpoint: Endpoint,
    service: str,
    method: str,
    *,
    channel_factory: ChannelFactory = open_channel,
) -> Discovery:
    """Connect to *endpoint*, discover its catalog, and resolve *service*/*method*.

    Args:
        endpoint: Address and transport flags.
        service: Selected fully qualified service name (may be empty).
        method: Selected method short name (may be empty).
        channel_factory: Opens the channel; defaults to ``open_channel``.

    Returns:
        A ``Discovery`` holding the new channel, both catalogs and the
        signature.  The signature is ``None`` when the service declares no
        methods.

    Raises:
        ConfigurationError: Empty address (no connection attempted), or no
            service/method selected.
        DiscoveryError: Listing failed, no services, or unknown service.
        ResolutionError: Descriptor unavailable, unknown or streaming method.

    """
    if not endpoint.address:
        raise ConfigurationError("empty address")

    channel = channel_factory(endpoint)
    try:
        return _discover(Discovery(endpoint=endpoint, channel=channel), service, method)
    except SetupError:
        # The partial discovery carries the channel to the caller
        raise
    except BaseException:
        channel.close()
        raise


def _discover(result: Discovery, service: str, method: str) -> Discovery:
    endpoint = result.endpoint
    with reflection_session(result.channel) as session:
        try:
            reported = session.list_services()
        except (grpc.RpcError, KeyError) as exc:
            raise DiscoveryError(f"reflection listing failed: {_describe_rpc_error(exc)}", discovery=result) from exc

        services = tuple(sorted(name for name in reported if name not in REFLECTION_SERVICE_NAMES))
        if not services:
            raise DiscoveryError("no services discovered", discovery=result)
        result = replace(result, services=services)
        _logger.debug("Discovered %d services at %s", len(services), endpoint.address)

        if not service:
            raise ConfigurationError("select a service", discovery=result)
        if service not in services:
            raise DiscoveryError(f"selected service {service} not found", discovery=result)

        try:
            service_desc = session.find_service(service)
        except (KeyError, TypeError, grpc.RpcError) as exc:
            raise ResolutionError(
                f"descriptor unavailable for {service}: {_describe_rpc_error(exc)}", discovery=result
            ) from exc

    method_descs = list(service_desc.methods)
    result = replace(result, methods=tuple(m.name for m in method_descs))

    if not method:
        raise ConfigurationError("select a method", discovery=result)
    if not method_descs:
        return result

    matched = next((m for m in method_descs if m.name == method), None)
    if matched is None:
        raise ResolutionError("selected method description not found", discovery=result)
    if getattr(matched, "client_streaming", False) or getattr(matched, "server_streaming", False):
        raise ResolutionError(f"selected method {method} is streaming; only unary methods are supported", discovery=result)

    signature = MethodSignature.from_descriptor(service, matched)
    if wire_reflection_logger.isEnabledFor(logging.DEBUG):
        wire_reflection_logger.debug(
            "resolved %s: input=%s output=%s",
            signature.path,
            fmt_descriptor(signature.input),
            fmt_descriptor(signature.output),
        )
    return replace(result, signature=signature)


def _describe_rpc_error(exc: BaseException) -> str:
    if isinstance(exc, grpc.RpcError) and callable(getattr(exc, "code", None)):
        return f"{exc.code().name}: {exc.details()}"
    return str(exc)

# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""The ``grpc_call`` graph component.

Orchestrates discovery, schema synthesis and the dynamic codec behind a
small state machine:

- **UNCONFIGURED**: no endpoint applied (initial state, after ``close()``,
  or after a configuration event that failed before connecting).
- **DISCOVERING**: a configuration event is being applied.  Readers keep
  using the last published snapshot until the new one is complete.
- **READY**: a method signature is resolved; requests are accepted.
- **DEGRADED**: catalogs are (possibly partially) known but no signature
  is resolved; requests fail with "no method descriptor configured".

Every configuration event re-runs discovery in full and publishes one
immutable :class:`ResolvedConfiguration`.  The previously held channel is
closed as soon as the new snapshot is published.

The host constructs the component, feeds it messages through
:meth:`GrpcCallComponent.handle`, and receives output events through the
``emit`` callback it passes in::

    component = GrpcCallComponent()
    component.handle(SETTINGS_PORT, {"address": "localhost:50051", "insecure": True,
                                     "service": "helloworld.Greeter", "method": "SayHello"}, emit)
    component.handle(REQUEST_PORT, {"context": "42", "request": {"name": "Ada"}}, emit)
    # emit("response", Response(context="42", response=...))
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import TracebackType
from typing import Any, Final, Literal, Protocol

import grpc

from grpc_call.choice import ChoiceValue
from grpc_call.codec import DynamicPayload, encode, invoke
from grpc_call.context import CallContext
from grpc_call.discovery import ChannelFactory, Discovery, Endpoint, MethodSignature, apply_endpoint, open_channel
from grpc_call.errors import CodecError, ConfigurationError, InvocationError, SetupError

__all__ = [
    "COMPONENT_NAME",
    "ERROR_PORT",
    "REQUEST_PORT",
    "RESPONSE_PORT",
    "SETTINGS_PORT",
    "ComponentInfo",
    "ComponentState",
    "DispatchHook",
    "Emit",
    "ErrorEvent",
    "GrpcCallComponent",
    "Port",
    "Position",
    "Request",
    "ResolvedConfiguration",
    "Response",
    "Settings",
]

_logger = logging.getLogger("grpc_call.component")
_access_logger = logging.getLogger("grpc_call.access")

COMPONENT_NAME: Final = "grpc_call"
SETTINGS_PORT: Final = "_settings"
REQUEST_PORT: Final = "request"
RESPONSE_PORT: Final = "response"
ERROR_PORT: Final = "error"

Emit = Callable[[str, Any], Any]
"""Host callback publishing an event on a named output port."""


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def _expect(data: Mapping[str, Any], key: str, kind: type, default: Any) -> Any:
    value = data.get(key, default)
    if value is None:
        return default
    if not isinstance(value, kind):
        raise ConfigurationError(f"invalid settings: {key} must be {kind.__name__}, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class Settings:
    """Component settings as edited in the host's editor.

    ``service`` and ``method`` are the plain selected values; the options
    offered for them only exist in :meth:`json_schema`.

    Attributes:
        address: gRPC server address (required for a successful configuration).
        insecure: Plaintext connection instead of TLS.
        keep_alive: Enable HTTP/2 keepalive pings.
        service: Selected fully qualified service name.
        method: Selected method name.
        enable_error_port: Divert request failures to the error port.

    """

    address: str = ""
    insecure: bool = False
    keep_alive: bool = False
    service: str = ""
    method: str = ""
    enable_error_port: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Settings:
        """Parse the editor's JSON form (camelCase keys).

        Raises:
            ConfigurationError: If *data* is not a mapping or a field has the
                wrong type.

        """
        if not isinstance(data, Mapping):
            raise ConfigurationError("invalid settings")
        try:
            service = ChoiceValue.from_json(data.get("service")).value
            method = ChoiceValue.from_json(data.get("method")).value
        except TypeError as exc:
            raise ConfigurationError(f"invalid settings: {exc}") from exc
        return cls(
            address=_expect(data, "address", str, ""),
            insecure=_expect(data, "insecure", bool, False),
            keep_alive=_expect(data, "keepAlive", bool, False),
            service=service,
            method=method,
            enable_error_port=_expect(data, "enableErrorPort", bool, False),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the editor's JSON form; choices as bare strings."""
        return {
            "address": self.address,
            "insecure": self.insecure,
            "keepAlive": self.keep_alive,
            "service": self.service,
            "method": self.method,
            "enableErrorPort": self.enable_error_port,
        }

    def endpoint(self) -> Endpoint:
        """The endpoint these settings describe."""
        return Endpoint(address=self.address, insecure=self.insecure, keep_alive=self.keep_alive)

    def json_schema(self, services: tuple[str, ...] = (), methods: tuple[str, ...] = ()) -> dict[str, Any]:
        """JSON Schema of the settings, with the currently offered choices."""
        return {
            "type": "object",
            "required": ["address", "enableErrorPort"],
            "properties": {
                "address": {"type": "string", "title": "gRPC server address", "tab": "Connect"},
                "insecure": {"type": "boolean", "title": "Insecure mode", "default": False, "tab": "Connect"},
                "keepAlive": {"type": "boolean", "title": "Keep Alive", "default": False, "tab": "Connect"},
                "service": {
                    **ChoiceValue.of(self.service, services).json_schema(),
                    "title": "Service",
                    "description": "Name of the service",
                    "tab": "Request",
                },
                "method": {
                    **ChoiceValue.of(self.method, methods).json_schema(),
                    "title": "Method",
                    "description": "Name of the gRPC method",
                    "tab": "Request",
                },
                "enableErrorPort": {
                    "type": "boolean",
                    "title": "Enable Error Port",
                    "description": "If error happen, error port will emit an error message",
                    "tab": "General",
                },
            },
        }


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Request:
    """Inbound request event; ``context`` is passed through untouched."""

    context: Any = None
    request: DynamicPayload = field(default_factory=DynamicPayload)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Request:
        """Parse ``{"context": ..., "request": <json>}``."""
        if not isinstance(data, Mapping):
            raise CodecError("invalid input")
        return cls(context=data.get("context"), request=DynamicPayload(value=data.get("request")))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the event's JSON form."""
        return {"context": self.context, "request": self.request.to_json()}


@dataclass(frozen=True)
class Response:
    """Outbound response event."""

    context: Any = None
    response: DynamicPayload = field(default_factory=DynamicPayload)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the event's JSON form (``response`` is ``{}`` when empty)."""
        return {"context": self.context, "response": self.response.to_json()}


@dataclass(frozen=True)
class ErrorEvent:
    """Outbound error event, emitted only when the error port is enabled."""

    context: Any = None
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the event's JSON form."""
        return {"context": self.context, "error": self.error}


def _context_schema() -> dict[str, Any]:
    return {
        "title": "Context",
        "description": "Arbitrary message to be send alongside with encoded message",
        "configurable": True,
    }


# ---------------------------------------------------------------------------
# Ports + component info
# ---------------------------------------------------------------------------


class Position(Enum):
    """Where the editor draws a port."""

    TOP = "top"
    RIGHT = "right"
    BOTTOM = "bottom"
    LEFT = "left"


@dataclass(frozen=True)
class Port:
    """A declared input or output port.

    Attributes:
        name: Port name used in ``handle()`` and ``emit``.
        label: Human-readable label.
        position: Editor placement.
        source: ``True`` for output ports.
        configuration: Example/default message for the port.
        schema: JSON Schema of the port's messages.

    """

    name: str
    label: str
    position: Position = Position.LEFT
    source: bool = False
    configuration: Any = None
    schema: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the host's registration call."""
        config = self.configuration.to_dict() if hasattr(self.configuration, "to_dict") else self.configuration
        return {
            "name": self.name,
            "label": self.label,
            "position": self.position.value,
            "source": self.source,
            "configuration": config,
            "schema": dict(self.schema),
        }


@dataclass(frozen=True)
class ComponentInfo:
    """Static metadata the host shows for the component."""

    name: str
    description: str
    info: str
    tags: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class ComponentState(Enum):
    """Lifecycle state of the component."""

    UNCONFIGURED = "unconfigured"
    DISCOVERING = "discovering"
    READY = "ready"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class ResolvedConfiguration:
    """Immutable snapshot published by each configuration event.

    Attributes:
        settings: The settings that were applied.
        discovery: What discovery resolved, or ``None`` when nothing was
            connected.

    """

    settings: Settings = field(default_factory=Settings)
    discovery: Discovery | None = None

    @property
    def state(self) -> ComponentState:
        """READY with a signature, DEGRADED with only catalogs, else UNCONFIGURED."""
        if self.discovery is None:
            return ComponentState.UNCONFIGURED
        if self.discovery.signature is None:
            return ComponentState.DEGRADED
        return ComponentState.READY

    @property
    def channel(self) -> grpc.Channel | None:
        """The held channel, if any."""
        return self.discovery.channel if self.discovery is not None else None

    @property
    def services(self) -> tuple[str, ...]:
        """Current service catalog."""
        return self.discovery.services if self.discovery is not None else ()

    @property
    def methods(self) -> tuple[str, ...]:
        """Current method catalog."""
        return self.discovery.methods if self.discovery is not None else ()

    @property
    def signature(self) -> MethodSignature | None:
        """Current method signature."""
        return self.discovery.signature if self.discovery is not None else None


_UNCONFIGURED: Final = ResolvedConfiguration()


# ---------------------------------------------------------------------------
# Dispatch hook protocol
# ---------------------------------------------------------------------------

type HookToken = object
"""Opaque token returned by ``DispatchHook.on_dispatch_start``."""


class DispatchHook(Protocol):
    """Observability hook called around each request (see ``grpc_call.otel``)."""

    def on_dispatch_start(self, signature: MethodSignature | None, ctx: CallContext) -> HookToken:
        """Start observability for a request and return an opaque token."""
        ...

    def on_dispatch_end(self, token: HookToken, signature: MethodSignature | None, error: BaseException | None) -> None:
        """Finalize observability after the request (success or failure)."""
        ...


def _emit_access_log(
    signature: MethodSignature | None,
    ctx: CallContext,
    duration_ms: float,
    status: Literal["ok", "error"],
    error_type: str = "",
) -> None:
    """Emit a structured access log record for a completed request."""
    if not _access_logger.isEnabledFor(logging.INFO):
        return
    service = signature.service if signature is not None else ""
    method = signature.method if signature is not None else ""
    _access_logger.info(
        "%s/%s %s",
        service,
        method,
        status,
        extra={
            "service": service,
            "method": method,
            "request_id": ctx.request_id,
            "duration_ms": round(duration_ms, 2),
            "status": status,
            "error_type": error_type,
        },
    )


# ---------------------------------------------------------------------------
# GrpcCallComponent
# ---------------------------------------------------------------------------


class GrpcCallComponent:
    """Calls a reflection-enabled gRPC service chosen at runtime.

    Configuration events are serialized by an internal lock; request
    handling never blocks on them and always sees a complete snapshot.
    """

    def __init__(self, *, channel_factory: ChannelFactory = open_channel) -> None:
        """Initialize unconfigured.

        Args:
            channel_factory: Opens channels for endpoints; defaults to
                plaintext/TLS channels per the ``insecure`` setting.

        """
        self._channel_factory = channel_factory
        self._resolved: ResolvedConfiguration = _UNCONFIGURED
        self._configure_lock = threading.Lock()
        self._publish_lock = threading.Lock()
        self._discovering = False
        self._dispatch_hook: DispatchHook | None = None

    # -- state --------------------------------------------------------------

    @property
    def resolved(self) -> ResolvedConfiguration:
        """The currently published snapshot."""
        return self._resolved

    @property
    def state(self) -> ComponentState:
        """Current lifecycle state."""
        if self._discovering:
            return ComponentState.DISCOVERING
        return self._resolved.state

    @property
    def settings(self) -> Settings:
        """The most recently applied settings."""
        return self._resolved.settings

    def info(self) -> ComponentInfo:
        """Static metadata for the host."""
        return ComponentInfo(
            name=COMPONENT_NAME,
            description="gRPC request",
            info="Sends grpc request",
            tags=("grpc", "client"),
        )

    # -- message entry point ------------------------------------------------

    def handle(self, port: str, message: Any, emit: Emit, ctx: CallContext | None = None) -> Any:
        """Handle a message arriving on *port*.

        Args:
            port: ``SETTINGS_PORT`` or ``REQUEST_PORT``.
            message: A ``Settings``/``Request`` or its JSON (dict) form.
            emit: Host callback for output events.
            ctx: Per-request context (requests only).

        Returns:
            Whatever *emit* returned for the emitted event, or ``None`` for
            settings.

        Raises:
            ValueError: If *port* is not an input port of this component.

        """
        if port == SETTINGS_PORT:
            settings = message if isinstance(message, Settings) else Settings.from_dict(message)
            self.apply_settings(settings)
            return None
        if port == REQUEST_PORT:
            request = message if isinstance(message, Request) else Request.from_dict(message)
            return self.handle_request(request, emit, ctx)
        raise ValueError(f"port {port} is not supported")

    # -- configuration ------------------------------------------------------

    def apply_settings(self, settings: Settings) -> ResolvedConfiguration:
        """Re-run discovery for *settings* and publish the result.

        A partial snapshot (catalogs without signature) is still published
        when discovery fails part-way, so the editor can offer choices.

        Returns:
            The published snapshot.

        Raises:
            SetupError: ``ConfigurationError``, ``DiscoveryError`` or
                ``ResolutionError`` describing why no signature resolved.

        """
        with self._configure_lock:
            self._discovering = True
            try:
                try:
                    discovery = apply_endpoint(
                        settings.endpoint(),
                        settings.service,
                        settings.method,
                        channel_factory=self._channel_factory,
                    )
                except SetupError as exc:
                    resolved = ResolvedConfiguration(settings=settings, discovery=exc.discovery)
                    self._publish(resolved)
                    _logger.warning(
                        "Configuration of %s failed: %s",
                        settings.address or "<empty address>",
                        exc,
                        extra={"state": resolved.state.value, "error_type": type(exc).__name__},
                    )
                    raise
                resolved = ResolvedConfiguration(settings=settings, discovery=discovery)
                self._publish(resolved)
                _logger.info(
                    "Configured %s: %d services, %d methods, state=%s",
                    settings.address,
                    len(resolved.services),
                    len(resolved.methods),
                    resolved.state.value,
                )
                return resolved
            finally:
                self._discovering = False

    def _publish(self, resolved: ResolvedConfiguration) -> None:
        """Swap in *resolved* and release the previous channel."""
        with self._publish_lock:
            previous, self._resolved = self._resolved, resolved
        old = previous.channel
        if old is not None and old is not resolved.channel:
            _logger.debug("Releasing channel to %s", previous.settings.address)
            old.close()

    def close(self) -> None:
        """Release the held channel and return to UNCONFIGURED."""
        with self._configure_lock:
            self._publish(ResolvedConfiguration(settings=self._resolved.settings))

    def __enter__(self) -> GrpcCallComponent:
        """Enter the context manager."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close on exit."""
        self.close()

    # -- requests -----------------------------------------------------------

    def handle_request(self, request: Request, emit: Emit, ctx: CallContext | None = None) -> Any:
        """Encode, invoke, decode, and emit a response (or an error event).

        Returns:
            What *emit* returned.

        Raises:
            ConfigurationError: No signature resolved and the error port is
                disabled.
            CodecError: Encoding failed and the error port is disabled.
            InvocationError: The call failed and the error port is disabled.

        """
        resolved = self._resolved
        signature = resolved.signature
        ctx = ctx or CallContext()
        if signature is not None:
            ctx.bind(signature.service, signature.method)

        start = time.monotonic()
        hook = self._dispatch_hook
        hook_token: HookToken = None
        if hook is not None:
            try:
                hook_token = hook.on_dispatch_start(signature, ctx)
            except Exception:
                _logger.debug("Dispatch hook start failed", exc_info=True)
                hook = None

        error: ConfigurationError | CodecError | InvocationError | None = None
        failure: BaseException | None = None
        payload: DynamicPayload | None = None
        try:
            channel = resolved.channel
            if signature is None or channel is None:
                raise ConfigurationError("no method descriptor configured")
            message = encode(request.request.value, signature.input)
            reply = invoke(channel, signature, message, ctx)
            payload = DynamicPayload.from_message(reply)
        except (ConfigurationError, CodecError, InvocationError) as exc:
            error = failure = exc
        except BaseException as exc:
            # Unexpected failures propagate unchanged
            failure = exc
            raise
        finally:
            _emit_access_log(
                signature,
                ctx,
                (time.monotonic() - start) * 1000,
                "error" if failure is not None else "ok",
                type(failure).__name__ if failure is not None else "",
            )
            if hook is not None:
                try:
                    hook.on_dispatch_end(hook_token, signature, failure)
                except Exception:
                    _logger.debug("Dispatch hook end failed", exc_info=True)

        if error is not None:
            if not resolved.settings.enable_error_port:
                raise error
            ctx.logger.info("Request failed, emitting on %s port: %s", ERROR_PORT, error)
            return emit(ERROR_PORT, ErrorEvent(context=request.context, error=str(error)))

        assert payload is not None
        return emit(RESPONSE_PORT, Response(context=request.context, response=payload))

    # -- control surface ----------------------------------------------------

    def ports(self) -> list[Port]:
        """Declared ports with schemas mirroring the current snapshot."""
        resolved = self._resolved
        settings = resolved.settings
        signature = resolved.signature
        request_payload = DynamicPayload(descriptor=signature.input if signature is not None else None)
        response_payload = DynamicPayload(descriptor=signature.output if signature is not None else None)

        ports = [
            Port(
                name=REQUEST_PORT,
                label="Request",
                position=Position.LEFT,
                configuration=Request(request=request_payload),
                schema={
                    "type": "object",
                    "required": ["request"],
                    "properties": {
                        "context": _context_schema(),
                        "request": {**request_payload.schema().to_json_schema(), "title": "Request message"},
                    },
                },
            ),
            Port(
                name=RESPONSE_PORT,
                label="Response",
                position=Position.RIGHT,
                source=True,
                configuration=Response(response=response_payload),
                schema={
                    "type": "object",
                    "properties": {
                        "context": _context_schema(),
                        "response": response_payload.schema().to_json_schema(),
                    },
                },
            ),
            Port(
                name=SETTINGS_PORT,
                label="Settings",
                configuration=settings,
                schema=settings.json_schema(resolved.services, resolved.methods),
            ),
        ]
        if not settings.enable_error_port:
            return ports

        ports.append(
            Port(
                name=ERROR_PORT,
                label="Error",
                position=Position.BOTTOM,
                source=True,
                configuration=ErrorEvent(),
                schema={
                    "type": "object",
                    "properties": {
                        "context": _context_schema(),
                        "error": {"type": "string"},
                    },
                },
            )
        )
        return ports

"""Error taxonomy for the gRPC call component.

Setup errors (``ConfigurationError``, ``DiscoveryError``,
``ResolutionError``) fail a configuration event and are never diverted to
the error port.  They may carry the partial :class:`~grpc_call.discovery.Discovery`
produced before the failure so the editor can still populate selectors.

Request-time errors (``CodecError``, ``InvocationError``) fail a request,
or are emitted on the error port when it is enabled.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import grpc

    from grpc_call.discovery import Discovery

__all__ = [
    "CodecError",
    "ConfigurationError",
    "DiscoveryError",
    "GrpcCallError",
    "InvocationError",
    "ResolutionError",
    "SetupError",
]


class GrpcCallError(Exception):
    """Base class for all errors raised by ``grpc_call``."""


class SetupError(GrpcCallError):
    """Raised while applying a configuration event.

    Attributes:
        discovery: Catalogs resolved before the failure, or ``None`` when
            nothing was resolved (e.g. the address was empty).

    """

    def __init__(self, message: str, *, discovery: Discovery | None = None) -> None:
        """Initialize with a message and the optional partial discovery."""
        super().__init__(message)
        self.discovery = discovery


class ConfigurationError(SetupError):
    """Settings are incomplete: empty address, nothing selected, no signature."""


class DiscoveryError(SetupError):
    """Reflection listing failed, returned no services, or lacks the selected service."""


class ResolutionError(SetupError):
    """The selected method or its descriptors could not be resolved."""


class CodecError(GrpcCallError):
    """JSON could not be converted to or from a protobuf message."""


class InvocationError(GrpcCallError):
    """The remote call failed, was cancelled, or exceeded its deadline.

    Attributes:
        code: The gRPC status code, when the failure carried one.
        details: The status details reported by the transport or server.

    """

    def __init__(self, message: str, *, code: grpc.StatusCode | None = None, details: str = "") -> None:
        """Initialize with a message and the gRPC status."""
        super().__init__(message)
        self.code = code
        self.details = details

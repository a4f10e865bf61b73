# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Call any reflection-enabled gRPC service with JSON, as a graph component."""

import contextlib
import logging

from grpc_call.choice import ChoiceValue
from grpc_call.codec import DynamicPayload, decode, encode, invoke, message_class
from grpc_call.component import (
    COMPONENT_NAME,
    ERROR_PORT,
    REQUEST_PORT,
    RESPONSE_PORT,
    SETTINGS_PORT,
    ComponentInfo,
    ComponentState,
    DispatchHook,
    Emit,
    ErrorEvent,
    GrpcCallComponent,
    Port,
    Position,
    Request,
    ResolvedConfiguration,
    Response,
    Settings,
)
from grpc_call.context import CallContext
from grpc_call.discovery import (
    REFLECTION_SERVICE_NAMES,
    Discovery,
    Endpoint,
    MethodSignature,
    ReflectionSession,
    apply_endpoint,
    open_channel,
    reflection_session,
)
from grpc_call.errors import (
    CodecError,
    ConfigurationError,
    DiscoveryError,
    GrpcCallError,
    InvocationError,
    ResolutionError,
    SetupError,
)
from grpc_call.schema import SchemaKind, SchemaNode, descriptor_to_schema, payload_schema

# OpenTelemetry instrumentation (optional, requires `pip install grpc-call[otel]`)
with contextlib.suppress(ImportError):
    from grpc_call.otel import OtelConfig, instrument_component

__all__ = [
    # Component
    "GrpcCallComponent",
    "ComponentInfo",
    "ComponentState",
    "ResolvedConfiguration",
    "Settings",
    "Port",
    "Position",
    "Emit",
    "DispatchHook",
    "COMPONENT_NAME",
    "SETTINGS_PORT",
    "REQUEST_PORT",
    "RESPONSE_PORT",
    "ERROR_PORT",
    # Envelopes
    "Request",
    "Response",
    "ErrorEvent",
    "DynamicPayload",
    # Discovery
    "Endpoint",
    "Discovery",
    "MethodSignature",
    "ReflectionSession",
    "REFLECTION_SERVICE_NAMES",
    "apply_endpoint",
    "open_channel",
    "reflection_session",
    # Codec
    "CallContext",
    "encode",
    "decode",
    "invoke",
    "message_class",
    # Schemas
    "ChoiceValue",
    "SchemaKind",
    "SchemaNode",
    "descriptor_to_schema",
    "payload_schema",
    # Errors
    "GrpcCallError",
    "SetupError",
    "ConfigurationError",
    "DiscoveryError",
    "ResolutionError",
    "CodecError",
    "InvocationError",
]

if "OtelConfig" in dir():
    __all__ += ["OtelConfig", "instrument_component"]

# Attach NullHandler to the root logger so library users don't get
# "No handler found" warnings.  Must come after all imports so the
# logger hierarchy is fully populated.
logging.getLogger("grpc_call").addHandler(logging.NullHandler())

"""Dynamic JSON <-> protobuf codec and unary invocation.

Messages are built purely from runtime descriptors: the message class for
a descriptor comes from ``message_factory.GetMessageClass`` and JSON is
converted with the canonical proto-JSON rules of
``google.protobuf.json_format`` (JSON field names, unknown fields
rejected, type mismatches rejected, absent fields left at their proto3
defaults).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import grpc
from google.protobuf import json_format, message_factory
from google.protobuf.descriptor import Descriptor
from google.protobuf.message import Message

from grpc_call._debug import fmt_message, fmt_metadata, wire_request_logger, wire_response_logger
from grpc_call.context import CallContext
from grpc_call.errors import CodecError, ConfigurationError, InvocationError
from grpc_call.schema import SchemaNode, payload_schema

if TYPE_CHECKING:
    from grpc_call.discovery import MethodSignature

__all__ = [
    "DynamicPayload",
    "decode",
    "encode",
    "invoke",
    "message_class",
]


def message_class(descriptor: Descriptor) -> type[Message]:
    """Return the dynamic message class for *descriptor*."""
    return message_factory.GetMessageClass(descriptor)


def _accepts_non_object(descriptor: Descriptor) -> bool:
    # Well-known types such as StringValue or ListValue have scalar/array JSON forms
    return descriptor.full_name.startswith("google.protobuf.")


# ---------------------------------------------------------------------------
# Encode / decode
# ---------------------------------------------------------------------------


def encode(value: Any, descriptor: Descriptor | None) -> Message:
    """Convert an arbitrary JSON value into a message of *descriptor*'s type.

    ``None`` encodes as the empty message.

    Args:
        value: Decoded JSON (dicts, lists, str, int, float, bool, None).
        descriptor: Input message descriptor of the resolved method.

    Returns:
        A dynamic message conforming to *descriptor*.

    Raises:
        ConfigurationError: If *descriptor* is ``None``.
        CodecError: If *value* is not JSON-serializable or does not match
            the message shape.

    """
    if descriptor is None:
        raise ConfigurationError("no method descriptor configured")
    if value is None:
        value = {}
    if not isinstance(value, dict) and not _accepts_non_object(descriptor):
        raise CodecError(f"proto unmarshal: expected a JSON object for {descriptor.full_name}, got {type(value).__name__}")
    try:
        text = json.dumps(value)
    except (TypeError, ValueError) as exc:
        raise CodecError(f"request is not JSON serializable: {exc}") from exc

    message = message_class(descriptor)()
    try:
        # Any payloads resolve their @type against the reflected pool
        json_format.Parse(text, message, descriptor_pool=descriptor.file.pool)
    except (json_format.ParseError, TypeError, ValueError) as exc:
        raise CodecError(f"proto unmarshal: {exc}") from exc
    return message


def decode(message: Message) -> bytes:
    """Serialize *message* to canonical proto-JSON bytes.

    Fields holding their default value are omitted, as proto-JSON does.

    Raises:
        CodecError: If the message cannot be rendered, e.g. an ``Any``
            packing a type unknown to the message's descriptor pool.

    """
    try:
        text = json_format.MessageToJson(message, indent=None, descriptor_pool=message.DESCRIPTOR.file.pool)
    except (json_format.Error, TypeError, ValueError) as exc:
        raise CodecError(f"proto marshal: {exc}") from exc
    return text.encode()


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------


def invoke(
    channel: grpc.Channel,
    signature: MethodSignature | None,
    message: Message,
    ctx: CallContext | None = None,
) -> Message:
    """Perform one blocking unary call.

    The call honours the context's timeout and metadata and is aborted by
    ``ctx.cancel()``.  No retry is attempted.

    Raises:
        ConfigurationError: If no signature is resolved.
        InvocationError: On any transport or status failure, including
            cancellation and deadline expiry.

    """
    if signature is None:
        raise ConfigurationError("no method descriptor configured")
    ctx = ctx or CallContext()
    if ctx.cancelled:
        raise InvocationError("rpc error: code = CANCELLED desc = context cancelled", code=grpc.StatusCode.CANCELLED)

    metadata = ctx.call_metadata()
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug(
            "invoke %s: %s metadata=%s timeout=%s",
            signature.path,
            fmt_message(message),
            fmt_metadata(metadata),
            ctx.timeout,
        )

    future: grpc.Future | None = None
    try:
        multicallable = channel.unary_unary(
            signature.path,
            request_serializer=message_class(signature.input).SerializeToString,
            response_deserializer=message_class(signature.output).FromString,
        )
        future = multicallable.future(message, timeout=ctx.timeout, metadata=metadata)
        ctx._attach(future)
        response: Message = future.result()
    except grpc.FutureCancelledError as exc:
        raise InvocationError(
            "rpc error: code = CANCELLED desc = context cancelled", code=grpc.StatusCode.CANCELLED
        ) from exc
    except grpc.RpcError as exc:
        code: grpc.StatusCode | None = exc.code() if callable(getattr(exc, "code", None)) else None
        details: str = (exc.details() if callable(getattr(exc, "details", None)) else None) or str(exc)
        code_name = code.name if code is not None else "UNKNOWN"
        if wire_response_logger.isEnabledFor(logging.DEBUG):
            wire_response_logger.debug("invoke %s failed: code=%s details=%r", signature.path, code_name, details)
        raise InvocationError(f"rpc error: code = {code_name} desc = {details}", code=code, details=details) from exc
    except ValueError as exc:
        # grpcio refuses new calls on a closed channel with ValueError
        if wire_response_logger.isEnabledFor(logging.DEBUG):
            wire_response_logger.debug("invoke %s refused: %s", signature.path, exc)
        raise InvocationError(
            f"rpc error: code = CANCELLED desc = {exc}", code=grpc.StatusCode.CANCELLED, details=str(exc)
        ) from exc
    finally:
        if future is not None:
            ctx._detach(future)

    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug("invoke %s: %s", signature.path, fmt_message(response))
    return response


# ---------------------------------------------------------------------------
# DynamicPayload
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DynamicPayload:
    """A request or response payload whose shape is only known at runtime.

    Holds either an as-yet-unencoded JSON value (inbound) or the canonical
    JSON bytes of an already-serialized message (outbound), plus the
    descriptor used to derive its schema.  Lives for a single request.

    Attributes:
        value: Inbound JSON value, or ``None``.
        raw: Outbound canonical JSON bytes, or empty.
        descriptor: Message descriptor for schema derivation, if resolved.

    """

    value: Any = None
    raw: bytes = b""
    descriptor: Descriptor | None = field(default=None, compare=False, repr=False)

    @classmethod
    def from_message(cls, message: Message) -> DynamicPayload:
        """Wrap a response message as an outbound payload."""
        return cls(raw=decode(message), descriptor=message.DESCRIPTOR)

    def to_json(self) -> Any:
        """Return the payload as decoded JSON (``{}`` when empty)."""
        if self.raw:
            return json.loads(self.raw)
        if self.value is not None:
            return self.value
        return {}

    def schema(self) -> SchemaNode:
        """Schema of the payload, defaulting to the held inbound value."""
        return payload_schema(self.descriptor, self.value)

"""Debug logging infrastructure for wire-level diagnostics.

Provides logger instances under the ``grpc_call.wire.*`` hierarchy and
formatting helpers for protobuf objects.  Enabling
``logging.getLogger("grpc_call.wire").setLevel(logging.DEBUG)`` shows
every reflection round-trip, request and response as it crosses the
channel.

All formatting helpers return ``str`` and never log directly.
They are designed to be called inside ``isEnabledFor`` guards so
there is zero overhead when debug logging is disabled.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from google.protobuf import text_format
from google.protobuf.descriptor import Descriptor
from google.protobuf.message import Message

# ---------------------------------------------------------------------------
# Logger hierarchy: grpc_call.wire.*
# ---------------------------------------------------------------------------

wire_reflection_logger = logging.getLogger("grpc_call.wire.reflection")
"""Reflection listing and descriptor resolution."""

wire_request_logger = logging.getLogger("grpc_call.wire.request")
"""Outgoing request messages."""

wire_response_logger = logging.getLogger("grpc_call.wire.response")
"""Incoming response messages and call status."""

wire_channel_logger = logging.getLogger("grpc_call.wire.channel")
"""Channel lifecycle (open, release)."""

# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

_MAX_VALUE_LEN = 80
"""Maximum length for individual values in fmt_message / fmt_metadata."""


def _truncate(text: str) -> str:
    if len(text) > _MAX_VALUE_LEN:
        return text[:_MAX_VALUE_LEN] + "..."
    return text


def fmt_descriptor(descriptor: Descriptor | None) -> str:
    """Format a message descriptor compactly.

    Returns:
        ``"helloworld.HelloRequest(name: 9)"`` (field name and proto type
        number) or ``"None"`` when absent.

    """
    if descriptor is None:
        return "None"
    fields = ", ".join(f"{f.name}: {f.type}" for f in descriptor.fields)
    return f"{descriptor.full_name}({fields})"


def fmt_message(message: Message) -> str:
    """Format a message as single-line text format, truncated.

    Returns:
        ``"HelloRequest{name: \\"Ada\\"}"``

    """
    body = text_format.MessageToString(message, as_one_line=True)
    return f"{message.DESCRIPTOR.name}{{{_truncate(body)}}}"


def fmt_metadata(metadata: Sequence[tuple[str, str | bytes]] | None) -> str:
    """Format call metadata compactly.

    Returns:
        ``"{x-request-id='abc'}"`` or ``"None"`` when metadata is absent.

    """
    if metadata is None:
        return "None"
    parts: list[str] = []
    for key, value in metadata:
        val = value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value
        parts.append(f"{key}={_truncate(val)!r}")
    return "{" + ", ".join(parts) + "}"

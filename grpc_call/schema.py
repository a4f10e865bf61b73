"""Structural schema synthesis from protobuf descriptors.

``descriptor_to_schema()`` walks a message descriptor and returns a
:class:`SchemaNode` tree.  Nodes are pure derived data, recomputed on
demand and rendered to JSON Schema with :meth:`SchemaNode.to_json_schema`
for the external editor.

Field kind mapping
------------------
- ``bool`` -> boolean
- ``string``, ``bytes`` -> string (bytes travel as base64 in proto-JSON)
- every 32/64-bit integer flavour -> integer
- ``float``, ``double`` -> number
- message -> object, recursing into its fields
- map -> object without declared properties
- enum -> null placeholder; enum values are not described yet
- repeated (non-map) -> array of the element schema

Property names are each field's proto-JSON name (``json_name``), which is
what the codec accepts and emits.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final

from google.protobuf.descriptor import Descriptor, FieldDescriptor

__all__ = [
    "SchemaKind",
    "SchemaNode",
    "descriptor_to_schema",
    "payload_schema",
]


class SchemaKind(Enum):
    """JSON Schema ``type`` values produced by the synthesizer."""

    NULL = "null"
    BOOLEAN = "boolean"
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    OBJECT = "object"
    ARRAY = "array"


class _NoDefault:
    """Marker type for nodes without a ``default``."""

    def __repr__(self) -> str:
        return "NO_DEFAULT"


NO_DEFAULT: Final = _NoDefault()


@dataclass(frozen=True)
class SchemaNode:
    """One node of a structural schema tree.

    Attributes:
        kind: The JSON type of the value.
        properties: Child schemas keyed by JSON field name (object kind).
        items: Element schema (array kind).
        default: Default value, or ``NO_DEFAULT``.
        enum: Allowed values; empty when unconstrained.
        shared: Visibility marker consumed by the editor.

    """

    kind: SchemaKind
    properties: Mapping[str, SchemaNode] = field(default_factory=dict)
    items: SchemaNode | None = None
    default: Any = NO_DEFAULT
    enum: tuple[str, ...] = ()
    shared: bool = False

    def to_json_schema(self) -> dict[str, Any]:
        """Render the node (and its children) as a JSON Schema dict."""
        out: dict[str, Any] = {"type": self.kind.value}
        if self.properties:
            out["properties"] = {name: child.to_json_schema() for name, child in self.properties.items()}
        if self.items is not None:
            out["items"] = self.items.to_json_schema()
        if self.default is not NO_DEFAULT:
            out["default"] = self.default
        if self.enum:
            out["enum"] = list(self.enum)
        if self.shared:
            out["shared"] = True
        return out


_SCALAR_KINDS: Final[Mapping[int, SchemaKind]] = {
    FieldDescriptor.TYPE_BOOL: SchemaKind.BOOLEAN,
    FieldDescriptor.TYPE_STRING: SchemaKind.STRING,
    FieldDescriptor.TYPE_BYTES: SchemaKind.STRING,
    FieldDescriptor.TYPE_INT32: SchemaKind.INTEGER,
    FieldDescriptor.TYPE_INT64: SchemaKind.INTEGER,
    FieldDescriptor.TYPE_UINT32: SchemaKind.INTEGER,
    FieldDescriptor.TYPE_UINT64: SchemaKind.INTEGER,
    FieldDescriptor.TYPE_SINT32: SchemaKind.INTEGER,
    FieldDescriptor.TYPE_SINT64: SchemaKind.INTEGER,
    FieldDescriptor.TYPE_FIXED32: SchemaKind.INTEGER,
    FieldDescriptor.TYPE_FIXED64: SchemaKind.INTEGER,
    FieldDescriptor.TYPE_SFIXED32: SchemaKind.INTEGER,
    FieldDescriptor.TYPE_SFIXED64: SchemaKind.INTEGER,
    FieldDescriptor.TYPE_FLOAT: SchemaKind.NUMBER,
    FieldDescriptor.TYPE_DOUBLE: SchemaKind.NUMBER,
}

# Well-known types with a dedicated proto-JSON representation.
_WELL_KNOWN_KINDS: Final[Mapping[str, SchemaKind]] = {
    "google.protobuf.Timestamp": SchemaKind.STRING,
    "google.protobuf.Duration": SchemaKind.STRING,
    "google.protobuf.FieldMask": SchemaKind.STRING,
    "google.protobuf.Struct": SchemaKind.OBJECT,
    "google.protobuf.BoolValue": SchemaKind.BOOLEAN,
    "google.protobuf.StringValue": SchemaKind.STRING,
    "google.protobuf.BytesValue": SchemaKind.STRING,
    "google.protobuf.Int32Value": SchemaKind.INTEGER,
    "google.protobuf.Int64Value": SchemaKind.INTEGER,
    "google.protobuf.UInt32Value": SchemaKind.INTEGER,
    "google.protobuf.UInt64Value": SchemaKind.INTEGER,
    "google.protobuf.FloatValue": SchemaKind.NUMBER,
    "google.protobuf.DoubleValue": SchemaKind.NUMBER,
}


def _is_repeated(fd: FieldDescriptor) -> bool:
    repeated = getattr(fd, "is_repeated", None)
    if repeated is None:
        return bool(fd.label == FieldDescriptor.LABEL_REPEATED)
    return bool(repeated)


def _is_map(fd: FieldDescriptor) -> bool:
    return fd.message_type is not None and fd.message_type.GetOptions().map_entry


def _element_schema(fd: FieldDescriptor, seen: frozenset[str]) -> SchemaNode:
    """Schema for a single value of *fd*, ignoring cardinality."""
    if fd.type in (FieldDescriptor.TYPE_MESSAGE, FieldDescriptor.TYPE_GROUP):
        return _message_schema(fd.message_type, seen)
    # TYPE_ENUM has no entry and falls through to NULL
    return SchemaNode(kind=_SCALAR_KINDS.get(fd.type, SchemaKind.NULL))


def _message_schema(descriptor: Descriptor, seen: frozenset[str]) -> SchemaNode:
    wk = _WELL_KNOWN_KINDS.get(descriptor.full_name)
    if wk is not None:
        return SchemaNode(kind=wk)
    # Self-referencing messages stop at the first repetition
    if descriptor.full_name in seen:
        return SchemaNode(kind=SchemaKind.OBJECT)
    seen = seen | {descriptor.full_name}

    properties: dict[str, SchemaNode] = {}
    for fd in descriptor.fields:
        if _is_map(fd):
            properties[fd.json_name] = SchemaNode(kind=SchemaKind.OBJECT)
        elif _is_repeated(fd):
            properties[fd.json_name] = SchemaNode(kind=SchemaKind.ARRAY, items=_element_schema(fd, seen))
        else:
            properties[fd.json_name] = _element_schema(fd, seen)
    return SchemaNode(kind=SchemaKind.OBJECT, properties=properties)


def descriptor_to_schema(descriptor: Descriptor | None) -> SchemaNode:
    """Synthesize the structural schema of a message descriptor.

    Args:
        descriptor: The message descriptor, or ``None`` when no method is
            resolved (an empty object schema is returned).

    Returns:
        An object-kind ``SchemaNode`` mirroring the descriptor's fields.

    """
    if descriptor is None:
        return SchemaNode(kind=SchemaKind.OBJECT)
    return _message_schema(descriptor, frozenset())


def payload_schema(descriptor: Descriptor | None, value: Any = None) -> SchemaNode:
    """Root schema of a request/response payload.

    Same as ``descriptor_to_schema()`` with the currently held decoded
    value as default (``{}`` when nothing is held) and the shared marker
    set.
    """
    node = descriptor_to_schema(descriptor)
    return SchemaNode(
        kind=SchemaKind.OBJECT,
        properties=node.properties,
        default={} if value is None else value,
        shared=True,
    )

"""Selectable scalar values paired with the options currently offered.

The data plane only ever sees the bare ``value`` string; the ``options``
list is control-plane metadata and appears solely in the JSON Schema
handed to the editor.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from grpc_call.schema import SchemaKind, SchemaNode

__all__ = ["ChoiceValue"]


@dataclass(frozen=True)
class ChoiceValue:
    """A selected value and the options offered alongside it.

    ``value`` is not required to be one of ``options``: options describe
    what the server currently offers, they are not enforced here.

    Attributes:
        value: The selected value (empty string when nothing is selected).
        options: Values offered for selection, in presentation order.

    """

    value: str = ""
    options: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def of(cls, value: str, options: Iterable[str] = ()) -> ChoiceValue:
        """Build a choice from any iterable of options."""
        return cls(value=value, options=tuple(options))

    @classmethod
    def from_json(cls, data: Any) -> ChoiceValue:
        """Parse the data-plane form.

        Accepts the bare string, ``None`` (no selection), or a mapping with a
        ``value`` key as some editors echo the full choice back.

        Raises:
            TypeError: If *data* has none of the accepted shapes.

        """
        if data is None:
            return cls()
        if isinstance(data, str):
            return cls(value=data)
        if isinstance(data, dict) and isinstance(data.get("value", ""), str):
            return cls(value=data.get("value", ""))
        raise TypeError(f"expected a string choice, got {type(data).__name__}")

    def to_json(self) -> str:
        """Return the data-plane form: the bare selected value."""
        return self.value

    def schema(self) -> SchemaNode:
        """Return the control-plane schema node for this choice."""
        return SchemaNode(
            kind=SchemaKind.STRING,
            default=self.value,
            enum=self.options,
            shared=True,
        )

    def json_schema(self) -> dict[str, Any]:
        """Return the JSON Schema describing this choice for the editor."""
        return self.schema().to_json_schema()

    def __str__(self) -> str:
        """Return the selected value."""
        return self.value

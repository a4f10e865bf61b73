"""Command-line interface for calling gRPC services through reflection.

Provides ``describe`` and ``call`` commands backed by
:class:`~grpc_call.component.GrpcCallComponent`, so the CLI sees exactly
the catalogs, schemas and payloads the graph component does.

Usage::

    grpc-call --address localhost:50051 --insecure describe
    grpc-call --address localhost:50051 --insecure describe --service helloworld.Greeter
    grpc-call --address localhost:50051 --insecure call helloworld.Greeter SayHello --json '{"name": "Ada"}'
    echo '{"name": "Ada"}' | grpc-call -a localhost:50051 -k call helloworld.Greeter SayHello

"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated, Any

import typer

from grpc_call.component import (
    REQUEST_PORT,
    RESPONSE_PORT,
    GrpcCallComponent,
    Request,
    ResolvedConfiguration,
    Settings,
)
from grpc_call.context import CallContext
from grpc_call.errors import ConfigurationError, GrpcCallError, SetupError
from grpc_call.logging_utils import configure_logging

# ---------------------------------------------------------------------------
# Output format enum
# ---------------------------------------------------------------------------


class OutputFormat(StrEnum):
    """Output format for CLI commands."""

    auto = "auto"
    json = "json"
    table = "table"


# ---------------------------------------------------------------------------
# CLI config
# ---------------------------------------------------------------------------


@dataclass
class _CliConfig:
    """Holds resolved CLI options."""

    address: str = ""
    insecure: bool = False
    keep_alive: bool = False
    timeout: float | None = None
    format: OutputFormat = OutputFormat.auto

    def settings(self, service: str = "", method: str = "") -> Settings:
        """Component settings for this invocation."""
        return Settings(
            address=self.address,
            insecure=self.insecure,
            keep_alive=self.keep_alive,
            service=service,
            method=method,
        )


app = typer.Typer(
    name="grpc-call",
    help="Describe and call gRPC services through server reflection.",
    add_completion=False,
    no_args_is_help=True,
)


# ---------------------------------------------------------------------------
# Global callback
# ---------------------------------------------------------------------------


@app.callback()
def _main(
    ctx: typer.Context,
    address: Annotated[str, typer.Option("--address", "-a", help="gRPC server address (host:port)")] = "",
    insecure: Annotated[bool, typer.Option("--insecure", "-k", help="Use a plaintext connection")] = False,
    keep_alive: Annotated[bool, typer.Option("--keep-alive", help="Send HTTP/2 keepalive pings")] = False,
    timeout: Annotated[float | None, typer.Option("--timeout", "-t", help="Call timeout in seconds")] = None,
    fmt: Annotated[OutputFormat, typer.Option("--format", "-f", help="Output format")] = OutputFormat.auto,
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", envvar="GRPC_CALL_DEBUG", help="Debug logs (wire included) on stderr")
    ] = False,
    json_logs: Annotated[bool, typer.Option("--json-logs", help="Emit logs as JSON lines")] = False,
) -> None:
    """Configure the endpoint and output options."""
    if verbose:
        configure_logging(logging.DEBUG, json_output=json_logs)
    ctx.obj = _CliConfig(address=address, insecure=insecure, keep_alive=keep_alive, timeout=timeout, format=fmt)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _print_json(data: object, *, pretty: bool = False) -> None:
    """Print JSON to stdout.

    Args:
        data: Python object to serialize.
        pretty: Use indented formatting.

    """
    if pretty:
        typer.echo(json.dumps(data, indent=2, default=str))
    else:
        typer.echo(json.dumps(data, default=str))


def _ensure_address(config: _CliConfig) -> None:
    """Validate that an address was given."""
    if not config.address:
        raise typer.BadParameter("--address is required")


def _port_schema(component: GrpcCallComponent, name: str, key: str) -> dict[str, Any]:
    for port in component.ports():
        if port.name == name:
            return dict(port.schema["properties"][key])
    return {}


def _describe_table(resolved: ResolvedConfiguration, request_schema: dict[str, Any], response_schema: dict[str, Any]) -> str:
    settings = resolved.settings
    lines = [f"gRPC server: {settings.address}", "", "Services:"]
    lines.extend(f"  {'*' if name == settings.service else ' '} {name}" for name in resolved.services)
    if resolved.methods:
        lines.extend(["", f"Methods of {settings.service}:"])
        lines.extend(f"  {'*' if name == settings.method else ' '} {name}" for name in resolved.methods)
    if resolved.signature is not None:
        lines.extend(
            [
                "",
                f"{resolved.signature.path}",
                f"  request:  {resolved.signature.input_type} {json.dumps(request_schema.get('properties', {}))}",
                f"  response: {resolved.signature.output_type} {json.dumps(response_schema.get('properties', {}))}",
            ]
        )
    return "\n".join(lines)


def _read_payload(json_input: str | None) -> Any:
    """Request JSON from ``--json`` or stdin; ``{}`` when neither is given."""
    if json_input is not None:
        text = json_input
    elif not sys.stdin.isatty():
        text = sys.stdin.read()
    else:
        text = ""
    if not text.strip():
        return {}
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"request is not valid JSON: {exc}") from None


# ---------------------------------------------------------------------------
# describe command
# ---------------------------------------------------------------------------


@app.command()
def describe(
    ctx: typer.Context,
    service: Annotated[str, typer.Option("--service", "-s", help="Service to list methods for")] = "",
    method: Annotated[str, typer.Option("--method", "-m", help="Method to show schemas for")] = "",
) -> None:
    """List services (and methods, and schemas) discovered through reflection."""
    config: _CliConfig = ctx.obj
    _ensure_address(config)

    with GrpcCallComponent() as component:
        try:
            component.apply_settings(config.settings(service, method))
        except ConfigurationError as e:
            # Nothing selected yet: the catalogs are still worth showing
            if component.resolved.discovery is None:
                typer.echo(f"Error: {e}", err=True)
                raise typer.Exit(1) from None
        except SetupError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from None

        resolved = component.resolved
        request_schema = _port_schema(component, REQUEST_PORT, "request")
        response_schema = _port_schema(component, RESPONSE_PORT, "response")

    is_tty = sys.stdout.isatty()
    fmt = config.format
    if fmt == OutputFormat.table or (fmt == OutputFormat.auto and is_tty):
        typer.echo(_describe_table(resolved, request_schema, response_schema))
        return

    data: dict[str, object] = {
        "address": config.address,
        "services": list(resolved.services),
        "service": service,
        "methods": list(resolved.methods),
        "method": method,
    }
    if resolved.signature is not None:
        data["request_schema"] = request_schema
        data["response_schema"] = response_schema
    _print_json(data, pretty=fmt == OutputFormat.auto and is_tty)


# ---------------------------------------------------------------------------
# call command
# ---------------------------------------------------------------------------


@app.command()
def call(
    ctx: typer.Context,
    service: Annotated[str, typer.Argument(help="Fully qualified service name")],
    method: Annotated[str, typer.Argument(help="Method name")],
    json_input: Annotated[str | None, typer.Option("--json", "-j", help="Request message as JSON")] = None,
    metadata: Annotated[
        list[str] | None, typer.Option("--header", "-H", help="Call metadata as key=value (repeatable)")
    ] = None,
) -> None:
    """Call a unary method with a JSON request and print the JSON response."""
    config: _CliConfig = ctx.obj
    _ensure_address(config)

    pairs: list[tuple[str, str]] = []
    for item in metadata or []:
        key, sep, value = item.partition("=")
        if not sep:
            raise typer.BadParameter(f"header must be key=value, got {item!r}")
        pairs.append((key.strip().lower(), value))

    payload = _read_payload(json_input)
    events: list[tuple[str, Any]] = []

    with GrpcCallComponent() as component:
        try:
            component.apply_settings(config.settings(service, method))
            component.handle_request(
                Request.from_dict({"request": payload}),
                lambda port, event: events.append((port, event)),
                CallContext(timeout=config.timeout, metadata=pairs),
            )
        except GrpcCallError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from None

    # Error port is disabled, so failures raised above; only responses remain
    for port, event in events:
        if port == RESPONSE_PORT:
            _print_json(event.response.to_json(), pretty=config.format != OutputFormat.json and sys.stdout.isatty())


def main() -> None:
    """Console-script entry point."""
    app()

"""Shared test fixtures for grpc-call tests.

The ``greeter_server`` fixture runs an in-process gRPC server whose
services are defined by a hand-assembled ``FileDescriptorProto`` and
served through generic handlers, with server reflection enabled against
the same descriptor pool.  No generated stubs are involved on either side.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from concurrent import futures
from dataclasses import dataclass, field
from typing import Any

import grpc
import pytest
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.descriptor import Descriptor
from google.protobuf.descriptor_pb2 import FieldDescriptorProto
from grpc_reflection.v1alpha import reflection

from grpc_call.discovery import Endpoint, open_channel

# ---------------------------------------------------------------------------
# Test proto: helloworld.proto
# ---------------------------------------------------------------------------

_OPTIONAL = FieldDescriptorProto.LABEL_OPTIONAL
_REPEATED = FieldDescriptorProto.LABEL_REPEATED

GREETER_METHODS = ("SayHello", "SayGoodbye", "Echo", "Whoami", "Fail", "Slow", "Chat")
"""Greeter methods in declaration order (deliberately not sorted)."""


def _field(
    msg: descriptor_pb2.DescriptorProto,
    name: str,
    number: int,
    ftype: int,
    *,
    label: int = _OPTIONAL,
    type_name: str = "",
) -> None:
    f = msg.field.add(name=name, number=number, type=ftype, label=label)
    if type_name:
        f.type_name = type_name


def build_helloworld_file() -> descriptor_pb2.FileDescriptorProto:
    """Assemble helloworld.proto (Greeter, Admin, Empty services)."""
    fdp = descriptor_pb2.FileDescriptorProto(name="helloworld.proto", package="helloworld", syntax="proto3")

    mood = fdp.enum_type.add(name="Mood")
    mood.value.add(name="MOOD_UNSPECIFIED", number=0)
    mood.value.add(name="HAPPY", number=1)

    req = fdp.message_type.add(name="HelloRequest")
    _field(req, "name", 1, FieldDescriptorProto.TYPE_STRING)
    _field(req, "times", 2, FieldDescriptorProto.TYPE_INT32)

    reply = fdp.message_type.add(name="HelloReply")
    _field(reply, "message", 1, FieldDescriptorProto.TYPE_STRING)

    address = fdp.message_type.add(name="Address")
    _field(address, "city", 1, FieldDescriptorProto.TYPE_STRING)
    _field(address, "zip_code", 2, FieldDescriptorProto.TYPE_UINT32)

    profile = fdp.message_type.add(name="Profile")
    _field(profile, "display_name", 1, FieldDescriptorProto.TYPE_STRING)
    _field(profile, "active", 2, FieldDescriptorProto.TYPE_BOOL)
    _field(profile, "score", 3, FieldDescriptorProto.TYPE_DOUBLE)
    _field(profile, "visits", 4, FieldDescriptorProto.TYPE_UINT64)
    _field(profile, "ratio", 5, FieldDescriptorProto.TYPE_FLOAT)
    _field(profile, "mood", 6, FieldDescriptorProto.TYPE_ENUM, type_name=".helloworld.Mood")
    _field(profile, "address", 7, FieldDescriptorProto.TYPE_MESSAGE, type_name=".helloworld.Address")
    _field(profile, "tags", 8, FieldDescriptorProto.TYPE_STRING, label=_REPEATED)
    _field(
        profile,
        "counters",
        9,
        FieldDescriptorProto.TYPE_MESSAGE,
        label=_REPEATED,
        type_name=".helloworld.Profile.CountersEntry",
    )
    _field(profile, "avatar", 10, FieldDescriptorProto.TYPE_BYTES)
    _field(profile, "parent", 11, FieldDescriptorProto.TYPE_MESSAGE, type_name=".helloworld.Profile")
    _field(profile, "big", 12, FieldDescriptorProto.TYPE_INT64)
    entry = profile.nested_type.add(name="CountersEntry")
    entry.options.map_entry = True
    _field(entry, "key", 1, FieldDescriptorProto.TYPE_STRING)
    _field(entry, "value", 2, FieldDescriptorProto.TYPE_INT32)

    greeter = fdp.service.add(name="Greeter")
    for name in GREETER_METHODS:
        in_type, out_type = ".helloworld.HelloRequest", ".helloworld.HelloReply"
        if name == "Echo":
            in_type = out_type = ".helloworld.Profile"
        m = greeter.method.add(name=name, input_type=in_type, output_type=out_type)
        if name == "Chat":
            m.client_streaming = True
            m.server_streaming = True

    admin = fdp.service.add(name="Admin")
    admin.method.add(name="Ping", input_type=".helloworld.HelloRequest", output_type=".helloworld.HelloReply")

    fdp.service.add(name="Empty")
    return fdp


@pytest.fixture(scope="session")
def helloworld_pool() -> descriptor_pool.DescriptorPool:
    """Descriptor pool holding helloworld.proto."""
    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(build_helloworld_file().SerializeToString())
    return pool


@pytest.fixture(scope="session")
def profile_descriptor(helloworld_pool: descriptor_pool.DescriptorPool) -> Descriptor:
    """The ``helloworld.Profile`` message descriptor."""
    return helloworld_pool.FindMessageTypeByName("helloworld.Profile")


@pytest.fixture(scope="session")
def hello_request_descriptor(helloworld_pool: descriptor_pool.DescriptorPool) -> Descriptor:
    """The ``helloworld.HelloRequest`` message descriptor."""
    return helloworld_pool.FindMessageTypeByName("helloworld.HelloRequest")


# ---------------------------------------------------------------------------
# Servers
# ---------------------------------------------------------------------------


def _greeter_handlers(pool: descriptor_pool.DescriptorPool) -> list[grpc.GenericRpcHandler]:
    hello_request = message_factory.GetMessageClass(pool.FindMessageTypeByName("helloworld.HelloRequest"))
    hello_reply = message_factory.GetMessageClass(pool.FindMessageTypeByName("helloworld.HelloReply"))
    profile = message_factory.GetMessageClass(pool.FindMessageTypeByName("helloworld.Profile"))

    def say_hello(request: Any, context: grpc.ServicerContext) -> Any:
        return hello_reply(message=f"Hello {request.name}")

    def say_goodbye(request: Any, context: grpc.ServicerContext) -> Any:
        return hello_reply(message=f"Goodbye {request.name}")

    def echo(request: Any, context: grpc.ServicerContext) -> Any:
        return request

    def whoami(request: Any, context: grpc.ServicerContext) -> Any:
        md = dict(context.invocation_metadata())
        return hello_reply(message=f"{md.get('x-tenant', '')}|{md.get('x-request-id', '')}")

    def fail(request: Any, context: grpc.ServicerContext) -> Any:
        context.abort(grpc.StatusCode.FAILED_PRECONDITION, "greeter is closed")

    def slow(request: Any, context: grpc.ServicerContext) -> Any:
        deadline = time.monotonic() + 5.0
        while context.is_active() and time.monotonic() < deadline:
            time.sleep(0.01)
        return hello_reply(message="late")

    def unary(fn: Callable[..., Any], request_cls: Any = hello_request, reply_cls: Any = hello_reply) -> Any:
        return grpc.unary_unary_rpc_method_handler(
            fn,
            request_deserializer=request_cls.FromString,
            response_serializer=reply_cls.SerializeToString,
        )

    greeter = grpc.method_handlers_generic_handler(
        "helloworld.Greeter",
        {
            "SayHello": unary(say_hello),
            "SayGoodbye": unary(say_goodbye),
            "Echo": unary(echo, profile, profile),
            "Whoami": unary(whoami),
            "Fail": unary(fail),
            "Slow": unary(slow),
        },
    )
    admin = grpc.method_handlers_generic_handler("helloworld.Admin", {"Ping": unary(say_hello)})
    return [greeter, admin]


@dataclass
class RunningServer:
    """A started in-process server and its address."""

    server: grpc.Server
    address: str


def _start(server: grpc.Server) -> RunningServer:
    port = server.add_insecure_port("127.0.0.1:0")
    server.start()
    return RunningServer(server=server, address=f"127.0.0.1:{port}")


@pytest.fixture(scope="session")
def greeter_server(helloworld_pool: descriptor_pool.DescriptorPool) -> Iterator[RunningServer]:
    """Greeter/Admin/Empty services with reflection enabled."""
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=8))
    server.add_generic_rpc_handlers(tuple(_greeter_handlers(helloworld_pool)))
    reflection.enable_server_reflection(
        ("helloworld.Greeter", "helloworld.Admin", "helloworld.Empty", reflection.SERVICE_NAME),
        server,
        pool=helloworld_pool,
    )
    running = _start(server)
    yield running
    server.stop(grace=None)


@pytest.fixture(scope="session")
def greeter_address(greeter_server: RunningServer) -> str:
    """Address of the reflection-enabled Greeter server."""
    return greeter_server.address


@pytest.fixture(scope="session")
def reflection_only_address() -> Iterator[str]:
    """A server exposing nothing but the reflection service."""
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=2))
    reflection.enable_server_reflection((reflection.SERVICE_NAME,), server)
    running = _start(server)
    yield running.address
    server.stop(grace=None)


@pytest.fixture(scope="session")
def no_reflection_address(helloworld_pool: descriptor_pool.DescriptorPool) -> Iterator[str]:
    """A Greeter server without reflection."""
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=2))
    server.add_generic_rpc_handlers(tuple(_greeter_handlers(helloworld_pool)))
    running = _start(server)
    yield running.address
    server.stop(grace=None)


# ---------------------------------------------------------------------------
# Channel tracking + event recording
# ---------------------------------------------------------------------------


class TrackingChannel:
    """Delegates to a real channel and records ``close()``."""

    def __init__(self, inner: grpc.Channel) -> None:
        self.inner = inner
        self.closed = False

    def __getattr__(self, name: str) -> Any:
        return getattr(self.inner, name)

    def close(self) -> None:
        self.closed = True
        self.inner.close()


@dataclass
class ChannelRecorder:
    """Channel factory that keeps every channel it opened."""

    channels: list[TrackingChannel] = field(default_factory=list)

    def __call__(self, endpoint: Endpoint) -> Any:
        channel = TrackingChannel(open_channel(endpoint))
        self.channels.append(channel)
        return channel


@pytest.fixture()
def channel_recorder() -> ChannelRecorder:
    """A fresh ``ChannelRecorder``."""
    return ChannelRecorder()


@dataclass
class EmitRecorder:
    """Host ``emit`` callback that records every event."""

    events: list[tuple[str, Any]] = field(default_factory=list)

    def __call__(self, port: str, event: Any) -> str:
        self.events.append((port, event))
        return f"emitted:{port}"


@pytest.fixture()
def emit() -> EmitRecorder:
    """A fresh ``EmitRecorder``."""
    return EmitRecorder()

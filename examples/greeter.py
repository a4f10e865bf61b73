"""Drive the ``grpc_call`` component against a reflection-enabled server.

Starts an in-process Greeter server whose service is declared at runtime
(no ``.proto`` compilation), then configures the component through its
settings port and sends a JSON request through its request port.

Run::

    python examples/greeter.py
"""

from __future__ import annotations

import json
from concurrent import futures
from typing import Any

import grpc
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.descriptor_pb2 import FieldDescriptorProto
from grpc_reflection.v1alpha import reflection

from grpc_call import REQUEST_PORT, SETTINGS_PORT, GrpcCallComponent, Response

# ---------------------------------------------------------------------------
# 1. Declare helloworld.Greeter at runtime
# ---------------------------------------------------------------------------


def _greeter_pool() -> descriptor_pool.DescriptorPool:
    fdp = descriptor_pb2.FileDescriptorProto(name="helloworld.proto", package="helloworld", syntax="proto3")
    fdp.message_type.add(name="HelloRequest").field.add(
        name="name", number=1, type=FieldDescriptorProto.TYPE_STRING, label=FieldDescriptorProto.LABEL_OPTIONAL
    )
    fdp.message_type.add(name="HelloReply").field.add(
        name="message", number=1, type=FieldDescriptorProto.TYPE_STRING, label=FieldDescriptorProto.LABEL_OPTIONAL
    )
    fdp.service.add(name="Greeter").method.add(
        name="SayHello", input_type=".helloworld.HelloRequest", output_type=".helloworld.HelloReply"
    )
    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(fdp.SerializeToString())
    return pool


# ---------------------------------------------------------------------------
# 2. Serve it with reflection enabled
# ---------------------------------------------------------------------------


def serve(pool: descriptor_pool.DescriptorPool) -> tuple[grpc.Server, str]:
    """Start the Greeter server on a free local port."""
    request_cls = message_factory.GetMessageClass(pool.FindMessageTypeByName("helloworld.HelloRequest"))
    reply_cls = message_factory.GetMessageClass(pool.FindMessageTypeByName("helloworld.HelloReply"))

    def say_hello(request: Any, context: grpc.ServicerContext) -> Any:
        return reply_cls(message=f"Hello {request.name}")

    server = grpc.server(futures.ThreadPoolExecutor(max_workers=4))
    server.add_generic_rpc_handlers(
        (
            grpc.method_handlers_generic_handler(
                "helloworld.Greeter",
                {
                    "SayHello": grpc.unary_unary_rpc_method_handler(
                        say_hello,
                        request_deserializer=request_cls.FromString,
                        response_serializer=reply_cls.SerializeToString,
                    )
                },
            ),
        )
    )
    reflection.enable_server_reflection(("helloworld.Greeter", reflection.SERVICE_NAME), server, pool=pool)
    port = server.add_insecure_port("127.0.0.1:0")
    server.start()
    return server, f"127.0.0.1:{port}"


# ---------------------------------------------------------------------------
# 3. Configure the component and call the method with JSON
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the demo."""
    server, address = serve(_greeter_pool())
    try:
        with GrpcCallComponent() as component:
            component.handle(
                SETTINGS_PORT,
                {"address": address, "insecure": True, "service": "helloworld.Greeter", "method": "SayHello"},
                print,
            )
            print(f"state: {component.state.value}")
            print(f"services: {list(component.resolved.services)}")
            print(f"methods: {list(component.resolved.methods)}")
            for port in component.ports():
                print(f"port {port.name}: {json.dumps(port.schema)}")

            def emit(port: str, event: Response) -> None:
                print(f"{port}: {json.dumps(event.to_dict())}")

            component.handle(REQUEST_PORT, {"context": "42", "request": {"name": "Ada"}}, emit)
    finally:
        server.stop(grace=None)


if __name__ == "__main__":
    main()

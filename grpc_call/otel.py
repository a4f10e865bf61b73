# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""OpenTelemetry client-side instrumentation for the gRPC call component.

Provides ``OtelConfig`` and ``instrument_component()`` for adding
distributed tracing (one CLIENT span per request) and metrics (counter,
duration histogram) to :class:`~grpc_call.component.GrpcCallComponent`.

Requires ``pip install grpc-call[otel]`` (opentelemetry-api + opentelemetry-sdk).

Usage::

    from grpc_call.otel import OtelConfig, instrument_component

    component = GrpcCallComponent()
    instrument_component(component)  # uses global TracerProvider / MeterProvider
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from contextvars import Token
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.metrics import Counter, Histogram, Meter, MeterProvider, get_meter_provider
from opentelemetry.trace import SpanKind, StatusCode, Tracer, TracerProvider, get_tracer_provider

from grpc_call.errors import InvocationError

if TYPE_CHECKING:
    from grpc_call.component import GrpcCallComponent, HookToken
    from grpc_call.context import CallContext
    from grpc_call.discovery import MethodSignature

__all__ = ["OtelConfig", "instrument_component"]

_logger = logging.getLogger("grpc_call.otel")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OtelConfig:
    """Options for client-side tracing and metrics.

    Attributes:
        tracer_provider: Custom ``TracerProvider``; uses the global provider when ``None``.
        meter_provider: Custom ``MeterProvider``; uses the global provider when ``None``.
        enable_tracing: Enable span creation (default ``True``).
        enable_metrics: Enable counter/histogram recording (default ``True``).
        record_exceptions: Record exceptions on error spans (default ``True``).
        custom_attributes: Extra span/metric attributes merged into every request.

    """

    tracer_provider: TracerProvider | None = None
    meter_provider: MeterProvider | None = None
    enable_tracing: bool = True
    enable_metrics: bool = True
    record_exceptions: bool = True
    custom_attributes: Mapping[str, str] = field(default_factory=dict)


def instrument_component(component: GrpcCallComponent, config: OtelConfig | None = None) -> GrpcCallComponent:
    """Attach OpenTelemetry tracing and metrics to a component.

    Must be called before requests are handled; not thread-safe during dispatch.

    Args:
        component: The component to instrument.
        config: Optional configuration; uses global providers and defaults when ``None``.

    Returns:
        The same *component* instance (for chaining).

    """
    if config is None:
        config = OtelConfig()
    component._dispatch_hook = _OtelDispatchHook(config)
    _logger.debug("Instrumented component with OpenTelemetry")
    return component


# ---------------------------------------------------------------------------
# Internal dispatch hook
# ---------------------------------------------------------------------------


@dataclass
class _OtelHookToken:
    """Span, context token and start time handed from start to end of a request."""

    span: trace.Span | None
    otel_token: Token[Context] | None
    start_time: float
    service: str
    method: str


class _OtelDispatchHook:
    """Implements ``DispatchHook`` with OpenTelemetry spans and metrics."""

    __slots__ = ("_config", "_counter", "_histogram", "_meter", "_tracer")

    def __init__(self, config: OtelConfig) -> None:
        self._config = config

        tp = config.tracer_provider or get_tracer_provider()
        self._tracer: Tracer = tp.get_tracer("grpc_call", "0.1.0")

        mp: MeterProvider = config.meter_provider or get_meter_provider()
        self._meter: Meter = mp.get_meter("grpc_call", "0.1.0")
        self._counter: Counter = self._meter.create_counter(
            "rpc.client.requests",
            unit="{request}",
            description="Number of gRPC requests issued",
        )
        self._histogram: Histogram = self._meter.create_histogram(
            "rpc.client.duration",
            unit="s",
            description="Duration of gRPC requests",
        )

    def on_dispatch_start(self, signature: MethodSignature | None, ctx: CallContext) -> HookToken:
        """Open a CLIENT span for the request and make it current."""
        service = signature.service if signature is not None else ""
        method = signature.method if signature is not None else ""
        span: trace.Span | None = None
        otel_token: Token[Context] | None = None

        if self._config.enable_tracing:
            attrs: dict[str, str] = {
                "rpc.system": "grpc",
                "rpc.service": service,
                "rpc.method": method,
                "rpc.grpc_call.request_id": ctx.request_id,
            }
            attrs.update(self._config.custom_attributes)
            span = self._tracer.start_span(
                f"grpc_call/{service}/{method}" if signature is not None else "grpc_call/unconfigured",
                kind=SpanKind.CLIENT,
                attributes=attrs,
            )
            otel_token = otel_context.attach(trace.set_span_in_context(span))

        return _OtelHookToken(
            span=span,
            otel_token=otel_token,
            start_time=time.monotonic(),
            service=service,
            method=method,
        )

    def on_dispatch_end(self, token: HookToken, signature: MethodSignature | None, error: BaseException | None) -> None:
        """Close the span with the gRPC outcome and record the request metrics."""
        if not isinstance(token, _OtelHookToken):
            return

        duration = time.monotonic() - token.start_time
        status = "error" if error is not None else "ok"

        if token.span is not None:
            if error is not None:
                token.span.set_status(StatusCode.ERROR, str(error))
                token.span.set_attribute("rpc.grpc_call.error_type", type(error).__name__)
                if isinstance(error, InvocationError) and error.code is not None:
                    token.span.set_attribute("rpc.grpc.status_code", error.code.value[0])
                if self._config.record_exceptions:
                    token.span.record_exception(error)
            else:
                token.span.set_status(StatusCode.OK)
                token.span.set_attribute("rpc.grpc.status_code", 0)
            token.span.end()

        if token.otel_token is not None:
            otel_context.detach(token.otel_token)

        if self._config.enable_metrics:
            metric_attrs: dict[str, str] = {
                "rpc.system": "grpc",
                "rpc.service": token.service,
                "rpc.method": token.method,
                "status": status,
            }
            metric_attrs.update(self._config.custom_attributes)
            self._counter.add(1, metric_attrs)
            self._histogram.record(duration, metric_attrs)

# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for logging: access log, context logger, wire debug, JSON formatter."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from dataclasses import replace
from typing import Any

import grpc
import pytest
from google.protobuf.descriptor import Descriptor

from grpc_call._debug import fmt_descriptor, fmt_message, fmt_metadata
from grpc_call.codec import encode
from grpc_call.component import REQUEST_PORT, GrpcCallComponent, Settings
from grpc_call.context import REQUEST_ID_HEADER, CallContext
from grpc_call.errors import ConfigurationError, InvocationError
from grpc_call.logging_utils import GrpcCallJsonFormatter, configure_logging
from tests.conftest import EmitRecorder


def _extra(record: logging.LogRecord, key: str) -> Any:
    """Read a dynamic extra field from a log record."""
    return record.__dict__[key]


def _settings(address: str, method: str = "SayHello") -> Settings:
    return Settings(address=address, insecure=True, service="helloworld.Greeter", method=method)


@pytest.fixture()
def component() -> Iterator[GrpcCallComponent]:
    """A component closed after the test."""
    comp = GrpcCallComponent()
    yield comp
    comp.close()


# ---------------------------------------------------------------------------
# CallContext logger
# ---------------------------------------------------------------------------


class TestCallContextLogger:
    """Per-request logger adapter."""

    def test_request_id_bound(self, caplog: pytest.LogCaptureFixture) -> None:
        """The request ID is attached to every record."""
        ctx = CallContext(request_id="r-1")
        with caplog.at_level(logging.INFO, logger="grpc_call.call"):
            ctx.logger.info("hello")
        record = caplog.records[0]
        assert record.name == "grpc_call.call"
        assert _extra(record, "request_id") == "r-1"

    def test_bind_adds_service_and_method(self, caplog: pytest.LogCaptureFixture) -> None:
        """Binding resets the cached adapter with the new fields."""
        ctx = CallContext()
        first = ctx.logger
        ctx.bind("helloworld.Greeter", "SayHello")
        assert ctx.logger is not first
        with caplog.at_level(logging.INFO, logger="grpc_call.call"):
            ctx.logger.info("bound")
        record = caplog.records[0]
        assert _extra(record, "service") == "helloworld.Greeter"
        assert _extra(record, "method") == "SayHello"

    def test_bound_fields_take_precedence(self, caplog: pytest.LogCaptureFixture) -> None:
        """User ``extra`` cannot overwrite the request ID."""
        ctx = CallContext(request_id="real")
        with caplog.at_level(logging.INFO, logger="grpc_call.call"):
            ctx.logger.info("x", extra={"request_id": "fake", "custom": 1})
        record = caplog.records[0]
        assert _extra(record, "request_id") == "real"
        assert _extra(record, "custom") == 1

    def test_generated_request_id(self) -> None:
        """Each context gets a distinct 16-char ID sent as metadata."""
        a, b = CallContext(), CallContext()
        assert a.request_id != b.request_id
        assert len(a.request_id) == 16
        assert a.call_metadata() == ((REQUEST_ID_HEADER, a.request_id),)

    def test_caller_metadata_first(self) -> None:
        """Caller metadata precedes the request ID."""
        ctx = CallContext(metadata=[("authorization", "Bearer t")], request_id="r")
        assert ctx.call_metadata() == (("authorization", "Bearer t"), ("x-request-id", "r"))


# ---------------------------------------------------------------------------
# Access + lifecycle logs
# ---------------------------------------------------------------------------


class TestAccessLog:
    """One structured record per request on ``grpc_call.access``."""

    def test_success(self, component: GrpcCallComponent, greeter_address: str, caplog: pytest.LogCaptureFixture) -> None:
        """Successful requests log status ok with timing."""
        component.apply_settings(_settings(greeter_address))
        with caplog.at_level(logging.INFO, logger="grpc_call.access"):
            component.handle(REQUEST_PORT, {"request": {}}, EmitRecorder(), CallContext(request_id="acc-1"))
        [record] = [r for r in caplog.records if r.name == "grpc_call.access"]
        assert record.getMessage() == "helloworld.Greeter/SayHello ok"
        assert _extra(record, "status") == "ok"
        assert _extra(record, "request_id") == "acc-1"
        assert _extra(record, "duration_ms") >= 0
        assert _extra(record, "error_type") == ""

    def test_error(self, component: GrpcCallComponent, greeter_address: str, caplog: pytest.LogCaptureFixture) -> None:
        """Failed requests log the error type."""
        component.apply_settings(_settings(greeter_address, "Fail"))
        with caplog.at_level(logging.INFO, logger="grpc_call.access"), pytest.raises(InvocationError):
            component.handle(REQUEST_PORT, {"request": {}}, EmitRecorder())
        [record] = [r for r in caplog.records if r.name == "grpc_call.access"]
        assert _extra(record, "status") == "error"
        assert _extra(record, "error_type") == "InvocationError"

    def test_unexpected_failure(
        self,
        component: GrpcCallComponent,
        greeter_address: str,
        caplog: pytest.LogCaptureFixture,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Exceptions outside the error taxonomy are logged as errors and propagate."""
        component.apply_settings(replace(_settings(greeter_address), enable_error_port=True))

        def _broken_invoke(*args: object, **kwargs: object) -> None:
            raise RuntimeError("transport exploded")

        monkeypatch.setattr("grpc_call.component.invoke", _broken_invoke)
        emit = EmitRecorder()
        with caplog.at_level(logging.INFO, logger="grpc_call.access"), pytest.raises(RuntimeError):
            component.handle(REQUEST_PORT, {"request": {}}, emit)
        [record] = [r for r in caplog.records if r.name == "grpc_call.access"]
        assert _extra(record, "status") == "error"
        assert _extra(record, "error_type") == "RuntimeError"
        assert emit.events == []

    def test_disabled_logger_is_silent(
        self, component: GrpcCallComponent, greeter_address: str, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Nothing is logged when the access logger is above INFO."""
        component.apply_settings(_settings(greeter_address))
        with caplog.at_level(logging.WARNING, logger="grpc_call.access"):
            component.handle(REQUEST_PORT, {"request": {}}, EmitRecorder())
        assert not [r for r in caplog.records if r.name == "grpc_call.access"]


class TestLifecycleLogging:
    """Configuration events are logged on ``grpc_call.component``."""

    def test_configured(self, component: GrpcCallComponent, greeter_address: str, caplog: pytest.LogCaptureFixture) -> None:
        """A successful configuration logs the catalog sizes."""
        with caplog.at_level(logging.INFO, logger="grpc_call.component"):
            component.apply_settings(_settings(greeter_address))
        messages = [r.getMessage() for r in caplog.records if r.name == "grpc_call.component"]
        assert any("3 services, 7 methods, state=ready" in m for m in messages)

    def test_failure_warning(self, component: GrpcCallComponent, caplog: pytest.LogCaptureFixture) -> None:
        """A failed configuration logs a warning with the resulting state."""
        with caplog.at_level(logging.WARNING, logger="grpc_call.component"), pytest.raises(ConfigurationError):
            component.apply_settings(Settings())
        [record] = [r for r in caplog.records if r.name == "grpc_call.component"]
        assert record.levelno == logging.WARNING
        assert "<empty address>" in record.getMessage()
        assert _extra(record, "state") == "unconfigured"
        assert _extra(record, "error_type") == "ConfigurationError"

    def test_error_port_logged(
        self, component: GrpcCallComponent, greeter_address: str, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Diverted failures are logged on the request's logger."""
        component.apply_settings(replace(_settings(greeter_address, "Fail"), enable_error_port=True))
        with caplog.at_level(logging.INFO, logger="grpc_call.call"):
            component.handle(REQUEST_PORT, {"request": {}}, EmitRecorder(), CallContext(request_id="e-1"))
        [record] = [r for r in caplog.records if r.name == "grpc_call.call"]
        assert "error port" in record.getMessage()
        assert _extra(record, "request_id") == "e-1"
        assert _extra(record, "method") == "Fail"


# ---------------------------------------------------------------------------
# Wire debug logging
# ---------------------------------------------------------------------------


class TestWireLogging:
    """``grpc_call.wire.*`` debug output."""

    def test_request_and_response(
        self, component: GrpcCallComponent, greeter_address: str, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Both directions are logged at DEBUG."""
        component.apply_settings(_settings(greeter_address))
        with caplog.at_level(logging.DEBUG, logger="grpc_call.wire"):
            component.handle(REQUEST_PORT, {"request": {"name": "Ada"}}, EmitRecorder())
        by_logger = {r.name: r.getMessage() for r in caplog.records}
        assert 'HelloRequest{name: "Ada"}' in by_logger["grpc_call.wire.request"]
        assert 'HelloReply{message: "Hello Ada"}' in by_logger["grpc_call.wire.response"]

    def test_reflection(self, component: GrpcCallComponent, greeter_address: str, caplog: pytest.LogCaptureFixture) -> None:
        """Discovery logs the listing and the resolved signature."""
        with caplog.at_level(logging.DEBUG, logger="grpc_call.wire"):
            component.apply_settings(_settings(greeter_address))
        messages = [r.getMessage() for r in caplog.records if r.name == "grpc_call.wire.reflection"]
        assert any(m.startswith("list_services:") for m in messages)
        assert any(m.startswith("resolved /helloworld.Greeter/SayHello") for m in messages)

    def test_fmt_helpers(self, hello_request_descriptor: Descriptor) -> None:
        """Formatting helpers are compact and truncate long values."""
        assert fmt_descriptor(None) == "None"
        assert fmt_descriptor(hello_request_descriptor) == "helloworld.HelloRequest(name: 9, times: 5)"
        msg = encode({"name": "x" * 200}, hello_request_descriptor)
        assert fmt_message(msg).endswith("...}")
        assert fmt_metadata(None) == "None"
        assert fmt_metadata([("k", b"v"), ("x", "y")]) == "{k='v', x='y'}"


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------


class TestJsonFormatter:
    """``GrpcCallJsonFormatter`` output."""

    def _record(self, **extra: Any) -> logging.LogRecord:
        record = logging.LogRecord("grpc_call.access", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        record.__dict__.update(extra)
        return record

    def test_standard_fields(self) -> None:
        """Standard fields are always present."""
        data = json.loads(GrpcCallJsonFormatter().format(self._record()))
        assert data["level"] == "INFO"
        assert data["logger"] == "grpc_call.access"
        assert data["message"] == "hello world"
        assert "timestamp" in data

    def test_extra_fields(self) -> None:
        """Extra fields are included; non-serializable ones become strings."""
        data = json.loads(GrpcCallJsonFormatter().format(self._record(service="s", obj=object())))
        assert data["service"] == "s"
        assert isinstance(data["obj"], str)

    def test_status_codes_and_bytes(self) -> None:
        """Enums render by name, bytes as text."""
        data = json.loads(GrpcCallJsonFormatter().format(self._record(code=grpc.StatusCode.UNAVAILABLE, raw=b"ok")))
        assert data["code"] == "UNAVAILABLE"
        assert data["raw"] == "ok"

    def test_reserved_not_overwritten(self) -> None:
        """Extra fields cannot clobber the standard ones."""
        data = json.loads(GrpcCallJsonFormatter().format(self._record(level="bogus")))
        assert data["level"] == "INFO"

    def test_exception(self) -> None:
        """Exception info is rendered under ``exception``."""
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        data = json.loads(GrpcCallJsonFormatter().format(record))
        assert "ValueError: boom" in data["exception"]


class TestConfigureLogging:
    """``configure_logging`` installs a handler on ``grpc_call``."""

    def test_json_handler(self) -> None:
        """JSON output uses the JSON formatter."""
        root = logging.getLogger("grpc_call")
        level = root.level
        handler = configure_logging(logging.DEBUG, json_output=True)
        try:
            assert handler in root.handlers
            assert isinstance(handler.formatter, GrpcCallJsonFormatter)
            assert root.level == logging.DEBUG
        finally:
            root.removeHandler(handler)
            root.setLevel(level)

    def test_text_handler(self) -> None:
        """Plain output uses a text formatter."""
        root = logging.getLogger("grpc_call")
        level = root.level
        handler = configure_logging()
        try:
            assert not isinstance(handler.formatter, GrpcCallJsonFormatter)
        finally:
            root.removeHandler(handler)
            root.setLevel(level)

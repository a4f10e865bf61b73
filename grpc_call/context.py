"""Caller-supplied context for one request: deadline, metadata, cancellation."""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import MutableMapping, Sequence
from typing import Any

import grpc

__all__ = ["REQUEST_ID_HEADER", "CallContext"]

REQUEST_ID_HEADER = "x-request-id"
"""Metadata key carrying the per-request correlation ID."""


def _generate_request_id() -> str:
    """Generate a 16-char hex request ID for correlation."""
    return uuid.uuid4().hex[:16]


class _ContextLoggerAdapter(logging.LoggerAdapter[logging.Logger]):
    """LoggerAdapter that preserves context-bound extra fields.

    User-supplied ``extra`` in individual log calls is merged, but bound
    fields take precedence on key conflicts.
    """

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        """Merge user extra with bound extra, bound wins on conflict."""
        user_extra = kwargs.get("extra", {})
        kwargs["extra"] = {**user_extra, **(self.extra or {})}
        return msg, kwargs


class CallContext:
    """Timeout, metadata and cancellation for a single invocation.

    A context may be cancelled from any thread.  Cancellation aborts the
    in-flight call (if any) and makes later invocations fail immediately;
    both surface as ``InvocationError`` with ``StatusCode.CANCELLED``.

    Example::

        ctx = CallContext(timeout=2.0, metadata=[("authorization", "Bearer ...")])
        threading.Timer(0.5, ctx.cancel).start()
        component.handle_request(request, emit, ctx)

    """

    __slots__ = (
        "_cancelled",
        "_futures",
        "_lock",
        "_logger",
        "_method",
        "_request_id",
        "_service",
        "metadata",
        "timeout",
    )

    def __init__(
        self,
        *,
        timeout: float | None = None,
        metadata: Sequence[tuple[str, str]] = (),
        request_id: str | None = None,
    ) -> None:
        """Initialize with an optional timeout (seconds), call metadata and request ID."""
        self.timeout = timeout
        self.metadata: tuple[tuple[str, str], ...] = tuple(metadata)
        self._request_id = request_id or _generate_request_id()
        self._cancelled = False
        self._futures: set[grpc.Future] = set()
        self._lock = threading.Lock()
        self._service = ""
        self._method = ""
        self._logger: _ContextLoggerAdapter | None = None

    @property
    def request_id(self) -> str:
        """Per-request correlation ID, sent as ``x-request-id`` metadata."""
        return self._request_id

    @property
    def cancelled(self) -> bool:
        """Whether ``cancel()`` has been called."""
        return self._cancelled

    def cancel(self) -> None:
        """Cancel the in-flight call, if any, and every later one."""
        with self._lock:
            self._cancelled = True
            futures = list(self._futures)
        for future in futures:
            future.cancel()

    def call_metadata(self) -> tuple[tuple[str, str], ...]:
        """Metadata to send with the call, including the request ID."""
        return (*self.metadata, (REQUEST_ID_HEADER, self._request_id))

    def bind(self, service: str, method: str) -> None:
        """Record the service/method being invoked for log correlation."""
        self._service = service
        self._method = method
        self._logger = None

    @property
    def logger(self) -> logging.LoggerAdapter[logging.Logger]:
        """Logger with ``request_id`` (and ``service``/``method`` once bound) pre-bound."""
        if self._logger is None:
            extra: dict[str, object] = {"request_id": self._request_id}
            if self._service:
                extra["service"] = self._service
            if self._method:
                extra["method"] = self._method
            self._logger = _ContextLoggerAdapter(logging.getLogger("grpc_call.call"), extra)
        return self._logger

    def _attach(self, future: grpc.Future) -> None:
        """Track an in-flight call so ``cancel()`` can reach it."""
        with self._lock:
            self._futures.add(future)
            cancelled = self._cancelled
        if cancelled:
            future.cancel()

    def _detach(self, future: grpc.Future) -> None:
        with self._lock:
            self._futures.discard(future)

"""The tracer: buffers finished spans and reports them to a collector."""

from __future__ import annotations

import logging
import platform
import random
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Protocol

from .report_buffer import ReportBuffer
from .span import (
    META_EVENT_KEY,
    META_EXTRACT_OPERATION,
    META_INJECT_OPERATION,
    META_PROPAGATION_FORMAT_KEY,
    META_SPAN_ID_KEY,
    META_TRACE_ID_KEY,
    META_TRACER_CREATE_OPERATION,
    META_TRACER_GUID_KEY,
    RawSpan,
    Reference,
    Span,
    SpanContext,
)
from .util import TRACER_VERSION, gen_seeded_guid

DEFAULT_MAX_SPANS = 1000
DEFAULT_MAX_LOGS_PER_SPAN = 500
DEFAULT_MIN_REPORTING_PERIOD = 0.5
DEFAULT_REPORTING_PERIOD = 2.5
DEFAULT_REPORT_TIMEOUT = 30.0
DEFAULT_MAX_CALL_SEND_MSG_SIZE_BYTES = 2**31 - 1

TRACER_PLATFORM_KEY = "lightstep.tracer_platform"
TRACER_PLATFORM_VALUE = "python"
TRACER_PLATFORM_VERSION_KEY = "lightstep.tracer_platform_version"
TRACER_VERSION_KEY = "lightstep.tracer_version"

TEXT_MAP = "text_map"
HTTP_HEADERS = "http_headers"
BINARY = "binary"

_logger = logging.getLogger("spantrace")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FlushErrorState(Enum):
    """The stage at which a flush failed."""

    TRANSLATE = "translate"
    TRANSPORT = "transport"
    REPORT = "report"
    TRACER_CLOSED = "tracer_closed"
    TRACER_DISABLED = "tracer_disabled"


class Event:
    """Something the tracer reports about its own operation."""

    def __str__(self) -> str:
        return type(self).__name__


class EventFlushError(Event):
    """A flush could not deliver its report."""

    def __init__(self, error: BaseException, state: FlushErrorState) -> None:
        self.error = error
        self._state = state

    def state(self) -> FlushErrorState:
        return self._state

    def __str__(self) -> str:
        return f"flush failed ({self._state.value}): {self.error}"


@dataclass(frozen=True)
class EventStatusReport(Event):
    """The outcome of one flush."""

    start_time: datetime | None
    finish_time: datetime | None
    sent_spans: int
    dropped_spans: int
    encoding_errors: int
    flush_duration: timedelta

    def __str__(self) -> str:
        return (
            f"status report: sent {self.sent_spans} spans, dropped {self.dropped_spans}, "
            f"{self.encoding_errors} encoding errors, took {self.flush_duration}"
        )


class EventTracerDisabled(Event):
    """The tracer stopped recording and reporting."""

    def __str__(self) -> str:
        return "tracer disabled"


class EventConnectionError(Event):
    """Connecting to or disconnecting from the collector failed."""

    def __init__(self, error: BaseException) -> None:
        self.error = error

    def __str__(self) -> str:
        return f"connection error: {self.error}"


class EventStartError(Event):
    """A tracer could not be created."""

    def __init__(self, error: BaseException) -> None:
        self.error = error

    def __str__(self) -> str:
        return f"tracer failed to start: {self.error}"


class UnsupportedFormatError(ValueError):
    """No propagator is known for the requested carrier format."""


class _CollectorClient(Protocol):
    def connect(self) -> Any: ...

    def translate(self, payload: ReportPayload) -> Any: ...

    def report(self, request: Any, timeout: float) -> Any: ...

    def should_reconnect(self) -> bool: ...


@dataclass
class ReportPayload:
    """The spans and metadata of one report."""

    reporter_id: int
    attributes: dict[str, str]
    access_token: str
    spans: list[RawSpan]
    report_start: datetime | None = None
    report_end: datetime | None = None
    dropped_spans: int = 0
    encoding_errors: int = 0

    def split_by_parts(self, parts: int) -> list[ReportPayload]:
        """Split the spans into at most ``parts`` reports sharing the metadata."""
        count = min(max(parts, 1), len(self.spans))
        if count <= 1:
            return [self]
        chunk = -(-len(self.spans) // count)
        return [
            replace(self, spans=self.spans[offset : offset + chunk])
            for offset in range(0, len(self.spans), chunk)
        ]


@dataclass
class Options:
    """Settings of a tracer."""

    access_token: str = ""
    client: Any = None
    tags: dict[str, Any] = field(default_factory=dict)
    recorder: Any = None
    propagators: dict[Any, Any] = field(default_factory=dict)
    max_buffered_spans: int = DEFAULT_MAX_SPANS
    max_logs_per_span: int = DEFAULT_MAX_LOGS_PER_SPAN
    drop_span_logs: bool = False
    meta_event_reporting_enabled: bool = False
    min_reporting_period: float = DEFAULT_MIN_REPORTING_PERIOD
    reporting_period: float = DEFAULT_REPORTING_PERIOD
    report_timeout: float = DEFAULT_REPORT_TIMEOUT
    grpc_max_call_send_msg_size_bytes: int = DEFAULT_MAX_CALL_SEND_MSG_SIZE_BYTES

    def validate(self) -> None:
        """Raise ValueError when a setting is out of range."""
        if self.max_buffered_spans < 0:
            raise ValueError("max_buffered_spans must not be negative")
        if self.max_logs_per_span < 0:
            raise ValueError("max_logs_per_span must not be negative")
        if self.min_reporting_period <= 0 or self.reporting_period <= 0:
            raise ValueError("reporting periods must be positive")
        if self.report_timeout <= 0:
            raise ValueError("report_timeout must be positive")
        if self.grpc_max_call_send_msg_size_bytes <= 0:
            raise ValueError("grpc_max_call_send_msg_size_bytes must be positive")
        if self.client is None:
            raise ValueError("a collector client is required")


def _default_handler(event: Event) -> None:
    if isinstance(event, (EventFlushError, EventConnectionError, EventStartError)):
        _logger.warning("%s", event)
    else:
        _logger.debug("%s", event)


_handler_lock = threading.Lock()
_event_handler: Callable[[Event], None] = _default_handler


def set_global_event_handler(handler: Callable[[Event], None] | None) -> None:
    """Route tracer events to ``handler``; None restores the logging handler."""
    global _event_handler
    with _handler_lock:
        _event_handler = handler if handler is not None else _default_handler


def emit_event(event: Event) -> None:
    """Pass ``event`` to the global event handler."""
    with _handler_lock:
        handler = _event_handler
    handler(event)


class Tracer:
    """Creates spans, buffers the finished ones and reports them periodically."""

    def __init__(self, options: Options) -> None:
        try:
            options.validate()
        except ValueError as exc:
            raise ValueError(f"init; err: {exc}") from exc

        self._options = options
        attributes = {key: str(value) for key, value in options.tags.items()}
        attributes[TRACER_PLATFORM_KEY] = TRACER_PLATFORM_VALUE
        attributes[TRACER_PLATFORM_VERSION_KEY] = platform.python_version()
        attributes[TRACER_VERSION_KEY] = TRACER_VERSION
        self._attributes = attributes
        self._reporter_id = gen_seeded_guid()
        self._access_token = options.access_token

        self._lock = threading.Lock()
        self._flushing_lock = threading.Lock()
        self._buffer = ReportBuffer(options.max_buffered_spans)
        self._flushing = ReportBuffer(options.max_buffered_spans)
        self._buffer.set_current(_now())

        self._client: _CollectorClient = options.client
        self._connection = self._client.connect()

        self._report_in_flight = False
        self._last_report_attempt: float | None = None
        self.meta_event_reporting_enabled = options.meta_event_reporting_enabled
        self._first_report_has_run = False
        self._disabled = False
        self._propagators = dict(options.propagators)

        self._close_lock = threading.Lock()
        self._closed = False
        self._stop = threading.Event()
        self._loop = threading.Thread(
            target=self._report_loop, name="spantrace-report", daemon=True
        )
        self._loop.start()

    def options(self) -> Options:
        return self._options

    def reporter_id(self) -> int:
        return self._reporter_id

    def start_span(
        self,
        operation_name: str,
        references: Iterable[Reference] = (),
        tags: dict[str, Any] | None = None,
        start_time: datetime | None = None,
        trace_id: int = 0,
        span_id: int = 0,
        parent_span_id: int = 0,
        sampled: str = "",
    ) -> Span:
        return Span(
            self,
            operation_name,
            references=references,
            tags=tags,
            start_time=start_time,
            trace_id=trace_id,
            span_id=span_id,
            parent_span_id=parent_span_id,
            sampled=sampled,
        )

    def _propagator(self, format: Any) -> Any:
        try:
            return self._propagators[format]
        except (KeyError, TypeError):
            raise UnsupportedFormatError(f"unsupported format: {format!r}") from None

    def inject(self, span_context: SpanContext, format: Any, carrier: Any) -> Any:
        """Write ``span_context`` into ``carrier`` with the propagator for ``format``."""
        if self._options.meta_event_reporting_enabled:
            self.start_span(
                META_INJECT_OPERATION,
                tags={
                    META_EVENT_KEY: True,
                    META_TRACE_ID_KEY: span_context.trace_id,
                    META_SPAN_ID_KEY: span_context.span_id,
                    META_PROPAGATION_FORMAT_KEY: format,
                },
            ).finish()
        return self._propagator(format).inject(span_context, carrier)

    def extract(self, format: Any, carrier: Any) -> SpanContext:
        """Read a span context from ``carrier`` with the propagator for ``format``."""
        if self._options.meta_event_reporting_enabled:
            self.start_span(
                META_EXTRACT_OPERATION,
                tags={META_EVENT_KEY: True, META_PROPAGATION_FORMAT_KEY: format},
            ).finish()
        return self._propagator(format).extract(carrier)

    def record_span(self, raw: RawSpan) -> None:
        """Buffer a finished span unless the tracer is disabled or it is unsampled."""
        with self._lock:
            if self._disabled or raw.context.sampled == "false":
                return
            self._buffer.add_span(raw)
        if self._options.recorder is not None:
            self._options.recorder.record_span(raw)

    def flush(self, timeout: float | None = None) -> None:
        """Send all buffered spans to the collector."""
        with self._flushing_lock:
            flush_start = time.perf_counter()

            error_event = self._pre_flush()
            if error_event is not None:
                emit_event(error_event)
                return

            if self._options.meta_event_reporting_enabled and not self._first_report_has_run:
                self.start_span(
                    META_TRACER_CREATE_OPERATION,
                    tags={META_EVENT_KEY: True, META_TRACER_GUID_KEY: self._reporter_id},
                ).finish()
                self._first_report_has_run = True

            parts = self._estimate_parts()
            payload = ReportPayload(
                reporter_id=self._reporter_id,
                attributes=dict(self._attributes),
                access_token=self._access_token,
                spans=list(self._flushing.raw_spans),
                report_start=self._flushing.report_start,
                report_end=self._flushing.report_end,
                dropped_spans=self._flushing.dropped_span_count,
                encoding_errors=self._flushing.log_encoder_error_count,
            )
            try:
                request = self._client.translate(payload)
            except Exception as exc:
                translate_error = EventFlushError(exc, FlushErrorState.TRANSLATE)
                emit_event(translate_error)
                emit_event(self._post_flush(flush_start, translate_error))
                return

            report_error = None
            for part in request.split_by_parts(parts):
                report_error = self._flush_single(part, timeout)
                if report_error is not None:
                    break

            if report_error is not None:
                emit_event(report_error)
            emit_event(self._post_flush(flush_start, report_error))

    def _estimate_parts(self) -> int:
        spans = self._flushing.raw_spans
        count = len(spans)
        if not count:
            return 1
        if count == 1:
            estimate = spans[0].size()
        else:
            estimate = max(spans[random.randrange(count)].size() * count for _ in range(2))
        limit = self._options.grpc_max_call_send_msg_size_bytes
        if estimate > limit:
            return -(-estimate // limit)
        return 1

    def _flush_single(self, request: Any, timeout: float | None) -> EventFlushError | None:
        report_timeout = self._options.report_timeout
        if timeout is not None:
            report_timeout = min(timeout, report_timeout)
        try:
            response = self._client.report(request, report_timeout)
        except Exception as exc:
            return EventFlushError(exc, FlushErrorState.TRANSPORT)

        errors = list(getattr(response, "errors", None) or ())
        self.meta_event_reporting_enabled = bool(getattr(response, "dev_mode", False))
        if getattr(response, "disable", False):
            self.disable()
        if errors:
            return EventFlushError(RuntimeError(str(errors[0])), FlushErrorState.REPORT)
        return None

    def _pre_flush(self) -> EventFlushError | None:
        with self._lock:
            if self._disabled:
                return EventFlushError(
                    RuntimeError("Flush failed, tracer is closed"), FlushErrorState.TRACER_DISABLED
                )
            if self._connection is None:
                return EventFlushError(
                    RuntimeError("Flush failed, tracer is closed"), FlushErrorState.TRACER_CLOSED
                )
            now = _now()
            self._buffer, self._flushing = self._flushing, self._buffer
            self._report_in_flight = True
            self._flushing.set_flushing(now)
            self._buffer.set_current(now)
            self._last_report_attempt = time.monotonic()
            return None

    def _post_flush(
        self, flush_start: float, error: EventFlushError | None
    ) -> EventStatusReport:
        with self._lock:
            duration = timedelta(seconds=time.perf_counter() - flush_start)
            self._report_in_flight = False

            if error is None:
                report = EventStatusReport(
                    self._flushing.report_start,
                    self._flushing.report_end,
                    len(self._flushing),
                    self._flushing.report_dropped_span_count(),
                    self._flushing.report_log_encoder_error_count(),
                    duration,
                )
                self._flushing.clear()
                return report

            start, end = self._flushing.report_start, self._flushing.report_end
            if error.state() is FlushErrorState.TRANSLATE:
                # A report that cannot be translated is not retried.
                self._flushing.clear()
            else:
                self._buffer.merge_from(self._flushing)

            return EventStatusReport(
                start,
                end,
                0,
                self._buffer.report_dropped_span_count(),
                self._buffer.report_log_encoder_error_count(),
                duration,
            )

    def disable(self) -> None:
        """Stop recording and reporting spans for good."""
        with self._lock:
            if self._disabled:
                return
            self._disabled = True
            self._buffer.clear()
        emit_event(EventTracerDisabled())

    def close(self, timeout: float | None = None) -> None:
        """Flush, then disconnect from the collector; later calls do nothing."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        self._stop.set()
        if threading.current_thread() is not self._loop:
            self._loop.join(timeout)
            if self._loop.is_alive():
                return
        self.flush(timeout)

        with self._lock:
            connection, self._connection = self._connection, None
        if connection is not None:
            try:
                connection.close()
            except Exception as exc:
                emit_event(EventConnectionError(exc))

    def _reconnect_client(self) -> None:
        try:
            connection = self._client.connect()
        except Exception as exc:
            emit_event(EventConnectionError(exc))
            return
        with self._lock:
            old, self._connection = self._connection, connection
        if old is not None:
            try:
                old.close()
            except Exception as exc:
                emit_event(EventConnectionError(exc))

    def _should_flush_locked(self, now: float) -> bool:
        if self._last_report_attempt is None:
            return True
        elapsed = now + self._options.min_reporting_period - self._last_report_attempt
        return elapsed > self._options.reporting_period or self._buffer.is_half_full()

    def _report_loop(self) -> None:
        while not self._stop.wait(self._options.min_reporting_period):
            with self._lock:
                disabled = self._disabled
                reconnect = not self._report_in_flight and self._client.should_reconnect()
                should_flush = self._should_flush_locked(time.monotonic())
            if disabled:
                return
            if should_flush:
                self.flush()
            if reconnect:
                self._reconnect_client()


def create_tracer(options: Options) -> Tracer:
    """Create and start a tracer, raising when that is not possible."""
    return Tracer(options)


def new_tracer(options: Options) -> Tracer | None:
    """Create and start a tracer; on failure emit an event and return None."""
    try:
        return Tracer(options)
    except Exception as exc:
        emit_event(EventStartError(exc))
        return None
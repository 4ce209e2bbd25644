"""Spans, their contexts and the raw records handed to a tracer."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Sequence

from .util import gen_seeded_guid, gen_seeded_guid2

META_EVENT_KEY = "lightstep.meta_event"
META_SPAN_ID_KEY = "lightstep.span_id"
META_TRACE_ID_KEY = "lightstep.trace_id"
META_TRACER_GUID_KEY = "lightstep.tracer_guid"
META_PROPAGATION_FORMAT_KEY = "lightstep.propagation_format"
META_SPAN_START_OPERATION = "lightstep.span_start"
META_SPAN_FINISH_OPERATION = "lightstep.span_finish"
META_INJECT_OPERATION = "lightstep.inject_span"
META_EXTRACT_OPERATION = "lightstep.extract_span"
META_TRACER_CREATE_OPERATION = "lightstep.tracer_create"

_ID_BYTES = 8


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ReferenceType(Enum):
    """How a new span relates to a referenced one."""

    CHILD_OF = "child_of"
    FOLLOWS_FROM = "follows_from"


@dataclass(frozen=True)
class Reference:
    """A link from a new span to the context of another span."""

    type: ReferenceType
    context: Any


@dataclass
class SpanContext:
    """Identifiers and baggage that travel with a span."""

    trace_id: int = 0
    span_id: int = 0
    sampled: str = ""
    baggage: dict[str, str] = field(default_factory=dict)

    def with_baggage_item(self, key: str, value: str) -> SpanContext:
        """Return a copy of this context with one more baggage item."""
        baggage = dict(self.baggage)
        baggage[key] = value
        return replace(self, baggage=baggage)


@dataclass
class LogRecord:
    """A timestamped list of key/value fields."""

    timestamp: datetime
    fields: list[tuple[str, Any]] = field(default_factory=list)


@dataclass
class RawSpan:
    """The data of a span as it is handed to a tracer."""

    context: SpanContext = field(default_factory=SpanContext)
    parent_span_id: int = 0
    operation: str = ""
    start: datetime | None = None
    duration: timedelta | None = None
    tags: dict[str, Any] = field(default_factory=dict)
    logs: list[LogRecord] = field(default_factory=list)

    def size(self) -> int:
        """Return a rough estimate of the span's encoded size in bytes."""
        total = 3 * _ID_BYTES + len(self.operation) + len(self.context.sampled)
        total += sum(len(k) + len(str(v)) for k, v in self.context.baggage.items())
        total += sum(len(k) + len(str(v)) for k, v in self.tags.items())
        for record in self.logs:
            total += _ID_BYTES + sum(len(k) + len(str(v)) for k, v in record.fields)
        return total


def rotate_log_buffer(buf: list, pos: int) -> None:
    """Rotate ``buf`` in place so that items ``0..pos-1`` move to the end."""
    if not buf:
        return
    pos %= len(buf)
    buf[:] = buf[pos:] + buf[:pos]


def _interleaved_fields(args: Sequence[Any]) -> list[tuple[str, Any]]:
    if len(args) % 2:
        raise ValueError(f"non-even keyValues len: {len(args)}")
    pairs = list(zip(args[::2], args[1::2]))
    for number, (key, _) in enumerate(pairs):
        if not isinstance(key, str):
            raise TypeError(f"non-string key (pair #{number}): {type(key).__name__}")
    return pairs


class Span:
    """A timed operation that is recorded with its tracer when finished.

    The tracer must provide ``options()`` (with ``max_logs_per_span``,
    ``drop_span_logs`` and ``meta_event_reporting_enabled``), ``record_span``
    and ``start_span``.
    """

    def __init__(
        self,
        tracer: Any,
        operation_name: str,
        references: Iterable[Reference] = (),
        tags: dict[str, Any] | None = None,
        start_time: datetime | None = None,
        trace_id: int = 0,
        span_id: int = 0,
        parent_span_id: int = 0,
        sampled: str = "",
    ) -> None:
        self._tracer = tracer
        self._lock = threading.Lock()
        self._finished = False
        self._num_dropped_logs = 0

        raw = RawSpan()
        # Span and parent IDs mean nothing without a trace ID.
        if trace_id:
            raw.context.trace_id = trace_id
            raw.context.span_id = span_id
            raw.parent_span_id = parent_span_id
        if sampled:
            raw.context.sampled = sampled

        first = next(iter(references), None)
        if first is not None and isinstance(first.context, SpanContext):
            parent = first.context
            raw.context.trace_id = parent.trace_id
            raw.parent_span_id = parent.span_id
            raw.context.sampled = parent.sampled
            raw.context.baggage = dict(parent.baggage)

        if not raw.context.trace_id:
            raw.context.trace_id, raw.context.span_id = gen_seeded_guid2()
        elif not raw.context.span_id:
            raw.context.span_id = gen_seeded_guid()

        raw.operation = operation_name
        raw.start = start_time if start_time is not None else _now()
        raw.tags = dict(tags) if tags else {}
        self._raw = raw

        if self._options().meta_event_reporting_enabled and not self.is_meta():
            self._emit_meta(META_SPAN_START_OPERATION)

    def _options(self) -> Any:
        return self._tracer.options()

    def _emit_meta(self, operation: str) -> None:
        self._tracer.start_span(
            operation,
            tags={
                META_EVENT_KEY: True,
                META_SPAN_ID_KEY: self._raw.context.span_id,
                META_TRACE_ID_KEY: self._raw.context.trace_id,
            },
        ).finish()

    @property
    def tracer(self) -> Any:
        return self._tracer

    def set_operation_name(self, operation_name: str) -> Span:
        with self._lock:
            if not self._finished:
                self._raw.operation = operation_name
        return self

    def set_tag(self, key: str, value: Any) -> Span:
        with self._lock:
            if not self._finished:
                self._raw.tags[key] = value
        return self

    def log_kv(self, *args: Any) -> None:
        """Log alternating keys and values; a malformed list logs an error."""
        try:
            fields = _interleaved_fields(args)
        except (ValueError, TypeError) as exc:
            self._log_field_list([("error", str(exc)), ("function", "LogKV")])
            return
        self._log_field_list(fields)

    def log_fields(self, **kwargs: Any) -> None:
        self._log_field_list(list(kwargs.items()))

    def _log_field_list(self, fields: list[tuple[str, Any]]) -> None:
        with self._lock:
            if self._finished or self._options().drop_span_logs:
                return
            self._append_log(LogRecord(_now(), fields))

    def log_event(self, event: str) -> None:
        self.log(event)

    def log_event_with_payload(self, event: str, payload: Any) -> None:
        self.log(event, payload)

    def log(self, event: str = "", payload: Any = None, timestamp: datetime | None = None) -> None:
        """Log an event, with an optional payload, as one record."""
        with self._lock:
            if self._finished or self._options().drop_span_logs:
                return
            fields: list[tuple[str, Any]] = []
            if event:
                fields.append(("event", event))
            if payload is not None:
                fields.append(("payload", payload))
            self._append_log(LogRecord(timestamp if timestamp is not None else _now(), fields))

    def _append_log(self, record: LogRecord) -> None:
        logs = self._raw.logs
        max_logs = self._options().max_logs_per_span
        if not max_logs or len(logs) < max_logs:
            logs.append(record)
            return
        # Keep the oldest logs untouched; the rest is a ring that is overwritten.
        num_old = (max_logs - 1) // 2
        num_new = max_logs - num_old
        logs[num_old + self._num_dropped_logs % num_new] = record
        self._num_dropped_logs += 1

    def finish(
        self,
        finish_time: datetime | None = None,
        log_records: Iterable[LogRecord] = (),
    ) -> None:
        """Finish the span and hand it to the tracer; later calls do nothing."""
        with self._lock:
            if self._finished:
                return
            self._finished = True

            end = finish_time if finish_time is not None else _now()
            duration = end - self._raw.start

            for record in log_records:
                self._append_log(record)

            logs = self._raw.logs
            if self._num_dropped_logs:
                num_old = (len(logs) - 1) // 2
                num_new = len(logs) - num_old
                ring = logs[num_old:]
                rotate_log_buffer(ring, self._num_dropped_logs % num_new)
                logs[num_old:] = ring
                # The oldest of the newer logs makes way for a summary record.
                logs[num_old] = LogRecord(
                    timestamp=logs[num_old].timestamp,
                    fields=[
                        ("event", "dropped Span logs"),
                        ("dropped_log_count", self._num_dropped_logs + 1),
                        ("component", "basictracer"),
                    ],
                )

            self._raw.duration = duration
            self._tracer.record_span(self._raw)
            if self._options().meta_event_reporting_enabled and not self.is_meta():
                self._emit_meta(META_SPAN_FINISH_OPERATION)

    def context(self) -> SpanContext:
        return self._raw.context

    def set_baggage_item(self, key: str, value: str) -> Span:
        with self._lock:
            if not self._finished:
                self._raw.context = self._raw.context.with_baggage_item(key, value)
        return self

    def baggage_item(self, key: str) -> str | None:
        """Return the baggage value for ``key``, or None when it is absent."""
        with self._lock:
            return self._raw.context.baggage.get(key)

    def operation(self) -> str:
        return self._raw.operation

    def start(self) -> datetime:
        return self._raw.start

    def is_meta(self) -> bool:
        return self._raw.tags.get(META_EVENT_KEY) is not None
# spantrace

`spantrace` records spans and hands them in batches to a collector client
that you supply. A span is a named, timed operation that carries tags, logs
and baggage.

Finished spans wait in a bounded buffer. A background thread wakes every
`min_reporting_period` seconds. It flushes the buffer in three cases: on its
first wake-up, when `reporting_period` has run out, or when the buffer is more
than half full. If a span arrives while the buffer is full, the span is
dropped and counted. The count is given in the next status report.

## Installation

```
pip install spantrace
```

To run the tests:

```
pip install "spantrace[test]"
pytest
```

## Collector clients

The tracer does not send anything over the network itself. You pass it a
client object as `Options.client`. The client must provide these methods:

- `connect()` returns a connection object, which must have a `close()`
  method. The tracer calls `connect()` once when it is created. It calls it
  again whenever `should_reconnect()` returns true.
- `translate(payload)` receives a `ReportPayload`. It returns a request
  object with a `split_by_parts(parts)` method. `ReportPayload` has such a
  method itself, so returning the payload unchanged works.
- `report(request, timeout)` sends one request and returns a response.
  The tracer looks for three optional attributes on the response:
  - `errors`: a non-empty list means the report failed.
  - `dev_mode`: turns meta-event reporting on or off.
  - `disable`: if true, the tracer disables itself.

  If `report` raises an exception, the flush counts as a transport failure.
- `should_reconnect()` returns whether the report loop should reconnect.

## Quick start

```python
from types import SimpleNamespace

from spantrace.tracer import Options, create_tracer


class Connection:
    def close(self):
        pass


class PrintingClient:
    def connect(self):
        return Connection()

    def translate(self, payload):
        return payload

    def report(self, request, timeout):
        for raw in request.spans:
            print(raw.operation, raw.duration, raw.tags)
        return SimpleNamespace(errors=[], dev_mode=False, disable=False)

    def should_reconnect(self):
        return False


tracer = create_tracer(Options(access_token="token", client=PrintingClient()))

span = tracer.start_span("load_user", tags={"component": "users"})
span.set_tag("user.id", 42)
span.log_event("cache_miss")
span.log_fields(event="query", rows=1)
span.finish()

tracer.flush()
tracer.close()
```

`create_tracer` raises an exception if the tracer cannot be set up, for
example when `client` is missing or a setting is out of range. `new_tracer`
emits an `EventStartError` instead and returns `None`.

## Options

`Options` is a dataclass. Its fields and defaults are:

- `access_token` (`""`): the access token.
- `client`: the collector client. It is required.
- `tags` (`{}`): tags added as string attributes to every report.
- `recorder`: an optional object. Each span that is buffered is also passed to
  its `record_span(raw)` method.
- `propagators` (`{}`): maps each format to an object with
  `inject(context, carrier)` and `extract(carrier)` methods.
- `max_buffered_spans` (1000): the size of the span buffer.
- `max_logs_per_span` (500): the maximum number of logs per span; 0 means no
  limit.
- `drop_span_logs` (`False`): if true, logging on a span is ignored.
- `meta_event_reporting_enabled` (`False`): if true, the tracer records extra
  spans about itself, such as span starts, finishes, injects and extracts.
- `min_reporting_period` (0.5), `reporting_period` (2.5), `report_timeout`
  (30.0): times in seconds.
- `grpc_max_call_send_msg_size_bytes`: the estimated size above which one
  flush is split into several reports.

## Spans

`Tracer.start_span(operation_name, references=(), tags=None, start_time=None,
trace_id=0, span_id=0, parent_span_id=0, sampled="")` returns a `Span`.

- A span that has a `Reference` whose context is a `SpanContext` copies from
  that parent:
  - the trace id,
  - the span id, which becomes its parent span id,
  - the sampling flag,
  - the baggage.

  Only the first reference is looked at.
- If no trace id is given, one is generated.
- A span whose `sampled` flag is `"false"` is not buffered.
- `set_tag`, `set_operation_name` and `set_baggage_item` return the span.
  They are ignored once the span is finished. Calling `finish` a second time
  does nothing.
- There are several ways to log:
  - `log_kv(*args)` takes alternating keys and values. A list of odd length,
    or a key that is not a string, logs an error record instead.
  - `log_fields(**kwargs)` takes the fields as keyword arguments.
  - `log(event, payload, timestamp)` logs one record.
  - `log_event` and `log_event_with_payload` are shortcuts for `log`.
- When the number of logs goes past `max_logs_per_span`, the span keeps its
  oldest and its newest logs. In place of the logs in between, it keeps one
  record with a `dropped_log_count` field.

## Propagation

`Tracer.inject(span_context, format, carrier)` uses the propagator registered
for `format` in `Options.propagators`. `Tracer.extract(format, carrier)` does
the same. If no propagator is registered for the format, both raise
`UnsupportedFormatError`. The module defines the format names `TEXT_MAP`,
`HTTP_HEADERS` and `BINARY`, but it registers no propagators for them.

## Events

The tracer reports what happens to it through events:

- `EventFlushError`: a flush failed. `state()` returns a `FlushErrorState`,
  one of `TRANSLATE`, `TRANSPORT`, `REPORT`, `TRACER_CLOSED` or
  `TRACER_DISABLED`.
- `EventStatusReport`: the outcome of a flush. It has the fields
  `sent_spans`, `dropped_spans`, `encoding_errors` and `flush_duration`.
- `EventTracerDisabled`, `EventConnectionError`, `EventStartError`.

Spans from a report that fails in transport are put back into the buffer, as
far as they fit. Spans from a report that fails to translate are not.

By default, events are written to the `spantrace` logger. To install your own
handler:

```python
from spantrace.tracer import EventFlushError, set_global_event_handler

def on_event(event):
    if isinstance(event, EventFlushError):
        print("flush failed:", event.state())

set_global_event_handler(on_event)
```

Passing `None` restores the logging handler.

## Helpers

`spantrace.helpers` provides functions that take a `Tracer` or a
`LegacyTracer`:

- `flush` and `close` emit an `UnsupportedTracerError` event if they are given
  any other object.
- `flush_tracer`, `close_tracer`, `get_access_token` and `get_reporter_id`
  raise `UnsupportedTracerError` if they are given any other object.

`LegacyTracer(options)` builds a tracer with `new_tracer`. Its `flush()` and
`close()` take no arguments. Any other attribute is passed through to the
tracer it wraps.

Identifiers come from `spantrace.util.gen_seeded_guid` and
`gen_seeded_guid2`. Both draw random unsigned 64-bit numbers from a pool of
seeded generators.

## What it does not do

- `spantrace` has no network transport and no wire encoding. Delivering
  reports to a collector is up to the client you supply.
- It ships no ready-made propagators for text maps, HTTP headers or binary
  carriers.
- It provides no command-line program.
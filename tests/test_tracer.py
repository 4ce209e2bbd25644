import queue
import threading
from types import SimpleNamespace

import pytest

from spantrace.span import Reference, ReferenceType, SpanContext
from spantrace.tracer import (
    DEFAULT_MAX_SPANS,
    TEXT_MAP,
    EventFlushError,
    EventStartError,
    EventStatusReport,
    EventTracerDisabled,
    FlushErrorState,
    Options,
    ReportPayload,
    Tracer,
    UnsupportedFormatError,
    create_tracer,
    emit_event,
    new_tracer,
    set_global_event_handler,
)
from spantrace.util import TRACER_VERSION


class FakeConnection:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class FakeClient:
    def __init__(self):
        self.requests = []
        self.failures = []
        self.report_hook = None
        self.translate_error = None
        self.response = SimpleNamespace(errors=[], dev_mode=False, disable=False)
        self.connections = []

    def connect(self):
        connection = FakeConnection()
        self.connections.append(connection)
        return connection

    def translate(self, payload):
        if self.translate_error is not None:
            raise self.translate_error
        return payload

    def report(self, request, timeout):
        self.requests.append(request)
        if self.report_hook is not None:
            self.report_hook(request)
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        return self.response

    def should_reconnect(self):
        return False

    def reported_spans(self):
        return [span for request in self.requests for span in request.spans]


class FakeRecorder:
    def __init__(self):
        self.spans = []

    def record_span(self, raw):
        self.spans.append(raw)


class DictPropagator:
    def inject(self, context, carrier):
        carrier["trace"] = context.trace_id
        carrier["span"] = context.span_id

    def extract(self, carrier):
        return SpanContext(trace_id=carrier["trace"], span_id=carrier["span"])


def drain(events):
    items = []
    while True:
        try:
            items.append(events.get_nowait())
        except queue.Empty:
            return items


def make_options(client, **kwargs):
    return Options(
        access_token="token",
        client=client,
        tags={"lightstep.component_name": "test-service"},
        min_reporting_period=100.0,
        **kwargs,
    )


@pytest.fixture
def events():
    received = queue.Queue()
    set_global_event_handler(received.put)
    yield received
    set_global_event_handler(None)


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def recorder():
    return FakeRecorder()


@pytest.fixture
def tracer(client, recorder, events):
    instance = Tracer(make_options(client, recorder=recorder))
    yield instance
    instance.close(timeout=5)


def test_span_can_be_finished_and_reported(tracer, client):
    span = tracer.start_span("operation_name")
    span.finish()
    tracer.flush()
    assert len(client.requests) == 1
    reported = client.requests[0].spans
    assert [s.operation for s in reported] == [span.operation()]
    assert reported[0].context.span_id == span.context().span_id


def test_span_finished_twice_reports_once(tracer, client):
    span = tracer.start_span("operation_name")
    span.finish()
    span.finish()
    tracer.flush()
    assert len(client.requests) == 1
    reported = client.requests[0].spans
    assert [s.context.span_id for s in reported] == [span.context().span_id]


def test_reference_to_internal_span(tracer, client):
    parent = tracer.start_span("other")
    child = tracer.start_span("test", references=[Reference(ReferenceType.CHILD_OF, parent.context())])
    child.finish()
    tracer.flush()
    raw = client.reported_spans()[0]
    assert raw.context.trace_id == parent.context().trace_id
    assert raw.parent_span_id == parent.context().span_id


def test_reference_to_external_context(tracer, client):
    child = tracer.start_span("test", references=[Reference(ReferenceType.CHILD_OF, object())])
    child.finish()
    tracer.flush()
    raw = client.reported_spans()[0]
    assert raw.parent_span_id == 0
    assert child.context().trace_id > 0
    assert raw.context.trace_id == child.context().trace_id


def test_log_records_event_and_payload(tracer, client):
    span = tracer.start_span("test")
    span.log(event="event", payload="test")
    span.finish()
    tracer.flush()
    reported = client.reported_spans()[0]
    assert reported.context.span_id == span.context().span_id
    assert len(reported.logs) == 1
    assert reported.logs[0].fields == [("event", "event"), ("payload", "test")]


def test_log_fields(tracer, client):
    span = tracer.start_span("test")
    span.log_fields(event="test")
    span.finish()
    tracer.flush()
    reported = client.reported_spans()[0]
    assert reported.context.span_id == span.context().span_id
    assert [record.fields for record in reported.logs] == [[("event", "test")]]


def test_set_tag(tracer, client):
    span = tracer.start_span("test")
    span.set_tag("a", "bc")
    span.finish()
    tracer.flush()
    reported = client.reported_spans()[0]
    assert reported.context.span_id == span.context().span_id
    assert reported.tags == {"a": "bc"}


@pytest.mark.parametrize("action", ["log", "log_fields", "set_tag"])
def test_span_changes_concurrent_with_flush(tracer, client, action):
    span = tracer.start_span("test")
    span.log(event="event", payload="test")
    span.finish()

    def mutate():
        if action == "log":
            span.log(event="another", payload="abc")
        elif action == "log_fields":
            span.log_fields(another="abc")
        else:
            span.set_tag("a", "bc")

    threads = [threading.Thread(target=mutate), threading.Thread(target=tracer.flush)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)
    assert len(client.requests) == 1
    reported = client.reported_spans()[0]
    assert reported.context.span_id == span.context().span_id
    assert len(reported.logs) == 1


def test_access_token_and_attributes(tracer, client):
    assert tracer.options().access_token == "token"
    tracer.start_span("x").finish()
    tracer.flush()
    attributes = client.requests[0].attributes
    assert attributes["lightstep.component_name"] == "test-service"
    assert attributes["lightstep.tracer_version"] == TRACER_VERSION
    assert client.requests[0].access_token == "token"


def test_unsampled_span_is_not_recorded(tracer, recorder):
    span = tracer.start_span("parent", trace_id=1, sampled="false")
    span.finish()
    assert span.context().sampled == "false"
    assert span.context().trace_id == 1
    assert recorder.spans == []


def test_sampled_span_is_recorded(tracer, recorder):
    first = tracer.start_span("parent", trace_id=1, sampled="true")
    first.finish()
    assert first.context().sampled == "true"
    assert [raw.context.span_id for raw in recorder.spans] == [first.context().span_id]

    second = tracer.start_span("parent", trace_id=1, sampled="fals")
    second.finish()
    assert second.context().sampled == "fals"
    assert [raw.context.span_id for raw in recorder.spans] == [
        first.context().span_id,
        second.context().span_id,
    ]


def test_sampled_flag_propagates_to_child(tracer):
    parent = tracer.start_span("parent", trace_id=1, sampled="false")
    child = tracer.start_span("child", references=[Reference(ReferenceType.CHILD_OF, parent.context())])
    assert child.context().sampled == "false"
    assert child.context().trace_id == 1


def test_dropping_spans_emits_status_report(tracer, events):
    for i in range(DEFAULT_MAX_SPANS + 2):
        tracer.start_span(f"span {i}").finish()
    tracer.flush()
    received = drain(events)
    assert len(received) == 1
    report = received[0]
    assert isinstance(report, EventStatusReport)
    assert report.dropped_spans == 2
    assert report.sent_spans == DEFAULT_MAX_SPANS
    assert report.flush_duration.total_seconds() > 0


def test_disabled_tracer_does_not_flush(tracer, client, events):
    tracer.disable()
    assert [type(e) for e in drain(events)] == [EventTracerDisabled]
    calls = len(client.requests)
    tracer.start_span("these spans should not be recorded").finish()
    tracer.start_span("or flushed").finish()
    tracer.flush()
    assert len(client.requests) == calls
    received = drain(events)
    assert len(received) == 1
    assert isinstance(received[0], EventFlushError)
    assert received[0].state() is FlushErrorState.TRACER_DISABLED


def test_closed_tracer_does_not_flush(tracer, client, events):
    tracer.close()
    calls = len(client.requests)
    assert client.connections[0].closed is True
    tracer.start_span("can't flush this").finish()
    tracer.start_span("hammer time").finish()
    tracer.flush()
    assert len(client.requests) == calls
    received = drain(events)
    assert len(received) == 2
    assert isinstance(received[0], EventStatusReport)
    assert isinstance(received[1], EventFlushError)
    assert received[1].state() is FlushErrorState.TRACER_CLOSED


def test_failed_report_restores_spans(tracer, client):
    client.failures = [RuntimeError("fail")]
    first = tracer.start_span("if at first you don't succeed...")
    first.finish()
    second = tracer.start_span("...copy flushing back into your buffer")
    second.finish()
    expected_ids = [first.context().span_id, second.context().span_id]

    tracer.flush()
    assert [s.context.span_id for s in client.reported_spans()] == expected_ids
    tracer.flush()
    assert [s.context.span_id for s in client.reported_spans()] == expected_ids * 2


def test_failed_report_emits_error_and_status(tracer, client, events):
    client.failures = [RuntimeError("fail")]
    tracer.flush()
    received = drain(events)
    assert len(received) == 2
    assert isinstance(received[0], EventFlushError)
    assert received[0].state() is FlushErrorState.TRANSPORT
    assert isinstance(received[1], EventStatusReport)
    assert received[1].dropped_spans == 0
    assert received[1].flush_duration.total_seconds() > 0


def test_failed_reports_with_full_buffer(tracer, client, events):
    filled = []

    def fill(_request):
        if not filled:
            filled.append(True)
            for i in range(DEFAULT_MAX_SPANS):
                tracer.start_span(f"span {i}").finish()
        raise RuntimeError("fail")

    client.report_hook = fill
    tracer.start_span("if at first you don't succeed...").finish()
    tracer.start_span("...fail to copy flushing back into your buffer").finish()

    expected = [(2, 2), (DEFAULT_MAX_SPANS + 2, 0), (2 * DEFAULT_MAX_SPANS + 2, 0)]
    for total, dropped in expected:
        tracer.flush()
        assert len(client.reported_spans()) == total
        received = drain(events)
        assert len(received) == 2
        assert received[0].state() is FlushErrorState.TRANSPORT
        report = received[1]
        assert report.sent_spans == 0
        assert report.dropped_spans == dropped
        assert report.encoding_errors == 0


def test_flush_waits_for_report_in_flight(tracer, client):
    started = threading.Event()
    release = threading.Event()

    def hook(_request):
        started.set()
        release.wait(5)

    client.report_hook = hook
    first = threading.Thread(target=tracer.flush)
    first.start()
    assert started.wait(5)

    tracer.start_span("these spans should sit in the buffer").finish()
    tracer.start_span("while the last report is in flight").finish()
    second = threading.Thread(target=tracer.flush)
    second.start()
    second.join(0.2)
    assert second.is_alive()
    assert client.reported_spans() == []

    release.set()
    first.join(5)
    second.join(5)
    assert not second.is_alive()
    assert len(client.reported_spans()) == 2


def test_translate_failure_emits_error_and_drops_spans(tracer, client, events):
    for i in range(10):
        tracer.start_span(f"span {i}").finish()
    client.translate_error = RuntimeError("translate failed")
    tracer.flush()
    received = drain(events)
    assert isinstance(received[0], EventFlushError)
    assert received[0].state() is FlushErrorState.TRANSLATE
    assert client.requests == []

    client.translate_error = None
    tracer.flush()
    assert client.reported_spans() == []


def test_report_errors_in_response(tracer, client, events):
    client.response = SimpleNamespace(errors=["bad report"], dev_mode=False, disable=False)
    tracer.start_span("kept").finish()
    tracer.flush()
    received = drain(events)
    assert received[0].state() is FlushErrorState.REPORT
    assert str(received[0].error) == "bad report"
    client.response = SimpleNamespace(errors=[], dev_mode=False, disable=False)
    tracer.flush()
    assert [s.operation for s in client.reported_spans()] == ["kept", "kept"]


def test_response_can_disable_tracer(tracer, client, events):
    client.response = SimpleNamespace(errors=[], dev_mode=False, disable=True)
    tracer.flush()
    assert [type(e) for e in drain(events)] == [EventTracerDisabled, EventStatusReport]
    tracer.flush()
    received = drain(events)
    assert received[0].state() is FlushErrorState.TRACER_DISABLED


def test_close_flushes_buffer_first(tracer, client):
    span = tracer.start_span("span")
    span.finish()
    tracer.close()
    assert [s.context.span_id for s in client.reported_spans()] == [span.context().span_id]
    late = tracer.start_span("span2")
    late.finish()
    tracer.close()
    assert len(client.requests) == 1
    assert late.operation() == "span2"
    assert [s.operation for s in client.reported_spans()] == ["span"]


def test_large_report_is_split(client, events):
    tracer = Tracer(make_options(client, grpc_max_call_send_msg_size_bytes=1))
    try:
        for _ in range(4):
            tracer.start_span("op").finish()
        tracer.flush()
        assert len(client.requests) == 4
        assert [len(r.spans) for r in client.requests] == [1, 1, 1, 1]
    finally:
        tracer.close(timeout=5)


def test_meta_events_are_reported(client, events):
    tracer = Tracer(make_options(client, meta_event_reporting_enabled=True))
    try:
        tracer.start_span("op").finish()
        tracer.flush()
        assert [s.operation for s in client.reported_spans()] == [
            "lightstep.span_start",
            "op",
            "lightstep.span_finish",
        ]
    finally:
        tracer.close(timeout=5)


def test_recorder_called_after_finish(tracer, recorder):
    span = tracer.start_span("span")
    assert recorder.spans == []
    span.finish()
    assert [raw.operation for raw in recorder.spans] == [span.operation()]
    assert recorder.spans[0].context.span_id == span.context().span_id


def test_reporter_id_is_non_zero(tracer):
    assert tracer.reporter_id() > 0


def test_inject_and_extract_with_propagator(client, events):
    tracer = Tracer(make_options(client, propagators={TEXT_MAP: DictPropagator()}))
    try:
        span = tracer.start_span("op")
        carrier = {}
        tracer.inject(span.context(), TEXT_MAP, carrier)
        extracted = tracer.extract(TEXT_MAP, carrier)
        assert extracted.trace_id == span.context().trace_id
        assert extracted.span_id == span.context().span_id
    finally:
        tracer.close(timeout=5)


def test_unknown_format_is_unsupported(tracer):
    span = tracer.start_span("op")
    with pytest.raises(UnsupportedFormatError):
        tracer.inject(span.context(), "nonsense", {})
    with pytest.raises(UnsupportedFormatError):
        tracer.extract("nonsense", {})


def test_create_tracer_without_client_raises():
    with pytest.raises(ValueError):
        create_tracer(Options(access_token="token"))


def test_new_tracer_failure_emits_start_error(events):
    assert new_tracer(Options(access_token="token")) is None
    received = drain(events)
    assert len(received) == 1
    assert isinstance(received[0], EventStartError)


def test_emit_event_reaches_handler(events):
    emit_event(EventTracerDisabled())
    received = drain(events)
    assert [str(e) for e in received] == ["tracer disabled"]


def test_split_by_parts_keeps_metadata():
    payload = ReportPayload(1, {"a": "b"}, "token", list(range(5)), dropped_spans=3)
    parts = payload.split_by_parts(2)
    assert [p.spans for p in parts] == [[0, 1, 2], [3, 4]]
    assert all(p.dropped_spans == 3 and p.reporter_id == 1 for p in parts)
    assert payload.split_by_parts(1) == [payload]
"""Double-buffered storage for finished spans awaiting a report."""

from __future__ import annotations

from datetime import datetime
from typing import Any


def _earlier(a: datetime | None, b: datetime | None) -> bool:
    """Return True when ``a`` lies strictly before ``b``; None is the zero time."""
    if a is None:
        return b is not None
    if b is None:
        return False
    return a < b


def _later(a: datetime | None, b: datetime | None) -> bool:
    """Return True when ``a`` lies strictly after ``b``; None is the zero time."""
    if a is None:
        return False
    if b is None:
        return True
    return a > b


class ReportBuffer:
    """A bounded collection of spans plus the counters sent with a report.

    ``dropped_span_count`` and ``log_encoder_error_count`` grow until the
    buffer is cleared after a successful report. The ``reported_*`` counters
    remember how much of each has already been announced in a status report.
    """

    def __init__(self, size: int) -> None:
        if size < 0:
            raise ValueError("buffer size must not be negative")
        self.capacity = size
        self.raw_spans: list[Any] = []
        self.dropped_span_count = 0
        self.reported_dropped_span_count = 0
        self.log_encoder_error_count = 0
        self.reported_log_encoder_error_count = 0
        self.report_start: datetime | None = None
        self.report_end: datetime | None = None

    def __len__(self) -> int:
        return len(self.raw_spans)

    def is_half_full(self) -> bool:
        """Return True when more than half of the capacity is used."""
        return len(self.raw_spans) > self.capacity // 2

    def set_current(self, now: datetime) -> None:
        """Mark the buffer as collecting from ``now`` on."""
        self.report_start = now
        self.report_end = now

    def set_flushing(self, now: datetime) -> None:
        """Close the buffer's reporting window at ``now``."""
        self.report_end = now

    def clear(self) -> None:
        """Drop all spans, reset the window and every counter."""
        self.raw_spans.clear()
        self.report_start = None
        self.report_end = None
        self.dropped_span_count = 0
        self.reported_dropped_span_count = 0
        self.log_encoder_error_count = 0
        self.reported_log_encoder_error_count = 0

    def add_span(self, span: Any) -> None:
        """Store ``span``, or count it as dropped when the buffer is full."""
        if len(self.raw_spans) >= self.capacity:
            self.dropped_span_count += 1
            return
        self.raw_spans.append(span)

    def merge_from(self, other: ReportBuffer) -> None:
        """Move what fits of ``other`` into this buffer and empty ``other``.

        Counters are added together, the reporting window widened, and spans
        that do not fit are counted as dropped.
        """
        self.dropped_span_count += other.dropped_span_count
        self.reported_dropped_span_count += other.reported_dropped_span_count
        self.log_encoder_error_count += other.log_encoder_error_count
        self.reported_log_encoder_error_count += other.reported_log_encoder_error_count

        if _earlier(other.report_start, self.report_start):
            self.report_start = other.report_start
        if _later(other.report_end, self.report_end):
            self.report_end = other.report_end

        space = max(self.capacity - len(self.raw_spans), 0)
        unreported = len(other.raw_spans)
        taken = min(space, unreported)
        self.raw_spans.extend(other.raw_spans[:taken])
        if unreported > taken:
            self.dropped_span_count += unreported - taken

        other.clear()

    def report_dropped_span_count(self) -> int:
        """Return spans dropped since the last call and mark them reported."""
        to_report = self.dropped_span_count - self.reported_dropped_span_count
        self.reported_dropped_span_count = self.dropped_span_count
        return to_report

    def report_log_encoder_error_count(self) -> int:
        """Return encoder errors since the last call and mark them reported."""
        to_report = self.log_encoder_error_count - self.reported_log_encoder_error_count
        self.reported_log_encoder_error_count = self.log_encoder_error_count
        return to_report
"""Functions that work on any tracer, and the older tracer interface."""

from __future__ import annotations

from typing import Any

from .tracer import Event, Options, Tracer, emit_event, new_tracer


class UnsupportedTracerError(Event, TypeError):
    """The given object is not a tracer this package can operate on."""

    def __init__(self, tracer: Any) -> None:
        self.tracer = tracer
        super().__init__(f"unsupported tracer type: {type(tracer).__name__}")

    def __str__(self) -> str:
        return f"unsupported tracer type: {type(self.tracer).__name__}"


class LegacyTracer:
    """A tracer whose ``close`` and ``flush`` take no arguments.

    Everything else is passed through to the wrapped tracer.
    """

    def __init__(self, options: Options) -> None:
        self.tracer: Tracer | None = new_tracer(options)

    def __getattr__(self, name: str) -> Any:
        return getattr(self.tracer, name)

    def close(self) -> None:
        """Flush, then disconnect the wrapped tracer."""
        self.tracer.close(None)

    def flush(self) -> None:
        """Send the wrapped tracer's buffered spans."""
        self.tracer.flush(None)


def _unwrap(tracer: Any) -> Any:
    while isinstance(tracer, LegacyTracer):
        tracer = tracer.tracer
    return tracer


def flush(tracer: Any, timeout: float | None = None) -> None:
    """Flush ``tracer`` synchronously; an unsupported tracer emits an event."""
    inner = _unwrap(tracer)
    if isinstance(inner, Tracer):
        inner.flush(timeout)
    else:
        emit_event(UnsupportedTracerError(inner))


def close(tracer: Any, timeout: float | None = None) -> None:
    """Flush and then terminate ``tracer``; an unsupported tracer emits an event."""
    inner = _unwrap(tracer)
    if isinstance(inner, Tracer):
        inner.close(timeout)
    else:
        emit_event(UnsupportedTracerError(inner))


def get_access_token(tracer: Any) -> str:
    """Return the access token ``tracer`` was configured with."""
    inner = _unwrap(tracer)
    if isinstance(inner, Tracer):
        return inner.options().access_token
    raise UnsupportedTracerError(inner)


def flush_tracer(tracer: Any) -> None:
    """Flush ``tracer``, raising when it is not supported."""
    inner = _unwrap(tracer)
    if not isinstance(inner, Tracer):
        raise UnsupportedTracerError(inner)
    inner.flush()


def close_tracer(tracer: Any) -> None:
    """Close ``tracer``, raising when it is not supported."""
    inner = _unwrap(tracer)
    if not isinstance(inner, Tracer):
        raise UnsupportedTracerError(inner)
    inner.close()


def get_reporter_id(tracer: Any) -> int:
    """Return the reporter identifier of ``tracer``."""
    inner = _unwrap(tracer)
    if isinstance(inner, Tracer):
        return inner.reporter_id()
    raise UnsupportedTracerError(inner)
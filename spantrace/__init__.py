"""Span recording with buffered, batched reporting through a pluggable collector client."""

__version__ = "0.26.0"

__all__ = ["__version__"]
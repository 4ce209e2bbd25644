"""Identifier generation backed by a pool of seeded random generators."""

from __future__ import annotations

import itertools
import os
import random
import threading
import time

TRACER_VERSION = "0.26.0"

_UINT64_BITS = 64


class _Generator:
    """A single seeded generator guarded by its own lock."""

    def __init__(self, seed: int) -> None:
        self._random = random.Random(seed)
        self._lock = threading.Lock()

    def uint64(self) -> int:
        with self._lock:
            return self._random.getrandbits(_UINT64_BITS)

    def two_uint64(self) -> tuple[int, int]:
        with self._lock:
            return (
                self._random.getrandbits(_UINT64_BITS),
                self._random.getrandbits(_UINT64_BITS),
            )


class RandomPool:
    """A fixed set of generators handed out in turn to spread lock contention."""

    def __init__(self, seed: int, size: int) -> None:
        if size < 1:
            raise ValueError("random pool needs at least one generator")
        self._generators = [_Generator(seed + offset) for offset in range(size)]
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._generators)

    def pick(self) -> _Generator:
        """Return the next generator of the pool."""
        with self._lock:
            index = next(self._counter)
        return self._generators[index % len(self._generators)]


_POOL = RandomPool(time.time_ns(), max(16, os.cpu_count() or 1))


def gen_seeded_guid() -> int:
    """Return a random unsigned 64-bit identifier."""
    return _POOL.pick().uint64()


def gen_seeded_guid2() -> tuple[int, int]:
    """Return two random unsigned 64-bit identifiers."""
    return _POOL.pick().two_uint64()
"""
Wall-time and allocation measurement for the per-step diagnostics table.

Allocations are the net traced memory growth in MiB and are only non-zero when
tracemalloc is tracing (e.g. the driver's --trace-alloc flag).
"""

from __future__ import annotations

import time
import tracemalloc
from dataclasses import dataclass

MIB = 1024.0**2


@dataclass(slots=True)
class StepTimer:
    """Context manager accumulating elapsed seconds and allocated MiB."""

    seconds: float = 0.0
    mib: float = 0.0
    _t0: float = 0.0
    _m0: int = 0

    def __enter__(self) -> "StepTimer":
        self._t0 = time.perf_counter()
        self._m0 = tracemalloc.get_traced_memory()[0] if tracemalloc.is_tracing() else 0
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.seconds += time.perf_counter() - self._t0
        if tracemalloc.is_tracing():
            self.mib += max(0, tracemalloc.get_traced_memory()[0] - self._m0) / MIB

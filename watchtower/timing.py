from __future__ import annotations

import time
from typing import Callable

PHASES = ("start", "lookup", "connect", "secureConnect", "readable", "end", "close")

# interval name -> endpoint pairs, first pair with both endpoints recorded wins
INTERVALS: dict[str, tuple[tuple[str, str], ...]] = {
    "lookup": (("start", "lookup"),),
    "connect": (("lookup", "connect"), ("start", "connect")),
    "secureConnect": (("connect", "secureConnect"),),
    "readable": (("secureConnect", "readable"), ("connect", "readable")),
    "close": (("readable", "close"),),
    "total": (("start", "close"),),
}

MISSING = -1


def ns_to_ms(value: int) -> int:
    return (int(value) + 500_000) // 1_000_000


class TimingRecorder:
    """Named instants for a single probe.

    Each phase is stored once (first write wins). `finalize()` freezes the
    recorder and derives the millisecond durations exactly once.
    """

    def __init__(self, clock: Callable[[], int] = time.perf_counter_ns) -> None:
        self._clock = clock
        self._events: dict[str, int] = {}
        self._durations: dict[str, int] | None = None
        self.record("start")

    @property
    def finalized(self) -> bool:
        return self._durations is not None

    def record(self, phase: str) -> bool:
        if phase not in PHASES:
            raise ValueError(f"Unknown timing phase {phase!r}")
        if self._durations is not None or phase in self._events:
            return False
        self._events[phase] = int(self._clock())
        return True

    def has(self, phase: str) -> bool:
        return phase in self._events

    def snapshot(self) -> dict[str, int]:
        return dict(self._events)

    def finalize(self) -> dict[str, int]:
        if self._durations is None:
            self._durations = compute_durations(self._events)
        return dict(self._durations)


def compute_durations(events: dict[str, int]) -> dict[str, int]:
    out: dict[str, int] = {}
    for name, pairs in INTERVALS.items():
        value = MISSING
        for a, b in pairs:
            if a in events and b in events:
                value = ns_to_ms(events[b]) - ns_to_ms(events[a])
                break
        out[name] = value
    return out

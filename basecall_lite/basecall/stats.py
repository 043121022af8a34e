"""
Stats snapshots and timing helpers.

A stats snapshot is a flat mapping of counter name to numeric value, pulled
on demand by an external aggregator.
"""

import time
from typing import Dict

NamedStats = Dict[str, float]


class Timer:
    """Wall-clock timer in milliseconds.

    Example:
        with Timer() as timer:
            run()
        elapsed = timer.elapsed_ms
    """

    def __init__(self) -> None:
        self.start_s = time.perf_counter()
        self.end_s = None

    def __enter__(self) -> "Timer":
        self.start_s = time.perf_counter()
        self.end_s = None
        return self

    def __exit__(self, *exc) -> None:
        self.end_s = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        end = self.end_s if self.end_s is not None else time.perf_counter()
        return (end - self.start_s) * 1000.0


def merge_stats(*snapshots: NamedStats) -> NamedStats:
    """Merge snapshots left to right; later values win on name clashes."""
    merged: NamedStats = {}
    for snapshot in snapshots:
        merged.update(snapshot)
    return merged

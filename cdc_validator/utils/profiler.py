"""
Lightweight profiling for per-table pipeline stages.

``profile_block`` measures wall-clock duration and samples peak RSS on a
background thread (psutil). RSS belongs to the whole process: with several
tables in flight it is the process peak while the block ran, not the memory
of that one table.

Usage:
    with profile_block("orders") as stats:
        await replay(...)
    report.extra["profile"] = stats.as_dict()
"""

from __future__ import annotations

import contextlib
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Generator, Optional

import psutil


@dataclass
class ProfileStats:
    """
    Container for profiling measurements.
    """

    label: str
    start_ts: float = field(default=0.0)
    end_ts: float = field(default=0.0)
    duration_seconds: float = field(default=0.0)
    process_peak_rss_bytes: Optional[int] = field(default=None)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "duration_seconds": round(self.duration_seconds, 3),
            "process_peak_rss_bytes": self.process_peak_rss_bytes,
        }


@contextlib.contextmanager
def profile_block(label: str, sample_interval_ms: int = 100) -> Generator[ProfileStats, None, None]:
    """
    Profile a block: wall-clock duration plus sampled peak RSS.

    Parameters
    ----------
    label : str
        Human-friendly label for the profiled block (usually the table name).
    sample_interval_ms : int
        Interval in milliseconds between RSS samples.
    """
    stats = ProfileStats(label=label)
    process = psutil.Process()
    peak_rss = process.memory_info().rss
    stop_sampling = threading.Event()

    def _sample_memory() -> None:
        nonlocal peak_rss
        while not stop_sampling.is_set():
            try:
                peak_rss = max(peak_rss, process.memory_info().rss)
            except psutil.Error:
                return
            stop_sampling.wait(timeout=sample_interval_ms / 1000.0)

    sampler = threading.Thread(target=_sample_memory, daemon=True)
    sampler.start()

    stats.start_ts = time.perf_counter()
    try:
        yield stats
    finally:
        stats.end_ts = time.perf_counter()
        stats.duration_seconds = stats.end_ts - stats.start_ts
        stop_sampling.set()
        sampler.join(timeout=1.0)
        stats.process_peak_rss_bytes = peak_rss


__all__ = ["ProfileStats", "profile_block"]

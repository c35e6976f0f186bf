"""
Sampling configuration.

All tunables that the pipeline reads are gathered in one immutable value
that is passed to the coordinator at construction.  The window length and
slide are derived from it and therefore stay fixed for a whole session.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

# Frame rates the bandpass kernel is designed for, preferred rate first.
SUPPORTED_FRAME_RATES: tuple[int, ...] = (60,)

# Heart-rate bounds (BPM) used by the signal processor.
MIN_HEART_RATE = 40.0
MAX_HEART_RATE = 200.0
# Fastest plausible period, used to size the peak-emphasis window.
PEAK_EMPHASIS_HEART_RATE = 220.0

# Length of the FIR bandpass kernel; its edges are cut from every window.
FILTER_TAPS = 129


@dataclass(frozen=True)
class SamplerConfig:
    """
    Immutable configuration of one recording session.

    Parameters
    ----------
    fps:
        Camera frame rate.  Must be one of ``SUPPORTED_FRAME_RATES``.
    window_seconds:
        Length of each analysis window in seconds.
    settle_seconds:
        Time the simulated source waits before it starts emitting samples.
    min_confidence:
        Confidence a reading must exceed before it is published as the
        current heart rate.
    min_red_level:
        Minimum fraction of red-dominant pixels for the lens to count as
        covered.
    ingest_queue_size:
        Capacity of the capture → ingest hand-off.  Samples arriving while
        it is full are dropped.
    compute_workers:
        Number of threads computing heart rates from completed windows.
    """

    fps: int = SUPPORTED_FRAME_RATES[0]
    window_seconds: float = 10.0
    settle_seconds: float = 3.0
    min_confidence: float = 0.5
    min_red_level: float = 0.9
    ingest_queue_size: int = 1200
    compute_workers: int = 2

    def __post_init__(self) -> None:
        if self.fps not in SUPPORTED_FRAME_RATES:
            raise ValueError(
                f"Unsupported frame rate {self.fps}; "
                f"expected one of {SUPPORTED_FRAME_RATES}"
            )
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if self.settle_seconds < 0:
            raise ValueError("settle_seconds must not be negative")
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValueError("min_confidence must lie in [0, 1]")
        if not 0.0 <= self.min_red_level <= 1.0:
            raise ValueError("min_red_level must lie in [0, 1]")
        if self.ingest_queue_size < 1:
            raise ValueError("ingest_queue_size must be at least 1")
        if self.compute_workers < 1:
            raise ValueError("compute_workers must be at least 1")
        if self.window_len < self.min_window_len:
            raise ValueError(
                f"A {self.window_seconds} s window at {self.fps} fps is too short to "
                f"resolve {MIN_HEART_RATE} BPM after filtering; "
                f"at least {self.min_window_len} samples are needed"
            )

    @property
    def window_len(self) -> int:
        """Number of samples in one analysis window."""
        return int(round(self.fps * self.window_seconds))

    @property
    def min_window_len(self) -> int:
        """Shortest window that still holds the slowest beat after filtering."""
        return FILTER_TAPS + int(math.floor(60.0 * self.fps / MIN_HEART_RATE + 0.5))

    @property
    def half_window(self) -> int:
        """Number of new samples between two consecutive windows."""
        return self.window_len // 2

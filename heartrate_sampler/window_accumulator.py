"""
Sliding-window accumulator for covered colour samples.

Samples are buffered until a full analysis window is available.  Each
window is then cut from the front of the buffer and the buffer slides
forward by half a window, so consecutive windows overlap by 50 %.
"""

from __future__ import annotations

from typing import List, NamedTuple, Optional

import numpy as np

from .samples import ColorSample


class AnalysisWindow(NamedTuple):
    """One window of green-channel values ready for heart rate analysis."""

    index: int          # completion order within the session, from 0
    uptime: float       # uptime of the window's midpoint sample
    channel: np.ndarray


class WindowAccumulator:
    """
    Buffer covered samples and emit overlapping analysis windows.

    Not thread-safe: the pipeline runs every mutation on its single ingest
    thread.

    Parameters
    ----------
    window_len:
        Number of samples per analysis window.
    """

    def __init__(self, window_len: int) -> None:
        if window_len < 2:
            raise ValueError("window_len must be at least 2")
        self.window_len = window_len
        self.half_window = window_len // 2
        self._buffer: List[ColorSample] = []
        self._emitted = 0

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def windows_emitted(self) -> int:
        return self._emitted

    def append(self, sample: ColorSample) -> Optional[AnalysisWindow]:
        """
        Add a covered sample.

        Returns the completed ``AnalysisWindow`` when this sample fills the
        buffer, otherwise *None*.
        """
        self._buffer.append(sample)
        if len(self._buffer) < self.window_len:
            return None

        window = AnalysisWindow(
            index=self._emitted,
            uptime=self._buffer[self.half_window].uptime,
            channel=np.fromiter(
                (s.green for s in self._buffer[:self.window_len]),
                dtype=np.float64,
                count=self.window_len,
            ),
        )
        del self._buffer[:self.half_window]
        self._emitted += 1
        return window

    def reset(self) -> None:
        """Drop buffered samples.  Window numbering continues."""
        self._buffer.clear()

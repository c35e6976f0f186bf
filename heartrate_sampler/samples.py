"""
Sample records flowing through the pipeline.

``ColorSample`` is produced once per camera frame; ``BpmSample`` once per
analysed window.  Both are immutable and know how to serialise themselves
as delimiter-separated rows with a fixed column order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np


@dataclass(frozen=True)
class ColorSample:
    """
    Mean colour of one camera frame.

    ``red``, ``green`` and ``blue`` are normalised intensities in [0, 1];
    ``red_level`` is the fraction of frame pixels that are red-dominant.
    """

    uptime: float
    red: float
    green: float
    blue: float
    red_level: float

    COLUMNS = ("uptime", "red", "blue", "green", "red_level")

    def to_row(self) -> tuple[float, ...]:
        return (self.uptime, self.red, self.blue, self.green, self.red_level)

    @classmethod
    def from_row(cls, row: Sequence[str | float]) -> "ColorSample":
        uptime, red, blue, green, red_level = (float(v) for v in row)
        return cls(uptime=uptime, red=red, green=green, blue=blue, red_level=red_level)

    @classmethod
    def from_frame(cls, frame: np.ndarray, uptime: float) -> "ColorSample":
        """
        Reduce a frame to a colour sample.

        Parameters
        ----------
        frame:
            BGR image array (H × W × 3, uint8).
        uptime:
            Monotonic capture time of the frame in seconds.
        """
        b_ch = frame[:, :, 0].astype(np.float64)
        g_ch = frame[:, :, 1].astype(np.float64)
        r_ch = frame[:, :, 2].astype(np.float64)

        red_dominant = (r_ch > g_ch) & (r_ch > b_ch)

        return cls(
            uptime=float(uptime),
            red=float(r_ch.mean()) / 255.0,
            green=float(g_ch.mean()) / 255.0,
            blue=float(b_ch.mean()) / 255.0,
            red_level=float(red_dominant.mean()),
        )


@dataclass(frozen=True)
class BpmSample:
    """Heart rate estimated from one window, stamped with the window's midpoint."""

    uptime: float
    bpm: Optional[int] = None
    confidence: Optional[float] = None

    COLUMNS = ("uptime", "bpm", "confidence")

    def to_row(self) -> tuple[float | int | None, ...]:
        return (self.uptime, self.bpm, self.confidence)

    def to_dict(self) -> dict:
        return {"uptime": self.uptime, "bpm": self.bpm, "confidence": self.confidence}

    def meets(self, threshold: float) -> bool:
        """True when the sample has a BPM and its confidence is at least *threshold*."""
        return (
            self.bpm is not None
            and self.confidence is not None
            and self.confidence >= threshold
        )

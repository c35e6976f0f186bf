"""
PPG signal processor.

Algorithm
---------
For one analysis window of green-channel intensities:

1. Mean-centre the window.
2. Convolve with a 129-tap FIR bandpass kernel (Hamming window, 1 – 25 Hz
   at 60 fps) and cut off the convolution edges.
3. Peak emphasis: from every sample subtract the mean of its neighbourhood
   (one fastest-plausible beat wide) without the neighbourhood maximum.
   The baseline drops out while sharp systolic peaks survive.
4. Autocorrelate the result and keep the non-negative lags.
5. The strongest autocorrelation peak between 200 BPM and 40 BPM gives the
   beat period; its height relative to the zero-lag value is the
   confidence.

The processor holds no per-window state, so one instance can be shared by
any number of compute threads.

References
----------
- Allen J., "Photoplethysmography and its application in clinical
  physiological measurement." Physiol. Meas., 2007.
- Jonathan E., Leahy M., "Investigating a smartphone imaging unit for
  photoplethysmography." Physiol. Meas., 2010.
"""

from __future__ import annotations

import logging
import math
from functools import lru_cache
from typing import List, Sequence, Tuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from scipy.signal import firwin

from .config import (
    FILTER_TAPS,
    MAX_HEART_RATE,
    MIN_HEART_RATE,
    PEAK_EMPHASIS_HEART_RATE,
)

logger = logging.getLogger(__name__)

PASSBAND_HZ = (1.0, 25.0)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Convolution helpers
# ---------------------------------------------------------------------------

def conv(u: Sequence[float], v: Sequence[float], mode: str = "full") -> np.ndarray:
    """
    Discrete convolution of *u* and *v*.

    ``mode="full"`` returns all ``len(u) + len(v) - 1`` values; ``mode="same"``
    returns the central ``len(u)`` values of the full result.
    """
    full = np.convolve(np.asarray(u, dtype=np.float64), np.asarray(v, dtype=np.float64))
    if mode == "full":
        return full
    if mode == "same":
        start = len(full) // 2 - len(u) // 2
        return full[start:start + len(u)]
    raise ValueError(f"Unknown convolution mode {mode!r}")


def xcorr(x: Sequence[float]) -> np.ndarray:
    """Unnormalised autocorrelation (length ``2N - 1``, zero lag in the middle)."""
    x = np.asarray(x, dtype=np.float64)
    return conv(x, x[::-1])


class SignalProcessor:
    """
    Heart rate estimator for fixed-length PPG windows.

    Parameters
    ----------
    fps:
        Sampling rate of the channel.  The bandpass passband is expressed in
        Hz, so the kernel is only meaningful for rates above 50 fps.
    window_seconds:
        Length of the analysis window in seconds.
    min_bpm / max_bpm:
        Range of autocorrelation lags searched for the beat period.
    """

    def __init__(
        self,
        fps: float = 60.0,
        window_seconds: float = 10.0,
        min_bpm: float = MIN_HEART_RATE,
        max_bpm: float = MAX_HEART_RATE,
    ) -> None:
        self.fps = float(fps)
        self.window_seconds = window_seconds
        self.window_len = int(round(self.fps * window_seconds))

        self.min_lag = _round_half_up(60.0 * self.fps / max_bpm)
        self.max_lag = _round_half_up(60.0 * self.fps / min_bpm)
        nsamples = _round_half_up(60.0 * self.fps / PEAK_EMPHASIS_HEART_RATE)
        self.emphasis_len = 2 * nsamples + 1

        if self.window_len < FILTER_TAPS + self.max_lag:
            raise ValueError(
                f"A {window_seconds} s window at {self.fps} fps is too short to "
                f"resolve {min_bpm} BPM after filtering"
            )
        self._kernel = self._build_filter()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def calculate_heart_rate(self, channel: Sequence[float]) -> Tuple[int, float]:
        """
        Return ``(bpm, confidence)`` for one analysis window.

        Raises ``ValueError`` when *channel* is shorter than the window.
        A flat channel has no periodicity and yields ``(0, 0.0)``, as does a
        window whose autocorrelation is nowhere positive in the plausible
        heart-rate range.
        """
        signal = np.asarray(channel, dtype=np.float64)
        if signal.size < self.window_len:
            raise ValueError(
                f"Channel has {signal.size} samples; a window needs {self.window_len}"
            )

        emphasised = self.emphasise_peaks(self.bandpass_filtered(signal))
        acf = xcorr(emphasised)

        # Autocorrelation is even: drop everything before the zero-lag peak.
        start = int(np.argmax(acf))
        max_val = float(acf[start])
        # Mean-centring a constant window leaves rounding residue only.
        if max_val <= np.finfo(np.float64).eps * float(np.dot(signal, signal)):
            logger.debug("Flat window, no periodicity to measure.")
            return 0, 0.0
        acf = acf[start:]

        lower, upper = self.min_lag - 1, self.max_lag - 1
        segment = acf[lower:upper + 1]
        offset = int(np.argmax(segment))
        val = float(segment[offset])
        if val <= 0.0:
            logger.debug("No positive correlation between %d and %d samples.", lower, upper)
            return 0, 0.0
        pos = lower + offset

        bpm = _round_half_up(60.0 * self.fps / (pos + 1))
        confidence = val / max_val
        logger.debug("Window analysed: bpm=%d confidence=%.3f lag=%d", bpm, confidence, pos)
        return bpm, confidence

    def find_heart_rate_values(self, channel: Sequence[float]) -> List[Tuple[int, float]]:
        """
        Analyse a whole recorded channel with 50 %-overlapping windows.

        Produces ``floor(len / (window_len / 2)) - 1`` results, each window
        offset by half a window from the previous one.
        """
        signal = np.asarray(channel, dtype=np.float64)
        nframes = int(math.floor(signal.size / (self.window_len / 2))) - 1
        output: List[Tuple[int, float]] = []
        for frame_no in range(max(nframes, 0)):
            lower = frame_no * self.window_len // 2
            upper = (frame_no + 2) * self.window_len // 2
            output.append(self.calculate_heart_rate(signal[lower:upper]))
        return output

    def bandpass_filtered(self, channel: np.ndarray) -> np.ndarray:
        """Mean-centre, bandpass and trim the convolution edges."""
        centred = channel - np.mean(channel)
        filtered = conv(centred, self._kernel, "same")
        taps = len(self._kernel)
        return filtered[taps // 2:len(filtered) - (taps + 1) // 2]

    def emphasise_peaks(self, x: np.ndarray) -> np.ndarray:
        """
        Subtract from each sample the mean of its neighbourhood without the
        neighbourhood maximum.  Samples closer than half a neighbourhood to
        either end are passed through unchanged.
        """
        n = self.emphasis_len
        output = np.array(x, dtype=np.float64, copy=True)
        if output.size < n:
            return output
        half = (n - 1) // 2
        windows = sliding_window_view(output, n)
        local_mean = (windows.sum(axis=1) - windows.max(axis=1)) / (n - 1)
        output[half:output.size - half] = x[half:len(x) - half] - local_mean
        return output

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _build_filter(self) -> np.ndarray:
        """Construct the FIR bandpass kernel (Hamming window)."""
        return firwin(FILTER_TAPS, list(PASSBAND_HZ), pass_zero=False, fs=self.fps)


@lru_cache(maxsize=8)
def _shared_processor(fps: float, window_seconds: float) -> SignalProcessor:
    return SignalProcessor(fps=fps, window_seconds=window_seconds)


def calculate_heart_rate(
    channel: Sequence[float], fps: float = 60.0, window_seconds: float = 10.0
) -> Tuple[int, float]:
    """Module-level shortcut for :meth:`SignalProcessor.calculate_heart_rate`."""
    return _shared_processor(float(fps), float(window_seconds)).calculate_heart_rate(channel)


def find_heart_rate_values(
    channel: Sequence[float], fps: float = 60.0, window_seconds: float = 10.0
) -> List[Tuple[int, float]]:
    """Module-level shortcut for :meth:`SignalProcessor.find_heart_rate_values`."""
    return _shared_processor(float(fps), float(window_seconds)).find_heart_rate_values(channel)

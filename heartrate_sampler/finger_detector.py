"""
Finger-on-lens detector.

When a fingertip covers the camera lens with the light switched on, the
frame becomes:
  - Almost entirely red-dominant (light shining through blood tissue).
  - Strongly saturated, with a hue close to pure red.

This module provides the check used to gate the PPG window accumulator so
it does not analyse frames taken while the lens is uncovered.
"""

from __future__ import annotations

from .samples import ColorSample

# Hue (degrees) must fall in [HUE_WRAP_LOW, 360) or [0, HUE_HIGH].
HUE_HIGH = 30.0
HUE_WRAP_LOW = 350.0
MIN_SATURATION = 0.7


def is_covered(sample: ColorSample, min_red_level: float = 0.9) -> bool:
    """
    Return *True* if *sample* looks like a finger covering the lens.

    The red channel is treated as the HSV "value" (it has to be the
    largest channel anyway) and the hue and saturation are derived from it.
    """
    red, green, blue = sample.red, sample.green, sample.blue
    if sample.red_level < min_red_level or red <= green or red <= blue:
        return False

    delta = red - min(green, blue)
    hue = 60.0 * (green - blue) / delta
    if hue < 0:
        hue += 360.0
    saturation = delta / red

    return (hue <= HUE_HIGH or hue >= HUE_WRAP_LOW) and saturation >= MIN_SATURATION


class FingerDetector:
    """
    Lens-coverage classifier bound to a red-level threshold.

    Parameters
    ----------
    min_red_level:
        Minimum fraction of red-dominant pixels required before hue and
        saturation are examined.  Default: 0.9.
    """

    def __init__(self, min_red_level: float = 0.9) -> None:
        self.min_red_level = min_red_level

    def is_covered(self, sample: ColorSample) -> bool:
        return is_covered(sample, self.min_red_level)

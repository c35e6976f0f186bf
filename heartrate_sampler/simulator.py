"""
Simulated capture source for machines without a camera.

After a settle period the source emits fabricated fingertip samples on a
fixed ``1 / fps`` timer.  The green channel carries a sinusoidal pulse at
a chosen heart rate plus a little noise, so the whole pipeline produces
plausible readings.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional

import numpy as np

from .camera import CaptureSource, SampleCallback
from .samples import ColorSample

logger = logging.getLogger(__name__)


class SimulatedSource(CaptureSource):
    """
    Timer-driven source of synthetic covered-lens samples.

    Parameters
    ----------
    fps:
        Emission rate.
    settle_seconds:
        Delay between ``start`` and the first emitted sample.
    bpm:
        Heart rate encoded in the green channel.
    noise:
        Standard deviation of the Gaussian noise added to the green channel.
    seed:
        Seed for the noise generator.
    clock:
        Monotonic clock returning seconds.
    """

    def __init__(
        self,
        fps: int = 60,
        settle_seconds: float = 3.0,
        bpm: float = 65.0,
        noise: float = 0.001,
        seed: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.fps = fps
        self.settle_seconds = settle_seconds
        self.bpm = bpm
        self.noise = noise
        self.illuminated = False
        self._clock = clock
        self._rng = np.random.default_rng(seed)
        self._emitted = 0
        self._opened = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def open(self) -> None:
        self._opened = True
        logger.info("Simulated camera opened – fps=%d bpm=%.1f", self.fps, self.bpm)

    def start(self, callback: SampleCallback) -> None:
        if not self._opened:
            raise RuntimeError("Source is not open.  Call open() first.")
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, args=(callback,), name="hr-simulator", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        self._opened = False

    def set_illumination(self, on: bool) -> None:
        self.illuminated = on

    def generate(self, count: int, start_uptime: float = 0.0) -> List[ColorSample]:
        """Fabricate the next *count* samples, stamped from *start_uptime*."""
        samples = []
        for i in range(count):
            n = self._emitted + i
            t = n / self.fps
            pulse = 0.02 * np.sin(2.0 * np.pi * self.bpm / 60.0 * t)
            green = 0.1 + pulse + self._rng.normal(0.0, self.noise)
            samples.append(ColorSample(
                uptime=start_uptime + i / self.fps,
                red=0.8,
                green=float(green),
                blue=0.05,
                red_level=1.0,
            ))
        self._emitted += count
        return samples

    def _run(self, callback: SampleCallback) -> None:
        if self._stop_event.wait(self.settle_seconds):
            return
        period = 1.0 / self.fps
        next_tick = self._clock()
        while not self._stop_event.is_set():
            (sample,) = self.generate(1, start_uptime=self._clock())
            callback(sample)
            next_tick += period
            delay = next_tick - self._clock()
            if delay > 0 and self._stop_event.wait(delay):
                break

"""
Tests for PipelineCoordinator, the capture sources and session persistence.
Run with:  pytest tests/test_pipeline.py
"""

from __future__ import annotations

import csv
import json
import threading
import time

import numpy as np
import pytest

from heartrate_sampler import camera
from heartrate_sampler.camera import CameraSource, CaptureSource, NoCameraError
from heartrate_sampler.config import SamplerConfig
from heartrate_sampler.finger_detector import is_covered
from heartrate_sampler.pipeline import PipelineCoordinator, PipelineState
from heartrate_sampler.recording import (
    SampleWriter,
    read_color_samples,
    write_summary,
)
from heartrate_sampler.samples import ColorSample
from heartrate_sampler.simulator import SimulatedSource


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeSource(CaptureSource):
    """Capture source driven by the test through ``emit``."""

    def __init__(self, available: bool = True, fps: int = 60) -> None:
        self.available = available
        self.fps = fps
        self.callback = None
        self.stopped = False
        self.illumination = []

    def open(self) -> None:
        if not self.available:
            raise NoCameraError("no back camera")

    def start(self, callback) -> None:
        self.callback = callback

    def stop(self) -> None:
        self.stopped = True

    def set_illumination(self, on: bool) -> None:
        self.illumination.append(on)

    def emit(self, samples) -> None:
        for sample in samples:
            self.callback(sample)


def _covered(uptime: float, green: float = 0.1) -> ColorSample:
    return ColorSample(uptime=uptime, red=0.8, green=green, blue=0.05, red_level=1.0)


def _uncovered(uptime: float) -> ColorSample:
    return ColorSample(uptime=uptime, red=0.4, green=0.5, blue=0.5, red_level=0.2)


def _started(source=None, **kwargs) -> PipelineCoordinator:
    coordinator = PipelineCoordinator(source or FakeSource(), SamplerConfig(), **kwargs)
    coordinator.start()
    return coordinator


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:

    def test_state_machine(self):
        source = FakeSource()
        coordinator = PipelineCoordinator(source)
        assert coordinator.state is PipelineState.IDLE
        coordinator.start()
        assert coordinator.state is PipelineState.SAMPLING
        assert source.illumination == [True]
        log = coordinator.stop()
        assert coordinator.state is PipelineState.FINISHED
        assert source.stopped
        assert source.illumination[-1] is False
        assert log.frozen

    def test_no_camera(self):
        coordinator = PipelineCoordinator(FakeSource(available=False))
        with pytest.raises(NoCameraError):
            coordinator.start()
        assert coordinator.state is PipelineState.IDLE

    def test_stop_requires_sampling(self):
        coordinator = PipelineCoordinator(FakeSource())
        with pytest.raises(RuntimeError):
            coordinator.stop()

    def test_cannot_restart(self):
        coordinator = _started()
        coordinator.stop()
        with pytest.raises(RuntimeError):
            coordinator.start()

    def test_samples_after_stop_are_ignored(self):
        source = FakeSource()
        coordinator = _started(source)
        coordinator.stop()
        source.emit([_covered(i / 60.0) for i in range(10)])
        assert len(coordinator.accumulator) == 0


# ---------------------------------------------------------------------------
# Capture stage
# ---------------------------------------------------------------------------

class TestCapture:

    def test_coverage_transitions_notify(self):
        changes = []
        source = FakeSource()
        coordinator = _started(source, on_lens_covered=changes.append)
        source.emit([
            _uncovered(0.0),
            _covered(0.1),
            _covered(0.2),
            _uncovered(0.3),
            _uncovered(0.4),
        ])
        coordinator.stop()
        assert changes == [True, False]
        # Light is switched on at start and again when the finger is lifted.
        assert source.illumination[:2] == [True, True]

    def test_uncovered_samples_are_not_windowed(self):
        source = FakeSource()
        coordinator = _started(source)
        source.emit([_uncovered(i / 60.0) for i in range(700)])
        log = coordinator.stop()
        assert len(log) == 0
        assert coordinator.accumulator.windows_emitted == 0

    def test_full_queue_drops_without_blocking(self):
        source = FakeSource()
        config = SamplerConfig(ingest_queue_size=1)
        coordinator = PipelineCoordinator(source, config)
        gate = threading.Event()
        original = coordinator.accumulator.append

        def blocked_append(sample):
            gate.wait(2.0)
            return original(sample)

        coordinator.accumulator.append = blocked_append
        coordinator.start()
        started = time.monotonic()
        source.emit([_covered(i / 60.0) for i in range(50)])
        assert time.monotonic() - started < 1.0
        gate.set()
        coordinator.stop()
        assert coordinator.dropped_samples > 0


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------

class TestEndToEnd:

    def test_simulated_heart_rate(self):
        readings = []
        source = FakeSource()
        coordinator = _started(source, on_bpm=readings.append)

        simulated = SimulatedSource(fps=60, bpm=65.0, noise=0.001, seed=7)
        source.emit(simulated.generate(900))
        log = coordinator.stop()

        samples = log.samples
        assert len(samples) >= 2
        for s in samples:
            assert abs(s.bpm - 65) <= 3, f"Expected ~65 BPM, got {s.bpm}"
            assert s.confidence > 0.5, f"Confidence too low: {s.confidence:.2f}"
        uptimes = [s.uptime for s in samples]
        assert uptimes == sorted(uptimes)
        assert readings == [s.bpm for s in samples]
        assert log.current() == samples[-1]

    def test_results_published_in_window_order(self, monkeypatch):
        source = FakeSource()
        coordinator = PipelineCoordinator(source, SamplerConfig(compute_workers=3))
        monkeypatch.setattr(coordinator.detector, "is_covered", lambda sample: True)

        def compute(channel):
            first = int(channel[0])
            if first == 0:
                time.sleep(0.3)  # the first window finishes last
            return first, 0.9

        monkeypatch.setattr(coordinator.processor, "calculate_heart_rate", compute)
        coordinator.start()
        source.emit([_covered(i / 60.0, green=float(i)) for i in range(1200)])
        log = coordinator.stop()

        assert [s.bpm for s in log.samples] == [0, 300, 600]
        assert [s.uptime for s in log.samples] == pytest.approx([5.0, 10.0, 15.0])

    def test_failed_window_keeps_its_place(self, monkeypatch):
        source = FakeSource()
        coordinator = PipelineCoordinator(source)

        def broken(channel):
            raise FloatingPointError("bad window")

        monkeypatch.setattr(coordinator.processor, "calculate_heart_rate", broken)
        coordinator.start()
        source.emit([_covered(i / 60.0) for i in range(600)])
        log = coordinator.stop()
        assert len(log) == 1
        assert log.samples[0].bpm is None
        assert log.samples[0].confidence is None

    def test_slow_listener_does_not_hold_up_compute(self):
        gate = threading.Event()
        heard = []

        def on_bpm(bpm):
            gate.wait(5.0)
            heard.append(bpm)

        source = FakeSource()
        coordinator = _started(source, on_bpm=on_bpm)
        simulated = SimulatedSource(fps=60, bpm=65.0, noise=0.001, seed=11)
        source.emit(simulated.generate(1200))
        try:
            assert _wait_for(lambda: len(coordinator.log) == 3), \
                f"Only {len(coordinator.log)} of 3 windows logged while the listener was blocked"
            assert heard == []
        finally:
            gate.set()
        log = coordinator.stop()
        assert heard == [s.bpm for s in log.samples if s.confidence > 0.5]

    def test_failing_listener_does_not_stop_logging(self):
        calls = []

        def on_bpm(bpm):
            calls.append(bpm)
            raise RuntimeError("display gone")

        source = FakeSource()
        coordinator = _started(source, on_bpm=on_bpm)
        simulated = SimulatedSource(fps=60, bpm=65.0, noise=0.001, seed=12)
        source.emit(simulated.generate(1200))
        log = coordinator.stop()
        assert len(log) == 3
        assert calls == [s.bpm for s in log.samples if s.confidence > 0.5]
        assert len(calls) > 0

    def test_ingest_survives_a_failing_sample(self):
        source = FakeSource()
        coordinator = PipelineCoordinator(source)
        original = coordinator.accumulator.append

        def append(sample):
            if sample.uptime == 0.0:
                raise ValueError("corrupt sample")
            return original(sample)

        coordinator.accumulator.append = append
        coordinator.start()
        source.emit([_covered(i / 60.0) for i in range(601)])
        log = coordinator.stop()
        assert len(log) == 1
        assert coordinator.accumulator.windows_emitted == 1

    def test_late_results_after_teardown_are_ignored(self, monkeypatch):
        source = FakeSource()
        coordinator = PipelineCoordinator(source)
        finished = threading.Event()

        def slow(channel):
            time.sleep(0.3)
            finished.set()
            return 70, 0.9

        monkeypatch.setattr(coordinator.processor, "calculate_heart_rate", slow)
        coordinator.start()
        source.emit([_covered(i / 60.0) for i in range(600)])
        log = coordinator.stop(wait=False)
        assert coordinator.state is PipelineState.FINISHED
        finished.wait(2.0)
        time.sleep(0.1)
        assert len(log) == 0

    def test_session_files(self, tmp_path):
        source = FakeSource()
        writer = SampleWriter(tmp_path, batch_size=60)
        coordinator = _started(source, writer=writer)
        simulated = SimulatedSource(fps=60, bpm=70.0, seed=1)
        source.emit(simulated.generate(650))
        coordinator.stop()

        colors = read_color_samples(writer.color_path)
        assert len(colors) == 650
        assert [c.uptime for c in colors] == sorted(c.uptime for c in colors)

        with open(writer.bpm_path, newline="") as f:
            rows = list(csv.reader(f))
        assert rows[0] == ["uptime", "bpm", "confidence"]
        assert len(rows) == 2

        summary = coordinator.summary("heartRate")
        path = tmp_path / "summary.json"
        assert write_summary(path, summary) is True
        decoded = json.loads(path.read_text())
        assert decoded["identifier"] == "heartRate"
        assert len(decoded["samples"]) == 1


# ---------------------------------------------------------------------------
# Sources and persistence helpers
# ---------------------------------------------------------------------------

class TestSources:

    def test_simulated_samples_are_covered(self):
        source = SimulatedSource(fps=60, seed=3)
        samples = source.generate(120, start_uptime=2.0)
        assert all(is_covered(s) for s in samples)
        assert samples[0].uptime == 2.0
        assert samples[-1].uptime == pytest.approx(2.0 + 119 / 60.0)

    def test_simulated_source_emits_after_settling(self):
        received = []
        source = SimulatedSource(fps=60, settle_seconds=0.0, seed=4)
        source.open()
        source.start(received.append)
        time.sleep(0.3)
        source.stop()
        assert len(received) > 0
        assert all(is_covered(s) for s in received)

    def test_simulated_source_respects_settle(self):
        received = []
        source = SimulatedSource(fps=60, settle_seconds=5.0)
        source.open()
        source.start(received.append)
        time.sleep(0.2)
        source.stop()
        assert received == []

    def test_camera_unavailable(self, monkeypatch):
        class ClosedCapture:
            def __init__(self, index):
                pass

            def isOpened(self):
                return False

            def release(self):
                pass

        monkeypatch.setattr(camera.cv2, "VideoCapture", ClosedCapture)
        source = CameraSource(camera_index=7)
        source._use_picamera2 = False
        with pytest.raises(NoCameraError):
            source.open()

    def test_reader_rejects_foreign_csv(self, tmp_path):
        path = tmp_path / "other.csv"
        path.write_text("a,b,c\n1,2,3\n")
        with pytest.raises(ValueError):
            read_color_samples(path)

    def test_summary_write_failure_is_reported(self, tmp_path):
        blocker = tmp_path / "file.txt"
        blocker.write_text("")
        assert write_summary(blocker / "summary.json", {"samples": []}) is False

    def test_color_row_order(self):
        sample = ColorSample(uptime=1.0, red=0.9, green=0.2, blue=0.1, red_level=0.95)
        assert sample.to_row() == (1.0, 0.9, 0.1, 0.2, 0.95)
        assert ColorSample.from_row([str(v) for v in sample.to_row()]) == sample

"""
Sampling pipeline.

Three stages connected by hand-offs:

  capture  – the source's frame callback.  Classifies lens coverage,
             reports coverage changes and enqueues covered samples with
             ``put_nowait``; it never waits on the later stages.
  ingest   – one thread draining the bounded queue in arrival order.  It
             owns the window accumulator and submits every completed
             window to the compute pool.
  compute  – a thread pool running the signal processor.  Results are
             re-sequenced by window index before they reach the result
             log, so the log stays in window order even when windows are
             analysed concurrently.

Presentation callbacks run on a separate single-thread executor so a slow
listener never holds up computation.
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from functools import partial
from typing import Callable, Dict, Optional

from .camera import CaptureSource, NoCameraError
from .config import SamplerConfig
from .finger_detector import FingerDetector
from .recording import SampleWriter
from .result_log import ResultLog
from .samples import BpmSample, ColorSample
from .signal_processor import SignalProcessor
from .window_accumulator import AnalysisWindow, WindowAccumulator

logger = logging.getLogger(__name__)


class PipelineState(enum.Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    STOPPING = "stopping"
    FINISHED = "finished"


class PipelineCoordinator:
    """
    Runs one heart rate recording session.

    Parameters
    ----------
    source:
        Capture collaborator (``CameraSource`` or ``SimulatedSource``).
    config:
        Session configuration.
    on_lens_covered:
        Called with the new state whenever lens coverage changes.
    on_bpm:
        Called with the heart rate whenever the current reading advances.
    writer:
        Optional persistence collaborator receiving every colour sample and
        every heart rate estimate.
    """

    def __init__(
        self,
        source: CaptureSource,
        config: Optional[SamplerConfig] = None,
        on_lens_covered: Optional[Callable[[bool], None]] = None,
        on_bpm: Optional[Callable[[int], None]] = None,
        writer: Optional[SampleWriter] = None,
    ) -> None:
        self.config = config or SamplerConfig()
        self.source = source
        self.writer = writer
        self._on_lens_covered = on_lens_covered
        self._on_bpm = on_bpm

        self.detector = FingerDetector(self.config.min_red_level)
        self.processor = SignalProcessor(
            fps=self.config.fps, window_seconds=self.config.window_seconds
        )
        self.accumulator = WindowAccumulator(self.config.window_len)
        self.log = ResultLog(self.config.min_confidence)

        self._state = PipelineState.IDLE
        self._state_lock = threading.Lock()
        self._is_covered = False

        self._ingest_queue: Optional[queue.Queue] = None
        self._ingest_thread: Optional[threading.Thread] = None
        self._sentinel = object()
        self._compute_pool: Optional[ThreadPoolExecutor] = None
        self._notify_pool: Optional[ThreadPoolExecutor] = None

        # Re-sequencing of compute results
        self._publish_lock = threading.Lock()
        self._completed: Dict[int, BpmSample] = {}
        self._next_index = 0
        self._closed = False

        self._dropped_samples = 0
        self.start_date: Optional[datetime] = None
        self.end_date: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def is_covered(self) -> bool:
        return self._is_covered

    @property
    def dropped_samples(self) -> int:
        return self._dropped_samples

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Open the capture source and start sampling.

        Raises ``NoCameraError`` (leaving the coordinator idle) when the
        source cannot be opened.
        """
        with self._state_lock:
            if self._state is not PipelineState.IDLE:
                raise RuntimeError(f"Cannot start a pipeline in state {self._state.value}")

            try:
                self.source.open()
            except NoCameraError:
                logger.exception("Failed to start camera")
                raise

            self._ingest_queue = queue.Queue(maxsize=self.config.ingest_queue_size)
            self._compute_pool = ThreadPoolExecutor(
                max_workers=self.config.compute_workers, thread_name_prefix="hr-compute"
            )
            self._notify_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="hr-notify")
            self._ingest_thread = threading.Thread(
                target=self._ingest_loop, name="hr-ingest", daemon=True
            )
            self._ingest_thread.start()
            if self.writer is not None:
                try:
                    self.writer.start()
                except OSError:
                    logger.exception("Cannot open sample files; continuing without them")
                    self.writer = None

            self.start_date = datetime.now()
            self._state = PipelineState.SAMPLING

        self.source.set_illumination(True)
        self.source.start(self._on_sample)
        logger.info(
            "Sampling started – fps=%d window=%d samples",
            self.config.fps, self.config.window_len,
        )

    def stop(self, wait: bool = True) -> ResultLog:
        """
        Stop sampling and release every resource.

        With ``wait=True`` windows already handed to the compute stage are
        finished and logged; otherwise they are abandoned.  Returns the
        (now frozen) result log.
        """
        with self._state_lock:
            if self._state is not PipelineState.SAMPLING:
                raise RuntimeError(f"Cannot stop a pipeline in state {self._state.value}")
            self._state = PipelineState.STOPPING

        self.source.stop()
        self.source.set_illumination(False)

        # The sentinel queues behind every sample already captured.
        self._ingest_queue.put(self._sentinel)
        self._ingest_thread.join()
        self._ingest_thread = None

        self._compute_pool.shutdown(wait=wait, cancel_futures=not wait)
        self._compute_pool = None

        with self._publish_lock:
            self._closed = True
            if self._completed:
                logger.info("Abandoned %d unpublished windows", len(self._completed))
                self._completed.clear()
        self.log.freeze()

        self._notify_pool.shutdown(wait=True)
        self._notify_pool = None
        if self.writer is not None:
            self.writer.close()

        if self._dropped_samples:
            logger.warning("%d samples dropped because the ingest queue was full",
                           self._dropped_samples)

        self.end_date = datetime.now()
        self._state = PipelineState.FINISHED
        logger.info("Sampling finished – %d heart rate samples", len(self.log))
        return self.log

    def summary(self, identifier: str = "heartRate") -> dict:
        """JSON-serialisable record of the session's heart rate samples."""
        return self.log.to_summary(
            identifier,
            self.start_date or datetime.now(),
            self.end_date or datetime.now(),
        )

    # ------------------------------------------------------------------
    # Stage 1 – capture
    # ------------------------------------------------------------------

    def _on_sample(self, sample: ColorSample) -> None:
        if self._state is not PipelineState.SAMPLING:
            return

        covered = self.detector.is_covered(sample)
        if covered != self._is_covered:
            self._is_covered = covered
            logger.debug("Lens covered=%s at uptime %.3f", covered, sample.uptime)
            self._notify(self._on_lens_covered, covered)
            if not covered:
                # Make sure the light is still on for the next placement.
                self.source.set_illumination(True)

        if self.writer is not None:
            self.writer.log_color(sample)

        if not covered:
            return
        try:
            self._ingest_queue.put_nowait(sample)
        except queue.Full:
            self._dropped_samples += 1
            if self._dropped_samples % 60 == 1:
                logger.warning("Ingest queue full, dropped %d samples so far",
                               self._dropped_samples)

    # ------------------------------------------------------------------
    # Stage 2 – ingest
    # ------------------------------------------------------------------

    def _ingest_loop(self) -> None:
        while True:
            sample = self._ingest_queue.get()
            if sample is self._sentinel:
                break
            try:
                window = self.accumulator.append(sample)
                if window is None:
                    continue
                logger.debug("Window %d ready (uptime %.3f)", window.index, window.uptime)
                future = self._compute_pool.submit(
                    self.processor.calculate_heart_rate, window.channel
                )
                future.add_done_callback(partial(self._on_window_done, window))
            except Exception:
                logger.exception("Ingest failed for sample at uptime %.3f", sample.uptime)
        logger.debug("Ingest loop exited")

    # ------------------------------------------------------------------
    # Stage 3 – compute results
    # ------------------------------------------------------------------

    def _on_window_done(self, window: AnalysisWindow, future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Heart rate computation failed for window %d", window.index,
                         exc_info=exc)
            result = BpmSample(uptime=window.uptime)
        else:
            bpm, confidence = future.result()
            result = BpmSample(uptime=window.uptime, bpm=bpm, confidence=confidence)

        with self._publish_lock:
            if self._closed:
                return
            self._completed[window.index] = result
            while self._next_index in self._completed:
                sample = self._completed.pop(self._next_index)
                self._next_index += 1
                self._publish(sample)

    def _publish(self, sample: BpmSample) -> None:
        advanced = self.log.append(sample)
        if self.writer is not None:
            self.writer.log_bpm(sample)
        logger.info("bpm=%s confidence=%s", sample.bpm,
                    "n/a" if sample.confidence is None else f"{sample.confidence:.2f}")
        if advanced:
            self._notify(self._on_bpm, sample.bpm)

    def _notify(self, callback: Optional[Callable], value) -> None:
        pool = self._notify_pool
        if callback is None or pool is None:
            return
        try:
            pool.submit(self._run_listener, callback, value)
        except RuntimeError:
            # Executor already shut down
            pass

    @staticmethod
    def _run_listener(callback: Callable, value) -> None:
        try:
            callback(value)
        except Exception:
            logger.exception("Listener %r failed", callback)

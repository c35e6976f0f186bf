"""
Capture sources.

A capture source delivers one ``ColorSample`` per camera frame to a
callback, from its own thread, at roughly the configured frame rate.

``CameraSource`` wraps picamera2 on a Raspberry Pi and falls back to
OpenCV VideoCapture (any webcam) when picamera2 is unavailable, which is
handy for development on non-Pi hardware.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, Tuple

import cv2
import numpy as np

from .samples import ColorSample

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Try importing picamera2 (only available on Raspberry Pi OS)
# ---------------------------------------------------------------------------
try:
    from picamera2 import Picamera2
    _PICAMERA2_AVAILABLE = True
except ImportError:
    _PICAMERA2_AVAILABLE = False
    logger.debug("picamera2 not found – OpenCV VideoCapture will be used.")

SampleCallback = Callable[[ColorSample], None]


class NoCameraError(RuntimeError):
    """No usable capture device could be opened."""


class CaptureSource:
    """
    Interface shared by the real camera and the simulated source.

    ``open`` acquires the device (raising ``NoCameraError`` when there is
    none), ``start`` begins delivering samples to *callback* and ``stop``
    ends delivery and releases the device.
    """

    fps: int

    def open(self) -> None:
        raise NotImplementedError

    def start(self, callback: SampleCallback) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    def set_illumination(self, on: bool) -> None:
        """Switch the light behind the fingertip on or off."""
        raise NotImplementedError


class CameraSource(CaptureSource):
    """
    Frame-to-sample source backed by a real camera.

    Parameters
    ----------
    resolution:
        (width, height) of captured frames.  Small frames are enough; only
        the mean colour is kept.
    fps:
        Target frame rate.  Actual rate may differ slightly.
    camera_index:
        OpenCV camera index used when picamera2 is unavailable.
    illumination:
        Optional callable switching the light (e.g. a GPIO-driven LED).
    """

    def __init__(
        self,
        resolution: Tuple[int, int] = (320, 240),
        fps: int = 60,
        camera_index: int = 0,
        illumination: Optional[Callable[[bool], None]] = None,
    ) -> None:
        self.resolution = resolution
        self.fps = fps
        self.camera_index = camera_index
        self._illumination = illumination

        self._cam: "Picamera2 | cv2.VideoCapture | None" = None
        self._use_picamera2 = _PICAMERA2_AVAILABLE
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Initialise the camera."""
        if self._cam is not None:
            return
        try:
            if self._use_picamera2:
                self._open_picamera2()
            else:
                self._open_opencv()
        except NoCameraError:
            raise
        except Exception as exc:
            raise NoCameraError(f"Cannot open camera: {exc}") from exc
        logger.info(
            "Camera opened – backend=%s resolution=%s fps=%d",
            "picamera2" if self._use_picamera2 else "opencv",
            self.resolution,
            self.fps,
        )

    def start(self, callback: SampleCallback) -> None:
        if self._cam is None:
            raise RuntimeError("Camera is not open.  Call open() first.")
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._capture_loop, args=(callback,), name="hr-capture", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop delivering samples and release the camera."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        if self._cam is None:
            return
        if self._use_picamera2:
            self._cam.stop()
            self._cam.close()
        else:
            self._cam.release()
        self._cam = None
        logger.info("Camera closed.")

    def set_illumination(self, on: bool) -> None:
        if self._illumination is None:
            logger.debug("No illumination control configured (requested on=%s).", on)
            return
        self._illumination(on)

    # ------------------------------------------------------------------
    # Frame acquisition
    # ------------------------------------------------------------------

    def read_frame(self) -> np.ndarray | None:
        """
        Capture a single frame.

        Returns
        -------
        numpy.ndarray
            BGR image array (H × W × 3, dtype uint8), or *None* on failure.
        """
        if self._cam is None:
            raise RuntimeError("Camera is not open.  Call open() first.")

        if self._use_picamera2:
            return self._read_picamera2()
        return self._read_opencv()

    def _capture_loop(self, callback: SampleCallback) -> None:
        null_streak = 0
        while not self._stop_event.is_set() and self._cam is not None:
            frame = self.read_frame()
            uptime = time.monotonic()
            if frame is None:
                null_streak += 1
                if null_streak >= 10:
                    logger.error(
                        "Camera returned 10 consecutive None frames – aborting."
                    )
                    break
                continue
            null_streak = 0
            callback(ColorSample.from_frame(frame, uptime))

    # ------------------------------------------------------------------
    # Private helpers – picamera2
    # ------------------------------------------------------------------

    def _open_picamera2(self) -> None:
        cam = Picamera2()
        w, h = self.resolution
        # RGB888 is the safest 3-channel format across all Pi camera models.
        config = cam.create_video_configuration(
            main={"size": (w, h), "format": "RGB888"},
            buffer_count=4,
        )
        cam.configure(config)
        frame_duration = int(1_000_000 / self.fps)   # microseconds
        try:
            cam.set_controls({
                "FrameDurationLimits": (frame_duration, frame_duration),
            })
        except Exception as exc:                         # noqa: BLE001
            logger.warning("Could not set FrameDurationLimits: %s", exc)
        cam.start()
        self._cam = cam

    def _read_picamera2(self) -> np.ndarray | None:
        frame = self._cam.capture_array("main")
        if frame is None:
            logger.warning("capture_array returned None.")
            return None
        # Drop alpha channel if camera returned 4-channel XRGB/RGBA
        if frame.ndim == 3 and frame.shape[2] == 4:
            frame = frame[:, :, :3]
        # picamera2 RGB888 → OpenCV BGR
        return cv2.cvtColor(frame, cv2.COLOR_RGB2BGR)

    # ------------------------------------------------------------------
    # Private helpers – OpenCV fallback
    # ------------------------------------------------------------------

    def _open_opencv(self) -> None:
        cap = cv2.VideoCapture(self.camera_index)
        if not cap.isOpened():
            cap.release()
            raise NoCameraError(
                f"Cannot open video capture device index={self.camera_index}"
            )
        w, h = self.resolution
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, w)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, h)
        cap.set(cv2.CAP_PROP_FPS, self.fps)
        self._cam = cap

    def _read_opencv(self) -> np.ndarray | None:
        ok, frame = self._cam.read()
        if not ok:
            logger.warning("VideoCapture.read() returned False.")
            return None
        return frame

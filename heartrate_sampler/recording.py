"""
Session persistence.

Colour samples and heart rate estimates are written as CSV files by a
background thread so the capture callback never waits on disk I/O.  Colour
samples are flushed in batches of about one second, sorted by uptime.
Write failures are logged and otherwise ignored; they never stop a
measurement.
"""

from __future__ import annotations

import csv
import json
import logging
import queue
import threading
from pathlib import Path
from typing import IO, List, Optional, Union

from .samples import BpmSample, ColorSample

logger = logging.getLogger(__name__)

COLOR_SAMPLES_FILENAME = "color_samples.csv"
BPM_SAMPLES_FILENAME = "bpm_samples.csv"
SUMMARY_FILENAME = "heart_rate_summary.json"


class SampleWriter:
    """
    Background CSV writer for one session.

    Parameters
    ----------
    output_dir:
        Directory receiving ``color_samples.csv`` and ``bpm_samples.csv``.
    batch_size:
        Number of colour samples collected before they are written
        (normally the frame rate, i.e. one second of samples).
    queue_size:
        Capacity of the hand-off queue.  Records arriving while it is full
        are dropped.
    """

    def __init__(self, output_dir: Path, batch_size: int = 60, queue_size: int = 1200) -> None:
        self.output_dir = Path(output_dir)
        self.batch_size = batch_size
        self.queue_size = queue_size

        self._queue: Optional[queue.Queue] = None
        self._thread: Optional[threading.Thread] = None
        self._sentinel = object()
        self._color_file: Optional[IO[str]] = None
        self._bpm_file: Optional[IO[str]] = None
        self._color_csv = None
        self._bpm_csv = None
        self._pending: List[ColorSample] = []
        self._overflow_drops = 0

    @property
    def color_path(self) -> Path:
        return self.output_dir / COLOR_SAMPLES_FILENAME

    @property
    def bpm_path(self) -> Path:
        return self.output_dir / BPM_SAMPLES_FILENAME

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Sample writer already started")

        self.output_dir.mkdir(parents=True, exist_ok=True)
        self._color_file = open(self.color_path, "w", encoding="utf-8", newline="")
        self._bpm_file = open(self.bpm_path, "w", encoding="utf-8", newline="")
        self._color_csv = csv.writer(self._color_file)
        self._bpm_csv = csv.writer(self._bpm_file)
        self._color_csv.writerow(ColorSample.COLUMNS)
        self._bpm_csv.writerow(BpmSample.COLUMNS)

        self._queue = queue.Queue(maxsize=self.queue_size)
        self._overflow_drops = 0
        self._thread = threading.Thread(target=self._writer_loop, name="hr-writer", daemon=True)
        self._thread.start()
        logger.debug("Sample writer started: %s", self.output_dir)

    def log_color(self, sample: ColorSample) -> None:
        self._enqueue(sample)

    def log_bpm(self, sample: BpmSample) -> None:
        self._enqueue(sample)

    def close(self) -> None:
        """Write everything still queued and close the files."""
        if self._thread is None:
            return
        self._queue.put(self._sentinel)
        self._thread.join(timeout=5.0)
        self._thread = None
        self._queue = None

        for handle in (self._color_file, self._bpm_file):
            if handle is None:
                continue
            try:
                handle.close()
            except OSError:
                logger.exception("Failed to close %s", handle.name)
        self._color_file = None
        self._bpm_file = None

        if self._overflow_drops > 0:
            logger.warning("Sample writer stopped with %d records lost due to queue overflow",
                           self._overflow_drops)
        else:
            logger.debug("Sample writer stopped")

    # ------------------------------------------------------------------
    # Writer thread
    # ------------------------------------------------------------------

    def _enqueue(self, record: Union[ColorSample, BpmSample]) -> None:
        if self._queue is None:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._overflow_drops += 1
            # Log periodically to avoid log spam
            if self._overflow_drops % 60 == 1:
                logger.warning("Sample writer queue full, dropped %d records so far",
                               self._overflow_drops)

    def _writer_loop(self) -> None:
        while True:
            record = self._queue.get()
            if record is self._sentinel:
                break
            if isinstance(record, BpmSample):
                self._write_rows(self._bpm_csv, self._bpm_file, [record.to_row()])
                continue
            self._pending.append(record)
            if len(self._pending) >= self.batch_size:
                self._flush_pending()
        self._flush_pending()

    def _flush_pending(self) -> None:
        if not self._pending:
            return
        batch = sorted(self._pending, key=lambda s: s.uptime)
        self._pending = []
        self._write_rows(self._color_csv, self._color_file, [s.to_row() for s in batch])

    def _write_rows(self, writer, handle: Optional[IO[str]], rows: list) -> None:
        if writer is None or handle is None:
            return
        try:
            writer.writerows(rows)
            handle.flush()
        except OSError:
            logger.exception("Failed to write %d rows to %s", len(rows), handle.name)


def write_summary(path: Path, summary: dict) -> bool:
    """Write a session summary as JSON.  Returns *False* if writing failed."""
    try:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2)
    except OSError:
        logger.exception("Failed to write session summary to %s", path)
        return False
    logger.info("Session summary saved: %s", path)
    return True


def read_color_samples(path: Path) -> List[ColorSample]:
    """Load colour samples written by :class:`SampleWriter`."""
    samples: List[ColorSample] = []
    with open(path, "r", encoding="utf-8", newline="") as f:
        reader = csv.reader(f)
        header = next(reader, None)
        if header is None:
            return samples
        if tuple(header) != ColorSample.COLUMNS:
            raise ValueError(f"{path} is not a colour sample file (header={header})")
        for row in reader:
            if row:
                samples.append(ColorSample.from_row(row))
    return samples

#!/usr/bin/env python3
"""
Heart Rate Sampler – main entry point.

Usage
-----
    python main.py [OPTIONS]

Options
-------
    --fps INT               Camera frame rate (default: 60)
    --window FLOAT          Analysis window in seconds (default: 10)
    --settle FLOAT          Simulated source settle time (default: 3)
    --min-confidence FLOAT  Confidence needed to publish a reading (default: 0.5)
    --min-red-level FLOAT   Red-dominant pixel fraction for a covered lens (default: 0.9)
    --duration FLOAT        Length of the recording in seconds (default: 30)
    --mode MODE             Session type for the summary: resting | single
    --simulate              Use synthetic samples instead of a camera
    --simulated-bpm FLOAT   Heart rate of the synthetic samples (default: 65)
    --camera-index INT      OpenCV camera index (fallback, default: 0)
    --output DIR            Write sample CSVs and the session summary here
    --replay PATH           Re-analyse a recorded color_samples.csv and exit
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from heartrate_sampler.camera import CameraSource, NoCameraError
from heartrate_sampler.config import SUPPORTED_FRAME_RATES, SamplerConfig
from heartrate_sampler.pipeline import PipelineCoordinator
from heartrate_sampler.recording import (
    SUMMARY_FILENAME,
    SampleWriter,
    read_color_samples,
    write_summary,
)
from heartrate_sampler.result_log import SessionMode
from heartrate_sampler.signal_processor import SignalProcessor
from heartrate_sampler.simulator import SimulatedSource

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("heartrate_sampler")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fingertip heart rate sampler (camera PPG)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--fps", type=int, default=SUPPORTED_FRAME_RATES[0],
                        choices=SUPPORTED_FRAME_RATES,
                        help="Camera frame rate")
    parser.add_argument("--window", type=float, default=10.0,
                        help="Analysis window in seconds")
    parser.add_argument("--settle", type=float, default=3.0,
                        help="Seconds the simulated source waits before emitting")
    parser.add_argument("--min-confidence", type=float, default=0.5,
                        help="Confidence a reading must exceed to be published")
    parser.add_argument("--min-red-level", type=float, default=0.9,
                        help="Minimum red-dominant pixel fraction for a covered lens")
    parser.add_argument("--duration", type=float, default=30.0,
                        help="Recording length in seconds")
    parser.add_argument("--mode", choices=[m.value for m in SessionMode],
                        default=SessionMode.RESTING.value,
                        help="Session type used for the summary heart rate")
    parser.add_argument("--simulate", action="store_true",
                        help="Use synthetic samples instead of a camera")
    parser.add_argument("--simulated-bpm", type=float, default=65.0,
                        help="Heart rate encoded in the synthetic samples")
    parser.add_argument("--camera-index", type=int, default=0,
                        help="OpenCV VideoCapture index (fallback)")
    parser.add_argument("--output", type=Path, default=None,
                        help="Directory for sample CSVs and the session summary")
    parser.add_argument("--replay", type=Path, default=None,
                        help="Re-analyse a recorded color_samples.csv and exit")
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Offline re-analysis
# ---------------------------------------------------------------------------

def replay(path: Path, config: SamplerConfig) -> int:
    try:
        samples = read_color_samples(path)
    except (OSError, ValueError) as exc:
        logger.error("Cannot read %s: %s", path, exc)
        return 1

    processor = SignalProcessor(fps=config.fps, window_seconds=config.window_seconds)
    results = processor.find_heart_rate_values([s.green for s in samples])
    if not results:
        logger.warning("%d samples are not enough for a single window.", len(samples))
        return 1
    for i, (bpm, confidence) in enumerate(results):
        print(f"window {i:3d}  BPM={bpm:3d}  conf={confidence:.2f}")
    return 0


# ---------------------------------------------------------------------------
# Live session
# ---------------------------------------------------------------------------

def run(args: argparse.Namespace) -> int:
    try:
        config = SamplerConfig(
            fps=args.fps,
            window_seconds=args.window,
            settle_seconds=args.settle,
            min_confidence=args.min_confidence,
            min_red_level=args.min_red_level,
        )
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    if args.replay is not None:
        return replay(args.replay, config)

    if args.simulate:
        source = SimulatedSource(
            fps=config.fps,
            settle_seconds=config.settle_seconds,
            bpm=args.simulated_bpm,
        )
    else:
        source = CameraSource(fps=config.fps, camera_index=args.camera_index)

    writer = SampleWriter(args.output, batch_size=config.fps) if args.output else None

    def on_lens_covered(covered: bool) -> None:
        ts = time.strftime("%H:%M:%S")
        print(f"[{ts}] {'Finger detected' if covered else 'Cover the lens with your finger…'}")

    def on_bpm(bpm: int) -> None:
        ts = time.strftime("%H:%M:%S")
        print(f"[{ts}] BPM={bpm}")

    coordinator = PipelineCoordinator(
        source,
        config,
        on_lens_covered=on_lens_covered,
        on_bpm=on_bpm,
        writer=writer,
    )

    try:
        coordinator.start()
    except NoCameraError:
        logger.error("No camera available.  Try --simulate.")
        return 1

    logger.info("Recording for %.0f s.  Press Ctrl+C to stop early.", args.duration)
    try:
        time.sleep(args.duration)
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    finally:
        log = coordinator.stop()

    mode = SessionMode(args.mode)
    heart_rate = log.summarize(mode)
    print(f"Session heart rate ({mode.value}): {heart_rate:.0f} BPM "
          f"from {len(log)} windows")

    summary = coordinator.summary()
    if args.output:
        write_summary(args.output / SUMMARY_FILENAME, summary)
    else:
        logger.debug("Summary: %s", json.dumps(summary))
    return 0


def main(argv: list[str] | None = None) -> int:
    return run(parse_args(argv))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    sys.exit(main())

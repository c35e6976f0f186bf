"""
Ordered log of heart rate estimates for one recording session.

The log is append-only.  Besides the raw samples it keeps a "current
reading": the latest sample confident enough to be shown to the user.
Summaries for the different session types are derived from the samples
at the end of a recording.
"""

from __future__ import annotations

import enum
import logging
import threading
from datetime import datetime
from typing import List, Optional

import numpy as np

from .samples import BpmSample

logger = logging.getLogger(__name__)

# Returned by summaries when no usable heart rate was measured.
NO_READING = 0.0


class SessionMode(enum.Enum):
    RESTING = "resting"
    SINGLE_READING = "single"


class Sex(enum.Enum):
    FEMALE = "female"
    MALE = "male"
    OTHER = "other"


class ResultLog:
    """
    Thread-safe append-only store of ``BpmSample`` records.

    Parameters
    ----------
    min_confidence:
        Threshold for the current reading and for the summaries.  The
        current reading needs a confidence strictly above it; summaries
        accept samples at or above it.
    """

    def __init__(self, min_confidence: float = 0.5) -> None:
        self.min_confidence = min_confidence
        self._samples: List[BpmSample] = []
        self._current: Optional[BpmSample] = None
        self._frozen = False
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def append(self, sample: BpmSample) -> bool:
        """
        Add *sample* to the log.

        Returns *True* when the sample became the current reading.
        """
        with self._lock:
            if self._frozen:
                raise RuntimeError("Result log is frozen; the session has finished.")
            self._samples.append(sample)
            if sample.confidence is not None and sample.confidence > self.min_confidence:
                self._current = sample
                return True
            return False

    def current(self) -> Optional[BpmSample]:
        """Latest sample whose confidence exceeded the threshold."""
        with self._lock:
            return self._current

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def samples(self) -> List[BpmSample]:
        """Snapshot of all logged samples, oldest first."""
        with self._lock:
            return list(self._samples)

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    def _confident(self) -> List[BpmSample]:
        return [s for s in self.samples if s.meets(self.min_confidence)]

    def summarize(self, mode: SessionMode = SessionMode.RESTING) -> float:
        """
        Single heart rate value for the session.

        RESTING averages every confident sample; SINGLE_READING takes the
        first one.  Without any confident sample the second logged sample
        is used (the first window usually still contains settling), and
        ``NO_READING`` when there is none.
        """
        confident = self._confident()
        if mode is SessionMode.RESTING:
            value = float(np.mean([s.bpm for s in confident])) if confident else NO_READING
        else:
            value = float(confident[0].bpm) if confident else NO_READING

        if value > 0:
            return value

        samples = self.samples
        if len(samples) > 1 and samples[1].bpm is not None:
            logger.info("No confident heart rate; falling back to the second window.")
            return float(samples[1].bpm)
        logger.warning("No heart rate could be measured for this session.")
        return NO_READING

    def peak_heart_rate(self) -> Optional[BpmSample]:
        """First confident sample, taken right after exertion."""
        confident = self._confident()
        return confident[0] if confident else None

    def end_heart_rate(self) -> Optional[BpmSample]:
        """Last confident sample."""
        confident = self._confident()
        return confident[-1] if confident else None

    def resting_heart_rate(self) -> Optional[BpmSample]:
        """Most confident sample."""
        confident = self._confident()
        if not confident:
            return None
        return max(confident, key=lambda s: s.confidence)

    def vo2_max(self, sex: Sex, age: float, start_uptime: float = 0.0) -> Optional[float]:
        """
        Estimate VO2 max (ml/kg/min) from the recovery heart rate.

        Uses the mean of the confident samples logged at or after
        *start_uptime*, converted to beats per 30 seconds.  Needs at least
        two such samples.
        """
        confident = [s for s in self._confident() if s.uptime >= start_uptime]
        if len(confident) < 2:
            return None
        beats_per_30s = float(np.mean([s.bpm for s in confident])) / 2.0
        if sex is Sex.FEMALE:
            return 83.477 - 0.586 * beats_per_30s - 0.404 * age - 7.030
        if sex is Sex.MALE:
            return 83.477 - 0.586 * beats_per_30s - 0.404 * age
        return 84.687 - 0.722 * beats_per_30s - 0.383 * age

    def to_summary(
        self,
        identifier: str,
        start_date: datetime,
        end_date: datetime,
    ) -> dict:
        """JSON-serialisable record of the whole session."""
        return {
            "identifier": identifier,
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "samples": [s.to_dict() for s in self.samples],
        }

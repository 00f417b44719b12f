#!/usr/bin/env python3
"""
VoiceTurn Speech Activity Detector
Classifies audio-level samples as speech or silence using adaptive thresholds
and confidence hysteresis
"""
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Iterable, Optional

import numpy as np

from .config import DetectorConfig
from .logging_utils import setup_logger

logger = setup_logger("voiceturn.speech_activity", "logs/voiceturn.log")


@dataclass(frozen=True)
class AudioLevelSample:
    """Timestamped audio level in [0, 1]"""
    level: float
    timestamp: float


@dataclass(frozen=True)
class ActivityThresholds:
    speech_threshold: float
    silence_threshold: float
    mean_level: float
    peak_level: float


@dataclass(frozen=True)
class ConfidenceScore:
    speech_start: float = 0.0
    speech_end: float = 0.0


class ActivityState(Enum):
    """Per-sample classification"""
    INCONCLUSIVE = "inconclusive"
    ACTIVE = "active"
    INACTIVE = "inactive"


class ActivityEvent(Enum):
    SPEECH_START = "speech_start"
    SPEECH_END_CANDIDATE = "speech_end_candidate"


@dataclass(frozen=True)
class ActivityResult:
    """Outcome of feeding one sample to the detector"""
    sample: AudioLevelSample
    state: ActivityState
    confidence: ConfidenceScore
    thresholds: Optional[ActivityThresholds] = None
    event: Optional[ActivityEvent] = None

    @property
    def is_active(self) -> bool:
        return self.state is ActivityState.ACTIVE


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def _smooth(current: float, target: float, rate: float) -> float:
    return _clamp(current + rate * (target - current))


def compute_thresholds(levels: Iterable[float], config: DetectorConfig) -> ActivityThresholds:
    """Derive speech/silence thresholds from a non-empty window of levels"""
    window = np.fromiter(levels, dtype=np.float64)
    if window.size == 0:
        raise ValueError("Cannot derive thresholds from an empty window")

    mean_level = float(np.mean(window))
    peak_level = float(np.max(window))
    return ActivityThresholds(
        speech_threshold=max(config.speech_floor, mean_level * config.speech_factor),
        silence_threshold=max(config.silence_floor, mean_level * config.silence_factor),
        mean_level=mean_level,
        peak_level=peak_level,
    )


def update_confidence(previous: ConfidenceScore, level: float,
                      thresholds: ActivityThresholds, config: DetectorConfig) -> ConfidenceScore:
    """Leaky-integrator update of start/end confidence for one sample.

    Start confidence rises fast above the speech threshold and decays slowly
    otherwise. End confidence rises below the silence threshold, drops fast
    above the speech threshold and holds in between.
    """
    if level > thresholds.speech_threshold:
        start = _smooth(previous.speech_start, 1.0, config.rise_rate)
        end = _smooth(previous.speech_end, 0.0, config.end_decay_rate)
    else:
        start = _smooth(previous.speech_start, 0.0, config.decay_rate)
        if level < thresholds.silence_threshold:
            end = _smooth(previous.speech_end, 1.0, config.end_rise_rate)
        else:
            end = _clamp(previous.speech_end)
    return ConfidenceScore(speech_start=start, speech_end=end)


class SpeechActivityDetector:
    """Sliding-window speech detector with adaptive thresholds"""

    def __init__(self, config: Optional[DetectorConfig] = None):
        self.config = config or DetectorConfig()
        self.window: Deque[float] = deque(maxlen=self.config.window_size)
        self.confidence = ConfidenceScore()
        self.thresholds: Optional[ActivityThresholds] = None
        self.in_speech = False

    def process(self, sample: AudioLevelSample) -> ActivityResult:
        """Classify one sample and report any speech start/end-candidate event"""
        level = _clamp(float(sample.level))
        self.window.append(level)

        if len(self.window) < self.config.min_samples:
            return ActivityResult(sample=sample, state=ActivityState.INCONCLUSIVE,
                                  confidence=self.confidence)

        self.thresholds = compute_thresholds(self.window, self.config)
        self.confidence = update_confidence(self.confidence, level, self.thresholds, self.config)

        active = (level > self.thresholds.speech_threshold
                  and self.confidence.speech_start > self.config.confidence_gate)
        state = ActivityState.ACTIVE if active else ActivityState.INACTIVE

        event = None
        if active and not self.in_speech:
            self.in_speech = True
            event = ActivityEvent.SPEECH_START
            logger.debug(
                f"Speech start (confidence: {self.confidence.speech_start:.2f}, "
                f"threshold: {self.thresholds.speech_threshold:.3f})"
            )
        elif not active and self.in_speech:
            event = ActivityEvent.SPEECH_END_CANDIDATE

        return ActivityResult(sample=sample, state=state, confidence=self.confidence,
                              thresholds=self.thresholds, event=event)

    def reset_speech(self) -> None:
        """Forget the current utterance but keep the ambient window"""
        self.in_speech = False
        self.confidence = ConfidenceScore()

    def reset_end_confidence(self) -> None:
        self.confidence = ConfidenceScore(speech_start=self.confidence.speech_start, speech_end=0.0)

    def reset(self) -> None:
        self.window.clear()
        self.thresholds = None
        self.reset_speech()

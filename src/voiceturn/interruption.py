#!/usr/bin/env python3
"""
VoiceTurn barge-in detection
Watches the level stream during assistant playback for user interruption
"""
from typing import Optional

from .logging_utils import setup_logger
from .speech_activity import AudioLevelSample

logger = setup_logger("voiceturn.interruption", "logs/voiceturn.log")


class InterruptionDetector:
    """Fires once per armed turn on the first sample above the threshold"""

    def __init__(self, threshold: float = 0.15):
        self.threshold = threshold
        self.armed_turn_id: Optional[int] = None
        self.fired = False

    @property
    def is_armed(self) -> bool:
        return self.armed_turn_id is not None and not self.fired

    def arm(self, turn_id: int) -> None:
        self.armed_turn_id = turn_id
        self.fired = False
        logger.debug(f"Interruption detection armed for turn {turn_id} (threshold {self.threshold})")

    def disarm(self) -> None:
        self.armed_turn_id = None
        self.fired = False

    def check(self, sample: AudioLevelSample, turn_id: int) -> bool:
        """Return True exactly once when the user barges in on `turn_id`"""
        if not self.is_armed or turn_id != self.armed_turn_id:
            return False
        if sample.level > self.threshold:
            self.fired = True
            logger.info(f"User interruption detected (level {sample.level:.3f} > {self.threshold})")
            return True
        return False

    def set_threshold(self, threshold: float) -> None:
        """Set barge-in threshold"""
        self.threshold = threshold
        logger.info(f"Interruption threshold set to {threshold}")

    def get_status(self) -> dict:
        return {
            'armed_turn_id': self.armed_turn_id,
            'fired': self.fired,
            'threshold': self.threshold,
        }

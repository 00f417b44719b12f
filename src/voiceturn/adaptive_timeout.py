"""
Adaptive silence timeout sizing from conversation context
"""
import math
from dataclasses import dataclass
from typing import Optional

from .config import TimingConfig
from .conversation_context import Complexity, ConversationContext
from .logging_utils import setup_logger

logger = setup_logger("voiceturn.adaptive_timeout", "logs/voiceturn.log")

QUIET_VOLUME = 0.3
LOUD_PEAK = 0.7
HIGH_PAUSE_FREQUENCY = 0.3
VERBOSE_DURATION_MS = 5000.0
TERSE_DURATION_MS = 2000.0
MIN_TURNS_FOR_HISTORY = 3


@dataclass(frozen=True)
class TimeoutBreakdown:
    timeout_ms: float
    base_ms: float
    volume_multiplier: float = 1.0
    pattern_multiplier: float = 1.0
    history_multiplier: float = 1.0
    complexity_multiplier: float = 1.0


def _finite(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


class AdaptiveTimeoutCalculator:
    """Computes how long to wait in silence before ending the user's turn"""

    def __init__(self, timing: Optional[TimingConfig] = None):
        self.timing = timing or TimingConfig()

    def clamp(self, timeout_ms: float) -> float:
        lo, hi = self.timing.min_timeout, self.timing.max_timeout
        value = _finite(timeout_ms)
        if value is None:
            return hi
        return max(lo, min(hi, value))

    def volume_multiplier(self, context: ConversationContext) -> float:
        multiplier = 1.0
        average, peak = _finite(context.average_volume), _finite(context.peak_volume)
        if average is not None and average < QUIET_VOLUME:
            multiplier *= 1.3  # quiet speakers trail off
        if peak is not None and peak > LOUD_PEAK:
            multiplier *= 0.8
        return multiplier

    def pattern_multiplier(self, context: ConversationContext) -> float:
        pauses = _finite(context.user_speech_patterns.pause_frequency)
        return 1.3 if pauses is not None and pauses > HIGH_PAUSE_FREQUENCY else 1.0

    def history_multiplier(self, context: ConversationContext) -> float:
        if context.turn_count < MIN_TURNS_FOR_HISTORY:
            return 1.0
        duration = _finite(context.user_speech_patterns.average_duration_ms)
        if duration is None:
            return 1.0
        if duration > VERBOSE_DURATION_MS:
            return 1.4
        if duration < TERSE_DURATION_MS:
            return 0.7
        return 1.0

    def complexity_multiplier(self, context: ConversationContext) -> float:
        return 1.5 if context.complexity is Complexity.COMPLEX else 1.0

    def breakdown(self, context: ConversationContext, base_ms: float) -> TimeoutBreakdown:
        volume = self.volume_multiplier(context)
        pattern = self.pattern_multiplier(context)
        history = self.history_multiplier(context)
        complexity = self.complexity_multiplier(context)
        raw = base_ms * volume * pattern * history * complexity
        return TimeoutBreakdown(
            timeout_ms=self.clamp(raw),
            base_ms=base_ms,
            volume_multiplier=volume,
            pattern_multiplier=pattern,
            history_multiplier=history,
            complexity_multiplier=complexity,
        )

    def calculate(self, context: ConversationContext, base_ms: float) -> float:
        """Silence timeout in milliseconds, always within [min_timeout, max_timeout]"""
        result = self.breakdown(context, base_ms)
        logger.debug(
            f"Adaptive silence timeout: {result.timeout_ms:.0f}ms (base: {base_ms:.0f}ms, "
            f"volume: {result.volume_multiplier:.2f}, pattern: {result.pattern_multiplier:.2f}, "
            f"history: {result.history_multiplier:.2f}, complexity: {result.complexity_multiplier:.2f})"
        )
        return result.timeout_ms

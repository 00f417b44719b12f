#!/usr/bin/env python3
"""
VoiceTurn Conversation Context Tracker
Keeps per-turn metrics and the running aggregates that adapt turn timing
"""
import time
from collections import deque
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from .logging_utils import setup_logger

logger = setup_logger("voiceturn.conversation_context", "logs/voiceturn.log")

COMPLEX_RESPONSE_MS = 3000.0
MEDIUM_RESPONSE_MS = 1500.0


class Complexity(Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


@dataclass
class UserSpeechPatterns:
    average_duration_ms: float = 3000.0
    pause_frequency: float = 0.2
    interruption_rate: float = 0.1


@dataclass
class ConversationContext:
    """Running aggregates for the current conversation"""
    turn_count: int = 0
    average_response_time_ms: float = 2000.0
    user_speech_patterns: UserSpeechPatterns = field(default_factory=UserSpeechPatterns)
    complexity: Complexity = Complexity.MEDIUM
    average_volume: Optional[float] = None
    peak_volume: Optional[float] = None

    def copy(self) -> "ConversationContext":
        return ConversationContext(
            turn_count=self.turn_count,
            average_response_time_ms=self.average_response_time_ms,
            user_speech_patterns=UserSpeechPatterns(**asdict(self.user_speech_patterns)),
            complexity=self.complexity,
            average_volume=self.average_volume,
            peak_volume=self.peak_volume,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["complexity"] = self.complexity.value
        return data


@dataclass(frozen=True)
class TurnMetric:
    """Immutable record of one completed turn"""
    turn_id: int
    start_time: float
    end_time: float
    speech_duration_ms: float
    processing_time_ms: float
    response_time_ms: float
    pause_count: int = 0
    average_level: Optional[float] = None
    peak_level: Optional[float] = None
    interrupted: bool = False


def classify_complexity(average_response_time_ms: float) -> Complexity:
    if average_response_time_ms > COMPLEX_RESPONSE_MS:
        return Complexity.COMPLEX
    if average_response_time_ms > MEDIUM_RESPONSE_MS:
        return Complexity.MEDIUM
    return Complexity.SIMPLE


def _mean(values: List[float]) -> float:
    return sum(values) / len(values)


class ConversationContextTracker:
    """Records turn metrics and recomputes the conversation context"""

    def __init__(self, max_history: int = 20):
        """
        Initialize context tracker

        Args:
            max_history: Maximum number of turn metrics kept for aggregation
        """
        self.max_history = max_history
        self.context = ConversationContext()
        self.history: Deque[TurnMetric] = deque(maxlen=max_history)
        self.last_refresh: Optional[float] = None

    def record_turn(self, metric: TurnMetric) -> ConversationContext:
        """Append a completed turn and recompute aggregates"""
        self.history.append(metric)
        self._recompute()
        logger.info(
            f"Turn {metric.turn_id} recorded: speech {metric.speech_duration_ms:.0f}ms, "
            f"processing {metric.processing_time_ms:.0f}ms, interrupted={metric.interrupted}"
        )
        return self.context

    def _recompute(self) -> None:
        recent = list(self.history)
        if not recent:
            return

        ctx = self.context
        ctx.turn_count += 1
        ctx.average_response_time_ms = _mean([m.response_time_ms for m in recent])

        patterns = ctx.user_speech_patterns
        patterns.average_duration_ms = _mean([m.speech_duration_ms for m in recent])
        # pauses per second of speech
        patterns.pause_frequency = _mean([
            m.pause_count / max(1.0, m.speech_duration_ms / 1000.0) for m in recent
        ])
        patterns.interruption_rate = _mean([1.0 if m.interrupted else 0.0 for m in recent])

        levels = [m.average_level for m in recent if m.average_level is not None]
        peaks = [m.peak_level for m in recent if m.peak_level is not None]
        if levels:
            ctx.average_volume = _mean(levels)
        if peaks:
            ctx.peak_volume = _mean(peaks)

        ctx.complexity = classify_complexity(ctx.average_response_time_ms)

    def refresh(self, now: Optional[float] = None) -> ConversationContext:
        """Periodic recomputation of complexity, independent of turn completion"""
        self.last_refresh = time.time() if now is None else now
        complexity = classify_complexity(self.context.average_response_time_ms)
        if complexity is not self.context.complexity:
            logger.info(f"Conversation complexity: {self.context.complexity.value} -> {complexity.value}")
            self.context.complexity = complexity
        return self.context

    def snapshot(self) -> ConversationContext:
        return self.context.copy()

    def get_turn_metrics(self) -> List[TurnMetric]:
        return list(self.history)

    def reset(self) -> None:
        """Clear metrics and restore default context at session end"""
        self.history.clear()
        self.context = ConversationContext()
        self.last_refresh = None
        logger.debug("Conversation context reset")

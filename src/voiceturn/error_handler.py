"""
VoiceTurn error taxonomy and centralized error bookkeeping
"""
import time
import traceback
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .logging_utils import setup_logger

logger = setup_logger("voiceturn.error_handler", "logs/voiceturn.log")


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class VoiceTurnException(Exception):
    """Base exception for VoiceTurn-specific errors"""

    def __init__(self, message: str, component: str = "unknown", operation: str = "unknown", **kwargs):
        super().__init__(message)
        self.component = component
        self.operation = operation
        self.context = kwargs


class CollaboratorFailure(VoiceTurnException):
    """Transcription, response generation or synthesis failed or timed out"""
    pass


class NoSpeechDetected(VoiceTurnException):
    """Listening window elapsed without confirmed speech"""
    pass


class InvalidTranscript(VoiceTurnException):
    """Speech shorter than the minimum duration; treated as noise"""
    pass


class CancelledByUser(VoiceTurnException):
    """Conversation stopped while a turn was in flight"""
    pass


class ConfigurationError(VoiceTurnException):
    """Configuration-related errors"""
    pass


@dataclass
class ErrorContext:
    """Context information for error tracking"""
    component: str
    operation: str
    session_id: Optional[str] = None
    turn_id: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)


class ErrorHandler:
    """Records handled errors and logs them by severity"""

    def __init__(self, max_history_size: int = 100):
        self.error_count = 0
        self.error_history: List[Dict[str, Any]] = []
        self.max_history_size = max_history_size

    def handle_error(self, error: Exception, context: ErrorContext,
                     severity: ErrorSeverity = ErrorSeverity.MEDIUM) -> Dict[str, Any]:
        """Handle an error with context and severity"""
        error_id = f"ERR_{int(time.time() * 1000000)}"
        self.error_count += 1

        error_details = {
            'error_id': error_id,
            'type': error.__class__.__name__,
            'message': str(error),
            'traceback': ''.join(traceback.format_exception(type(error), error, error.__traceback__)),
            'context': {
                'component': context.component,
                'operation': context.operation,
                'session_id': context.session_id,
                'turn_id': context.turn_id,
                'metadata': context.metadata,
            },
            'severity': severity.value,
            'timestamp': context.timestamp.isoformat(),
            'count': self.error_count,
        }

        self._log_error(error_details, severity)
        self._add_to_history(error_details)
        return error_details

    def _log_error(self, error_details: Dict[str, Any], severity: ErrorSeverity) -> None:
        """Log error with appropriate level"""
        log_message = f"[{error_details['error_id']}] {error_details['type']}: {error_details['message']}"

        if severity == ErrorSeverity.CRITICAL:
            logger.critical(log_message, extra={'error_details': error_details})
        elif severity == ErrorSeverity.HIGH:
            logger.error(log_message, extra={'error_details': error_details})
        elif severity == ErrorSeverity.MEDIUM:
            logger.warning(log_message, extra={'error_details': error_details})
        else:
            logger.info(log_message, extra={'error_details': error_details})

    def _add_to_history(self, error_details: Dict[str, Any]) -> None:
        """Add error to history, removing old entries if needed"""
        self.error_history.append(error_details)
        if len(self.error_history) > self.max_history_size:
            self.error_history = self.error_history[-self.max_history_size:]

    def get_error_stats(self) -> Dict[str, Any]:
        """Get error statistics"""
        counts: Dict[str, int] = {}
        for error in self.error_history:
            counts[error['type']] = counts.get(error['type'], 0) + 1
        return {
            'total_errors': self.error_count,
            'recent_errors': len(self.error_history),
            'error_types': counts,
        }

    def clear_error_history(self) -> None:
        """Clear error history"""
        self.error_history.clear()
        self.error_count = 0


__all__ = [
    "ErrorSeverity", "ErrorContext", "ErrorHandler", "VoiceTurnException",
    "CollaboratorFailure", "NoSpeechDetected", "InvalidTranscript",
    "CancelledByUser", "ConfigurationError",
]

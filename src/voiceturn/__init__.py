"""
VoiceTurn - Turn-taking engine for spoken dialogue

Decides from a stream of audio levels when the user starts and stops
speaking, when the assistant may answer and when the user barges in,
with silence timing that adapts to the conversation.
"""

__version__ = "1.0.0"
__author__ = "VoiceTurn Team"

from .config import DetectorConfig, TimingConfig, TurnConfig
from .turn_manager import SessionHandle, TurnCallbacks, TurnState, TurnStateMachine

__all__ = [
    "DetectorConfig",
    "SessionHandle",
    "TimingConfig",
    "TurnCallbacks",
    "TurnConfig",
    "TurnState",
    "TurnStateMachine",
]

"""
Centralized configuration loader and accessors for VoiceTurn.

Loads YAML from `config/config.yaml` (or the file named by VOICETURN_CONFIG)
and provides typed getters aligned with the documented schema
(turn_taking.*, timing.*, detector.*, audio.*, llm.*). Durations are in
milliseconds unless the key says otherwise.
"""
from __future__ import annotations

import math
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .error_handler import ConfigurationError


_CONFIG_PATH = os.environ.get(
    "VOICETURN_CONFIG",
    os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", "config", "config.yaml")),
)
_CFG: Dict[str, Any] = {}
_LOADED = False

_BOOL_TRUE_VALUES = frozenset({"true", "1", "yes", "y", "on"})
_BOOL_FALSE_VALUES = frozenset({"false", "0", "no", "n", "off"})


def _load() -> None:
    global _CFG, _LOADED
    if _LOADED:
        return
    if os.path.exists(_CONFIG_PATH):
        with open(_CONFIG_PATH, "r") as f:
            _CFG = yaml.safe_load(f) or {}
    else:
        _CFG = {}

    _validate_config(_CFG)
    _LOADED = True


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _validate_config(config: Dict[str, Any]) -> None:
    """Validate configuration values and provide helpful error messages"""
    errors = []

    turn_cfg = config.get("turn_taking") or {}
    if isinstance(turn_cfg, dict):
        for key in ("silence_timeout", "max_speech_duration", "min_speech_duration"):
            if key in turn_cfg and (not _is_number(turn_cfg[key]) or turn_cfg[key] <= 0):
                errors.append(f"turn_taking.{key} must be a positive number of milliseconds")
        for key in ("interruption_threshold", "turn_end_confidence"):
            if key in turn_cfg and (not _is_number(turn_cfg[key]) or not 0 <= turn_cfg[key] <= 1):
                errors.append(f"turn_taking.{key} must be between 0 and 1")
    else:
        errors.append("turn_taking must be a mapping")

    timing_cfg = config.get("timing") or {}
    if isinstance(timing_cfg, dict):
        for key, value in timing_cfg.items():
            if not _is_number(value) or value < 0:
                errors.append(f"timing.{key} must be a non-negative number")
        lo, hi = timing_cfg.get("min_timeout"), timing_cfg.get("max_timeout")
        if _is_number(lo) and _is_number(hi) and lo > hi:
            errors.append("timing.min_timeout must not exceed timing.max_timeout")
    else:
        errors.append("timing must be a mapping")

    detector_cfg = config.get("detector") or {}
    if isinstance(detector_cfg, dict):
        for key in ("rise_rate", "decay_rate", "confidence_gate"):
            if key in detector_cfg and (not _is_number(detector_cfg[key]) or not 0 < detector_cfg[key] < 1):
                errors.append(f"detector.{key} must be in (0, 1)")
        sf, nf = detector_cfg.get("speech_factor"), detector_cfg.get("silence_factor")
        if _is_number(sf) and _is_number(nf) and sf <= nf:
            errors.append("detector.speech_factor must be greater than detector.silence_factor")
    else:
        errors.append("detector must be a mapping")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors)
        raise ValueError(error_msg)


def get(path: str, default: Any = None) -> Any:
    """Dot-path getter from loaded config.

    Example: get("turn_taking.silence_timeout", 1500)
    """
    _load()
    cur: Any = _CFG
    for part in path.split("."):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return default
    return cur


def _coerce_bool(val: Any, default: Any) -> Any:
    if isinstance(val, bool):
        return val
    if isinstance(val, str):
        normalized = val.strip().lower()
        if normalized in _BOOL_TRUE_VALUES:
            return True
        if normalized in _BOOL_FALSE_VALUES:
            return False
        return default
    try:
        return bool(val)
    except (TypeError, ValueError):
        return default


def get_typed(path: str, default: Any, cast_type: type) -> Any:
    """Get a configuration value with type casting and default fallback.

    Args:
        path: Dot-separated configuration path
        default: Default value if path not found or casting fails
        cast_type: Type to cast the value to

    Returns:
        The cast value or default
    """
    val = get(path, default)

    if cast_type is bool:
        return _coerce_bool(val, default)

    if isinstance(val, cast_type):
        return val

    try:
        return cast_type(val)
    except (TypeError, ValueError):
        return default


# ---- turn_taking.* ----
def get_silence_timeout() -> float:
    return get_typed("turn_taking.silence_timeout", 1500.0, float)

def get_max_speech_duration() -> float:
    return get_typed("turn_taking.max_speech_duration", 30000.0, float)

def get_min_speech_duration() -> float:
    return get_typed("turn_taking.min_speech_duration", 500.0, float)

def get_interruption_threshold() -> float:
    return get_typed("turn_taking.interruption_threshold", 0.15, float)

def get_turn_end_confidence() -> float:
    return get_typed("turn_taking.turn_end_confidence", 0.8, float)

def continuous_mode() -> bool:
    return get_typed("turn_taking.continuous_mode", True, bool)

def auto_start() -> bool:
    return get_typed("turn_taking.auto_start", True, bool)

def adaptive_silence() -> bool:
    return get_typed("turn_taking.adaptive_silence", True, bool)


# ---- timing.* ----
def get_no_speech_timeout() -> float:
    return get_typed("timing.no_speech_timeout", 8000.0, float)

def get_interruption_grace() -> float:
    return get_typed("timing.interruption_grace", 300.0, float)

def get_continuation_delay() -> float:
    return get_typed("timing.continuation_delay", 1000.0, float)

def get_collaborator_timeout() -> float:
    return get_typed("timing.collaborator_timeout", 30000.0, float)

def get_context_refresh_interval() -> float:
    return get_typed("timing.context_refresh_interval", 5000.0, float)

def get_min_timeout() -> float:
    return get_typed("timing.min_timeout", 800.0, float)

def get_max_timeout() -> float:
    return get_typed("timing.max_timeout", 4000.0, float)


# ---- audio.* ----
def get_audio_sample_rate() -> int:
    return get_typed("audio.sample_rate", 16000, int)

def get_audio_block_sec() -> float:
    return get_typed("audio.block_sec", 0.1, float)

def get_audio_level_gain() -> float:
    return get_typed("audio.level_gain", 5.0, float)

def get_audio_input_device():
    return get("audio.input_device", None)


# ---- llm.* ----
def get_llm_server_url() -> str:
    return str(get("llm.server_url", "http://localhost:8080/v1/chat/completions"))

def get_llm_model() -> str:
    return str(get("llm.model", "local"))

def get_system_prompt() -> str:
    return str(get("llm.system_prompt", "You are a helpful voice assistant. Keep answers short and conversational."))

def get_llm_temperature() -> float:
    return get_typed("llm.temperature", 0.4, float)

def get_llm_max_tokens() -> int:
    return get_typed("llm.max_tokens", 200, int)

def get_llm_timeout() -> float:
    return get_typed("llm.timeout", 30.0, float)


# camelCase spellings accepted by TurnConfig.update
_OPTION_ALIASES = {
    "silenceTimeout": "silence_timeout",
    "maxSpeechDuration": "max_speech_duration",
    "minSpeechDuration": "min_speech_duration",
    "interruptionThreshold": "interruption_threshold",
    "turnEndConfidence": "turn_end_confidence",
    "continuousMode": "continuous_mode",
    "autoStart": "auto_start",
    "adaptiveSilence": "adaptive_silence",
}


@dataclass(frozen=True)
class TurnConfig:
    """Runtime turn-taking options; the only values update_config may change"""
    silence_timeout: float = 1500.0
    max_speech_duration: float = 30000.0
    min_speech_duration: float = 500.0
    interruption_threshold: float = 0.15
    turn_end_confidence: float = 0.8
    continuous_mode: bool = True
    auto_start: bool = True
    adaptive_silence: bool = True

    @classmethod
    def from_config(cls) -> "TurnConfig":
        return cls(
            silence_timeout=get_silence_timeout(),
            max_speech_duration=get_max_speech_duration(),
            min_speech_duration=get_min_speech_duration(),
            interruption_threshold=get_interruption_threshold(),
            turn_end_confidence=get_turn_end_confidence(),
            continuous_mode=continuous_mode(),
            auto_start=auto_start(),
            adaptive_silence=adaptive_silence(),
        )

    def update(self, partial: Mapping[str, Any]) -> "TurnConfig":
        """Return a copy with `partial` applied.

        Raises ConfigurationError for unknown options or invalid values;
        nothing is applied in that case.
        """
        known = {f.name: f for f in fields(self)}
        changes: Dict[str, Any] = {}
        for key, value in partial.items():
            name = _OPTION_ALIASES.get(key, key)
            if name not in known:
                raise ConfigurationError(
                    f"Unrecognized turn-taking option: {key}",
                    component="config", operation="update",
                )
            changes[name] = _validate_option(name, value)
        return replace(self, **changes)


def _validate_option(name: str, value: Any) -> Any:
    if name in ("continuous_mode", "auto_start", "adaptive_silence"):
        if isinstance(value, bool):
            return value
        coerced = _coerce_bool(value, None) if isinstance(value, str) else None
        if coerced is None:
            raise ConfigurationError(f"{name} must be a boolean", component="config", operation="update")
        return coerced

    if not _is_number(value):
        raise ConfigurationError(f"{name} must be a number", component="config", operation="update")
    value = float(value)
    if name in ("interruption_threshold", "turn_end_confidence"):
        if not 0.0 <= value <= 1.0:
            raise ConfigurationError(f"{name} must be between 0 and 1", component="config", operation="update")
    elif value <= 0:
        raise ConfigurationError(f"{name} must be positive", component="config", operation="update")
    return value


@dataclass(frozen=True)
class TimingConfig:
    """Static timer settings (milliseconds)"""
    no_speech_timeout: float = 8000.0
    interruption_grace: float = 300.0
    continuation_delay: float = 1000.0
    collaborator_timeout: float = 30000.0
    context_refresh_interval: float = 5000.0
    min_timeout: float = 800.0
    max_timeout: float = 4000.0

    @classmethod
    def from_config(cls) -> "TimingConfig":
        return cls(
            no_speech_timeout=get_no_speech_timeout(),
            interruption_grace=get_interruption_grace(),
            continuation_delay=get_continuation_delay(),
            collaborator_timeout=get_collaborator_timeout(),
            context_refresh_interval=get_context_refresh_interval(),
            min_timeout=get_min_timeout(),
            max_timeout=get_max_timeout(),
        )


@dataclass(frozen=True)
class DetectorConfig:
    """Speech activity detector tuning"""
    window_size: int = 20
    min_samples: int = 10
    speech_floor: float = 0.08
    silence_floor: float = 0.03
    speech_factor: float = 2.0
    silence_factor: float = 1.2
    rise_rate: float = 0.25
    decay_rate: float = 0.15
    end_rise_rate: float = 0.25
    end_decay_rate: float = 0.35
    confidence_gate: float = 0.6

    @classmethod
    def from_config(cls) -> "DetectorConfig":
        defaults = cls()
        values = {}
        for f in fields(cls):
            values[f.name] = get_typed(f"detector.{f.name}", getattr(defaults, f.name), type(getattr(defaults, f.name)))
        return cls(**values)

    def samples_to_gate(self) -> int:
        """Consecutive above-threshold samples needed to open the gate from zero confidence"""
        return math.ceil(math.log(1.0 - self.confidence_gate) / math.log(1.0 - self.rise_rate))


def validate_config_silent() -> tuple[bool, List[str]]:
    """Validate configuration without raising exceptions

    Returns:
        tuple: (is_valid, list_of_warnings)
    """
    try:
        if not _LOADED:
            _load()
        _validate_config(_CFG)
        return True, []
    except ValueError as e:
        return False, [str(e)]
    except yaml.YAMLError as e:
        return False, [f"Validation error: {e}"]


def get_all() -> Dict[str, Any]:
    """Get the entire configuration dictionary"""
    _load()
    return _CFG.copy()


def reload_config(path: Optional[str] = None) -> None:
    """Reload configuration from file"""
    global _CFG, _LOADED, _CONFIG_PATH
    if path is not None:
        _CONFIG_PATH = path
    _LOADED = False
    _CFG = {}
    _load()

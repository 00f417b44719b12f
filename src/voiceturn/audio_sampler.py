#!/usr/bin/env python3
"""
VoiceTurn Audio Level Sampling
Thin adapter turning capture level callbacks into AudioLevelSample values, plus
a PortAudio-backed capture implementation
"""
import threading
import time
from typing import Any, Callable, List, Optional

import numpy as np
try:
    import sounddevice as sd  # PortAudio bindings
except Exception:  # Guard import failures (no PortAudio on CI hosts)
    sd = None  # type: ignore

from . import config as CFG
from .error_handler import ConfigurationError
from .logging_utils import setup_logger
from .speech_activity import AudioLevelSample

logger = setup_logger("voiceturn.audio_sampler", "logs/voiceturn.log")


class AudioLevelSampler:
    """Starts/stops the capture collaborator and wraps its levels"""

    def __init__(self, capture: Any):
        self.capture = capture
        self.is_running = False
        self.latest: Optional[AudioLevelSample] = None
        self._on_sample: Optional[Callable[[AudioLevelSample], None]] = None
        self._lock = threading.Lock()

    def start(self, on_sample: Callable[[AudioLevelSample], None]) -> None:
        """Start sampling; calling again while running only swaps the consumer"""
        with self._lock:
            self._on_sample = on_sample
            if self.is_running:
                return
            self.is_running = True

        logger.info("Starting audio level sampling")
        try:
            self.capture.start_sampling(self._handle_level)
        except Exception:
            with self._lock:
                self.is_running = False
            raise

    def stop(self) -> None:
        with self._lock:
            if not self.is_running:
                return
            self.is_running = False
            self._on_sample = None

        logger.info("Stopping audio level sampling")
        try:
            self.capture.stop_sampling()
        except Exception as e:
            logger.error(f"Error stopping audio capture: {e}")

    def _handle_level(self, level: float, timestamp: Optional[float] = None) -> None:
        with self._lock:
            consumer = self._on_sample if self.is_running else None
        if consumer is None:
            return

        try:
            level = float(level)
        except (TypeError, ValueError):
            return
        if not np.isfinite(level):
            return

        sample = AudioLevelSample(
            level=min(1.0, max(0.0, abs(level))),
            timestamp=time.monotonic() if timestamp is None else float(timestamp),
        )
        self.latest = sample
        consumer(sample)


class SoundDeviceCapture:
    """Microphone capture emitting one RMS level per block and buffering audio"""

    def __init__(self, sample_rate: Optional[int] = None, block_sec: Optional[float] = None,
                 level_gain: Optional[float] = None, input_device=None,
                 max_buffer_sec: float = 60.0):
        self.sample_rate = CFG.get_audio_sample_rate() if sample_rate is None else sample_rate
        self.block_sec = CFG.get_audio_block_sec() if block_sec is None else block_sec
        self.level_gain = CFG.get_audio_level_gain() if level_gain is None else level_gain
        self.input_device = input_device if input_device is not None else CFG.get_audio_input_device()
        self.max_buffer_samples = int(self.sample_rate * max_buffer_sec)

        self.current_stream: Optional[Any] = None
        self._on_level: Optional[Callable[[float, float], None]] = None
        self._frames: List[np.ndarray] = []
        self._buffered = 0
        self.buffer_lock = threading.Lock()

    def start_sampling(self, on_level: Callable[[float, float], None]) -> None:
        if sd is None:
            raise ConfigurationError("sounddevice is not available; cannot capture audio",
                                     component="audio_sampler", operation="start_sampling")
        self._on_level = on_level
        self.current_stream = sd.InputStream(
            samplerate=self.sample_rate,
            channels=1,
            dtype=np.float32,
            blocksize=int(self.sample_rate * self.block_sec),
            callback=self._audio_callback,
            device=self.input_device,
        )
        self.current_stream.start()

    def stop_sampling(self) -> None:
        self._on_level = None
        if self.current_stream:
            try:
                self.current_stream.stop()
                self.current_stream.close()
            except Exception as e:
                logger.error(f"Error stopping input stream: {e}")
            finally:
                self.current_stream = None

    def _audio_callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        if status:
            logger.warning(f"Input stream status: {status}")

        block = np.asarray(indata, dtype=np.float32).ravel()
        with self.buffer_lock:
            self._frames.append(block.copy())
            self._buffered += block.size
            while self._buffered > self.max_buffer_samples and len(self._frames) > 1:
                self._buffered -= self._frames.pop(0).size

        callback = self._on_level
        if callback is not None:
            callback(self.block_level(block), time.monotonic())

    def block_level(self, block: np.ndarray) -> float:
        """RMS of a block scaled into [0, 1]"""
        if block.size == 0:
            return 0.0
        rms = float(np.sqrt(np.mean(block.astype(np.float64) ** 2)))
        return min(1.0, rms * self.level_gain)

    def take_utterance(self) -> np.ndarray:
        """Audio captured since the previous call, as mono float32"""
        with self.buffer_lock:
            frames, self._frames, self._buffered = self._frames, [], 0
        if not frames:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(frames)

    def discard_utterance(self) -> None:
        """Drop buffered audio so the next utterance starts from now"""
        with self.buffer_lock:
            self._frames, self._buffered = [], 0

#!/usr/bin/env python3
"""
VoiceTurn Turn State Machine
Sole authority over the conversation state. Audio samples, timers,
collaborator completions and public requests all arrive as TurnEvents on a
single queue and are handled one at a time; events tagged with a turn that
has already ended are dropped.
"""
import logging
import queue
import re
import threading
import time
import uuid
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .adaptive_timeout import AdaptiveTimeoutCalculator
from .audio_sampler import AudioLevelSampler
from .config import DetectorConfig, TimingConfig, TurnConfig
from .conversation_context import ConversationContext, ConversationContextTracker, TurnMetric
from .error_handler import (
    CancelledByUser,
    CollaboratorFailure,
    ConfigurationError,
    ErrorContext,
    ErrorHandler,
    ErrorSeverity,
    InvalidTranscript,
    NoSpeechDetected,
)
from .interruption import InterruptionDetector
from .logging_utils import log_with_context, setup_logger
from .speech_activity import ActivityEvent, ActivityResult, ActivityState, AudioLevelSample, SpeechActivityDetector

logger = setup_logger("voiceturn.turn_manager", "logs/voiceturn.log")

STOP_WAIT_SEC = 2.0


class TurnState(Enum):
    """Conversation states"""
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    WAITING = "waiting"
    INTERRUPTED = "interrupted"
    ERROR = "error"


_ALLOWED_TRANSITIONS = {
    TurnState.IDLE: {TurnState.LISTENING},
    TurnState.LISTENING: {TurnState.PROCESSING, TurnState.IDLE},
    TurnState.PROCESSING: {TurnState.SPEAKING, TurnState.ERROR},
    TurnState.SPEAKING: {TurnState.IDLE, TurnState.INTERRUPTED, TurnState.ERROR},
    TurnState.INTERRUPTED: {TurnState.LISTENING},
    TurnState.ERROR: {TurnState.IDLE},
    TurnState.WAITING: set(),
}


class EventKind(Enum):
    # public requests
    START = "start"
    STOP = "stop"
    LISTEN = "listen"
    INTERRUPT = "interrupt"
    CONFIG = "config"
    # audio
    SAMPLE = "sample"
    # timers
    NO_SPEECH_TIMEOUT = "no_speech_timeout"
    SILENCE_TIMEOUT = "silence_timeout"
    MAX_SPEECH_TIMEOUT = "max_speech_timeout"
    CALL_TIMEOUT = "call_timeout"
    GRACE_ELAPSED = "grace_elapsed"
    CONTINUE_LISTENING = "continue_listening"
    CONTEXT_REFRESH = "context_refresh"
    # collaborators
    TRANSCRIPTION_DONE = "transcription_done"
    TRANSCRIPTION_FAILED = "transcription_failed"
    RESPONSE_DONE = "response_done"
    RESPONSE_FAILED = "response_failed"
    SYNTHESIS_STARTED = "synthesis_started"
    SYNTHESIS_DONE = "synthesis_done"
    SYNTHESIS_STOPPED = "synthesis_stopped"
    SYNTHESIS_FAILED = "synthesis_failed"
    # internal
    RECOVER = "recover"


@dataclass(frozen=True)
class TurnEvent:
    kind: EventKind
    session_id: Optional[str] = None
    turn_id: Optional[int] = None
    payload: Any = None
    ack: Optional[threading.Event] = field(default=None, compare=False)


@dataclass(frozen=True)
class SessionHandle:
    session_id: str


@dataclass
class TurnSession:
    """The one active conversation"""
    session_id: str
    context: ConversationContext
    current_state: TurnState = TurnState.IDLE
    turn_count: int = 0
    current_turn_id: int = 0
    turn_start_time: float = 0.0
    last_activity: float = 0.0


@dataclass
class TurnCallbacks:
    on_state_change: Optional[Callable[[TurnState, ConversationContext], None]] = None
    on_user_speech_start: Optional[Callable[[], None]] = None
    on_user_speech_end: Optional[Callable[[str, float], None]] = None
    on_ai_response_start: Optional[Callable[[str], None]] = None
    on_ai_response_end: Optional[Callable[[], None]] = None
    on_interruption: Optional[Callable[[str], None]] = None
    on_audio_level_update: Optional[Callable[[float], None]] = None
    on_error: Optional[Callable[[Exception, TurnState], None]] = None


@dataclass
class _TurnProgress:
    """Scratch data for the turn in flight"""
    onset: Optional[float] = None
    speech_start: Optional[float] = None
    last_above: Optional[float] = None
    pause_count: int = 0
    levels: List[float] = field(default_factory=list)
    silence_timeout_ms: float = 0.0
    speech_duration_ms: float = 0.0
    processing_start: float = 0.0
    processing_time_ms: float = 0.0
    transcript: str = ""
    reply: str = ""
    future: Optional[Future] = None
    synth_handle: Any = None


class ThreadingScheduler:
    """Wall-clock timers backed by threading.Timer"""

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay_sec: float, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(max(0.0, delay_sec), callback)
        timer.daemon = True
        timer.start()
        return timer

    def cancel(self, handle: threading.Timer) -> None:
        handle.cancel()


def estimate_transcript_confidence(transcript: str, speech_duration_ms: float) -> float:
    """Heuristic confidence for a transcript from its duration and shape"""
    confidence = 0.7

    # Longer speech is generally more reliable
    if speech_duration_ms > 2000:
        confidence += 0.1
    elif speech_duration_ms < 500:
        confidence -= 0.2

    word_count = len(transcript.split())
    if word_count > 5:
        confidence += 0.1
    elif word_count < 2:
        confidence -= 0.2

    if re.fullmatch(r"[a-zA-Z\s,.!?'-]+", transcript):
        confidence += 0.1
    if re.search(r"[.!?]", transcript):
        confidence += 0.05

    return max(0.1, min(1.0, confidence))


def playback_ceiling_ms(text: str) -> float:
    """Upper bound on how long speaking `text` may take before it is treated as hung"""
    expected_sec = len(text) / 12.0 + 5.0
    return max(10.0, min(120.0, expected_sec)) * 1000.0


class TurnStateMachine:
    """Sequences conversation turns and arbitrates concurrent signals"""

    def __init__(self, capture: Any, transcriber: Any, generator: Any, synthesizer: Any,
                 config: Optional[TurnConfig] = None,
                 timing: Optional[TimingConfig] = None,
                 detector_config: Optional[DetectorConfig] = None,
                 scheduler: Optional[Any] = None,
                 executor: Optional[Executor] = None,
                 threaded: bool = True):
        """
        Initialize the turn state machine

        Args:
            capture: Audio capture collaborator (start_sampling/stop_sampling/take_utterance)
            transcriber: Object with transcribe(audio) -> str
            generator: Object with generate(text) -> str
            synthesizer: Object with speak(text, on_start, on_done, on_stopped, on_error) and stop(handle)
            config: Runtime turn-taking options
            timing: Static timer settings
            detector_config: Speech activity detector tuning
            scheduler: Timer source with now(), call_later(delay_sec, cb), cancel(handle)
            executor: Where blocking collaborator calls run
            threaded: Handle events on a dedicated worker thread; otherwise the
                posting thread drains the queue
        """
        self.transcriber = transcriber
        self.generator = generator
        self.synthesizer = synthesizer
        self.config = config or TurnConfig()
        self.timing = timing or TimingConfig()

        self.sampler = AudioLevelSampler(capture)
        self.detector = SpeechActivityDetector(detector_config)
        self.interruption = InterruptionDetector(self.config.interruption_threshold)
        self.timeouts = AdaptiveTimeoutCalculator(self.timing)
        self.tracker = ConversationContextTracker()
        self.error_handler = ErrorHandler()

        self.scheduler = scheduler or ThreadingScheduler()
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="voiceturn-call")

        self.session: Optional[TurnSession] = None
        self.callbacks = TurnCallbacks()
        self._turn = _TurnProgress()
        self._turn_seq = 0
        self._timers: Dict[str, Tuple[int, Any]] = {}
        self._timer_seq = 0
        self._pending_config = self.config
        self._config_lock = threading.Lock()

        # Event serialization
        self._events: "queue.Queue[Optional[TurnEvent]]" = queue.Queue()
        self._drain_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._shutdown = threading.Event()
        self._handlers: Dict[EventKind, Callable[[TurnEvent], None]] = {
            EventKind.START: self._on_start,
            EventKind.STOP: self._on_stop,
            EventKind.LISTEN: self._on_listen,
            EventKind.INTERRUPT: self._on_interrupt_request,
            EventKind.CONFIG: self._on_config,
            EventKind.SAMPLE: self._on_sample,
            EventKind.NO_SPEECH_TIMEOUT: self._on_no_speech_timeout,
            EventKind.SILENCE_TIMEOUT: self._on_silence_timeout,
            EventKind.MAX_SPEECH_TIMEOUT: self._on_max_speech_timeout,
            EventKind.CALL_TIMEOUT: self._on_call_timeout,
            EventKind.GRACE_ELAPSED: self._on_grace_elapsed,
            EventKind.CONTINUE_LISTENING: self._on_continue_listening,
            EventKind.CONTEXT_REFRESH: self._on_context_refresh,
            EventKind.TRANSCRIPTION_DONE: self._on_transcription_done,
            EventKind.TRANSCRIPTION_FAILED: self._on_collaborator_failed,
            EventKind.RESPONSE_DONE: self._on_response_done,
            EventKind.RESPONSE_FAILED: self._on_collaborator_failed,
            EventKind.SYNTHESIS_STARTED: self._on_synthesis_started,
            EventKind.SYNTHESIS_DONE: self._on_synthesis_finished,
            EventKind.SYNTHESIS_STOPPED: self._on_synthesis_finished,
            EventKind.SYNTHESIS_FAILED: self._on_collaborator_failed,
            EventKind.RECOVER: self._on_recover,
        }

        self._worker: Optional[threading.Thread] = None
        if threaded:
            self._worker = threading.Thread(target=self._worker_loop, name="TurnSequencer", daemon=True)
            self._worker.start()

        logger.info("Turn state machine initialized")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def state(self) -> TurnState:
        session = self.session
        return session.current_state if session else TurnState.IDLE

    def set_callbacks(self, callbacks: Optional[TurnCallbacks] = None, **kwargs: Callable) -> None:
        """Merge callbacks; unknown names raise ConfigurationError"""
        known = {f.name for f in fields(TurnCallbacks)}
        unknown = set(kwargs) - known
        if unknown:
            raise ConfigurationError(f"Unknown callbacks: {sorted(unknown)}",
                                     component="turn_manager", operation="set_callbacks")
        updates = {}
        if callbacks is not None:
            updates.update({name: getattr(callbacks, name) for name in known if getattr(callbacks, name) is not None})
        updates.update(kwargs)
        for name, callback in updates.items():
            setattr(self.callbacks, name, callback)

    def start_conversation(self) -> SessionHandle:
        """Start a new conversation, replacing any active one"""
        handle = SessionHandle(session_id=f"conv_{uuid.uuid4().hex[:12]}")
        self._post_and_wait(TurnEvent(EventKind.START, session_id=handle.session_id))
        return handle

    def stop_conversation(self, handle: Optional[SessionHandle] = None) -> None:
        """Stop the conversation from any state; always ends in IDLE"""
        session_id = handle.session_id if handle else None
        self._post_and_wait(TurnEvent(EventKind.STOP, session_id=session_id))

    def listen(self, handle: SessionHandle) -> None:
        """Begin a listening turn when idle (used when auto_start is off)"""
        self._post(TurnEvent(EventKind.LISTEN, session_id=handle.session_id))

    def interrupt(self, handle: SessionHandle) -> None:
        """System-initiated interruption of assistant playback"""
        self._post(TurnEvent(EventKind.INTERRUPT, session_id=handle.session_id))

    def update_config(self, partial: Dict[str, Any]) -> TurnConfig:
        """Validate and apply recognized options; raises ConfigurationError otherwise"""
        with self._config_lock:
            new_config = self._pending_config.update(partial)
            self._pending_config = new_config
        self._post(TurnEvent(EventKind.CONFIG, payload=new_config))
        logger.info(f"Configuration updated: {partial}")
        return new_config

    def get_context(self) -> ConversationContext:
        with self._state_lock:
            return self.tracker.snapshot()

    def get_turn_metrics(self) -> List[TurnMetric]:
        with self._state_lock:
            return self.tracker.get_turn_metrics()

    def get_status(self) -> Dict[str, Any]:
        with self._state_lock:
            session = self.session
            thresholds = self.detector.thresholds
            turn = self._turn
            return {
                "session_id": session.session_id if session else None,
                "state": self.state.value,
                "turn_id": session.current_turn_id if session else None,
                "turn_count": session.turn_count if session else 0,
                "context": self.tracker.context.to_dict(),
                "pending_timers": sorted(self._timers),
                "sampling": self.sampler.is_running,
                "speech_threshold": thresholds.speech_threshold if thresholds else None,
                "interruption": self.interruption.get_status(),
                "turn": {
                    "silence_timeout_ms": turn.silence_timeout_ms,
                    "speech_duration_ms": turn.speech_duration_ms,
                    "transcript": turn.transcript,
                    "reply": turn.reply,
                },
                "errors": self.error_handler.get_error_stats(),
            }

    def shutdown(self) -> None:
        """Stop any conversation and release worker resources"""
        self.stop_conversation()
        self._shutdown.set()
        if self._worker:
            self._events.put(None)
            if threading.current_thread() is not self._worker:
                self._worker.join(timeout=STOP_WAIT_SEC)
        if self._owns_executor:
            self.executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Event plumbing
    # ------------------------------------------------------------------
    def _post(self, event: TurnEvent) -> None:
        if self._shutdown.is_set() and event.kind is not EventKind.STOP:
            return
        self._events.put(event)
        if self._worker is None:
            self._drain()

    def _post_and_wait(self, event: TurnEvent) -> None:
        ack = threading.Event()
        self._post(TurnEvent(event.kind, event.session_id, event.turn_id, event.payload, ack))
        if self._worker is not None and threading.current_thread() is not self._worker:
            if not ack.wait(STOP_WAIT_SEC):
                logger.warning(f"Timed out waiting for {event.kind.value} to be processed")

    def _drain(self) -> None:
        # Whoever holds the drain lock handles everything queued, including
        # events posted from inside handlers; nobody re-enters a handler.
        while True:
            if not self._drain_lock.acquire(blocking=False):
                return
            try:
                while True:
                    try:
                        event = self._events.get_nowait()
                    except queue.Empty:
                        break
                    if event is not None:
                        self._handle(event)
            finally:
                self._drain_lock.release()
            if self._events.empty():
                return

    def _worker_loop(self) -> None:
        while True:
            try:
                event = self._events.get(timeout=0.2)
            except queue.Empty:
                if self._shutdown.is_set():
                    break
                continue
            if event is None:
                break
            self._handle(event)

    def _handle(self, event: TurnEvent) -> None:
        try:
            with self._state_lock:
                self._handlers[event.kind](event)
        except Exception as e:
            session = self.session
            self.error_handler.handle_error(
                e,
                ErrorContext(component="turn_manager", operation=event.kind.value,
                             session_id=session.session_id if session else None,
                             turn_id=event.turn_id),
                ErrorSeverity.CRITICAL,
            )
        finally:
            if event.ack is not None:
                event.ack.set()

    def _is_current(self, event: TurnEvent, *states: TurnState) -> bool:
        """True if the event belongs to the live session/turn and state"""
        session = self.session
        if session is None:
            return False
        if event.session_id is not None and event.session_id != session.session_id:
            stale = True
        elif event.turn_id is not None and event.turn_id != session.current_turn_id:
            stale = True
        else:
            stale = bool(states) and session.current_state not in states
        if stale:
            logger.debug(
                f"Dropping stale {event.kind.value} (turn {event.turn_id}, "
                f"current turn {session.current_turn_id}, state {session.current_state.value})"
            )
        return not stale

    def _emit(self, name: str, *args: Any) -> None:
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Callback {name} error: {e}")

    def _now(self) -> float:
        return self.scheduler.now()

    # ---- timers ----
    def _set_timer(self, name: str, delay_ms: float, kind: EventKind, payload: Any = None) -> None:
        self._cancel_timer(name)
        session = self.session
        if session is None:
            return
        self._timer_seq += 1
        token = self._timer_seq
        # the refresh timer spans turns; everything else belongs to the current one
        turn_id = None if kind is EventKind.CONTEXT_REFRESH else session.current_turn_id
        event = TurnEvent(kind, session_id=session.session_id, turn_id=turn_id,
                          payload={"timer": name, "token": token, "data": payload})
        handle = self.scheduler.call_later(delay_ms / 1000.0, lambda: self._post(event))
        self._timers[name] = (token, handle)

    def _cancel_timer(self, name: str) -> bool:
        entry = self._timers.pop(name, None)
        if entry is None:
            return False
        self.scheduler.cancel(entry[1])
        return True

    def _cancel_turn_timers(self) -> None:
        for name in [n for n in self._timers if n != "context_refresh"]:
            self._cancel_timer(name)

    def _claim_timer(self, event: TurnEvent) -> bool:
        """Accept a timer event only if that exact timer is still registered"""
        name, token = event.payload["timer"], event.payload["token"]
        entry = self._timers.get(name)
        if entry is None or entry[0] != token:
            return False
        del self._timers[name]
        return True

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def _transition(self, new_state: TurnState, force: bool = False, **entry_args: Any) -> None:
        session = self.session
        if session is None:
            return
        old_state = session.current_state
        if not force and new_state not in _ALLOWED_TRANSITIONS[old_state]:
            raise RuntimeError(f"Illegal transition {old_state.value} -> {new_state.value}")

        self._exit_state(old_state)
        session.current_state = new_state
        session.last_activity = self._now()
        log_with_context(logger, logging.INFO, f"State changed: {old_state.value} -> {new_state.value}",
                         session_id=session.session_id, turn_id=session.current_turn_id)
        self._emit("on_state_change", new_state, session.context.copy())
        self._enter_state(new_state, **entry_args)

    def _exit_state(self, state: TurnState) -> None:
        self._cancel_turn_timers()
        if state is TurnState.SPEAKING:
            self.interruption.disarm()

    def _enter_state(self, state: TurnState, **entry_args: Any) -> None:
        if state is TurnState.IDLE:
            self._enter_idle(**entry_args)
        elif state is TurnState.LISTENING:
            self._enter_listening()
        elif state is TurnState.PROCESSING:
            self._enter_processing()
        elif state is TurnState.SPEAKING:
            self._enter_speaking(**entry_args)
        elif state is TurnState.INTERRUPTED:
            self._set_timer("grace", self.timing.interruption_grace, EventKind.GRACE_ELAPSED)
        elif state is TurnState.ERROR:
            self._enter_error(**entry_args)

    def _enter_idle(self, completed: bool = False) -> None:
        self.sampler.stop()
        self.detector.reset_speech()
        if completed and self.config.continuous_mode:
            self._set_timer("continuation", self.timing.continuation_delay, EventKind.CONTINUE_LISTENING)

    def _enter_listening(self) -> None:
        session = self.session
        self._turn_seq += 1
        session.current_turn_id = self._turn_seq
        session.turn_start_time = self._now()
        self._turn = _TurnProgress()
        self.detector.reset_speech()

        # audio from earlier turns and playback must not reach the transcriber
        try:
            self.sampler.capture.discard_utterance()
        except Exception as e:
            logger.warning(f"Could not discard buffered audio: {e}")

        try:
            self.sampler.start(self._on_level_sample)
        except Exception as e:
            self.error_handler.handle_error(
                e, ErrorContext(component="audio_sampler", operation="start",
                                session_id=session.session_id, turn_id=session.current_turn_id),
                ErrorSeverity.HIGH,
            )
            self._emit("on_error", e, TurnState.LISTENING)
            self._transition(TurnState.IDLE)
            return

        self._set_timer("no_speech", self.timing.no_speech_timeout, EventKind.NO_SPEECH_TIMEOUT)
        logger.info(f"Listening turn {session.current_turn_id} started")

    def _enter_processing(self) -> None:
        turn = self._turn
        turn.processing_start = self._now()
        try:
            audio = self.sampler.capture.take_utterance()
        except Exception as e:
            logger.warning(f"Could not fetch utterance audio: {e}")
            audio = None
        self._call_collaborator("transcribe", self.transcriber.transcribe, audio,
                                EventKind.TRANSCRIPTION_DONE, EventKind.TRANSCRIPTION_FAILED)

    def _enter_speaking(self, reply: str = "") -> None:
        session = self.session
        turn_id, session_id = session.current_turn_id, session.session_id
        turn = self._turn

        self.interruption.set_threshold(self.config.interruption_threshold)
        self.interruption.arm(turn_id)
        self._emit("on_ai_response_start", reply)
        self._set_timer("call", playback_ceiling_ms(reply), EventKind.CALL_TIMEOUT, payload="speak")

        def post(kind: EventKind, payload: Any = None) -> None:
            self._post(TurnEvent(kind, session_id=session_id, turn_id=turn_id, payload=payload))

        try:
            turn.synth_handle = self.synthesizer.speak(
                reply,
                on_start=lambda: post(EventKind.SYNTHESIS_STARTED),
                on_done=lambda: post(EventKind.SYNTHESIS_DONE),
                on_stopped=lambda: post(EventKind.SYNTHESIS_STOPPED),
                on_error=lambda error=None: post(EventKind.SYNTHESIS_FAILED, error),
            )
        except Exception as e:
            post(EventKind.SYNTHESIS_FAILED, e)

    def _enter_error(self, error: Optional[Exception] = None) -> None:
        session = self.session
        error = error or CollaboratorFailure("Unknown failure", component="turn_manager")
        self.error_handler.handle_error(
            error,
            ErrorContext(component=getattr(error, "component", "turn_manager"),
                         operation=getattr(error, "operation", "turn"),
                         session_id=session.session_id, turn_id=session.current_turn_id),
            ErrorSeverity.HIGH,
        )
        self._emit("on_error", error, TurnState.ERROR)
        self._post(TurnEvent(EventKind.RECOVER, session_id=session.session_id,
                             turn_id=session.current_turn_id))

    def _fail(self, error: Exception, operation: str) -> None:
        if not isinstance(error, CollaboratorFailure):
            wrapped = CollaboratorFailure(f"{operation} failed: {error}",
                                          component="collaborator", operation=operation)
            wrapped.__cause__ = error
            error = wrapped
        future = self._turn.future
        if future is not None and not future.done():
            future.cancel()
        if self.state is TurnState.SPEAKING:
            self._stop_synthesis()
        self._transition(TurnState.ERROR, error=error)

    def _call_collaborator(self, operation: str, fn: Callable[[Any], Any], arg: Any,
                           done_kind: EventKind, fail_kind: EventKind) -> None:
        session = self.session
        session_id, turn_id = session.session_id, session.current_turn_id

        def run() -> None:
            try:
                result = fn(arg)
            except Exception as e:
                self._post(TurnEvent(fail_kind, session_id=session_id, turn_id=turn_id, payload=(operation, e)))
                return
            self._post(TurnEvent(done_kind, session_id=session_id, turn_id=turn_id, payload=result))

        self._set_timer("call", self.timing.collaborator_timeout, EventKind.CALL_TIMEOUT, payload=operation)
        try:
            self._turn.future = self.executor.submit(run)
        except RuntimeError as e:
            self._post(TurnEvent(fail_kind, session_id=session_id, turn_id=turn_id, payload=(operation, e)))

    def _stop_synthesis(self) -> None:
        handle, self._turn.synth_handle = self._turn.synth_handle, None
        if handle is None:
            return
        try:
            self.synthesizer.stop(handle)
        except Exception as e:
            logger.error(f"Error stopping speech synthesis: {e}")

    def _record_turn(self, interrupted: bool) -> None:
        session, turn = self.session, self._turn
        levels = turn.levels
        metric = TurnMetric(
            turn_id=session.current_turn_id,
            start_time=session.turn_start_time,
            end_time=self._now(),
            speech_duration_ms=turn.speech_duration_ms,
            processing_time_ms=turn.processing_time_ms,
            response_time_ms=turn.speech_duration_ms + turn.processing_time_ms,
            pause_count=turn.pause_count,
            average_level=sum(levels) / len(levels) if levels else None,
            peak_level=max(levels) if levels else None,
            interrupted=interrupted,
        )
        self.tracker.record_turn(metric)
        session.turn_count += 1

    # ------------------------------------------------------------------
    # Handlers: public requests
    # ------------------------------------------------------------------
    def _on_start(self, event: TurnEvent) -> None:
        if self.session is not None:
            self._teardown_session("replaced by a new conversation")

        self.tracker.reset()
        self.detector.reset()
        self.session = TurnSession(session_id=event.session_id, context=self.tracker.context,
                                   last_activity=self._now())
        logger.info(f"Started conversation: {event.session_id}")
        self._set_timer("context_refresh", self.timing.context_refresh_interval, EventKind.CONTEXT_REFRESH)
        self._emit("on_state_change", TurnState.IDLE, self.session.context.copy())
        if self.config.auto_start:
            self._transition(TurnState.LISTENING)

    def _on_stop(self, event: TurnEvent) -> None:
        session = self.session
        if session is None:
            return
        if event.session_id is not None and event.session_id != session.session_id:
            logger.debug(f"Ignoring stop for inactive session {event.session_id}")
            return
        self._teardown_session("stopped by user")

    def _teardown_session(self, reason: str) -> None:
        session = self.session
        state = session.current_state
        if state in (TurnState.PROCESSING, TurnState.SPEAKING):
            cancelled = CancelledByUser(f"Turn {session.current_turn_id} cancelled in {state.value}",
                                        component="turn_manager", operation="stop")
            logger.info(str(cancelled))
        future = self._turn.future
        if future is not None and not future.done():
            future.cancel()
        self._stop_synthesis()

        if state is not TurnState.IDLE:
            self._transition(TurnState.IDLE, force=True)
        for name in list(self._timers):
            self._cancel_timer(name)
        self.sampler.stop()
        self.interruption.disarm()
        self.detector.reset()
        self.tracker.reset()
        self._turn = _TurnProgress()
        self.session = None
        logger.info(f"Conversation {session.session_id} ended ({reason})")

    def _on_listen(self, event: TurnEvent) -> None:
        if self._is_current(event, TurnState.IDLE):
            self._cancel_timer("continuation")
            self._transition(TurnState.LISTENING)

    def _on_interrupt_request(self, event: TurnEvent) -> None:
        if self._is_current(event, TurnState.SPEAKING):
            self._interrupt_playback("system")

    def _on_config(self, event: TurnEvent) -> None:
        self.config = event.payload
        self.interruption.set_threshold(self.config.interruption_threshold)

    # ------------------------------------------------------------------
    # Handlers: audio
    # ------------------------------------------------------------------
    def _on_level_sample(self, sample: AudioLevelSample) -> None:
        session = self.session
        if session is not None:
            self._post(TurnEvent(EventKind.SAMPLE, session_id=session.session_id, payload=sample))

    def _on_sample(self, event: TurnEvent) -> None:
        if not self._is_current(event):
            return
        sample: AudioLevelSample = event.payload
        self._emit("on_audio_level_update", sample.level)

        state = self.state
        if state is TurnState.LISTENING:
            self._on_listening_sample(self.detector.process(sample))
        elif state is TurnState.SPEAKING:
            if self.interruption.check(sample, self.session.current_turn_id):
                self._interrupt_playback("user")

    def _on_listening_sample(self, result: ActivityResult) -> None:
        turn = self._turn
        now = self._now()
        above = (result.thresholds is not None
                 and result.sample.level > result.thresholds.speech_threshold)

        if above:
            turn.last_above = now
            if turn.onset is None:
                turn.onset = now
        elif turn.speech_start is None and result.state is not ActivityState.INCONCLUSIVE:
            turn.onset = None

        if result.event is ActivityEvent.SPEECH_START and turn.speech_start is None:
            self._on_speech_start(now)

        if turn.speech_start is None:
            return

        if result.is_active:
            turn.levels.append(result.sample.level)
            if self._cancel_timer("silence"):
                turn.pause_count += 1
                logger.debug("Speech resumed, silence timer cancelled")
        elif result.event is ActivityEvent.SPEECH_END_CANDIDATE and "silence" not in self._timers:
            logger.debug(f"Potential speech end (confidence: {result.confidence.speech_end:.2f})")
            self._set_timer("silence", turn.silence_timeout_ms, EventKind.SILENCE_TIMEOUT)

    def _on_speech_start(self, now: float) -> None:
        turn = self._turn
        turn.speech_start = now
        if turn.onset is None:
            turn.onset = now
        self._cancel_timer("no_speech")

        if self.config.adaptive_silence:
            turn.silence_timeout_ms = self.timeouts.calculate(self.tracker.context, self.config.silence_timeout)
        else:
            turn.silence_timeout_ms = self.timeouts.clamp(self.config.silence_timeout)

        self._set_timer("max_speech", self.config.max_speech_duration, EventKind.MAX_SPEECH_TIMEOUT)
        logger.info(f"User speech started (silence window {turn.silence_timeout_ms:.0f}ms)")
        self._emit("on_user_speech_start")

    def _end_user_speech(self, forced: bool) -> None:
        turn = self._turn
        if forced:
            duration_ms = (self._now() - turn.onset) * 1000.0
        else:
            duration_ms = ((turn.last_above or turn.speech_start) - turn.onset) * 1000.0

        if not forced and duration_ms < self.config.min_speech_duration:
            noise = InvalidTranscript(f"Speech of {duration_ms:.0f}ms treated as noise",
                                      component="turn_manager", operation="end_speech")
            logger.info(str(noise))
            self._cancel_turn_timers()
            self._turn = _TurnProgress()
            self.detector.reset_speech()
            self._set_timer("no_speech", self.timing.no_speech_timeout, EventKind.NO_SPEECH_TIMEOUT)
            return

        turn.speech_duration_ms = duration_ms
        self._transition(TurnState.PROCESSING)

    def _interrupt_playback(self, kind: str) -> None:
        self._stop_synthesis()
        self._record_turn(interrupted=True)
        self._emit("on_ai_response_end")
        self._transition(TurnState.INTERRUPTED)
        self._emit("on_interruption", kind)

    # ------------------------------------------------------------------
    # Handlers: timers
    # ------------------------------------------------------------------
    def _on_no_speech_timeout(self, event: TurnEvent) -> None:
        if not (self._is_current(event, TurnState.LISTENING) and self._claim_timer(event)):
            return
        logger.info(str(NoSpeechDetected("No speech detected, returning to idle",
                                         component="turn_manager", operation="listen")))
        self._transition(TurnState.IDLE)

    def _on_silence_timeout(self, event: TurnEvent) -> None:
        if not (self._is_current(event, TurnState.LISTENING) and self._claim_timer(event)):
            return
        confidence = self.detector.confidence.speech_end
        if confidence >= self.config.turn_end_confidence:
            logger.info(f"Speech end confirmed (confidence: {confidence:.2f})")
            self._end_user_speech(forced=False)
        else:
            logger.debug(f"Speech end not confirmed (confidence: {confidence:.2f}), continuing")
            self.detector.reset_end_confidence()

    def _on_max_speech_timeout(self, event: TurnEvent) -> None:
        if not (self._is_current(event, TurnState.LISTENING) and self._claim_timer(event)):
            return
        logger.info("Maximum speech duration reached, ending turn")
        self._end_user_speech(forced=True)

    def _on_call_timeout(self, event: TurnEvent) -> None:
        if not (self._is_current(event, TurnState.PROCESSING, TurnState.SPEAKING) and self._claim_timer(event)):
            return
        operation = event.payload["data"]
        self._fail(CollaboratorFailure(f"{operation} timed out", component="collaborator",
                                       operation=operation), operation)

    def _on_grace_elapsed(self, event: TurnEvent) -> None:
        if self._is_current(event, TurnState.INTERRUPTED) and self._claim_timer(event):
            self._transition(TurnState.LISTENING)

    def _on_continue_listening(self, event: TurnEvent) -> None:
        if self._is_current(event, TurnState.IDLE) and self._claim_timer(event):
            self._transition(TurnState.LISTENING)

    def _on_context_refresh(self, event: TurnEvent) -> None:
        if not (self._is_current(event) and self._claim_timer(event)):
            return
        self.tracker.refresh(self._now())
        self._set_timer("context_refresh", self.timing.context_refresh_interval, EventKind.CONTEXT_REFRESH)

    def _on_recover(self, event: TurnEvent) -> None:
        if self._is_current(event, TurnState.ERROR):
            self._transition(TurnState.IDLE)

    # ------------------------------------------------------------------
    # Handlers: collaborators
    # ------------------------------------------------------------------
    def _on_transcription_done(self, event: TurnEvent) -> None:
        if not self._is_current(event, TurnState.PROCESSING):
            return
        self._cancel_timer("call")
        transcript = (event.payload or "").strip()
        if not transcript:
            self._fail(CollaboratorFailure("Transcription returned no text", component="transcriber",
                                           operation="transcribe"), "transcribe")
            return

        turn = self._turn
        turn.transcript = transcript
        confidence = estimate_transcript_confidence(transcript, turn.speech_duration_ms)
        logger.info(f"Transcript: '{transcript[:50]}' (confidence {confidence:.2f})")
        self._emit("on_user_speech_end", transcript, confidence)
        self._call_collaborator("generate", self.generator.generate, transcript,
                                EventKind.RESPONSE_DONE, EventKind.RESPONSE_FAILED)

    def _on_response_done(self, event: TurnEvent) -> None:
        if not self._is_current(event, TurnState.PROCESSING):
            return
        self._cancel_timer("call")
        reply = (event.payload or "").strip()
        if not reply:
            self._fail(CollaboratorFailure("Response generator returned an empty reply",
                                           component="response_generator", operation="generate"), "generate")
            return

        turn = self._turn
        turn.reply = reply
        turn.processing_time_ms = (self._now() - turn.processing_start) * 1000.0
        self._transition(TurnState.SPEAKING, reply=reply)

    def _on_collaborator_failed(self, event: TurnEvent) -> None:
        if not self._is_current(event, TurnState.PROCESSING, TurnState.SPEAKING):
            return
        if event.kind is EventKind.SYNTHESIS_FAILED:
            if self.state is not TurnState.SPEAKING:
                return
            operation, error = "speak", event.payload
        else:
            if self.state is not TurnState.PROCESSING:
                return
            operation, error = event.payload
        if error is None:
            error = CollaboratorFailure(f"{operation} failed", component="collaborator", operation=operation)
        logger.error(f"Collaborator {operation} failed: {error}")
        self._fail(error, operation)

    def _on_synthesis_started(self, event: TurnEvent) -> None:
        if self._is_current(event, TurnState.SPEAKING):
            logger.debug("Assistant speech started")

    def _on_synthesis_finished(self, event: TurnEvent) -> None:
        if not self._is_current(event, TurnState.SPEAKING):
            return
        self._turn.synth_handle = None
        self._record_turn(interrupted=False)
        self._emit("on_ai_response_end")
        self._transition(TurnState.IDLE, completed=True)

import os
import sys
import tempfile
import types
from concurrent.futures import Executor, Future

import pytest

os.environ.setdefault("VOICETURN_LOG_DIR", tempfile.mkdtemp(prefix="voiceturn-logs-"))
sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))


class _DummyStream:
    def __init__(self, *args, **kwargs):
        self.kwargs = kwargs
        self.started = False

    def start(self):
        self.started = True

    def stop(self):
        self.started = False

    def close(self):
        pass


sd_stub = types.SimpleNamespace(InputStream=_DummyStream)

sys.modules.setdefault("sounddevice", sd_stub)

from voiceturn.config import TimingConfig, TurnConfig  # noqa: E402
from voiceturn.turn_manager import TurnStateMachine  # noqa: E402


class _ManualTimer:
    def __init__(self, due, seq, callback):
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False
        self.fired = False


class ManualScheduler:
    """Virtual clock; timers fire only from advance()"""

    def __init__(self):
        self.clock = 0.0
        self._timers = []
        self._seq = 0

    def now(self):
        return self.clock

    def call_later(self, delay_sec, callback):
        self._seq += 1
        timer = _ManualTimer(self.clock + delay_sec, self._seq, callback)
        self._timers.append(timer)
        return timer

    def cancel(self, handle):
        handle.cancelled = True

    def pending(self):
        return [t for t in self._timers if not t.cancelled and not t.fired]

    def advance(self, seconds):
        target = self.clock + seconds
        while True:
            due = [t for t in self.pending() if t.due <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda t: (t.due, t.seq))
            self.clock = max(self.clock, timer.due)
            timer.fired = True
            timer.callback()
        self.clock = target


class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread"""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        future.set_running_or_notify_cancel()
        try:
            result = fn(*args, **kwargs)
        except BaseException as e:
            future.set_exception(e)
        else:
            future.set_result(result)
        return future


class DeferredExecutor(Executor):
    """Holds submitted work until run_pending() is called"""

    def __init__(self):
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_pending(self, ignore_cancel=False):
        work, self.pending = self.pending, []
        for future, fn, args, kwargs in work:
            if future.cancelled() and not ignore_cancel:
                continue
            fn(*args, **kwargs)


class FakeCapture:
    def __init__(self):
        self.on_level = None
        self.start_count = 0
        self.stop_count = 0
        self.utterances_taken = 0
        self.discards = 0

    @property
    def sampling(self):
        return self.on_level is not None

    def start_sampling(self, on_level):
        self.start_count += 1
        self.on_level = on_level

    def stop_sampling(self):
        self.stop_count += 1
        self.on_level = None

    def take_utterance(self):
        self.utterances_taken += 1
        return b"utterance-audio"

    def discard_utterance(self):
        self.discards += 1

    def emit(self, level, timestamp=None):
        if self.on_level is not None:
            self.on_level(level, timestamp)


class FakeTranscriber:
    def __init__(self, result="what is the weather like in paris today"):
        self.result = result
        self.error = None
        self.calls = []

    def transcribe(self, audio):
        self.calls.append(audio)
        if self.error is not None:
            raise self.error
        return self.result


class FakeGenerator:
    def __init__(self, reply="It is sunny in Paris."):
        self.reply = reply
        self.error = None
        self.calls = []

    def generate(self, text):
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return self.reply


class FakeSynthesizer:
    """Starts speaking immediately and finishes only when told to"""

    def __init__(self):
        self.spoken = []
        self.stopped = []
        self._callbacks = {}

    def speak(self, text, on_start, on_done, on_stopped, on_error):
        handle = len(self.spoken) + 1
        self.spoken.append(text)
        self._callbacks[handle] = (on_done, on_stopped, on_error)
        on_start()
        return handle

    def stop(self, handle):
        self.stopped.append(handle)

    @property
    def last_handle(self):
        return len(self.spoken)

    def finish(self, handle=None):
        self._callbacks[handle or self.last_handle][0]()

    def report_stopped(self, handle=None):
        self._callbacks[handle or self.last_handle][1]()

    def fail(self, error, handle=None):
        self._callbacks[handle or self.last_handle][2](error)


class Harness:
    """A state machine in inline mode wired to fakes and a virtual clock"""

    def __init__(self, config=None, timing=None, executor=None, capture=None):
        self.scheduler = ManualScheduler()
        self.capture = capture or FakeCapture()
        self.transcriber = FakeTranscriber()
        self.generator = FakeGenerator()
        self.synth = FakeSynthesizer()
        self.executor = executor or InlineExecutor()
        self.machine = TurnStateMachine(
            self.capture, self.transcriber, self.generator, self.synth,
            config=config or TurnConfig(),
            timing=timing or TimingConfig(),
            scheduler=self.scheduler,
            executor=self.executor,
            threaded=False,
        )
        self.states = []
        self.events = []
        self.machine.set_callbacks(
            on_state_change=lambda state, ctx: self.states.append(state),
            on_user_speech_start=lambda: self.events.append(("speech_start",)),
            on_user_speech_end=lambda text, conf: self.events.append(("speech_end", text, conf)),
            on_ai_response_start=lambda text: self.events.append(("response_start", text)),
            on_ai_response_end=lambda: self.events.append(("response_end",)),
            on_interruption=lambda kind: self.events.append(("interruption", kind)),
            on_error=lambda error, state: self.events.append(("error", error, state)),
        )

    def feed(self, level, count=1, step=0.1):
        for _ in range(count):
            self.scheduler.advance(step)
            self.capture.emit(level, self.scheduler.now())

    def utterance(self, speech_samples=10):
        """Ambient noise, a burst of speech, then silence"""
        self.feed(0.02, 20)
        self.feed(0.6, speech_samples)
        self.feed(0.01, 20)

    def event_names(self):
        return [e[0] for e in self.events]


@pytest.fixture
def harness():
    return Harness()


@pytest.fixture
def make_harness():
    return Harness


@pytest.fixture
def deferred_executor():
    return DeferredExecutor()

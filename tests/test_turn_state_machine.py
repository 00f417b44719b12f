import os
import sys
import threading

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from voiceturn.config import TimingConfig, TurnConfig
from voiceturn.error_handler import CollaboratorFailure, ConfigurationError
from voiceturn.turn_manager import (
    EventKind,
    TurnEvent,
    TurnState,
    TurnStateMachine,
    estimate_transcript_confidence,
    playback_ceiling_ms,
)


def _assert_fully_stopped(h):
    assert h.machine.state == TurnState.IDLE
    assert h.machine.session is None
    assert h.scheduler.pending() == []
    assert not h.capture.sampling
    assert not h.machine.interruption.is_armed


def test_start_enters_listening_and_arms_no_speech_timer(harness):
    handle = harness.machine.start_conversation()

    assert handle.session_id == harness.machine.session.session_id
    assert harness.machine.state == TurnState.LISTENING
    assert harness.machine.session.current_turn_id == 1
    assert harness.capture.sampling
    assert "no_speech" in harness.machine.get_status()["pending_timers"]


def test_basic_turn_reaches_speaking_once(harness):
    harness.machine.start_conversation()
    harness.utterance()

    assert harness.machine.state == TurnState.SPEAKING
    assert harness.states.count(TurnState.PROCESSING) == 1
    assert harness.capture.utterances_taken == 1
    assert harness.transcriber.calls == [b"utterance-audio"]
    assert harness.generator.calls == ["what is the weather like in paris today"]
    assert harness.synth.spoken == ["It is sunny in Paris."]
    assert harness.event_names() == ["speech_start", "speech_end", "response_start"]

    speech_end = harness.events[1]
    assert 0.1 <= speech_end[2] <= 1.0


def test_completed_turn_records_metric_and_continues(harness):
    harness.machine.start_conversation()
    harness.utterance()
    harness.synth.finish()

    assert harness.machine.state == TurnState.IDLE
    assert harness.event_names()[-1] == "response_end"
    metrics = harness.machine.get_turn_metrics()
    assert len(metrics) == 1
    assert metrics[0].interrupted is False
    assert metrics[0].speech_duration_ms == pytest.approx(800.0)
    assert metrics[0].peak_level == pytest.approx(0.6)
    assert harness.machine.get_context().turn_count == 1

    # continuous mode listens again after the continuation delay
    harness.scheduler.advance(1.0)
    assert harness.machine.state == TurnState.LISTENING
    assert harness.machine.session.current_turn_id == 2


def test_no_continuation_when_continuous_mode_off(make_harness):
    h = make_harness(config=TurnConfig(continuous_mode=False))
    h.machine.start_conversation()
    h.utterance()
    h.synth.finish()

    h.scheduler.advance(5.0)
    assert h.machine.state == TurnState.IDLE


def test_user_barge_in(harness):
    harness.machine.start_conversation()
    harness.utterance()
    assert harness.machine.state == TurnState.SPEAKING

    harness.feed(0.4)

    assert harness.machine.state == TurnState.INTERRUPTED
    assert harness.synth.stopped == [1]
    assert ("interruption", "user") in harness.events
    assert harness.machine.get_turn_metrics()[-1].interrupted is True

    # more loud samples do not interrupt again
    harness.feed(0.9, 2)
    assert harness.events.count(("interruption", "user")) == 1

    harness.feed(0.02, 3)
    assert harness.machine.state == TurnState.LISTENING
    assert harness.machine.session.current_turn_id == 2


def test_late_synthesis_callbacks_after_barge_in_are_dropped(harness):
    harness.machine.start_conversation()
    harness.utterance()
    harness.feed(0.4)
    harness.feed(0.02, 5)
    assert harness.machine.state == TurnState.LISTENING

    harness.synth.report_stopped(1)
    harness.synth.finish(1)

    assert harness.machine.state == TurnState.LISTENING
    assert len(harness.machine.get_turn_metrics()) == 1


def test_system_interrupt(harness):
    handle = harness.machine.start_conversation()
    harness.utterance()

    harness.machine.interrupt(handle)

    assert harness.machine.state == TurnState.INTERRUPTED
    assert ("interruption", "system") in harness.events


def test_interrupt_ignored_outside_speaking(harness):
    handle = harness.machine.start_conversation()
    harness.machine.interrupt(handle)
    assert harness.machine.state == TurnState.LISTENING


def test_no_speech_returns_to_idle(harness):
    harness.machine.start_conversation()
    harness.feed(0.02, 85)

    assert harness.machine.state == TurnState.IDLE
    assert harness.machine.session is not None
    assert not harness.capture.sampling
    assert harness.transcriber.calls == []
    # not surfaced as an error
    assert "error" not in harness.event_names()


def test_short_burst_is_treated_as_noise(harness):
    harness.machine.start_conversation()
    harness.feed(0.02, 20)
    harness.feed(0.6, 4)
    harness.feed(0.01, 20)

    assert harness.machine.state == TurnState.LISTENING
    assert harness.transcriber.calls == []
    assert TurnState.PROCESSING not in harness.states
    assert "no_speech" in harness.machine.get_status()["pending_timers"]

    # the re-armed no-speech timer still ends the turn
    harness.feed(0.02, 80)
    assert harness.machine.state == TurnState.IDLE


def test_max_speech_duration_forces_processing(make_harness):
    h = make_harness(config=TurnConfig(max_speech_duration=600.0))
    h.machine.start_conversation()
    h.feed(0.02, 20)
    h.feed(0.6, 4)
    assert h.transcriber.calls == []

    # keep the speaker going with a varying level so speech stays active
    for level in (0.9, 0.7, 1.0, 0.8, 1.0, 0.9, 1.0):
        h.feed(level)

    assert TurnState.PROCESSING in h.states
    assert len(h.transcriber.calls) == 1


def test_transcriber_failure_surfaces_error_then_idle(harness):
    harness.transcriber.error = RuntimeError("engine crashed")
    harness.machine.start_conversation()
    harness.utterance()

    assert harness.machine.state == TurnState.IDLE
    errors = [e for e in harness.events if e[0] == "error"]
    assert len(errors) == 1
    error, state = errors[0][1], errors[0][2]
    assert isinstance(error, CollaboratorFailure)
    assert state == TurnState.ERROR
    assert harness.states[-2:] == [TurnState.ERROR, TurnState.IDLE]
    assert harness.generator.calls == []

    # failed turns do not trigger continuous listening
    harness.scheduler.advance(2.0)
    assert harness.machine.state == TurnState.IDLE


def test_empty_transcript_is_a_failure(harness):
    harness.transcriber.result = "   "
    harness.machine.start_conversation()
    harness.utterance()

    assert TurnState.ERROR in harness.states
    assert harness.machine.state == TurnState.IDLE
    assert harness.generator.calls == []


def test_empty_reply_is_a_failure(harness):
    harness.generator.reply = ""
    harness.machine.start_conversation()
    harness.utterance()

    assert TurnState.ERROR in harness.states
    assert TurnState.SPEAKING not in harness.states
    assert harness.synth.spoken == []


def test_synthesis_error_goes_through_error(harness):
    harness.machine.start_conversation()
    harness.utterance()
    harness.synth.fail(RuntimeError("audio device lost"))

    assert harness.states[-2:] == [TurnState.ERROR, TurnState.IDLE]
    assert harness.machine.get_status()["errors"]["total_errors"] >= 1


def test_transcription_ceiling_timeout(make_harness, deferred_executor):
    h = make_harness(executor=deferred_executor)
    h.machine.start_conversation()
    h.utterance()
    assert h.machine.state == TurnState.PROCESSING

    h.scheduler.advance(30.5)

    assert h.machine.state == TurnState.IDLE
    error = [e for e in h.events if e[0] == "error"][0][1]
    assert isinstance(error, CollaboratorFailure)
    assert "timed out" in str(error)

    # a result arriving after the ceiling is discarded
    deferred_executor.run_pending(ignore_cancel=True)
    assert h.machine.state == TurnState.IDLE
    assert h.generator.calls == []


def test_playback_ceiling_timeout(harness):
    harness.machine.start_conversation()
    harness.utterance()
    assert harness.machine.state == TurnState.SPEAKING

    harness.scheduler.advance(playback_ceiling_ms(harness.synth.spoken[0]) / 1000.0 + 0.1)

    assert harness.states[-2:] == [TurnState.ERROR, TurnState.IDLE]
    assert harness.synth.stopped == [1]


def test_stale_transcription_after_restart_is_dropped(make_harness, deferred_executor):
    h = make_harness(executor=deferred_executor)
    h.machine.start_conversation()
    h.utterance()
    assert h.machine.state == TurnState.PROCESSING

    h.machine.stop_conversation()
    h.machine.start_conversation()
    assert h.machine.state == TurnState.LISTENING

    deferred_executor.run_pending(ignore_cancel=True)

    assert h.machine.state == TurnState.LISTENING
    assert h.generator.calls == []
    assert "speech_end" not in h.event_names()


def test_stale_results_from_earlier_turn_of_same_session_are_dropped(make_harness, deferred_executor):
    h = make_harness(executor=deferred_executor)
    session_id = h.machine.start_conversation().session_id
    h.utterance()
    deferred_executor.run_pending()
    deferred_executor.run_pending()
    assert h.machine.state == TurnState.SPEAKING

    h.feed(0.4)
    h.feed(0.02, 5)
    h.utterance()
    assert h.machine.state == TurnState.PROCESSING
    assert h.machine.session.current_turn_id == 2

    h.machine._post(TurnEvent(EventKind.TRANSCRIPTION_DONE, session_id=session_id, turn_id=1,
                              payload="turn one words"))
    h.machine._post(TurnEvent(EventKind.RESPONSE_DONE, session_id=session_id, turn_id=1,
                              payload="turn one reply"))

    assert h.machine.state == TurnState.PROCESSING
    assert h.machine.session.current_turn_id == 2
    assert h.generator.calls == [h.transcriber.result]
    assert h.synth.spoken == [h.generator.reply]

    # the current turn still completes normally
    deferred_executor.run_pending()
    deferred_executor.run_pending()
    assert h.machine.state == TurnState.SPEAKING
    assert h.generator.calls == [h.transcriber.result] * 2
    assert h.machine.get_status()["turn"]["reply"] == h.generator.reply
    assert h.machine.get_status()["turn"]["transcript"] == h.transcriber.result


def _drive_to(h, target):
    if target is None:
        return
    handle = h.machine.start_conversation()
    if target == TurnState.IDLE:
        h.machine.stop_conversation(handle)
        h.machine.start_conversation()
        h.feed(0.02, 85)
    elif target == TurnState.PROCESSING:
        h.utterance()
    elif target == TurnState.SPEAKING:
        h.utterance()
    elif target == TurnState.INTERRUPTED:
        h.utterance()
        h.feed(0.4)
    assert h.machine.state == target


@pytest.mark.parametrize("target", [
    None,
    TurnState.IDLE,
    TurnState.LISTENING,
    TurnState.PROCESSING,
    TurnState.SPEAKING,
    TurnState.INTERRUPTED,
])
def test_stop_is_idempotent_from_every_state(make_harness, deferred_executor, target):
    executor = deferred_executor if target == TurnState.PROCESSING else None
    h = make_harness(executor=executor)
    _drive_to(h, target)

    h.machine.stop_conversation()
    _assert_fully_stopped(h)
    h.machine.stop_conversation()
    _assert_fully_stopped(h)


def test_stop_from_error_state(harness):
    harness.transcriber.error = RuntimeError("boom")
    seen = []

    def on_error(error, state):
        seen.append(state)
        harness.machine.stop_conversation()

    harness.machine.set_callbacks(on_error=on_error)
    harness.machine.start_conversation()
    harness.utterance()

    assert seen == [TurnState.ERROR]
    _assert_fully_stopped(harness)


def test_stop_while_speaking_stops_synthesis(harness):
    harness.machine.start_conversation()
    harness.utterance()
    harness.machine.stop_conversation()

    assert harness.synth.stopped == [1]
    harness.synth.finish(1)
    _assert_fully_stopped(harness)
    assert harness.machine.get_turn_metrics() == []


def test_stop_with_other_session_handle_is_ignored(harness):
    old = harness.machine.start_conversation()
    harness.machine.start_conversation()

    harness.machine.stop_conversation(old)
    assert harness.machine.state == TurnState.LISTENING


def test_listen_when_auto_start_disabled(make_harness):
    h = make_harness(config=TurnConfig(auto_start=False))
    handle = h.machine.start_conversation()
    assert h.machine.state == TurnState.IDLE
    assert not h.capture.sampling

    h.machine.listen(handle)
    assert h.machine.state == TurnState.LISTENING
    assert h.capture.sampling


def test_update_config_applies_recognized_options(harness):
    harness.machine.update_config({"silenceTimeout": 2000, "interruption_threshold": 0.3})

    assert harness.machine.config.silence_timeout == 2000.0
    assert harness.machine.interruption.threshold == 0.3


@pytest.mark.parametrize("partial", [
    {"bogus": 1},
    {"interruption_threshold": 1.5},
    {"silence_timeout": -10},
    {"continuous_mode": "sometimes"},
])
def test_update_config_rejects_invalid_options(harness, partial):
    before = harness.machine.config
    with pytest.raises(ConfigurationError):
        harness.machine.update_config(partial)
    assert harness.machine.config == before


def test_fixed_silence_window_is_clamped(make_harness):
    h = make_harness(config=TurnConfig(adaptive_silence=False, silence_timeout=5000.0))
    h.machine.start_conversation()
    h.feed(0.02, 20)
    h.feed(0.6, 10)

    h.feed(0.01, 38)
    assert h.machine.state == TurnState.LISTENING
    h.feed(0.01, 4)
    assert h.machine.state == TurnState.SPEAKING


def test_pause_inside_speech_is_counted(harness):
    harness.machine.start_conversation()
    harness.feed(0.02, 20)
    harness.feed(0.6, 6)
    # a short dip arms the silence timer, renewed speech cancels it
    harness.feed(0.01, 3)
    harness.feed(1.0, 2)
    harness.feed(0.01, 25)
    harness.synth.finish()

    metric = harness.machine.get_turn_metrics()[-1]
    assert metric.pause_count >= 1


def test_set_callbacks_rejects_unknown_names(harness):
    with pytest.raises(ConfigurationError):
        harness.machine.set_callbacks(on_everything=lambda: None)


def test_callback_exceptions_do_not_break_the_machine(harness):
    def explode(*args):
        raise RuntimeError("ui crashed")

    harness.machine.set_callbacks(on_state_change=explode, on_audio_level_update=explode)
    harness.machine.start_conversation()
    harness.utterance()

    assert harness.machine.state == TurnState.SPEAKING


def test_audio_level_updates_are_reported(harness):
    levels = []
    harness.machine.set_callbacks(on_audio_level_update=levels.append)
    harness.machine.start_conversation()
    harness.feed(0.25, 3)

    assert levels == [0.25, 0.25, 0.25]


def test_context_refresh_runs_periodically(harness):
    harness.machine.start_conversation()
    harness.feed(0.02, 60)

    assert harness.machine.tracker.last_refresh == pytest.approx(5.0)


def test_get_status_reports_session(harness):
    assert harness.machine.get_status()["state"] == "idle"
    harness.machine.start_conversation()

    status = harness.machine.get_status()
    assert status["state"] == "listening"
    assert status["turn_id"] == 1
    assert status["sampling"] is True


def test_threaded_mode_start_and_stop(make_harness):
    h = make_harness()
    machine = TurnStateMachine(
        h.capture, h.transcriber, h.generator, h.synth,
        config=TurnConfig(), timing=TimingConfig(),
        scheduler=h.scheduler, executor=h.executor, threaded=True,
    )
    changed = threading.Event()
    machine.set_callbacks(on_state_change=lambda state, ctx: changed.set())

    handle = machine.start_conversation()
    assert changed.wait(2.0)
    assert machine.state == TurnState.LISTENING

    machine.stop_conversation(handle)
    assert machine.state == TurnState.IDLE
    assert machine.session is None
    machine.shutdown()


def test_transcript_confidence_heuristic():
    high = estimate_transcript_confidence("Could you tell me what the weather is like today?", 2500)
    low = estimate_transcript_confidence("uh", 300)

    assert high == pytest.approx(1.0)
    assert low == pytest.approx(0.4)
    assert 0.1 <= estimate_transcript_confidence("42", 100) <= 1.0


def test_playback_ceiling_bounds():
    assert playback_ceiling_ms("") == 10000.0
    assert playback_ceiling_ms("x" * 10000) == 120000.0


def test_buffered_audio_is_discarded_on_every_listening_entry(harness):
    harness.machine.start_conversation()
    assert harness.capture.discards == 1

    harness.utterance()
    harness.feed(0.4)
    harness.feed(0.02, 5)
    assert harness.machine.state == TurnState.LISTENING
    assert harness.capture.discards == 2


def _long_forced_turn(h):
    h.feed(0.02, 20)
    # stop feeding once max speech fires, or playback would be barged in on
    for _ in range(100):
        h.scheduler.advance(0.1)
        if h.machine.state != TurnState.LISTENING:
            break
        h.capture.emit(0.6, h.scheduler.now())
    assert h.machine.state == TurnState.SPEAKING
    h.synth.finish()
    h.scheduler.advance(1.0)


def test_verbose_speaker_gets_longer_silence_window(make_harness):
    # fixed window longer than max speech, so each turn is cut at 6 s
    h = make_harness(
        config=TurnConfig(adaptive_silence=False, silence_timeout=10000.0, max_speech_duration=6000.0),
        timing=TimingConfig(max_timeout=20000.0),
    )
    h.machine.start_conversation()
    for _ in range(3):
        _long_forced_turn(h)

    metrics = h.machine.get_turn_metrics()
    assert len(metrics) == 3
    assert all(m.speech_duration_ms == pytest.approx(6300.0) for m in metrics)
    context = h.machine.get_context()
    assert context.turn_count == 3
    assert context.user_speech_patterns.average_duration_ms > 5000

    breakdown = h.machine.timeouts.breakdown(context, 1500.0)
    assert breakdown.history_multiplier == 1.4
    assert breakdown.volume_multiplier == 1.0
    assert breakdown.pattern_multiplier == 1.0

    h.machine.update_config({"adaptive_silence": True, "silence_timeout": 1500})
    assert h.machine.state == TurnState.LISTENING
    assert h.machine.session.current_turn_id == 4
    h.feed(0.02, 20)
    h.feed(0.6, 5)

    window = h.machine.get_status()["turn"]["silence_timeout_ms"]
    assert window == pytest.approx(breakdown.timeout_ms)
    assert window == pytest.approx(1500.0 * 1.4 * 1.5)

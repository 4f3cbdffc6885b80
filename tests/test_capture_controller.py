import pytest

from voice_intake.capture_controller import (
    CaptureController,
    Error,
    Idle,
    Listening,
    PartialResult,
    Result,
)
from voice_intake.config import CaptureSettings
from voice_intake.errors import CaptureError, CaptureErrorKind

from conftest import FakeEngine


@pytest.fixture
def controller(engine):
    return CaptureController(engine, CaptureSettings(restart_delay_seconds=0.0))


@pytest.fixture
def states(controller):
    seen = []
    controller.state.subscribe(seen.append, replay=False)
    return seen


def test_start_is_idempotent_while_live(controller, engine, states):
    assert controller.start_capture() is True
    assert controller.start_capture() is False
    assert engine.starts == 1
    assert states == [Listening()]


def test_segments_accumulate_across_pauses(controller, engine, states):
    controller.start_capture()
    controller.on_partial("il letto")
    controller.on_segment("il letto della camera tre")
    controller.on_segment("ha il motore rotto")
    # each natural pause restarts the engine quietly
    assert engine.starts == 3
    assert controller.stop_capture() == "il letto della camera tre ha il motore rotto"
    assert states[-2:] == [Result("il letto della camera tre ha il motore rotto"), Idle()]
    assert PartialResult("il letto") in states


def test_stop_twice_emits_one_result(controller, states):
    controller.start_capture()
    controller.on_segment("pompa")
    assert controller.stop_capture() == "pompa"
    assert controller.stop_capture() is None
    assert [s for s in states if isinstance(s, Result)] == [Result("pompa")]


def test_stop_includes_pending_partial(controller):
    controller.start_capture()
    controller.on_segment("concentratore")
    controller.on_partial("in camera dodici")
    assert controller.stop_capture() == "concentratore in camera dodici"


def test_empty_stop_still_emits_result(controller, states):
    controller.start_capture()
    assert controller.stop_capture() == ""
    assert Result("") in states


def test_callbacks_after_stop_are_ignored(controller, engine, states):
    controller.start_capture()
    controller.stop_capture()
    starts = engine.starts
    controller.on_segment("late")
    controller.on_error(CaptureErrorKind.NO_MATCH)
    assert engine.starts == starts
    assert states[-1] == Idle()


def test_three_recoverable_errors_restart_fourth_is_fatal(controller, engine, states):
    controller.start_capture()
    controller.on_partial("ciao")
    for _ in range(3):
        controller.on_error(CaptureErrorKind.NO_MATCH)
    assert engine.starts == 4
    assert controller.is_listening
    assert controller.consecutive_errors == 3

    controller.on_error(CaptureErrorKind.SPEECH_TIMEOUT)
    assert not controller.is_listening
    assert not controller.auto_restart_enabled
    assert engine.starts == 4
    error = states[-1]
    assert isinstance(error, Error)
    assert error.kind == CaptureErrorKind.SPEECH_TIMEOUT
    assert error.retryable is True
    # words heard before the failure are not lost
    assert error.transcript == "ciao"


def test_segment_resets_error_counter(controller):
    controller.start_capture()
    controller.on_error(CaptureErrorKind.BUSY)
    controller.on_error(CaptureErrorKind.BUSY)
    controller.on_segment("ok")
    assert controller.consecutive_errors == 0


def test_permission_denied_is_terminal(controller, engine, states):
    controller.start_capture()
    controller.on_error(CaptureErrorKind.PERMISSION_DENIED, "microphone permission revoked")
    assert not controller.is_listening
    assert states[-1] == Error(
        kind=CaptureErrorKind.PERMISSION_DENIED,
        message="microphone permission revoked",
        retryable=False,
        transcript="",
    )


def test_network_error_is_fatal_but_retryable(controller, states):
    controller.start_capture()
    controller.on_segment("frigo")
    controller.on_error(CaptureErrorKind.NETWORK)
    assert states[-1].retryable is True
    assert states[-1].transcript == "frigo"


def test_engine_start_failure_becomes_error():
    controller = CaptureController(FakeEngine(fail_start=True), CaptureSettings(restart_delay_seconds=0.0))
    seen = []
    controller.state.subscribe(seen.append, replay=False)
    controller.start_capture()
    assert isinstance(seen[-1], Error)
    assert seen[-1].kind == CaptureErrorKind.UNAVAILABLE
    assert not controller.is_listening


def test_cancel_discards_without_result(controller, states):
    controller.start_capture()
    controller.on_segment("niente")
    controller.cancel_capture()
    assert not any(isinstance(s, Result) for s in states)
    assert states[-1] == Idle()


def test_release_frees_engine_and_blocks_restart(controller, engine):
    controller.start_capture()
    controller.release()
    assert engine.released
    with pytest.raises(CaptureError):
        controller.start_capture()


def test_final_text_is_postprocessed(engine):
    controller = CaptureController(engine, CaptureSettings(restart_delay_seconds=0.0))
    controller.start_capture()
    controller.on_segment("UBS in sala server")
    assert controller.stop_capture() == "UPS in sala server"

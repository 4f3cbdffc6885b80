import asyncio
import threading

import pytest

from voice_intake.capture_controller import CaptureController, Result
from voice_intake.config import CaptureSettings
from voice_intake.extraction_pipeline import Extracted
from voice_intake.session import VoiceSession
from voice_intake.tasks import TaskKind

from conftest import extraction_answer


@pytest.fixture
def loop():
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    yield loop
    loop.call_soon_threadsafe(loop.stop)
    thread.join(5)
    loop.close()


@pytest.fixture
def controller(engine):
    return CaptureController(engine, CaptureSettings(restart_delay_seconds=0.0))


def test_capture_result_feeds_pipeline(make_pipeline, controller, loop, repo):
    pipeline = make_pipeline(extraction_answer({"name": "Camera 14", "floor": "P1"}, "Camera 14 al primo piano."))
    session = VoiceSession(controller, pipeline, loop)
    extracted = []
    arrived = threading.Event()

    def on_state(state):
        if isinstance(state, Extracted):
            extracted.append(state)
            arrived.set()

    pipeline.state.subscribe(on_state, replay=False)

    session.start_task(TaskKind.LOCATION_CREATION)
    assert session.start_listening()
    controller.on_segment("camera quattordici al primo piano")
    assert session.stop_listening() == "camera quattordici al primo piano"

    assert arrived.wait(5)
    assert extracted[-1].data.fields == {"name": "Camera 14", "floor": "P1"}

    record_id = session.confirm()
    assert repo.inserted[0]["name"] == "Camera 14"
    assert record_id.startswith("rec-")
    assert pipeline.task is None
    session.teardown()


def test_empty_result_is_not_submitted(make_pipeline, controller, loop):
    pipeline = make_pipeline()
    session = VoiceSession(controller, pipeline, loop)
    session.start_task(TaskKind.VENDOR_CREATION)
    session.start_listening()
    assert session.stop_listening() == ""
    assert session.pending_rounds == []
    assert pipeline.chat_llm.calls == []
    session.teardown()


def test_teardown_is_idempotent_and_releases_everything(make_pipeline, controller, engine, loop):
    pipeline = make_pipeline()
    session = VoiceSession(controller, pipeline, loop)
    session.start_task(TaskKind.EQUIPMENT_CREATION, {"name": "Pompa"})
    session.start_listening()

    session.teardown()
    session.teardown()
    assert engine.released
    assert not controller.is_listening
    assert pipeline.task is None
    assert pipeline.context.is_empty()

    # results after teardown go nowhere
    controller.state.publish(Result("parole tardive"))
    assert session.pending_rounds == []


def test_cancel_abandons_task(make_pipeline, controller, loop):
    pipeline = make_pipeline()
    session = VoiceSession(controller, pipeline, loop)
    machine = session.start_task(TaskKind.VENDOR_CREATION, {"name": "Ossigeno Sud"})
    session.start_listening()
    session.cancel()
    assert machine.is_terminal
    assert not controller.is_listening
    assert pipeline.task is None
    session.teardown()

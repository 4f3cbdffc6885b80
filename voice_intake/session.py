# voice_intake/session.py

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, List, Mapping, Optional

from voice_intake.capture_controller import CaptureController, CaptureState, Result
from voice_intake.extraction_pipeline import ExtractionPipeline
from voice_intake.tasks import TaskKind, TaskStateMachine

logger = logging.getLogger("voice_intake")


class VoiceSession:
    """
    Wires one capture controller to one extraction pipeline for an
    interactive session.

    Every finalized capture Result is handed to the pipeline on `loop`.
    teardown() is the single way out: it drops in-flight extraction,
    releases the recognizer and resets the conversation.
    """

    def __init__(
        self,
        controller: CaptureController,
        pipeline: ExtractionPipeline,
        loop: asyncio.AbstractEventLoop,
        field_snapshot_provider: Optional[Callable[[], Optional[Mapping[str, Any]]]] = None,
    ):
        self.controller = controller
        self.pipeline = pipeline
        self.loop = loop
        if field_snapshot_provider is not None:
            self.pipeline.field_snapshot_provider = field_snapshot_provider
        self._lock = threading.Lock()
        self._futures: List[Future] = []
        self._closed = False
        self._unsubscribe = controller.state.subscribe(self._on_capture_state, replay=False)

    def _on_capture_state(self, state: CaptureState) -> None:
        if not isinstance(state, Result) or not state.text:
            return
        with self._lock:
            if self._closed:
                return
            future = asyncio.run_coroutine_threadsafe(self.pipeline.submit_transcript(state.text), self.loop)
            self._futures = [f for f in self._futures if not f.done()] + [future]
        future.add_done_callback(self._log_round_failure)

    @staticmethod
    def _log_round_failure(future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            # already published on the pipeline's state channel
            logger.debug(f"[SESSION] extraction round ended with {type(error).__name__}: {error}")

    @property
    def pending_rounds(self) -> List[Future]:
        with self._lock:
            return [f for f in self._futures if not f.done()]

    # -----------------------
    # Commands
    # -----------------------

    def start_task(self, kind: TaskKind, seed: Optional[Mapping[str, Any]] = None) -> TaskStateMachine:
        return self._on_loop(lambda: self.pipeline.start_task(kind, seed))

    def start_listening(self) -> bool:
        return self.controller.start_capture()

    def stop_listening(self) -> Optional[str]:
        return self.controller.stop_capture()

    def confirm(self) -> str:
        record_id = self._on_loop(self.pipeline.confirm)
        self.controller.cancel_capture()
        return record_id

    def cancel(self) -> None:
        self.controller.cancel_capture()
        self._on_loop(self.pipeline.cancel)

    def teardown(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            futures, self._futures = self._futures, []
        self._unsubscribe()
        self.controller.release()
        for future in futures:
            future.cancel()
        self._on_loop(self.pipeline.reset)
        logger.info("[SESSION] torn down")

    # -----------------------
    # Loop affinity
    # -----------------------

    def _on_loop(self, fn: Callable[[], Any]) -> Any:
        """
        Run `fn` on the session loop: directly when already there or when the
        loop is not running, otherwise scheduled and waited for.
        """
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop or not self.loop.is_running():
            return fn()

        async def call():
            return fn()

        return asyncio.run_coroutine_threadsafe(call(), self.loop).result()

# voice_intake/capture_controller.py

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Union

from voice_intake.config import CaptureSettings
from voice_intake.errors import CaptureError, CaptureErrorKind
from voice_intake.observable import StateChannel
from voice_intake.transcript_postprocess import TranscriptPostProcessor

logger = logging.getLogger("voice_intake")


# -----------------------
# Emitted states
# -----------------------

@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Listening:
    pass


@dataclass(frozen=True)
class PartialResult:
    text: str


@dataclass(frozen=True)
class Result:
    text: str


@dataclass(frozen=True)
class Error:
    kind: CaptureErrorKind
    message: str
    # False only when the operator has to fix something outside the app (permission)
    retryable: bool = True
    # what had been heard before the failure
    transcript: str = ""


CaptureState = Union[Idle, Listening, PartialResult, Result, Error]


# -----------------------
# Engine seam
# -----------------------

class RecognitionListener(Protocol):
    def on_ready(self) -> None: ...

    def on_partial(self, text: str) -> None: ...

    def on_segment(self, text: str) -> None: ...

    def on_error(self, kind: CaptureErrorKind, message: str = "") -> None: ...


class RecognitionEngine(Protocol):
    """
    A platform recognizer. It stops by itself at every natural pause and
    reports the segment through on_segment; callbacks arrive on its own thread.
    """

    def set_listener(self, listener: RecognitionListener) -> None: ...

    def start(self, language: str) -> None: ...

    def cancel(self) -> None: ...

    def release(self) -> None: ...


@dataclass
class CaptureSession:
    generation: int
    segments: List[str] = field(default_factory=list)
    pending_partial: str = ""
    consecutive_errors: int = 0
    auto_restart: bool = True

    def accumulated(self) -> str:
        return " ".join(s for s in self.segments if s).strip()

    def text_so_far(self) -> str:
        return " ".join(s for s in (self.accumulated(), self.pending_partial) if s).strip()


class CaptureController:
    """
    One operator-controlled listening session at a time.

    The recognizer pauses on every breath; each pause is folded into one
    accumulated utterance and the recognizer is restarted quietly. Only
    stop_capture() ends the utterance.
    """

    def __init__(
        self,
        engine: RecognitionEngine,
        settings: Optional[CaptureSettings] = None,
        *,
        postprocessor: Optional[Callable[[str], str]] = None,
    ):
        self.engine = engine
        self.settings = settings or CaptureSettings()
        self.postprocess = postprocessor or TranscriptPostProcessor().process
        self.state: StateChannel[CaptureState] = StateChannel(Idle(), name="capture")

        self._lock = threading.RLock()
        self._session: Optional[CaptureSession] = None
        self._generation = 0
        self._released = False
        self._auto_restart_enabled = False
        self._safety_timer: Optional[threading.Timer] = None

        self.engine.set_listener(self)

    # -----------------------
    # Introspection
    # -----------------------

    @property
    def is_listening(self) -> bool:
        with self._lock:
            return self._session is not None

    @property
    def auto_restart_enabled(self) -> bool:
        with self._lock:
            return self._auto_restart_enabled

    @property
    def consecutive_errors(self) -> int:
        with self._lock:
            return self._session.consecutive_errors if self._session else 0

    # -----------------------
    # Operator commands
    # -----------------------

    def start_capture(self) -> bool:
        """
        Begin listening. Returns False when a session is already live, in
        which case nothing changes.
        """
        with self._lock:
            if self._released:
                raise CaptureError(CaptureErrorKind.UNAVAILABLE, "capture controller has been released")
            if self._session is not None:
                logger.debug("start_capture ignored: a session is already live")
                return False
            self._generation += 1
            session = CaptureSession(generation=self._generation)
            self._session = session
            self._auto_restart_enabled = True
            self._arm_safety_timer_unlocked(session.generation)

        self.state.publish(Listening())
        try:
            self.engine.start(self.settings.language)
        except Exception as e:
            logger.warning(f"[CAPTURE] engine failed to start: {e}")
            self._end_with_error(session.generation, CaptureErrorKind.UNAVAILABLE, str(e))
        return True

    def stop_capture(self) -> Optional[str]:
        """
        End the utterance and emit its text. A second call is a no-op and
        returns None.
        """
        with self._lock:
            session = self._detach_unlocked()
            if session is None:
                return None
        self.engine.cancel()

        text = self.postprocess(session.text_so_far())
        logger.info(f"[CAPTURE] finalized {len(text)} chars in {len(session.segments)} segment(s)")
        self.state.publish(Result(text))
        self.state.publish(Idle())
        return text

    def cancel_capture(self) -> None:
        """Drop the session and whatever it heard, without a Result."""
        with self._lock:
            session = self._detach_unlocked()
        if session is None:
            return
        self.engine.cancel()
        self.state.publish(Idle())

    def release(self) -> None:
        self.cancel_capture()
        with self._lock:
            if self._released:
                return
            self._released = True
        self.engine.release()

    # -----------------------
    # Engine callbacks (background thread)
    # -----------------------

    def on_ready(self) -> None:
        logger.debug("[CAPTURE] engine ready")

    def on_partial(self, text: str) -> None:
        with self._lock:
            session = self._session
            if session is None:
                return
            session.pending_partial = (text or "").strip()
            so_far = session.text_so_far()
        self.state.publish(PartialResult(so_far))

    def on_segment(self, text: str) -> None:
        with self._lock:
            session = self._session
            if session is None:
                return
            text = (text or "").strip()
            if text:
                session.segments.append(text)
            session.pending_partial = ""
            session.consecutive_errors = 0
            so_far = session.accumulated()
            generation = session.generation
            restart = session.auto_restart

        if so_far:
            self.state.publish(PartialResult(so_far))
        if restart:
            self._restart(generation)

    def on_error(self, kind: CaptureErrorKind, message: str = "") -> None:
        kind = CaptureErrorKind(kind)
        with self._lock:
            session = self._session
            if session is None:
                return
            generation = session.generation
            restart = False
            if kind.recoverable:
                session.consecutive_errors += 1
                # keep words the recognizer had shown before failing
                if session.pending_partial:
                    session.segments.append(session.pending_partial)
                    session.pending_partial = ""
                if session.auto_restart and session.consecutive_errors <= self.settings.max_consecutive_errors:
                    restart = True
                else:
                    message = message or f"{session.consecutive_errors} consecutive recognition errors"
            errors = session.consecutive_errors

        if restart:
            logger.debug(f"[CAPTURE] {kind.value} ({errors}/{self.settings.max_consecutive_errors}), restarting quietly")
            self._restart(generation)
        else:
            self._end_with_error(generation, kind, message)

    # -----------------------
    # Internals
    # -----------------------

    def _detach_unlocked(self) -> Optional[CaptureSession]:
        session = self._session
        if session is None:
            return None
        session.auto_restart = False
        self._session = None
        self._auto_restart_enabled = False
        if self._safety_timer is not None:
            self._safety_timer.cancel()
            self._safety_timer = None
        return session

    def _restart(self, generation: int) -> None:
        self.engine.cancel()
        if self.settings.restart_delay_seconds:
            time.sleep(self.settings.restart_delay_seconds)
        with self._lock:
            session = self._session
            # stopped or replaced while we slept
            if session is None or session.generation != generation or not session.auto_restart:
                return
        try:
            self.engine.start(self.settings.language)
        except Exception as e:
            logger.warning(f"[CAPTURE] engine failed to restart: {e}")
            self._end_with_error(generation, CaptureErrorKind.UNAVAILABLE, str(e))

    def _end_with_error(self, generation: int, kind: CaptureErrorKind, message: str) -> None:
        with self._lock:
            session = self._session
            if session is None or session.generation != generation:
                return
            self._detach_unlocked()
        self.engine.cancel()

        transcript = session.text_so_far()
        logger.warning(f"[CAPTURE] session ended by {kind.value}: {message}")
        self.state.publish(Error(
            kind=kind,
            message=message or kind.value,
            retryable=kind != CaptureErrorKind.PERMISSION_DENIED,
            transcript=transcript,
        ))

    def _arm_safety_timer_unlocked(self, generation: int) -> None:
        limit = self.settings.max_session_seconds
        if not limit:
            return

        def expire():
            with self._lock:
                live = self._session is not None and self._session.generation == generation
            if live:
                logger.warning(f"[CAPTURE] session exceeded {limit}s, stopping")
                self.stop_capture()

        self._safety_timer = threading.Timer(limit, expire)
        self._safety_timer.daemon = True
        self._safety_timer.start()

# voice_intake/extraction_pipeline.py

import asyncio
import datetime as dt
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple, Union

from langchain_core.messages import AIMessage, HumanMessage

from voice_intake.config import Settings
from voice_intake.conversation_context import ContextSnapshot, ConversationContext
from voice_intake.entity_resolver import (
    EntityResolver,
    Found,
    Resolution,
    default_name_of,
    resolution_to_dict,
)
from voice_intake.errors import ExtractionError, ExtractionErrorKind, PersistenceError, TaskStateError
from voice_intake.extraction_prompts import (
    EXTRACTION_INSTRUCTIONS,
    EXTRACTION_PROMPT,
    FIELD_GUIDE,
    MALFORMED_FIX_DIRECTIVE,
)
from voice_intake.intent_detector import UserIntent, UserIntentDetector
from voice_intake.llm_client import LlmCallCancelled, classify_llm_error
from voice_intake.observable import StateChannel
from voice_intake.repository import EntityKind, InventoryRepository
from voice_intake.safeguards import AuditEvent, AuditLogger, InputSanitizer, RateLimiter
from voice_intake.tasks import ActiveTask, TaskKind, TaskStateMachine, new_task, record_for_json
from voice_intake.utils import Utils
from voice_intake.vocabulary import maintenance_type_catalog

logger = logging.getLogger("voice_intake")


# -----------------------
# Results and emitted states
# -----------------------

@dataclass(frozen=True)
class ExtractionResult:
    updates: Dict[str, Any]
    confirmation_text: str
    confidence: float
    low_confidence: bool = False
    warnings: List[str] = field(default_factory=list)
    missing_fields: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ResolvedData:
    """What one round produced, ready for the presentation layer."""
    kind: TaskKind
    fields: Dict[str, Any]
    resolutions: Dict[str, Resolution]
    missing_fields: List[str]
    complete: bool
    confirmation_text: str
    confidence: Optional[float] = None
    low_confidence: bool = False
    warnings: List[str] = field(default_factory=list)
    intent: UserIntent = UserIntent.CONTINUE

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "fields": dict(self.fields),
            "resolutions": {k: resolution_to_dict(v) for k, v in self.resolutions.items()},
            "missing_fields": list(self.missing_fields),
            "complete": self.complete,
            "confirmation_text": self.confirmation_text,
            "confidence": self.confidence,
            "low_confidence": self.low_confidence,
            "warnings": list(self.warnings),
            "intent": self.intent.value,
        }


@dataclass(frozen=True)
class ExtractionIdle:
    pass


@dataclass(frozen=True)
class Processing:
    transcript: str


@dataclass(frozen=True)
class Extracted:
    data: ResolvedData


@dataclass(frozen=True)
class ExtractionFailed:
    error: ExtractionError


ExtractionState = Union[ExtractionIdle, Processing, Extracted, ExtractionFailed]

_Pending = Tuple[str, Optional[Mapping[str, Any]], "asyncio.Future"]


class ExtractionPipeline(Utils):
    """
    Turns finalized transcripts into field updates for the active task.

    Transcripts are queued and handled one at a time by a single worker
    coroutine; the model call itself runs in a thread. All task and context
    mutation happens in that worker or in the explicit commands below.
    """

    def __init__(
        self,
        repository: InventoryRepository,
        settings: Optional[Settings] = None,
        *,
        chat_llm=None,
        context: Optional[ConversationContext] = None,
        resolver: Optional[EntityResolver] = None,
        intent_detector: Optional[UserIntentDetector] = None,
        sanitizer: Optional[InputSanitizer] = None,
        rate_limiter: Optional[RateLimiter] = None,
        audit: Optional[AuditLogger] = None,
        speech_sink: Optional[Callable[[str], None]] = None,
        field_snapshot_provider: Optional[Callable[[], Optional[Mapping[str, Any]]]] = None,
        today: Optional[Callable[[], dt.date]] = None,
    ):
        self.settings = settings or Settings()
        ext = self.settings.extraction
        self.llm_timeout = ext.llm_timeout
        self.repository = repository

        self.chat_llm = chat_llm or self._build_chat_llm_for_model(
            ext.model_name, ext.llm_timeout, ext.vertex_project, ext.vertex_region
        )
        if self.chat_llm is None:
            raise ValueError(f"Could not build a chat LLM for model '{ext.model_name}'")

        self.context = context or ConversationContext(max_exchanges=ext.max_exchanges)
        self.resolver = resolver or EntityResolver(repository, self.settings.resolver)
        self.intent_detector = intent_detector or UserIntentDetector()
        self.sanitizer = sanitizer or InputSanitizer(max_length=ext.max_input_length)
        self.rate_limiter = rate_limiter or RateLimiter(max_requests=ext.requests_per_minute, window_seconds=60.0)
        self.audit = audit or AuditLogger()
        self.speech_sink = speech_sink
        self.field_snapshot_provider = field_snapshot_provider
        self._today = today or dt.date.today

        self.state: StateChannel[ExtractionState] = StateChannel(ExtractionIdle(), name="extraction")

        self._queue: Deque[_Pending] = deque()
        self._worker: Optional[asyncio.Task] = None
        self._round_stop: Optional[threading.Event] = None
        self._failed: Optional[str] = None
        self._resolutions: Dict[str, Resolution] = {}
        self._resolved_ids: Dict[str, str] = {}
        # field -> (spoken value it was chosen for, record)
        self._choices: Dict[str, Tuple[str, Dict[str, Any]]] = {}

    # -----------------------
    # Task lifecycle
    # -----------------------

    @property
    def task(self) -> Optional[TaskStateMachine]:
        return self.context.task

    def _require_task(self) -> TaskStateMachine:
        machine = self.context.task
        if machine is None:
            raise TaskStateError("No active task")
        if machine.is_terminal:
            raise TaskStateError(f"Task is {machine.status.value}")
        return machine

    def _clear_task_state(self) -> None:
        self._resolutions = {}
        self._resolved_ids = {}
        self._choices = {}
        self._failed = None

    def start_task(self, kind: TaskKind, seed: Optional[Mapping[str, Any]] = None) -> TaskStateMachine:
        """Begin a new record. Whatever the previous task held is dropped."""
        self.cancel_in_flight()
        self.context.reset()
        self._clear_task_state()
        machine = TaskStateMachine(new_task(TaskKind(kind), seed))
        self.context.set_task(machine)
        logger.info(f"[TASK] started {machine.kind.value}")
        self.state.publish(ExtractionIdle())
        return machine

    def current_fields(self) -> Dict[str, Any]:
        machine = self.context.task
        if machine is None:
            return {}
        return record_for_json(machine.task.field_values())

    @property
    def failed_transcript(self) -> Optional[str]:
        return self._failed

    # -----------------------
    # Queue and worker
    # -----------------------

    async def submit_transcript(self, text: str, field_snapshot: Optional[Mapping[str, Any]] = None) -> ResolvedData:
        """
        Queue a finalized transcript and wait for its round. Rounds run in
        submission order, one at a time.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._queue.append((text, field_snapshot, future))
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain())
        return await future

    async def _drain(self) -> None:
        while self._queue:
            text, snapshot, future = self._queue.popleft()
            if future.done():
                continue
            try:
                result = await self._process(text, snapshot)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)

    def _drop_queued(self) -> None:
        while self._queue:
            _, _, future = self._queue.popleft()
            if not future.done():
                future.cancel()

    def _ensure_no_round_in_flight(self) -> None:
        if self._queue or (self._worker is not None and not self._worker.done()):
            raise TaskStateError("An extraction round is in progress")

    def cancel_in_flight(self) -> None:
        """Drop the running round and everything queued behind it."""
        if self._round_stop is not None:
            self._round_stop.set()
        self._drop_queued()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
        self._worker = None

    # -----------------------
    # One round
    # -----------------------

    async def _process(self, text: str, field_snapshot: Optional[Mapping[str, Any]]) -> ResolvedData:
        machine = self._require_task()
        kind = machine.kind.value

        sanitized = self.sanitizer.sanitize(text)
        self.audit.request(kind, sanitized)

        snapshot = field_snapshot
        if snapshot is None and self.field_snapshot_provider is not None:
            snapshot = self.field_snapshot_provider()
        if snapshot:
            machine.apply_snapshot(snapshot)

        if sanitized.is_empty:
            data = self._build_data(machine, "", warnings=["nothing was heard"])
            self.state.publish(Extracted(data))
            return data

        intent = self.intent_detector.detect(sanitized.text)
        if intent == UserIntent.CANCEL:
            data = self._build_data(machine, "Va bene, annullato.", intent=intent)
            self._drop_queued()
            self._abandon_current()
            self._speak(data.confirmation_text)
            return data
        if intent == UserIntent.PROCEED:
            data = self._build_data(machine, self._completion_message(machine), intent=intent)
            self.context.append_turn(sanitized.text, data.confirmation_text)
            self._speak(data.confirmation_text)
            self.state.publish(Extracted(data))
            return data

        self.context.observe_speaker(sanitized.text)

        if not self.rate_limiter.try_acquire():
            error = ExtractionError(ExtractionErrorKind.RATE_LIMITED, "too many requests, wait a moment", transcript=text)
            self.audit.record(AuditEvent.RATE_LIMITED, task=kind, length=len(sanitized.text))
            self._fail(error, text)
            raise error

        self.state.publish(Processing(sanitized.text))
        stop = threading.Event()
        self._round_stop = stop
        try:
            result = await asyncio.to_thread(self.extract, sanitized.text, self.context.snapshot(), stop.is_set)
        except LlmCallCancelled as e:
            raise asyncio.CancelledError() from e
        except ExtractionError as e:
            if e.transcript is None:
                e.transcript = text
            self.audit.outcome(kind, f"error:{e.kind.value}", length=len(sanitized.text))
            self._fail(e, text)
            raise
        finally:
            if self._round_stop is stop:
                self._round_stop = None

        if stop.is_set() or machine is not self.context.task or machine.is_terminal:
            raise asyncio.CancelledError()

        clean, coercion_warnings = machine.task.coerce_updates(result.updates)
        machine.apply(clean)
        warnings = list(sanitized.warnings) + list(result.warnings) + coercion_warnings

        self.resolve_references()
        data = self._build_data(
            machine,
            result.confirmation_text,
            confidence=result.confidence,
            low_confidence=result.low_confidence,
            warnings=warnings,
        )
        self.context.append_turn(sanitized.text, result.confirmation_text)
        self._failed = None
        self.audit.outcome(kind, "applied", confidence=result.confidence, length=len(sanitized.text))
        self._speak(result.confirmation_text)
        self.state.publish(Extracted(data))
        return data

    def _fail(self, error: ExtractionError, text: str) -> None:
        self._failed = text
        logger.warning(f"[EXTRACTION] round failed ({error.kind.value}): {error}")
        self.state.publish(ExtractionFailed(error))

    def _build_data(self, machine: TaskStateMachine, confirmation: str, *, confidence=None,
                    low_confidence=False, warnings=None, intent=UserIntent.CONTINUE) -> ResolvedData:
        missing = machine.missing_required_fields()
        return ResolvedData(
            kind=machine.kind,
            fields=record_for_json(machine.task.field_values()),
            resolutions=dict(self._resolutions),
            missing_fields=missing,
            complete=not missing,
            confirmation_text=confirmation,
            confidence=confidence,
            low_confidence=low_confidence,
            warnings=list(warnings or []),
            intent=intent,
        )

    def _completion_message(self, machine: TaskStateMachine) -> str:
        missing = machine.missing_required_fields()
        if missing:
            labels = ", ".join(machine.task.LABELS.get(m, m) for m in missing)
            return f"Mancano ancora: {labels}."
        return "Ho tutti i dati obbligatori. Confermi il salvataggio?"

    def _speak(self, text: str) -> None:
        if not self.speech_sink or not text:
            return
        try:
            self.speech_sink(self.to_speakable_text(text))
        except Exception:
            logger.exception("speech sink failed")

    # -----------------------
    # Model round-trip (runs in a worker thread)
    # -----------------------

    def _build_prompt(self, transcript: str, snapshot: ContextSnapshot) -> str:
        machine = snapshot.task
        if machine is None:
            raise TaskStateError("No active task")
        missing = machine.missing_required_fields()
        return self.unsafe_string_format(
            EXTRACTION_PROMPT,
            INSTRUCTIONS=EXTRACTION_INSTRUCTIONS,
            TODAY=self._today().isoformat(),
            TASK_KIND=machine.kind.value,
            FIELD_GUIDE=FIELD_GUIDE[machine.kind.value].strip(),
            COLLECTED_FIELDS=machine.task.collected_summary(),
            MISSING_FIELDS=", ".join(missing) if missing else "(none)",
            SPEAKER_HINT=snapshot.speaker_hint.value,
            MAINTENANCE_TYPES=maintenance_type_catalog(),
            HISTORY=snapshot.history_for_prompt(),
            TRANSCRIPT=transcript,
            REPLY_LANGUAGE=self.settings.extraction.reply_language,
        )

    def _parse_extraction(self, raw: str) -> ExtractionResult:
        data = self.load_fault_tolerant_json(raw)
        if not isinstance(data, dict) or not ({"updates", "confirmation"} & set(data)):
            raise ValueError("answer is not an extraction object")
        updates = data.get("updates") or {}
        if not isinstance(updates, dict):
            raise ValueError("'updates' is not an object")

        warnings: List[str] = []
        try:
            confidence = float(data.get("confidence", 0.0))
        except (TypeError, ValueError):
            warnings.append(f"confidence {data.get('confidence')!r} not understood")
            confidence = 0.0
        confidence = min(max(confidence, 0.0), 1.0)

        low = confidence < self.settings.extraction.low_confidence_threshold
        if low:
            warnings.append(f"low confidence ({confidence:.2f}): check the values before saving")

        missing = data.get("missing_fields") or []
        if not isinstance(missing, list):
            missing = [missing]
        return ExtractionResult(
            updates=updates,
            confirmation_text=self._coerce_field_to_str(data.get("confirmation")),
            confidence=confidence,
            low_confidence=low,
            warnings=warnings,
            missing_fields=[str(m) for m in missing],
        )

    def _invoke(self, messages, transcript: str, should_stop: Optional[Callable[[], bool]]) -> str:
        try:
            return self.chat_llm.invoke(messages, retries=self.settings.extraction.retries, should_stop=should_stop)
        except ExtractionError as e:
            e.transcript = transcript
            raise
        except LlmCallCancelled:
            raise
        except Exception as e:
            kind = classify_llm_error(e) or ExtractionErrorKind.NETWORK
            raise ExtractionError(kind, str(e), transcript=transcript) from e

    def extract(self, transcript: str, snapshot: ContextSnapshot,
                should_stop: Optional[Callable[[], bool]] = None) -> ExtractionResult:
        """
        One model round for `transcript`. A malformed answer gets a single
        corrective re-prompt; after that ExtractionError(MALFORMED_RESPONSE).
        Any other failure of the model call surfaces as an ExtractionError
        carrying the transcript.
        """
        messages = [HumanMessage(content=self._build_prompt(transcript, snapshot))]
        self.color_print(f"[EXTRACTION] {snapshot.task.kind.value}: {len(transcript)} chars", color="cyan")

        raw = self._invoke(messages, transcript, should_stop)
        try:
            return self._parse_extraction(raw)
        except ValueError as e:
            self.color_print(f"[EXTRACTION] malformed answer, asking again: {e}", color="yellow")
            fix = self.unsafe_string_format(MALFORMED_FIX_DIRECTIVE, ERROR=str(e))
            messages = messages + [AIMessage(content=raw or ""), HumanMessage(content=fix)]

        if should_stop and should_stop():
            raise LlmCallCancelled("extraction cancelled before corrective round")
        raw = self._invoke(messages, transcript, should_stop)
        try:
            return self._parse_extraction(raw)
        except ValueError as e:
            raise ExtractionError(
                ExtractionErrorKind.MALFORMED_RESPONSE, str(e), transcript=transcript
            ) from e

    async def retry_last(self, field_snapshot: Optional[Mapping[str, Any]] = None) -> ResolvedData:
        """
        Replay the transcript of the last failed round. The round reads the
        current field values (`field_snapshot`, else the snapshot provider),
        so edits made after the failure are kept.
        """
        if self._failed is None:
            raise TaskStateError("Nothing to retry")
        return await self.submit_transcript(self._failed, field_snapshot)

    # -----------------------
    # References
    # -----------------------

    def resolve_references(self) -> Dict[str, Resolution]:
        """Resolve every free-text field that names a stored record."""
        machine = self._require_task()
        task: ActiveTask = machine.task
        resolutions: Dict[str, Resolution] = {}
        ids: Dict[str, str] = {}

        for name, kind in task.REFERENCES.items():
            value = getattr(task, name)
            if not value or not str(value).strip():
                continue
            chosen = self._choices.get(name)
            if chosen is not None and chosen[0] == value:
                outcome: Resolution = Found(chosen[1])
            elif kind == EntityKind.EQUIPMENT:
                outcome = self.resolver.resolve_equipment(value)
            else:
                outcome = self.resolver.resolve(kind, value)
            resolutions[name] = outcome
            if isinstance(outcome, Found) and isinstance(outcome.record, dict) and outcome.record.get("id"):
                ids[name] = outcome.record["id"]

        self._resolutions = resolutions
        self._resolved_ids = ids
        return dict(resolutions)

    def _reference_kind(self, machine: TaskStateMachine, field_name: str) -> EntityKind:
        kind = machine.task.REFERENCES.get(field_name)
        if kind is None:
            raise TaskStateError(f"'{field_name}' does not reference a stored record")
        return kind

    def choose_candidate(self, field_name: str, record: Dict[str, Any]) -> ResolvedData:
        """The operator picked one of the proposed records for `field_name`."""
        machine = self._require_task()
        self._ensure_no_round_in_flight()
        self._reference_kind(machine, field_name)
        name = default_name_of(record) or getattr(machine.task, field_name)
        machine.apply({field_name: name})
        self._choices[field_name] = (getattr(machine.task, field_name), dict(record))
        self.resolve_references()
        data = self._build_data(machine, "")
        self.state.publish(Extracted(data))
        return data

    def create_inline(self, field_name: str) -> Dict[str, Any]:
        """
        Store a minimal record for a name nothing matched, flagged incomplete,
        and bind `field_name` to it.
        """
        machine = self._require_task()
        self._ensure_no_round_in_flight()
        kind = self._reference_kind(machine, field_name)
        value = getattr(machine.task, field_name)
        if not value or not str(value).strip():
            raise TaskStateError(f"'{field_name}' has no value to create a record from")

        minimal = {"kind": kind.value, "name": str(value).strip()}
        try:
            record_id = self.repository.create(minimal)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(str(e)) from e

        record = {**minimal, "id": record_id, "needs_completion": True}
        logger.info(f"[INLINE] created {kind.value} '{minimal['name']}' -> {record_id}")
        self._choices[field_name] = (value, record)
        self.resolve_references()
        self.state.publish(Extracted(self._build_data(machine, "")))
        return record

    # -----------------------
    # Exit edges
    # -----------------------

    def _persist(self, task: ActiveTask) -> str:
        machine = self.context.task
        hint = machine.speaker_hint if machine is not None else None
        return self.repository.insert(task.to_record(self._resolved_ids, hint))

    def confirm(self) -> str:
        """
        Explicit save. On success the session is reset; on PersistenceError the
        task stays as it was so the operator can retry.
        """
        machine = self._require_task()
        self.cancel_in_flight()
        if machine.task.REFERENCES:
            self.resolve_references()
        record_id = machine.confirm(self._persist)
        self.audit.record(AuditEvent.CONFIRMED, task=machine.kind.value, id=record_id)
        self.context.reset()
        self._clear_task_state()
        self.state.publish(ExtractionIdle())
        return record_id

    def _abandon_current(self) -> None:
        machine = self.context.task
        if machine is not None and not machine.is_terminal:
            machine.abandon()
            self.audit.record(AuditEvent.ABANDONED, task=machine.kind.value)
        self.context.reset()
        self._clear_task_state()
        self.state.publish(ExtractionIdle())

    def cancel(self) -> None:
        """Abandon the task: in-flight work dropped, context reset."""
        self.cancel_in_flight()
        self._abandon_current()

    def reset(self) -> None:
        """Leave without saving or abandoning: drop work and clear the context."""
        self.cancel_in_flight()
        self.context.reset()
        self._clear_task_state()
        self.state.publish(ExtractionIdle())

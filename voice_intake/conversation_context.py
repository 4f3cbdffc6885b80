# voice_intake/conversation_context.py

import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from langchain_community.chat_message_histories.in_memory import ChatMessageHistory
from langchain_core.messages import AIMessage, HumanMessage

if TYPE_CHECKING:
    from voice_intake.tasks import TaskStateMachine


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ChatExchange:
    role: Role
    content: str
    timestamp: float


class SpeakerHint(str, Enum):
    UNKNOWN = "unknown"
    # the narrator did the work ("ho riparato la pompa")
    LIKELY_PERFORMER = "likely_performer"
    # the narrator reports someone else's work ("il tecnico ha riparato")
    LIKELY_OPERATOR = "likely_operator"


class SpeakerInference:
    """
    Guesses who is talking from grammatical person. Italian first, since that
    is what operators speak; a few English forms for mixed teams.
    """

    FIRST_PERSON_PATTERNS = [
        re.compile(r"\b(ho|abbiamo)\s+(riparato|fatto|verificato|installato|sostituito|sistemato|controllato)\b", re.I),
        re.compile(r"\bfinito\s+(l'intervento|il lavoro|la riparazione|la manutenzione)\b", re.I),
        re.compile(r"\bsono\s+(di|della|del)\s+\w+", re.I),
        re.compile(r"\bsiamo\s+(di|della|del|venuti)\b", re.I),
        re.compile(r"\b(sono|siamo)\s+intervenut[oiae]\b", re.I),
        re.compile(r"\bho\s+(appena|già)\s+", re.I),
        re.compile(r"\b(i|we)\s+(have\s+)?(repaired|fixed|replaced|installed|checked|inspected)\b", re.I),
    ]

    THIRD_PERSON_PATTERNS = [
        re.compile(r"\b(è|sono)\s+venut[oiae]\b", re.I),
        re.compile(r"\b(ha|hanno)\s+(riparato|fatto|verificato|installato|sostituito|sistemato)\b", re.I),
        re.compile(r"\b(il|la|i|le)\s+(tecnico|tecnici|manutentore|manutentori|ditta)\s+ha", re.I),
        re.compile(r"\b(il|la)\s+\w+\s+ha\s+(fatto|riparato|sistemato)\b", re.I),
        re.compile(r"\bhanno\s+detto\s+che\b", re.I),
        re.compile(r"\b(mi|ci)\s+hanno\s+", re.I),
        re.compile(r"\b(the\s+)?(technician|vendor|engineer)\s+(has\s+)?(repaired|fixed|replaced|installed|checked)\b", re.I),
    ]

    @classmethod
    def infer(cls, text: str) -> SpeakerHint:
        text = text or ""
        first = sum(1 for p in cls.FIRST_PERSON_PATTERNS if p.search(text))
        third = sum(1 for p in cls.THIRD_PERSON_PATTERNS if p.search(text))
        if first > third:
            return SpeakerHint.LIKELY_PERFORMER
        if third > first:
            return SpeakerHint.LIKELY_OPERATOR
        return SpeakerHint.UNKNOWN

    @staticmethod
    def update_hint(current: SpeakerHint, new: SpeakerHint) -> SpeakerHint:
        if current == SpeakerHint.UNKNOWN:
            return new
        if new == SpeakerHint.UNKNOWN:
            return current
        return new


def format_history(exchanges) -> str:
    lines = []
    for ex in exchanges:
        who = "Operator" if ex.role == Role.USER else "Assistant"
        lines.append(f"{who}: {ex.content}")
    return "\n".join(lines) if lines else "(no previous exchanges)"


@dataclass(frozen=True)
class ContextSnapshot:
    task: Optional["TaskStateMachine"]
    exchanges: tuple
    speaker_hint: SpeakerHint

    def history_for_prompt(self) -> str:
        return format_history(self.exchanges)


class ConversationContext:
    """
    Session state for one operator: the active task, the last few exchanges
    and the speaker hint.

    - history is a langchain ChatMessageHistory capped at `max_exchanges` messages
    - every task exit (save, cancel, navigate away) goes through reset()
    """

    MAX_EXCHANGES = 6

    def __init__(self, max_exchanges: int = MAX_EXCHANGES):
        self.max_exchanges = max_exchanges
        self._lock = threading.RLock()
        self._history = ChatMessageHistory()
        self.task: Optional["TaskStateMachine"] = None
        self.speaker_hint = SpeakerHint.UNKNOWN

    def _prune_unlocked(self) -> None:
        msgs = list(self._history.messages)
        if len(msgs) > self.max_exchanges:
            self._history.messages = msgs[-self.max_exchanges:]

    def add_exchange(self, role: Role, content: str) -> None:
        stamp = {"timestamp": time.time()}
        message = (
            HumanMessage(content=content, additional_kwargs=stamp)
            if Role(role) == Role.USER
            else AIMessage(content=content, additional_kwargs=stamp)
        )
        with self._lock:
            self._history.add_message(message)
            self._prune_unlocked()

    def append_turn(self, user_text: str, assistant_text: str) -> None:
        """
        Append user+assistant messages as a single turn and prune to cap.
        """
        with self._lock:
            self.add_exchange(Role.USER, user_text)
            self.add_exchange(Role.ASSISTANT, assistant_text)

    def messages(self) -> list:
        """Copy of the history as langchain messages, oldest first."""
        with self._lock:
            return list(self._history.messages)

    def exchanges(self) -> tuple:
        out = []
        for m in self.messages():
            role = Role.USER if isinstance(m, HumanMessage) else Role.ASSISTANT
            out.append(ChatExchange(
                role=role,
                content=str(m.content),
                timestamp=float((m.additional_kwargs or {}).get("timestamp", 0.0)),
            ))
        return tuple(out)

    def observe_speaker(self, text: str) -> SpeakerHint:
        with self._lock:
            self.speaker_hint = SpeakerInference.update_hint(self.speaker_hint, SpeakerInference.infer(text))
            if self.task is not None:
                self.task.speaker_hint = self.speaker_hint
            return self.speaker_hint

    def set_task(self, task: "TaskStateMachine") -> None:
        with self._lock:
            self.task = task
            task.speaker_hint = self.speaker_hint

    def snapshot(self) -> ContextSnapshot:
        with self._lock:
            return ContextSnapshot(task=self.task, exchanges=self.exchanges(), speaker_hint=self.speaker_hint)

    def history_for_prompt(self) -> str:
        return format_history(self.exchanges())

    def is_empty(self) -> bool:
        with self._lock:
            return self.task is None and not self._history.messages and self.speaker_hint == SpeakerHint.UNKNOWN

    def reset(self) -> None:
        with self._lock:
            self._history.clear()
            self.task = None
            self.speaker_hint = SpeakerHint.UNKNOWN

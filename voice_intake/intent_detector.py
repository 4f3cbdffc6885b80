# voice_intake/intent_detector.py

import re
from enum import Enum
from typing import Iterable, Optional


class UserIntent(str, Enum):
    CONTINUE = "continue"
    PROCEED = "proceed"
    CANCEL = "cancel"


PROCEED_PHRASES = (
    "basta", "procedi", "ok così", "va bene", "conferma", "bene così", "va bene così",
    "salva", "registra", "confermo",
    "that's all", "that's it", "save it", "confirm", "proceed",
)

# too common inside ordinary sentences ("si è rotto"), so only accepted alone
AFFIRMATIONS = ("ok", "sì", "si", "così", "fatto", "esatto", "perfetto", "done", "yes")

CANCEL_PHRASES = (
    "annulla", "lascia stare", "cancella", "lascia perdere", "non importa",
    "abbandona",
    "cancel", "forget it", "never mind", "abort",
)

# "la pompa si ferma" is dictation, "ferma" alone is not
CANCEL_WORDS = ("stop", "ferma", "fermati", "niente", "no")


class UserIntentDetector:
    """
    Local check for "save it" / "forget it" before anything reaches the model.

    Cancel wins over proceed. Cancel phrases match as whole words anywhere in
    the text, bare words like "stop" only on their own. Proceed phrases must
    be the whole text or open/close it, so "va bene, la pompa è in sala 3"
    is still dictation.
    """

    def __init__(self, proceed_phrases: Optional[Iterable[str]] = None, cancel_phrases: Optional[Iterable[str]] = None):
        self.proceed_phrases = tuple(p.lower() for p in (proceed_phrases or PROCEED_PHRASES))
        self.affirmations = frozenset(AFFIRMATIONS)
        self.cancel_words = frozenset(CANCEL_WORDS)
        cancel = tuple(p.lower() for p in (cancel_phrases or CANCEL_PHRASES))
        self._cancel_patterns = [re.compile(rf"(?<!\w){re.escape(p)}(?!\w)") for p in cancel]

    def _normalize(self, text: str) -> str:
        text = (text or "").lower().strip()
        text = re.sub(r"[.!?,;:]+$", "", text)
        return re.sub(r"\s+", " ", text).strip()

    def detect(self, text: str) -> UserIntent:
        normalized = self._normalize(text)
        if not normalized:
            return UserIntent.CONTINUE

        if normalized in self.cancel_words or any(p.search(normalized) for p in self._cancel_patterns):
            return UserIntent.CANCEL

        if normalized in self.affirmations:
            return UserIntent.PROCEED

        for phrase in self.proceed_phrases:
            if normalized == phrase or normalized.startswith(phrase + " ") or normalized.endswith(" " + phrase):
                return UserIntent.PROCEED

        return UserIntent.CONTINUE

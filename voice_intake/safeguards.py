# voice_intake/safeguards.py

import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger("voice_intake")
audit_logger = logging.getLogger("voice_intake.audit")

# null/control characters and zero-width characters that can hide text
_INVISIBLE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f\u200b\u200c\u200d\u2060\ufeff]")

SUSPICIOUS_PATTERNS = [
    re.compile(r"(ignora|ignore|dimentica|forget).*(system|istruzioni di sistema|previous instructions|istruzioni precedenti)", re.IGNORECASE),
    re.compile(r"\$\{.*\}"),
    re.compile(r"\.\./\.\./"),
]


@dataclass(frozen=True)
class SanitizedInput:
    text: str
    warnings: List[str] = field(default_factory=list)
    suspicious: bool = False
    truncated: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.text


class InputSanitizer:
    """
    Cleans a transcript before it is embedded in a prompt.

    Over-long input is truncated with a warning; suspicious patterns are
    flagged but the text is still passed on.
    """

    def __init__(self, max_length: int = 2000, patterns=None):
        self.max_length = max_length
        self.patterns = list(patterns if patterns is not None else SUSPICIOUS_PATTERNS)

    def sanitize(self, raw: Optional[str]) -> SanitizedInput:
        warnings: List[str] = []
        text = _INVISIBLE.sub("", raw or "")
        text = re.sub(r"\s+", " ", text).strip()

        truncated = False
        if len(text) > self.max_length:
            warnings.append(f"input truncated to {self.max_length} characters (was {len(text)})")
            text = text[: self.max_length].rstrip()
            truncated = True

        suspicious = False
        for pattern in self.patterns:
            if pattern.search(text):
                logger.warning(f"[SANITIZER] suspicious pattern: {pattern.pattern}")
                warnings.append("input contains instructions aimed at the assistant; they are ignored")
                suspicious = True
                break

        return SanitizedInput(text=text, warnings=warnings, suspicious=suspicious, truncated=truncated)


class RateLimiter:
    """Sliding-window limiter: at most max_requests in any window_seconds."""

    def __init__(self, max_requests: int = 15, window_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._stamps: Deque[float] = deque()
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._stamps and self._stamps[0] <= horizon:
            self._stamps.popleft()

    def try_acquire(self) -> bool:
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._stamps) >= self.max_requests:
                logger.warning(f"[RATE-LIMIT] {len(self._stamps)}/{self.max_requests} requests in window")
                return False
            self._stamps.append(now)
            return True

    def remaining(self) -> int:
        with self._lock:
            self._evict(self._clock())
            return self.max_requests - len(self._stamps)


class AuditEvent(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    SUSPICIOUS_INPUT = "suspicious_input"
    RATE_LIMITED = "rate_limited"
    CONFIRMED = "confirmed"
    ABANDONED = "abandoned"
    ERROR = "error"


class AuditLogger:
    """Structured audit trail of extraction rounds. Never logs the transcript body."""

    def __init__(self, log: logging.Logger = audit_logger):
        self.log = log

    def record(self, event: AuditEvent, **details: Any) -> Dict[str, Any]:
        entry = {"event": event.value, **details}
        message = f"[{event.value.upper()}] " + ", ".join(f"{k}={v}" for k, v in details.items())
        if event in (AuditEvent.SUSPICIOUS_INPUT, AuditEvent.RATE_LIMITED):
            self.log.warning(message)
        elif event is AuditEvent.ERROR:
            self.log.error(message)
        else:
            self.log.info(message)
        return entry

    def request(self, task_kind: str, sanitized: SanitizedInput) -> Dict[str, Any]:
        return self.record(
            AuditEvent.SUSPICIOUS_INPUT if sanitized.suspicious else AuditEvent.REQUEST,
            task=task_kind,
            length=len(sanitized.text),
            truncated=sanitized.truncated,
        )

    def outcome(self, task_kind: str, outcome: str, *, confidence: Optional[float] = None, length: int = 0) -> Dict[str, Any]:
        event = AuditEvent.ERROR if outcome.startswith("error") else AuditEvent.RESPONSE
        return self.record(event, task=task_kind, outcome=outcome, length=length, confidence=confidence)

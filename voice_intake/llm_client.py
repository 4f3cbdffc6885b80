# voice_intake/llm_client.py

import asyncio
import logging
import random
import threading
import time
import traceback
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import openai
from openai import OpenAI
from langchain_google_vertexai import ChatVertexAI
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from voice_intake.errors import ExtractionError, ExtractionErrorKind

T = TypeVar("T")

logger = logging.getLogger("voice_intake")


class MaxRetryErrorsException(ExtractionError):
    """All attempts failed; `kind` is the classification of the last failure."""


class LlmCallCancelled(Exception):
    pass


# Global backoff state (shared across all clients)
_global_backoff_lock = threading.Lock()
_global_wait_until = 0.0
_global_backoff_seconds = 30.0
_GLOBAL_BACKOFF_MAX = 600.0

# Per-call backoff for other retryable failures (connection resets, 503s)
_RETRY_BASE_DELAY = 1.0
_RETRY_MAX_DELAY = 8.0
_SLEEP_STEP = 0.25


def _is_timeout_error(e: Exception) -> bool:
    if isinstance(e, (asyncio.TimeoutError, TimeoutError, openai.APITimeoutError)):
        return True
    msg = repr(e)
    return "TimeoutError" in msg or "timed out" in msg.lower() or "deadline exceeded" in msg.lower()


def _is_resource_exhausted_error(e: Exception) -> bool:
    if isinstance(e, openai.RateLimitError):
        return True
    msg = str(e)
    return (
        "429" in msg
        and (
            "RESOURCE_EXHAUSTED" in msg
            or "Resource has been exhausted" in msg
            or "Too Many Requests" in msg
        )
    )


def classify_llm_error(e: Exception) -> Optional[ExtractionErrorKind]:
    """
    Map a provider exception onto an ExtractionErrorKind.
    None means "unknown": retried like a transient failure.
    """
    if isinstance(e, ExtractionError):
        return e.kind
    if _is_resource_exhausted_error(e):
        return ExtractionErrorKind.RATE_LIMITED
    if _is_timeout_error(e) or isinstance(e, (ConnectionError, openai.APIConnectionError)):
        return ExtractionErrorKind.NETWORK
    msg = str(e).lower()
    if "content_filter" in msg or "safety" in msg or "blocked" in msg:
        return ExtractionErrorKind.CONTENT_FILTERED
    if "503" in msg or "unavailable" in msg:
        return ExtractionErrorKind.NETWORK
    return None


def call_with_retries_sync(
    fn: Callable[[], T],
    *,
    retries: int = 3,
    log: Callable[[str], None] | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> T:
    """
    Run a sync LLM call with global 429/timeout backoff + retries.
    Non-retryable failures (content filtered) are raised at once.
    Other retryable failures back off exponentially with jitter, capped at
    _RETRY_MAX_DELAY. `should_stop` is polled between attempts and while
    backing off.
    """
    last_exception: Exception | None = None
    last_kind: Optional[ExtractionErrorKind] = None

    def _stopped() -> bool:
        return bool(should_stop and should_stop())

    def _respect_global_backoff() -> None:
        while True:
            if _stopped():
                raise LlmCallCancelled("LLM call cancelled while backing off")
            with _global_backoff_lock:
                now = time.monotonic()
                wait = _global_wait_until - now
            if wait <= 0:
                return
            time.sleep(min(wait, 1.0))

    def _register_429_and_get_delay() -> float:
        global _global_wait_until, _global_backoff_seconds

        with _global_backoff_lock:
            now = time.monotonic()
            base = _global_backoff_seconds
            delay = random.uniform(base * 0.95, base * 1.35)
            _global_backoff_seconds = min(_global_backoff_seconds * 2, _GLOBAL_BACKOFF_MAX)
            _global_wait_until = max(_global_wait_until, now + delay)
            return delay

    def _sleep_unless_stopped(delay: float) -> None:
        remaining = delay
        while remaining > 0:
            if _stopped():
                raise LlmCallCancelled("LLM call cancelled while backing off")
            step = min(remaining, _SLEEP_STEP)
            time.sleep(step)
            remaining -= step

    def _reset_backoff_on_success() -> None:
        global _global_backoff_seconds
        with _global_backoff_lock:
            _global_backoff_seconds = max(1.0, _global_backoff_seconds * 0.5)

    for attempt in range(retries):
        _respect_global_backoff()
        start_time = time.time()
        try:
            result = fn()
            _reset_backoff_on_success()
            return result
        except Exception as e:
            elapsed = time.time() - start_time
            last_exception = e
            last_kind = classify_llm_error(e)

            if last_kind is not None and not last_kind.retryable:
                if log:
                    log(f"Attempt {attempt+1} failed with non-retryable {last_kind.value}: {e}")
                if isinstance(e, ExtractionError):
                    raise
                raise ExtractionError(last_kind, str(e)) from e

            own_delay = 0.0
            if _is_resource_exhausted_error(e) or _is_timeout_error(e):
                delay = _register_429_and_get_delay()
                msg = f"Attempt {attempt+1} got 429/timeout, backing off ~{delay:.1f}s."
            else:
                if attempt < retries - 1:
                    own_delay = min(_RETRY_BASE_DELAY * 2 ** attempt, _RETRY_MAX_DELAY) * random.uniform(0.8, 1.2)
                msg = f"Attempt {attempt+1} failed, retrying in {own_delay:.1f}s."

            if log:
                log(f"{msg} (elapsed={elapsed:.2f}s): {e}\n{traceback.format_exc()}")
            _sleep_unless_stopped(own_delay)

    raise MaxRetryErrorsException(
        last_kind or ExtractionErrorKind.NETWORK,
        f"All {retries} retry attempts failed.",
    ) from last_exception


def is_openai_model(model_name) -> bool:
    prefixes = ("gpt-", "gpt4", "gpt-4", "gpt-5", "o1", "o3", "o4")
    return any((model_name or "").startswith(p) for p in prefixes)


def parse_model_name(raw: str) -> Tuple[str, Dict[str, Any]]:
    """Parse strings like:
        - 'gpt-5.1'
        - 'gpt-5.1_fast'
        - 'gpt-5.1_low_medium'  (verbosity, reasoning effort)
    into (base_model, openai_params).
    """
    raw = (raw or "").strip()
    if not raw:
        raise ValueError("parse_model_name: No Model Name passed.")

    parts = raw.split("_")
    base = parts[0]
    if len(parts) <= 1:
        return base, {}

    presets = {
        "fast": ("low", "none"),
        "standard": ("low", "low"),
        "deep": ("medium", "high"),
    }
    levels = {"none", "minimal", "low", "medium", "high"}

    verbosity: Optional[str] = None
    reasoning_effort: Optional[str] = None
    for tok in parts[1:]:
        t = tok.strip().lower()
        if t in presets:
            verbosity, reasoning_effort = presets[t]
        elif t in levels and verbosity is None:
            verbosity = t
        elif t in levels and reasoning_effort is None:
            reasoning_effort = t
        elif t:
            raise ValueError(f"parse_model_name: unknown token '{tok}' in '{raw}'")

    params: Dict[str, Any] = {}
    if verbosity and verbosity != "none":
        params["text"] = {"verbosity": verbosity}
    if reasoning_effort:
        params["reasoning"] = {"effort": reasoning_effort}
    return base, params


class ChatLlmClient:
    """
    Minimal wrapper for chat-style use:

        text = chat_llm.invoke([SystemMessage(...), HumanMessage(...), ...])

    Under the hood:
    - Vertex: ChatVertexAI.invoke(messages)
    - OpenAI: Responses API with input=[{role, content}, ...]

    Blocked answers are raised as ExtractionError(CONTENT_FILTERED).
    """

    def __init__(
        self,
        model_name: str,
        *,
        vertex_project: str,
        vertex_region: str,
        timeout: float | None = None,
    ):
        self.provider = "openai" if is_openai_model(model_name) else "vertex"
        self.model_name = model_name
        self._timeout = timeout
        self.last_usage: Optional[Dict[str, int]] = None
        self._openai_params: Dict[str, Any] = {}

        if self.provider == "vertex":
            self._vertex = ChatVertexAI(
                project=vertex_project,
                location=vertex_region,
                model_name=model_name,
                timeout=timeout,
            )
            self._client = None
        else:
            self._vertex = None
            self.model_name, self._openai_params = parse_model_name(self.model_name)
            client_kwargs: Dict[str, Any] = {"max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            self._client = OpenAI(**client_kwargs)

    # -----------------------
    # Usage accounting
    # -----------------------

    def _merge_usage(self, inc: Dict[str, int]) -> None:
        if self.last_usage is None:
            self.last_usage = dict(inc)
            return
        for k, v in inc.items():
            self.last_usage[k] = (self.last_usage.get(k, 0) or 0) + (v or 0)

    def _merge_openai_usage(self, resp: Any) -> None:
        usage = getattr(resp, "usage", None)
        if usage is None:
            return
        self._merge_usage({
            "prompt_token_count": getattr(usage, "input_tokens", 0) or 0,
            "candidates_token_count": getattr(usage, "output_tokens", 0) or 0,
            "total_token_count": getattr(usage, "total_tokens", 0) or 0,
        })

    def _merge_vertex_usage(self, usage_metadata: Any) -> None:
        if not usage_metadata:
            return

        def get(*keys: str) -> int:
            for k in keys:
                if isinstance(usage_metadata, dict):
                    v = usage_metadata.get(k)
                else:
                    v = getattr(usage_metadata, k, None)
                if v:
                    return int(v)
            return 0

        self._merge_usage({
            "prompt_token_count": get("prompt_token_count", "input_tokens"),
            "candidates_token_count": get("candidates_token_count", "output_tokens"),
            "total_token_count": get("total_token_count", "total_tokens"),
        })

    # -----------------------
    # Calls
    # -----------------------

    def _to_openai_messages(self, messages: List[BaseMessage]) -> List[Dict[str, str]]:
        out: List[Dict[str, str]] = []
        for m in messages:
            if isinstance(m, SystemMessage):
                role = "developer"
            elif isinstance(m, AIMessage):
                role = "assistant"
            else:
                role = "user"
            out.append({"role": role, "content": str(m.content)})
        return out

    def _check_vertex_blocked(self, resp: Any) -> None:
        rm = getattr(resp, "response_metadata", None) or {}
        if not isinstance(rm, dict):
            return
        finish = str(rm.get("finish_reason") or "").upper()
        if rm.get("is_blocked") or finish in ("SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST"):
            raise ExtractionError(ExtractionErrorKind.CONTENT_FILTERED, f"response blocked ({finish or 'is_blocked'})")

    def _check_openai_blocked(self, resp: Any) -> None:
        if getattr(resp, "status", None) != "incomplete":
            return
        details = getattr(resp, "incomplete_details", None)
        if getattr(details, "reason", None) == "content_filter":
            raise ExtractionError(ExtractionErrorKind.CONTENT_FILTERED, "response blocked (content_filter)")

    def _invoke_once(self, messages: List[BaseMessage]) -> str:
        """
        Single HTTP call without retries/backoff.
        """
        if self.provider == "vertex":
            resp = self._vertex.invoke(messages)
            self._check_vertex_blocked(resp)

            usage_md = getattr(resp, "usage_metadata", None)
            if usage_md is None:
                rm = getattr(resp, "response_metadata", None)
                if isinstance(rm, dict):
                    usage_md = rm.get("usage_metadata")
            self._merge_vertex_usage(usage_md)

            if isinstance(resp, str):
                return resp
            return getattr(resp, "content", str(resp))

        resp = self._client.responses.create(
            model=self.model_name,
            input=self._to_openai_messages(messages),
            **self._openai_params,
        )
        self._check_openai_blocked(resp)
        self._merge_openai_usage(resp)

        text = getattr(resp, "output_text", "") or ""
        return text.strip()

    def invoke(
        self,
        messages: List[BaseMessage] | str,
        *,
        retries: int = 3,
        should_stop: Callable[[], bool] | None = None,
    ) -> str:
        """
        Synchronous chat call with global 429/timeout backoff + retries.
        """
        if isinstance(messages, str):
            messages = [HumanMessage(content=messages)]
        return call_with_retries_sync(
            lambda: self._invoke_once(messages),
            retries=retries,
            log=lambda msg: logger.warning(f"[CHAT-LLM-RETRY] {msg}"),
            should_stop=should_stop,
        )

import pytest

from voice_intake import llm_client
from voice_intake.errors import ExtractionError, ExtractionErrorKind
from voice_intake.llm_client import (
    LlmCallCancelled,
    MaxRetryErrorsException,
    call_with_retries_sync,
    classify_llm_error,
    is_openai_model,
    parse_model_name,
)


@pytest.fixture(autouse=True)
def no_global_backoff(monkeypatch):
    monkeypatch.setattr(llm_client, "_global_wait_until", 0.0)
    monkeypatch.setattr(llm_client, "_global_backoff_seconds", 0.0)
    monkeypatch.setattr(llm_client, "_RETRY_BASE_DELAY", 0.0)


def flaky(*outcomes):
    calls = []
    pending = list(outcomes)

    def fn():
        calls.append(1)
        item = pending.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    fn.calls = calls
    return fn


def test_retries_then_succeeds():
    fn = flaky(RuntimeError("boom"), "ok")
    logged = []
    assert call_with_retries_sync(fn, retries=3, log=logged.append) == "ok"
    assert len(fn.calls) == 2
    assert len(logged) == 1


def test_exhaustion_carries_last_kind():
    fn = flaky(*[ConnectionError("reset")] * 3)
    with pytest.raises(MaxRetryErrorsException) as info:
        call_with_retries_sync(fn, retries=3)
    assert info.value.kind == ExtractionErrorKind.NETWORK


def test_rate_limit_is_backed_off_and_classified():
    fn = flaky(*[RuntimeError("429 Too Many Requests")] * 2)
    with pytest.raises(MaxRetryErrorsException) as info:
        call_with_retries_sync(fn, retries=2)
    assert info.value.kind == ExtractionErrorKind.RATE_LIMITED
    assert len(fn.calls) == 2


def test_content_filter_is_not_retried():
    fn = flaky(ExtractionError(ExtractionErrorKind.CONTENT_FILTERED), "never")
    with pytest.raises(ExtractionError) as info:
        call_with_retries_sync(fn, retries=3)
    assert info.value.kind == ExtractionErrorKind.CONTENT_FILTERED
    assert len(fn.calls) == 1


def test_should_stop_cancels_before_next_attempt():
    fn = flaky(RuntimeError("boom"), "ok")
    with pytest.raises(LlmCallCancelled):
        call_with_retries_sync(fn, retries=3, should_stop=lambda: len(fn.calls) > 0)
    assert len(fn.calls) == 1


@pytest.fixture
def recorded_sleeps(monkeypatch):
    sleeps = []
    monkeypatch.setattr(llm_client, "_RETRY_BASE_DELAY", 1.0)
    monkeypatch.setattr(llm_client.random, "uniform", lambda low, high: 1.0)
    monkeypatch.setattr(llm_client.time, "sleep", sleeps.append)
    return sleeps


def test_connection_errors_back_off_between_attempts(recorded_sleeps):
    fn = flaky(*[ConnectionError("reset")] * 3)
    with pytest.raises(MaxRetryErrorsException):
        call_with_retries_sync(fn, retries=3)
    assert len(fn.calls) == 3
    # 1s after the first failure, 2s after the second, none after the last
    assert sum(recorded_sleeps) == pytest.approx(3.0)
    assert all(0 < step <= 0.25 for step in recorded_sleeps)


def test_backoff_delay_is_capped(recorded_sleeps, monkeypatch):
    monkeypatch.setattr(llm_client, "_RETRY_MAX_DELAY", 1.5)
    fn = flaky(RuntimeError("503 Service Unavailable"), RuntimeError("503 Service Unavailable"), "ok")
    assert call_with_retries_sync(fn, retries=3) == "ok"
    assert sum(recorded_sleeps) == pytest.approx(2.5)


def test_should_stop_interrupts_backoff(recorded_sleeps):
    fn = flaky(ConnectionError("reset"), "ok")
    with pytest.raises(LlmCallCancelled):
        call_with_retries_sync(fn, retries=3, should_stop=lambda: len(recorded_sleeps) >= 2)
    assert len(fn.calls) == 1
    assert len(recorded_sleeps) == 2


@pytest.mark.parametrize("error, kind", [
    (TimeoutError("read timed out"), ExtractionErrorKind.NETWORK),
    (RuntimeError("503 Service Unavailable"), ExtractionErrorKind.NETWORK),
    (RuntimeError("429 RESOURCE_EXHAUSTED"), ExtractionErrorKind.RATE_LIMITED),
    (RuntimeError("response blocked by safety filters"), ExtractionErrorKind.CONTENT_FILTERED),
    (RuntimeError("something odd"), None),
])
def test_classify_llm_error(error, kind):
    assert classify_llm_error(error) == kind


def test_parse_model_name():
    assert parse_model_name("gpt-5.1") == ("gpt-5.1", {})
    base, params = parse_model_name("gpt-5.1_deep")
    assert base == "gpt-5.1"
    assert params == {"text": {"verbosity": "medium"}, "reasoning": {"effort": "high"}}
    assert parse_model_name("gpt-5.1_low_medium")[1] == {
        "text": {"verbosity": "low"},
        "reasoning": {"effort": "medium"},
    }
    with pytest.raises(ValueError):
        parse_model_name("gpt-5.1_turbo")
    with pytest.raises(ValueError):
        parse_model_name("")


def test_is_openai_model():
    assert is_openai_model("gpt-5.1_fast")
    assert not is_openai_model("gemini-2.5-flash-lite")

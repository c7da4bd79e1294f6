"""Tests for the circuit breaker and the retrying OpenAI-compatible client."""

import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest

from feedback_triage.core import LLMException, LLMUnavailableException
from feedback_triage.infrastructure.llm import CircuitBreaker, CircuitState, OpenAILLMClient


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(failure_threshold=3, recovery_timeout=30, clock=clock)


def trip(breaker):
    for _ in range(breaker.failure_threshold):
        breaker.record_failure()


class TestCircuitBreaker:

    def test_opens_after_threshold(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request()

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()

    def test_success_resets_failure_count(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 1

    def test_allows_exactly_one_probe_after_cool_down(self, breaker, clock):
        trip(breaker)
        clock.advance(29.9)
        assert not breaker.allow_request()

        clock.advance(0.1)

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request() is True
        assert breaker.allow_request() is False

    def test_probe_success_closes(self, breaker, clock):
        trip(breaker)
        clock.advance(30)
        breaker.allow_request()

        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request()

    def test_probe_failure_reopens(self, breaker, clock):
        trip(breaker)
        clock.advance(30)
        breaker.allow_request()

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        clock.advance(10)
        assert not breaker.allow_request()

    def test_reset_and_snapshot(self, breaker, clock):
        trip(breaker)
        clock.advance(5)
        snapshot = breaker.snapshot()
        assert snapshot.state == CircuitState.OPEN
        assert snapshot.seconds_until_probe == pytest.approx(25)

        breaker.reset()

        assert breaker.snapshot().to_dict()["state"] == CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_half_open_call_that_never_reports_back_expires(self, breaker, clock):
        trip(breaker)
        clock.advance(30)
        assert breaker.allow_request()

        clock.advance(29)
        assert not breaker.allow_request()
        clock.advance(1)

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request() is True
        assert breaker.allow_request() is False

    def test_released_half_open_slot_lets_next_caller_through(self, breaker, clock):
        trip(breaker)
        clock.advance(30)
        breaker.allow_request()

        breaker.release_probe()

        assert breaker.allow_request() is True


# ========== Client ==========

REQUEST = httpx.Request("POST", "http://llm.test/v1/chat/completions")


def completion(content):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=3, completion_tokens=4),
        model="test-model",
    )


def status_error(code):
    return openai.APIStatusError("error", response=httpx.Response(code, request=REQUEST), body=None)


class FakeOpenAI:
    """Stands in for AsyncOpenAI; answers from a script and counts calls."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = 0
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.calls += 1
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item


def make_client(fake, breaker, max_attempts=3):
    return OpenAILLMClient(breaker, client=fake, model="test-model", max_attempts=max_attempts, initial_backoff=0)


@pytest.mark.asyncio
async def test_open_breaker_fails_fast_without_network_call(breaker):
    fake = FakeOpenAI([openai.APIConnectionError(request=REQUEST)])
    client = make_client(fake, breaker, max_attempts=5)

    with pytest.raises(LLMUnavailableException):
        await client.chat_completion([{"role": "user", "content": "hi"}])
    assert fake.calls == 3
    assert breaker.state == CircuitState.OPEN

    with pytest.raises(LLMUnavailableException):
        await client.chat_completion([{"role": "user", "content": "hi"}])
    assert fake.calls == 3


@pytest.mark.asyncio
async def test_retryable_status_then_success(breaker):
    fake = FakeOpenAI([status_error(503), completion('{"ok": true}')])
    client = make_client(fake, breaker)

    result = await client.chat_completion([{"role": "user", "content": "hi"}])

    assert result.content == '{"ok": true}'
    assert result.total_tokens == 7
    assert fake.calls == 2
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_non_retryable_status_raises_llm_exception(breaker):
    fake = FakeOpenAI([status_error(400)])
    client = make_client(fake, breaker)

    with pytest.raises(LLMException) as exc_info:
        await client.chat_completion([{"role": "user", "content": "hi"}])

    assert not isinstance(exc_info.value, LLMUnavailableException)
    assert fake.calls == 1


@pytest.mark.asyncio
async def test_exhausted_retries_are_unavailable(clock):
    breaker = CircuitBreaker(failure_threshold=10, recovery_timeout=30, clock=clock)
    fake = FakeOpenAI([status_error(429)])
    client = make_client(fake, breaker, max_attempts=3)

    with pytest.raises(LLMUnavailableException):
        await client.chat_completion([{"role": "user", "content": "hi"}])

    assert fake.calls == 3
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_unexpected_error_in_half_open_call_reopens_breaker(clock):
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=clock)
    breaker.record_failure()
    clock.advance(30)
    bad_body = openai.APIResponseValidationError(response=httpx.Response(200, request=REQUEST), body=None)
    client = make_client(FakeOpenAI([bad_body]), breaker)

    with pytest.raises(openai.APIResponseValidationError):
        await client.chat_completion([{"role": "user", "content": "hi"}])

    assert breaker.state == CircuitState.OPEN
    clock.advance(30)
    assert breaker.allow_request()


@pytest.mark.asyncio
async def test_cancelled_half_open_call_frees_the_slot(clock):
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=clock)
    breaker.record_failure()
    clock.advance(30)
    started = asyncio.Event()

    async def hang(**kwargs):
        started.set()
        await asyncio.sleep(3600)

    fake = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=hang)))
    client = make_client(fake, breaker)
    call = asyncio.create_task(client.chat_completion([{"role": "user", "content": "hi"}]))
    await asyncio.wait_for(started.wait(), timeout=5)

    call.cancel()
    with pytest.raises(asyncio.CancelledError):
        await call

    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.allow_request() is True

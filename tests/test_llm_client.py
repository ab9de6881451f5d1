import asyncio

import pytest

import llm_client
from errors import LLMRateLimitError
from llm_client import chat_completion, retry_after_seconds


class FakeMessage:
    def __init__(self, content):
        self.content = content
        self.refusal = None


class FakeChoice:
    def __init__(self, content, finish_reason="stop"):
        self.message = FakeMessage(content)
        self.finish_reason = finish_reason


class FakeResp:
    def __init__(self, content):
        self.choices = [FakeChoice(content)]


class FakeHTTPResponse:
    def __init__(self, headers):
        self.headers = headers


class FakeRateLimit(Exception):
    status_code = 429

    def __init__(self, retry_after=None):
        super().__init__("Too Many Requests")
        self.response = FakeHTTPResponse({"retry-after": retry_after} if retry_after is not None else {})


class FakeClient:
    """Raises the queued errors first, then answers with `content`."""

    def __init__(self, errors=(), content="hello", delay=0):
        outer = self
        self.errors = list(errors)
        self.calls = []
        self.content = content
        self.delay = delay

        class _Completions:
            @staticmethod
            async def create(**kwargs):
                outer.calls.append(kwargs)
                if outer.delay:
                    await asyncio.sleep(outer.delay)
                if outer.errors:
                    raise outer.errors.pop(0)
                return FakeResp(outer.content)

        class _Chat:
            completions = _Completions

        self.chat = _Chat


@pytest.fixture
def sleeps(monkeypatch):
    delays = []

    async def _sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(llm_client, "sleep", _sleep)
    return delays


MESSAGES = [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_returns_text_and_passes_parameters():
    client = FakeClient(content="  answer  ")
    result = await chat_completion(MESSAGES, purpose="test", temperature=0.3, model="m", client_override=client)
    assert result == "answer"
    assert client.calls[0]["temperature"] == 0.3
    assert client.calls[0]["model"] == "m"


@pytest.mark.asyncio
async def test_retry_after_header_is_honoured(sleeps):
    client = FakeClient(errors=[FakeRateLimit(retry_after="3")])
    result = await chat_completion(MESSAGES, purpose="test", client_override=client)
    assert result == "hello"
    assert sleeps == [3.0]
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_rate_limit_backoff_without_header_is_bounded(sleeps):
    client = FakeClient(errors=[FakeRateLimit() for _ in range(4)])
    result = await chat_completion(MESSAGES, purpose="test", client_override=client, rate_limit_attempts=5)
    assert result == "hello"
    assert len(sleeps) == 4
    for attempt, delay in enumerate(sleeps):
        base = min(0.5 * 2 ** attempt, 8.0)
        assert base <= delay <= base + 0.25


@pytest.mark.asyncio
async def test_rate_limit_exhaustion_raises(sleeps):
    client = FakeClient(errors=[FakeRateLimit() for _ in range(5)])
    with pytest.raises(LLMRateLimitError) as excinfo:
        await chat_completion(MESSAGES, purpose="test", client_override=client, rate_limit_attempts=5)
    assert excinfo.value.attempts == 5
    assert len(client.calls) == 5
    assert len(sleeps) == 4


@pytest.mark.asyncio
async def test_other_errors_propagate_without_retry(sleeps):
    client = FakeClient(errors=[ValueError("bad request")])
    with pytest.raises(ValueError):
        await chat_completion(MESSAGES, purpose="test", client_override=client)
    assert len(client.calls) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_timeout_is_enforced():
    client = FakeClient(delay=1)
    with pytest.raises(asyncio.TimeoutError):
        await chat_completion(MESSAGES, purpose="test", timeout=0.05, client_override=client)


@pytest.mark.asyncio
async def test_empty_content_returns_none():
    assert await chat_completion(MESSAGES, purpose="test", client_override=FakeClient(content="")) is None


@pytest.mark.asyncio
async def test_no_client_configured_returns_none():
    assert await chat_completion(MESSAGES, purpose="test") is None


def test_retry_after_parsing():
    assert retry_after_seconds(FakeRateLimit(retry_after="2.5")) == 2.5
    assert retry_after_seconds(FakeRateLimit()) is None
    assert retry_after_seconds(FakeRateLimit(retry_after="Wed, 21 Oct 2015 07:28:00 GMT")) == 0.0

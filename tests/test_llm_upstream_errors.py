import asyncio

import pytest

import llm_client
from llm_client import chat_completion
from errors import UpstreamError

MESSAGES = [{"role": "user", "content": "<p>Investigating</p>"}]


class FakeMessage:
    def __init__(self, content):
        self.content = content
        self.refusal = None


class FakeChoice:
    def __init__(self, content, finish_reason="stop"):
        self.message = FakeMessage(content)
        self.finish_reason = finish_reason


class FakeResp:
    def __init__(self, choices):
        self.choices = choices


def make_client(create):
    class FakeClient:
        class chat:
            class completions:
                pass

    FakeClient.chat.completions.create = staticmethod(create)
    return FakeClient()


@pytest.mark.asyncio
async def test_returns_message_text():
    seen = {}

    async def create(**kwargs):
        seen.update(kwargs)
        return FakeResp([FakeChoice('  {"status": "resolved"}  ')])

    result = await chat_completion(MESSAGES, purpose="event_summary", temperature=0, client_override=make_client(create))

    assert result == '{"status": "resolved"}'
    assert seen["messages"] == MESSAGES
    assert seen["temperature"] == 0


@pytest.mark.asyncio
async def test_missing_client_is_upstream_error(monkeypatch):
    monkeypatch.setattr(llm_client, "_get_client", lambda: None)
    with pytest.raises(UpstreamError):
        await chat_completion(MESSAGES, purpose="event_summary")


@pytest.mark.asyncio
async def test_no_choices_is_upstream_error():
    async def create(**kwargs):
        return FakeResp([])

    with pytest.raises(UpstreamError):
        await chat_completion(MESSAGES, client_override=make_client(create))


@pytest.mark.asyncio
async def test_empty_content_is_upstream_error():
    async def create(**kwargs):
        return FakeResp([FakeChoice("", finish_reason="stop")])

    with pytest.raises(UpstreamError):
        await chat_completion(MESSAGES, client_override=make_client(create))


@pytest.mark.asyncio
async def test_slow_response_times_out():
    async def create(**kwargs):
        await asyncio.sleep(1)
        return FakeResp([FakeChoice("late")])

    with pytest.raises(UpstreamError) as excinfo:
        await chat_completion(MESSAGES, timeout=0.05, client_override=make_client(create))
    assert "timed out" in str(excinfo.value)


@pytest.mark.asyncio
async def test_single_attempt_by_default():
    calls = []

    async def create(**kwargs):
        calls.append(kwargs)
        raise ConnectionError("connection reset")

    with pytest.raises(UpstreamError):
        await chat_completion(MESSAGES, client_override=make_client(create))
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_retries_when_requested(monkeypatch):
    calls = []

    async def no_sleep(delay):
        return None

    async def create(**kwargs):
        calls.append(kwargs)
        if len(calls) == 1:
            raise ConnectionError("connection reset")
        return FakeResp([FakeChoice("ok")])

    monkeypatch.setattr(llm_client, "sleep", no_sleep)
    result = await chat_completion(MESSAGES, retries=1, client_override=make_client(create))
    assert result == "ok"
    assert len(calls) == 2

import asyncio
import json

import pytest
from asgi_lifespan import LifespanManager

from switchboard.main import chat_stream, sse_format
from switchboard.schemas import ChatRequest
from tests.fakes import FakeProviderClient


def _decode(chunk) -> dict:
    line = chunk.decode("utf-8") if isinstance(chunk, (bytes, bytearray)) else chunk
    return json.loads(line.replace("data:", "", 1).strip())


def test_sse_format_serializes_event():
    line = sse_format({"type": "content", "delta": "hi"})
    assert line.startswith("data: ")
    assert line.endswith("\n\n")
    assert json.loads(line[len("data: ") :]) == {"type": "content", "delta": "hi"}


@pytest.mark.asyncio
async def test_chat_stream_yields_events_in_order(app_factory):
    fake = FakeProviderClient(responses=["Hi there!"])
    app, _, _ = app_factory(fake_lm=fake)
    async with LifespanManager(app):
        response = await chat_stream(ChatRequest(message="hey there"), coordinator=app.state.coordinator)
        assert response.media_type == "text/event-stream"
        events = []
        async for chunk in response.body_iterator:
            events.append(_decode(chunk))
        await app.state.coordinator.drain()

    types = [e["type"] for e in events]
    assert types[:3] == ["thread_created", "routing", "agent_start"]
    assert types[-1] == "done"
    assert events[1]["decision"]["agent"] == "personality"
    assert events[1]["decision"]["source"] == "fallback"
    assert events[-1]["fullContent"] == "Hi there!"
    assert "model" not in types


@pytest.mark.asyncio
async def test_chat_stream_can_be_closed_early(app_factory):
    fake = FakeProviderClient(responses=["Hi there!"], delay_seconds=0.05)
    app, _, _ = app_factory(fake_lm=fake)
    async with LifespanManager(app):
        response = await chat_stream(ChatRequest(message="hey there"), coordinator=app.state.coordinator)
        first = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        assert _decode(first)["type"] == "thread_created"
        await response.body_iterator.aclose()


@pytest.mark.asyncio
async def test_chat_stream_endpoint_over_http(client):
    client.fake_lm.responses.append("Hello from the stream.")
    async with client.stream("POST", "/api/chat/stream", json={"message": "hey there"}) as res:
        assert res.status_code == 200
        assert res.headers["content-type"].startswith("text/event-stream")
        events = [json.loads(line[len("data: ") :]) async for line in res.aiter_lines() if line.startswith("data: ")]
    assert events[-1]["type"] == "done"
    content = "".join(e["delta"] for e in events if e["type"] == "content")
    assert content == "Hello from the stream."

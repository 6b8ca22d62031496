import pytest

from switchboard.llm import ProviderError
from tests.fakes import FakeHomeClient, FakeProviderClient, FakeWeatherClient


@pytest.mark.asyncio
async def test_chat_returns_response_and_persists_thread(client):
    client.fake_lm.responses.append("Hi! What can I do for you?")
    res = await client.post("/api/chat", json={"message": "hey there", "user_id": "u1"})
    assert res.status_code == 200
    body = res.json()
    assert body["content"] == "Hi! What can I do for you?"
    assert body["agent"] == "personality"
    assert body["routing"]["source"] == "fallback"
    assert body["provider"] == "xai"
    thread_id = body["thread_id"]

    res = await client.get(f"/api/threads/{thread_id}/messages")
    assert res.status_code == 200
    messages = res.json()["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[1]["metadata"]["routing"]["agent"] == "personality"

    res = await client.get("/api/threads?user_id=u1")
    assert [t["id"] for t in res.json()["threads"]] == [thread_id]

    res = await client.get(f"/api/threads/{thread_id}/routing")
    assert res.json()["routing"][0]["agent"] == "personality"


@pytest.mark.asyncio
async def test_chat_provider_failure_returns_502(client):
    client.fake_lm.responses.append(ProviderError("xai returned 500", 500))
    res = await client.post("/api/chat", json={"message": "hey there"})
    assert res.status_code == 502
    assert "xai returned 500" in res.json()["detail"]


@pytest.mark.asyncio
async def test_chat_rejects_unknown_forced_agent(client):
    res = await client.post("/api/chat", json={"message": "hi", "force_agent": "plumber"})
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_thread_create_and_lookup(client):
    res = await client.post("/api/threads", json={"user_id": "u2", "title": "Trip planning"})
    assert res.status_code == 200
    thread = res.json()
    assert thread["title"] == "Trip planning"

    res = await client.get(f"/api/threads/{thread['id']}")
    assert res.json()["user_id"] == "u2"
    assert (await client.get("/api/threads/missing")).status_code == 404
    assert (await client.get("/api/threads/missing/messages")).status_code == 404
    assert (await client.get("/api/threads/missing/routing")).status_code == 404


@pytest.mark.asyncio
async def test_explicit_feedback_shows_up_in_metrics(client):
    client.fake_lm.responses.append("Hi!")
    chat = (await client.post("/api/chat", json={"message": "hey there"})).json()
    await client.app.state.coordinator.drain()
    messages = (await client.get(f"/api/threads/{chat['thread_id']}/messages")).json()["messages"]

    res = await client.post(
        "/api/routing/feedback",
        json={"message_id": str(messages[-1]["id"]), "agent": "personality", "signal": "positive"},
    )
    assert res.status_code == 200
    assert res.json()["feedback"]["type"] == "explicit"

    res = await client.get("/api/agents/personality/metrics")
    assert res.status_code == 200
    metrics = res.json()["metrics"]
    assert metrics["response_count"] == 1
    assert metrics["positive_feedback"] == 1


@pytest.mark.asyncio
async def test_agent_metrics_and_models_reject_unknown_agents(client):
    assert (await client.get("/api/agents/plumber/metrics")).status_code == 404
    assert (await client.get("/api/agents/plumber/models")).status_code == 404
    res = await client.get("/api/agents/finance/metrics?days=7")
    assert res.json() == {"agent": "finance", "metrics": None}


@pytest.mark.asyncio
async def test_agent_models_lists_chain(client):
    res = await client.get("/api/agents/coder/models")
    assert res.status_code == 200
    body = res.json()
    assert body["selected"]["provider"] == "anthropic"
    assert body["chain"][0] == body["selected"]
    assert all("api_key" not in item for item in body["chain"])
    assert len(body["available"]) >= 1


@pytest.mark.asyncio
async def test_health_reports_agents_and_tools(app_factory):
    from asgi_lifespan import LifespanManager
    from httpx import ASGITransport, AsyncClient

    app, _, _ = app_factory(
        fake_lm=FakeProviderClient(),
        fake_home=FakeHomeClient(enabled=False),
        fake_weather=FakeWeatherClient(enabled=True),
        response_cache_enabled=True,
        anthropic_api_key=None,
    )
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
            res = await http.get("/api/health")
    body = res.json()
    assert body["ok"] is True
    assert body["tools"] == {"weather": True, "home_assistant": False}
    assert body["response_cache"]["hits"] == 0
    assert body["agents"]["personality"]["available"] is True


@pytest.mark.asyncio
async def test_documents_feed_prompt_context(client):
    assert (await client.post("/api/documents", json={"title": "Empty", "content": "  "})).status_code == 400
    res = await client.post(
        "/api/documents",
        json={"title": "Lease", "content": "The apartment lease renews every June with a 3% increase."},
    )
    assert res.status_code == 200
    assert isinstance(res.json()["id"], int)

    client.fake_lm.responses.append("It renews in June.")
    await client.post("/api/chat", json={"message": "when does my lease renew"})
    system_prompt = client.fake_lm.calls[-1]["messages"][0]["content"]
    assert "renews every June" in system_prompt

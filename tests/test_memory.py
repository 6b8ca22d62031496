import pytest

from switchboard.db import Database
from switchboard.memory import MAX_MEMORIES_PER_TURN, MemoryExtractor, parse_memories
from switchboard.model_resolver import ModelResolver
from tests.fakes import FakeProviderClient


def test_parse_memories_normalizes_items():
    text = (
        "Sure, here you go:\n"
        '{"memories": ['
        '{"type": "Preference", "content": " Likes jazz ", "importance": 3},'
        '{"type": "hobby", "content": "Runs marathons", "importance": "high"},'
        '{"type": "fact", "content": ""},'
        '"junk"'
        "]}"
    )
    assert parse_memories(text) == [
        {"type": "preference", "content": "Likes jazz", "importance": 1.0},
        {"type": "fact", "content": "Runs marathons", "importance": 0.5},
    ]


def test_parse_memories_handles_bad_output():
    assert parse_memories("no json here") == []
    assert parse_memories("{not json}") == []
    assert parse_memories('{"other": []}') == []
    many = '{"memories": [' + ",".join('{"content": "m%d"}' % i for i in range(8)) + "]}"
    assert len(parse_memories(many)) == MAX_MEMORIES_PER_TURN


@pytest.mark.asyncio
async def test_extractor_stores_memories(tmp_path):
    db = Database(str(tmp_path / "memory.db"))
    await db.init()
    fake = FakeProviderClient(
        memory_response='{"memories": [{"type": "goal", "content": "Training for a half marathon", "importance": 0.9}]}'
    )
    extractor = MemoryExtractor(fake, ModelResolver({"openai": "sk-test"}), db)
    stored = await extractor.extract("u1", "t1", "I'm training for a half marathon in May", "Great goal!")
    assert stored == 1
    items = await db.list_memories("u1")
    assert items[0]["content"] == "Training for a half marathon"
    assert items[0]["memory_type"] == "goal"
    assert fake.memory_calls[0]["max_tokens"] == 300


@pytest.mark.asyncio
async def test_extractor_skips_short_messages_and_missing_keys(tmp_path):
    db = Database(str(tmp_path / "memory.db"))
    await db.init()
    fake = FakeProviderClient()
    assert await MemoryExtractor(fake, ModelResolver({"openai": "sk-test"}), db).extract("u1", "t1", "ok", "ok") == 0
    no_keys = MemoryExtractor(fake, ModelResolver({}), db)
    assert await no_keys.extract("u1", "t1", "I live in Lisbon these days", "Nice") == 0
    assert fake.memory_calls == []


@pytest.mark.asyncio
async def test_memory_crud(client):
    res = await client.post(
        "/api/memory",
        json={"user_id": "u1", "memory_type": "preference", "content": "Prefers window seats", "importance": 0.7},
    )
    assert res.status_code == 200
    mem_id = res.json()["id"]

    res = await client.get("/api/memory?user_id=u1")
    assert res.status_code == 200
    assert mem_id in {item["id"] for item in res.json()["items"]}

    assert (await client.post("/api/memory", json={"content": "   "})).status_code == 400
    assert (await client.delete(f"/api/memory/{mem_id}?user_id=someone-else")).status_code == 404

    res = await client.delete(f"/api/memory/{mem_id}?user_id=u1")
    assert res.status_code == 200

    res = await client.get("/api/memory?user_id=u1")
    assert mem_id not in {item["id"] for item in res.json()["items"]}

from datetime import datetime, timedelta, timezone

import pytest

from switchboard.db import Database
from switchboard.topic_tracker import (
    TopicContext,
    TopicTracker,
    check_switch_back_suggestion,
    detect_topic_switch,
    extract_keywords,
    update_topic_context,
)

T0 = datetime(2025, 3, 4, 15, 0, tzinfo=timezone.utc)


def _finance_then_weather():
    ctx = update_topic_context(None, "finance", "What is my grocery budget for March", T0)
    ctx = update_topic_context(ctx, "finance", "How much did I spend on restaurants", T0 + timedelta(minutes=1))
    ctx = update_topic_context(ctx, "researcher", "what's today's weather", T0 + timedelta(minutes=2))
    return ctx


def test_extract_keywords_drops_stopwords_and_sorts_by_length():
    assert extract_keywords("What is my budget for groceries this month") == ["groceries", "budget", "month"]
    assert extract_keywords("hi!") == []
    assert len(extract_keywords("alpha bravo charlie delta echoes foxtrot golf")) == 5


def test_detect_topic_switch_cases():
    assert not detect_topic_switch("anything", None).is_switch
    ctx = TopicContext(last_agent="finance", topic_keywords=["groceries", "budget"], topic_continuity=2)

    cont = detect_topic_switch("groceries budget again", ctx)
    assert not cont.is_switch
    assert cont.suggested_agent == "finance"

    explicit = detect_topic_switch("by the way, groceries budget", ctx)
    assert explicit.is_switch and explicit.explicit
    assert explicit.confidence == pytest.approx(0.8)

    unrelated = detect_topic_switch("what's the capital of peru", ctx)
    assert unrelated.is_switch and not unrelated.explicit

    ambiguous = detect_topic_switch("groceries and tacos and burritos and salsa and chips", ctx)
    assert not ambiguous.is_switch
    assert ambiguous.reason.startswith("Ambiguous")


def test_update_tracks_continuity_and_recent_agents():
    ctx = update_topic_context(None, "finance", "What is my grocery budget", T0)
    assert ctx.topic_continuity == 1
    assert ctx.recent_agents == ["finance"]
    assert ctx.current_topic.startswith("finances/money")
    ctx = update_topic_context(ctx, "finance", "and restaurants", T0)
    assert ctx.topic_continuity == 2
    assert ctx.recent_agents == ["finance", "finance"]
    for agent in ("coder", "home", "secretary", "researcher"):
        ctx = update_topic_context(ctx, agent, "something else entirely", T0)
    assert len(ctx.recent_agents) == 5
    assert ctx.recent_agents[0] == "researcher"


def test_switch_records_interrupted_task():
    ctx = _finance_then_weather()
    task = ctx.interrupted_task
    assert task is not None
    assert task.agent == "finance"
    assert task.message_count == 2
    assert task.last_user_message == "How much did I spend on restaurants"
    assert ctx.last_agent == "researcher"
    assert ctx.topic_continuity == 1


def test_single_turn_topic_is_not_recorded_as_interrupted():
    ctx = update_topic_context(None, "finance", "What is my grocery budget", T0)
    ctx = update_topic_context(ctx, "researcher", "what's today's weather", T0)
    assert ctx.interrupted_task is None


def test_switch_back_requires_two_turns_on_tangent_and_window():
    ctx = _finance_then_weather()
    assert check_switch_back_suggestion(ctx, "researcher", T0 + timedelta(minutes=3)) is None

    ctx = update_topic_context(ctx, "researcher", "will it rain tomorrow", T0 + timedelta(minutes=3))
    suggestion = check_switch_back_suggestion(ctx, "researcher", T0 + timedelta(minutes=12))
    assert suggestion is not None
    assert suggestion.agent == "finance"
    assert suggestion.prompt == "Would you like to continue with finances?"
    assert suggestion.minutes_ago == 10

    assert check_switch_back_suggestion(ctx, "researcher", T0 + timedelta(minutes=40)) is None
    assert check_switch_back_suggestion(ctx, "finance", T0 + timedelta(minutes=5)) is None


def test_returning_to_interrupted_agent_clears_task():
    ctx = _finance_then_weather()
    ctx = update_topic_context(ctx, "finance", "back to my budget", T0 + timedelta(minutes=4))
    assert ctx.interrupted_task is None


def test_round_trip_through_dict():
    ctx = _finance_then_weather()
    assert TopicContext.from_dict(ctx.to_dict()) == ctx
    assert TopicContext.from_dict(None) is None


@pytest.mark.asyncio
async def test_tracker_persists_and_resolves_version_conflict(tmp_path):
    db = Database(str(tmp_path / "topics.db"))
    await db.init()
    thread = await db.create_thread("u1")
    tracker = TopicTracker(db, clock=lambda: T0)

    routing = await tracker.get_routing_context(None, "hello")
    assert routing.topic_context is None
    assert routing.topic_switch.reason == "New thread"

    routing = await tracker.get_routing_context(thread["id"], "What is my grocery budget")
    assert routing.version == 0
    await tracker.update(thread["id"], "finance", "What is my grocery budget", routing.topic_context, routing.version)

    stale = await tracker.get_routing_context(thread["id"], "and restaurants")
    fresh = await tracker.get_routing_context(thread["id"], "and groceries")
    await tracker.update(thread["id"], "finance", "and groceries", fresh.topic_context, fresh.version)
    # The stale writer loses the compare-and-swap and re-applies on top of the winner.
    await tracker.update(thread["id"], "finance", "and restaurants", stale.topic_context, stale.version)

    ctx, version = await tracker.load(thread["id"])
    assert version == 3
    assert ctx.topic_continuity == 3
    assert ctx.recent_agents == ["finance", "finance", "finance"]

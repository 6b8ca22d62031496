import pytest

from switchboard.db import Database
from switchboard.quality import FeedbackSignal, FeedbackTracker, QualityScorer, _trend

GOOD_ANSWER = (
    "To reset your router, follow these steps:\n"
    "- Unplug the router for thirty seconds.\n"
    "- Plug it back in and wait for the lights to settle.\n"
    "- Open the admin page at http://192.168.1.1 and run the setup wizard again.\n"
    "This clearly fixes most connection drops, for example after a firmware update."
)


def test_score_rewards_structured_actionable_answers():
    scorer = QualityScorer()
    good = scorer.score(GOOD_ANSWER, "How do I reset my router?")
    bad = scorer.score("Maybe. I think perhaps not sure", "How do I reset my router?")
    assert good.overall > bad.overall
    assert good.flags["is_structured"]
    assert good.flags["is_actionable"]
    assert good.flags["contains_citations"]
    assert not good.flags["contains_code"]
    assert set(good.dimensions) == {"relevance", "completeness", "clarity", "accuracy", "helpfulness"}
    assert 0.0 <= bad.overall <= 1.0


def test_hedging_is_counted_per_occurrence():
    scorer = QualityScorer()
    once = scorer.score_clarity("Maybe it works.")
    thrice = scorer.score_clarity("Maybe it works. Perhaps. I think so.")
    assert thrice == pytest.approx(once - 0.1)


def test_refusal_lowers_helpfulness():
    scorer = QualityScorer()
    assert scorer.score_helpfulness("I can't do that.") < scorer.score_helpfulness("Sure, here you go.")


def test_relevance_without_long_query_words_is_neutral():
    assert QualityScorer().score_relevance("anything", "hi you") == 0.5


def test_detect_implicit_feedback():
    scorer = QualityScorer()
    regen = scorer.detect_implicit_feedback("try again please", "old answer", 5000)
    assert (regen.signal, regen.source) == ("negative", "regenerate")
    follow = scorer.detect_implicit_feedback("and what about Tuesday?", "old answer", 5000)
    assert (follow.signal, follow.source) == ("neutral", "followup")
    assert scorer.detect_implicit_feedback("what about Tuesday?", "old", 120000) is None
    thanks = scorer.detect_implicit_feedback("perfect, thanks", "old answer", 5000)
    assert (thanks.signal, thanks.source) == ("positive", "sentiment")
    wrong = scorer.detect_implicit_feedback("that's wrong", "old answer", 5000)
    assert (wrong.signal, wrong.source) == ("negative", "sentiment")
    assert scorer.detect_implicit_feedback("ok cool", "old answer", 5000) is None


def test_feedback_adjusts_score_and_cache_threshold():
    scorer = QualityScorer()
    score = scorer.score(GOOD_ANSWER, "How do I reset my router?")
    up = scorer.adjust_score_with_feedback(score, FeedbackSignal("explicit", "positive", "thumbs", 1.0))
    down = scorer.adjust_score_with_feedback(score, FeedbackSignal("implicit", "negative", "regenerate", 1.0))
    assert up.overall == pytest.approx(min(1.0, score.overall + 0.1))
    assert down.overall == pytest.approx(score.overall - 0.15)
    assert score.overall == scorer.score(GOOD_ANSWER, "How do I reset my router?").overall
    assert scorer.is_worth_caching(up) == (up.overall >= 0.7)


def test_trend():
    assert _trend([0.5, 0.5, 0.8, 0.8]) == "improving"
    assert _trend([0.9, 0.9, 0.6, 0.6]) == "declining"
    assert _trend([0.7, 0.71, 0.7, 0.71]) == "stable"


@pytest.mark.asyncio
async def test_tracker_metrics_from_storage(tmp_path):
    db = Database(str(tmp_path / "quality.db"))
    await db.init()
    tracker = FeedbackTracker(db)
    assert await tracker.get_agent_metrics("coder") is None

    await tracker.record_quality("u1", "t1", "1", "coder", "How do I reset my router?", GOOD_ANSWER, 1200)
    await tracker.record_quality("u1", "t1", "2", "coder", "and then?", "Done.", 800)
    await tracker.record_feedback("u1", "1", FeedbackSignal("explicit", "positive", "thumbs", 1.0), agent="coder")
    await tracker.record_feedback("u1", "2", FeedbackSignal("implicit", "negative", "regenerate", 0.7), agent="coder")

    metrics = await tracker.get_agent_metrics("coder")
    assert metrics["agent"] == "coder"
    assert metrics["response_count"] == 2
    assert metrics["positive_feedback"] == 1
    assert metrics["negative_feedback"] == 1
    assert metrics["regeneration_rate"] == pytest.approx(0.5)
    assert metrics["avg_latency"] == pytest.approx(1000)
    assert await tracker.get_agent_metrics("finance") is None

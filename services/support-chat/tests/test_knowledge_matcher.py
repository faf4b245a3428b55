"""
Tests for knowledge matching and ranking
"""
from datetime import datetime, timedelta

import pytest

from app.core.exceptions import InvalidInputError
from app.services.knowledge_matcher import KnowledgeMatcher, score_entry
from app.services.knowledge_store import KnowledgeStore
from app.services.text_normalizer import extract_keywords, normalize_text


def test_coin_purchase_example_scores_720(db_session, make_entry):
    """Containment 500 + 2 x 85 success rate + 10 x priority 5"""
    entry = make_entry("coins kaufen", keywords=["coins", "kaufen"], success=17, failure=3, priority=5)

    matches = KnowledgeMatcher(db_session).match("Ich kann keine Coins kaufen")

    assert len(matches) == 1
    top, score = matches[0]
    assert top.id == entry.id
    assert top.success_rate == 85.0
    assert score == 720


def test_exact_match_scores_1000(db_session, make_entry):
    entry = make_entry("Wie kaufe ich Coins?")
    query = "wie kaufe ich coins"
    assert score_entry(entry, normalize_text(query), extract_keywords(query)) == 1000


def test_keyword_overlap_scores_per_keyword(db_session, make_entry):
    entry = make_entry("auszahlung beantragen", keywords=["auszahlung", "beantragen"])
    query = "Wie funktioniert die Auszahlung meiner Tickets?"

    assert score_entry(entry, normalize_text(query), extract_keywords(query)) == 50


def test_keywords_ignore_short_tokens():
    assert extract_keywords("Wo ist mein Geld?") == ["mein", "geld"]
    assert normalize_text("  Hallo, Welt?! ") == "hallo welt"


def test_zero_score_entries_are_excluded(db_session, make_entry):
    make_entry("passwort vergessen", keywords=["passwort", "vergessen"])

    assert KnowledgeMatcher(db_session).match("Event erstellen") == []


def test_inactive_entries_are_ignored(db_session, make_entry):
    make_entry("coins kaufen", success=9, failure=1, is_active=False)

    assert KnowledgeMatcher(db_session).match("coins kaufen") == []


def test_exact_match_ranks_above_containment(db_session, make_entry):
    contained = make_entry("coins", success=9, failure=1)
    exact = make_entry("coins kaufen", success=9, failure=1)

    matches = KnowledgeMatcher(db_session).match("Coins kaufen!")

    assert [e.id for e, _ in matches] == [exact.id, contained.id]


def test_equal_scores_break_ties_by_priority(db_session, make_entry):
    # 500 + 2 x 5.0 + 0 == 500 + 0 + 10 x 1
    by_rate = make_entry("coins kaufen", success=1, failure=19, priority=0)
    by_priority = make_entry("coins kaufen heute", priority=1)

    matches = KnowledgeMatcher(db_session).match("coins kaufen heute bitte")

    assert matches[0][1] == matches[1][1] == 510
    assert [e.id for e, _ in matches] == [by_priority.id, by_rate.id]


def test_equal_scores_and_priority_prefer_recently_used(db_session, make_entry):
    now = datetime.utcnow()
    never_used = make_entry("ticket stornieren")
    used_long_ago = make_entry("ticket stornieren bitte", last_used_at=now - timedelta(days=30))
    used_recently = make_entry("bitte ticket stornieren", last_used_at=now - timedelta(minutes=5))

    matches = KnowledgeMatcher(db_session).match("ticket")

    assert [e.id for e, _ in matches] == [used_recently.id, used_long_ago.id, never_used.id]


def test_match_respects_limit(db_session, make_entry):
    for i in range(8):
        make_entry(f"coins kaufen variante {i}", success=5, failure=5)

    assert len(KnowledgeMatcher(db_session).match("coins kaufen", limit=3)) == 3
    assert len(KnowledgeMatcher(db_session).match("coins kaufen")) == 5


def test_match_is_deterministic(db_session, make_entry):
    for i in range(6):
        make_entry(f"coins kaufen {i}", success=i, failure=6 - i, priority=i % 2)
    make_entry("coins", success=3, failure=3)

    matcher = KnowledgeMatcher(db_session)
    first = [(e.id, s) for e, s in matcher.match("coins kaufen", limit=10)]
    second = [(e.id, s) for e, s in matcher.match("coins kaufen", limit=10)]

    assert first == second
    scores = [s for _, s in first]
    assert scores == sorted(scores, reverse=True)


def test_match_sees_entries_added_after_previous_match(db_session, make_entry):
    matcher = KnowledgeMatcher(db_session)
    assert matcher.match("coins kaufen") == []

    entry = make_entry("coins kaufen", success=9, failure=1)

    assert matcher.match("coins kaufen")[0][0].id == entry.id


def test_pattern_without_text_is_never_an_exact_match(db_session, make_entry):
    entry = make_entry("?!", keywords=[])

    assert score_entry(entry, normalize_text("..."), extract_keywords("...")) == 0
    assert KnowledgeMatcher(db_session).match("?!") == []


def test_store_rejects_patterns_without_matchable_text(db_session):
    store = KnowledgeStore(db_session)

    with pytest.raises(InvalidInputError):
        store.create_entry("?!", "Some answer")

    entry = store.create_entry("Wie kaufe ich Coins?", "Open the shop tab.")
    with pytest.raises(InvalidInputError):
        store.update_entry(entry.id, pattern=" ?? ")

    db_session.refresh(entry)
    assert entry.pattern == "Wie kaufe ich Coins?"
    assert entry.version == 1

"""
Unit tests for the Matcher.

Covers keyword combination rules, whole-word/regex/case options, the scan
window, vector thresholds, degraded mode and malformed settings.
"""

import random

import pytest
from langchain_core.messages import SystemMessage

from lorekeeper.domain.models.entry import ActivationMode, ActivationSettings, Filtering, KeywordsLogic
from lorekeeper.domain.models.activation import ActivationMethod, BotProfile, VectorHit
from lorekeeper.domain.context.matcher import Matcher, rank_vector_hits
from factories import bot_says, make_entry, make_turn


@pytest.fixture
def matcher():
    return Matcher(random.Random(1))


class TestKeywordMatching:
    """Keyword mode against the scanned messages."""

    def test_case_insensitive_substring_by_default(self, matcher):
        entry = make_entry("dragon", keys=["Dragon"])
        result = matcher.match(entry, make_turn(0, "the DRAGONS sleep"))
        assert result.matched is True
        assert result.method == ActivationMethod.KEYWORD
        assert result.matched_keywords == ["Dragon"]

    def test_case_sensitive(self, matcher):
        settings = ActivationSettings(primary_keys=["Dragon"], case_sensitive=True)
        entry = make_entry("dragon", activation=settings)
        assert matcher.match(entry, make_turn(0, "a dragon")).matched is False
        assert matcher.match(entry, make_turn(0, "a Dragon")).matched is True

    def test_whole_words(self, matcher):
        settings = ActivationSettings(primary_keys=["cat"], match_whole_words=True)
        entry = make_entry("cat", activation=settings)
        assert matcher.match(entry, make_turn(0, "concatenate")).matched is False
        assert matcher.match(entry, make_turn(0, "the cat, again")).matched is True

    def test_regex_keys(self, matcher):
        settings = ActivationSettings(primary_keys=[r"drag(on|ons)\b"], use_regex=True)
        entry = make_entry("dragon", activation=settings)
        assert matcher.match(entry, make_turn(0, "dragons fly")).matched is True
        assert matcher.match(entry, make_turn(0, "dragging")).matched is False

    def test_invalid_regex_never_matches(self, matcher):
        settings = ActivationSettings(primary_keys=["drag(on"], use_regex=True)
        entry = make_entry("dragon", activation=settings)
        assert matcher.match(entry, make_turn(0, "drag(on")).matched is False

    def test_entry_without_keys_never_matches(self, matcher):
        entry = make_entry("empty", keys=[])
        assert matcher.match(entry, make_turn(0, "anything")).matched is False

    def test_blank_keys_are_dropped(self):
        settings = ActivationSettings(primary_keys=["", "  ", "dragon"])
        assert settings.primary_keys == ["dragon"]


class TestKeywordLogic:
    """The four combination rules over primary and secondary keys."""

    def _settings(self, logic):
        return ActivationSettings(primary_keys=["castle", "king"], secondary_keys=["sword", "crown"], keywords_logic=logic)

    def test_and_any(self, matcher):
        settings = self._settings(KeywordsLogic.AND_ANY)
        assert matcher.match_keywords(settings, "castle king crown")[2] is True
        assert matcher.match_keywords(settings, "castle king")[2] is False
        assert matcher.match_keywords(settings, "castle crown")[2] is False

    def test_and_any_without_secondary_keys(self, matcher):
        settings = ActivationSettings(primary_keys=["castle"], keywords_logic=KeywordsLogic.AND_ANY)
        assert matcher.match_keywords(settings, "the castle")[2] is True

    def test_and_all(self, matcher):
        settings = self._settings(KeywordsLogic.AND_ALL)
        assert matcher.match_keywords(settings, "castle king sword crown")[2] is True
        assert matcher.match_keywords(settings, "castle king sword")[2] is False

    def test_not_all(self, matcher):
        settings = self._settings(KeywordsLogic.NOT_ALL)
        assert matcher.match_keywords(settings, "castle king sword")[2] is True
        assert matcher.match_keywords(settings, "castle king sword crown")[2] is False

    def test_not_any(self, matcher):
        settings = self._settings(KeywordsLogic.NOT_ANY)
        assert matcher.match_keywords(settings, "a quiet field")[2] is True
        assert matcher.match_keywords(settings, "a quiet castle")[2] is False

    def test_primary_and_secondary_reported_separately(self, matcher):
        settings = self._settings(KeywordsLogic.AND_ANY)
        primary, secondary, _ = matcher.match_keywords(settings, "castle king sword")
        assert primary == ["castle", "king"]
        assert secondary == ["sword"]


class TestScanWindow:
    """Which text the keyword scan sees."""

    def test_scan_depth_limits_history(self, matcher):
        entry = make_entry("dragon", keys=["dragon"])
        history = [make_turn(0, "a dragon appears").messages[-1], bot_says("it flies away")]
        turn = make_turn(2, "what now?", history=history)
        # Default scan depth of 2 sees the bot reply and the current message only
        assert matcher.match(entry, turn).matched is False

    def test_bot_messages_can_be_excluded(self, matcher):
        settings = ActivationSettings(primary_keys=["dragon"], match_in_bot_messages=False)
        entry = make_entry("dragon", activation=settings)
        turn = make_turn(1, "and then?", history=[bot_says("the dragon roars")])
        assert matcher.match(entry, turn).matched is False

    def test_system_messages_skipped_by_default(self, matcher):
        entry = make_entry("dragon", keys=["dragon"])
        turn = make_turn(1, "hello", history=[SystemMessage(content="dragon lore")])
        assert matcher.match(entry, turn).matched is False

    def test_bot_description_scanned_when_opted_in(self, matcher):
        entry = make_entry(
            "dragon",
            keys=["dragon"],
            filtering=Filtering(match_bot_description=True),
        )
        turn = make_turn(0, "hello", bot=BotProfile(id="bot-1", description="A dragon rider"))
        assert matcher.match(entry, turn).matched is True


class TestVectorMatching:
    """Similarity thresholds, result caps and degradation."""

    def test_vector_hit_above_threshold(self, matcher):
        entry = make_entry("vec", mode=ActivationMode.VECTOR)
        hits = {"vec": VectorHit(entry_id="vec", similarity=0.8, rank=0)}
        result = matcher.match(entry, make_turn(0, "anything"), hits)
        assert result.matched is True
        assert result.method == ActivationMethod.VECTOR
        assert result.similarity == 0.8

    def test_vector_hit_below_threshold(self, matcher):
        entry = make_entry("vec", mode=ActivationMode.VECTOR)
        hits = {"vec": VectorHit(entry_id="vec", similarity=0.3, rank=0)}
        assert matcher.match(entry, make_turn(0, "anything"), hits).matched is False

    def test_vector_hit_outside_result_cap(self, matcher):
        settings = ActivationSettings(mode=ActivationMode.VECTOR, max_vector_results=2)
        entry = make_entry("vec", activation=settings)
        hits = {"vec": VectorHit(entry_id="vec", similarity=0.9, rank=2)}
        assert matcher.match(entry, make_turn(0, "anything"), hits).matched is False

    def test_hybrid_with_both_signals(self, matcher):
        settings = ActivationSettings(mode=ActivationMode.HYBRID, primary_keys=["dragon"])
        entry = make_entry("hyb", activation=settings)
        hits = {"hyb": VectorHit(entry_id="hyb", similarity=0.7, rank=0)}
        result = matcher.match(entry, make_turn(0, "dragon"), hits)
        assert result.method == ActivationMethod.HYBRID

    def test_degraded_hybrid_falls_back_to_keywords(self, matcher):
        settings = ActivationSettings(mode=ActivationMode.HYBRID, primary_keys=["dragon"])
        entry = make_entry("hyb", activation=settings)
        hits = {"hyb": VectorHit(entry_id="hyb", similarity=0.9, rank=0)}
        result = matcher.match(entry, make_turn(0, "dragon"), hits, degraded=True)
        assert result.method == ActivationMethod.KEYWORD
        assert result.similarity is None
        assert result.degraded is True

    def test_degraded_vector_entry_does_not_match(self, matcher):
        entry = make_entry("vec", mode=ActivationMode.VECTOR)
        hits = {"vec": VectorHit(entry_id="vec", similarity=0.9, rank=0)}
        assert matcher.match(entry, make_turn(0, "anything"), hits, degraded=True).matched is False

    def test_rank_vector_hits_orders_and_clamps(self):
        hits = rank_vector_hits([("b", 0.5), ("a", 0.5), ("c", 1.2), ("a", 0.1)])
        assert [(h.entry_id, h.rank) for h in hits.values()] == [("c", 0), ("a", 1), ("b", 2)]
        assert hits["c"].similarity == 1.0
        assert hits["a"].similarity == 0.5


class TestModes:
    """Constant, disabled and missing settings."""

    def test_constant_always_matches(self, matcher):
        entry = make_entry("always", mode=ActivationMode.CONSTANT)
        result = matcher.match(entry, make_turn(0, "unrelated"))
        assert result.matched is True
        assert result.method == ActivationMethod.CONSTANT

    def test_disabled_never_matches(self, matcher):
        settings = ActivationSettings(mode=ActivationMode.DISABLED, primary_keys=["dragon"])
        entry = make_entry("off", activation=settings)
        assert matcher.match(entry, make_turn(0, "dragon")).matched is False

    def test_missing_settings_treated_as_keyword_without_keys(self, matcher):
        entry = make_entry("broken").model_copy(update={"activation": None})
        result = matcher.match(entry, make_turn(0, "broken"))
        assert result.matched is False


class TestProbability:
    def test_full_probability_always_fires(self, matcher):
        settings = ActivationSettings(use_probability=True, probability=100)
        assert all(matcher.roll_probability(settings) for _ in range(20))

    def test_zero_probability_never_fires(self, matcher):
        settings = ActivationSettings(use_probability=True, probability=0)
        assert not any(matcher.roll_probability(settings) for _ in range(20))

    def test_probability_ignored_when_disabled(self, matcher):
        settings = ActivationSettings(use_probability=False, probability=0)
        assert matcher.roll_probability(settings) is True

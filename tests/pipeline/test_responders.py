"""Tests for ResponderSelector."""

import random
from collections import Counter

import pytest

from chorus.models import ConversationMessage
from chorus.pipeline.responders import ResponderSelector

CAST = ["freud", "jung", "socrates"]


def _said(*speakers):
    history = [ConversationMessage(role="user", content="Hello")]
    history += [ConversationMessage(role="assistant", content="...", character_id=s) for s in speakers]
    return history


class TestSelect:
    def test_empty_selection_raises(self):
        with pytest.raises(ValueError):
            ResponderSelector().select([], [])

    def test_single_character_always_answers(self):
        selector = ResponderSelector(random.Random(0))
        for history in ([], _said("jung", "jung", "jung")):
            assert selector.select(["jung"], history) == ["jung"]

    def test_first_message_gets_one_responder(self):
        selector = ResponderSelector(random.Random(7))
        for _ in range(50):
            picked = selector.select(CAST, [ConversationMessage(role="user", content="Hi")])
            assert len(picked) == 1
            assert picked[0] in CAST

    def test_result_is_subset_within_limit(self):
        selector = ResponderSelector(random.Random(3))
        for _ in range(200):
            picked = selector.select(CAST, _said("freud", "jung"), max_responders=2)
            assert 1 <= len(picked) <= 2
            assert set(picked) <= set(CAST)
            assert len(set(picked)) == len(picked)

    def test_five_characters_bounds_over_many_calls(self):
        five = ["freud", "jung", "socrates", "adler", "nietzsche"]
        selector = ResponderSelector(random.Random(11))
        histories = [_said("freud"), _said("jung", "adler"), _said("socrates", "freud", "jung", "adler")]
        for i in range(1000):
            picked = selector.select(five, histories[i % len(histories)])
            assert 1 <= len(picked) <= 3
            assert set(picked) <= set(five)
            assert len(set(picked)) == len(picked)

    def test_never_empty_when_nobody_rolls(self):
        selector = ResponderSelector(random.Random(0), chances={
            "continuation": 0.0, "interruption": 0.0, "reaction": 0.0,
        })
        picked = selector.select(CAST, _said("freud", "jung"))
        assert picked == ["socrates"]

    def test_forced_pick_falls_back_to_anyone(self):
        selector = ResponderSelector(random.Random(0), chances={
            "continuation": 0.0, "interruption": 0.0, "reaction": 0.0,
        })
        picked = selector.select(["freud", "jung"], _said("freud", "jung"))
        assert len(picked) == 1

    def test_everyone_rolls_is_capped(self):
        selector = ResponderSelector(random.Random(0), chances={
            "continuation": 1.0, "interruption": 1.0, "reaction": 1.0,
        })
        assert selector.select(CAST + ["adler"], _said("freud", "jung")) == CAST

    def test_last_speaker_defaults_to_history(self):
        selector = ResponderSelector(random.Random(0), chances={
            "continuation": 0.0, "interruption": 1.0, "reaction": 1.0,
        })
        assert selector.select(CAST, _said("freud", "jung")) == ["freud", "socrates"]

    def test_explicit_last_speaker(self):
        selector = ResponderSelector(random.Random(0), chances={
            "continuation": 0.0, "interruption": 1.0, "reaction": 1.0,
        })
        assert selector.select(CAST, _said("freud", "jung"), last_speaker="socrates") == ["freud", "jung"]


class TestDistribution:
    TRIALS = 4000

    def _rate(self, selector, history, cid):
        counts = Counter()
        for _ in range(self.TRIALS):
            counts.update(selector.select(CAST, history))
        return counts[cid] / self.TRIALS

    def test_continuation_is_rare(self):
        # jung spoke last; socrates is the quiet one the fallback favours
        rate = self._rate(ResponderSelector(random.Random(11)), _said("freud", "jung"), "jung")
        assert rate < 0.2

    def test_established_conversation_uses_interruption_chance(self):
        rate = self._rate(ResponderSelector(random.Random(12)), _said("freud", "jung"), "freud")
        assert 0.22 < rate < 0.38

    def test_early_conversation_uses_reaction_chance(self):
        # 0.5 own roll plus half of the 0.225 "nobody rolled" forced picks
        rate = self._rate(ResponderSelector(random.Random(13)), _said("jung"), "freud")
        assert 0.55 < rate < 0.67

"""Tests for the Claude relevance provider, using a stub client."""

from types import SimpleNamespace

import pytest

from notelink.errors import ConfigurationError, TransientError, classify_api_error
from notelink.providers import AnthropicRelevanceProvider, ScoringPair, TaggingNote
from notelink.providers.llm import _parse_json_response, normalize_tags


class StubMessages:
    def __init__(self, reply):
        self.reply = reply
        self.prompts = []

    def create(self, model, max_tokens, messages):
        self.prompts.append(messages[0]["content"])
        return SimpleNamespace(content=[SimpleNamespace(text=self.reply)])


def _provider(reply):
    client = SimpleNamespace(messages=StubMessages(reply))
    return AnthropicRelevanceProvider({"claude_model": "test-model"}, client=client), client


def _pair(pair_id, a="a", b="b"):
    return ScoringPair(pair_id, a, b, f"Title {a}", f"content {a}", f"Title {b}", f"content {b}")


def test_missing_api_key_is_configuration_error():
    with pytest.raises(ConfigurationError):
        AnthropicRelevanceProvider({})


def test_classify_api_error():
    assert isinstance(classify_api_error(401, "bad key"), ConfigurationError)
    assert isinstance(classify_api_error(404, "no model"), ConfigurationError)
    assert isinstance(classify_api_error(429, "slow down"), TransientError)
    assert isinstance(classify_api_error(503, "down"), TransientError)
    assert classify_api_error(0, "offline").status == 0


def test_parse_json_response_variants():
    assert _parse_json_response('[{"pair_id": 1, "score": 7}]') == [{"pair_id": 1, "score": 7}]
    assert _parse_json_response('```json\n[{"pair_id": 1}]\n```') == [{"pair_id": 1}]
    assert _parse_json_response('Here you go:\n[1, 2]\nDone.') == [1, 2]
    with pytest.raises(TransientError):
        _parse_json_response("I cannot help with that")


def test_score_pairs_clamps_and_ignores_unknown_ids():
    provider, client = _provider('[{"pair_id": 1, "score": 12}, {"pair_id": 2, "score": 6.5}, {"pair_id": 9, "score": 3}]')
    scores = provider.score_pairs([_pair(1), _pair(2, "a", "c")])
    assert scores == {1: 10.0, 2: 6.5}
    assert "Title a" in client.messages.prompts[0]


def test_score_pairs_missing_entries_are_left_out():
    provider, _ = _provider('[{"pair_id": 1, "score": "n/a"}]')
    assert provider.score_pairs([_pair(1)]) == {}


def test_malformed_scoring_response_is_transient():
    provider, _ = _provider('{"error": "nope"}')
    with pytest.raises(TransientError):
        provider.score_pairs([_pair(1)])


def test_generate_tags_normalizes():
    provider, client = _provider('[{"note_id": "a", "tags": ["#Machine Learning", "python", "Python"]}, {"note_id": "zzz", "tags": ["x"]}]')
    notes = [TaggingNote("a", "Title", "content", ["old"])]
    assert provider.generate_tags(notes, 1, 5) == {"a": ["machine-learning", "python"]}
    assert "Existing tags: old" in client.messages.prompts[0]


def test_normalize_tags_caps_count():
    assert normalize_tags(["One", "two", 3, "", "three"], max_tags=2) == ["one", "two"]

"""Claude API relevance scoring and tag generation."""

import json
import logging
import re
from typing import Any

import anthropic

from ..errors import ConfigurationError, TransientError, classify_api_error
from .base import RelevanceProvider, ScoringPair, TaggingNote
from .prompts import NOTE_TEMPLATE, PAIR_TEMPLATE, SCORING_PROMPT, TAGGING_PROMPT

logger = logging.getLogger(__name__)


class AnthropicRelevanceProvider(RelevanceProvider):
    """Scores note pairs and suggests tags using the Claude API."""

    def __init__(self, config: dict[str, Any], client=None):
        self.config = config
        if client is None:
            api_key = config.get("claude_api_key")
            if not api_key:
                raise ConfigurationError(
                    "Claude API key required for scoring. Set ANTHROPIC_API_KEY or claude_api_key in config.",
                    guidance="Run 'notelink init' to create a config file, then add your key.",
                )
            client = anthropic.Anthropic(
                api_key=api_key,
                max_retries=int(config.get("llm", {}).get("max_retries", 3)),
            )
        self.client = client
        self.model = config.get("claude_model", "claude-sonnet-4-20250514")
        self.scoring_max_chars = int(config.get("scoring", {}).get("max_chars", 1500))
        self.tagging_max_chars = int(config.get("tagging", {}).get("max_chars", 1500))

    def _complete(self, prompt: str, max_tokens: int) -> str:
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIStatusError as e:
            raise classify_api_error(e.status_code, e.message) from e
        except anthropic.APIConnectionError as e:
            raise classify_api_error(0, str(e)) from e
        return response.content[0].text

    def score_pairs(self, pairs: list[ScoringPair]) -> dict[int, float]:
        if not pairs:
            return {}
        limit = self.scoring_max_chars
        blocks = [
            PAIR_TEMPLATE.format(
                pair_id=p.pair_id,
                title_1=p.title_1,
                content_1=p.content_1[:limit],
                title_2=p.title_2,
                content_2=p.content_2[:limit],
            )
            for p in pairs
        ]
        prompt = SCORING_PROMPT.format(pairs="\n\n".join(blocks), count=len(pairs))
        text = self._complete(prompt, max_tokens=50 * len(pairs) + 200)

        wanted = {p.pair_id for p in pairs}
        scores: dict[int, float] = {}
        for entry in _expect_list(_parse_json_response(text)):
            try:
                pair_id = int(entry["pair_id"])
                score = float(entry["score"])
            except (KeyError, TypeError, ValueError):
                continue
            if pair_id in wanted:
                scores[pair_id] = min(10.0, max(0.0, score))
        logger.debug("Scored %d of %d pair(s)", len(scores), len(pairs))
        return scores

    def generate_tags(self, notes: list[TaggingNote], min_tags: int = 3, max_tags: int = 5) -> dict[str, list[str]]:
        if not notes:
            return {}
        blocks = [
            NOTE_TEMPLATE.format(
                note_id=n.note_id,
                title=n.title,
                existing_tags=", ".join(n.existing_tags) or "none",
                content=n.content[: self.tagging_max_chars],
            )
            for n in notes
        ]
        prompt = TAGGING_PROMPT.format(notes="\n\n".join(blocks), min_tags=min_tags, max_tags=max_tags)
        text = self._complete(prompt, max_tokens=100 * len(notes) + 200)

        wanted = {n.note_id for n in notes}
        result: dict[str, list[str]] = {}
        for entry in _expect_list(_parse_json_response(text)):
            if not isinstance(entry, dict):
                continue
            note_id = str(entry.get("note_id", ""))
            if note_id not in wanted:
                continue
            tags = normalize_tags(entry.get("tags") or [], max_tags)
            if tags:
                result[note_id] = tags
        return result


def normalize_tags(raw: list[Any], max_tags: int = 5) -> list[str]:
    """Lowercase, hyphenated, deduplicated tags without a leading '#'."""
    tags: list[str] = []
    for tag in raw:
        if not isinstance(tag, str):
            continue
        tag = re.sub(r"\s+", "-", tag.strip().lstrip("#").strip()).lower()
        if tag and tag not in tags:
            tags.append(tag)
    return tags[:max_tags]


def _expect_list(data: Any) -> list:
    if isinstance(data, dict):
        # Some responses wrap the array in an object
        for value in data.values():
            if isinstance(value, list):
                return value
    if not isinstance(data, list):
        raise TransientError("Malformed response from Claude: expected a JSON array")
    return data


def _parse_json_response(text: str) -> Any:
    """Extract JSON from Claude's response, handling markdown code blocks."""
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # Try extracting from ```json ... ``` or ``` ... ```
    match = re.search(r"```(?:json)?\s*\n?(.*?)\n?\s*```", text, re.DOTALL)
    if match:
        try:
            return json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            pass

    # Try the outermost [ ... ] block
    match = re.search(r"\[.*\]", text, re.DOTALL)
    if match:
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            pass

    raise TransientError(f"Malformed response from Claude: {text[:100]}")

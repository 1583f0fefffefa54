"""Prompt templates for Claude relevance scoring and tagging."""

SCORING_PROMPT = """You are helping maintain links between notes in a personal knowledge base.
For each pair of notes below, rate how useful it would be for a reader of Note A to follow a link to Note B,
on a scale from 0 (unrelated) to 10 (essential related reading).

Pairs:
{pairs}

Respond with a JSON array containing exactly {count} elements, one per pair_id:
[
  {{"pair_id": 1, "score": 7}}
]"""

PAIR_TEMPLATE = """### Pair {pair_id}
Note A: "{title_1}"
{content_1}

Note B: "{title_2}"
{content_2}"""

TAGGING_PROMPT = """Suggest {min_tags}-{max_tags} short topical tags for each note below.
Tags are lowercase, use hyphens instead of spaces and carry no leading '#'.
Keep useful existing tags.

Notes:
{notes}

Respond with a JSON array, using the exact note_id from the input:
[
  {{"note_id": "<exact id>", "tags": ["tag1", "tag2", "tag3"]}}
]"""

NOTE_TEMPLATE = """### note_id: {note_id}
Title: "{title}"
Existing tags: {existing_tags}
{content}"""

"""Markdown rendering for front matter and managed link lists."""

from pathlib import PurePosixPath
from typing import Any

import yaml


def render_frontmatter(data: dict[str, Any]) -> str:
    """Render YAML frontmatter block."""
    fm = yaml.dump(data, default_flow_style=False, allow_unicode=True, sort_keys=False)
    return f"---\n{fm}---\n"


def wikilink(location: str) -> str:
    """[[basename]] for a vault-relative path."""
    return f"[[{PurePosixPath(location).stem}]]"


def render_link_list(locations: list[str]) -> str:
    """Managed region content placed right after the boundary marker."""
    if not locations:
        return "\n"
    lines = [f"- {wikilink(loc)}" for loc in locations]
    return "\n" + "\n".join(lines) + "\n"

"""Front matter and boundary-marker handling for markdown documents."""

import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

import yaml

from ..errors import ContentError
from .templates import render_frontmatter

BOUNDARY_MARKER = "<!-- HASH_BOUNDARY -->"
ID_FIELD = "note_id"

_FRONTMATTER_RE = re.compile(r"^---[ \t]*\r?\n(.*?)^---[ \t]*(?:\r?\n|\Z)", re.DOTALL | re.MULTILINE)


@dataclass
class FrontMatter:
    data: dict[str, Any] = field(default_factory=dict)
    body: str = ""
    exists: bool = False


def parse_frontmatter(text: str, location: str | None = None) -> FrontMatter:
    """Split a document into its YAML front matter and body.

    Raises ContentError if the front matter is present but is not a YAML mapping.
    """
    match = _FRONTMATTER_RE.match(text)
    if not match:
        return FrontMatter(body=text)
    try:
        data = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        raise ContentError(f"Invalid front matter in {location or 'document'}: {e}", item_id=location) from e
    if not isinstance(data, dict):
        raise ContentError(f"Front matter in {location or 'document'} is not a mapping", item_id=location)
    return FrontMatter(data=data, body=text[match.end():], exists=True)


def update_frontmatter(text: str, updates: dict[str, Any], location: str | None = None) -> str:
    """Merge updates into the document's front matter, creating the block if needed."""
    fm = parse_frontmatter(text, location)
    data = {**fm.data, **updates}
    return render_frontmatter(data) + fm.body


def get_document_id(text: str, location: str | None = None) -> str | None:
    value = parse_frontmatter(text, location).data.get(ID_FIELD)
    return str(value) if value else None


def ensure_document_id(
    text: str,
    location: str | None = None,
    taken: set[str] | None = None,
    generate: Callable[[], str] = lambda: str(uuid.uuid4()),
) -> tuple[str, str, bool]:
    """Return (text, id, changed), writing a fresh id when the document has none.

    An id already present in `taken` belongs to another document (usually a
    copied note) and is replaced too, as is an id containing ':', which
    separates the two ids of a pair key.
    """
    existing = get_document_id(text, location)
    if existing and ":" not in existing and not (taken and existing in taken):
        return text, existing, False
    new_id = generate()
    while (taken and new_id in taken) or ":" in new_id:
        new_id = generate()
    return update_frontmatter(text, {ID_FIELD: new_id}, location), new_id, True


def extract_main_content(text: str, location: str | None = None) -> str:
    """User content: the body after front matter and before the boundary marker, stripped."""
    body = parse_frontmatter(text, location).body
    head, _, _ = body.partition(BOUNDARY_MARKER)
    return head.strip()


def has_boundary(text: str) -> bool:
    return BOUNDARY_MARKER in text


def ensure_boundary(text: str) -> tuple[str, bool]:
    """Append the boundary marker at the end of the document if it is missing."""
    if BOUNDARY_MARKER in text:
        return text, False
    if not text:
        sep = ""
    elif text.endswith("\n"):
        sep = "\n"
    else:
        sep = "\n\n"
    return f"{text}{sep}{BOUNDARY_MARKER}\n", True


def split_managed_region(text: str) -> tuple[str, str]:
    """Split at the end of the boundary marker: (everything up to the marker, managed region)."""
    idx = text.find(BOUNDARY_MARKER)
    if idx == -1:
        return text, ""
    end = idx + len(BOUNDARY_MARKER)
    return text[:end], text[end:]

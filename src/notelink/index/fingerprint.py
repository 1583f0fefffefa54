"""Change detection: decide which documents need a new embedding."""

import hashlib
from collections.abc import Container

from ..models import DocumentRecord


def fingerprint(main_content: str) -> str:
    """SHA256 of a document's main content."""
    return hashlib.sha256(main_content.encode("utf-8")).hexdigest()


def needs_reprocessing(
    record: DocumentRecord | None,
    current_fingerprint: str,
    force: bool = False,
    failed_ids: Container[str] = (),
) -> bool:
    """Return True if the document must be embedded again.

    A document whose last embedding attempt failed is retried even when its
    content has not changed.
    """
    if force or record is None:
        return True
    if record.content_fingerprint != current_fingerprint:
        return True
    return record.id in failed_ids

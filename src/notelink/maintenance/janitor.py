"""Index maintenance: orphan cleanup, hash sync and health checks."""

import logging
from dataclasses import dataclass, field
from typing import Callable

from ..errors import ContentError
from ..failures import FailureLog
from ..index.fingerprint import fingerprint
from ..index.store import MasterIndexStore
from ..links.reconciler import LinkReconciler
from ..models import FailureKind, LinkThresholds, utc_now
from ..vault.documents import VaultDocumentStore
from ..vault.frontmatter import extract_main_content, get_document_id, has_boundary

logger = logging.getLogger(__name__)


@dataclass
class HealthReport:
    documents_in_scope: int = 0
    indexed: int = 0
    orphans: list[str] = field(default_factory=list)
    missing_ids: list[str] = field(default_factory=list)
    unindexed: list[str] = field(default_factory=list)
    missing_boundary: list[str] = field(default_factory=list)
    missing_embeddings: list[str] = field(default_factory=list)
    unreadable: list[str] = field(default_factory=list)
    unresolved_failures: dict[str, int] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return not (
            self.orphans or self.missing_ids or self.unindexed or self.missing_boundary
            or self.missing_embeddings or self.unreadable or any(self.unresolved_failures.values())
        )


def clean_orphans(
    store: MasterIndexStore,
    reconciler: LinkReconciler,
    thresholds: LinkThresholds,
    check: Callable[[], None] | None = None,
) -> dict[str, int]:
    """Remove records whose document is gone and rewrite the documents that linked to them."""
    stats = {"orphans_removed": 0, "links_removed": 0, "documents_updated": 0}
    orphans = store.detect_orphans()
    if not orphans:
        return stats

    orphan_set = set(orphans)
    sources = store.reverse_neighbors(orphans) - orphan_set
    stats["links_removed"] = sum(
        1
        for source in sources
        for target in store.ledger_targets(source)
        if target in orphan_set
    )

    for doc_id in orphans:
        if check is not None:
            check()
        record = store.get_document(doc_id)
        store.delete_document(doc_id)
        stats["orphans_removed"] += 1
        logger.info("Removed orphan %s (%s)", doc_id, record.location if record else "?")

    reconciler.reconcile_many(sources, thresholds, check)
    stats["documents_updated"] = len(sources)
    store.detect_orphans()
    return stats


def sync_hashes(
    store: MasterIndexStore,
    documents: VaultDocumentStore,
    scope: str = "/",
    check: Callable[[], None] | None = None,
) -> dict[str, int]:
    """Accept the current content of indexed documents as processed, without re-embedding."""
    stats = {"updated": 0, "unchanged": 0, "unindexed": 0, "skipped": 0}
    for location in documents.list_documents(scope):
        if check is not None:
            check()
        try:
            text = documents.read(location)
            doc_id = get_document_id(text, location)
            main = extract_main_content(text, location)
        except (ContentError, OSError) as e:
            logger.warning("Skipping %s: %s", location, e)
            stats["skipped"] += 1
            continue

        record = store.get_document(doc_id) if doc_id else None
        if record is None:
            stats["unindexed"] += 1
            continue

        current = fingerprint(main)
        if record.content_fingerprint == current and record.location == location:
            stats["unchanged"] += 1
            continue
        record.content_fingerprint = current
        record.location = location
        record.last_processed_at = utc_now()
        record.has_boundary = has_boundary(text)
        store.update_document(doc_id, record)
        stats["updated"] += 1
    return stats


def health_check(
    store: MasterIndexStore,
    documents: VaultDocumentStore,
    failures: FailureLog,
    scope: str = "/",
) -> HealthReport:
    """Report problems without changing anything."""
    report = HealthReport()
    locations = documents.list_documents(scope)
    report.documents_in_scope = len(locations)

    orphan_ids = store.detect_orphans()
    report.orphans = sorted(store.index.documents[i].location for i in orphan_ids)

    for location in locations:
        try:
            text = documents.read(location)
            doc_id = get_document_id(text, location)
        except (ContentError, OSError):
            report.unreadable.append(location)
            continue
        if not has_boundary(text):
            report.missing_boundary.append(location)
        if not doc_id:
            report.missing_ids.append(location)
            continue
        if store.get_document(doc_id) is None:
            report.unindexed.append(location)
            continue
        report.indexed += 1
        if not store.has_embedding(doc_id):
            report.missing_embeddings.append(location)

    report.unresolved_failures = {kind.value: len(failures.unresolved(kind)) for kind in FailureKind}
    return report

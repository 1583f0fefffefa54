"""Keeps each document's managed link region in step with its best-scoring neighbours.

Links are unidirectional: a pair is written only into the document that is
id_1 under the canonical pair order. The reverse view comes from the host's
backlinks.
"""

import logging
from collections.abc import Iterable, Mapping

from ..errors import ContentError
from ..index.store import MasterIndexStore
from ..models import LinkThresholds, PairScore, ReconcileResult
from ..vault.documents import VaultDocumentStore
from ..vault.frontmatter import ensure_boundary, split_managed_region
from ..vault.templates import render_link_list

logger = logging.getLogger(__name__)


def desired_targets(doc_id: str, scores: Iterable[PairScore], thresholds: LinkThresholds) -> list[str]:
    """Neighbours doc_id should link to now, best AI score first.

    A pair qualifies when doc_id is its source and both scores meet the
    thresholds. The result is capped at thresholds.max_links.
    """
    best: dict[str, PairScore] = {}
    for pair in scores:
        if pair.id_1 != doc_id or pair.id_2 == doc_id:
            continue
        if pair.similarity_score < thresholds.similarity or pair.ai_score < thresholds.min_ai_score:
            continue
        current = best.get(pair.id_2)
        if current is None or pair.ai_score > current.ai_score:
            best[pair.id_2] = pair
    ranked = sorted(best.values(), key=lambda p: p.ai_score, reverse=True)
    return [pair.id_2 for pair in ranked[: max(0, thresholds.max_links)]]


def affected_documents(
    changed: Iterable[str],
    new_pairs: Iterable[PairScore],
    ledger: Mapping[str, list[str]],
) -> set[str]:
    """Documents whose managed region may be stale after a batch of changes.

    Includes the changed documents, both sides of every new pair, and every
    document whose recorded links point at a changed document.
    """
    changed = set(changed)
    affected = set(changed)
    for pair in new_pairs:
        affected.add(pair.id_1)
        affected.add(pair.id_2)
    for source, targets in ledger.items():
        if changed.intersection(targets):
            affected.add(source)
    return affected


class LinkReconciler:
    """Rewrites managed link regions and records what was written in the ledger."""

    def __init__(self, store: MasterIndexStore, documents: VaultDocumentStore):
        self.store = store
        self.documents = documents

    def reconcile(self, doc_id: str, desired: Iterable[str]) -> ReconcileResult:
        """Make doc_id's managed region list exactly the desired targets.

        Targets that no longer resolve to an indexed document are dropped. The
        ledger is overwritten with the resolved targets only after the document
        write succeeds. Raises ContentError if the document cannot be read or
        written.
        """
        record = self.store.get_document(doc_id)
        if record is None:
            raise ContentError(f"Document {doc_id} is not in the index", item_id=doc_id)

        targets: list[str] = []
        locations: list[str] = []
        for target in desired:
            if target == doc_id or target in targets:
                continue
            target_record = self.store.get_document(target)
            if target_record is None:
                logger.debug("Dropping unresolved link target %s from %s", target, record.location)
                continue
            targets.append(target)
            locations.append(target_record.location)

        previous = self.store.ledger_targets(doc_id)
        result = ReconcileResult(
            added=len(set(targets) - set(previous)),
            removed=len(set(previous) - set(targets)),
        )

        try:
            text = self.documents.read(record.location)
        except OSError as e:
            raise ContentError(f"Could not read {record.location}: {e}", item_id=doc_id) from e

        updated, _ = ensure_boundary(text)
        head, _ = split_managed_region(updated)
        updated = head + render_link_list(locations)

        if updated != text:
            try:
                self.documents.write(record.location, updated)
            except OSError as e:
                raise ContentError(f"Could not write {record.location}: {e}", item_id=doc_id) from e
            logger.debug("Rewrote links in %s (+%d -%d)", record.location, result.added, result.removed)

        if targets != previous:
            self.store.set_ledger(doc_id, targets)

        has_links = bool(targets)
        if not record.has_boundary or record.has_links_section != has_links:
            record.has_boundary = True
            record.has_links_section = has_links
            self.store.update_document(doc_id, record)

        return result

    def reconcile_many(self, doc_ids: Iterable[str], thresholds: LinkThresholds, check=None) -> ReconcileResult:
        """Reconcile each document against its current scores.

        `check` is called before every document so a running task can stop
        between documents. Documents that cannot be read or written are
        skipped with a warning.
        """
        total = ReconcileResult()
        for doc_id in sorted(doc_ids):
            if check is not None:
                check()
            if self.store.get_document(doc_id) is None:
                continue
            desired = desired_targets(doc_id, self.store.scores_for(doc_id), thresholds)
            try:
                result = self.reconcile(doc_id, desired)
            except ContentError as e:
                logger.warning("Skipping link update: %s", e)
                continue
            total.added += result.added
            total.removed += result.removed
        return total

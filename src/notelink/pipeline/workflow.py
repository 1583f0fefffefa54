"""Pipelines run as single-flight tasks: process, tag, recalibrate and maintenance.

Every pipeline loads the index if needed and flushes it when it ends, whether
it completed, failed or was cancelled, so work finished before a cancellation
is kept.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Iterable

from ..errors import ContentError, TransientError
from ..failures import FAILURE_FILE, FailureLog
from ..index.fingerprint import fingerprint, needs_reprocessing
from ..index.store import MasterIndexStore
from ..links.reconciler import LinkReconciler, affected_documents
from ..maintenance import janitor
from ..models import (
    BatchInfo,
    DocumentRecord,
    EmbeddingVector,
    ErrorDetails,
    FailureKind,
    LinkThresholds,
    PairScore,
    ReconcileResult,
    split_pair_key,
    utc_now,
)
from ..providers import (
    AnthropicRelevanceProvider,
    EmbeddingProvider,
    RelevanceProvider,
    ScoringPair,
    SentenceTransformerEmbedder,
    TaggingNote,
)
from ..tasks import TaskManager
from ..vault.documents import VaultDocumentStore
from ..vault.frontmatter import (
    ensure_boundary,
    ensure_document_id,
    extract_main_content,
    get_document_id,
    parse_frontmatter,
    update_frontmatter,
)
from .similarity import similar_pairs

logger = logging.getLogger(__name__)

Progress = Callable[[float, str], None]


@dataclass
class ScannedDocument:
    id: str
    location: str
    main_content: str
    fingerprint: str
    has_frontmatter: bool = False
    tags: list[str] = field(default_factory=list)

    @property
    def title(self) -> str:
        return PurePosixPath(self.location).stem


@dataclass
class RunSummary:
    scanned: int = 0
    skipped: int = 0
    ids_assigned: int = 0
    boundaries_added: int = 0
    embedded: int = 0
    embedding_failures: int = 0
    pairs_scored: int = 0
    scoring_failures: int = 0
    documents_reconciled: int = 0
    links_added: int = 0
    links_removed: int = 0
    tagged: int = 0
    tagging_failures: int = 0

    @property
    def failures(self) -> int:
        return self.embedding_failures + self.scoring_failures + self.tagging_failures


class Workflow:
    """Wires the index, vault, providers and failure log into runnable pipelines."""

    def __init__(
        self,
        config: dict[str, Any],
        store: MasterIndexStore,
        documents: VaultDocumentStore,
        failures: FailureLog,
        tasks: TaskManager | None = None,
        embedder: EmbeddingProvider | None = None,
        llm: RelevanceProvider | None = None,
    ):
        self.config = config
        self.store = store
        self.documents = documents
        self.failures = failures
        self.tasks = tasks or TaskManager()
        self.reconciler = LinkReconciler(store, documents)
        self.thresholds = LinkThresholds.from_config(config)
        self._embedder = embedder
        self._llm = llm

    @classmethod
    def from_config(cls, config: dict[str, Any], tasks: TaskManager | None = None) -> "Workflow":
        documents = VaultDocumentStore.from_config(config)
        cache_path = Path(config["cache_path"])
        store = MasterIndexStore(
            cache_path,
            documents,
            flush_debounce=float(config.get("index", {}).get("flush_debounce", 30.0)),
        )
        failures = FailureLog(cache_path / FAILURE_FILE)
        return cls(config, store, documents, failures, tasks)

    @property
    def embedder(self) -> EmbeddingProvider:
        if self._embedder is None:
            self._embedder = SentenceTransformerEmbedder(self.config)
        return self._embedder

    @property
    def llm(self) -> RelevanceProvider:
        if self._llm is None:
            self._llm = AnthropicRelevanceProvider(self.config)
        return self._llm

    def _scope(self, scope: str | None) -> str:
        return scope or self.config.get("scan_path", "/")

    def _run_task(self, name: str, fn: Callable[..., Any], *args: Any) -> Any:
        def body(progress: Progress) -> Any:
            if not self.store.loaded:
                self.store.load()
            try:
                return fn(progress, *args)
            finally:
                self.store.flush()

        return self.tasks.start_task(name, body)

    def _ensure_loaded(self) -> None:
        if not self.store.loaded:
            self.store.load()

    def close(self) -> None:
        self.store.close()

    # ------------------------------------------------------------------
    # Public pipelines
    # ------------------------------------------------------------------

    def run(self, force: bool = False, scope: str | None = None) -> RunSummary:
        """Embed changed documents, score new pairs, update links and tag."""
        return self._run_task("Process documents", self._process, force, self._scope(scope))

    def tag(self, force: bool = False, scope: str | None = None) -> RunSummary:
        """Generate tags for indexed documents that need them."""
        return self._run_task("Generate tags", self._tag_only, force, self._scope(scope))

    def recalibrate(self, scope: str | None = None) -> ReconcileResult:
        """Rewrite every managed link region in scope from the stored scores."""
        return self._run_task("Recalibrate links", self._recalibrate, self._scope(scope))

    def sync_hashes(self, scope: str | None = None) -> dict[str, int]:
        return self._run_task(
            "Sync hashes",
            lambda progress, s: janitor.sync_hashes(self.store, self.documents, s, self.tasks.check_cancelled),
            self._scope(scope),
        )

    def clean(self) -> dict[str, int]:
        return self._run_task(
            "Clean orphans",
            lambda progress: janitor.clean_orphans(
                self.store, self.reconciler, self.thresholds, self.tasks.check_cancelled
            ),
        )

    def apply_changes(self, moves: Iterable[tuple[str, str]] = (), deletes: Iterable[str] = ()) -> ReconcileResult:
        """Apply renames and deletions reported by the filesystem, then refresh affected links."""
        return self._run_task("Apply vault changes", self._apply_changes, list(moves), list(deletes))

    def refresh_links(self, doc_ids: Iterable[str]) -> ReconcileResult:
        """Rewrite the documents that link to doc_ids, e.g. after they were renamed."""
        return self._run_task("Refresh links", self._refresh_links, list(doc_ids))

    def health(self, scope: str | None = None) -> janitor.HealthReport:
        self._ensure_loaded()
        return janitor.health_check(self.store, self.documents, self.failures, self._scope(scope))

    def related(self, location: str, limit: int = 10) -> list[tuple[DocumentRecord, PairScore]]:
        """Top-scored neighbours of the document at location."""
        self._ensure_loaded()
        record = self.store.find_by_location(location)
        if record is None:
            raise ContentError(f"{location} is not in the index", item_id=location)
        related = []
        for pair in self.store.scores_for(record.id)[:limit]:
            other = self.store.get_document(pair.other(record.id))
            if other is not None:
                related.append((other, pair))
        return related

    # ------------------------------------------------------------------
    # Process
    # ------------------------------------------------------------------

    def _process(self, progress: Progress, force: bool, scope: str) -> RunSummary:
        summary = RunSummary()
        progress(0, "Scanning documents")
        scanned, detached = self._scan(scope, summary, progress)

        failed = set(self.failures.unresolved_by_kind(FailureKind.EMBEDDING))
        to_embed = [
            doc for doc in scanned
            if needs_reprocessing(
                self.store.get_document(doc.id),
                doc.fingerprint,
                force or not self.store.has_embedding(doc.id),
                failed,
            )
        ]
        logger.info("%d of %d document(s) need embedding", len(to_embed), len(scanned))
        changed = self._embed(to_embed, summary, progress)

        by_id = {doc.id: doc for doc in scanned}
        new_pairs = self._score(changed, by_id, summary, progress)

        progress(75, "Updating links")
        affected = affected_documents(changed, new_pairs, self.store.index.link_ledger) | detached
        result = self.reconciler.reconcile_many(affected, self.thresholds, self.tasks.check_cancelled)
        summary.documents_reconciled = len(affected)
        summary.links_added = result.added
        summary.links_removed = result.removed
        self._commit_fingerprints(changed, by_id)

        if self.config.get("tagging", {}).get("enabled", True):
            candidates = self._tag_candidates(scanned, changed, force)
            self._tag(candidates, summary, progress, start=90)

        progress(100, "Done")
        self.store.save()
        return summary

    def _scan(self, scope: str, summary: RunSummary, progress: Progress) -> tuple[list[ScannedDocument], set[str]]:
        """Assign ids and boundaries, then describe every document in scope.

        Returns the scanned documents and the documents whose links point at a
        record that moved or was dropped during the scan.
        """
        locations = self.documents.list_documents(scope)
        previous_owner = {rec.location: rec.id for rec in self.store.index.documents.values()}
        previous_location = {owner: location for location, owner in previous_owner.items()}
        taken: set[str] = set()
        scanned: list[ScannedDocument] = []

        for n, location in enumerate(locations, 1):
            self.tasks.check_cancelled()
            if n % 50 == 0:
                progress(5 * n / len(locations), f"Scanning {location}")
            try:
                doc = self._prepare(location, taken, summary)
            except (ContentError, OSError) as e:
                logger.warning("Skipping %s: %s", location, e)
                summary.skipped += 1
                continue
            taken.add(doc.id)
            scanned.append(doc)
        summary.scanned = len(scanned)

        # A location whose document now carries a different id leaves its old record behind
        stale = set()
        for doc in scanned:
            old_id = previous_owner.get(doc.location)
            if old_id and old_id != doc.id and old_id not in taken:
                record = self.store.get_document(old_id)
                if record is not None and record.location == doc.location:
                    stale.add(old_id)
        moved = {
            doc.id for doc in scanned
            if doc.id in previous_location and previous_location[doc.id] != doc.location
        }
        detached = self.store.reverse_neighbors(stale | moved) - stale
        for doc_id in stale:
            logger.info("Dropping stale record %s", doc_id)
            self.store.delete_document(doc_id)
        return scanned, detached

    def _prepare(self, location: str, taken: set[str], summary: RunSummary) -> ScannedDocument:
        text = self.documents.read(location)
        existing = get_document_id(text, location)

        reserved = taken
        if existing and existing not in taken:
            owner = self.store.get_document(existing)
            if owner is not None and owner.location != location and self._holds_id(owner.location, existing):
                # Copied document: the original keeps the id
                reserved = {existing}

        updated, doc_id, id_added = ensure_document_id(text, location, reserved)
        if id_added:
            summary.ids_assigned += 1
            logger.info("Assigned id %s to %s", doc_id, location)
        updated, boundary_added = ensure_boundary(updated)
        if boundary_added:
            summary.boundaries_added += 1
        if updated != text:
            self.documents.write(location, updated)

        record = self.store.get_document(doc_id)
        if record is not None and record.location != location:
            logger.info("Detected move %s -> %s", record.location, location)
            record.location = location
            self.store.update_document(doc_id, record)

        return self._describe(doc_id, location, updated)

    def _holds_id(self, location: str, doc_id: str) -> bool:
        if not self.documents.exists(location):
            return False
        try:
            return get_document_id(self.documents.read(location), location) == doc_id
        except (ContentError, OSError):
            return False

    @staticmethod
    def _describe(doc_id: str, location: str, text: str) -> ScannedDocument:
        fm = parse_frontmatter(text, location)
        main = extract_main_content(text, location)
        raw_tags = fm.data.get("tags") or []
        if isinstance(raw_tags, str):
            raw_tags = [raw_tags]
        return ScannedDocument(
            id=doc_id,
            location=location,
            main_content=main,
            fingerprint=fingerprint(main),
            has_frontmatter=fm.exists,
            tags=[str(t) for t in raw_tags],
        )

    def _embed(self, docs: list[ScannedDocument], summary: RunSummary, progress: Progress) -> list[str]:
        """Embed docs one at a time. Returns the ids embedded successfully."""
        changed: list[str] = []
        total = len(docs)
        for n, doc in enumerate(docs, 1):
            self.tasks.check_cancelled()
            progress(5 + 35 * (n - 1) / total, f"Embedding {doc.location}")
            try:
                vector = self.embedder.embed(doc.main_content)
            except TransientError as e:
                self.failures.record(
                    FailureKind.EMBEDDING,
                    BatchInfo(items=[doc.id], batch_number=n, total_batches=total, display_items=[doc.location]),
                    e,
                )
                summary.embedding_failures += 1
                continue

            self.store.save_embedding(EmbeddingVector(
                note_id=doc.id,
                embedding=vector,
                model_name=self.embedder.model_name,
                content_preview=doc.main_content[:200],
            ))
            self.store.invalidate_scores(doc.id)

            # The fingerprint is committed once the pairs are rescored and linked
            record = self.store.get_document(doc.id) or DocumentRecord(
                id=doc.id, location=doc.location, content_fingerprint=""
            )
            record.location = doc.location
            record.tags = list(doc.tags)
            record.has_frontmatter = doc.has_frontmatter
            record.has_boundary = True
            self.store.update_document(doc.id, record)

            changed.append(doc.id)
            summary.embedded += 1

        self.failures.resolve_items(FailureKind.EMBEDDING, changed)
        return changed

    def _commit_fingerprints(self, changed: list[str], scanned: dict[str, ScannedDocument]) -> None:
        """Mark changed documents as processed.

        Until this runs, a re-embedded document keeps its old fingerprint, so a
        run that stops between embedding and linking embeds and rescores it
        again next time.
        """
        for doc_id in changed:
            record = self.store.get_document(doc_id)
            if record is None:
                continue
            record.content_fingerprint = scanned[doc_id].fingerprint
            record.last_processed_at = utc_now()
            self.store.update_document(doc_id, record)

    def _score(
        self,
        changed: list[str],
        scanned: dict[str, ScannedDocument],
        summary: RunSummary,
        progress: Progress,
    ) -> list[PairScore]:
        """Score similarity-eligible pairs that involve a changed document or a prior scoring failure."""
        changed_set = set(changed)
        retry_keys = self.failures.unresolved_by_kind(FailureKind.SCORING)
        retry_ids = {
            doc_id
            for key in retry_keys
            for doc_id in split_pair_key(key)
            if self.store.get_document(doc_id) is not None
        }
        targets = changed_set | retry_ids
        if not targets:
            return []

        progress(40, "Finding similar documents")
        embeddings = {}
        for doc_id in self.store.index.documents:
            vector = self.store.load_embedding(doc_id)
            if vector is not None:
                embeddings[doc_id] = vector

        candidates = [
            pair for pair in similar_pairs(embeddings, sorted(targets), self.thresholds.similarity)
            if pair.id_1 in changed_set
            or pair.id_2 in changed_set
            or self.store.get_pair(pair.id_1, pair.id_2) is None
        ]

        # Earlier failures that no longer need a score
        candidate_keys = {pair.key for pair in candidates}
        self.failures.resolve_items(FailureKind.SCORING, [k for k in retry_keys if k not in candidate_keys])

        batch_size = max(1, int(self.config.get("scoring", {}).get("batch_size", 10)))
        batches = [candidates[i:i + batch_size] for i in range(0, len(candidates), batch_size)]
        logger.info("Scoring %d pair(s) in %d batch(es)", len(candidates), len(batches))

        new_pairs: list[PairScore] = []
        for n, batch in enumerate(batches, 1):
            self.tasks.check_cancelled()
            progress(45 + 30 * (n - 1) / len(batches), f"Scoring batch {n}/{len(batches)}")
            request = [
                ScoringPair(
                    pair_id=j,
                    id_1=pair.id_1,
                    id_2=pair.id_2,
                    title_1=self._title(pair.id_1),
                    content_1=self._main_content(pair.id_1, scanned),
                    title_2=self._title(pair.id_2),
                    content_2=self._main_content(pair.id_2, scanned),
                )
                for j, pair in enumerate(batch, 1)
            ]
            try:
                scores = self.llm.score_pairs(request)
            except TransientError as e:
                self._record_scoring_failure(batch, n, len(batches), e)
                summary.scoring_failures += 1
                continue

            scored, missing = [], []
            for j, pair in enumerate(batch, 1):
                if j in scores:
                    pair.ai_score = scores[j]
                    pair.last_scored_at = utc_now()
                    scored.append(pair)
                    logger.debug("Scored %s: similarity %.3f, ai %.1f", pair.key, pair.similarity_score, pair.ai_score)
                else:
                    missing.append(pair)
            if missing:
                self._record_scoring_failure(
                    missing, n, len(batches), ErrorDetails("No score returned for pair", "MissingScore")
                )
                summary.scoring_failures += 1

            self.store.merge_scores(scored)
            self.failures.resolve_items(FailureKind.SCORING, [pair.key for pair in scored])
            new_pairs.extend(scored)
            summary.pairs_scored += len(scored)

        return new_pairs

    def _record_scoring_failure(
        self, pairs: list[PairScore], batch_number: int, total_batches: int, error: BaseException | ErrorDetails
    ) -> None:
        self.failures.record(
            FailureKind.SCORING,
            BatchInfo(
                items=[pair.key for pair in pairs],
                batch_number=batch_number,
                total_batches=total_batches,
                display_items=[f"{self._location(p.id_1)} <-> {self._location(p.id_2)}" for p in pairs],
            ),
            error,
        )

    def _location(self, doc_id: str) -> str:
        record = self.store.get_document(doc_id)
        return record.location if record else doc_id

    def _title(self, doc_id: str) -> str:
        return PurePosixPath(self._location(doc_id)).stem

    def _main_content(self, doc_id: str, scanned: dict[str, ScannedDocument]) -> str:
        doc = scanned.get(doc_id)
        if doc is not None:
            return doc.main_content
        record = self.store.get_document(doc_id)
        if record is None:
            return ""
        try:
            return extract_main_content(self.documents.read(record.location), record.location)
        except (ContentError, OSError) as e:
            logger.warning("Could not read %s for scoring: %s", record.location, e)
            return ""

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def _tag_only(self, progress: Progress, force: bool, scope: str) -> RunSummary:
        summary = RunSummary()
        progress(0, "Scanning documents")
        docs = []
        for location in self.documents.list_documents(scope):
            self.tasks.check_cancelled()
            try:
                text = self.documents.read(location)
                doc_id = get_document_id(text, location)
                if not doc_id or self.store.get_document(doc_id) is None:
                    continue
                docs.append(self._describe(doc_id, location, text))
            except (ContentError, OSError) as e:
                logger.warning("Skipping %s: %s", location, e)
                summary.skipped += 1
        summary.scanned = len(docs)

        candidates = self._tag_candidates(docs, (), force)
        self._tag(candidates, summary, progress, start=10)
        progress(100, "Done")
        self.store.save()
        return summary

    def _tag_candidates(
        self, docs: list[ScannedDocument], changed: Iterable[str], force: bool
    ) -> list[ScannedDocument]:
        """Indexed documents that were never tagged, changed, or failed tagging before."""
        changed = set(changed)
        retry = set(self.failures.unresolved_by_kind(FailureKind.TAGGING))
        candidates = []
        for doc in docs:
            record = self.store.get_document(doc.id)
            if record is None:
                continue
            if force or doc.id in changed or doc.id in retry or record.tags_generated_at is None:
                candidates.append(doc)
        return candidates

    def _tag(self, docs: list[ScannedDocument], summary: RunSummary, progress: Progress, start: float) -> None:
        if not docs:
            return
        tagging = self.config.get("tagging", {})
        batch_size = max(1, int(tagging.get("batch_size", 5)))
        min_tags = int(tagging.get("min_tags", 3))
        max_tags = int(tagging.get("max_tags", 5))
        batches = [docs[i:i + batch_size] for i in range(0, len(docs), batch_size)]

        for n, batch in enumerate(batches, 1):
            self.tasks.check_cancelled()
            progress(start + (100 - start) * (n - 1) / len(batches), f"Tagging batch {n}/{len(batches)}")
            notes = [TaggingNote(doc.id, doc.title, doc.main_content, list(doc.tags)) for doc in batch]
            try:
                result = self.llm.generate_tags(notes, min_tags, max_tags)
            except TransientError as e:
                self._record_tagging_failure(batch, n, len(batches), e)
                summary.tagging_failures += 1
                continue

            done, missing = [], []
            for doc in batch:
                tags = result.get(doc.id)
                if not tags:
                    missing.append(doc)
                    continue
                try:
                    self._write_tags(doc, tags)
                except (ContentError, OSError) as e:
                    logger.warning("Could not write tags to %s: %s", doc.location, e)
                    continue
                done.append(doc.id)
            if missing:
                self._record_tagging_failure(
                    missing, n, len(batches), ErrorDetails("No tags returned for note", "MissingTags")
                )
                summary.tagging_failures += 1

            self.failures.resolve_items(FailureKind.TAGGING, done)
            summary.tagged += len(done)

    def _record_tagging_failure(
        self, docs: list[ScannedDocument], batch_number: int, total_batches: int, error: BaseException | ErrorDetails
    ) -> None:
        self.failures.record(
            FailureKind.TAGGING,
            BatchInfo(
                items=[doc.id for doc in docs],
                batch_number=batch_number,
                total_batches=total_batches,
                display_items=[doc.location for doc in docs],
            ),
            error,
        )

    def _write_tags(self, doc: ScannedDocument, tags: list[str]) -> None:
        """Front matter only, so the main-content fingerprint is unaffected."""
        text = self.documents.read(doc.location)
        updated = update_frontmatter(text, {"tags": list(tags)}, doc.location)
        if updated != text:
            self.documents.write(doc.location, updated)
        record = self.store.get_document(doc.id)
        record.tags = list(tags)
        record.tags_generated_at = utc_now()
        record.has_frontmatter = True
        self.store.update_document(doc.id, record)

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def _recalibrate(self, progress: Progress, scope: str) -> ReconcileResult:
        live = set(self.documents.list_documents(scope))
        doc_ids = [rec.id for rec in self.store.index.documents.values() if rec.location in live]
        progress(5, f"Updating links for {len(doc_ids)} document(s)")
        result = self.reconciler.reconcile_many(doc_ids, self.thresholds, self.tasks.check_cancelled)
        progress(100, "Done")
        self.store.save()
        return result

    def _records_under(self, location: str) -> list[DocumentRecord]:
        prefix = location.rstrip("/") + "/"
        return [
            rec for rec in list(self.store.index.documents.values())
            if rec.location == location or rec.location.startswith(prefix)
        ]

    def _apply_changes(self, progress: Progress, moves: list[tuple[str, str]], deletes: list[str]) -> ReconcileResult:
        renamed: list[str] = []
        for old, new in moves:
            for record in self._records_under(old):
                self.store.rename_document(record.location, new + record.location[len(old):])
                renamed.append(record.id)

        removed = [record.id for location in deletes for record in self._records_under(location)]
        sources = self.store.reverse_neighbors(renamed + removed) - set(removed)
        for doc_id in removed:
            self.store.delete_document(doc_id)
            logger.info("Removed deleted document %s", doc_id)

        return self.reconciler.reconcile_many(sources, self.thresholds, self.tasks.check_cancelled)

    def _refresh_links(self, progress: Progress, doc_ids: list[str]) -> ReconcileResult:
        sources = self.store.reverse_neighbors(doc_ids)
        return self.reconciler.reconcile_many(sources, self.thresholds, self.tasks.check_cancelled)

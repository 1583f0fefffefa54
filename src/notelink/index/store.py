"""Master index persistence: document records, pair scores, the link ledger and embedding shards.

The index is one JSON file, replaced atomically on every save. Embeddings live
in one file per document so a single vector can be read or written without
touching the rest of the index.
"""

import hashlib
import json
import logging
import re
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from ..errors import IntegrityError
from ..fsutil import atomic_write_text
from ..models import (
    INDEX_VERSION,
    DocumentRecord,
    EmbeddingVector,
    IndexStats,
    MasterIndex,
    PairScore,
    pair_key,
    utc_now,
)
from .graph import ScoreGraph

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
EMBEDDINGS_DIR = "embeddings"

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass
class LoadResult:
    index: MasterIndex
    created_new: bool = False
    migrated: bool = False


class MasterIndexStore:
    """Single owner of the master index.

    All reads and writes go through this object. Mutations are serialized by
    an internal lock and keep the score graph patched in the same step, so the
    graph never sees a partially applied pair set. Incremental mutations mark
    the index dirty and schedule a debounced flush; call flush() or close()
    before the process exits.
    """

    def __init__(self, cache_path: str | Path, documents=None, flush_debounce: float = 30.0):
        self.cache_path = Path(cache_path)
        self.index_file = self.cache_path / INDEX_FILE
        self.embeddings_dir = self.cache_path / EMBEDDINGS_DIR
        self.documents = documents
        self.flush_debounce = flush_debounce
        self.graph = ScoreGraph()
        self._index: MasterIndex | None = None
        self._lock = threading.RLock()
        self._timer: threading.Timer | None = None
        self._dirty = False

    @property
    def index(self) -> MasterIndex:
        if self._index is None:
            raise IntegrityError("Master index is not loaded")
        return self._index

    @property
    def loaded(self) -> bool:
        return self._index is not None

    @property
    def dirty(self) -> bool:
        return self._dirty

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def load(self, create_if_missing: bool = True, detect_orphans: bool = False) -> LoadResult:
        """Read the index from disk and rebuild the score graph.

        Raises IntegrityError if the file is unreadable, or if it is missing and
        create_if_missing is False. Orphan detection only counts records whose
        document is gone; it never removes anything.
        """
        with self._lock:
            if not self.index_file.exists():
                if not create_if_missing:
                    raise IntegrityError(
                        f"No index found at {self.index_file}. Run 'notelink run' first."
                    )
                result = LoadResult(MasterIndex(), created_new=True)
            else:
                try:
                    raw = json.loads(self.index_file.read_text(encoding="utf-8"))
                    index, migrated = _index_from_dict(raw)
                except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
                    raise IntegrityError(f"Could not read index {self.index_file}: {e}") from e
                result = LoadResult(index, migrated=migrated)

            self._index = result.index
            self.graph.rebuild(result.index.scores.values())
            self._dirty = result.migrated
            self.refresh_stats()
            if detect_orphans:
                self.detect_orphans()

            logger.info(
                "Loaded index: %d documents, %d scores%s",
                len(result.index.documents),
                len(result.index.scores),
                " (migrated)" if result.migrated else "",
            )
            return result

    def save(self, index: MasterIndex | None = None, update_stats: bool = True) -> None:
        """Write the whole index atomically.

        Passing a different MasterIndex replaces the in-memory one. Raises
        IntegrityError if the write fails; the previous file stays intact.
        """
        with self._lock:
            if index is not None and index is not self._index:
                self._index = index
                self.graph.rebuild(index.scores.values())
            current = self.index
            if update_stats:
                self.refresh_stats()
            current.last_updated = utc_now()
            payload = json.dumps(current.to_dict(), indent=2, ensure_ascii=False)
            try:
                atomic_write_text(self.index_file, payload)
            except OSError as e:
                raise IntegrityError(f"Could not save index to {self.index_file}: {e}") from e
            self._dirty = False
            self._cancel_timer()

    def flush(self) -> None:
        """Synchronously write pending incremental changes, if any."""
        with self._lock:
            if self._dirty and self._index is not None:
                self.save()

    def close(self) -> None:
        self._cancel_timer()
        self.flush()

    def _touch(self) -> None:
        self._dirty = True
        if self.flush_debounce <= 0:
            return
        if self._timer:
            self._timer.cancel()
        self._timer = threading.Timer(self.flush_debounce, self._deferred_flush)
        self._timer.daemon = True
        self._timer.start()

    def _deferred_flush(self) -> None:
        try:
            self.flush()
        except IntegrityError:
            # Stays dirty; the next explicit flush raises to its caller.
            logger.exception("Deferred index flush failed")

    def _cancel_timer(self) -> None:
        if self._timer:
            self._timer.cancel()
            self._timer = None

    def refresh_stats(self) -> IndexStats:
        """Recompute the aggregate counts and return them."""
        index = self.index
        index.stats.total_documents = len(index.documents)
        index.stats.total_scores = len(index.scores)
        index.stats.total_embeddings = self.embedding_count()
        index.stats.ledger_links = sum(len(t) for t in index.link_ledger.values())
        return index.stats

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def get_document(self, doc_id: str) -> DocumentRecord | None:
        return self.index.documents.get(doc_id)

    def find_by_location(self, location: str) -> DocumentRecord | None:
        for record in self.index.documents.values():
            if record.location == location:
                return record
        return None

    def update_document(self, doc_id: str, record: DocumentRecord) -> None:
        """Upsert one record; visible immediately, persisted on the next flush."""
        with self._lock:
            self.index.documents[doc_id] = record
            self._touch()

    def rename_document(self, old_location: str, new_location: str) -> DocumentRecord | None:
        with self._lock:
            record = self.find_by_location(old_location)
            if record is None:
                return None
            record.location = new_location
            self._touch()
            logger.info("Renamed %s -> %s", old_location, new_location)
            return record

    def delete_document(self, doc_id: str) -> bool:
        """Remove a document, every pair touching it, its embedding and all ledger references."""
        with self._lock:
            index = self.index
            existed = index.documents.pop(doc_id, None) is not None
            for pair in self.graph.remove_document(doc_id):
                index.scores.pop(pair.key, None)
            index.link_ledger.pop(doc_id, None)
            for source, targets in list(index.link_ledger.items()):
                if doc_id in targets:
                    remaining = [t for t in targets if t != doc_id]
                    if remaining:
                        index.link_ledger[source] = remaining
                    else:
                        del index.link_ledger[source]
            self.delete_embedding(doc_id)
            self._touch()
            return existed

    def detect_orphans(self) -> list[str]:
        """Ids of records whose document no longer exists. Updates the orphan count only."""
        if self.documents is None:
            return []
        live = set(self.documents.list_documents())
        with self._lock:
            index = self.index
            orphans = [doc_id for doc_id, rec in index.documents.items() if rec.location not in live]
            index.stats.orphaned_documents = len(orphans)
            return orphans

    # ------------------------------------------------------------------
    # Scores
    # ------------------------------------------------------------------

    def merge_scores(self, pairs: Iterable[PairScore]) -> int:
        """Insert or replace scored pairs under their canonical key."""
        count = 0
        with self._lock:
            index = self.index
            for pair in pairs:
                pair = pair.canonical()
                index.scores[pair.key] = pair
                self.graph.add(pair)
                count += 1
            if count:
                self._touch()
        return count

    def invalidate_scores(self, doc_id: str) -> int:
        """Drop every pair touching doc_id. Returns the number removed."""
        with self._lock:
            removed = self.graph.remove_document(doc_id)
            for pair in removed:
                self.index.scores.pop(pair.key, None)
            if removed:
                self._touch()
                logger.info("Invalidated %d score(s) for %s", len(removed), doc_id)
            return len(removed)

    def get_pair(self, id_a: str, id_b: str) -> PairScore | None:
        return self.index.scores.get(pair_key(id_a, id_b))

    def scores_for(self, doc_id: str) -> list[PairScore]:
        return self.graph.scores_for(doc_id)

    def get_top_neighbors(self, doc_id: str, limit: int = 10) -> list[str]:
        return self.graph.top_neighbors(doc_id, limit)

    # ------------------------------------------------------------------
    # Link ledger
    # ------------------------------------------------------------------

    def ledger_targets(self, doc_id: str) -> list[str]:
        return list(self.index.link_ledger.get(doc_id, []))

    def set_ledger(self, doc_id: str, targets: list[str]) -> None:
        with self._lock:
            if targets:
                self.index.link_ledger[doc_id] = list(targets)
            else:
                self.index.link_ledger.pop(doc_id, None)
            self._touch()

    def reverse_neighbors(self, doc_ids: Iterable[str]) -> set[str]:
        """Documents whose recorded links point at any of doc_ids."""
        wanted = set(doc_ids)
        return {
            source
            for source, targets in self.index.link_ledger.items()
            if wanted.intersection(targets)
        }

    # ------------------------------------------------------------------
    # Embedding shards
    # ------------------------------------------------------------------

    def _embedding_path(self, doc_id: str) -> Path:
        name = doc_id if _SAFE_ID.match(doc_id) else hashlib.sha256(doc_id.encode("utf-8")).hexdigest()
        return self.embeddings_dir / f"{name}.json"

    def save_embedding(self, vector: EmbeddingVector) -> None:
        try:
            atomic_write_text(self._embedding_path(vector.note_id), json.dumps(asdict(vector)))
        except OSError as e:
            raise IntegrityError(f"Could not save embedding for {vector.note_id}: {e}") from e

    def load_embedding(self, doc_id: str) -> list[float] | None:
        path = self._embedding_path(doc_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return list(data["embedding"])
        except (OSError, ValueError, KeyError) as e:
            logger.warning("Unreadable embedding shard %s: %s", path.name, e)
            return None

    def has_embedding(self, doc_id: str) -> bool:
        return self._embedding_path(doc_id).exists()

    def delete_embedding(self, doc_id: str) -> bool:
        path = self._embedding_path(doc_id)
        if path.exists():
            path.unlink()
            return True
        return False

    def embedding_count(self) -> int:
        if not self.embeddings_dir.exists():
            return 0
        return sum(1 for _ in self.embeddings_dir.glob("*.json"))


# ----------------------------------------------------------------------
# Schema handling
# ----------------------------------------------------------------------

_LEGACY_RECORD_FIELDS = {
    "note_id": "id",
    "file_path": "location",
    "content_hash": "content_fingerprint",
    "last_processed": "last_processed_at",
    "has_hash_boundary": "has_boundary",
}


def _major(version: str) -> int:
    try:
        return int(str(version).split(".")[0])
    except ValueError:
        return 0


def _timestamp(value: Any) -> str | None:
    """Accept ISO strings or the millisecond epochs older indexes used."""
    if value is None or isinstance(value, str):
        return value
    return datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc).isoformat()


def _migrate_record(data: dict[str, Any]) -> DocumentRecord:
    converted = {_LEGACY_RECORD_FIELDS.get(k, k): v for k, v in data.items()}
    converted["last_processed_at"] = _timestamp(converted.get("last_processed_at"))
    converted["tags_generated_at"] = _timestamp(converted.get("tags_generated_at"))
    return DocumentRecord.from_dict(converted)


def _migrate_pair(data: dict[str, Any]) -> PairScore:
    return PairScore(
        id_1=data["note_id_1"],
        id_2=data["note_id_2"],
        similarity_score=float(data.get("similarity_score", 0.0)),
        ai_score=float(data.get("ai_score", 0.0)),
        last_scored_at=_timestamp(data.get("last_scored")) or utc_now(),
    )


def _index_from_dict(raw: dict[str, Any]) -> tuple[MasterIndex, bool]:
    """Build a MasterIndex from its JSON form, upgrading older layouts.

    Pair keys are re-canonicalised; when a pair appears under both orders the
    most recently scored entry wins.
    """
    version = str(raw.get("version", "1.0.0"))
    if _major(version) > _major(INDEX_VERSION):
        raise ValueError(f"index version {version} is newer than supported {INDEX_VERSION}")
    migrated = version != INDEX_VERSION

    if "documents" in raw:
        documents = {doc_id: DocumentRecord.from_dict(rec) for doc_id, rec in raw["documents"].items()}
    else:
        documents = {doc_id: _migrate_record(rec) for doc_id, rec in (raw.get("notes") or {}).items()}
        migrated = True

    scores: dict[str, PairScore] = {}
    for key, data in (raw.get("scores") or {}).items():
        if "note_id_1" in data:
            pair = _migrate_pair(data)
            migrated = True
        else:
            pair = PairScore.from_dict(data)
        if pair.id_1 == pair.id_2:
            migrated = True
            continue
        pair = pair.canonical()
        if pair.key != key:
            migrated = True
        existing = scores.get(pair.key)
        if existing is not None:
            migrated = True
            if existing.last_scored_at >= pair.last_scored_at:
                continue
        scores[pair.key] = pair

    link_ledger: dict[str, list[str]] = {}
    for source, targets in (raw.get("link_ledger") or {}).items():
        unique = list(dict.fromkeys(targets))
        if len(unique) != len(targets):
            migrated = True
        if unique:
            link_ledger[source] = unique

    index = MasterIndex(
        version=INDEX_VERSION,
        last_updated=_timestamp(raw.get("last_updated")) or utc_now(),
        documents=documents,
        scores=scores,
        link_ledger=link_ledger,
    )
    index.stats.orphaned_documents = int((raw.get("stats") or {}).get("orphaned_documents", 0))
    return index, migrated

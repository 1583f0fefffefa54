"""Data models used throughout notelink."""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


INDEX_VERSION = "2.0.0"


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def pair_key(id_a: str, id_b: str) -> str:
    """Canonical key for an unordered document pair: the smaller id always comes first."""
    if id_a == id_b:
        raise ValueError(f"A document cannot be paired with itself: {id_a}")
    return f"{id_a}:{id_b}" if id_a < id_b else f"{id_b}:{id_a}"


def split_pair_key(key: str) -> tuple[str, str]:
    id_1, _, id_2 = key.partition(":")
    return id_1, id_2


@dataclass
class DocumentRecord:
    """Index entry for one tracked document."""
    id: str
    location: str
    content_fingerprint: str
    last_processed_at: str = field(default_factory=utc_now)
    tags: list[str] = field(default_factory=list)
    tags_generated_at: str | None = None
    has_frontmatter: bool = False
    has_boundary: bool = False
    has_links_section: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DocumentRecord":
        return cls(
            id=data["id"],
            location=data["location"],
            content_fingerprint=data.get("content_fingerprint", ""),
            last_processed_at=data.get("last_processed_at") or utc_now(),
            tags=list(data.get("tags") or []),
            tags_generated_at=data.get("tags_generated_at"),
            has_frontmatter=bool(data.get("has_frontmatter", False)),
            has_boundary=bool(data.get("has_boundary", False)),
            has_links_section=bool(data.get("has_links_section", False)),
        )


@dataclass
class PairScore:
    """Similarity and relevance scores for one unordered pair of documents."""
    id_1: str
    id_2: str
    similarity_score: float
    ai_score: float = 0.0
    last_scored_at: str = field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return pair_key(self.id_1, self.id_2)

    def canonical(self) -> "PairScore":
        """Return this pair with its participants in canonical order."""
        if self.id_1 <= self.id_2:
            return self
        return replace(self, id_1=self.id_2, id_2=self.id_1)

    def other(self, doc_id: str) -> str:
        return self.id_2 if self.id_1 == doc_id else self.id_1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PairScore":
        return cls(
            id_1=data["id_1"],
            id_2=data["id_2"],
            similarity_score=float(data.get("similarity_score", 0.0)),
            ai_score=float(data.get("ai_score", 0.0)),
            last_scored_at=data.get("last_scored_at") or utc_now(),
        )


@dataclass
class IndexStats:
    """Aggregate counts kept alongside the index."""
    total_documents: int = 0
    total_embeddings: int = 0
    total_scores: int = 0
    orphaned_documents: int = 0
    ledger_links: int = 0


@dataclass
class MasterIndex:
    """Document records, pair scores and the link ledger."""
    version: str = INDEX_VERSION
    last_updated: str = field(default_factory=utc_now)
    documents: dict[str, DocumentRecord] = field(default_factory=dict)
    scores: dict[str, PairScore] = field(default_factory=dict)
    link_ledger: dict[str, list[str]] = field(default_factory=dict)
    stats: IndexStats = field(default_factory=IndexStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "last_updated": self.last_updated,
            "documents": {doc_id: rec.to_dict() for doc_id, rec in self.documents.items()},
            "scores": {key: pair.to_dict() for key, pair in self.scores.items()},
            "link_ledger": {src: list(targets) for src, targets in self.link_ledger.items()},
            "stats": asdict(self.stats),
        }


@dataclass
class EmbeddingVector:
    """One document's embedding, stored in its own shard."""
    note_id: str
    embedding: list[float]
    model_name: str
    created_at: str = field(default_factory=utc_now)
    content_preview: str = ""


class TaskStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TaskInfo:
    """State of the currently running background task."""
    task_id: str
    name: str
    status: TaskStatus = TaskStatus.RUNNING
    progress: float = 0.0
    current_step: str = "Starting..."
    started_at: str = field(default_factory=utc_now)
    completed_at: str | None = None
    error_message: str | None = None


class FailureKind(str, Enum):
    EMBEDDING = "embedding"
    SCORING = "scoring"
    TAGGING = "tagging"


@dataclass
class BatchInfo:
    """Which items a failed batch contained."""
    items: list[str]
    batch_number: int = 1
    total_batches: int = 1
    display_items: list[str] = field(default_factory=list)


@dataclass
class ErrorDetails:
    message: str
    type: str
    status: int | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorDetails":
        return cls(message=str(exc), type=type(exc).__name__, status=getattr(exc, "status", None))


@dataclass
class FailureRecord:
    """A failed provider call, kept until every item in it has succeeded."""
    id: str
    kind: FailureKind
    batch: BatchInfo
    error: ErrorDetails
    timestamp: str = field(default_factory=utc_now)
    resolved: bool = False
    recovered_items: list[str] = field(default_factory=list)

    @property
    def pending_items(self) -> list[str]:
        recovered = set(self.recovered_items)
        return [item for item in self.batch.items if item not in recovered]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FailureRecord":
        return cls(
            id=data["id"],
            kind=FailureKind(data["kind"]),
            batch=BatchInfo(**data["batch"]),
            error=ErrorDetails(**data["error"]),
            timestamp=data["timestamp"],
            resolved=bool(data.get("resolved", False)),
            recovered_items=list(data.get("recovered_items") or []),
        )


@dataclass
class ReconcileResult:
    """How many managed links a reconciliation added and removed."""
    added: int = 0
    removed: int = 0

    @property
    def changed(self) -> int:
        return self.added + self.removed


@dataclass
class LinkThresholds:
    """Minimum scores a pair needs before it becomes a link, and the per-document cap."""
    similarity: float = 0.7
    min_ai_score: float = 7
    max_links: int = 7

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "LinkThresholds":
        linking = config.get("linking", {})
        return cls(
            similarity=float(linking.get("similarity_threshold", 0.7)),
            min_ai_score=float(linking.get("min_ai_score", 7)),
            max_links=int(linking.get("max_links_per_document", 7)),
        )

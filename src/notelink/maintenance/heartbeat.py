"""Heartbeat: summarize the index and the vault."""

from dataclasses import asdict
from typing import Any

from ..failures import FailureLog
from ..index.store import MasterIndexStore
from ..models import FailureKind
from ..vault.documents import VaultDocumentStore


def index_stats(store: MasterIndexStore, failures: FailureLog | None = None) -> dict[str, Any]:
    """Current index statistics, with unresolved failure counts per kind."""
    index = store.index
    stats: dict[str, Any] = asdict(store.refresh_stats())
    stats["version"] = index.version
    stats["last_updated"] = index.last_updated
    stats["tagged_documents"] = sum(1 for r in index.documents.values() if r.tags_generated_at)
    if failures is not None:
        stats["unresolved_failures"] = {kind.value: len(failures.unresolved(kind)) for kind in FailureKind}
    return stats


def vault_stats(documents: VaultDocumentStore, scope: str = "/") -> dict[str, Any]:
    """Document counts per top-level folder."""
    stats: dict[str, Any] = {"total_documents": 0, "folders": {}}
    for location in documents.list_documents(scope):
        stats["total_documents"] += 1
        parts = location.split("/")
        folder_name = parts[0] if len(parts) > 1 else "root"
        stats["folders"][folder_name] = stats["folders"].get(folder_name, 0) + 1
    return stats

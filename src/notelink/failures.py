"""Persistent log of failed provider calls, used to retry only what failed."""

import json
import logging
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable

from .errors import IntegrityError
from .fsutil import atomic_write_text
from .models import BatchInfo, ErrorDetails, FailureKind, FailureRecord

logger = logging.getLogger(__name__)

FAILURE_FILE = "failures.json"


class FailureLog:
    """Failure records kept in a JSON file next to the index."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._records: list[FailureRecord] = self._load()

    def _load(self) -> list[FailureRecord]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return [FailureRecord.from_dict(r) for r in raw.get("failures", [])]
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise IntegrityError(f"Could not read failure log {self.path}: {e}") from e

    def _save(self) -> None:
        payload = {"failures": [r.to_dict() for r in self._records]}
        try:
            atomic_write_text(self.path, json.dumps(payload, indent=2, ensure_ascii=False))
        except OSError as e:
            raise IntegrityError(f"Could not save failure log {self.path}: {e}") from e

    def record(self, kind: FailureKind, batch: BatchInfo, error: BaseException | ErrorDetails) -> str:
        """Append an unresolved failure and return its id."""
        details = error if isinstance(error, ErrorDetails) else ErrorDetails.from_exception(error)
        failure_id = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"
        with self._lock:
            self._records.append(FailureRecord(id=failure_id, kind=FailureKind(kind), batch=batch, error=details))
            self._save()
        logger.warning(
            "Recorded %s failure %s (%d item(s)): %s",
            FailureKind(kind).value, failure_id, len(batch.items), details.message,
        )
        return failure_id

    def entries(self, include_resolved: bool = False) -> list[FailureRecord]:
        with self._lock:
            return [r for r in self._records if include_resolved or not r.resolved]

    def unresolved(self, kind: FailureKind) -> list[FailureRecord]:
        kind = FailureKind(kind)
        with self._lock:
            return [r for r in self._records if r.kind == kind and not r.resolved]

    def unresolved_by_kind(self, kind: FailureKind) -> list[str]:
        """Distinct pending item ids across unresolved records of one kind, in first-seen order."""
        items: dict[str, None] = {}
        for record in self.unresolved(kind):
            for item in record.pending_items:
                items.setdefault(item, None)
        return list(items)

    def unresolved_count(self) -> int:
        return len(self.entries())

    def resolve(self, failure_id: str) -> bool:
        return self.resolve_many([failure_id]) == 1

    def resolve_many(self, failure_ids: Iterable[str]) -> int:
        wanted = set(failure_ids)
        count = 0
        with self._lock:
            for record in self._records:
                if record.id in wanted and not record.resolved:
                    record.resolved = True
                    count += 1
            if count:
                self._save()
        return count

    def resolve_items(self, kind: FailureKind, item_ids: Iterable[str]) -> int:
        """Mark items as recovered; a record resolves once all of its items have.

        Returns the number of records that became resolved.
        """
        succeeded = set(item_ids)
        if not succeeded:
            return 0
        kind = FailureKind(kind)
        resolved = 0
        changed = False
        with self._lock:
            for record in self._records:
                if record.kind != kind or record.resolved:
                    continue
                newly = [i for i in record.pending_items if i in succeeded]
                if not newly:
                    continue
                record.recovered_items.extend(newly)
                changed = True
                if not record.pending_items:
                    record.resolved = True
                    resolved += 1
            if changed:
                self._save()
        if resolved:
            logger.info("Resolved %d %s failure record(s)", resolved, kind.value)
        return resolved

    def prune(self, max_age_days: float = 30) -> int:
        """Delete resolved records older than max_age_days. Unresolved records are kept."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=max_age_days)
        with self._lock:
            before = len(self._records)
            self._records = [
                r for r in self._records
                if not (r.resolved and _parse_time(r.timestamp) < cutoff)
            ]
            removed = before - len(self._records)
            if removed:
                self._save()
        return removed

    def clear(self) -> int:
        with self._lock:
            count = len(self._records)
            self._records = []
            self._save()
        return count


def _parse_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

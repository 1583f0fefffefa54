"""In-memory adjacency over the pair-score table."""

from collections.abc import Iterable

from ..models import PairScore


class ScoreGraph:
    """Bidirectional adjacency built from the master index's pair map.

    Every pair is inserted once per direction, so looking up everything that
    touches a document costs O(degree) instead of a scan over all pairs. The
    graph is a cache of the pair map and must be patched whenever it changes.
    """

    def __init__(self, pairs: Iterable[PairScore] = ()):
        self._adjacency: dict[str, dict[str, PairScore]] = {}
        self.rebuild(pairs)

    def rebuild(self, pairs: Iterable[PairScore]) -> None:
        self._adjacency.clear()
        for pair in pairs:
            self.add(pair)

    def add(self, pair: PairScore) -> None:
        self._adjacency.setdefault(pair.id_1, {})[pair.id_2] = pair
        self._adjacency.setdefault(pair.id_2, {})[pair.id_1] = pair

    def remove(self, id_a: str, id_b: str) -> None:
        for src, dst in ((id_a, id_b), (id_b, id_a)):
            neighbors = self._adjacency.get(src)
            if neighbors is None:
                continue
            neighbors.pop(dst, None)
            if not neighbors:
                del self._adjacency[src]

    def remove_document(self, doc_id: str) -> list[PairScore]:
        """Drop every pair touching doc_id and return the removed pairs."""
        neighbors = self._adjacency.pop(doc_id, {})
        for other in neighbors:
            back = self._adjacency.get(other)
            if back is None:
                continue
            back.pop(doc_id, None)
            if not back:
                del self._adjacency[other]
        return list(neighbors.values())

    def neighbors(self, doc_id: str) -> list[str]:
        return list(self._adjacency.get(doc_id, {}))

    def scores_for(self, doc_id: str) -> list[PairScore]:
        """All pairs touching doc_id, highest AI score first."""
        pairs = self._adjacency.get(doc_id, {}).values()
        return sorted(pairs, key=lambda p: p.ai_score, reverse=True)

    def top_neighbors(self, doc_id: str, limit: int = 10) -> list[str]:
        return [pair.other(doc_id) for pair in self.scores_for(doc_id)[:limit]]

    def degree(self, doc_id: str) -> int:
        return len(self._adjacency.get(doc_id, {}))

    def __contains__(self, doc_id: str) -> bool:
        return doc_id in self._adjacency

    def __len__(self) -> int:
        """Number of distinct pairs."""
        return sum(len(n) for n in self._adjacency.values()) // 2

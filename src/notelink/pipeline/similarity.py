"""Pairwise cosine similarity between changed documents and the rest of the index."""

import logging
from collections.abc import Iterable, Mapping

import numpy as np

from ..models import PairScore, pair_key

logger = logging.getLogger(__name__)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity clamped to [0, 1]."""
    va, vb = np.asarray(a, dtype=float), np.asarray(b, dtype=float)
    sim = float(np.dot(va, vb) / (np.linalg.norm(va) * np.linalg.norm(vb) + 1e-8))
    return min(1.0, max(0.0, sim))


def similar_pairs(
    embeddings: Mapping[str, list[float]],
    target_ids: Iterable[str],
    threshold: float,
) -> list[PairScore]:
    """Canonical pairs between each target and every other embedded document at or above threshold.

    Each pair appears once even when both sides are targets. Vectors whose
    dimension differs from the majority (left over from another model) are
    skipped.
    """
    if len(embeddings) < 2:
        return []

    dims: dict[int, int] = {}
    for vector in embeddings.values():
        dims[len(vector)] = dims.get(len(vector), 0) + 1
    dim = max(dims, key=dims.get)

    ids = [doc_id for doc_id, vector in embeddings.items() if len(vector) == dim]
    if len(ids) < len(embeddings):
        logger.warning("Skipping %d embedding(s) with mismatched dimension", len(embeddings) - len(ids))
    if len(ids) < 2:
        return []

    matrix = np.array([embeddings[doc_id] for doc_id in ids], dtype=float)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    normalized = matrix / (norms + 1e-8)
    position = {doc_id: i for i, doc_id in enumerate(ids)}

    seen: set[str] = set()
    pairs: list[PairScore] = []
    for target in target_ids:
        i = position.get(target)
        if i is None:
            continue
        sims = np.clip(normalized @ normalized[i], 0.0, 1.0)
        for j, other in enumerate(ids):
            if j == i:
                continue
            sim = float(sims[j])
            if sim < threshold:
                continue
            key = pair_key(target, other)
            if key in seen:
                continue
            seen.add(key)
            pairs.append(PairScore(id_1=target, id_2=other, similarity_score=sim).canonical())

    pairs.sort(key=lambda p: p.similarity_score, reverse=True)
    return pairs

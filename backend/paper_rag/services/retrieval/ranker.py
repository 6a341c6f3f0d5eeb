"""Embedding-based ranker using cosine similarity."""

from __future__ import annotations

from typing import List, Sequence, Tuple
import numpy as np


def cosine_scores(query_embedding: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of the query against every row of `matrix`."""
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float32)
    q = np.asarray(query_embedding, dtype=np.float32)
    if matrix.shape[1] != q.shape[0]:
        return np.zeros(matrix.shape[0], dtype=np.float32)

    row_norms = np.linalg.norm(matrix, axis=1)
    q_norm = np.linalg.norm(q)
    if q_norm <= 0:
        return np.zeros(matrix.shape[0], dtype=np.float32)
    denom = row_norms * q_norm
    scores = np.zeros(matrix.shape[0], dtype=np.float32)
    nonzero = denom > 0
    scores[nonzero] = (matrix[nonzero] @ q) / denom[nonzero]
    return scores


def rank_indices(
    query_embedding: Sequence[float],
    vectors: List[List[float]],
    top_k: int = 8,
    score_threshold: float = 0.0,
) -> List[Tuple[int, float]]:
    """Return (row index, score) pairs above the threshold, best first."""
    if not vectors:
        return []
    matrix = np.asarray(vectors, dtype=np.float32)
    scores = cosine_scores(query_embedding, matrix)
    order = np.argsort(-scores, kind="stable")
    ranked: List[Tuple[int, float]] = []
    for idx in order[: max(1, int(top_k))]:
        score = float(scores[idx])
        if score < score_threshold:
            break
        ranked.append((int(idx), score))
    return ranked

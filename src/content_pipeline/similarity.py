"""
Vector similarity helpers (numpy).

Cosine similarity is mapped onto [0, 1] by clamping negatives to 0, so a
threshold can be applied as a plain lower bound.
"""

from collections.abc import Sequence

import numpy as np


def as_matrix(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Stack vectors into a float64 matrix (n x d)."""
    if not vectors:
        return np.zeros((0, 0), dtype=np.float64)
    return np.asarray(vectors, dtype=np.float64)


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalize each row; zero rows stay zero."""
    if matrix.size == 0:
        return matrix
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors, clamped to [0, 1]."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Dimension mismatch: {va.shape} vs {vb.shape}")
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / norm, 0.0, 1.0))


def cosine_similarities(query: Sequence[float], vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Similarity of ``query`` against every row of ``vectors``, clamped to [0, 1]."""
    matrix = as_matrix(vectors)
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float64)
    q = np.asarray(query, dtype=np.float64)
    if matrix.shape[1] != q.shape[0]:
        raise ValueError(f"Dimension mismatch: query {q.shape[0]} vs index {matrix.shape[1]}")
    q_norm = np.linalg.norm(q)
    if q_norm == 0:
        return np.zeros(matrix.shape[0], dtype=np.float64)
    scores = normalize_rows(matrix) @ (q / q_norm)
    return np.clip(scores, 0.0, 1.0)


def similarity_matrix(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Pairwise cosine similarity (n x n), clamped to [0, 1]."""
    matrix = normalize_rows(as_matrix(vectors))
    if matrix.size == 0:
        return np.zeros((0, 0), dtype=np.float64)
    return np.clip(matrix @ matrix.T, 0.0, 1.0)


def centroid(vectors: Sequence[Sequence[float]]) -> list[float]:
    """Mean vector, or an empty list for no input."""
    matrix = as_matrix(vectors)
    if matrix.size == 0:
        return []
    return matrix.mean(axis=0).tolist()

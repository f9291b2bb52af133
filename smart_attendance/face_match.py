import logging
from typing import List, Sequence, Union

import numpy as np

from .exceptions import DimensionMismatch, InsufficientEnrollment
from .models import Comparison, FaceEmbedding, MatchResult

logger = logging.getLogger(__name__)

Vector = Union[Sequence[float], np.ndarray]

DEFAULT_MATCH_DISTANCE = 0.6
MIN_ENROLLED_EMBEDDINGS = 3


def euclidean_distance(embedding1: Vector, embedding2: Vector) -> float:
    """
    Euclidean distance between two face embeddings.

    Raises:
        DimensionMismatch: if the vectors have different lengths
    """
    a = np.asarray(embedding1, dtype=np.float64).ravel()
    b = np.asarray(embedding2, dtype=np.float64).ravel()
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatch(a.shape[0], b.shape[0])
    return float(np.linalg.norm(a - b))


def compare(embedding1: Vector, embedding2: Vector) -> Comparison:
    """
    Compare two embeddings: similarity = max(0, 1 - distance).

    Stored data can be heterogeneous, so a dimension mismatch scores as
    similarity 0 instead of failing the whole match.
    """
    try:
        distance = euclidean_distance(embedding1, embedding2)
    except DimensionMismatch as e:
        logger.error(f"❌ {e.message}")
        return Comparison(distance=1.0, similarity=0.0, error=e.message)
    return Comparison(distance=distance, similarity=max(0.0, 1.0 - distance))


def find_best_match(
    query: Vector,
    candidates: Sequence[Vector],
    threshold: float = DEFAULT_MATCH_DISTANCE,
) -> MatchResult:
    """
    Linear scan for the most similar stored embedding.

    Args:
        query: Embedding from the submitted image
        candidates: Stored embeddings, in creation order
        threshold: Maximum distance that still counts as a match

    Returns:
        MatchResult; ties keep the first candidate encountered
    """
    if query is None or len(candidates) == 0:
        return MatchResult()

    best_index = -1
    best: Comparison = None
    similarities: List[float] = []
    for index, candidate in enumerate(candidates):
        comparison = compare(query, candidate)
        similarities.append(comparison.similarity)
        if best is None or comparison.similarity > best.similarity:
            best = comparison
            best_index = index

    return MatchResult(
        best_similarity=best.similarity,
        best_distance=best.distance,
        matched_index=best_index,
        is_match=best.error is None and best.distance <= threshold,
        all_similarities=similarities,
    )


def ensure_enrollment(embeddings: Sequence[FaceEmbedding], minimum: int = MIN_ENROLLED_EMBEDDINGS) -> None:
    if len(embeddings) < minimum:
        raise InsufficientEnrollment(found=len(embeddings), required=minimum)


class FaceMatcher:
    """Embedding comparison with the configured match distance and enrollment minimum."""

    def __init__(self, match_distance: float = DEFAULT_MATCH_DISTANCE, min_embeddings: int = MIN_ENROLLED_EMBEDDINGS):
        self.match_distance = match_distance
        self.min_embeddings = min_embeddings

    def compare(self, embedding1: Vector, embedding2: Vector) -> Comparison:
        return compare(embedding1, embedding2)

    def find_best_match(self, query: Vector, stored: Sequence[FaceEmbedding]) -> MatchResult:
        ensure_enrollment(stored, self.min_embeddings)
        result = find_best_match(query, [e.vector for e in stored], self.match_distance)
        logger.info(
            f"🔍 Face matching result: similarity={result.best_similarity:.3f}, "
            f"index={result.matched_index}, is_match={result.is_match}"
        )
        return result

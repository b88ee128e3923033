from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

import numpy as np

from qattend.errors import DimensionMismatchError

DEFAULT_SIMILARITY_THRESHOLD = 0.45


@dataclass
class FaceProfile:
    """A user's enrolled face samples. Embeddings all share one dimension."""
    user_id: str
    embeddings: np.ndarray                      # (N, D)
    similarity_threshold: Optional[float] = None
    quality_score: Optional[float] = None
    profile_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.embeddings = as_matrix(self.embeddings)

    @property
    def dimension(self) -> int:
        return int(self.embeddings.shape[1]) if self.embeddings.size else 0

    def effective_threshold(self, default: float = DEFAULT_SIMILARITY_THRESHOLD) -> float:
        if self.similarity_threshold is None:
            return default
        return float(self.similarity_threshold)


@dataclass(frozen=True)
class MatchResult:
    accepted: bool
    similarity: float
    threshold: float
    best_index: int
    similarities: Sequence[float] = field(default_factory=tuple)


def as_matrix(vectors) -> np.ndarray:
    """Stack vectors into an (N, D) float32 matrix, rejecting ragged input."""
    if isinstance(vectors, np.ndarray) and vectors.ndim == 2:
        return vectors.astype(np.float32, copy=False)

    rows = [np.asarray(v, dtype=np.float32).reshape(-1) for v in vectors]
    if not rows:
        return np.zeros((0, 0), dtype=np.float32)
    lengths = {r.shape[0] for r in rows}
    if len(lengths) > 1:
        raise DimensionMismatchError(
            f"All embeddings must have the same dimension, got {sorted(lengths)}"
        )
    return np.vstack(rows)


def cosine_similarities(fresh, stored: np.ndarray) -> np.ndarray:
    fresh = np.asarray(fresh, dtype=np.float32).reshape(-1)
    stored = as_matrix(stored)
    if stored.shape[1] != fresh.shape[0]:
        raise DimensionMismatchError(
            f"Embedding dimension mismatch. Expected {stored.shape[1]}, got {fresh.shape[0]}"
        )

    fresh_norm = float(np.linalg.norm(fresh))
    stored_norms = np.linalg.norm(stored, axis=1)
    dots = stored @ fresh
    denom = stored_norms * fresh_norm
    # Zero vectors have no direction; they score 0 instead of NaN.
    return np.divide(dots, denom, out=np.zeros_like(dots), where=denom > 0)


def average_embeddings(vectors) -> np.ndarray:
    """Mean of the vectors, L2-normalized."""
    matrix = as_matrix(vectors)
    if matrix.shape[0] == 0:
        raise ValueError("Cannot average an empty embedding list")
    mean = matrix.mean(axis=0)
    norm = float(np.linalg.norm(mean))
    return mean / norm if norm > 0 else mean


def verification_confidence(similarity: float, threshold: float) -> str:
    if similarity >= threshold + 0.05:
        return "high"
    if similarity >= threshold + 0.02:
        return "medium"
    return "low"


class ProfileMatcher:
    def __init__(self, default_threshold: float = DEFAULT_SIMILARITY_THRESHOLD):
        self.default_threshold = default_threshold

    def match(self, fresh_embedding, profile: FaceProfile) -> MatchResult:
        """Max cosine similarity over the profile's samples, compared to its threshold."""
        if profile.embeddings.shape[0] == 0:
            raise ValueError(f"Face profile for {profile.user_id} has no embeddings")

        sims = cosine_similarities(fresh_embedding, profile.embeddings)
        best = int(np.argmax(sims))
        similarity = float(sims[best])
        threshold = profile.effective_threshold(self.default_threshold)

        return MatchResult(
            accepted=similarity >= threshold,
            similarity=similarity,
            threshold=threshold,
            best_index=best,
            similarities=tuple(float(s) for s in sims),
        )

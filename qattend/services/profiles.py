import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from qattend.errors import DimensionMismatchError, FaceProfileNotFoundError, QAttendError, ValidationError, WriteError
from qattend.face_engine.matcher import FaceProfile, as_matrix, average_embeddings
from qattend.services.store import AttendanceStore
from qattend.utils.logger import logger

DEFAULT_PROFILE_QUALITY = 0.8


@dataclass(frozen=True)
class StoredProfile:
    profile_id: str
    embedding_count: int
    dimension: int
    quality_score: float


def validate_embeddings(embeddings) -> np.ndarray:
    """Non-empty, uniform-length, finite, non-zero vectors as an (N, D) matrix."""
    if embeddings is None or not isinstance(embeddings, (list, tuple)) or len(embeddings) == 0:
        raise ValidationError("Embeddings array is required")

    for vector in embeddings:
        if not isinstance(vector, (list, tuple)) or len(vector) == 0:
            raise ValidationError("Each embedding must be a non-empty array of numbers")
        for value in vector:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise ValidationError("Embedding contains invalid values")

    try:
        matrix = as_matrix(embeddings)
    except DimensionMismatchError as e:
        raise ValidationError(e.message) from e

    if np.any(~matrix.any(axis=1)):
        raise ValidationError("Embedding cannot be all zeros")
    return matrix


def _profile_quality(qualities: Optional[Sequence[float]], count: int) -> float:
    if not qualities:
        return DEFAULT_PROFILE_QUALITY
    if len(qualities) != count:
        raise ValidationError("qualities must have one entry per embedding")
    if any(not (0.0 <= float(q) <= 1.0) for q in qualities):
        raise ValidationError("qualities must be within [0, 1]")
    return float(sum(qualities) / len(qualities))


class FaceProfileService:
    def __init__(self, store: AttendanceStore):
        self.store = store

    def store_profile(self, user_id: str, embeddings, qualities: Optional[Sequence[float]] = None) -> StoredProfile:
        """
        Replace the user's face profile with the given enrollment samples.

        The old profile is deleted before the new one is inserted. If the
        embedding rows cannot be written, the freshly created profile row is
        removed again (best effort) and WriteError is raised.
        """
        matrix = validate_embeddings(embeddings)
        quality = _profile_quality(qualities, matrix.shape[0])

        mean = average_embeddings(matrix)
        logger.info(
            f"Enrolling face profile for {user_id}: {matrix.shape[0]} samples, "
            f"dim={matrix.shape[1]}, mean norm before normalization="
            f"{float(np.linalg.norm(matrix.mean(axis=0))):.4f}, mean[:3]={np.round(mean[:3], 4).tolist()}"
        )

        self.store.delete_face_profile(user_id)
        profile_id = self.store.create_face_profile(user_id, quality, matrix.shape[0])

        rows: List[dict] = []
        for i, vector in enumerate(matrix):
            row = {"embedding": [float(v) for v in vector]}
            if qualities:
                row["quality_score"] = round(float(qualities[i]), 3)
            rows.append(row)

        try:
            self.store.insert_profile_embeddings(profile_id, rows)
        except WriteError:
            try:
                self.store.delete_face_profile_by_id(profile_id)
            except QAttendError:
                logger.error(f"❌ Rollback of face profile {profile_id} failed; row left behind")
            raise WriteError("Failed to store face embeddings")

        logger.info(f"✅ Face profile {profile_id} stored for {user_id}")
        return StoredProfile(
            profile_id=profile_id,
            embedding_count=int(matrix.shape[0]),
            dimension=int(matrix.shape[1]),
            quality_score=quality,
        )

    def load_profile(self, user_id: str) -> FaceProfile:
        profile = self.store.get_face_profile(user_id)
        if profile is None or profile.embeddings.shape[0] == 0:
            raise FaceProfileNotFoundError()
        return profile

"""
Face pipeline: detect -> select -> align -> embed -> quality-gate.

Frames are BGR ``uint8`` arrays of shape (H, W, 3), the layout OpenCV and
InsightFace work in. Nothing here keeps state between calls apart from the
models held by the runtime.
"""
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from qattend.errors import LowQualityError, NoFaceDetectedError
from qattend.face_engine.runtime import FaceModelRuntime

# Variance of the Laplacian at which a crop counts as fully sharp.
SHARPNESS_REFERENCE = 300.0
# Shorter bbox side (pixels) at which a face counts as full size.
FACE_SIZE_REFERENCE = 112.0

QUALITY_WEIGHTS = (0.5, 0.3, 0.2)  # confidence, sharpness, size


@dataclass(frozen=True)
class FaceDetection:
    bbox: Tuple[float, float, float, float]  # x1, y1, x2, y2
    confidence: float
    landmarks: Optional[np.ndarray] = None   # (5, 2) or None

    @property
    def width(self) -> float:
        return max(0.0, self.bbox[2] - self.bbox[0])

    @property
    def height(self) -> float:
        return max(0.0, self.bbox[3] - self.bbox[1])


@dataclass(frozen=True)
class FaceEmbedding:
    vector: np.ndarray   # L2-normalized float32
    quality: float       # [0, 1]
    detection: FaceDetection

    def as_list(self) -> List[float]:
        return [float(v) for v in self.vector]


def decode_image(data: bytes) -> Optional[np.ndarray]:
    """Decode encoded image bytes (JPEG/PNG) into a BGR frame, or None."""
    if not data:
        return None
    arr = np.frombuffer(data, np.uint8)
    return cv2.imdecode(arr, cv2.IMREAD_COLOR)


def _check_frame(image) -> np.ndarray:
    if not isinstance(image, np.ndarray) or image.ndim != 3 or image.shape[2] != 3:
        raise ValueError("Expected a BGR image of shape (H, W, 3)")
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)
    return image


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    vector = np.asarray(vector, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return vector
    return vector / norm


def sharpness_score(crop: np.ndarray) -> float:
    if crop.size == 0:
        return 0.0
    gray = cv2.cvtColor(crop, cv2.COLOR_BGR2GRAY)
    variance = cv2.Laplacian(gray, cv2.CV_64F).var()
    return float(max(0.0, min(variance / SHARPNESS_REFERENCE, 1.0)))


def size_score(detection: FaceDetection) -> float:
    side = min(detection.width, detection.height)
    return float(max(0.0, min(side / FACE_SIZE_REFERENCE, 1.0)))


def quality_score(detection: FaceDetection, crop: np.ndarray) -> float:
    w_conf, w_sharp, w_size = QUALITY_WEIGHTS
    confidence = max(0.0, min(detection.confidence, 1.0))
    score = w_conf * confidence + w_sharp * sharpness_score(crop) + w_size * size_score(detection)
    return float(round(score, 4))


class FacePipeline:
    def __init__(self, runtime: FaceModelRuntime,
                 min_detection_confidence: Optional[float] = None,
                 min_quality: Optional[float] = None):
        self.runtime = runtime
        settings = runtime.settings
        self.min_detection_confidence = (
            settings.min_detection_confidence if min_detection_confidence is None
            else min_detection_confidence
        )
        self.min_quality = settings.min_face_quality if min_quality is None else min_quality

    # -----------------------------
    # Detection
    # -----------------------------
    def detect_faces(self, image) -> List[FaceDetection]:
        """All detections, highest confidence first. Empty when no face is present."""
        detector = self.runtime.detector
        image = _check_frame(image)

        bboxes, kpss = detector.detect(image, max_num=0)
        if bboxes is None or len(bboxes) == 0:
            return []

        detections = []
        for i, row in enumerate(bboxes):
            x1, y1, x2, y2, score = (float(v) for v in row[:5])
            landmarks = None
            if kpss is not None and len(kpss) > i:
                landmarks = np.asarray(kpss[i], dtype=np.float32)
            detections.append(FaceDetection(bbox=(x1, y1, x2, y2), confidence=score, landmarks=landmarks))

        detections.sort(key=lambda d: d.confidence, reverse=True)
        return detections

    def select_face(self, detections: List[FaceDetection]) -> Optional[FaceDetection]:
        qualifying = [d for d in detections if d.confidence >= self.min_detection_confidence]
        if not qualifying:
            return None
        return max(qualifying, key=lambda d: d.confidence)

    # -----------------------------
    # Alignment
    # -----------------------------
    def align_face(self, image: np.ndarray, detection: FaceDetection) -> np.ndarray:
        width, height = self.runtime.embedder_input_size

        if detection.landmarks is not None and detection.landmarks.shape == (5, 2) and width == height:
            from insightface.utils import face_align
            return face_align.norm_crop(image, landmark=detection.landmarks, image_size=width)

        h, w = image.shape[:2]
        x1, y1, x2, y2 = detection.bbox
        x1, y1 = max(0, int(round(x1))), max(0, int(round(y1)))
        x2, y2 = min(w, int(round(x2))), min(h, int(round(y2)))
        crop = image[y1:y2, x1:x2]
        if crop.size == 0:
            raise NoFaceDetectedError("Detected face lies outside the frame")
        return cv2.resize(crop, (width, height), interpolation=cv2.INTER_LINEAR)

    # -----------------------------
    # Embedding
    # -----------------------------
    def extract_face_embedding(self, image) -> FaceEmbedding:
        """
        Embedding of the most confident face in ``image``.

        Raises NoFaceDetectedError when no detection clears the minimum
        confidence and LowQualityError when the crop scores below the
        configured minimum quality.
        """
        image = _check_frame(image)
        detection = self.select_face(self.detect_faces(image))
        if detection is None:
            raise NoFaceDetectedError()

        aligned = self.align_face(image, detection)
        quality = quality_score(detection, aligned)
        if quality < self.min_quality:
            raise LowQualityError(quality, self.min_quality)

        raw = self.runtime.embedder.get_feat(aligned)
        vector = l2_normalize(np.asarray(raw).reshape(-1))
        return FaceEmbedding(vector=vector, quality=quality, detection=detection)

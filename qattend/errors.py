"""
Error taxonomy shared by the face pipeline, the attendance services, the HTTP
layer and the API client.

Every error carries an ``ErrorKind`` assigned where it is raised. The HTTP
layer turns it into ``{"error": message, "code": kind}`` and the client turns
the ``code`` back into the same exception class, so retry decisions never
depend on message text.
"""
from enum import Enum
from typing import Dict, Optional, Type


class ErrorKind(str, Enum):
    MODEL_LOAD = "model_load"
    RUNTIME_NOT_READY = "runtime_not_ready"
    NO_FACE = "no_face"
    LOW_QUALITY = "low_quality"
    DIMENSION_MISMATCH = "dimension_mismatch"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    NOT_ENROLLED = "not_enrolled"
    TRANSIENT_STORE = "transient_store"
    WRITE_FAILED = "write_failed"
    UNAUTHORIZED = "unauthorized"
    INVALID_REQUEST = "invalid_request"
    NO_FACE_PROFILE = "no_face_profile"
    FACE_MISMATCH = "face_mismatch"
    SESSION_CLOSED = "session_closed"
    INTERNAL = "internal"


class QAttendError(Exception):
    """Base class. Subclasses pin ``kind``, ``status_code`` and ``retryable``."""

    kind: ErrorKind = ErrorKind.INTERNAL
    status_code: int = 500
    retryable: bool = False
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.kind.value}


# --- Face pipeline / matcher ---

class ModelLoadError(QAttendError):
    kind = ErrorKind.MODEL_LOAD
    status_code = 503
    default_message = "Face recognition is temporarily unavailable"


class RuntimeNotReadyError(QAttendError):
    kind = ErrorKind.RUNTIME_NOT_READY
    status_code = 503
    default_message = "Face models are not loaded yet"


class NoFaceDetectedError(QAttendError):
    kind = ErrorKind.NO_FACE
    status_code = 422
    default_message = "No face detected. Make sure your face is clearly visible and try again."


class LowQualityError(QAttendError):
    kind = ErrorKind.LOW_QUALITY
    status_code = 422
    default_message = "Face quality too low. Use good lighting and face the camera directly."

    def __init__(self, quality: float, minimum: float, message: Optional[str] = None):
        self.quality = quality
        self.minimum = minimum
        super().__init__(message or f"Face quality too low ({quality:.2f} < {minimum:.2f}). "
                                    "Use good lighting and face the camera directly.")


class DimensionMismatchError(QAttendError):
    kind = ErrorKind.DIMENSION_MISMATCH
    status_code = 400
    default_message = "Embedding dimensions do not match"


# --- Attendance authorizer ---

class InvalidTokenError(QAttendError):
    kind = ErrorKind.INVALID_TOKEN
    status_code = 400
    default_message = "Invalid QR code"


class TokenExpiredError(QAttendError):
    kind = ErrorKind.TOKEN_EXPIRED
    status_code = 400
    default_message = "QR code has expired"


class NotEnrolledError(QAttendError):
    kind = ErrorKind.NOT_ENROLLED
    status_code = 403
    default_message = "You are not enrolled in this class"


class TransientStoreError(QAttendError):
    kind = ErrorKind.TRANSIENT_STORE
    status_code = 500
    retryable = True
    default_message = "Database temporarily unavailable, please try again"


class WriteError(QAttendError):
    kind = ErrorKind.WRITE_FAILED
    status_code = 500
    default_message = "Failed to mark attendance"


class FaceProfileNotFoundError(QAttendError):
    kind = ErrorKind.NO_FACE_PROFILE
    status_code = 404
    default_message = "No face profile found. Please enroll your face first."


class FaceMismatchError(QAttendError):
    kind = ErrorKind.FACE_MISMATCH
    status_code = 403
    default_message = "Face verification failed"

    def __init__(self, similarity: float, threshold: float):
        self.similarity = similarity
        self.threshold = threshold
        super().__init__(
            f"Face verification failed: similarity {similarity * 100:.1f}% "
            f"is below required {threshold * 100:.1f}%"
        )

    def to_dict(self) -> dict:
        body = super().to_dict()
        body.update(similarity=self.similarity, threshold=self.threshold)
        return body


# --- Any endpoint ---

class UnauthorizedError(QAttendError):
    kind = ErrorKind.UNAUTHORIZED
    status_code = 401
    default_message = "Unauthorized"


class ValidationError(QAttendError):
    kind = ErrorKind.INVALID_REQUEST
    status_code = 400
    default_message = "Invalid request"


class SessionClosedError(QAttendError):
    kind = ErrorKind.SESSION_CLOSED
    status_code = 409
    default_message = "No verification session is open"


_BY_KIND: Dict[ErrorKind, Type[QAttendError]] = {
    cls.kind: cls
    for cls in (
        ModelLoadError, RuntimeNotReadyError, NoFaceDetectedError,
        DimensionMismatchError, InvalidTokenError, TokenExpiredError,
        NotEnrolledError, TransientStoreError, WriteError, UnauthorizedError,
        ValidationError, FaceProfileNotFoundError, SessionClosedError,
    )
}


def error_from_payload(payload: dict, status_code: int) -> QAttendError:
    """Rebuild a typed error from an ``{"error", "code"}`` response body."""
    message = payload.get("error") or payload.get("message")
    try:
        kind = ErrorKind(payload.get("code"))
    except ValueError:
        kind = ErrorKind.INTERNAL

    if kind is ErrorKind.FACE_MISMATCH:
        return FaceMismatchError(float(payload.get("similarity", 0.0)),
                                 float(payload.get("threshold", 0.0)))
    if kind is ErrorKind.LOW_QUALITY:
        return LowQualityError(0.0, 0.0, message=message)

    cls = _BY_KIND.get(kind)
    if cls is not None:
        return cls(message)

    err = QAttendError(message)
    err.status_code = status_code
    return err

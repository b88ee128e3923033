"""
Client-side verification session.

One controller object owns the whole dialog state: whether a session is
open, which class session it is for, and the single pending success callback.
The flow is capture -> pipeline -> matcher -> (accept) callback -> close.
"""
import asyncio
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import numpy as np

from qattend.errors import (
    DimensionMismatchError, ErrorKind, LowQualityError, NoFaceDetectedError, QAttendError,
    RuntimeNotReadyError, SessionClosedError,
)
from qattend.face_engine.matcher import FaceProfile, ProfileMatcher, verification_confidence
from qattend.face_engine.pipeline import FaceDetection, FacePipeline
from qattend.utils.logger import logger

SuccessCallback = Callable[[], Union[Any, Awaitable[Any]]]

# Errors that end one attempt but leave the session open for another try.
ATTEMPT_ERRORS = (NoFaceDetectedError, LowQualityError, DimensionMismatchError, RuntimeNotReadyError)


class SessionState(str, Enum):
    IDLE = "idle"
    OPEN = "open"


@dataclass(frozen=True)
class SessionInfo:
    class_id: str
    token: str
    session_id: Optional[str] = None
    session_date: Optional[str] = None


@dataclass(frozen=True)
class VerificationOutcome:
    accepted: bool                 # face matched the profile
    completed: bool                # success callback ran to completion
    message: str
    similarity: Optional[float] = None
    threshold: Optional[float] = None
    quality: Optional[float] = None
    error_kind: Optional[ErrorKind] = None
    retryable: bool = False
    result: Any = None


def _percent(value: float) -> str:
    return f"{value * 100:.1f}%"


async def _run_callback(callback: SuccessCallback) -> Any:
    if inspect.iscoroutinefunction(callback):
        return await callback()
    # Plain callables usually do blocking HTTP; keep them off the event loop.
    result = await asyncio.to_thread(callback)
    if inspect.isawaitable(result):
        result = await result
    return result


class VerificationSessionController:
    def __init__(self, pipeline: FacePipeline, matcher: Optional[ProfileMatcher] = None):
        self.pipeline = pipeline
        self.matcher = matcher or ProfileMatcher(pipeline.runtime.settings.default_similarity_threshold)
        self._state = SessionState.IDLE
        self._session_info: Optional[SessionInfo] = None
        self._on_success: Optional[SuccessCallback] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is SessionState.OPEN

    @property
    def session_info(self) -> Optional[SessionInfo]:
        return self._session_info

    def open(self, session_info: SessionInfo, on_success: SuccessCallback) -> None:
        """Start a session. An already open session is replaced, callback included."""
        if self.is_open:
            logger.debug(f"Replacing open verification session for class {self._session_info.class_id}")
        self._session_info = session_info
        self._on_success = on_success
        self._state = SessionState.OPEN

    def close(self) -> None:
        self._state = SessionState.IDLE
        self._session_info = None
        self._on_success = None

    async def on_verification_success(self) -> Any:
        """
        Run the pending callback, then close the session.

        If the callback raises, the error propagates and the session stays
        open so the user can retry.
        """
        return await self._complete(self._session_info, self._on_success)

    async def _complete(self, session_info: Optional[SessionInfo], callback: Optional[SuccessCallback]) -> Any:
        result = None
        if callback is not None:
            result = await _run_callback(callback)
        # A session opened while the callback ran is not ours to close.
        if self._session_info is session_info:
            self.close()
        return result

    def _is_current(self, session_info: SessionInfo) -> bool:
        return self.is_open and self._session_info is session_info

    async def poll_for_face(self, frame: np.ndarray) -> Optional[FaceDetection]:
        """Best qualifying face in a preview frame, or None. "No face" is not an error here."""
        detections = await asyncio.to_thread(self.pipeline.detect_faces, frame)
        return self.pipeline.select_face(detections)

    async def verify(self, frame: np.ndarray, profile: FaceProfile) -> VerificationOutcome:
        """
        Verify ``frame`` against ``profile`` for the session open at call time.

        If that session is closed or replaced while inference runs, the
        attempt ends without running any callback.
        """
        if not self.is_open:
            raise SessionClosedError()
        session_info, callback = self._session_info, self._on_success

        try:
            embedding = await asyncio.to_thread(self.pipeline.extract_face_embedding, frame)
        except ATTEMPT_ERRORS as e:
            logger.info(f"Verification attempt aborted: {e.kind.value}")
            return VerificationOutcome(accepted=False, completed=False, message=e.message,
                                       error_kind=e.kind, retryable=e.retryable)

        if not self._is_current(session_info):
            logger.info(f"Verification session for class {session_info.class_id} ended during inference")
            closed = SessionClosedError()
            return VerificationOutcome(accepted=False, completed=False, message=closed.message,
                                       quality=embedding.quality, error_kind=closed.kind)

        try:
            match = self.matcher.match(embedding.vector, profile)
        except DimensionMismatchError as e:
            return VerificationOutcome(accepted=False, completed=False, message=e.message,
                                       quality=embedding.quality, error_kind=e.kind)

        if not match.accepted:
            return VerificationOutcome(
                accepted=False,
                completed=False,
                message=f"Face similarity too low: {_percent(match.similarity)} "
                        f"(required: {_percent(match.threshold)})",
                similarity=match.similarity,
                threshold=match.threshold,
                quality=embedding.quality,
                error_kind=ErrorKind.FACE_MISMATCH,
            )

        try:
            result = await self._complete(session_info, callback)
        except QAttendError as e:
            return VerificationOutcome(accepted=True, completed=False, message=e.message,
                                       similarity=match.similarity, threshold=match.threshold,
                                       quality=embedding.quality, error_kind=e.kind,
                                       retryable=e.retryable)

        confidence = verification_confidence(match.similarity, match.threshold)
        return VerificationOutcome(
            accepted=True,
            completed=True,
            message=f"Face verified with {_percent(match.similarity)} similarity ({confidence} confidence)",
            similarity=match.similarity,
            threshold=match.threshold,
            quality=embedding.quality,
            result=result,
        )

    async def capture_and_verify(self, capture: Callable[[], np.ndarray], profile: FaceProfile) -> VerificationOutcome:
        """Grab one frame from ``capture`` and verify it. The frame is dropped afterwards."""
        frame = await asyncio.to_thread(capture)
        if frame is None:
            return VerificationOutcome(accepted=False, completed=False,
                                       message="Could not read a frame from the camera")
        try:
            return await self.verify(frame, profile)
        finally:
            del frame

"""
QR attendance authorization.

A request walks TOKEN_LOOKUP -> TOKEN_VALIDITY -> ENROLLMENT_CHECK ->
DUPLICATE_CHECK -> COMMIT and stops at the first stage that fails. Nothing is
written before COMMIT, so every failure leaves the store untouched. The flow
holds no state between requests; the store is the only shared resource.
"""
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Callable, Optional, Sequence

from qattend.errors import (
    FaceMismatchError, FaceProfileNotFoundError, InvalidTokenError, NotEnrolledError,
    TokenExpiredError, ValidationError,
)
from qattend.face_engine.matcher import MatchResult, ProfileMatcher
from qattend.services.store import AttendanceStore
from qattend.utils.logger import logger
from qattend.utils.time_utils import parse_timestamp, utc_now, utc_today


class Stage(str, Enum):
    TOKEN_LOOKUP = "token_lookup"
    TOKEN_VALIDITY = "token_validity"
    ENROLLMENT_CHECK = "enrollment_check"
    DUPLICATE_CHECK = "duplicate_check"
    COMMIT = "commit"


@dataclass(frozen=True)
class AttendanceOutcome:
    class_id: str
    session_date: date
    already_marked: bool
    decided_at: Stage = Stage.COMMIT
    marked_at: Optional[datetime] = None
    match: Optional[MatchResult] = None

    @property
    def message(self) -> str:
        if self.already_marked:
            return "Attendance already marked for today"
        return "Attendance marked successfully"


class AttendanceAuthorizer:
    def __init__(self, store: AttendanceStore,
                 clock: Callable[[], datetime] = utc_now,
                 matcher: Optional[ProfileMatcher] = None):
        self.store = store
        self.clock = clock
        self.matcher = matcher or ProfileMatcher()

    def authorize(self, student_id: str, token: str) -> AttendanceOutcome:
        now = self.clock()
        class_id = self._admit(student_id, token, now)
        return self._commit(student_id, class_id, now)

    def authorize_with_face(self, student_id: str, token: str, embedding: Sequence[float]) -> AttendanceOutcome:
        """
        Like ``authorize``, with a face match between enrollment and commit.

        The token is checked before the profile is read, so a stale or
        foreign token is rejected without any face feedback.
        """
        if embedding is None or len(embedding) == 0:
            raise ValidationError("Face embedding is required for verification")
        now = self.clock()
        class_id = self._admit(student_id, token, now)

        profile = self.store.get_face_profile(student_id)
        if profile is None or profile.embeddings.shape[0] == 0:
            raise FaceProfileNotFoundError()

        result = self.matcher.match(embedding, profile)
        logger.info(
            f"🎯 Face match for {student_id}: similarity={result.similarity:.4f} "
            f"threshold={result.threshold:.4f} -> {'accept' if result.accepted else 'reject'}"
        )
        if not result.accepted:
            logger.warning(f"Face verification rejected for {student_id}")
            raise FaceMismatchError(result.similarity, result.threshold)

        outcome = self._commit(student_id, class_id, now)
        return AttendanceOutcome(
            class_id=outcome.class_id,
            session_date=outcome.session_date,
            already_marked=outcome.already_marked,
            decided_at=outcome.decided_at,
            marked_at=outcome.marked_at,
            match=result,
        )

    def _admit(self, student_id: str, token: str, now: datetime) -> str:
        """TOKEN_LOOKUP, TOKEN_VALIDITY and ENROLLMENT_CHECK. Returns the class id."""
        if not token or not str(token).strip():
            raise ValidationError("Token is required")

        # TOKEN_LOOKUP
        class_row = self.store.find_class_by_token(token)
        if class_row is None:
            logger.warning(f"Invalid QR token presented by {student_id}")
            raise InvalidTokenError()
        class_id = str(class_row["id"])

        # TOKEN_VALIDITY (a missing expiration never validates)
        expiration = parse_timestamp(class_row.get("qr_expiration"))
        if expiration is None or now > expiration:
            logger.info(f"Expired QR token for class {class_id} (expired {expiration})")
            raise TokenExpiredError()

        # ENROLLMENT_CHECK
        if not self.store.is_enrolled(student_id, class_id):
            logger.warning(f"Student {student_id} not enrolled in class {class_id}")
            raise NotEnrolledError()
        return class_id

    def _commit(self, student_id: str, class_id: str, now: datetime) -> AttendanceOutcome:
        """DUPLICATE_CHECK, then COMMIT."""
        session_date = utc_today(now)
        if self.store.find_attendance(student_id, class_id, session_date) is not None:
            logger.info(f"Attendance already marked: {student_id} / {class_id} / {session_date}")
            return AttendanceOutcome(class_id=class_id, session_date=session_date, already_marked=True,
                                     decided_at=Stage.DUPLICATE_CHECK)

        inserted = self.store.insert_attendance_if_absent({
            "student_id": student_id,
            "class_id": class_id,
            "status": "present",
            "session_date": session_date.isoformat(),
            "timestamp": now.isoformat(),
        })
        if not inserted:
            # A concurrent request for the same student/class/day committed first.
            logger.info(f"Attendance insert lost the race: {student_id} / {class_id} / {session_date}")
            return AttendanceOutcome(class_id=class_id, session_date=session_date, already_marked=True)

        logger.info(f"📝 Attendance marked: {student_id} | {class_id} | {session_date}")
        return AttendanceOutcome(class_id=class_id, session_date=session_date,
                                 already_marked=False, marked_at=now)

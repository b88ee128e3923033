import secrets
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from qattend.errors import ValidationError
from qattend.services.store import AttendanceStore
from qattend.utils.logger import logger
from qattend.utils.time_utils import utc_now, utc_today


@dataclass(frozen=True)
class QRToken:
    class_id: str
    token: str
    expires_at: datetime


class QRSessionService:
    """Instructor-side QR session lifecycle: mint a token, close the session."""

    def __init__(self, store: AttendanceStore, ttl_seconds: int = 300,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    def mint_token(self, class_id: str) -> QRToken:
        """Replace the class's live token with a fresh one (one live token per class)."""
        now = self.clock()
        token = f"{class_id}:{int(now.timestamp() * 1000)}:{secrets.token_urlsafe(8)}"
        expires_at = now + self.ttl

        if not self.store.set_class_token(class_id, token, expires_at):
            raise ValidationError(f"Class {class_id} not found")

        logger.info(f"QR token generated for class {class_id}, expires {expires_at.isoformat()}")
        return QRToken(class_id=class_id, token=token, expires_at=expires_at)

    def close_session(self, class_id: str, session_date: Optional[date] = None) -> int:
        """Mark every enrolled student without a record for the day as absent."""
        now = self.clock()
        session_date = session_date or utc_today(now)

        enrolled = self.store.list_enrolled_students(class_id)
        marked = {r["student_id"] for r in self.store.list_attendance(class_id, session_date, limit=10000)}
        absent = [s for s in enrolled if s not in marked]
        if not absent:
            return 0

        count = self.store.insert_attendance_many([
            {
                "student_id": student_id,
                "class_id": class_id,
                "status": "absent",
                "session_date": session_date.isoformat(),
                "timestamp": now.isoformat(),
            }
            for student_id in absent
        ])
        logger.info(f"Marked {count} students absent in class {class_id} for {session_date}")
        return count

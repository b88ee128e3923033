"""
Persistence seam for attendance and face profiles.

``AttendanceStore`` lists what the services need from the backend;
``SupabaseStore`` implements it over PostgREST. Read failures surface as
``TransientStoreError`` and write failures as ``WriteError`` so callers never
mistake an outage for an authorization answer.
"""
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Type

import httpx
from postgrest.exceptions import APIError

from qattend import models
from qattend.errors import QAttendError, TransientStoreError, UnauthorizedError, WriteError
from qattend.face_engine.matcher import FaceProfile
from qattend.utils.logger import logger
from qattend.utils.supabase_utils import first_row, parse_embedding, response_rows
from qattend.utils.time_utils import parse_timestamp

CLASSES = models.ClassSession.__tablename__
ENROLLMENTS = models.Enrollment.__tablename__
ATTENDANCE = models.AttendanceRecord.__tablename__
FACE_PROFILES = models.FaceProfile.__tablename__
FACE_EMBEDDINGS = models.FaceProfileEmbedding.__tablename__

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


class AttendanceStore(ABC):
    # --- identity ---
    @abstractmethod
    def get_user_id(self, access_token: str) -> str:
        raise NotImplementedError

    # --- classes / QR tokens ---
    @abstractmethod
    def find_class_by_token(self, token: str) -> Optional[dict]:
        """``{"id", "qr_expiration"}`` of the class whose live token is ``token``."""
        raise NotImplementedError

    @abstractmethod
    def set_class_token(self, class_id: str, token: str, expiration: datetime) -> bool:
        """Replace the class's token. False when the class does not exist."""
        raise NotImplementedError

    # --- enrollments ---
    @abstractmethod
    def is_enrolled(self, student_id: str, class_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_enrolled_students(self, class_id: str) -> List[str]:
        raise NotImplementedError

    # --- attendance ---
    @abstractmethod
    def find_attendance(self, student_id: str, class_id: str, session_date: date) -> Optional[dict]:
        raise NotImplementedError

    @abstractmethod
    def insert_attendance_if_absent(self, record: dict) -> bool:
        """Insert unless (student, class, session_date) exists. True if this call inserted."""
        raise NotImplementedError

    @abstractmethod
    def insert_attendance_many(self, records: List[dict]) -> int:
        raise NotImplementedError

    @abstractmethod
    def list_attendance(self, class_id: Optional[str] = None, session_date: Optional[date] = None,
                        limit: int = 500) -> List[dict]:
        raise NotImplementedError

    # --- face profiles ---
    @abstractmethod
    def get_face_profile(self, user_id: str) -> Optional[FaceProfile]:
        raise NotImplementedError

    @abstractmethod
    def delete_face_profile(self, user_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def create_face_profile(self, user_id: str, quality_score: float, embedding_count: int) -> str:
        raise NotImplementedError

    @abstractmethod
    def insert_profile_embeddings(self, profile_id: str, rows: List[dict]) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_face_profile_by_id(self, profile_id: str) -> None:
        raise NotImplementedError

    # --- provisioning ---
    @abstractmethod
    def execute_sql(self, query: str) -> None:
        raise NotImplementedError


class SupabaseStore(AttendanceStore):
    def __init__(self, client):
        self.client = client

    def _execute(self, query, what: str, error_cls: Type[QAttendError] = TransientStoreError):
        try:
            return query.execute()
        except APIError as e:
            logger.error(f"❌ Database error during {what}: {e.message} (code={e.code})")
            raise error_cls() from e
        except httpx.HTTPError as e:
            logger.error(f"❌ Network error during {what}: {e}")
            raise error_cls() from e

    # --- identity ---
    def get_user_id(self, access_token: str) -> str:
        try:
            resp = self.client.auth.get_user(access_token)
        except Exception as e:
            logger.warning(f"Rejected access token: {e}")
            raise UnauthorizedError() from e
        user = getattr(resp, "user", None)
        if user is None or not getattr(user, "id", None):
            raise UnauthorizedError()
        return str(user.id)

    # --- classes / QR tokens ---
    def find_class_by_token(self, token: str) -> Optional[dict]:
        query = self.client.table(CLASSES).select("id, qr_expiration").eq("qr_token", token).limit(1)
        return first_row(self._execute(query, "token lookup"))

    def set_class_token(self, class_id: str, token: str, expiration: datetime) -> bool:
        query = self.client.table(CLASSES).update(
            {"qr_token": token, "qr_expiration": expiration.isoformat()}
        ).eq("id", class_id)
        return bool(response_rows(self._execute(query, "QR token update", WriteError)))

    # --- enrollments ---
    def is_enrolled(self, student_id: str, class_id: str) -> bool:
        query = self.client.table(ENROLLMENTS).select("id") \
            .eq("student_id", student_id).eq("class_id", class_id).limit(1)
        return first_row(self._execute(query, "enrollment check")) is not None

    def list_enrolled_students(self, class_id: str) -> List[str]:
        query = self.client.table(ENROLLMENTS).select("student_id").eq("class_id", class_id)
        return [r["student_id"] for r in response_rows(self._execute(query, "enrollment listing"))]

    # --- attendance ---
    def find_attendance(self, student_id: str, class_id: str, session_date: date) -> Optional[dict]:
        query = self.client.table(ATTENDANCE).select("id, status, timestamp") \
            .eq("student_id", student_id).eq("class_id", class_id) \
            .eq("session_date", session_date.isoformat()).limit(1)
        return first_row(self._execute(query, "duplicate check"))

    def insert_attendance_if_absent(self, record: dict) -> bool:
        query = self.client.table(ATTENDANCE).upsert(
            record,
            on_conflict=models.ATTENDANCE_CONFLICT_COLUMNS,
            ignore_duplicates=True,
        )
        try:
            resp = query.execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                return False
            logger.error(f"❌ Database error during attendance insert: {e.message} (code={e.code})")
            raise WriteError() from e
        except httpx.HTTPError as e:
            logger.error(f"❌ Network error during attendance insert: {e}")
            raise WriteError() from e
        # Ignored duplicates come back as an empty representation.
        return bool(response_rows(resp))

    def insert_attendance_many(self, records: List[dict]) -> int:
        if not records:
            return 0
        query = self.client.table(ATTENDANCE).upsert(
            records,
            on_conflict=models.ATTENDANCE_CONFLICT_COLUMNS,
            ignore_duplicates=True,
        )
        return len(response_rows(self._execute(query, "bulk attendance insert", WriteError)))

    def list_attendance(self, class_id: Optional[str] = None, session_date: Optional[date] = None,
                        limit: int = 500) -> List[dict]:
        query = self.client.table(ATTENDANCE).select("*").order("timestamp", desc=True).limit(limit)
        if class_id:
            query = query.eq("class_id", class_id)
        if session_date:
            query = query.eq("session_date", session_date.isoformat())
        return response_rows(self._execute(query, "attendance listing"))

    # --- face profiles ---
    def get_face_profile(self, user_id: str) -> Optional[FaceProfile]:
        query = self.client.table(FACE_PROFILES).select(
            "id, similarity_threshold, quality_score, created_at, updated_at, "
            f"{FACE_EMBEDDINGS}(embedding)"
        ).eq("user_id", user_id).limit(1)
        row = first_row(self._execute(query, "face profile lookup"))
        if row is None:
            return None

        threshold = row.get("similarity_threshold")
        quality = row.get("quality_score")
        return FaceProfile(
            user_id=user_id,
            profile_id=row.get("id"),
            embeddings=[parse_embedding(e["embedding"]) for e in row.get(FACE_EMBEDDINGS) or []],
            similarity_threshold=float(threshold) if threshold is not None else None,
            quality_score=float(quality) if quality is not None else None,
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )

    def delete_face_profile(self, user_id: str) -> None:
        # Embedding rows go with the profile (ON DELETE CASCADE).
        query = self.client.table(FACE_PROFILES).delete().eq("user_id", user_id)
        self._execute(query, "face profile delete", WriteError)

    def create_face_profile(self, user_id: str, quality_score: float, embedding_count: int) -> str:
        query = self.client.table(FACE_PROFILES).insert({
            "user_id": user_id,
            "quality_score": round(float(quality_score), 3),
            "embedding_count": embedding_count,
        })
        row = first_row(self._execute(query, "face profile insert", WriteError))
        if row is None or not row.get("id"):
            raise WriteError("Failed to create face profile")
        return row["id"]

    def insert_profile_embeddings(self, profile_id: str, rows: List[dict]) -> None:
        payload: List[Dict[str, Any]] = [dict(r, face_profile_id=profile_id) for r in rows]
        query = self.client.table(FACE_EMBEDDINGS).insert(payload)
        self._execute(query, "face embedding insert", WriteError)

    def delete_face_profile_by_id(self, profile_id: str) -> None:
        query = self.client.table(FACE_PROFILES).delete().eq("id", profile_id)
        self._execute(query, "face profile rollback", WriteError)

    # --- provisioning ---
    def execute_sql(self, query: str) -> None:
        self._execute(self.client.rpc("execute_sql", {"query": query}), "execute_sql", WriteError)

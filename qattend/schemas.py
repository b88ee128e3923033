from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Responses use camelCase keys, the convention of the web client."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Attendance Schemas ---

class VerifyQRTokenIn(BaseModel):
    """QR token scanned by the student. Presence is checked by the authorizer (400)."""
    token: Optional[str] = Field(None, examples=["c1a2:1760000000000:Xy12"])


class VerifyFaceAttendanceIn(BaseModel):
    token: Optional[str] = Field(None, description="QR token of the class session.")
    embedding: Optional[List[float]] = Field(None, description="Live face embedding.")


class AttendanceOut(CamelModel):
    success: bool = True
    message: str
    already_marked: bool
    class_id: str
    session_date: date
    similarity: Optional[float] = None
    threshold: Optional[float] = None


# --- Face Profile Schemas ---

class StoreFaceProfileIn(BaseModel):
    embeddings: Optional[List[List[float]]] = Field(
        None, description="Enrollment samples, all of the same length."
    )
    qualities: Optional[List[float]] = Field(
        None, description="Optional per-sample quality scores in [0, 1]."
    )


class StoreFaceProfileOut(CamelModel):
    success: bool = True
    message: str


class FaceProfileOut(CamelModel):
    user_id: str
    embeddings: List[List[float]]
    similarity_threshold: float
    quality_score: Optional[float] = None
    updated_at: Optional[datetime] = None


# --- Instructor / Admin Schemas ---

class QRTokenOut(CamelModel):
    class_id: str
    token: str
    expires_at: datetime


class CloseSessionOut(CamelModel):
    class_id: str
    session_date: date
    marked_absent: int


class SetupOut(CamelModel):
    success: bool = True
    message: str
    tables: List[str]
    warnings: List[str] = Field(default_factory=list)


class AttendanceSummaryOut(BaseModel):
    total_present: int
    total_absent: int
    by_student: Dict[str, int]


# --- Utility Schemas ---

class ErrorOut(BaseModel):
    """Body of every failed request."""
    error: str
    code: str

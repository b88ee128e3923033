from sqlalchemy import (
    Column, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, func, text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class FaceProfile(Base):
    """One enrolled face profile per user."""
    __tablename__ = "face_profiles"
    __table_args__ = {"schema": "public"}

    id = Column(UUID(as_uuid=False), primary_key=True, server_default=text("gen_random_uuid()"))
    user_id = Column(UUID(as_uuid=False), nullable=False, unique=True)
    embedding_count = Column(Integer, nullable=False, server_default=text("1"))
    quality_score = Column(Numeric(4, 3), server_default=text("0.800"))
    # NULL means "use DEFAULT_SIMILARITY_THRESHOLD".
    similarity_threshold = Column(Numeric(4, 3), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<FaceProfile(user_id={self.user_id}, embeddings={self.embedding_count})>"


class FaceProfileEmbedding(Base):
    """Individual enrollment samples of a face profile."""
    __tablename__ = "face_profile_embeddings"
    __table_args__ = {"schema": "public"}

    id = Column(UUID(as_uuid=False), primary_key=True, server_default=text("gen_random_uuid()"))
    face_profile_id = Column(
        UUID(as_uuid=False),
        ForeignKey("public.face_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    embedding = Column(JSONB, nullable=False)
    quality_score = Column(Numeric(4, 3), server_default=text("0.800"))
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ClassSession(Base):
    """A class and its single live QR token."""
    __tablename__ = "classes"
    __table_args__ = {"schema": "public"}

    id = Column(UUID(as_uuid=False), primary_key=True)
    qr_token = Column(Text, nullable=True)
    qr_expiration = Column(DateTime(timezone=True), nullable=True)


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = {"schema": "public"}

    id = Column(UUID(as_uuid=False), primary_key=True)
    student_id = Column(UUID(as_uuid=False), nullable=False)
    class_id = Column(UUID(as_uuid=False), nullable=False)


class AttendanceRecord(Base):
    """Attendance marks; one per (student, class, session_date)."""
    __tablename__ = "attendance"
    __table_args__ = (
        Index("attendance_student_class_day_key", "student_id", "class_id", "session_date", unique=True),
        {"schema": "public"},
    )

    id = Column(UUID(as_uuid=False), primary_key=True)
    student_id = Column(UUID(as_uuid=False), nullable=False)
    class_id = Column(UUID(as_uuid=False), nullable=False)
    session_date = Column(Date, nullable=False)
    status = Column(String, nullable=False)  # "present" or "absent"
    timestamp = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<AttendanceRecord(student_id={self.student_id}, class_id={self.class_id}, status={self.status})>"


# Conflict target for the atomic insert-if-not-exists on attendance.
ATTENDANCE_CONFLICT_COLUMNS = "student_id,class_id,session_date"

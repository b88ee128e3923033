from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

import numpy as np
import pytest
from fastapi.testclient import TestClient

from qattend.config import Settings, get_settings
from qattend.errors import TransientStoreError, UnauthorizedError, WriteError
from qattend.face_engine.matcher import FaceProfile
from qattend.face_engine.runtime import FaceModelRuntime, FaceModels
from qattend.main import app
from qattend.routes.deps import get_store
from qattend.services.store import AttendanceStore

STUDENT = "student-1"
OTHER_STUDENT = "student-2"
CLASS_ID = "class-1"
ADMIN_SECRET = "admin-secret"


class InMemoryStore(AttendanceStore):
    """Dict-backed store. Put operation names in ``fail`` to make them raise."""

    def __init__(self):
        self.users: Dict[str, str] = {}
        self.classes: Dict[str, dict] = {}
        self.enrollments = set()
        self.attendance: List[dict] = []
        self.profiles: Dict[str, dict] = {}
        self.embeddings: List[dict] = []
        self.sql: List[str] = []
        self.fail = set()
        self.lose_next_race = False
        self._ids = 0

    def _check(self, op, error_cls=TransientStoreError):
        if op in self.fail:
            raise error_cls()

    def _next_id(self, prefix):
        self._ids += 1
        return f"{prefix}-{self._ids}"

    # --- identity ---
    def get_user_id(self, access_token):
        if access_token not in self.users:
            raise UnauthorizedError()
        return self.users[access_token]

    # --- classes ---
    def find_class_by_token(self, token):
        self._check("find_class_by_token")
        for row in self.classes.values():
            if row.get("qr_token") == token:
                return {"id": row["id"], "qr_expiration": row.get("qr_expiration")}
        return None

    def set_class_token(self, class_id, token, expiration):
        self._check("set_class_token", WriteError)
        if class_id not in self.classes:
            return False
        self.classes[class_id].update(qr_token=token, qr_expiration=expiration.isoformat())
        return True

    # --- enrollments ---
    def is_enrolled(self, student_id, class_id):
        self._check("is_enrolled")
        return (student_id, class_id) in self.enrollments

    def list_enrolled_students(self, class_id):
        self._check("list_enrolled_students")
        return sorted(s for s, c in self.enrollments if c == class_id)

    # --- attendance ---
    def _matching(self, student_id, class_id, session_date: str):
        return [r for r in self.attendance
                if r["student_id"] == student_id and r["class_id"] == class_id
                and r["session_date"] == session_date]

    def find_attendance(self, student_id, class_id, session_date: date):
        self._check("find_attendance")
        rows = self._matching(student_id, class_id, session_date.isoformat())
        return rows[0] if rows else None

    def insert_attendance_if_absent(self, record):
        self._check("insert_attendance_if_absent", WriteError)
        if self.lose_next_race:
            # Another request commits between our duplicate check and insert.
            self.lose_next_race = False
            self.attendance.append(dict(record, id=self._next_id("att")))
        if self._matching(record["student_id"], record["class_id"], record["session_date"]):
            return False
        self.attendance.append(dict(record, id=self._next_id("att")))
        return True

    def insert_attendance_many(self, records):
        self._check("insert_attendance_many", WriteError)
        return sum(1 for r in records if self.insert_attendance_if_absent(r))

    def list_attendance(self, class_id=None, session_date=None, limit=500):
        self._check("list_attendance")
        rows = [r for r in self.attendance
                if (class_id is None or r["class_id"] == class_id)
                and (session_date is None or r["session_date"] == session_date.isoformat())]
        return rows[:limit]

    # --- face profiles ---
    def get_face_profile(self, user_id):
        self._check("get_face_profile")
        row = self.profiles.get(user_id)
        if row is None:
            return None
        vectors = [e["embedding"] for e in self.embeddings if e["face_profile_id"] == row["id"]]
        return FaceProfile(user_id=user_id, profile_id=row["id"], embeddings=vectors,
                           similarity_threshold=row.get("similarity_threshold"),
                           quality_score=row.get("quality_score"))

    def delete_face_profile(self, user_id):
        self._check("delete_face_profile", WriteError)
        row = self.profiles.pop(user_id, None)
        if row is not None:
            self.embeddings = [e for e in self.embeddings if e["face_profile_id"] != row["id"]]

    def create_face_profile(self, user_id, quality_score, embedding_count):
        self._check("create_face_profile", WriteError)
        profile_id = self._next_id("profile")
        self.profiles[user_id] = {"id": profile_id, "quality_score": quality_score,
                                  "embedding_count": embedding_count, "similarity_threshold": None}
        return profile_id

    def insert_profile_embeddings(self, profile_id, rows):
        self._check("insert_profile_embeddings", WriteError)
        self.embeddings.extend(dict(r, face_profile_id=profile_id) for r in rows)

    def delete_face_profile_by_id(self, profile_id):
        self._check("delete_face_profile_by_id", WriteError)
        for user_id, row in list(self.profiles.items()):
            if row["id"] == profile_id:
                del self.profiles[user_id]
        self.embeddings = [e for e in self.embeddings if e["face_profile_id"] != profile_id]

    # --- provisioning ---
    def execute_sql(self, query):
        for marker in self.fail:
            if marker.startswith("sql:") and marker[4:] in query:
                raise WriteError()
        self.sql.append(query)


# -----------------------------
# Fake face models
# -----------------------------
class FakeDetector:
    model_file = "/models/det_fake.onnx"

    def __init__(self, faces=None):
        # faces: list of ((x1, y1, x2, y2), score)
        self.faces = faces or []
        self.calls = 0

    def detect(self, img, max_num=0):
        self.calls += 1
        if not self.faces:
            return np.zeros((0, 5), dtype=np.float32), None
        rows = [[*bbox, score] for bbox, score in self.faces]
        return np.array(rows, dtype=np.float32), None


class FakeEmbedder:
    model_file = "/models/rec_fake.onnx"
    input_size = (112, 112)
    output_shape = [1, 4]

    def __init__(self, vector=(3.0, 4.0, 0.0, 0.0)):
        self.vector = np.asarray(vector, dtype=np.float32)
        self.inputs = []

    def get_feat(self, img):
        self.inputs.append(img.shape)
        return self.vector[None, :]


def textured_frame(height=240, width=320, seed=0):
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)


@pytest.fixture
def settings():
    return Settings(admin_secret=ADMIN_SECRET)


@pytest.fixture
def detector():
    return FakeDetector([((50.0, 40.0, 210.0, 220.0), 0.92)])


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def runtime(settings, detector, embedder):
    return FaceModelRuntime(settings, loader=lambda s: FaceModels(detector, embedder)).initialize()


@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def store():
    s = InMemoryStore()
    s.users["student-token"] = STUDENT
    s.users["other-token"] = OTHER_STUDENT
    s.classes[CLASS_ID] = {
        "id": CLASS_ID,
        "qr_token": "live-token",
        "qr_expiration": (datetime.now(timezone.utc) + timedelta(minutes=5)).isoformat(),
    }
    s.enrollments.add((STUDENT, CLASS_ID))
    return s


@pytest.fixture
def api(store, settings):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_settings] = lambda: settings
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


def auth(token="student-token") -> dict:
    return {"Authorization": f"Bearer {token}"}


def unit(vector) -> List[float]:
    v = np.asarray(vector, dtype=np.float64)
    return (v / np.linalg.norm(v)).tolist()


def make_profile(vectors, threshold: Optional[float] = None, user_id=STUDENT) -> FaceProfile:
    return FaceProfile(user_id=user_id, embeddings=vectors, similarity_threshold=threshold)

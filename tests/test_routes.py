from datetime import datetime, timedelta, timezone

import pytest

from qattend.utils.time_utils import utc_today

from conftest import ADMIN_SECRET, CLASS_ID, OTHER_STUDENT, STUDENT, auth, unit

ADMIN = {"Authorization": f"Bearer {ADMIN_SECRET}"}


def test_health(api):
    assert api.get("/health").json() == {"status": "ok"}


# -----------------------------
# POST /verify-qr-token
# -----------------------------
def test_verify_qr_token_marks_once(api, store):
    first = api.post("/verify-qr-token", json={"token": "live-token"}, headers=auth())
    second = api.post("/verify-qr-token", json={"token": "live-token"}, headers=auth())

    assert first.status_code == 200
    assert first.json() == {
        "success": True,
        "message": "Attendance marked successfully",
        "alreadyMarked": False,
        "classId": CLASS_ID,
        "sessionDate": utc_today().isoformat(),
    }
    assert second.status_code == 200
    assert second.json()["alreadyMarked"] is True
    assert second.json()["message"] == "Attendance already marked for today"
    assert len(store.attendance) == 1


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer nope"}])
def test_verify_qr_token_requires_user(api, store, headers):
    resp = api.post("/verify-qr-token", json={"token": "live-token"}, headers=headers)
    assert resp.status_code == 401
    assert resp.json()["code"] == "unauthorized"
    assert store.attendance == []


@pytest.mark.parametrize("body", [{}, {"token": ""}])
def test_verify_qr_token_missing_token(api, body):
    resp = api.post("/verify-qr-token", json=body, headers=auth())
    assert resp.status_code == 400
    assert resp.json() == {"error": "Token is required", "code": "invalid_request"}


def test_malformed_body(api):
    resp = api.post("/verify-qr-token", content=b"{not json", headers=dict(auth(), **{"Content-Type": "application/json"}))
    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_request"


def test_verify_qr_token_invalid(api):
    resp = api.post("/verify-qr-token", json={"token": "forged"}, headers=auth())
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid QR code", "code": "invalid_token"}


def test_verify_qr_token_expired(api, store):
    store.classes[CLASS_ID]["qr_expiration"] = (datetime.now(timezone.utc) - timedelta(seconds=1)).isoformat()
    resp = api.post("/verify-qr-token", json={"token": "live-token"}, headers=auth())
    assert resp.status_code == 400
    assert resp.json() == {"error": "QR code has expired", "code": "token_expired"}


def test_verify_qr_token_not_enrolled(api, store):
    resp = api.post("/verify-qr-token", json={"token": "live-token"}, headers=auth("other-token"))
    assert resp.status_code == 403
    assert resp.json()["code"] == "not_enrolled"
    assert store.attendance == []


def test_verify_qr_token_store_outage(api, store):
    store.fail.add("is_enrolled")
    resp = api.post("/verify-qr-token", json={"token": "live-token"}, headers=auth())
    assert resp.status_code == 500
    assert resp.json()["code"] == "transient_store"


def test_verify_qr_token_write_failure(api, store):
    store.fail.add("insert_attendance_if_absent")
    resp = api.post("/verify-qr-token", json={"token": "live-token"}, headers=auth())
    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to mark attendance", "code": "write_failed"}


def test_preflight(api):
    resp = api.options("/verify-qr-token", headers={
        "Origin": "https://app.example.com",
        "Access-Control-Request-Method": "POST",
    })
    assert resp.status_code == 200
    assert resp.content == b""
    assert resp.headers["access-control-allow-origin"] == "*"
    assert "authorization" in resp.headers["access-control-allow-headers"]


# -----------------------------
# POST /verify-face-attendance
# -----------------------------
def test_verify_face_attendance(api, store):
    api.post("/store-face-profile", json={"embeddings": [unit([1, 0.1, 0]), unit([1, 0, 0.1])]}, headers=auth())

    resp = api.post("/verify-face-attendance",
                    json={"token": "live-token", "embedding": unit([1, 0.05, 0.05])}, headers=auth())

    assert resp.status_code == 200
    body = resp.json()
    assert body["alreadyMarked"] is False
    assert body["threshold"] == pytest.approx(0.45)
    assert body["similarity"] > 0.99


def test_verify_face_attendance_mismatch(api, store):
    api.post("/store-face-profile", json={"embeddings": [[1.0, 0.0, 0.0]]}, headers=auth())

    resp = api.post("/verify-face-attendance",
                    json={"token": "live-token", "embedding": [0.0, 1.0, 0.0]}, headers=auth())

    assert resp.status_code == 403
    assert resp.json()["code"] == "face_mismatch"
    assert resp.json()["similarity"] == pytest.approx(0.0)
    assert store.attendance == []


def test_verify_face_attendance_without_profile(api):
    resp = api.post("/verify-face-attendance",
                    json={"token": "live-token", "embedding": [1.0, 0.0]}, headers=auth())
    assert resp.status_code == 404
    assert resp.json()["code"] == "no_face_profile"


def test_verify_face_attendance_wrong_dimension(api):
    api.post("/store-face-profile", json={"embeddings": [[1.0, 0.0, 0.0]]}, headers=auth())
    resp = api.post("/verify-face-attendance",
                    json={"token": "live-token", "embedding": [1.0, 0.0]}, headers=auth())
    assert resp.status_code == 400
    assert resp.json()["code"] == "dimension_mismatch"


# -----------------------------
# Face profiles
# -----------------------------
def test_store_and_fetch_face_profile(api, store):
    resp = api.post("/store-face-profile",
                    json={"embeddings": [[0.6, 0.8], [0.8, 0.6]], "qualities": [0.9, 0.7]}, headers=auth())
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "message": "Face profile created successfully"}

    resp = api.get("/face-profile", headers=auth())
    assert resp.status_code == 200
    body = resp.json()
    assert body["userId"] == STUDENT
    assert len(body["embeddings"]) == 2
    for got, want in zip(body["embeddings"], [[0.6, 0.8], [0.8, 0.6]]):
        assert got == pytest.approx(want)
    assert body["similarityThreshold"] == pytest.approx(0.45)
    assert body["qualityScore"] == pytest.approx(0.8)


@pytest.mark.parametrize("body", [{}, {"embeddings": []}, {"embeddings": [[1.0, 0.0], [1.0]]}])
def test_store_face_profile_rejects_bad_input(api, store, body):
    resp = api.post("/store-face-profile", json=body, headers=auth())
    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_request"
    assert store.profiles == {}


def test_store_face_profile_rollback(api, store):
    store.fail.add("insert_profile_embeddings")
    resp = api.post("/store-face-profile", json={"embeddings": [[1.0, 0.0]]}, headers=auth())
    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to store face embeddings", "code": "write_failed"}
    assert store.profiles == {}


def test_fetch_missing_profile(api):
    resp = api.get("/face-profile", headers=auth())
    assert resp.status_code == 404


# -----------------------------
# Instructor / admin
# -----------------------------
@pytest.mark.parametrize("headers", [{}, auth(), {"Authorization": "Bearer wrong"}])
def test_admin_routes_require_secret(api, store, headers):
    resp = api.post("/setup-face-tables", headers=headers)
    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid admin secret", "code": "unauthorized"}
    assert store.sql == []


def test_setup_face_tables(api, store):
    resp = api.post("/setup-face-tables", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json() == {
        "success": True,
        "message": "Face recognition tables created successfully",
        "tables": ["face_profiles", "face_profile_embeddings"],
        "warnings": [],
    }
    assert len(store.sql) == 4


def test_rotate_qr_token(api, store):
    resp = api.post(f"/classes/{CLASS_ID}/qr-token", headers=ADMIN)
    assert resp.status_code == 200
    token = resp.json()["token"]

    stale = api.post("/verify-qr-token", json={"token": "live-token"}, headers=auth())
    fresh = api.post("/verify-qr-token", json={"token": token}, headers=auth())

    assert stale.status_code == 400
    assert fresh.status_code == 200


def test_rotate_qr_token_unknown_class(api):
    resp = api.post("/classes/missing/qr-token", headers=ADMIN)
    assert resp.status_code == 400


def test_close_session_and_summary(api, store):
    store.enrollments.add((OTHER_STUDENT, CLASS_ID))
    api.post("/verify-qr-token", json={"token": "live-token"}, headers=auth())

    resp = api.post(f"/classes/{CLASS_ID}/close-session", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["markedAbsent"] == 1

    summary = api.get("/admin/attendance_summary", params={"class_id": CLASS_ID}, headers=ADMIN).json()
    assert summary == {"total_present": 1, "total_absent": 1, "by_student": {STUDENT: 1, OTHER_STUDENT: 0}}

    rows = api.get("/admin/attendance", headers=ADMIN).json()
    assert len(rows) == 2

from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends

from qattend.config import Settings, get_settings
from qattend.schemas import AttendanceSummaryOut, CloseSessionOut, ErrorOut, QRTokenOut, SetupOut
from qattend.services.provisioning import setup_face_tables as run_setup
from qattend.services.qr_sessions import QRSessionService
from qattend.services.store import AttendanceStore
from qattend.routes.deps import get_store, verify_admin
from qattend.utils.time_utils import utc_today

# All routes here require the ADMIN_SECRET bearer token.
router = APIRouter(tags=["Instructor & Admin"], dependencies=[Depends(verify_admin)],
                   responses={401: {"model": ErrorOut}, 500: {"model": ErrorOut}})


@router.post("/setup-face-tables", response_model=SetupOut)
def setup_face_tables(store: AttendanceStore = Depends(get_store)):
    """One-time provisioning of the face tables and policies (idempotent)."""
    report = run_setup(store)
    return SetupOut(
        message="Face recognition tables created successfully",
        tables=report.tables,
        warnings=report.warnings,
    )


@router.post("/classes/{class_id}/qr-token", response_model=QRTokenOut)
def generate_qr_token(class_id: str, store: AttendanceStore = Depends(get_store),
                      settings: Settings = Depends(get_settings)):
    """Rotate the class's QR token. The previous token stops working immediately."""
    qr = QRSessionService(store, ttl_seconds=settings.qr_token_ttl_seconds).mint_token(class_id)
    return QRTokenOut(class_id=qr.class_id, token=qr.token, expires_at=qr.expires_at)


@router.post("/classes/{class_id}/close-session", response_model=CloseSessionOut)
def close_session(class_id: str, session_date: Optional[date] = None,
                  store: AttendanceStore = Depends(get_store)):
    """Mark enrolled students without a record for the day as absent."""
    session_date = session_date or utc_today()
    count = QRSessionService(store).close_session(class_id, session_date)
    return CloseSessionOut(class_id=class_id, session_date=session_date, marked_absent=count)


@router.get("/admin/attendance", response_model=List[Dict[str, Any]])
def get_attendance(class_id: Optional[str] = None, session_date: Optional[date] = None,
                   limit: int = 500, store: AttendanceStore = Depends(get_store)):
    """Raw attendance records, newest first."""
    return store.list_attendance(class_id=class_id, session_date=session_date, limit=limit)


@router.get("/admin/attendance_summary", response_model=AttendanceSummaryOut)
def get_summary(class_id: Optional[str] = None, session_date: Optional[date] = None,
                store: AttendanceStore = Depends(get_store)):
    """Present/absent totals and per-student present counts."""
    rows = store.list_attendance(class_id=class_id, session_date=session_date, limit=10000)

    total_present = sum(1 for r in rows if r.get("status") == "present")
    total_absent = sum(1 for r in rows if r.get("status") == "absent")

    by_student: Dict[str, int] = {}
    for r in rows:
        sid = str(r.get("student_id"))
        by_student[sid] = by_student.get(sid, 0) + (1 if r.get("status") == "present" else 0)

    return AttendanceSummaryOut(total_present=total_present, total_absent=total_absent, by_student=by_student)

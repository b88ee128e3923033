from fastapi import APIRouter, Depends

from qattend.config import Settings, get_settings
from qattend.face_engine.matcher import ProfileMatcher
from qattend.schemas import AttendanceOut, ErrorOut, VerifyFaceAttendanceIn, VerifyQRTokenIn
from qattend.services.authorizer import AttendanceAuthorizer, AttendanceOutcome
from qattend.services.store import AttendanceStore
from qattend.routes.deps import get_current_user_id, get_store

router = APIRouter(tags=["Attendance"])

ERROR_RESPONSES = {
    400: {"model": ErrorOut},
    401: {"model": ErrorOut},
    403: {"model": ErrorOut},
    500: {"model": ErrorOut},
}


def _to_response(outcome: AttendanceOutcome) -> AttendanceOut:
    return AttendanceOut(
        message=outcome.message,
        already_marked=outcome.already_marked,
        class_id=outcome.class_id,
        session_date=outcome.session_date,
        similarity=outcome.match.similarity if outcome.match else None,
        threshold=outcome.match.threshold if outcome.match else None,
    )


@router.post("/verify-qr-token", response_model=AttendanceOut,
             response_model_exclude_none=True, responses=ERROR_RESPONSES)
def verify_qr_token(
    body: VerifyQRTokenIn,
    user_id: str = Depends(get_current_user_id),
    store: AttendanceStore = Depends(get_store),
):
    """Mark the caller present in the class whose live QR token they scanned."""
    outcome = AttendanceAuthorizer(store).authorize(user_id, body.token)
    return _to_response(outcome)


@router.post("/verify-face-attendance", response_model=AttendanceOut,
             response_model_exclude_none=True,
             responses={**ERROR_RESPONSES, 404: {"model": ErrorOut}})
def verify_face_attendance(
    body: VerifyFaceAttendanceIn,
    user_id: str = Depends(get_current_user_id),
    store: AttendanceStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    """Same as verify-qr-token, gated on a server-side match against the caller's face profile."""
    matcher = ProfileMatcher(settings.default_similarity_threshold)
    outcome = AttendanceAuthorizer(store, matcher=matcher).authorize_with_face(user_id, body.token, body.embedding)
    return _to_response(outcome)

from fastapi import APIRouter, Depends

from qattend.config import Settings, get_settings
from qattend.schemas import ErrorOut, FaceProfileOut, StoreFaceProfileIn, StoreFaceProfileOut
from qattend.services.profiles import FaceProfileService
from qattend.services.store import AttendanceStore
from qattend.routes.deps import get_current_user_id, get_store

router = APIRouter(tags=["Face Profiles"])


@router.post("/store-face-profile", response_model=StoreFaceProfileOut,
             responses={400: {"model": ErrorOut}, 401: {"model": ErrorOut}, 500: {"model": ErrorOut}})
def store_face_profile(
    body: StoreFaceProfileIn,
    user_id: str = Depends(get_current_user_id),
    store: AttendanceStore = Depends(get_store),
):
    """Replace the caller's face profile with freshly captured enrollment samples."""
    FaceProfileService(store).store_profile(user_id, body.embeddings, body.qualities)
    return StoreFaceProfileOut(message="Face profile created successfully")


@router.get("/face-profile", response_model=FaceProfileOut,
            responses={401: {"model": ErrorOut}, 404: {"model": ErrorOut}})
def get_face_profile(
    user_id: str = Depends(get_current_user_id),
    store: AttendanceStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    """The caller's enrolled samples, for on-device matching."""
    profile = FaceProfileService(store).load_profile(user_id)
    return FaceProfileOut(
        user_id=profile.user_id,
        embeddings=profile.embeddings.tolist(),
        similarity_threshold=profile.effective_threshold(settings.default_similarity_threshold),
        quality_score=profile.quality_score,
        updated_at=profile.updated_at,
    )

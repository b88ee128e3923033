import secrets
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from qattend.config import Settings, get_settings
from qattend.errors import UnauthorizedError
from qattend.services.store import AttendanceStore, SupabaseStore
from qattend.utils.supabase_utils import get_supabase

# auto_error=False: a missing header must produce our 401 body, not FastAPI's 403.
security = HTTPBearer(auto_error=False)


def get_store() -> AttendanceStore:
    return SupabaseStore(get_supabase())


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    store: AttendanceStore = Depends(get_store),
) -> str:
    """Resolve the caller from their Supabase access token."""
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError()
    return store.get_user_id(credentials.credentials)


def verify_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    settings: Settings = Depends(get_settings),
) -> bool:
    """Instructor/admin endpoints take ADMIN_SECRET as the bearer token."""
    if not settings.admin_secret or credentials is None:
        raise UnauthorizedError("Invalid admin secret")
    if not secrets.compare_digest(credentials.credentials, settings.admin_secret):
        raise UnauthorizedError("Invalid admin secret")
    return True

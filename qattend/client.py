"""
HTTP client for the QAttend API.

Failed calls raise the same ``QAttendError`` subclasses the server raised,
rebuilt from the ``code`` field of the error body, so callers can branch on
type (and ``retryable``) instead of message text.
"""
from typing import Any, Dict, List, Optional, Sequence

import requests

from qattend.config import get_settings
from qattend.errors import QAttendError, TransientStoreError, error_from_payload
from qattend.face_engine.matcher import FaceProfile
from qattend.utils.time_utils import parse_timestamp


class QAttendClient:
    def __init__(self, access_token: str, base_url: Optional[str] = None,
                 timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        settings = get_settings()
        self.base_url = (base_url or settings.api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.api_timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {access_token}"})

    def _request(self, method: str, path: str, json: Optional[dict] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, json=json, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientStoreError(f"Could not reach {url}: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400:
            if not isinstance(payload, dict):
                payload = {}
            raise error_from_payload(payload, response.status_code)
        return payload

    # --- attendance ---
    def verify_qr_token(self, token: str) -> Dict[str, Any]:
        return self._request("POST", "/verify-qr-token", {"token": token})

    def verify_face_attendance(self, token: str, embedding: Sequence[float]) -> Dict[str, Any]:
        return self._request("POST", "/verify-face-attendance",
                             {"token": token, "embedding": [float(v) for v in embedding]})

    # --- face profiles ---
    def store_face_profile(self, embeddings: List[Sequence[float]],
                           qualities: Optional[Sequence[float]] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"embeddings": [[float(v) for v in e] for e in embeddings]}
        if qualities is not None:
            body["qualities"] = [float(q) for q in qualities]
        return self._request("POST", "/store-face-profile", body)

    def fetch_face_profile(self) -> FaceProfile:
        data = self._request("GET", "/face-profile")
        return FaceProfile(
            user_id=data["userId"],
            embeddings=data["embeddings"],
            similarity_threshold=data.get("similarityThreshold"),
            quality_score=data.get("qualityScore"),
            updated_at=parse_timestamp(data.get("updatedAt")),
        )


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, QAttendError) and error.retryable

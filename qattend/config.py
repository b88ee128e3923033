import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

# -----------------------------
# Project paths
# -----------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


@dataclass(frozen=True)
class Settings:
    # Supabase (service role key, the server resolves callers from their own JWT)
    supabase_url: str = ""
    supabase_key: str = ""
    admin_secret: str = ""

    # Face models
    face_model_pack: str = "buffalo_s"
    face_model_root: Optional[str] = None
    face_det_size: Tuple[int, int] = (320, 320)
    min_detection_confidence: float = 0.5
    min_face_quality: float = 0.5
    default_similarity_threshold: float = 0.45

    # QR sessions
    qr_token_ttl_seconds: int = 300

    # Logging
    log_dir: Path = PROJECT_ROOT / "logs"
    log_level: str = "INFO"

    # Client side
    api_url: str = "http://localhost:8000"
    api_timeout: float = 10.0


def load_settings() -> Settings:
    """Build settings from the environment (and a .env file, if present)."""
    det = _env_int("FACE_DET_SIZE", 320)
    return Settings(
        supabase_url=os.getenv("SUPABASE_URL", ""),
        supabase_key=os.getenv("SUPABASE_KEY", ""),
        admin_secret=os.getenv("ADMIN_SECRET", ""),
        face_model_pack=os.getenv("FACE_MODEL_PACK", "buffalo_s"),
        face_model_root=os.getenv("FACE_MODEL_ROOT") or None,
        face_det_size=(det, det),
        min_detection_confidence=_env_float("MIN_DETECTION_CONFIDENCE", 0.5),
        min_face_quality=_env_float("MIN_FACE_QUALITY", 0.5),
        default_similarity_threshold=_env_float("DEFAULT_SIMILARITY_THRESHOLD", 0.45),
        qr_token_ttl_seconds=_env_int("QR_TOKEN_TTL_SECONDS", 300),
        log_dir=Path(os.getenv("LOG_DIR") or (Path(os.getcwd()) / "logs")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        api_url=os.getenv("QATTEND_API_URL", "http://localhost:8000"),
        api_timeout=_env_float("QATTEND_API_TIMEOUT", 10.0),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()

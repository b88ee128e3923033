import json
from typing import Any, List, Optional

from supabase import Client, create_client

from qattend.config import get_settings

_client: Optional[Client] = None


def get_supabase() -> Client:
    """Shared service-role client, created on first use."""
    global _client
    if _client is None:
        settings = get_settings()
        if not settings.supabase_url or not settings.supabase_key:
            raise RuntimeError("Supabase credentials not found in environment variables.")
        _client = create_client(settings.supabase_url, settings.supabase_key)
    return _client


def response_rows(resp: Any) -> List[dict]:
    """Rows of a PostgREST response regardless of SDK version."""
    if resp is None:
        return []
    data = getattr(resp, "data", resp)
    if isinstance(data, dict):
        if isinstance(data.get("data"), list):
            return data["data"]
        return [data] if data else []
    if isinstance(data, list):
        return data
    return []


def first_row(resp: Any) -> Optional[dict]:
    rows = response_rows(resp)
    return rows[0] if rows else None


def parse_embedding(value: Any) -> List[float]:
    """Embeddings are stored as jsonb arrays; older rows hold JSON text."""
    if isinstance(value, str):
        value = json.loads(value)
    if not isinstance(value, list):
        raise ValueError(f"Stored embedding has unexpected type {type(value).__name__}")
    return [float(v) for v in value]

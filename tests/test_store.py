from datetime import date
from unittest.mock import MagicMock

import httpx
import pytest
from postgrest.exceptions import APIError

from qattend.errors import TransientStoreError, UnauthorizedError, WriteError
from qattend.face_engine.matcher import ProfileMatcher
from qattend.services.store import AttendanceStore, SupabaseStore
from qattend.utils.supabase_utils import parse_embedding, response_rows


def _client(data=None, error=None):
    """Supabase client mock whose query chains all end in one ``execute()``."""
    client = MagicMock()
    query = MagicMock()
    for name in ("select", "eq", "limit", "order", "update", "upsert", "insert", "delete"):
        getattr(query, name).return_value = query
    if error is not None:
        query.execute.side_effect = error
    else:
        query.execute.return_value = MagicMock(data=data)
    client.table.return_value = query
    client.rpc.return_value = query
    return client, query


def _api_error(code):
    return APIError({"message": "boom", "code": code, "details": None, "hint": None})


def test_find_class_by_token():
    client, query = _client([{"id": "class-1", "qr_expiration": "2026-03-02T09:35:00+00:00"}])

    row = SupabaseStore(client).find_class_by_token("tok")

    assert row["id"] == "class-1"
    client.table.assert_called_with("classes")
    query.eq.assert_called_with("qr_token", "tok")


def test_read_failure_is_transient():
    client, _ = _client(error=_api_error("57014"))
    with pytest.raises(TransientStoreError):
        SupabaseStore(client).is_enrolled("s", "c")


def test_network_failure_is_transient():
    client, _ = _client(error=httpx.ConnectError("down"))
    with pytest.raises(TransientStoreError):
        SupabaseStore(client).find_attendance("s", "c", date(2026, 3, 2))


def test_insert_if_absent():
    client, query = _client([{"id": "att-1"}])
    assert SupabaseStore(client).insert_attendance_if_absent({"student_id": "s"}) is True
    query.upsert.assert_called_with(
        {"student_id": "s"}, on_conflict="student_id,class_id,session_date", ignore_duplicates=True,
    )


def test_insert_duplicate_returns_false():
    client, _ = _client([])
    assert SupabaseStore(client).insert_attendance_if_absent({"student_id": "s"}) is False

    client, _ = _client(error=_api_error("23505"))
    assert SupabaseStore(client).insert_attendance_if_absent({"student_id": "s"}) is False


def test_insert_failure_is_write_error():
    client, _ = _client(error=_api_error("42501"))
    with pytest.raises(WriteError):
        SupabaseStore(client).insert_attendance_if_absent({"student_id": "s"})


def test_get_face_profile_parses_embeddings():
    client, _ = _client([{
        "id": "p1",
        "similarity_threshold": "0.500",
        "quality_score": 0.8,
        "created_at": "2026-03-01T10:00:00.123+00:00",
        "updated_at": None,
        "face_profile_embeddings": [{"embedding": [1, 0]}, {"embedding": "[0.0, 1.0]"}],
    }])

    profile = SupabaseStore(client).get_face_profile("u1")

    assert profile.embeddings.tolist() == [[1.0, 0.0], [0.0, 1.0]]
    assert profile.similarity_threshold == 0.5
    assert profile.created_at.microsecond == 123000


def test_get_face_profile_missing():
    client, _ = _client([])
    assert SupabaseStore(client).get_face_profile("u1") is None


def test_create_face_profile_without_id():
    client, _ = _client([])
    with pytest.raises(WriteError):
        SupabaseStore(client).create_face_profile("u1", 0.8, 3)


def test_get_user_id():
    client = MagicMock()
    client.auth.get_user.return_value = MagicMock(user=MagicMock(id="u1"))
    assert SupabaseStore(client).get_user_id("jwt") == "u1"

    client.auth.get_user.side_effect = Exception("invalid JWT")
    with pytest.raises(UnauthorizedError):
        SupabaseStore(client).get_user_id("jwt")


def test_execute_sql_uses_rpc():
    client, _ = _client([])
    SupabaseStore(client).execute_sql("SELECT 1;")
    client.rpc.assert_called_with("execute_sql", {"query": "SELECT 1;"})


def test_response_rows_shapes():
    assert response_rows(None) == []
    assert response_rows(MagicMock(data={"id": 1})) == [{"id": 1}]
    assert response_rows(MagicMock(data=[{"id": 1}])) == [{"id": 1}]


def test_parse_embedding_rejects_objects():
    with pytest.raises(ValueError):
        parse_embedding({"x": 1})


def test_null_threshold_uses_configured_default():
    client, _ = _client([{
        "id": "p1",
        "similarity_threshold": None,
        "quality_score": 0.8,
        "face_profile_embeddings": [{"embedding": [1.0, 0.0]}],
    }])

    profile = SupabaseStore(client).get_face_profile("u1")
    result = ProfileMatcher(default_threshold=0.9).match([0.8, 0.6], profile)  # cos = 0.8

    assert profile.similarity_threshold is None
    assert result.threshold == 0.9
    assert not result.accepted


def test_create_face_profile_leaves_threshold_unset():
    client, query = _client([{"id": "p1"}])

    assert SupabaseStore(client).create_face_profile("u1", 0.8, 3) == "p1"

    payload = query.insert.call_args.args[0]
    assert "similarity_threshold" not in payload


def test_incomplete_store_cannot_be_created():
    class ReadOnlyStore(AttendanceStore):
        def find_class_by_token(self, token):
            return None

    with pytest.raises(TypeError):
        ReadOnlyStore()

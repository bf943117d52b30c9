import json

from models.upload_models import UploadSession, UploadState, decode_session, encode_session


def make_session(**kwargs):
    data = dict(id="abc", file_name="a.txt", declared_mime_type="text/plain", total_chunks=4)
    data.update(kwargs)
    return UploadSession(**data)


def test_received_chunks_encoded_as_sorted_list():
    session = make_session(received_chunks={3, 0, 2})
    payload = json.loads(encode_session(session))
    assert payload["received_chunks"] == [0, 2, 3]


def test_decode_restores_set_and_collapses_duplicates():
    payload = json.loads(encode_session(make_session()))
    payload["received_chunks"] = [2, 0, 2, 1]
    session = decode_session(json.dumps(payload))
    assert session.received_chunks == {0, 1, 2}


def test_encode_decode_preserves_session():
    session = make_session(received_chunks={1, 3}, is_paused=True)
    restored = decode_session(encode_session(session))
    assert restored == session
    assert restored.created_at.tzinfo is not None


def test_state_completed_dominates_paused():
    assert make_session().state == UploadState.ACTIVE
    assert make_session(is_paused=True).state == UploadState.PAUSED
    assert make_session(is_paused=True, is_completed=True).state == UploadState.COMPLETED


def test_missing_chunks_and_progress():
    session = make_session(received_chunks={0, 2})
    assert session.missing_chunks == [1, 3]
    assert session.progress == 50


def test_snapshot_is_json_friendly():
    snapshot = make_session(received_chunks={1}).snapshot()
    assert snapshot["received_chunks"] == [1]
    assert snapshot["state"] == "active"
    assert snapshot["total_uploaded"] == 1
    json.dumps(snapshot)

import json

import pytest
from pydantic import ValidationError

from core.exceptions import MalformedRecord
from schemas.survey import (
    Answer,
    RelayRecord,
    RespondentRef,
    ResponseRead,
    decode_answers,
    decode_session_snapshot,
    encode_answers,
)


def test_answer_accepts_legacy_field_name():
    answer = Answer.model_validate({"question_id": "q1", "answer": "yes"})
    assert answer.value == "yes"


def test_decode_answers_rejects_non_list_json():
    with pytest.raises(MalformedRecord):
        decode_answers('{"question_id": "q1"}')


def test_decode_answers_rejects_broken_json():
    with pytest.raises(MalformedRecord):
        decode_answers("[{not json")


def test_decode_answers_reads_encoded_text():
    text = encode_answers([Answer(question_id="q1", value=["a", "b"]), Answer(question_id="q2", value=3)])
    decoded = decode_answers(text)
    assert decoded[0].value == ["a", "b"]
    assert decoded[1].value == 3


def test_response_row_with_malformed_answers_fails_loudly():
    with pytest.raises(MalformedRecord):
        ResponseRead.model_validate(
            {
                "id": "r1",
                "template_id": "T1",
                "answers": '"just a string"',
                "submitted_at": "2026-03-01T09:00:00Z",
            }
        )


def test_relay_record_missing_owner_is_malformed():
    raw = json.dumps({"id": "rec-1", "template_id": "T1", "answers": []})
    with pytest.raises(MalformedRecord) as excinfo:
        RelayRecord.decode(raw, record_id="rec-1")
    assert excinfo.value.record_id == "rec-1"


def test_relay_record_timestamps_are_utc():
    record = RelayRecord.decode(
        json.dumps(
            {
                "id": "rec-2",
                "owner_id": "clinic-a",
                "template_id": "T1",
                "answers": [{"question_id": "q1", "value": 1}],
                "created_at": "2026-03-01T10:00:00+01:00",
            }
        )
    )
    assert record.created_at.isoformat() == "2026-03-01T09:00:00+00:00"
    assert record.synced is False


def test_session_snapshot_with_unknown_status_is_malformed():
    raw = json.dumps(
        {
            "id": "s1",
            "token": "AB12CD34",
            "template_id": "T1",
            "status": "archived",
            "expires_at": "2026-03-01T09:00:00Z",
            "created_at": "2026-03-01T08:00:00Z",
            "owner_id": "clinic-a",
        }
    )
    with pytest.raises(MalformedRecord):
        decode_session_snapshot(raw, "AB12CD34")


def test_respondent_needs_some_identity():
    with pytest.raises(ValidationError):
        RespondentRef(name="  ")
    assert RespondentRef(patient_id="p-1").name is None

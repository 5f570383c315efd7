from __future__ import annotations

import json
from datetime import UTC, datetime

import allure
import pytest

from groupchat.jobs.models import (
    ChatMessage,
    ErrorResult,
    FailureClass,
    GroupChatPayload,
    JobOutcome,
)
from tests.fakes import make_payload

pytestmark = [
    allure.epic("Group Chat Jobs"),
    allure.feature("Job Envelope"),
]


def test_payload_json_omits_zero_valued_fields() -> None:
    payload = make_payload(member_id=0, question_id=0, freezed_coins=0)

    data = json.loads(payload.to_json())

    assert "member_id" not in data
    assert "question_id" not in data
    assert "freezed_coins" not in data
    assert data["context_messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "say hello"},
    ]
    assert GroupChatPayload.from_json(payload.to_json()) == payload


def test_payload_decodes_external_wire_shape() -> None:
    raw = json.dumps(
        {
            "id": "c0ffee",
            "group_id": 1,
            "user_id": 2,
            "member_id": 3,
            "question_id": 4,
            "message_id": 5,
            "model_id": "gpt-4o",
            "context_messages": [{"role": "user", "content": "hi"}],
            "created_at": "2026-10-19T11:59:30.123456789Z",
            "freezed_coins": 50,
        },
    )

    payload = GroupChatPayload.from_json(raw.encode("utf-8"))

    assert payload.id == "c0ffee"
    assert payload.context_messages == (ChatMessage(role="user", content="hi"),)
    assert payload.created_at == datetime(2026, 10, 19, 11, 59, 30, 123456, tzinfo=UTC)
    assert payload.freezed_coins == 50


def test_offset_timestamps_are_normalized_to_utc() -> None:
    payload = GroupChatPayload.from_json(
        '{"id": "job", "created_at": " 2026-10-19T13:59:30+02:00"}',
    )

    assert payload.created_at == datetime(2026, 10, 19, 11, 59, 30, tzinfo=UTC)
    assert payload.created_at.tzinfo == UTC


def test_naive_created_at_is_stored_as_utc() -> None:
    payload = make_payload(created_at=datetime(2026, 10, 19, 11, 0))

    assert payload.created_at == datetime(2026, 10, 19, 11, 0, tzinfo=UTC)
    assert json.loads(payload.to_json())["created_at"] == "2026-10-19T11:00:00+00:00"


def test_missing_fields_take_zero_values() -> None:
    payload = GroupChatPayload.from_json('{"id": "job", "user_id": 9}')

    assert payload.freezed_coins == 0
    assert payload.context_messages == ()
    assert payload.model_id == ""
    assert payload.created_at == datetime(1, 1, 1, tzinfo=UTC)


@pytest.mark.parametrize(
    "raw",
    [
        "[]",
        "{not json",
        '{"user_id": "42"}',
        '{"freezed_coins": -1}',
        '{"freezed_coins": true}',
        '{"created_at": "yesterday"}',
        '{"context_messages": {"role": "user"}}',
        '{"context_messages": [{"role": "user", "content": 1}]}',
    ],
)
def test_invalid_payloads_are_rejected(raw: str) -> None:
    with pytest.raises(ValueError):
        GroupChatPayload.from_json(raw)


def test_error_result_requires_errors() -> None:
    with pytest.raises(ValueError):
        ErrorResult(errors=())

    assert ErrorResult(errors=("boom",)).to_dict() == {"errors": ["boom"]}


def test_job_outcome_error_summary_joins_errors() -> None:
    outcome = JobOutcome.failed(FailureClass.INFERENCE_FAILED, "first")
    outcome.errors.append("second")

    assert outcome.error_summary == "first; second"

from __future__ import annotations

import logging
from datetime import timedelta

import allure
import pytest

from groupchat.jobs.models import (
    ChatModel,
    ChatResponse,
    EmptyResult,
    ErrorResult,
    FailureClass,
    JobOutcomeStatus,
    MessageStatus,
    ModelStatus,
    QueueTaskStatus,
    QuotaUsedMeta,
)
from tests.fakes import (
    NOW,
    FakeBackend,
    FakeContext,
    FakeFreeChat,
    FakeLedger,
    FakeMessages,
    FakeModels,
    FakeQueue,
    FakeTokens,
    HandlerHarness,
    make_payload,
)

pytestmark = [
    allure.epic("Group Chat Jobs"),
    allure.feature("Compensated Execution"),
]


def test_success_consumes_cost_and_releases_reservation(harness: HandlerHarness) -> None:
    outcome = harness.handler().handle(make_payload())

    assert outcome.status == JobOutcomeStatus.SUCCEEDED
    assert outcome.quota_consumed == 30

    # input: (1 + 2) + (1 + 2) words, output: 1 + 1
    assert outcome.token_consumed == 8
    assert len(harness.messages.updates) == 1
    group_id, user_id, message_id, update = harness.messages.updates[0]
    assert (group_id, user_id, message_id) == (7, 42, 12)
    assert update.status == MessageStatus.SUCCEEDED
    assert update.message == "hello"
    assert update.token_consumed == 8
    assert update.quota_consumed == 30

    assert harness.ledger.consumed == [
        (42, 30, QuotaUsedMeta(tag="group_chat", model="gpt-test"), "job-1"),
    ]
    assert harness.ledger.released == [(42, 100)]
    assert harness.queue.updates == [("job-1", QueueTaskStatus.SUCCEEDED, EmptyResult())]
    assert harness.pricing.calls == [("gpt-test", 6, 2)]


def test_stale_job_is_discarded_but_reservation_is_released(harness: HandlerHarness) -> None:
    payload = make_payload(created_at=NOW - timedelta(minutes=20))

    outcome = harness.handler().handle(payload)

    assert outcome.status == JobOutcomeStatus.DISCARDED
    assert outcome.failure_class == FailureClass.STALE
    assert harness.models.lookups == []
    assert harness.backend.requests == []
    assert harness.messages.updates == []
    assert harness.queue.updates == []
    assert harness.ledger.released == [(42, 100)]


def test_job_exactly_at_horizon_is_not_stale(harness: HandlerHarness) -> None:
    payload = make_payload(created_at=NOW - timedelta(minutes=15))

    outcome = harness.handler().handle(payload)

    assert outcome.status == JobOutcomeStatus.SUCCEEDED


def test_stale_job_without_reservation_touches_nothing(harness: HandlerHarness) -> None:
    payload = make_payload(created_at=NOW - timedelta(hours=1), freezed_coins=0)

    harness.handler().handle(payload)

    assert harness.ledger.released == []
    assert harness.messages.updates == []


def test_disabled_model_fails_job_and_releases_reservation() -> None:
    harness = HandlerHarness(
        models=FakeModels(
            ChatModel(model_id="gpt-test", name="GPT Test", status=ModelStatus.DISABLED),
        ),
    )

    outcome = harness.handler().handle(make_payload())

    assert outcome.status == JobOutcomeStatus.FAILED
    assert outcome.failure_class == FailureClass.MODEL_UNAVAILABLE
    assert outcome.errors == ["model gpt-test not found or disabled"]
    _, _, _, update = harness.messages.updates[0]
    assert update.status == MessageStatus.FAILED
    assert update.error == "model gpt-test not found or disabled"
    assert harness.queue.updates == [
        (
            "job-1",
            QueueTaskStatus.FAILED,
            ErrorResult(errors=("model gpt-test not found or disabled",)),
        ),
    ]
    assert harness.backend.requests == []
    assert harness.ledger.consumed == []
    assert harness.ledger.released == [(42, 100)]


def test_unknown_model_is_model_unavailable() -> None:
    harness = HandlerHarness(models=FakeModels())

    outcome = harness.handler().handle(make_payload(model_id="missing"))

    assert outcome.failure_class == FailureClass.MODEL_UNAVAILABLE
    assert outcome.error_summary == "model missing not found or disabled"


def test_free_tier_allowance_zeroes_cost_but_keeps_token_counts() -> None:
    harness = HandlerHarness(free_chat=FakeFreeChat(remaining=2))

    outcome = harness.handler().handle(make_payload())

    assert outcome.status == JobOutcomeStatus.SUCCEEDED
    assert outcome.quota_consumed == 0
    assert outcome.token_consumed == 8
    _, _, _, update = harness.messages.updates[0]
    assert update.quota_consumed == 0
    assert update.token_consumed == 8
    assert harness.pricing.calls == []
    assert harness.ledger.consumed == []
    assert harness.free_chat.recorded == [(42, "gpt-test")]
    assert harness.free_chat.left == 1
    assert harness.ledger.released == [(42, 100)]


def test_message_store_failure_on_success_path_fails_job() -> None:
    harness = HandlerHarness(messages=FakeMessages(error=RuntimeError("db is locked")))

    outcome = harness.handler().handle(make_payload())

    assert outcome.status == JobOutcomeStatus.FAILED
    assert outcome.failure_class == FailureClass.PERSISTENCE_FAILED
    assert outcome.errors == ["update chat message failed: db is locked"]
    # success write, then the guard's failure write
    assert [update.status for _, _, _, update in harness.messages.updates] == [
        MessageStatus.SUCCEEDED,
        MessageStatus.FAILED,
    ]
    assert harness.queue.updates == [
        (
            "job-1",
            QueueTaskStatus.FAILED,
            ErrorResult(errors=("update chat message failed: db is locked",)),
        ),
    ]
    assert harness.ledger.consumed == []
    assert harness.free_chat.recorded == []
    assert harness.ledger.released == [(42, 100)]


def test_context_preparation_failure() -> None:
    harness = HandlerHarness(context=FakeContext(error=ValueError("window too small")))

    outcome = harness.handler().handle(make_payload())

    assert outcome.failure_class == FailureClass.CONTEXT_PREPARATION_FAILED
    assert outcome.errors == ["fix chat request failed: window too small"]
    assert harness.backend.requests == []
    assert harness.ledger.released == [(42, 100)]


def test_context_preparation_receives_fixed_policy(harness: HandlerHarness) -> None:
    harness.handler().handle(make_payload())

    request, policy = harness.context.calls[0]
    assert request.model == "gpt-test"
    assert [message.role for message in request.messages] == ["system", "user"]
    assert (policy.max_turns, policy.max_tokens, policy.target_tokens) == (5, 204800, 2000)


def test_inference_transport_error() -> None:
    harness = HandlerHarness(backend=FakeBackend(error=ConnectionError("connection reset")))

    outcome = harness.handler().handle(make_payload())

    assert outcome.failure_class == FailureClass.INFERENCE_FAILED
    assert outcome.errors == ["chat failed: connection reset"]
    assert harness.ledger.consumed == []
    assert harness.ledger.released == [(42, 100)]


def test_inference_in_band_error_code_is_treated_as_failure() -> None:
    harness = HandlerHarness(
        backend=FakeBackend(
            response=ChatResponse(text="", error_code="rate_limited", error="slow down"),
        ),
    )

    outcome = harness.handler().handle(make_payload())

    assert outcome.failure_class == FailureClass.INFERENCE_FAILED
    assert outcome.errors == ["chat failed: rate_limited slow down"]
    _, _, _, update = harness.messages.updates[0]
    assert update.status == MessageStatus.FAILED
    assert update.message == "chat failed: rate_limited slow down"


def test_unexpected_crash_is_converted_and_logged(caplog: pytest.LogCaptureFixture) -> None:
    harness = HandlerHarness(tokens=FakeTokens(error=ZeroDivisionError("division by zero")))

    with caplog.at_level(logging.WARNING, logger="groupchat.jobs.handler"):
        outcome = harness.handler().handle(make_payload())

    assert outcome.status == JobOutcomeStatus.FAILED
    assert outcome.failure_class == FailureClass.UNEXPECTED_CRASH
    assert outcome.errors == ["division by zero"]
    assert len(harness.messages.updates) == 1
    assert len(harness.queue.updates) == 1
    assert harness.queue.updates[0][1] == QueueTaskStatus.FAILED
    assert harness.ledger.released == [(42, 100)]
    crash_records = [record for record in caplog.records if "crashed" in record.getMessage()]
    assert crash_records
    assert crash_records[0].levelno == logging.ERROR
    assert crash_records[0].exc_info is not None


def test_deliberate_failure_logs_warning_without_traceback(
    caplog: pytest.LogCaptureFixture,
) -> None:
    harness = HandlerHarness(models=FakeModels())

    with caplog.at_level(logging.WARNING, logger="groupchat.jobs.handler"):
        harness.handler().handle(make_payload())

    failed = [
        record
        for record in caplog.records
        if "failed (model_unavailable)" in record.getMessage()
    ]
    assert failed
    assert failed[0].levelno == logging.WARNING
    assert failed[0].exc_info is None


def test_failure_writes_are_independent_and_best_effort(
    caplog: pytest.LogCaptureFixture,
) -> None:
    harness = HandlerHarness(
        models=FakeModels(),
        messages=FakeMessages(error=RuntimeError("message store down")),
        queue=FakeQueue(error=RuntimeError("queue store down")),
        ledger=FakeLedger(release_error=RuntimeError("ledger down")),
    )

    with caplog.at_level(logging.ERROR, logger="groupchat.jobs.handler"):
        outcome = harness.handler().handle(make_payload())

    assert outcome.status == JobOutcomeStatus.FAILED
    assert len(harness.messages.updates) == 1
    assert len(harness.queue.updates) == 1
    assert harness.ledger.released == [(42, 100)]
    write_errors = [
        record.getMessage()
        for record in caplog.records
        if record.levelno == logging.ERROR and "failed:" in record.getMessage()
    ]
    assert len(write_errors) == 3
    assert all("job-1" in message and "user 42" in message for message in write_errors)


def test_secondary_write_failures_do_not_fail_success() -> None:
    harness = HandlerHarness(
        queue=FakeQueue(error=RuntimeError("queue store down")),
        ledger=FakeLedger(consume_error=RuntimeError("ledger down")),
        free_chat=FakeFreeChat(record_error=RuntimeError("counter down")),
    )

    outcome = harness.handler().handle(make_payload())

    assert outcome.status == JobOutcomeStatus.SUCCEEDED
    assert [update.status for _, _, _, update in harness.messages.updates] == [
        MessageStatus.SUCCEEDED,
    ]
    assert len(harness.queue.updates) == 1
    assert harness.ledger.released == [(42, 100)]


def test_free_tier_lookup_failure_charges_normally() -> None:
    harness = HandlerHarness(free_chat=FakeFreeChat(remaining_error=RuntimeError("down")))

    outcome = harness.handler().handle(make_payload())

    assert outcome.status == JobOutcomeStatus.SUCCEEDED
    assert outcome.quota_consumed == 30


def test_zero_reservation_never_calls_release(harness: HandlerHarness) -> None:
    harness.handler().handle(make_payload(freezed_coins=0))

    assert harness.ledger.released == []
    assert len(harness.ledger.consumed) == 1


@pytest.mark.parametrize("interrupt", [KeyboardInterrupt(), SystemExit(1)])
def test_interpreter_level_exit_reports_failure_and_releases(
    interrupt: BaseException,
    caplog: pytest.LogCaptureFixture,
) -> None:
    harness = HandlerHarness(backend=FakeBackend(error=interrupt))
    expected = f"interrupted: {type(interrupt).__name__}"

    with caplog.at_level(logging.ERROR, logger="groupchat.jobs.handler"):
        with pytest.raises(type(interrupt)):
            harness.handler().handle(make_payload())

    assert harness.ledger.released == [(42, 100)]
    assert len(harness.messages.updates) == 1
    _, _, _, update = harness.messages.updates[0]
    assert update.status == MessageStatus.FAILED
    assert update.error == expected
    assert harness.queue.updates == [
        ("job-1", QueueTaskStatus.FAILED, ErrorResult(errors=(expected,))),
    ]
    assert any("interrupted by" in record.getMessage() for record in caplog.records)


def test_naive_created_at_is_read_as_utc(harness: HandlerHarness) -> None:
    naive = (NOW - timedelta(minutes=20)).replace(tzinfo=None)

    outcome = harness.handler().handle(make_payload(created_at=naive))

    assert outcome.status == JobOutcomeStatus.DISCARDED
    assert harness.ledger.released == [(42, 100)]


def test_handle_raw_rejects_undecodable_payload(harness: HandlerHarness) -> None:
    with pytest.raises(ValueError, match="Invalid group chat payload JSON"):
        harness.handler().handle_raw(b"{not json")

    assert harness.ledger.released == []


def test_handle_raw_decodes_wire_payload(harness: HandlerHarness) -> None:
    outcome = harness.handler().handle_raw(make_payload().to_json())

    assert outcome.status == JobOutcomeStatus.SUCCEEDED
    assert harness.ledger.released == [(42, 100)]

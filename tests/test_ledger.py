from __future__ import annotations

from datetime import date

import allure
import pytest

from groupchat.jobs.ledger import QuotaExhaustedError
from groupchat.jobs.models import QuotaUsedMeta

pytestmark = [
    allure.epic("Group Chat Jobs"),
    allure.feature("Coin Ledger"),
]


def test_freeze_holds_coins_until_release(stores) -> None:
    _, quota = stores
    quota.grant(1, 500)

    quota.freeze(1, 200)
    held = quota.get_quota(1)
    quota.release(1, 200)
    released = quota.get_quota(1)

    assert (held.balance, held.frozen, held.available) == (500, 200, 300)
    assert (released.balance, released.frozen, released.available) == (500, 0, 500)


def test_freeze_beyond_available_raises(stores) -> None:
    _, quota = stores
    quota.grant(1, 100)
    quota.freeze(1, 80)

    with pytest.raises(QuotaExhaustedError) as error:
        quota.freeze(1, 30)

    assert error.value.available == 20
    assert error.value.requested == 30
    assert quota.get_quota(1).frozen == 80


def test_freeze_without_account_raises(stores) -> None:
    _, quota = stores

    with pytest.raises(QuotaExhaustedError):
        quota.freeze(404, 1)


def test_consume_then_release_charges_only_consumed(stores) -> None:
    _, quota = stores
    quota.grant(1, 1000)
    quota.freeze(1, 100)

    quota.consume(1, 30, QuotaUsedMeta(tag="group_chat", model="gpt-test"), job_id="job-1")
    quota.release(1, 100)

    account = quota.get_quota(1)
    assert (account.balance, account.frozen, account.available) == (970, 0, 970)
    [usage] = quota.list_usages(1)
    assert (usage.amount, usage.reason, usage.model, usage.job_id) == (
        30,
        "group_chat",
        "gpt-test",
        "job-1",
    )


def test_release_never_drops_hold_below_zero(stores) -> None:
    _, quota = stores
    quota.grant(1, 100)
    quota.freeze(1, 10)

    quota.release(1, 50)

    assert quota.get_quota(1).frozen == 0


def test_release_and_consume_require_an_account(stores) -> None:
    _, quota = stores

    with pytest.raises(RuntimeError):
        quota.release(404, 10)
    with pytest.raises(RuntimeError):
        quota.consume(404, 10, QuotaUsedMeta(tag="group_chat", model="m"))


@pytest.mark.parametrize("amount", [0, -5])
def test_non_positive_amounts_are_rejected(stores, amount: int) -> None:
    _, quota = stores
    quota.grant(1, 10)

    with pytest.raises(ValueError):
        quota.freeze(1, amount)
    with pytest.raises(ValueError):
        quota.release(1, amount)
    with pytest.raises(ValueError):
        quota.grant(1, amount)


def test_free_chat_counter_is_per_day(stores) -> None:
    _, quota = stores
    today = date(2026, 10, 19)

    assert quota.increment_free_chat(1, "gpt-test", today) == 1
    assert quota.increment_free_chat(1, "gpt-test", today) == 2
    assert quota.free_chat_count(1, "gpt-test", today) == 2
    assert quota.free_chat_count(1, "gpt-test", date(2026, 10, 20)) == 0
    assert quota.free_chat_count(1, "other", today) == 0

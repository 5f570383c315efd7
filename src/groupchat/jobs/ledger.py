"""Prepaid coin ledger: balances, reservations, consumption and free-tier counters.

A reservation is a hold on the balance: ``available = balance - frozen``.
``freeze`` raises the hold, ``consume`` permanently lowers the balance and
``release`` lowers the hold again. A job that consumed 30 coins out of a
100-coin reservation therefore costs the user exactly 30 once the full
reservation is released.
"""

from __future__ import annotations

import logging
from datetime import date
from pathlib import Path

from sqlalchemy import case
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from groupchat.jobs.models import QuotaUsageView, QuotaUsedMeta, UserQuotaView
from groupchat.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from groupchat.storage.sqlmodel_models import FreeChatUsage, QuotaUsage, UserQuota

logger = logging.getLogger(__name__)


class QuotaExhaustedError(RuntimeError):
    """Raised when a reservation exceeds the user's available coins."""

    def __init__(self, *, user_id: int, requested: int, available: int) -> None:
        super().__init__(
            f"User {user_id} has {available} coins available, {requested} requested.",
        )
        self.user_id = user_id
        self.requested = requested
        self.available = available


class QuotaRepository:
    """Ledger persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def grant(self, user_id: int, amount: int) -> UserQuotaView:
        """Add ``amount`` coins to the user's balance, opening the account if needed."""

        if amount <= 0:
            raise ValueError(f"Grant amount must be > 0, got {amount}.")
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(UserQuota, user_id)
            if row is None:
                row = UserQuota(user_id=user_id, balance=0, frozen=0, updated_at=now)
            row.balance += amount
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("Granted %d coins to user %d (balance=%d)", amount, user_id, row.balance)
            return _to_quota_view(row)

    def get_quota(self, user_id: int) -> UserQuotaView | None:
        with Session(self.engine) as session:
            row = session.get(UserQuota, user_id)
            return _to_quota_view(row) if row is not None else None

    def freeze(self, user_id: int, amount: int) -> None:
        """Hold ``amount`` coins for a pending job."""

        if amount <= 0:
            raise ValueError(f"Freeze amount must be > 0, got {amount}.")
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(UserQuota)
                .where(
                    col(UserQuota.user_id) == user_id,
                    col(UserQuota.balance) - col(UserQuota.frozen) >= amount,
                )
                .values(
                    frozen=col(UserQuota.frozen) + amount,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                row = session.get(UserQuota, user_id)
                available = row.balance - row.frozen if row is not None else 0
                raise QuotaExhaustedError(user_id=user_id, requested=amount, available=available)
            session.commit()

    def consume(
        self,
        user_id: int,
        amount: int,
        meta: QuotaUsedMeta,
        *,
        job_id: str | None = None,
    ) -> None:
        """Permanently charge ``amount`` coins and record the usage row."""

        if amount <= 0:
            raise ValueError(f"Consume amount must be > 0, got {amount}.")
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(UserQuota)
                .where(col(UserQuota.user_id) == user_id)
                .values(balance=col(UserQuota.balance) - amount, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(f"Quota account not found for user {user_id}.")
            session.add(
                QuotaUsage(
                    user_id=user_id,
                    amount=amount,
                    reason=meta.tag,
                    model=meta.model,
                    job_id=job_id,
                    created_at=now,
                ),
            )
            session.commit()

    def release(self, user_id: int, amount: int) -> None:
        """Drop up to ``amount`` coins of the user's hold; never below zero."""

        if amount <= 0:
            raise ValueError(f"Release amount must be > 0, got {amount}.")
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(UserQuota)
                .where(col(UserQuota.user_id) == user_id)
                .values(
                    frozen=case(
                        (col(UserQuota.frozen) > amount, col(UserQuota.frozen) - amount),
                        else_=0,
                    ),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(f"Quota account not found for user {user_id}.")
            session.commit()

    def list_usages(self, user_id: int, *, limit: int = 20) -> list[QuotaUsageView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(QuotaUsage)
                .where(QuotaUsage.user_id == user_id)
                .order_by(col(QuotaUsage.created_at).desc(), col(QuotaUsage.id).desc())
                .limit(limit),
            ).all()
            return [_to_usage_view(row) for row in rows]

    def free_chat_count(self, user_id: int, model_id: str, day: date) -> int:
        with Session(self.engine) as session:
            row = session.exec(
                select(FreeChatUsage).where(
                    FreeChatUsage.user_id == user_id,
                    FreeChatUsage.model_id == model_id,
                    FreeChatUsage.usage_date == day,
                ),
            ).one_or_none()
            return row.request_count if row is not None else 0

    def increment_free_chat(self, user_id: int, model_id: str, day: date) -> int:
        """Count one free request for the day and return the new total."""

        for _ in range(2):
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(FreeChatUsage)
                    .where(
                        col(FreeChatUsage.user_id) == user_id,
                        col(FreeChatUsage.model_id) == model_id,
                        col(FreeChatUsage.usage_date) == day,
                    )
                    .values(request_count=col(FreeChatUsage.request_count) + 1, updated_at=now),
                )
                if result.rowcount == 0:
                    session.add(
                        FreeChatUsage(
                            user_id=user_id,
                            model_id=model_id,
                            usage_date=day,
                            request_count=1,
                            updated_at=now,
                        ),
                    )
                try:
                    session.commit()
                except IntegrityError:
                    # Another writer created the row first; retry as an update.
                    session.rollback()
                    continue
            return self.free_chat_count(user_id, model_id, day)
        raise RuntimeError(
            f"Could not record free chat usage for user {user_id}, model {model_id}.",
        )


def _to_quota_view(row: UserQuota) -> UserQuotaView:
    return UserQuotaView(
        user_id=row.user_id,
        balance=row.balance,
        frozen=row.frozen,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_usage_view(row: QuotaUsage) -> QuotaUsageView:
    if row.id is None:
        raise RuntimeError("Quota usage row has no id.")
    return QuotaUsageView(
        id=row.id,
        user_id=row.user_id,
        amount=row.amount,
        reason=row.reason,
        model=row.model,
        job_id=row.job_id,
        created_at=to_utc_aware_datetime(row.created_at),
    )

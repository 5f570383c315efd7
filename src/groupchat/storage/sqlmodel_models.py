"""SQLModel ORM tables for group chat storage."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Column, Date, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class ChatModelRow(SQLModel, table=True):
    __tablename__ = "chat_models"  # type: ignore[bad-override]

    model_id: str = Field(primary_key=True)
    name: str
    status: str = "enabled"
    input_price_per_1k: float = 0.0
    output_price_per_1k: float = 0.0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UserQuota(SQLModel, table=True):
    __tablename__ = "user_quotas"  # type: ignore[bad-override]

    user_id: int = Field(primary_key=True, sa_column_kwargs={"autoincrement": False})
    balance: int = 0
    frozen: int = 0
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QuotaUsage(SQLModel, table=True):
    __tablename__ = "quota_usages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_quota_usages_user_time", "user_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(
        sa_column=Column(
            ForeignKey("user_quotas.user_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    amount: int
    reason: str
    model: str | None = None
    job_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class FreeChatUsage(SQLModel, table=True):
    __tablename__ = "free_chat_usages"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "model_id",
            "usage_date",
            name="uq_free_chat_usages_user_model_date",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: int
    model_id: str
    usage_date: date = Field(sa_column=Column(Date(), nullable=False))
    request_count: int = 0
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ChatGroupMessage(SQLModel, table=True):
    __tablename__ = "chat_group_messages"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_chat_group_messages_group_user", "group_id", "user_id", "id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    group_id: int
    user_id: int
    member_id: int | None = None
    question_id: int | None = None
    role: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    token_consumed: int = 0
    quota_consumed: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueTask(SQLModel, table=True):
    __tablename__ = "queue_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queue_tasks_delivery", "delivered_at", "created_at"),
        Index("idx_queue_tasks_user_status", "user_id", "status"),
    )

    task_id: str = Field(primary_key=True)
    task_type: str
    title: str
    user_id: int
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    result_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    delivered_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    worker_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

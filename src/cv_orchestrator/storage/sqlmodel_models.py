"""SQLModel ORM tables for job and webhook storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_admission", "status", "priority", "created_at"),
        Index("idx_jobs_user_status", "user_id", "status"),
    )

    job_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    resource_id: str | None = None
    job_type: str = Field(index=True)
    status: str = Field(index=True)
    priority: int = Field(default=5, index=True)
    progress: int = Field(default=0)
    progress_step: str | None = None
    attempt: int = Field(default=1)
    max_retries: int = Field(default=3)
    timeout_seconds: int = Field(default=300)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_json: str | None = Field(default=None, sa_column=Column(Text))
    error_kind: str | None = Field(default=None, index=True)
    worker_id: str | None = None
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    queued_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Webhook(SQLModel, table=True):
    __tablename__ = "webhooks"  # type: ignore[bad-override]

    webhook_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    url: str
    events_json: str = Field(sa_column=Column(Text, nullable=False))
    secret: str
    status: str = Field(index=True)
    description: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WebhookDelivery(SQLModel, table=True):
    __tablename__ = "webhook_deliveries"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "webhook_id",
            "occurrence_key",
            name="uq_webhook_deliveries_occurrence",
        ),
        Index("idx_webhook_deliveries_webhook_time", "webhook_id", "created_at"),
    )

    delivery_id: str = Field(primary_key=True)
    webhook_id: str = Field(
        sa_column=Column(
            ForeignKey("webhooks.webhook_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    job_id: str | None = Field(default=None, index=True)
    event_type: str
    occurrence_key: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    signature: str
    timestamp_ms: int
    status: str = Field(index=True)
    attempt_count: int = Field(default=0)
    last_status_code: int | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    delivery_job_id: str | None = None
    delivered_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WebhookDeliveryAttempt(SQLModel, table=True):
    __tablename__ = "webhook_delivery_attempts"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "delivery_id",
            "attempt_no",
            name="uq_webhook_delivery_attempts_attempt_no",
        ),
    )

    attempt_id: int | None = Field(default=None, primary_key=True)
    delivery_id: str = Field(
        sa_column=Column(
            ForeignKey("webhook_deliveries.delivery_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    attempt_no: int
    success: bool = Field(default=False)
    status_code: int | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))
    duration_ms: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

"""Webhook subscriptions, deliveries and delivery attempts in SQLite."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from cv_orchestrator.errors import not_found
from cv_orchestrator.storage.alembic_runner import upgrade_head
from cv_orchestrator.storage.common import (
    build_sqlite_engine,
    dump_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
)
from cv_orchestrator.storage.sqlmodel_models import (
    Webhook,
    WebhookDelivery,
    WebhookDeliveryAttempt,
)
from cv_orchestrator.webhooks.models import (
    DeliveryAttemptView,
    DeliveryStatus,
    DeliveryView,
    WebhookStatus,
    WebhookUpsert,
    WebhookView,
)


class WebhookRepository:
    """Read-mostly access to subscriptions plus the delivery audit trail.

    A delivery row is unique per ``(webhook_id, occurrence_key)``, which is
    what keeps one event occurrence from being delivered twice as new.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def upsert_webhook(self, payload: WebhookUpsert, *, now: datetime) -> WebhookView:
        with Session(self.engine) as session:
            row = session.get(Webhook, payload.webhook_id)
            if row is None:
                row = Webhook(
                    webhook_id=payload.webhook_id,
                    user_id=payload.user_id,
                    url=payload.url,
                    events_json=dump_json(sorted(set(payload.events))),
                    secret=payload.secret,
                    status=payload.status.value,
                    description=payload.description,
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
            else:
                row.user_id = payload.user_id
                row.url = payload.url
                row.events_json = dump_json(sorted(set(payload.events)))
                row.secret = payload.secret
                row.status = payload.status.value
                row.description = payload.description
                row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_webhook_view(row)

    def get_webhook(self, webhook_id: str) -> WebhookView | None:
        with Session(self.engine) as session:
            row = session.get(Webhook, webhook_id)
            return _to_webhook_view(row) if row is not None else None

    def set_webhook_status(
        self,
        webhook_id: str,
        status: WebhookStatus,
        *,
        now: datetime,
    ) -> WebhookView:
        with Session(self.engine) as session:
            row = session.get(Webhook, webhook_id)
            if row is None:
                raise not_found("Webhook", webhook_id)
            row.status = status.value
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_webhook_view(row)

    def list_active_webhooks(self, event: str, *, user_id: str) -> list[WebhookView]:
        """Active webhooks of ``user_id`` subscribed to ``event``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Webhook)
                .where(
                    Webhook.user_id == user_id,
                    Webhook.status == WebhookStatus.ACTIVE.value,
                )
                .order_by(col(Webhook.created_at).asc()),
            ).all()
            views = [_to_webhook_view(row) for row in rows]
        return [view for view in views if view.subscribes_to(event)]

    def create_delivery_if_absent(  # noqa: PLR0913
        self,
        *,
        delivery_id: str,
        webhook_id: str,
        job_id: str | None,
        event_type: str,
        occurrence_key: str,
        body: str,
        signature: str,
        timestamp_ms: int,
        now: datetime,
    ) -> tuple[DeliveryView, bool]:
        """Insert a delivery; returns the existing one and False on a repeat occurrence."""

        with Session(self.engine) as session:
            session.add(
                WebhookDelivery(
                    delivery_id=delivery_id,
                    webhook_id=webhook_id,
                    job_id=job_id,
                    event_type=event_type,
                    occurrence_key=occurrence_key,
                    payload_json=body,
                    signature=signature,
                    timestamp_ms=timestamp_ms,
                    status=DeliveryStatus.PENDING.value,
                    attempt_count=0,
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            try:
                session.commit()
                created = True
            except IntegrityError:
                session.rollback()
                created = False
            row = session.exec(
                select(WebhookDelivery).where(
                    WebhookDelivery.webhook_id == webhook_id,
                    WebhookDelivery.occurrence_key == occurrence_key,
                ),
            ).one()
            return _to_delivery_view(row, attempts=[]), created

    def attach_delivery_job(self, delivery_id: str, *, job_id: str, now: datetime) -> None:
        with Session(self.engine) as session:
            row = _require_delivery(session, delivery_id)
            row.delivery_job_id = job_id
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()

    def get_delivery(self, delivery_id: str) -> DeliveryView | None:
        with Session(self.engine) as session:
            row = session.get(WebhookDelivery, delivery_id)
            if row is None:
                return None
            return _to_delivery_view(row, attempts=_load_attempts(session, delivery_id))

    def record_attempt(  # noqa: PLR0913
        self,
        *,
        delivery_id: str,
        success: bool,
        status_code: int | None,
        error: str | None,
        duration_ms: int,
        status: DeliveryStatus,
        now: datetime,
    ) -> DeliveryView:
        """Append one attempt under the delivery id and update its rollup."""

        with Session(self.engine) as session:
            row = _require_delivery(session, delivery_id)
            attempt_no = row.attempt_count + 1
            session.add(
                WebhookDeliveryAttempt(
                    delivery_id=delivery_id,
                    attempt_no=attempt_no,
                    success=success,
                    status_code=status_code,
                    error=error,
                    duration_ms=duration_ms,
                    created_at=to_db_datetime(now),
                ),
            )
            row.attempt_count = attempt_no
            row.status = status.value
            row.last_status_code = status_code
            row.last_error = error
            row.updated_at = to_db_datetime(now)
            if success:
                row.delivered_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_delivery_view(row, attempts=_load_attempts(session, delivery_id))

    def mark_delivery(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        *,
        error: str | None = None,
        now: datetime,
    ) -> DeliveryView:
        with Session(self.engine) as session:
            row = _require_delivery(session, delivery_id)
            row.status = status.value
            if error is not None:
                row.last_error = error
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_delivery_view(row, attempts=_load_attempts(session, delivery_id))

    def list_deliveries(self, *, webhook_id: str, limit: int = 50) -> list[DeliveryView]:
        """Delivery history of one webhook, newest first, with attempts."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(WebhookDelivery)
                .where(WebhookDelivery.webhook_id == webhook_id)
                .order_by(col(WebhookDelivery.created_at).desc())
                .limit(limit),
            ).all()
            return [
                _to_delivery_view(row, attempts=_load_attempts(session, row.delivery_id))
                for row in rows
            ]

    def list_deliveries_for_job(self, job_id: str) -> list[DeliveryView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WebhookDelivery)
                .where(WebhookDelivery.job_id == job_id)
                .order_by(col(WebhookDelivery.created_at).asc()),
            ).all()
            return [
                _to_delivery_view(row, attempts=_load_attempts(session, row.delivery_id))
                for row in rows
            ]


def _require_delivery(session: Session, delivery_id: str) -> WebhookDelivery:
    row = session.get(WebhookDelivery, delivery_id)
    if row is None:
        raise not_found("Delivery", delivery_id)
    return row


def _load_attempts(session: Session, delivery_id: str) -> list[DeliveryAttemptView]:
    rows = session.exec(
        select(WebhookDeliveryAttempt)
        .where(WebhookDeliveryAttempt.delivery_id == delivery_id)
        .order_by(col(WebhookDeliveryAttempt.attempt_no).asc()),
    ).all()
    return [
        DeliveryAttemptView(
            attempt_no=row.attempt_no,
            success=row.success,
            status_code=row.status_code,
            error=row.error,
            duration_ms=row.duration_ms,
            created_at=to_utc_aware_datetime(row.created_at),
        )
        for row in rows
    ]


def _to_webhook_view(row: Webhook) -> WebhookView:
    events = json.loads(row.events_json) if row.events_json else []
    return WebhookView(
        webhook_id=row.webhook_id,
        user_id=row.user_id,
        url=row.url,
        events=[str(event) for event in events],
        secret=row.secret,
        status=WebhookStatus(row.status),
        description=row.description,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_delivery_view(
    row: WebhookDelivery,
    *,
    attempts: list[DeliveryAttemptView],
) -> DeliveryView:
    return DeliveryView(
        delivery_id=row.delivery_id,
        webhook_id=row.webhook_id,
        job_id=row.job_id,
        event_type=row.event_type,
        occurrence_key=row.occurrence_key,
        payload=json.loads(row.payload_json),
        body=row.payload_json,
        signature=row.signature,
        timestamp_ms=row.timestamp_ms,
        status=DeliveryStatus(row.status),
        attempt_count=row.attempt_count,
        last_status_code=row.last_status_code,
        last_error=row.last_error,
        delivery_job_id=row.delivery_job_id,
        delivered_at=optional_utc(row.delivered_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        attempts=attempts,
    )

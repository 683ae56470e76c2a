"""
Notification Port and its durable outbox adapter.

The engine only knows ``NotificationPort.emit``. ``OutboxNotificationPort`` turns
each event into a ``notification_outbox`` row in its own short transaction; the
relay worker (``process_notification_outbox_once``) forwards due rows to the
delivery webhook with exponential backoff.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import timedelta
from typing import Any, Callable, Optional, Protocol

import httpx
from sqlalchemy import insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from marketplace.core.config import get_settings
from marketplace.models.marketplace import NotificationOutbox
from marketplace.services.transition_service import record_alert
from marketplace.utils.clock import now_utc

logger = logging.getLogger(__name__)

REQUEST_OPENED = "REQUEST_OPENED"
REQUEST_CANCELLED = "REQUEST_CANCELLED"
NEW_OFFER = "NEW_OFFER"
OFFER_UPDATED = "OFFER_UPDATED"
OFFER_ACCEPTED = "OFFER_ACCEPTED"
OFFER_REJECTED = "OFFER_REJECTED"
OFFER_EXPIRED = "OFFER_EXPIRED"
SERVICE_STARTED = "SERVICE_STARTED"
SERVICE_COMPLETED = "SERVICE_COMPLETED"
SERVICE_RATED = "SERVICE_RATED"
SERVICE_STATUS_UPDATED = "SERVICE_STATUS_UPDATED"
ENGINEER_ASSIGNED = "ENGINEER_ASSIGNED"


class NotificationPort(Protocol):
    def emit(self, user_id: str, event_key: str, payload: dict[str, Any]) -> None:
        """Fire-and-forget. Implementations must not raise into the caller."""


def _canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def _dedupe_key(*, recipient_id: str, event_key: str, payload_json: Any, occurrence: Optional[str] = None) -> str:
    data = {"recipient_id": recipient_id, "event_key": event_key, "payload": payload_json}
    if occurrence is not None:
        data["occurrence"] = occurrence
    digest = hashlib.sha256(_canonical_json(data).encode("utf-8")).hexdigest()
    return f"{event_key}:{recipient_id}:{digest[:16]}"[:160]


def enqueue_notification(
    db: Session,
    *,
    recipient_id: str,
    event_key: str,
    payload_json: dict[str, Any],
    occurrence: Optional[str] = None,
) -> bool:
    """
    Insert an outbox row; a duplicate of the same occurrence is ignored.

    Without ``occurrence`` the row is identified by recipient, event and payload alone,
    so only callers that replay one event may omit it.
    """
    values = {
        "recipient_id": recipient_id,
        "event_key": event_key,
        "payload_json": payload_json,
        "dedupe_key": _dedupe_key(
            recipient_id=recipient_id, event_key=event_key, payload_json=payload_json, occurrence=occurrence
        ),
        "status": "PENDING",
        "attempt_count": 0,
        "next_attempt_at": now_utc(db),
    }

    dialect = getattr(getattr(db, "bind", None), "dialect", None)
    dialect_name = getattr(dialect, "name", "") or ""
    table = NotificationOutbox.__table__

    if dialect_name == "postgresql":
        stmt = pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=["dedupe_key"])
        return bool(db.execute(stmt).rowcount)
    if dialect_name == "sqlite":
        stmt = sqlite_insert(table).values(**values).prefix_with("OR IGNORE")
        return bool(db.execute(stmt).rowcount)

    existing = db.execute(
        select(NotificationOutbox.id).where(NotificationOutbox.dedupe_key == values["dedupe_key"])
    ).scalar_one_or_none()
    if existing is not None:
        return False
    db.execute(insert(table).values(**values))
    return True


class OutboxNotificationPort:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def emit(self, user_id: str, event_key: str, payload: dict[str, Any]) -> None:
        # One emit is one occurrence: repeated events with equal payloads still get their own rows.
        occurrence = uuid.uuid4().hex
        db = self._session_factory()
        try:
            enqueue_notification(
                db,
                recipient_id=str(user_id),
                event_key=event_key,
                payload_json=payload,
                occurrence=occurrence,
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Failed to enqueue notification event=%s user=%s", event_key, user_id)
            record_alert("NOTIFICATION_EMIT_FAILED", {"event_key": event_key})
        finally:
            db.close()


def _compute_backoff(attempt_count: int) -> timedelta:
    # 1m, 2m, 4m, 8m, ... capped to 60m
    seconds = 60 * (2 ** max(0, attempt_count - 1))
    seconds = max(60, min(3600, seconds))
    return timedelta(seconds=seconds)


def _deliver(row: NotificationOutbox, webhook_url: str, timeout: float) -> None:
    resp = httpx.post(
        webhook_url,
        json={
            "id": str(row.id),
            "user_id": row.recipient_id,
            "event_key": row.event_key,
            "payload": row.payload_json or {},
        },
        timeout=timeout,
    )
    resp.raise_for_status()


def process_notification_outbox_once(
    db: Session,
    *,
    batch_size: int = 50,
    max_attempts: int = 5,
) -> int:
    """
    Processes due notifications.
    Returns number of successfully SENT items.
    """
    now = now_utc(db)
    settings = get_settings()

    due = (
        db.execute(
            select(NotificationOutbox)
            .where(
                NotificationOutbox.status.in_(["PENDING", "RETRY"]),
                NotificationOutbox.next_attempt_at <= now,
            )
            .order_by(NotificationOutbox.next_attempt_at.asc())
            .limit(int(max(1, batch_size)))
        )
        .scalars()
        .all()
    )

    sent = 0
    for row in due:
        row.attempt_count = int(row.attempt_count or 0) + 1
        try:
            if not settings.notification_webhook_url:
                raise RuntimeError("NOTIFICATION_WEBHOOK_URL is not configured")
            _deliver(row, settings.notification_webhook_url, settings.collaborator_timeout_seconds)
            row.status = "SENT"
            row.sent_at = now
            row.last_error = None
            sent += 1
        except Exception as exc:
            row.last_error = str(exc)[:2000]
            if int(row.attempt_count or 0) >= int(max_attempts):
                row.status = "FAILED"
                row.next_attempt_at = now + timedelta(days=365)
            else:
                row.status = "RETRY"
                row.next_attempt_at = now + _compute_backoff(int(row.attempt_count or 0))

    if due and sent:
        logger.info("Notification outbox processed: sent=%s total=%s", sent, len(due))
    return sent

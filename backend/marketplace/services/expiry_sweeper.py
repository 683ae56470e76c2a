"""
Expiry sweep: force stale, unaccepted negotiations into a terminal state.

- OPEN/OFFERS_COLLECTING requests older than ``request_ttl_days`` with no accepted
  offer => CANCELLED (EXPIRED); their OFFERED offers => REJECTED.
- OFFERED offers untouched for ``offer_ttl_days`` on still-biddable requests => EXPIRED.

Each row is its own transaction guarded by the expected source state, so a
concurrent acceptance always wins and a single failure never aborts the batch.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Collection, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace.core.config import get_settings
from marketplace.models.marketplace import EngineerOffer, ServiceRequest
from marketplace.schemas.marketplace import CancelReason, OfferStatus, RequestStatus
from marketplace.services import notifications as events
from marketplace.services import request_store as store
from marketplace.services.notifications import NotificationPort
from marketplace.services.transition_service import (
    BIDDABLE_STATUSES,
    create_audit_log,
    record_alert,
    status_values,
)
from marketplace.utils.clock import now_utc

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    requests_cancelled: int = 0
    offers_rejected: int = 0
    offers_expired: int = 0
    failures: int = 0
    failed_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("failed_ids")
        return data


def _stale_request_ids(db: Session, cutoff: datetime, batch_size: int, exclude: Collection[Any] = ()) -> list[Any]:
    conditions = [
        ServiceRequest.status.in_(status_values(BIDDABLE_STATUSES)),
        ServiceRequest.engineer_id.is_(None),
        ServiceRequest.accepted_offer.is_(None),
        ServiceRequest.created_at < cutoff,
    ]
    if exclude:
        conditions.append(ServiceRequest.id.notin_(list(exclude)))
    stmt = select(ServiceRequest.id).where(*conditions).order_by(ServiceRequest.created_at.asc()).limit(batch_size)
    return list(db.execute(stmt).scalars().all())


def _stale_offer_ids(db: Session, cutoff: datetime, batch_size: int, exclude: Collection[Any] = ()) -> list[Any]:
    conditions = [
        EngineerOffer.status == OfferStatus.OFFERED.value,
        EngineerOffer.updated_at < cutoff,
        ServiceRequest.status.in_(status_values(BIDDABLE_STATUSES)),
    ]
    if exclude:
        conditions.append(EngineerOffer.id.notin_(list(exclude)))
    stmt = (
        select(EngineerOffer.id)
        .join(ServiceRequest, ServiceRequest.id == EngineerOffer.request_id)
        .where(*conditions)
        .order_by(EngineerOffer.updated_at.asc())
        .limit(batch_size)
    )
    return list(db.execute(stmt).scalars().all())




def expire_request(db: Session, request_id: Any, *, cutoff: datetime, now: datetime) -> Optional[list[tuple[Any, str]]]:
    """Cancel one stale request. Returns the rejected (offer_id, engineer_id) pairs, or None if it moved on."""
    changed = store.conditional_update_request(
        db,
        request_id,
        expected=BIDDABLE_STATUSES,
        values={
            "status": RequestStatus.CANCELLED.value,
            "cancel_reason": CancelReason.EXPIRED.value,
            "status_changed_at": now,
            "updated_at": now,
            "row_version": ServiceRequest.row_version + 1,
        },
        where=[
            ServiceRequest.engineer_id.is_(None),
            ServiceRequest.accepted_offer.is_(None),
            ServiceRequest.created_at < cutoff,
        ],
    )
    if not changed:
        return None
    losers = store.reject_open_offers(db, request_id, now=now)
    create_audit_log(
        db,
        entity_type="service_request",
        entity_id=str(request_id),
        action="REQUEST_EXPIRED",
        old_value=None,
        new_value={"status": RequestStatus.CANCELLED.value, "cancel_reason": CancelReason.EXPIRED.value},
        actor_type="SYSTEM",
        actor_id=None,
        metadata={"rejected_offers": len(losers)},
    )
    return losers


def expire_offer(db: Session, offer_id: Any, *, cutoff: datetime, now: datetime) -> bool:
    biddable_request = (
        select(ServiceRequest.id)
        .where(
            ServiceRequest.id == EngineerOffer.request_id,
            ServiceRequest.status.in_(status_values(BIDDABLE_STATUSES)),
        )
        .correlate(EngineerOffer.__table__)
        .exists()
    )
    changed = store.conditional_update_offer(
        db,
        offer_id,
        expected=[OfferStatus.OFFERED],
        values={"status": OfferStatus.EXPIRED.value, "updated_at": now},
        where=[EngineerOffer.updated_at < cutoff, biddable_request],
    )
    if changed:
        create_audit_log(
            db,
            entity_type="engineer_offer",
            entity_id=str(offer_id),
            action="OFFER_EXPIRED",
            old_value={"status": OfferStatus.OFFERED.value},
            new_value={"status": OfferStatus.EXPIRED.value},
            actor_type="SYSTEM",
            actor_id=None,
        )
    return changed


def _notify(notifier: Optional[NotificationPort], user_id: Optional[str], key: str, payload: dict[str, Any]) -> None:
    if notifier is None or not user_id:
        return
    try:
        notifier.emit(user_id, key, payload)
    except Exception:
        logger.exception("Sweep notification failed event=%s user=%s", key, user_id)


def run_expiry_sweep(
    session_factory: Callable[[], Session],
    *,
    notifier: Optional[NotificationPort] = None,
    request_ttl_days: Optional[int] = None,
    offer_ttl_days: Optional[int] = None,
    batch_size: Optional[int] = None,
    now: Optional[datetime] = None,
) -> SweepReport:
    settings = get_settings()
    request_ttl = int(request_ttl_days if request_ttl_days is not None else settings.request_ttl_days)
    offer_ttl = int(offer_ttl_days if offer_ttl_days is not None else settings.offer_ttl_days)
    batch = int(max(1, batch_size or settings.expiry_sweep_batch_size))
    report = SweepReport()

    db = session_factory()
    try:
        current = now or now_utc(db)
        request_cutoff = current - timedelta(days=request_ttl)
        offer_cutoff = current - timedelta(days=offer_ttl)
        # Rows that failed or were skipped may still match, so later pages exclude them.
        passed_over: set[Any] = set()
        while True:
            request_ids = _stale_request_ids(db, request_cutoff, batch, passed_over)
            db.rollback()
            for request_id in request_ids:
                try:
                    req = store.get_request(db, request_id)
                    customer_id = req.customer_id if req is not None else None
                    losers = expire_request(db, request_id, cutoff=request_cutoff, now=current)
                    if losers is None:
                        db.rollback()
                        passed_over.add(request_id)
                        continue
                    db.commit()
                except Exception:
                    db.rollback()
                    passed_over.add(request_id)
                    report.failures += 1
                    report.failed_ids.append(str(request_id))
                    logger.exception("Expiry sweep failed for request %s", request_id)
                    record_alert("EXPIRY_SWEEP_FAILURE", {"request_id": str(request_id)})
                    continue
                report.requests_cancelled += 1
                report.offers_rejected += len(losers)
                payload = {"request_id": str(request_id), "reason": CancelReason.EXPIRED.value}
                _notify(notifier, customer_id, events.REQUEST_CANCELLED, payload)
                for offer_id, engineer_id in losers:
                    _notify(notifier, engineer_id, events.OFFER_REJECTED, {"request_id": str(request_id), "offer_id": str(offer_id)})
            if len(request_ids) < batch:
                break

        if offer_ttl > 0:
            passed_over = set()
            while True:
                offer_ids = _stale_offer_ids(db, offer_cutoff, batch, passed_over)
                db.rollback()
                for offer_id in offer_ids:
                    try:
                        offer = store.get_offer(db, offer_id)
                        engineer_id = offer.engineer_id if offer is not None else None
                        request_id = offer.request_id if offer is not None else None
                        if not expire_offer(db, offer_id, cutoff=offer_cutoff, now=current):
                            db.rollback()
                            passed_over.add(offer_id)
                            continue
                        db.commit()
                    except Exception:
                        db.rollback()
                        passed_over.add(offer_id)
                        report.failures += 1
                        report.failed_ids.append(str(offer_id))
                        logger.exception("Expiry sweep failed for offer %s", offer_id)
                        record_alert("EXPIRY_SWEEP_FAILURE", {"offer_id": str(offer_id)})
                        continue
                    report.offers_expired += 1
                    _notify(notifier, engineer_id, events.OFFER_EXPIRED, {"request_id": str(request_id), "offer_id": str(offer_id)})
                if len(offer_ids) < batch:
                    break
    finally:
        db.close()

    if report.requests_cancelled or report.offers_expired or report.failures:
        logger.info(
            "Expiry sweep: cancelled=%s offers_rejected=%s offers_expired=%s failures=%s",
            report.requests_cancelled,
            report.offers_rejected,
            report.offers_expired,
            report.failures,
        )
    return report

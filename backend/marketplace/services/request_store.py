"""Query and conditional-write helpers over service requests and engineer offers."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from marketplace.models.marketplace import EngineerOffer, ServiceRequest
from marketplace.schemas.marketplace import OfferStatus, RequestStatus
from marketplace.services.transition_service import BIDDABLE_STATUSES, status_values

ADMIN_LIST_DEFAULT_LIMIT = 20
ADMIN_LIST_MAX_LIMIT = 100


def _uuid(value: Any) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def with_for_update_if_supported(stmt, db: Session):
    # SQLite (tests) does not support `SELECT ... FOR UPDATE`.
    if db.bind is None:
        return stmt
    if db.bind.dialect.name == "sqlite":
        return stmt
    return stmt.with_for_update()


def get_request(db: Session, request_id: Any) -> Optional[ServiceRequest]:
    rid = _uuid(request_id)
    if rid is None:
        return None
    return db.get(ServiceRequest, rid, populate_existing=True)


def get_owned_request(db: Session, request_id: Any, customer_id: str) -> Optional[ServiceRequest]:
    req = get_request(db, request_id)
    if req is None or req.customer_id != customer_id:
        return None
    return req


def lock_request(db: Session, request_id: Any) -> None:
    # Request row first, then offer rows: the same order submit_offer takes them in.
    stmt = select(ServiceRequest.id).where(ServiceRequest.id == _uuid(request_id))
    db.execute(with_for_update_if_supported(stmt, db))


def get_offer(db: Session, offer_id: Any, *, for_update: bool = False) -> Optional[EngineerOffer]:
    oid = _uuid(offer_id)
    if oid is None:
        return None
    lock = for_update and db.bind is not None and db.bind.dialect.name != "sqlite"
    return db.get(EngineerOffer, oid, populate_existing=True, with_for_update=True if lock else None)


def find_offer(db: Session, request_id: Any, engineer_id: str, *, for_update: bool = False) -> Optional[EngineerOffer]:
    stmt = select(EngineerOffer).where(
        EngineerOffer.request_id == _uuid(request_id),
        EngineerOffer.engineer_id == engineer_id,
    )
    if for_update:
        stmt = with_for_update_if_supported(stmt, db)
    return db.execute(stmt.execution_options(populate_existing=True)).scalars().one_or_none()


def has_offers(db: Session, request_id: Any) -> bool:
    stmt = select(func.count(EngineerOffer.id)).where(EngineerOffer.request_id == _uuid(request_id))
    return int(db.execute(stmt).scalar_one() or 0) > 0


def conditional_update_request(
    db: Session,
    request_id: Any,
    *,
    expected: Iterable[RequestStatus],
    values: dict[str, Any],
    where: Iterable[Any] = (),
) -> bool:
    """UPDATE the request only while it is still in one of ``expected``; True when exactly one row changed."""
    stmt = (
        update(ServiceRequest)
        .where(
            ServiceRequest.id == _uuid(request_id),
            ServiceRequest.status.in_(status_values(expected)),
            *where,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1


def conditional_update_offer(
    db: Session,
    offer_id: Any,
    *,
    expected: Iterable[OfferStatus],
    values: dict[str, Any],
    where: Iterable[Any] = (),
) -> bool:
    stmt = (
        update(EngineerOffer)
        .where(
            EngineerOffer.id == _uuid(offer_id),
            EngineerOffer.status.in_(sorted(s.value for s in expected)),
            *where,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1


def reject_open_offers(
    db: Session,
    request_id: Any,
    *,
    now: datetime,
    keep_offer_id: Any = None,
) -> list[tuple[uuid.UUID, str]]:
    """Move every OFFERED offer on the request (except ``keep_offer_id``) to REJECTED.

    Returns (offer_id, engineer_id) of the rows that changed.
    """
    conditions = [
        EngineerOffer.request_id == _uuid(request_id),
        EngineerOffer.status == OfferStatus.OFFERED.value,
    ]
    if keep_offer_id is not None:
        conditions.append(EngineerOffer.id != _uuid(keep_offer_id))
    stmt = with_for_update_if_supported(
        select(EngineerOffer.id, EngineerOffer.engineer_id).where(*conditions), db
    )
    losers = [(row.id, row.engineer_id) for row in db.execute(stmt)]
    if not losers:
        return []
    db.execute(
        update(EngineerOffer)
        .where(
            EngineerOffer.id.in_([offer_id for offer_id, _ in losers]),
            EngineerOffer.status == OfferStatus.OFFERED.value,
        )
        .values(status=OfferStatus.REJECTED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return losers


def list_customer_requests(db: Session, customer_id: str, status: Optional[RequestStatus] = None) -> list[ServiceRequest]:
    stmt = select(ServiceRequest).where(ServiceRequest.customer_id == customer_id)
    if status is not None:
        stmt = stmt.where(ServiceRequest.status == status.value)
    stmt = stmt.order_by(ServiceRequest.created_at.desc())
    return list(db.execute(stmt).scalars().all())


def list_request_offers(db: Session, request_id: Any) -> list[EngineerOffer]:
    stmt = (
        select(EngineerOffer)
        .where(EngineerOffer.request_id == _uuid(request_id))
        .order_by(
            EngineerOffer.distance_km.is_(None),
            EngineerOffer.distance_km.asc(),
            EngineerOffer.amount.asc(),
        )
    )
    return list(db.execute(stmt).scalars().all())


def list_engineer_offers(db: Session, engineer_id: str, status: Optional[OfferStatus] = None) -> list[EngineerOffer]:
    stmt = select(EngineerOffer).where(EngineerOffer.engineer_id == engineer_id)
    if status is not None:
        stmt = stmt.where(EngineerOffer.status == status.value)
    stmt = stmt.order_by(EngineerOffer.created_at.desc())
    return list(db.execute(stmt).scalars().all())


def biddable_filters(engineer_id: str) -> list[Any]:
    return [
        ServiceRequest.status.in_(status_values(BIDDABLE_STATUSES)),
        ServiceRequest.engineer_id.is_(None),
        ServiceRequest.customer_id != engineer_id,
    ]


def list_available_requests(db: Session, engineer_id: str, *, city: Optional[str] = None, limit: int = 100) -> list[ServiceRequest]:
    stmt = select(ServiceRequest).where(*biddable_filters(engineer_id))
    if city:
        stmt = stmt.where(func.lower(ServiceRequest.city) == city.strip().lower())
    stmt = stmt.order_by(ServiceRequest.created_at.desc()).limit(max(1, int(limit)))
    return list(db.execute(stmt).scalars().all())


def admin_list_requests(
    db: Session,
    *,
    status: Optional[RequestStatus] = None,
    service_type: Optional[str] = None,
    engineer_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = ADMIN_LIST_DEFAULT_LIMIT,
) -> tuple[list[ServiceRequest], int, int, int]:
    page = max(1, int(page or 1))
    limit = max(1, min(ADMIN_LIST_MAX_LIMIT, int(limit or ADMIN_LIST_DEFAULT_LIMIT)))

    conditions: list[Any] = []
    if status is not None:
        conditions.append(ServiceRequest.status == status.value)
    if service_type:
        conditions.append(ServiceRequest.service_type == service_type)
    if engineer_id:
        conditions.append(ServiceRequest.engineer_id == engineer_id)
    if customer_id:
        conditions.append(ServiceRequest.customer_id == customer_id)
    if date_from is not None:
        conditions.append(ServiceRequest.created_at >= date_from)
    if date_to is not None:
        conditions.append(ServiceRequest.created_at <= date_to)
    if search:
        pattern = f"%{search.strip().lower()}%"
        conditions.append(
            or_(
                func.lower(ServiceRequest.title).like(pattern),
                func.lower(func.coalesce(ServiceRequest.description, "")).like(pattern),
                func.lower(func.coalesce(ServiceRequest.city, "")).like(pattern),
            )
        )

    total = int(db.execute(select(func.count(ServiceRequest.id)).where(*conditions)).scalar_one() or 0)
    rows = (
        db.execute(
            select(ServiceRequest)
            .where(*conditions)
            .order_by(ServiceRequest.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return list(rows), total, page, limit


def serialize_request(req: ServiceRequest, *, include_admin: bool = False, distance_km: Optional[float] = None) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": str(req.id),
        "customer_id": req.customer_id,
        "title": req.title,
        "service_type": req.service_type,
        "description": req.description,
        "images": list(req.images or []),
        "scheduled_at": req.scheduled_at,
        "address_ref": req.address_ref,
        "city": req.city,
        "lat": float(req.lat),
        "lng": float(req.lng),
        "status": req.status,
        "engineer_id": req.engineer_id,
        "accepted_offer": req.accepted_offer,
        "rating": req.rating,
        "cancel_reason": req.cancel_reason,
        "created_at": req.created_at,
        "updated_at": req.updated_at,
        "distance_km": distance_km,
    }
    if include_admin:
        data["admin_notes"] = list(req.admin_notes or [])
        data["row_version"] = int(req.row_version or 1)
    return data


def serialize_offer(offer: EngineerOffer) -> dict[str, Any]:
    return {
        "id": str(offer.id),
        "request_id": str(offer.request_id),
        "engineer_id": offer.engineer_id,
        "amount": float(offer.amount),
        "currency": offer.currency,
        "note": offer.note,
        "distance_km": offer.distance_km,
        "status": offer.status,
        "updates_count": int(offer.updates_count or 0),
        "created_at": offer.created_at,
        "updated_at": offer.updated_at,
    }

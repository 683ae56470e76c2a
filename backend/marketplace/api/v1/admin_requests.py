from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from marketplace.api.v1.deps import get_engine, get_notifier, unwrap
from marketplace.core.auth import CurrentUser, require_roles
from marketplace.core.dependencies import get_db, get_session_factory
from marketplace.schemas.marketplace import (
    AdminAssignRequest,
    AdminCancelRequest,
    AdminRejectOfferRequest,
    AdminRequestListResponse,
    AdminRequestOut,
    AdminStatusUpdate,
    OfferOut,
    RequestDetail,
    RequestStatus,
    SweepReportOut,
)
from marketplace.services import request_store as store
from marketplace.services.expiry_sweeper import run_expiry_sweep
from marketplace.services.negotiation_service import NegotiationEngine
from marketplace.services.notifications import NotificationPort

router = APIRouter()

_admin = require_roles("ADMIN")


@router.get("/admin/services/requests", response_model=AdminRequestListResponse)
def admin_list(
    status: Optional[RequestStatus] = None,
    service_type: Optional[str] = Query(None, alias="type"),
    engineer_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = Query(None, max_length=200),
    page: int = Query(1, ge=1),
    limit: int = Query(store.ADMIN_LIST_DEFAULT_LIMIT, ge=1, le=store.ADMIN_LIST_MAX_LIMIT),
    current_user: CurrentUser = Depends(_admin),
    db: Session = Depends(get_db),
):
    rows, total, page, limit = store.admin_list_requests(
        db,
        status=status,
        service_type=service_type,
        engineer_id=engineer_id,
        customer_id=customer_id,
        date_from=date_from,
        date_to=date_to,
        search=search,
        page=page,
        limit=limit,
    )
    return {
        "items": [store.serialize_request(r, include_admin=True) for r in rows],
        "meta": {"page": page, "limit": limit, "total": total},
    }


@router.get("/admin/services/requests/{request_id}", response_model=RequestDetail)
def admin_request_detail(
    request_id: str,
    current_user: CurrentUser = Depends(_admin),
    db: Session = Depends(get_db),
):
    req = store.get_request(db, request_id)
    if req is None:
        raise HTTPException(404, "NOT_FOUND")
    return {
        "request": store.serialize_request(req, include_admin=True),
        "offers": [store.serialize_offer(o) for o in store.list_request_offers(db, req.id)],
    }


@router.patch("/admin/services/requests/{request_id}/status", response_model=AdminRequestOut)
def admin_update_status(
    request_id: str,
    payload: AdminStatusUpdate,
    current_user: CurrentUser = Depends(_admin),
    engine: NegotiationEngine = Depends(get_engine),
):
    req = unwrap(engine.admin_update_status(request_id, payload.status, note=payload.note, actor_id=current_user.id))
    return store.serialize_request(req, include_admin=True)


@router.post("/admin/services/requests/{request_id}/cancel", response_model=AdminRequestOut)
def admin_cancel(
    request_id: str,
    payload: AdminCancelRequest,
    current_user: CurrentUser = Depends(_admin),
    engine: NegotiationEngine = Depends(get_engine),
):
    req = unwrap(engine.admin_cancel(request_id, reason=payload.reason, actor_id=current_user.id))
    return store.serialize_request(req, include_admin=True)


@router.post("/admin/services/requests/{request_id}/assign", response_model=AdminRequestOut)
def admin_assign_engineer(
    request_id: str,
    payload: AdminAssignRequest,
    current_user: CurrentUser = Depends(_admin),
    engine: NegotiationEngine = Depends(get_engine),
):
    req = unwrap(
        engine.admin_assign_engineer(
            request_id,
            payload.engineer_id,
            amount=payload.amount,
            currency=payload.currency,
            note=payload.note,
            actor_id=current_user.id,
        )
    )
    return store.serialize_request(req, include_admin=True)


@router.post("/admin/services/requests/{request_id}/offers/{offer_id}/accept", response_model=AdminRequestOut)
def admin_accept_offer(
    request_id: str,
    offer_id: str,
    current_user: CurrentUser = Depends(_admin),
    engine: NegotiationEngine = Depends(get_engine),
):
    req = unwrap(engine.admin_accept_offer(request_id, offer_id, actor_id=current_user.id))
    return store.serialize_request(req, include_admin=True)


@router.post("/admin/services/offers/{offer_id}/reject", response_model=OfferOut)
def admin_reject_offer(
    offer_id: str,
    payload: AdminRejectOfferRequest,
    current_user: CurrentUser = Depends(_admin),
    engine: NegotiationEngine = Depends(get_engine),
):
    offer = unwrap(engine.admin_reject_offer(offer_id, reason=payload.reason, actor_id=current_user.id))
    return store.serialize_offer(offer)


@router.post("/admin/services/expiry-sweep/run", response_model=SweepReportOut)
def admin_run_expiry_sweep(
    current_user: CurrentUser = Depends(_admin),
    session_factory=Depends(get_session_factory),
    notifier: NotificationPort = Depends(get_notifier),
):
    return run_expiry_sweep(session_factory, notifier=notifier).as_dict()

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from marketplace.api.v1.deps import get_engine, unwrap
from marketplace.core.auth import CurrentUser, require_roles
from marketplace.core.dependencies import get_db
from marketplace.schemas.marketplace import (
    AcceptOfferRequest,
    OfferOut,
    RateRequest,
    RequestCreate,
    RequestOut,
    RequestStatus,
    RequestUpdate,
)
from marketplace.services import request_store as store
from marketplace.services.negotiation_service import NegotiationEngine

router = APIRouter()

_customer = require_roles("CUSTOMER", "ENGINEER")


@router.post("/services/requests", response_model=RequestOut, status_code=201)
def create_request(
    payload: RequestCreate,
    current_user: CurrentUser = Depends(_customer),
    engine: NegotiationEngine = Depends(get_engine),
):
    req = unwrap(
        engine.create_request(
            current_user.id,
            payload.address_ref,
            title=payload.title,
            service_type=payload.service_type,
            description=payload.description,
            images=payload.images,
            scheduled_at=payload.scheduled_at,
        )
    )
    return store.serialize_request(req)


@router.get("/services/requests/my", response_model=list[RequestOut])
def my_requests(
    status: Optional[RequestStatus] = None,
    current_user: CurrentUser = Depends(_customer),
    db: Session = Depends(get_db),
):
    return [store.serialize_request(r) for r in store.list_customer_requests(db, current_user.id, status)]


@router.get("/services/requests/{request_id}", response_model=RequestOut)
def get_request(
    request_id: str,
    current_user: CurrentUser = Depends(_customer),
    db: Session = Depends(get_db),
):
    req = store.get_owned_request(db, request_id, current_user.id)
    if req is None:
        raise HTTPException(404, "NOT_FOUND")
    return store.serialize_request(req)


@router.patch("/services/requests/{request_id}", response_model=RequestOut)
def update_request(
    request_id: str,
    payload: RequestUpdate,
    current_user: CurrentUser = Depends(_customer),
    engine: NegotiationEngine = Depends(get_engine),
):
    patch = payload.model_dump(exclude_unset=True)
    return store.serialize_request(unwrap(engine.update_request(current_user.id, request_id, patch)))


@router.get("/services/requests/{request_id}/offers", response_model=list[OfferOut])
def request_offers(
    request_id: str,
    current_user: CurrentUser = Depends(_customer),
    db: Session = Depends(get_db),
):
    req = store.get_owned_request(db, request_id, current_user.id)
    if req is None:
        raise HTTPException(404, "NOT_FOUND")
    return [store.serialize_offer(o) for o in store.list_request_offers(db, req.id)]


@router.post("/services/requests/{request_id}/accept-offer", response_model=RequestOut)
def accept_offer(
    request_id: str,
    payload: AcceptOfferRequest,
    current_user: CurrentUser = Depends(_customer),
    engine: NegotiationEngine = Depends(get_engine),
):
    return store.serialize_request(unwrap(engine.accept_offer(current_user.id, request_id, payload.offer_id)))


@router.post("/services/requests/{request_id}/cancel", response_model=RequestOut)
def cancel_request(
    request_id: str,
    current_user: CurrentUser = Depends(_customer),
    engine: NegotiationEngine = Depends(get_engine),
):
    return store.serialize_request(unwrap(engine.cancel(current_user.id, request_id)))


@router.post("/services/requests/{request_id}/rate", response_model=RequestOut)
def rate_request(
    request_id: str,
    payload: RateRequest,
    current_user: CurrentUser = Depends(_customer),
    engine: NegotiationEngine = Depends(get_engine),
):
    return store.serialize_request(
        unwrap(engine.rate(current_user.id, request_id, payload.score, payload.comment))
    )

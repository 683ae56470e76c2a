from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from marketplace.api.v1.deps import get_engine, unwrap
from marketplace.core.auth import CurrentUser, require_roles
from marketplace.core.dependencies import get_db
from marketplace.schemas.marketplace import (
    EngineerRequestDetail,
    OfferOut,
    OfferStatus,
    OfferSubmit,
    OfferUpdate,
    RequestOut,
    RequestStatus,
)
from marketplace.services import request_store as store
from marketplace.services.geo_matcher import nearby
from marketplace.services.negotiation_service import NegotiationEngine
from marketplace.services.transition_service import BIDDABLE_STATUSES, record_alert
from marketplace.utils.rate_limit import allow_offer_submission

router = APIRouter()

_engineer = require_roles("ENGINEER")


@router.get("/services/engineer/nearby", response_model=list[RequestOut])
def nearby_requests(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(10.0, gt=0),
    current_user: CurrentUser = Depends(_engineer),
    db: Session = Depends(get_db),
):
    matches = nearby(db, current_user.id, lat, lng, radius_km)
    return [store.serialize_request(m.request, distance_km=m.distance_km) for m in matches]


@router.get("/services/engineer/available", response_model=list[RequestOut])
def available_requests(
    city: Optional[str] = None,
    current_user: CurrentUser = Depends(_engineer),
    db: Session = Depends(get_db),
):
    rows = store.list_available_requests(db, current_user.id, city=city)
    return [store.serialize_request(r) for r in rows]


@router.get("/services/engineer/requests/{request_id}", response_model=EngineerRequestDetail)
def engineer_request_detail(
    request_id: str,
    current_user: CurrentUser = Depends(_engineer),
    db: Session = Depends(get_db),
):
    req = store.get_request(db, request_id)
    if req is None:
        raise HTTPException(404, "NOT_FOUND")
    own_offer = store.find_offer(db, req.id, current_user.id)
    visible = (
        RequestStatus(req.status) in BIDDABLE_STATUSES
        or req.engineer_id == current_user.id
        or own_offer is not None
    )
    if not visible:
        raise HTTPException(404, "NOT_FOUND")
    return {
        "request": store.serialize_request(req),
        "my_offer": store.serialize_offer(own_offer) if own_offer is not None else None,
    }


@router.post("/services/engineer/offers", response_model=OfferOut, status_code=201)
def submit_offer(
    payload: OfferSubmit,
    current_user: CurrentUser = Depends(_engineer),
    engine: NegotiationEngine = Depends(get_engine),
):
    if not allow_offer_submission(current_user.id):
        record_alert("OFFER_RATE_LIMITED", {"engineer_id": current_user.id})
        raise HTTPException(429, "Too Many Requests")
    offer = unwrap(
        engine.submit_offer(
            current_user.id,
            payload.request_id,
            payload.amount,
            payload.currency,
            payload.note,
            payload.lat,
            payload.lng,
        )
    )
    return store.serialize_offer(offer)


@router.patch("/services/engineer/offers/{offer_id}", response_model=OfferOut)
def update_offer(
    offer_id: str,
    payload: OfferUpdate,
    current_user: CurrentUser = Depends(_engineer),
    engine: NegotiationEngine = Depends(get_engine),
):
    patch = payload.model_dump(exclude_unset=True)
    offer = unwrap(engine.update_offer(current_user.id, offer_id, **patch))
    return store.serialize_offer(offer)


@router.get("/services/engineer/offers/my", response_model=list[OfferOut])
def my_offers(
    status: Optional[OfferStatus] = None,
    current_user: CurrentUser = Depends(_engineer),
    db: Session = Depends(get_db),
):
    return [store.serialize_offer(o) for o in store.list_engineer_offers(db, current_user.id, status)]


@router.post("/services/engineer/requests/{request_id}/start", response_model=RequestOut)
def start_service(
    request_id: str,
    current_user: CurrentUser = Depends(_engineer),
    engine: NegotiationEngine = Depends(get_engine),
):
    return store.serialize_request(unwrap(engine.start(current_user.id, request_id)))


@router.post("/services/engineer/requests/{request_id}/complete", response_model=RequestOut)
def complete_service(
    request_id: str,
    current_user: CurrentUser = Depends(_engineer),
    engine: NegotiationEngine = Depends(get_engine),
):
    return store.serialize_request(unwrap(engine.complete(current_user.id, request_id)))

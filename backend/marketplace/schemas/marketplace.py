from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class RequestStatus(str, Enum):
    OPEN = "OPEN"
    OFFERS_COLLECTING = "OFFERS_COLLECTING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    RATED = "RATED"
    CANCELLED = "CANCELLED"


class OfferStatus(str, Enum):
    OFFERED = "OFFERED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    # Reserved: no transition in the engine produces these two.
    CANCELLED = "CANCELLED"
    OUTBID = "OUTBID"
    EXPIRED = "EXPIRED"


class CancelReason(str, Enum):
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"
    EXPIRED = "EXPIRED"


class RequestCreate(BaseModel):
    address_ref: str = Field(min_length=1, max_length=128)
    title: str = Field(min_length=1, max_length=200)
    service_type: Optional[str] = Field(default=None, max_length=64)
    description: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    scheduled_at: Optional[datetime] = None


class RequestUpdate(BaseModel):
    address_ref: Optional[str] = Field(default=None, min_length=1, max_length=128)
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    service_type: Optional[str] = Field(default=None, max_length=64)
    description: Optional[str] = None
    images: Optional[List[str]] = None
    scheduled_at: Optional[datetime] = None


class OfferSubmit(BaseModel):
    request_id: str
    amount: float = Field(gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=10)
    note: Optional[str] = Field(default=None, max_length=2000)
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class OfferUpdate(BaseModel):
    amount: Optional[float] = Field(default=None, gt=0)
    note: Optional[str] = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def ensure_patch(self):
        if self.amount is None and self.note is None:
            raise ValueError("amount or note is required")
        return self


class AcceptOfferRequest(BaseModel):
    offer_id: str


class RateRequest(BaseModel):
    score: int = Field(ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=2000)


class AdminStatusUpdate(BaseModel):
    status: RequestStatus
    note: Optional[str] = Field(default=None, max_length=2000)


class AdminCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class AdminAssignRequest(BaseModel):
    engineer_id: str = Field(min_length=1, max_length=64)
    amount: Optional[float] = Field(default=None, gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=10)
    note: Optional[str] = Field(default=None, max_length=2000)


class AdminRejectOfferRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class OfferOut(BaseModel):
    id: str
    request_id: str
    engineer_id: str
    amount: float
    currency: str
    note: Optional[str] = None
    distance_km: Optional[float] = None
    status: OfferStatus
    updates_count: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RequestOut(BaseModel):
    id: str
    customer_id: str
    title: str
    service_type: Optional[str] = None
    description: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    scheduled_at: Optional[datetime] = None
    address_ref: str
    city: Optional[str] = None
    lat: float
    lng: float
    status: RequestStatus
    engineer_id: Optional[str] = None
    accepted_offer: Optional[Dict[str, Any]] = None
    rating: Optional[Dict[str, Any]] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    distance_km: Optional[float] = None


class AdminRequestOut(RequestOut):
    admin_notes: List[Dict[str, Any]] = Field(default_factory=list)
    row_version: int = 1


class RequestDetail(BaseModel):
    request: AdminRequestOut
    offers: List[OfferOut]


class EngineerRequestDetail(BaseModel):
    request: RequestOut
    my_offer: Optional[OfferOut] = None


class PageMeta(BaseModel):
    page: int
    limit: int
    total: int


class AdminRequestListResponse(BaseModel):
    items: List[AdminRequestOut]
    meta: PageMeta


class SweepReportOut(BaseModel):
    requests_cancelled: int
    offers_rejected: int
    offers_expired: int
    failures: int

    @field_validator("requests_cancelled", "offers_rejected", "offers_expired", "failures")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("counts must be non-negative")
        return value

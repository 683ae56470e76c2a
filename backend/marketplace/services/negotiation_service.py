"""
Negotiation engine: the request/offer lifecycle.

Every transition runs as one database transaction whose first write is a
conditional UPDATE guarded by the expected source status. A zero rowcount means
another writer got there first; the transaction is rolled back and the caller
gets the guard error. Notifications are emitted only after commit.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import case, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.core.config import get_settings
from marketplace.models.marketplace import EngineerOffer, ServiceRequest
from marketplace.schemas.marketplace import CancelReason, OfferStatus, RequestStatus
from marketplace.services import notifications as events
from marketplace.services import request_store as store
from marketplace.services.collaborators import AddressResolver
from marketplace.services.distance import distance_km
from marketplace.services.notifications import NotificationPort
from marketplace.services.outcomes import ErrorCode, Outcome
from marketplace.services.transition_service import (
    BIDDABLE_STATUSES,
    admin_note,
    create_audit_log,
    record_alert,
    sources_for,
)
from marketplace.utils import geohash
from marketplace.utils.clock import now_utc

logger = logging.getLogger(__name__)

_UNSET: Any = object()


@dataclass
class _Event:
    user_id: str
    key: str
    payload: dict[str, Any] = field(default_factory=dict)


def _validate_amount(amount: Any) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (ArithmeticError, ValueError) as exc:
        raise ValueError("amount must be a number") from exc
    if not value.is_finite() or value <= 0:
        raise ValueError("amount must be positive")
    return value.quantize(Decimal("0.01"))


def _validate_point(lat: float, lng: float) -> None:
    if not (-90.0 <= float(lat) <= 90.0) or not (-180.0 <= float(lng) <= 180.0):
        raise ValueError("coordinates out of range")


class NegotiationEngine:
    def __init__(
        self,
        db: Session,
        notifier: NotificationPort,
        addresses: Optional[AddressResolver] = None,
    ) -> None:
        self.db = db
        self.notifier = notifier
        self.addresses = addresses
        self.settings = get_settings()

    # ------------------------------------------------------------------ helpers

    def _emit(self, pending: list[_Event]) -> None:
        for event in pending:
            try:
                self.notifier.emit(event.user_id, event.key, event.payload)
            except Exception:
                logger.exception("Notification emit failed event=%s user=%s", event.key, event.user_id)
                record_alert("NOTIFICATION_EMIT_FAILED", {"event_key": event.key})

    def _fail(self, code: ErrorCode) -> Outcome:
        self.db.rollback()
        return Outcome.failure(code)

    def _status_values(self, now: datetime, status: RequestStatus, **extra: Any) -> dict[str, Any]:
        return {
            "status": status.value,
            "status_changed_at": now,
            "updated_at": now,
            "row_version": ServiceRequest.row_version + 1,
            **extra,
        }

    def _audit_status(
        self,
        req_id: Any,
        old: str,
        new: RequestStatus,
        *,
        actor_type: str,
        actor_id: Optional[str],
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        create_audit_log(
            self.db,
            entity_type="service_request",
            entity_id=str(req_id),
            action="STATUS_CHANGE",
            old_value={"status": old},
            new_value={"status": new.value},
            actor_type=actor_type,
            actor_id=actor_id,
            metadata=metadata,
        )

    def _resolve(self, customer_id: str, address_ref: str):
        if self.addresses is None:
            raise RuntimeError("Address resolver is not configured")
        location = self.addresses.resolve(customer_id, address_ref)
        if location is None:
            return None
        try:
            _validate_point(location.lat, location.lng)
        except ValueError:
            logger.warning("Address %s resolved to invalid coordinates", address_ref)
            return None
        return location

    def _find_offer(self, request_id: Any, engineer_id: str) -> Optional[EngineerOffer]:
        return store.find_offer(self.db, request_id, engineer_id, for_update=True)

    # ------------------------------------------------------------------ customer

    def create_request(
        self,
        customer_id: str,
        address_ref: str,
        *,
        title: str,
        service_type: Optional[str] = None,
        description: Optional[str] = None,
        images: Optional[list[str]] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> Outcome:
        location = self._resolve(customer_id, address_ref)
        if location is None:
            return Outcome.failure(ErrorCode.NOT_FOUND)

        now = now_utc(self.db)
        req = ServiceRequest(
            id=uuid.uuid4(),
            customer_id=customer_id,
            title=title,
            service_type=service_type,
            description=description,
            images=list(images or []),
            scheduled_at=scheduled_at,
            address_ref=address_ref,
            city=location.city,
            lat=float(location.lat),
            lng=float(location.lng),
            geohash=geohash.encode(location.lat, location.lng),
            status=RequestStatus.OPEN.value,
            admin_notes=[],
            row_version=1,
            status_changed_at=now,
            created_at=now,
            updated_at=now,
        )
        self.db.add(req)
        create_audit_log(
            self.db,
            entity_type="service_request",
            entity_id=str(req.id),
            action="REQUEST_CREATED",
            old_value=None,
            new_value={"status": RequestStatus.OPEN.value, "address_ref": address_ref},
            actor_type="CUSTOMER",
            actor_id=customer_id,
        )
        self.db.commit()
        self.db.refresh(req)
        self._emit([_Event(customer_id, events.REQUEST_OPENED, {"request_id": str(req.id), "title": title})])
        return Outcome.success(req)

    def update_request(self, customer_id: str, request_id: Any, patch: dict[str, Any]) -> Outcome:
        """Edit request details while it is still OPEN and nobody has bid."""
        req = store.get_owned_request(self.db, request_id, customer_id)
        if req is None:
            return Outcome.failure(ErrorCode.NOT_FOUND)
        if req.status != RequestStatus.OPEN.value:
            return Outcome.failure(ErrorCode.INVALID_STATUS)
        if store.has_offers(self.db, req.id):
            return Outcome.failure(ErrorCode.HAS_OFFERS)

        editable = {"title", "service_type", "description", "images", "scheduled_at"}
        values: dict[str, Any] = {k: v for k, v in patch.items() if k in editable}
        if "images" in values:
            values["images"] = list(values["images"] or [])

        address_ref = patch.get("address_ref")
        if address_ref and address_ref != req.address_ref:
            location = self._resolve(customer_id, address_ref)
            if location is None:
                return Outcome.failure(ErrorCode.NOT_FOUND)
            values.update(
                address_ref=address_ref,
                city=location.city,
                lat=float(location.lat),
                lng=float(location.lng),
                geohash=geohash.encode(location.lat, location.lng),
            )
        if not values:
            return Outcome.success(req)

        now = now_utc(self.db)
        values["updated_at"] = now
        changed = store.conditional_update_request(
            self.db,
            req.id,
            expected=[RequestStatus.OPEN],
            values=values,
            where=[~select(EngineerOffer.id).where(EngineerOffer.request_id == req.id).exists()],
        )
        if not changed:
            return self._fail(ErrorCode.INVALID_STATUS)
        create_audit_log(
            self.db,
            entity_type="service_request",
            entity_id=str(req.id),
            action="REQUEST_UPDATED",
            old_value=None,
            new_value={k: v for k, v in values.items() if k not in {"updated_at", "scheduled_at"}},
            actor_type="CUSTOMER",
            actor_id=customer_id,
        )
        self.db.commit()
        return Outcome.success(store.get_request(self.db, req.id))

    def accept_offer(self, customer_id: str, request_id: Any, offer_id: Any) -> Outcome:
        req = store.get_owned_request(self.db, request_id, customer_id)
        if req is None:
            return Outcome.failure(ErrorCode.NOT_FOUND)
        return self._accept(req, offer_id, actor_type="CUSTOMER", actor_id=customer_id)

    def _accept(
        self,
        req: ServiceRequest,
        offer_id: Any,
        *,
        actor_type: str,
        actor_id: Optional[str],
        note: Optional[str] = None,
    ) -> Outcome:
        if RequestStatus(req.status) not in BIDDABLE_STATUSES:
            return Outcome.failure(ErrorCode.INVALID_STATUS)
        store.lock_request(self.db, req.id)
        offer = store.get_offer(self.db, offer_id, for_update=True)
        if offer is None or offer.request_id != req.id or offer.status != OfferStatus.OFFERED.value:
            return Outcome.failure(ErrorCode.OFFER_NOT_FOUND)

        now = now_utc(self.db)
        snapshot = {
            "offer_id": str(offer.id),
            "engineer_id": offer.engineer_id,
            "amount": float(offer.amount),
            "currency": offer.currency,
            "note": offer.note,
            "accepted_at": now.isoformat(),
        }
        old_status = req.status
        values = self._status_values(
            now, RequestStatus.ASSIGNED, engineer_id=offer.engineer_id, accepted_offer=snapshot
        )
        if note is not None:
            values["admin_notes"] = list(req.admin_notes or []) + [
                admin_note(note, actor_id=actor_id, action="ACCEPT_OFFER")
            ]
        if not store.conditional_update_request(
            self.db,
            req.id,
            expected=sources_for(RequestStatus.ASSIGNED),
            values=values,
            where=[ServiceRequest.engineer_id.is_(None)],
        ):
            record_alert("ACCEPT_RACE_LOST", {"request_id": str(req.id)})
            return self._fail(ErrorCode.INVALID_STATUS)

        if not store.conditional_update_offer(
            self.db,
            offer.id,
            expected=[OfferStatus.OFFERED],
            values={"status": OfferStatus.ACCEPTED.value, "updated_at": now},
            # The accepted row must be the one the snapshot was built from.
            where=[EngineerOffer.request_id == req.id, EngineerOffer.updates_count == offer.updates_count],
        ):
            return self._fail(ErrorCode.OFFER_NOT_FOUND)

        losers = store.reject_open_offers(self.db, req.id, now=now, keep_offer_id=offer.id)
        self._audit_status(
            req.id,
            old_status,
            RequestStatus.ASSIGNED,
            actor_type=actor_type,
            actor_id=actor_id,
            metadata={"offer_id": str(offer.id), "rejected_offers": len(losers)},
        )
        self.db.commit()

        payload = {"request_id": str(req.id), "offer_id": str(offer.id)}
        pending = [_Event(offer.engineer_id, events.OFFER_ACCEPTED, payload)]
        pending += [
            _Event(engineer_id, events.OFFER_REJECTED, {"request_id": str(req.id), "offer_id": str(loser_id)})
            for loser_id, engineer_id in losers
        ]
        self._emit(pending)
        return Outcome.success(store.get_request(self.db, req.id))

    def cancel(self, customer_id: str, request_id: Any) -> Outcome:
        req = store.get_owned_request(self.db, request_id, customer_id)
        if req is None:
            return Outcome.failure(ErrorCode.NOT_FOUND)
        return self._cancel(req, reason=CancelReason.CUSTOMER, actor_type="CUSTOMER", actor_id=customer_id)

    def _cancel(
        self,
        req: ServiceRequest,
        *,
        reason: CancelReason,
        actor_type: str,
        actor_id: Optional[str],
        note: Optional[str] = None,
    ) -> Outcome:
        if RequestStatus(req.status) not in BIDDABLE_STATUSES:
            return Outcome.failure(ErrorCode.CANNOT_CANCEL)

        now = now_utc(self.db)
        old_status = req.status
        values = self._status_values(now, RequestStatus.CANCELLED, cancel_reason=reason.value)
        if reason == CancelReason.ADMIN:
            values["admin_notes"] = list(req.admin_notes or []) + [
                admin_note(note, actor_id=actor_id, action="CANCEL")
            ]
        if not store.conditional_update_request(
            self.db,
            req.id,
            expected=BIDDABLE_STATUSES,
            values=values,
            where=[ServiceRequest.engineer_id.is_(None)],
        ):
            return self._fail(ErrorCode.CANNOT_CANCEL)

        losers = store.reject_open_offers(self.db, req.id, now=now)
        self._audit_status(
            req.id,
            old_status,
            RequestStatus.CANCELLED,
            actor_type=actor_type,
            actor_id=actor_id,
            metadata={"reason": reason.value, "rejected_offers": len(losers)},
        )
        self.db.commit()

        payload = {"request_id": str(req.id), "by_admin": reason == CancelReason.ADMIN}
        pending = [_Event(req.customer_id, events.REQUEST_CANCELLED, payload)]
        pending += [
            _Event(engineer_id, events.OFFER_REJECTED, {"request_id": str(req.id), "offer_id": str(loser_id)})
            for loser_id, engineer_id in losers
        ]
        self._emit(pending)
        return Outcome.success(store.get_request(self.db, req.id))

    def rate(self, customer_id: str, request_id: Any, score: int, comment: Optional[str] = None) -> Outcome:
        if isinstance(score, bool) or not isinstance(score, int) or not 1 <= score <= 5:
            raise ValueError("score must be an integer between 1 and 5")
        req = store.get_owned_request(self.db, request_id, customer_id)
        if req is None:
            return Outcome.failure(ErrorCode.NOT_FOUND)
        if req.status != RequestStatus.COMPLETED.value:
            return Outcome.failure(ErrorCode.NOT_COMPLETED)

        now = now_utc(self.db)
        rating = {"score": score, "comment": comment, "rated_at": now.isoformat()}
        if not store.conditional_update_request(
            self.db,
            req.id,
            expected=sources_for(RequestStatus.RATED),
            values=self._status_values(now, RequestStatus.RATED, rating=rating),
        ):
            return self._fail(ErrorCode.NOT_COMPLETED)
        self._audit_status(
            req.id,
            RequestStatus.COMPLETED.value,
            RequestStatus.RATED,
            actor_type="CUSTOMER",
            actor_id=customer_id,
            metadata={"score": score},
        )
        self.db.commit()
        self._emit([_Event(req.engineer_id, events.SERVICE_RATED, {"request_id": str(req.id), "score": score})])
        return Outcome.success(store.get_request(self.db, req.id))

    # ------------------------------------------------------------------ engineer

    def submit_offer(
        self,
        engineer_id: str,
        request_id: Any,
        amount: Any,
        currency: Optional[str],
        note: Optional[str],
        engineer_lat: float,
        engineer_lng: float,
    ) -> Outcome:
        value = _validate_amount(amount)
        _validate_point(engineer_lat, engineer_lng)
        currency = (currency or self.settings.default_currency).upper()
        retries = max(0, int(self.settings.offer_upsert_max_retries))

        for attempt in range(retries + 1):
            req = store.get_request(self.db, request_id)
            if req is None:
                return Outcome.failure(ErrorCode.NOT_FOUND)
            if req.customer_id == engineer_id:
                return Outcome.failure(ErrorCode.SELF_NOT_ALLOWED)
            if RequestStatus(req.status) not in BIDDABLE_STATUSES:
                return Outcome.failure(ErrorCode.INVALID_STATUS)

            dist = distance_km(engineer_lat, engineer_lng, req.lat, req.lng)
            now = now_utc(self.db)
            was_open = ServiceRequest.status == RequestStatus.OPEN.value
            # Locks the request row for the rest of the transaction and flips OPEN.
            if not store.conditional_update_request(
                self.db,
                req.id,
                expected=BIDDABLE_STATUSES,
                values={
                    "status": RequestStatus.OFFERS_COLLECTING.value,
                    "updated_at": now,
                    "status_changed_at": case((was_open, now), else_=ServiceRequest.status_changed_at),
                    "row_version": case((was_open, ServiceRequest.row_version + 1), else_=ServiceRequest.row_version),
                },
                where=[ServiceRequest.engineer_id.is_(None)],
            ):
                return self._fail(ErrorCode.INVALID_STATUS)

            existing = self._find_offer(req.id, engineer_id)
            try:
                if existing is not None:
                    store.conditional_update_offer(
                        self.db,
                        existing.id,
                        expected=[s for s in OfferStatus if s != OfferStatus.ACCEPTED],
                        values={
                            "amount": value,
                            "currency": currency,
                            "note": note,
                            "distance_km": dist,
                            "status": OfferStatus.OFFERED.value,
                            "updates_count": EngineerOffer.updates_count + 1,
                            "updated_at": now,
                        },
                    )
                    offer_id = existing.id
                    action = "OFFER_RESUBMITTED"
                else:
                    offer_id = uuid.uuid4()
                    self.db.add(
                        EngineerOffer(
                            id=offer_id,
                            request_id=req.id,
                            engineer_id=engineer_id,
                            amount=value,
                            currency=currency,
                            note=note,
                            distance_km=dist,
                            status=OfferStatus.OFFERED.value,
                            updates_count=1,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    self.db.flush()
                    action = "OFFER_SUBMITTED"
                create_audit_log(
                    self.db,
                    entity_type="engineer_offer",
                    entity_id=str(offer_id),
                    action=action,
                    old_value=None,
                    new_value={"amount": float(value), "currency": currency, "distance_km": dist},
                    actor_type="ENGINEER",
                    actor_id=engineer_id,
                    metadata={"request_id": str(req.id)},
                )
                self.db.commit()
            except IntegrityError:
                # A concurrent submit inserted the same (request, engineer) pair; retry as an update.
                self.db.rollback()
                record_alert("OFFER_UPSERT_CONFLICT", {"request_id": str(req.id)})
                logger.info("Offer upsert conflict request=%s engineer=%s attempt=%s", req.id, engineer_id, attempt + 1)
                continue

            offer = store.get_offer(self.db, offer_id)
            self._emit(
                [
                    _Event(
                        req.customer_id,
                        events.NEW_OFFER,
                        {"request_id": str(req.id), "offer_id": str(offer_id), "amount": float(value), "currency": currency},
                    )
                ]
            )
            return Outcome.success(offer)

        logger.warning("Offer upsert gave up request=%s engineer=%s attempts=%s", request_id, engineer_id, retries + 1)
        return Outcome.failure(ErrorCode.CONFLICT)

    def update_offer(
        self,
        engineer_id: str,
        offer_id: Any,
        *,
        amount: Any = _UNSET,
        note: Any = _UNSET,
    ) -> Outcome:
        """Partial edit of an OFFERED offer. Distance is left as computed at submission."""
        values: dict[str, Any] = {}
        if amount is not _UNSET and amount is not None:
            values["amount"] = _validate_amount(amount)
        if note is not _UNSET:
            values["note"] = note
        if not values:
            raise ValueError("amount or note is required")

        offer = store.get_offer(self.db, offer_id)
        if offer is None or offer.engineer_id != engineer_id:
            return Outcome.failure(ErrorCode.NOT_FOUND)
        if offer.status != OfferStatus.OFFERED.value:
            return Outcome.failure(ErrorCode.CANNOT_UPDATE)

        limit = int(self.settings.offer_max_updates or 0)
        where: list[Any] = [EngineerOffer.engineer_id == engineer_id]
        if limit > 0:
            if int(offer.updates_count or 0) >= limit:
                return Outcome.failure(ErrorCode.UPDATE_LIMIT_REACHED)
            where.append(EngineerOffer.updates_count < limit)

        now = now_utc(self.db)
        values.update(updates_count=EngineerOffer.updates_count + 1, updated_at=now)
        if not store.conditional_update_offer(
            self.db, offer.id, expected=[OfferStatus.OFFERED], values=values, where=where
        ):
            self.db.rollback()
            current = store.get_offer(self.db, offer.id)
            if current is not None and current.status == OfferStatus.OFFERED.value and limit > 0:
                return Outcome.failure(ErrorCode.UPDATE_LIMIT_REACHED)
            return Outcome.failure(ErrorCode.CANNOT_UPDATE)

        create_audit_log(
            self.db,
            entity_type="engineer_offer",
            entity_id=str(offer.id),
            action="OFFER_UPDATED",
            old_value={"amount": float(offer.amount), "note": offer.note},
            new_value={k: (float(v) if isinstance(v, Decimal) else v) for k, v in values.items() if k in {"amount", "note"}},
            actor_type="ENGINEER",
            actor_id=engineer_id,
            metadata={"request_id": str(offer.request_id)},
        )
        self.db.commit()

        updated = store.get_offer(self.db, offer.id)
        req = store.get_request(self.db, updated.request_id)
        if req is not None:
            self._emit(
                [
                    _Event(
                        req.customer_id,
                        events.OFFER_UPDATED,
                        {"request_id": str(req.id), "offer_id": str(updated.id), "amount": float(updated.amount)},
                    )
                ]
            )
        return Outcome.success(updated)

    def start(self, engineer_id: str, request_id: Any) -> Outcome:
        return self._advance(engineer_id, request_id, RequestStatus.IN_PROGRESS, events.SERVICE_STARTED)

    def complete(self, engineer_id: str, request_id: Any) -> Outcome:
        return self._advance(engineer_id, request_id, RequestStatus.COMPLETED, events.SERVICE_COMPLETED)

    def _advance(self, engineer_id: str, request_id: Any, target: RequestStatus, event_key: str) -> Outcome:
        req = store.get_request(self.db, request_id)
        if req is None:
            return Outcome.failure(ErrorCode.NOT_FOUND)
        if req.engineer_id != engineer_id:
            return Outcome.failure(ErrorCode.NOT_ASSIGNED)
        sources = sources_for(target)
        if RequestStatus(req.status) not in sources:
            return Outcome.failure(ErrorCode.INVALID_STATUS)

        now = now_utc(self.db)
        old_status = req.status
        if not store.conditional_update_request(
            self.db,
            req.id,
            expected=sources,
            values=self._status_values(now, target),
            where=[ServiceRequest.engineer_id == engineer_id],
        ):
            return self._fail(ErrorCode.INVALID_STATUS)
        self._audit_status(req.id, old_status, target, actor_type="ENGINEER", actor_id=engineer_id)
        self.db.commit()
        self._emit([_Event(req.customer_id, event_key, {"request_id": str(req.id)})])
        return Outcome.success(store.get_request(self.db, req.id))

    # ------------------------------------------------------------------ admin

    def admin_update_status(
        self,
        request_id: Any,
        status: RequestStatus,
        *,
        note: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Outcome:
        req = store.get_request(self.db, request_id)
        if req is None:
            return Outcome.failure(ErrorCode.NOT_FOUND)
        target = RequestStatus(status)
        if target == RequestStatus.CANCELLED:
            return self._cancel(req, reason=CancelReason.ADMIN, actor_type="ADMIN", actor_id=actor_id, note=note)
        if target not in (RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED):
            return Outcome.failure(ErrorCode.INVALID_STATUS)
        sources = sources_for(target)
        if RequestStatus(req.status) not in sources:
            return Outcome.failure(ErrorCode.INVALID_STATUS)

        now = now_utc(self.db)
        old_status = req.status
        notes = list(req.admin_notes or []) + [
            admin_note(note, actor_id=actor_id, action=f"STATUS_{target.value}")
        ]
        if not store.conditional_update_request(
            self.db,
            req.id,
            expected=sources,
            values=self._status_values(now, target, admin_notes=notes),
            where=[ServiceRequest.row_version == req.row_version],
        ):
            return self._fail(ErrorCode.INVALID_STATUS)
        self._audit_status(req.id, old_status, target, actor_type="ADMIN", actor_id=actor_id, metadata={"note": note})
        self.db.commit()

        payload = {"request_id": str(req.id), "status": target.value}
        self._emit(
            [
                _Event(req.customer_id, events.SERVICE_STATUS_UPDATED, payload),
                _Event(req.engineer_id, events.SERVICE_STATUS_UPDATED, payload),
            ]
        )
        return Outcome.success(store.get_request(self.db, req.id))

    def admin_cancel(self, request_id: Any, *, reason: Optional[str] = None, actor_id: Optional[str] = None) -> Outcome:
        req = store.get_request(self.db, request_id)
        if req is None:
            return Outcome.failure(ErrorCode.NOT_FOUND)
        return self._cancel(req, reason=CancelReason.ADMIN, actor_type="ADMIN", actor_id=actor_id, note=reason)

    def admin_accept_offer(self, request_id: Any, offer_id: Any, *, actor_id: Optional[str] = None) -> Outcome:
        req = store.get_request(self.db, request_id)
        if req is None:
            return Outcome.failure(ErrorCode.NOT_FOUND)
        return self._accept(req, offer_id, actor_type="ADMIN", actor_id=actor_id, note="accepted on behalf of customer")

    def admin_reject_offer(self, offer_id: Any, *, reason: Optional[str] = None, actor_id: Optional[str] = None) -> Outcome:
        offer = store.get_offer(self.db, offer_id)
        if offer is None:
            return Outcome.failure(ErrorCode.OFFER_NOT_FOUND)
        if offer.status != OfferStatus.OFFERED.value:
            return Outcome.failure(ErrorCode.INVALID_STATUS)

        now = now_utc(self.db)
        if not store.conditional_update_offer(
            self.db,
            offer.id,
            expected=[OfferStatus.OFFERED],
            values={"status": OfferStatus.REJECTED.value, "updated_at": now},
        ):
            return self._fail(ErrorCode.INVALID_STATUS)
        req = store.get_request(self.db, offer.request_id)
        req.admin_notes = list(req.admin_notes or []) + [
            admin_note(reason, actor_id=actor_id, action="REJECT_OFFER")
        ]
        create_audit_log(
            self.db,
            entity_type="engineer_offer",
            entity_id=str(offer.id),
            action="OFFER_REJECTED",
            old_value={"status": OfferStatus.OFFERED.value},
            new_value={"status": OfferStatus.REJECTED.value},
            actor_type="ADMIN",
            actor_id=actor_id,
            metadata={"request_id": str(offer.request_id), "reason": reason},
        )
        self.db.commit()
        self._emit(
            [_Event(offer.engineer_id, events.OFFER_REJECTED, {"request_id": str(offer.request_id), "offer_id": str(offer.id)})]
        )
        return Outcome.success(store.get_offer(self.db, offer.id))

    def admin_assign_engineer(
        self,
        request_id: Any,
        engineer_id: str,
        *,
        amount: Any = None,
        currency: Optional[str] = None,
        note: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Outcome:
        """Force ASSIGNED from OPEN/OFFERS_COLLECTING.

        The engineer's live offer becomes the accepted one; without one, an
        ``amount`` is required and an ACCEPTED offer is written for them.
        Every other OFFERED offer is rejected.
        """
        req = store.get_request(self.db, request_id)
        if req is None:
            return Outcome.failure(ErrorCode.NOT_FOUND)
        if RequestStatus(req.status) not in BIDDABLE_STATUSES:
            return Outcome.failure(ErrorCode.INVALID_STATUS)
        if req.customer_id == engineer_id:
            return Outcome.failure(ErrorCode.SELF_NOT_ALLOWED)

        existing = self._find_offer(req.id, engineer_id)
        live = existing is not None and existing.status == OfferStatus.OFFERED.value
        if not live and amount is None:
            return Outcome.failure(ErrorCode.OFFER_NOT_FOUND)

        now = now_utc(self.db)
        if live:
            offer_id = existing.id
            terms = {"amount": existing.amount, "currency": existing.currency, "note": existing.note}
        else:
            offer_id = existing.id if existing is not None else uuid.uuid4()
            terms = {
                "amount": _validate_amount(amount),
                "currency": (currency or self.settings.default_currency).upper(),
                "note": note,
            }

        snapshot = {
            "offer_id": str(offer_id),
            "engineer_id": engineer_id,
            "amount": float(terms["amount"]),
            "currency": terms["currency"],
            "note": terms["note"],
            "accepted_at": now.isoformat(),
        }
        old_status = req.status
        notes = list(req.admin_notes or []) + [admin_note(note, actor_id=actor_id, action="ASSIGN_ENGINEER")]
        if not store.conditional_update_request(
            self.db,
            req.id,
            expected=sources_for(RequestStatus.ASSIGNED),
            values=self._status_values(
                now, RequestStatus.ASSIGNED, engineer_id=engineer_id, accepted_offer=snapshot, admin_notes=notes
            ),
            where=[ServiceRequest.engineer_id.is_(None), ServiceRequest.row_version == req.row_version],
        ):
            return self._fail(ErrorCode.INVALID_STATUS)

        if existing is not None:
            changed = store.conditional_update_offer(
                self.db,
                existing.id,
                expected=[OfferStatus.OFFERED, OfferStatus.REJECTED, OfferStatus.EXPIRED],
                values={**terms, "status": OfferStatus.ACCEPTED.value, "updated_at": now},
                where=[EngineerOffer.status == existing.status],
            )
            if not changed:
                return self._fail(ErrorCode.OFFER_NOT_FOUND)
        else:
            self.db.add(
                EngineerOffer(
                    id=offer_id,
                    request_id=req.id,
                    engineer_id=engineer_id,
                    status=OfferStatus.ACCEPTED.value,
                    updates_count=1,
                    created_at=now,
                    updated_at=now,
                    **terms,
                )
            )
            try:
                self.db.flush()
            except IntegrityError:
                return self._fail(ErrorCode.INVALID_STATUS)

        losers = store.reject_open_offers(self.db, req.id, now=now, keep_offer_id=offer_id)
        self._audit_status(
            req.id,
            old_status,
            RequestStatus.ASSIGNED,
            actor_type="ADMIN",
            actor_id=actor_id,
            metadata={"engineer_id": engineer_id, "offer_id": str(offer_id), "rejected_offers": len(losers)},
        )
        self.db.commit()

        payload = {"request_id": str(req.id), "offer_id": str(offer_id), "engineer_id": engineer_id}
        pending = [
            _Event(req.customer_id, events.ENGINEER_ASSIGNED, payload),
            _Event(engineer_id, events.OFFER_ACCEPTED, payload),
        ]
        pending += [
            _Event(loser_engineer, events.OFFER_REJECTED, {"request_id": str(req.id), "offer_id": str(loser_id)})
            for loser_id, loser_engineer in losers
        ]
        self._emit(pending)
        return Outcome.success(store.get_request(self.db, req.id))

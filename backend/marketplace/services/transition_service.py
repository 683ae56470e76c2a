import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from marketplace.core.config import get_settings
from marketplace.models.marketplace import AuditLog
from marketplace.schemas.marketplace import OfferStatus, RequestStatus
from marketplace.utils.alerting import alert_tracker

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.OPEN: frozenset(
        {RequestStatus.OFFERS_COLLECTING, RequestStatus.ASSIGNED, RequestStatus.CANCELLED}
    ),
    RequestStatus.OFFERS_COLLECTING: frozenset({RequestStatus.ASSIGNED, RequestStatus.CANCELLED}),
    RequestStatus.ASSIGNED: frozenset({RequestStatus.IN_PROGRESS}),
    RequestStatus.IN_PROGRESS: frozenset({RequestStatus.COMPLETED}),
    RequestStatus.COMPLETED: frozenset({RequestStatus.RATED}),
    RequestStatus.RATED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}

OFFER_TRANSITIONS: dict[OfferStatus, frozenset[OfferStatus]] = {
    OfferStatus.OFFERED: frozenset({OfferStatus.ACCEPTED, OfferStatus.REJECTED, OfferStatus.EXPIRED}),
    OfferStatus.ACCEPTED: frozenset(),
    OfferStatus.REJECTED: frozenset(),
    OfferStatus.CANCELLED: frozenset(),
    OfferStatus.OUTBID: frozenset(),
    OfferStatus.EXPIRED: frozenset(),
}

# Request states in which offers may be placed, edited, accepted or the request cancelled.
BIDDABLE_STATUSES = frozenset({RequestStatus.OPEN, RequestStatus.OFFERS_COLLECTING})
ASSIGNED_STATUSES = frozenset(
    {RequestStatus.ASSIGNED, RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED, RequestStatus.RATED}
)

PII_REDACTION_FALLBACK_FIELDS = {
    "phone",
    "email",
    "address",
    "line1",
    "whatsapp",
}


def is_allowed(current: RequestStatus, new: RequestStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def is_offer_transition_allowed(current: OfferStatus, new: OfferStatus) -> bool:
    return new in OFFER_TRANSITIONS[current]


def sources_for(target: RequestStatus) -> frozenset[RequestStatus]:
    """Every state that has an edge into ``target``; used as the WHERE clause of a conditional update."""
    return frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets)


def status_values(statuses) -> list[str]:
    return sorted(status.value for status in statuses)


def _redact_pii(value: Any, redact_keys: set[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in redact_keys:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = _redact_pii(item, redact_keys)
        return redacted
    if isinstance(value, list):
        return [_redact_pii(item, redact_keys) for item in value]
    return value


def create_audit_log(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    old_value: Optional[dict[str, Any]],
    new_value: Optional[dict[str, Any]],
    actor_type: str,
    actor_id: Optional[str],
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    settings = get_settings()
    if settings.pii_redaction_enabled:
        configured = {item.lower() for item in settings.pii_redaction_fields}
        redact_keys = configured or set(PII_REDACTION_FALLBACK_FIELDS)
        old_value = _redact_pii(old_value, redact_keys)
        new_value = _redact_pii(new_value, redact_keys)
        if metadata is not None:
            metadata = _redact_pii(metadata, redact_keys)

    db.add(
        AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            old_value=old_value,
            new_value=new_value,
            actor_type=actor_type,
            actor_id=actor_id,
            audit_meta=metadata,
        )
    )
    record_alert(action, metadata)


def record_alert(action: str, metadata: Optional[dict[str, Any]] = None) -> None:
    try:
        alert_tracker.record(action, metadata)
    except Exception:
        logger.exception("Alert tracker failed for action=%s", action)


def admin_note(note: Optional[str], *, actor_id: Optional[str], action: str) -> dict[str, Any]:
    return {
        "action": action,
        "note": note or "",
        "actor_id": actor_id,
        "at": datetime.now(timezone.utc).isoformat(),
    }

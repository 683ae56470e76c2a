from fastapi import Depends, HTTPException
from sqlalchemy.orm import Session

from marketplace.core.dependencies import get_db, get_session_factory
from marketplace.services.collaborators import AddressResolver, HttpAddressResolver
from marketplace.services.negotiation_service import NegotiationEngine
from marketplace.services.notifications import NotificationPort, OutboxNotificationPort
from marketplace.services.outcomes import ErrorCode, Outcome

_STATUS_BY_ERROR = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.OFFER_NOT_FOUND: 404,
    ErrorCode.NOT_ASSIGNED: 403,
    ErrorCode.SELF_NOT_ALLOWED: 403,
    ErrorCode.CONFLICT: 409,
}


def get_notifier() -> NotificationPort:
    return OutboxNotificationPort(get_session_factory())


def get_address_resolver() -> AddressResolver:
    return HttpAddressResolver()


def get_engine(
    db: Session = Depends(get_db),
    notifier: NotificationPort = Depends(get_notifier),
    addresses: AddressResolver = Depends(get_address_resolver),
) -> NegotiationEngine:
    return NegotiationEngine(db, notifier, addresses)


def unwrap(outcome: Outcome):
    if outcome.ok:
        return outcome.data
    code = outcome.error
    raise HTTPException(_STATUS_BY_ERROR.get(code, 409), code.value if code else "ERROR")

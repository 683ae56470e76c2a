"""
Tests for the expiry sweep.

Covers:
  - stale OPEN/OFFERS_COLLECTING requests become CANCELLED (EXPIRED) with their offers rejected
  - ASSIGNED (and younger) requests are never touched
  - an acceptance arriving after the sweep observes INVALID_STATUS
  - stale OFFERED offers expire while the request stays biddable
  - one failing row is counted and skipped, the rest of the batch completes
  - backlogs larger than one batch are paged until drained
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import update

from fakes import RecordingNotifier
from marketplace.models.marketplace import EngineerOffer, ServiceRequest
from marketplace.services import expiry_sweeper
from marketplace.services import notifications as events
from marketplace.services import request_store as store
from marketplace.services.outcomes import ErrorCode
from marketplace.utils.clock import now_utc

E1 = (15.3700, 44.1900)


def _open_request(negotiation, addresses, customer_id="cust-1", ref="addr-sanaa"):
    if ref != "addr-sanaa":
        addresses.add(customer_id, ref, 15.37, 44.19)
    out = negotiation.create_request(customer_id, ref, title="Fix door")
    assert out.ok
    return out.data


def _age_request(db, request_id, days):
    db.execute(
        update(ServiceRequest)
        .where(ServiceRequest.id == request_id)
        .values(created_at=now_utc(db) - timedelta(days=days))
    )
    db.commit()


def _age_offer(db, offer_id, days):
    db.execute(
        update(EngineerOffer)
        .where(EngineerOffer.id == offer_id)
        .values(updated_at=now_utc(db) - timedelta(days=days))
    )
    db.commit()


def test_six_day_old_request_is_cancelled(negotiation, addresses, db, session_factory):
    req = _open_request(negotiation, addresses)
    _age_request(db, req.id, 6)
    sink = RecordingNotifier()

    report = expiry_sweeper.run_expiry_sweep(session_factory, notifier=sink, request_ttl_days=5)

    assert report.requests_cancelled == 1
    assert report.offers_rejected == 0
    assert report.failures == 0
    expired = store.get_request(db, req.id)
    assert expired.status == "CANCELLED"
    assert expired.cancel_reason == "EXPIRED"
    assert sink.keys_for("cust-1") == [events.REQUEST_CANCELLED]


def test_young_request_is_left_alone(negotiation, addresses, db, session_factory):
    req = _open_request(negotiation, addresses)
    _age_request(db, req.id, 4)

    report = expiry_sweeper.run_expiry_sweep(session_factory, request_ttl_days=5)

    assert report.requests_cancelled == 0
    assert store.get_request(db, req.id).status == "OPEN"


def test_stale_request_offers_are_rejected(negotiation, addresses, db, session_factory):
    req = _open_request(negotiation, addresses)
    offer = negotiation.submit_offer("eng-1", req.id, 100, "YER", None, *E1).data
    offer_id = offer.id
    _age_request(db, req.id, 6)
    sink = RecordingNotifier()

    report = expiry_sweeper.run_expiry_sweep(session_factory, notifier=sink, request_ttl_days=5, offer_ttl_days=0)

    assert report.requests_cancelled == 1
    assert report.offers_rejected == 1
    assert store.get_offer(db, offer_id).status == "REJECTED"
    assert sink.keys_for("eng-1") == [events.OFFER_REJECTED]


def test_assigned_request_is_untouched(negotiation, addresses, db, session_factory):
    req = _open_request(negotiation, addresses)
    offer = negotiation.submit_offer("eng-1", req.id, 100, "YER", None, *E1).data
    assert negotiation.accept_offer("cust-1", req.id, offer.id).ok
    _age_request(db, req.id, 30)

    report = expiry_sweeper.run_expiry_sweep(session_factory, request_ttl_days=5)

    assert report.requests_cancelled == 0
    refreshed = store.get_request(db, req.id)
    assert refreshed.status == "ASSIGNED"
    assert refreshed.engineer_id == "eng-1"


def test_acceptance_after_sweep_is_invalid(negotiation, addresses, db, session_factory):
    req = _open_request(negotiation, addresses)
    offer = negotiation.submit_offer("eng-1", req.id, 100, "YER", None, *E1).data
    offer_id = offer.id
    _age_request(db, req.id, 6)

    expiry_sweeper.run_expiry_sweep(session_factory, request_ttl_days=5)
    out = negotiation.accept_offer("cust-1", req.id, offer_id)

    assert out.error == ErrorCode.INVALID_STATUS
    assert store.get_request(db, req.id).status == "CANCELLED"


def test_stale_offer_expires_on_biddable_request(negotiation, addresses, db, session_factory):
    req = _open_request(negotiation, addresses)
    stale = negotiation.submit_offer("eng-1", req.id, 100, "YER", None, *E1).data
    fresh = negotiation.submit_offer("eng-2", req.id, 90, "YER", None, *E1).data
    stale_id, fresh_id = stale.id, fresh.id
    _age_offer(db, stale_id, 4)
    sink = RecordingNotifier()

    report = expiry_sweeper.run_expiry_sweep(session_factory, notifier=sink, request_ttl_days=5, offer_ttl_days=3)

    assert report.offers_expired == 1
    assert report.requests_cancelled == 0
    assert store.get_offer(db, stale_id).status == "EXPIRED"
    assert store.get_offer(db, fresh_id).status == "OFFERED"
    assert store.get_request(db, req.id).status == "OFFERS_COLLECTING"
    assert sink.keys_for("eng-1") == [events.OFFER_EXPIRED]


def test_one_failing_row_does_not_abort_the_batch(negotiation, addresses, db, session_factory, monkeypatch):
    first = _open_request(negotiation, addresses)
    second = _open_request(negotiation, addresses, "cust-2", "addr-2")
    first_id, second_id = first.id, second.id
    _age_request(db, first_id, 7)
    _age_request(db, second_id, 6)

    real_expire = expiry_sweeper.expire_request

    def flaky(session, request_id, **kwargs):
        if request_id == first_id:
            raise RuntimeError("row locked")
        return real_expire(session, request_id, **kwargs)

    monkeypatch.setattr(expiry_sweeper, "expire_request", flaky)

    report = expiry_sweeper.run_expiry_sweep(session_factory, request_ttl_days=5)

    assert report.failures == 1
    assert report.failed_ids == [str(first_id)]
    assert report.requests_cancelled == 1
    assert store.get_request(db, first_id).status == "OPEN"
    assert store.get_request(db, second_id).status == "CANCELLED"
    assert report.as_dict() == {
        "requests_cancelled": 1,
        "offers_rejected": 0,
        "offers_expired": 0,
        "failures": 1,
    }


def test_sweep_pages_through_a_backlog_larger_than_the_batch(negotiation, addresses, db, session_factory):
    ids = []
    for n in range(3):
        req = _open_request(negotiation, addresses, f"cust-{n + 2}", f"addr-{n + 2}")
        ids.append(req.id)
        _age_request(db, req.id, 6 + n)

    report = expiry_sweeper.run_expiry_sweep(session_factory, request_ttl_days=5, offer_ttl_days=0, batch_size=1)

    assert report.requests_cancelled == 3
    assert report.failures == 0
    assert [store.get_request(db, rid).status for rid in ids] == ["CANCELLED"] * 3


def test_stale_offers_are_paged_as_well(negotiation, addresses, db, session_factory):
    req = _open_request(negotiation, addresses)
    offer_ids = [
        negotiation.submit_offer(engineer_id, req.id, 100, "YER", None, *E1).data.id
        for engineer_id in ("eng-1", "eng-2", "eng-3")
    ]
    for offer_id in offer_ids:
        _age_offer(db, offer_id, 4)

    report = expiry_sweeper.run_expiry_sweep(session_factory, request_ttl_days=5, offer_ttl_days=3, batch_size=2)

    assert report.offers_expired == 3
    assert [store.get_offer(db, oid).status for oid in offer_ids] == ["EXPIRED"] * 3


def test_failing_row_is_not_retried_forever_across_pages(negotiation, addresses, db, session_factory, monkeypatch):
    first = _open_request(negotiation, addresses)
    second = _open_request(negotiation, addresses, "cust-2", "addr-2")
    first_id, second_id = first.id, second.id
    _age_request(db, first_id, 7)
    _age_request(db, second_id, 6)
    attempts = []
    real_expire = expiry_sweeper.expire_request

    def flaky(session, request_id, **kwargs):
        attempts.append(request_id)
        if request_id == first_id:
            raise RuntimeError("row locked")
        return real_expire(session, request_id, **kwargs)

    monkeypatch.setattr(expiry_sweeper, "expire_request", flaky)

    report = expiry_sweeper.run_expiry_sweep(session_factory, request_ttl_days=5, offer_ttl_days=0, batch_size=1)

    assert attempts == [first_id, second_id]
    assert report.failed_ids == [str(first_id)]
    assert report.requests_cancelled == 1
    assert store.get_request(db, first_id).status == "OPEN"
    assert store.get_request(db, second_id).status == "CANCELLED"

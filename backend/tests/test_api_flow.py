import os
import unittest
import uuid
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fakes import SANAA, FakeAddressResolver, RecordingNotifier
from marketplace.api.v1.deps import get_address_resolver, get_notifier
from marketplace.core.auth import CurrentUser, get_current_user
from marketplace.core.config import get_settings
from marketplace.core.dependencies import get_db, get_session_factory
from marketplace.main import app
from marketplace.models.marketplace import Base
from marketplace.services import notifications as events
from marketplace.services.negotiation_service import NegotiationEngine
from marketplace.utils.rate_limit import rate_limiter

CUSTOMER = CurrentUser(id="cust-1", role="CUSTOMER")
ENGINEER = CurrentUser(id="eng-1", role="ENGINEER")
OTHER_ENGINEER = CurrentUser(id="eng-2", role="ENGINEER")
ADMIN = CurrentUser(id="admin-1", role="ADMIN")


class MarketplaceApiTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        self.current_user = CUSTOMER
        self.notifier = RecordingNotifier()
        self.addresses = FakeAddressResolver()
        self.addresses.add("cust-1", "addr-sanaa", SANAA[0], SANAA[1], "Sanaa")

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_current_user] = lambda: self.current_user
        app.dependency_overrides[get_notifier] = lambda: self.notifier
        app.dependency_overrides[get_address_resolver] = lambda: self.addresses
        app.dependency_overrides[get_session_factory] = lambda: self.SessionLocal

        get_settings.cache_clear()
        rate_limiter.reset()
        self.client = TestClient(app)

    def tearDown(self):
        self.client.close()
        app.dependency_overrides.clear()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()
        get_settings.cache_clear()

    def _as(self, user: CurrentUser):
        self.current_user = user

    def _create_request(self, title: str = "Leaking sink") -> dict:
        self._as(CUSTOMER)
        resp = self.client.post(
            "/api/v1/services/requests",
            json={"address_ref": "addr-sanaa", "title": title, "service_type": "plumbing"},
        )
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()

    def _submit_offer(self, request_id: str, user: CurrentUser = ENGINEER, amount: float = 150.0):
        self._as(user)
        return self.client.post(
            "/api/v1/services/engineer/offers",
            json={"request_id": request_id, "amount": amount, "lat": 15.37, "lng": 44.19},
        )

    def test_full_lifecycle_over_http(self):
        req = self._create_request()
        self.assertEqual(req["status"], "OPEN")
        self.assertEqual(req["city"], "Sanaa")

        resp = self._submit_offer(req["id"])
        self.assertEqual(resp.status_code, 201, resp.text)
        offer = resp.json()
        self.assertEqual(offer["status"], "OFFERED")
        self.assertEqual(offer["currency"], "YER")
        self.assertEqual(offer["updates_count"], 1)

        self._as(CUSTOMER)
        offers = self.client.get(f"/api/v1/services/requests/{req['id']}/offers").json()
        self.assertEqual([o["id"] for o in offers], [offer["id"]])
        self.assertEqual(self.client.get(f"/api/v1/services/requests/{req['id']}").json()["status"], "OFFERS_COLLECTING")

        resp = self.client.post(
            f"/api/v1/services/requests/{req['id']}/accept-offer",
            json={"offer_id": offer["id"]},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["status"], "ASSIGNED")
        self.assertEqual(resp.json()["engineer_id"], "eng-1")
        self.assertEqual(resp.json()["accepted_offer"]["offer_id"], offer["id"])

        self._as(ENGINEER)
        resp = self.client.post(f"/api/v1/services/engineer/requests/{req['id']}/start")
        self.assertEqual(resp.json()["status"], "IN_PROGRESS")
        resp = self.client.post(f"/api/v1/services/engineer/requests/{req['id']}/complete")
        self.assertEqual(resp.json()["status"], "COMPLETED")

        self._as(CUSTOMER)
        resp = self.client.post(f"/api/v1/services/requests/{req['id']}/rate", json={"score": 5, "comment": "great"})
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["status"], "RATED")
        self.assertEqual(resp.json()["rating"]["score"], 5)

        self.assertEqual(
            self.notifier.keys_for("eng-1"),
            [events.OFFER_ACCEPTED, events.SERVICE_RATED],
        )

        mine = self.client.get("/api/v1/services/requests/my", params={"status": "RATED"}).json()
        self.assertEqual([r["id"] for r in mine], [req["id"]])

    def test_error_codes_map_to_http_statuses(self):
        req = self._create_request()

        self._as(CUSTOMER)
        resp = self.client.post(
            f"/api/v1/services/requests/{uuid.uuid4()}/accept-offer",
            json={"offer_id": str(uuid.uuid4())},
        )
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["detail"], "NOT_FOUND")

        resp = self.client.post(
            f"/api/v1/services/requests/{req['id']}/accept-offer",
            json={"offer_id": str(uuid.uuid4())},
        )
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["detail"], "OFFER_NOT_FOUND")

        self._as(ENGINEER)
        resp = self.client.post(f"/api/v1/services/engineer/requests/{req['id']}/start")
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["detail"], "NOT_ASSIGNED")

        self._as(CUSTOMER)
        resp = self.client.post(f"/api/v1/services/requests/{req['id']}/rate", json={"score": 4})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["detail"], "NOT_COMPLETED")

    def test_customer_cannot_bid_on_own_request(self):
        req = self._create_request()
        own = CurrentUser(id="cust-1", role="ENGINEER")

        resp = self._submit_offer(req["id"], user=own)

        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["detail"], "SELF_NOT_ALLOWED")

    def test_second_accept_conflicts(self):
        req = self._create_request()
        first = self._submit_offer(req["id"]).json()
        second = self._submit_offer(req["id"], user=OTHER_ENGINEER).json()

        self._as(CUSTOMER)
        ok = self.client.post(f"/api/v1/services/requests/{req['id']}/accept-offer", json={"offer_id": first["id"]})
        late = self.client.post(f"/api/v1/services/requests/{req['id']}/accept-offer", json={"offer_id": second["id"]})

        self.assertEqual(ok.status_code, 200)
        self.assertEqual(late.status_code, 409)
        self.assertEqual(late.json()["detail"], "INVALID_STATUS")

    def test_wrong_role_is_forbidden(self):
        self._as(ENGINEER)
        self.assertEqual(self.client.get("/api/v1/admin/services/requests").status_code, 403)

        self._as(CUSTOMER)
        resp = self.client.get("/api/v1/services/engineer/nearby", params={"lat": 15.0, "lng": 44.0})
        self.assertEqual(resp.status_code, 403)

        self._as(ADMIN)
        resp = self.client.post(
            "/api/v1/services/requests",
            json={"address_ref": "addr-sanaa", "title": "x"},
        )
        self.assertEqual(resp.status_code, 403)

    def test_offer_submission_is_rate_limited(self):
        with patch.dict(os.environ, {"RATE_LIMIT_OFFERS_PER_MIN": "2"}):
            get_settings.cache_clear()
            missing = str(uuid.uuid4())
            statuses = [self._submit_offer(missing).status_code for _ in range(3)]

        self.assertEqual(statuses, [404, 404, 429])

    def test_offer_update_requires_a_field(self):
        req = self._create_request()
        offer = self._submit_offer(req["id"]).json()

        self._as(ENGINEER)
        resp = self.client.patch(f"/api/v1/services/engineer/offers/{offer['id']}", json={})
        self.assertEqual(resp.status_code, 422)

        resp = self.client.patch(f"/api/v1/services/engineer/offers/{offer['id']}", json={"amount": 120})
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["amount"], 120.0)
        self.assertEqual(resp.json()["updates_count"], 2)

    def test_nearby_returns_distance(self):
        req = self._create_request()

        self._as(ENGINEER)
        resp = self.client.get(
            "/api/v1/services/engineer/nearby",
            params={"lat": SANAA[0], "lng": SANAA[1], "radius_km": 5},
        )

        self.assertEqual(resp.status_code, 200, resp.text)
        rows = resp.json()
        self.assertEqual([r["id"] for r in rows], [req["id"]])
        self.assertEqual(rows[0]["distance_km"], 0.0)

    def test_nearby_radius_above_maximum_is_rejected(self):
        self._create_request()

        self._as(ENGINEER)
        with patch.dict(os.environ, {"NEARBY_MAX_RADIUS_KM": "20"}):
            get_settings.cache_clear()
            resp = self.client.get(
                "/api/v1/services/engineer/nearby",
                params={"lat": SANAA[0], "lng": SANAA[1], "radius_km": 50},
            )

        self.assertEqual(resp.status_code, 422)
        self.assertIn("radius_km must not exceed 20", resp.json()["detail"])

    def test_exhausted_offer_upsert_retries_conflict(self):
        req = self._create_request()
        self.assertEqual(self._submit_offer(req["id"]).status_code, 201)

        # Every lookup misses the existing row, so every insert hits the unique constraint.
        with patch.dict(os.environ, {"OFFER_UPSERT_MAX_RETRIES": "1"}), patch.object(
            NegotiationEngine, "_find_offer", lambda self, request_id, engineer_id: None
        ):
            get_settings.cache_clear()
            resp = self._submit_offer(req["id"], amount=120.0)

        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["detail"], "CONFLICT")
        self._as(CUSTOMER)
        offers = self.client.get(f"/api/v1/services/requests/{req['id']}/offers").json()
        self.assertEqual([o["amount"] for o in offers], [150.0])

    def test_engineer_detail_hidden_once_assigned_elsewhere(self):
        req = self._create_request()
        offer = self._submit_offer(req["id"]).json()

        self._as(OTHER_ENGINEER)
        resp = self.client.get(f"/api/v1/services/engineer/requests/{req['id']}")
        self.assertEqual(resp.status_code, 200)
        self.assertIsNone(resp.json()["my_offer"])

        self._as(CUSTOMER)
        self.client.post(f"/api/v1/services/requests/{req['id']}/accept-offer", json={"offer_id": offer["id"]})

        self._as(OTHER_ENGINEER)
        self.assertEqual(self.client.get(f"/api/v1/services/engineer/requests/{req['id']}").status_code, 404)

        self._as(ENGINEER)
        resp = self.client.get(f"/api/v1/services/engineer/requests/{req['id']}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["my_offer"]["status"], "ACCEPTED")

    def test_admin_list_and_detail(self):
        first = self._create_request("Broken heater")
        self._create_request("Door hinge")

        self._as(ADMIN)
        resp = self.client.get("/api/v1/admin/services/requests", params={"search": "heater", "limit": 10})
        self.assertEqual(resp.status_code, 200, resp.text)
        body = resp.json()
        self.assertEqual(body["meta"], {"page": 1, "limit": 10, "total": 1})
        self.assertEqual(body["items"][0]["id"], first["id"])
        self.assertEqual(body["items"][0]["row_version"], 1)

        resp = self.client.get(f"/api/v1/admin/services/requests/{first['id']}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["offers"], [])

        self.assertEqual(self.client.get(f"/api/v1/admin/services/requests/{uuid.uuid4()}").status_code, 404)

    def test_admin_cancel_and_reject(self):
        req = self._create_request()
        offer = self._submit_offer(req["id"]).json()

        self._as(ADMIN)
        resp = self.client.post(f"/api/v1/admin/services/offers/{offer['id']}/reject", json={"reason": "spam"})
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["status"], "REJECTED")

        resp = self.client.post(f"/api/v1/admin/services/requests/{req['id']}/cancel", json={"reason": "duplicate"})
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["status"], "CANCELLED")
        self.assertEqual(resp.json()["cancel_reason"], "ADMIN")
        self.assertEqual(resp.json()["admin_notes"][-1]["note"], "duplicate")

        resp = self.client.patch(
            f"/api/v1/admin/services/requests/{req['id']}/status",
            json={"status": "IN_PROGRESS"},
        )
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["detail"], "INVALID_STATUS")

    def test_admin_runs_expiry_sweep(self):
        self._as(ADMIN)
        resp = self.client.post("/api/v1/admin/services/expiry-sweep/run")

        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(
            resp.json(),
            {"requests_cancelled": 0, "offers_rejected": 0, "offers_expired": 0, "failures": 0},
        )


if __name__ == "__main__":
    unittest.main()

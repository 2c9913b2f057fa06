"""Tests for the settlement API endpoints."""

import pytest
from fastapi.testclient import TestClient

from billing_ops.main import app
from billing_ops.models.settlement_record import SettlementSourceType
from billing_ops.repositories.idempotency_repository import IdempotencyRepository
from billing_ops.repositories.settlement_record_repository import SettlementRecordRepository
from billing_ops.routers.settlements import get_store_factory
from billing_ops.schemas.settlement import SettlementRecordCreate
from billing_ops.services.billing_provider import ChargeRecord, ChargeStatus
from tests.fakes import FakeInvoiceStore, draft_invoice, open_invoice

CUSTOMER = "cus_test"


@pytest.fixture
def store():
    return FakeInvoiceStore()


@pytest.fixture
def client(store):
    """Create test client whose settlements run against the in-memory store."""

    def store_for(account_id=None):
        if account_id not in (None, "default"):
            raise ValueError(f"Billing provider account not found: {account_id}")
        return store

    app.dependency_overrides[get_store_factory] = lambda: store_for
    yield TestClient(app)
    app.dependency_overrides.pop(get_store_factory, None)


class TestRoot:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"


class TestAddCredit:
    def test_add_credit(self, client, store):
        store.add(open_invoice("in_a", 400), draft_invoice("in_b", 300))

        response = client.post(
            "/v1/settlements/credits",
            json={
                "customer_id": CUSTOMER,
                "amount": 1000,
                "reason": "Goodwill",
                "apply_to_all": True,
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["source_id"].startswith("mcr_")
        assert data["invoices_paid"] == [
            {"invoice_id": "in_a", "invoice_number": "N-in_a", "amount_applied": 400},
            {"invoice_id": "in_b", "invoice_number": "N-in_b", "amount_applied": 300},
        ]
        assert data["total_applied"] == 700
        assert data["credit_added"] == 300
        assert data["replayed"] is False

    def test_invalid_amount_is_400(self, client, store):
        response = client.post(
            "/v1/settlements/credits",
            json={"customer_id": CUSTOMER, "amount": 0, "reason": "Goodwill"},
        )
        assert response.status_code == 400
        assert "positive integer" in response.json()["detail"]
        assert store.calls == []

    def test_missing_reason_is_400(self, client):
        response = client.post(
            "/v1/settlements/credits", json={"customer_id": CUSTOMER, "amount": 100}
        )
        assert response.status_code == 400

    def test_missing_customer_is_422(self, client):
        response = client.post("/v1/settlements/credits", json={"amount": 100, "reason": "x"})
        assert response.status_code == 422

    def test_unknown_account_is_400(self, client):
        response = client.post(
            "/v1/settlements/credits",
            json={"customer_id": CUSTOMER, "amount": 100, "reason": "x", "account_id": "mars"},
        )
        assert response.status_code == 400
        assert "mars" in response.json()["detail"]

    def test_listing_failure_is_502(self, client, store):
        store.fail("list_invoices")
        response = client.post(
            "/v1/settlements/credits",
            json={"customer_id": CUSTOMER, "amount": 100, "reason": "x", "apply_to_all": True},
        )
        assert response.status_code == 502

    def test_credit_failure_is_502(self, client, store):
        store.fail("create_balance_credit")
        response = client.post(
            "/v1/settlements/credits",
            json={"customer_id": CUSTOMER, "amount": 100, "reason": "x"},
        )
        assert response.status_code == 502


class TestPayNow:
    def test_pay_now(self, client, store):
        store.add(open_invoice("in_a", 2500))

        response = client.post(
            "/v1/settlements/pay-now",
            json={
                "customer_id": CUSTOMER,
                "payment_method_id": "pm_card",
                "amount": 2500,
                "currency": "usd",
                "selected_invoice_ids": ["in_a"],
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total_applied"] == 2500
        assert data["credit_added"] == 0
        assert data["credit_transaction_id"] is None
        assert store.invoices["in_a"].status == "void"

    def test_requires_action_then_finalize(self, client, store):
        store.add(open_invoice("in_a", 1000))
        store.next_charge_status = ChargeStatus.REQUIRES_ACTION.value

        response = client.post(
            "/v1/settlements/pay-now",
            json={
                "customer_id": CUSTOMER,
                "payment_method_id": "pm_3ds",
                "amount": 1500,
                "selected_invoice_ids": ["in_a"],
            },
        )
        assert response.status_code == 200
        pending = response.json()
        assert pending["status"] == "requires_action"
        assert pending["client_secret"] == f"{pending['source_id']}_secret"

        store.charges[pending["source_id"]].status = ChargeStatus.SUCCEEDED.value
        response = client.post(
            "/v1/settlements/pay-now/finalize",
            json={"customer_id": CUSTOMER, "payment_intent_id": pending["source_id"]},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["total_applied"] == 1000
        assert data["credit_added"] == 500

    def test_declined_is_400(self, client, store):
        store.next_charge_status = ChargeStatus.REQUIRES_PAYMENT_METHOD.value
        response = client.post(
            "/v1/settlements/pay-now",
            json={"customer_id": CUSTOMER, "payment_method_id": "pm_x", "amount": 100},
        )
        assert response.status_code == 400
        assert "not completed" in response.json()["detail"]

    def test_listing_failure_after_charge_names_charge_and_can_be_finalized(self, client, store):
        store.add(open_invoice("in_a", 600))
        store.fail("list_invoices")

        response = client.post(
            "/v1/settlements/pay-now",
            json={
                "customer_id": CUSTOMER,
                "payment_method_id": "pm_card",
                "amount": 1000,
                "apply_to_all": True,
            },
        )

        assert response.status_code == 502
        [charge_id] = store.charges
        assert charge_id in response.json()["detail"]

        store.failures.clear()
        response = client.post(
            "/v1/settlements/pay-now/finalize",
            json={"customer_id": CUSTOMER, "payment_intent_id": charge_id, "apply_to_all": True},
        )

        assert response.status_code == 200
        assert response.json()["total_applied"] == 600
        assert response.json()["credit_added"] == 400

    def test_finalize_unknown_payment_is_502(self, client):
        response = client.post(
            "/v1/settlements/pay-now/finalize",
            json={"customer_id": CUSTOMER, "payment_intent_id": "pi_missing"},
        )
        assert response.status_code == 502


class TestConflicts:
    def test_source_still_processing_is_409(self, client, store, db_session):
        SettlementRecordRepository(db_session).create(
            SettlementRecordCreate(
                source_id="pi_busy",
                source_type=SettlementSourceType.CHARGE,
                account_id="default",
                customer_id=CUSTOMER,
                amount_cents=100,
                currency="usd",
            )
        )
        store.charges["pi_busy"] = ChargeRecord(
            id="pi_busy", status="succeeded", amount=100, currency="usd", customer_id=CUSTOMER
        )

        response = client.post(
            "/v1/settlements/pay-now/finalize",
            json={"customer_id": CUSTOMER, "payment_intent_id": "pi_busy"},
        )

        assert response.status_code == 409
        assert "processing" in response.json()["detail"]


class TestIdempotency:
    def test_same_key_replays_response(self, client, store):
        payload = {"customer_id": CUSTOMER, "amount": 800, "reason": "Goodwill"}
        headers = {"Idempotency-Key": "credit-1"}

        first = client.post("/v1/settlements/credits", json=payload, headers=headers)
        second = client.post("/v1/settlements/credits", json=payload, headers=headers)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.headers.get("Idempotency-Replayed") == "true"
        assert second.json() == first.json()
        assert len(store.balance_transactions) == 1

    def test_failed_request_releases_key(self, client, store):
        headers = {"Idempotency-Key": "credit-2"}

        failed = client.post(
            "/v1/settlements/credits",
            json={"customer_id": CUSTOMER, "amount": -5, "reason": "x"},
            headers=headers,
        )
        retried = client.post(
            "/v1/settlements/credits",
            json={"customer_id": CUSTOMER, "amount": 5, "reason": "x"},
            headers=headers,
        )

        assert failed.status_code == 400
        assert retried.status_code == 200
        assert retried.headers.get("Idempotency-Replayed") is None

    def test_unexpected_error_releases_key(self, client, store):
        headers = {"Idempotency-Key": "credit-4"}
        payload = {"customer_id": CUSTOMER, "amount": 50, "reason": "x", "apply_to_all": True}
        store.fail("list_invoices", error=RuntimeError)

        crashed = TestClient(app, raise_server_exceptions=False).post(
            "/v1/settlements/credits", json=payload, headers=headers
        )
        store.failures.clear()
        retried = client.post("/v1/settlements/credits", json=payload, headers=headers)

        assert crashed.status_code == 500
        assert retried.status_code == 200
        assert retried.headers.get("Idempotency-Replayed") is None
        assert retried.json()["credit_added"] == 50

    def test_in_flight_key_is_409(self, client, store, db_session):
        IdempotencyRepository(db_session).create(
            idempotency_key="credit-3",
            request_method="POST",
            request_path="/v1/settlements/credits",
        )

        response = client.post(
            "/v1/settlements/credits",
            json={"customer_id": CUSTOMER, "amount": 5, "reason": "x"},
            headers={"Idempotency-Key": "credit-3"},
        )

        assert response.status_code == 409
        assert store.balance_transactions == {}


class TestReadEndpoints:
    def test_get_settlement_with_allocations(self, client, store):
        store.add(open_invoice("in_a", 300), draft_invoice("in_b", 300))
        created = client.post(
            "/v1/settlements/credits",
            json={
                "customer_id": CUSTOMER,
                "amount": 500,
                "reason": "Goodwill",
                "selected_invoice_ids": ["in_b", "in_a"],
                "correlation_id": "bill-1",
            },
        ).json()

        response = client.get(f"/v1/settlements/{created['source_id']}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["source_type"] == "manual_credit"
        assert data["correlation_id"] == "bill-1"
        assert data["total_applied_cents"] == 500
        assert data["credit_added_cents"] == 0
        assert [
            (a["position"], a["invoice_id"], a["amount_cents"], a["action"], a["fully_settled"])
            for a in data["allocations"]
        ] == [
            (0, "in_b", 300, "delete", True),
            (1, "in_a", 200, "credit_note", False),
        ]

    def test_get_unknown_settlement_is_404(self, client):
        response = client.get("/v1/settlements/pi_nope")
        assert response.status_code == 404

    def test_list_filters_by_customer(self, client, store):
        for customer_id in (CUSTOMER, CUSTOMER, "cus_other"):
            client.post(
                "/v1/settlements/credits",
                json={"customer_id": customer_id, "amount": 100, "reason": "x"},
            )

        response = client.get("/v1/settlements/", params={"customer_id": CUSTOMER})

        assert response.status_code == 200
        assert response.headers["X-Total-Count"] == "2"
        assert {s["customer_id"] for s in response.json()} == {CUSTOMER}

        everything = client.get("/v1/settlements/", params={"limit": 1})
        assert everything.headers["X-Total-Count"] == "3"
        assert len(everything.json()) == 1

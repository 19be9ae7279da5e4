"""
Test suite for the REST API

Drives the FastAPI app through TestClient against an in-memory system.
Callers identify themselves with X-Actor-* headers.
"""

import base64
import json

import pytest
from fastapi.testclient import TestClient

from lending_core.api import create_app
from lending_core.gateway import PhonePeSigner
from lending_core.workflow_policy import RequestStatus

from conftest import DISTRICT, OFFER, submit


def headers_for(actor):
    headers = {"X-Actor-Id": actor.id, "X-Actor-Role": actor.role.value}
    if actor.districts:
        headers["X-Actor-Districts"] = ",".join(sorted(actor.districts))
    return headers


@pytest.fixture
def client(system):
    return TestClient(create_app(system))


@pytest.fixture
def pending_request(system, customer):
    return submit(system, customer)


class TestService:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root(self, client):
        data = client.get("/").json()
        assert data["system"] == "Lending Core"
        assert data["endpoints"]["requests"] == "/requests"


class TestActorHeaders:

    def test_missing_headers(self, client, pending_request):
        response = client.get(f"/requests/{pending_request.id}")
        assert response.status_code == 401

    def test_unknown_role(self, client, pending_request):
        response = client.get(f"/requests/{pending_request.id}",
                              headers={"X-Actor-Id": "x", "X-Actor-Role": "AUDITOR"})
        assert response.status_code == 400

    def test_system_role_rejected(self, client, pending_request):
        response = client.post(f"/requests/{pending_request.id}/actions/auto-request-signature",
                               headers={"X-Actor-Id": "scheduler", "X-Actor-Role": "SYSTEM"})
        assert response.status_code == 403

    def test_role_is_case_insensitive(self, client, customer, pending_request):
        response = client.get(f"/requests/{pending_request.id}",
                              headers={"X-Actor-Id": customer.id, "X-Actor-Role": "customer"})
        assert response.status_code == 200


class TestRequests:

    def test_submit(self, client, system, customer):
        response = client.post("/requests", headers=headers_for(customer), json={
            "amount": "50000",
            "district": DISTRICT,
            "asset_description": "Gold bangles, 22 carat",
            "asset_type": "gold",
        })

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "PENDING"
        assert data["requested_amount"] == "50000.00"
        assert system.requests.get(data["id"]).customer_id == customer.id

    def test_submit_invalid_amount(self, client, customer):
        response = client.post("/requests", headers=headers_for(customer), json={
            "amount": "lots", "district": DISTRICT, "asset_description": "Gold",
        })
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "validation_error"

    def test_only_customers_submit(self, client, admin):
        response = client.post("/requests", headers=headers_for(admin), json={
            "amount": "50000", "district": DISTRICT, "asset_description": "Gold",
        })
        assert response.status_code == 403

    def test_list_own_requests(self, client, system, customer, other_customer, pending_request):
        submit(system, other_customer)

        data = client.get("/requests", headers=headers_for(customer)).json()

        assert [r["id"] for r in data["requests"]] == [pending_request.id]

    def test_only_customers_list(self, client, admin):
        assert client.get("/requests", headers=headers_for(admin)).status_code == 403

    def test_get_request_state(self, client, customer, pending_request):
        response = client.get(f"/requests/{pending_request.id}", headers=headers_for(customer))

        assert response.status_code == 200
        data = response.json()
        assert data["request"]["id"] == pending_request.id
        assert data["history"] == []
        assert data["loan"] is None

    def test_other_customer_cannot_view(self, client, other_customer, pending_request):
        response = client.get(f"/requests/{pending_request.id}", headers=headers_for(other_customer))
        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "forbidden"

    def test_not_found(self, client, admin):
        response = client.get("/requests/missing", headers=headers_for(admin))
        assert response.status_code == 404

    def test_available_actions(self, client, admin, pending_request):
        response = client.get(f"/requests/{pending_request.id}/actions", headers=headers_for(admin))

        data = response.json()
        ids = [a["id"] for a in data["actions"]]
        assert "start-review" in ids
        assert all(a["permitted"] for a in data["actions"])

    def test_other_customer_cannot_list_actions(self, client, other_customer, pending_request):
        response = client.get(f"/requests/{pending_request.id}/actions", headers=headers_for(other_customer))

        assert response.status_code == 403
        assert "actions" not in response.json()

    def test_owner_lists_actions(self, client, customer, pending_request):
        data = client.get(f"/requests/{pending_request.id}/actions", headers=headers_for(customer)).json()
        assert [a["id"] for a in data["actions"]] == ["withdraw-request"]


class TestActions:

    def test_apply_action(self, client, system, admin, pending_request):
        response = client.post(f"/requests/{pending_request.id}/actions/start-review", headers=headers_for(admin))

        assert response.status_code == 200
        assert response.json()["new_status"] == "UNDER_REVIEW"
        assert system.requests.get(pending_request.id).status == RequestStatus.UNDER_REVIEW

    def test_apply_with_inputs(self, client, system, admin, pending_request):
        client.post(f"/requests/{pending_request.id}/actions/start-review", headers=headers_for(admin))
        response = client.post(f"/requests/{pending_request.id}/actions/make-offer",
                               headers=headers_for(admin), json={"inputs": OFFER})

        assert response.status_code == 200
        assert system.requests.get(pending_request.id).status == RequestStatus.OFFER_MADE

    def test_unknown_action_is_conflict(self, client, customer, pending_request):
        response = client.post(f"/requests/{pending_request.id}/actions/start-review",
                               headers=headers_for(customer))

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "unknown_action"

    def test_guard_failure_is_forbidden(self, client, other_customer, pending_request):
        response = client.post(f"/requests/{pending_request.id}/actions/withdraw-request",
                               headers=headers_for(other_customer))
        assert response.status_code == 403

    def test_missing_input_is_bad_request(self, client, admin, pending_request):
        client.post(f"/requests/{pending_request.id}/actions/start-review", headers=headers_for(admin))
        response = client.post(f"/requests/{pending_request.id}/actions/make-offer",
                               headers=headers_for(admin), json={"inputs": {"amount": "45000"}})

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["error"] == "missing_input"
        assert detail["details"]["field"] == "tenure_months"

    def test_missing_request_is_not_found(self, client, admin):
        response = client.post("/requests/missing/actions/start-review", headers=headers_for(admin))
        assert response.status_code == 404


class TestLoans:

    def test_loan_and_schedule(self, client, customer, active_loan):
        request, loan = active_loan

        summary = client.get(f"/loans/{loan.id}", headers=headers_for(customer))
        schedule = client.get(f"/loans/{loan.id}/schedule", headers=headers_for(customer)).json()

        assert summary.status_code == 200
        assert schedule["emi_amount"] == "3998.20"
        assert len(schedule["installments"]) == 12
        assert schedule["installments"][0]["due_date"] == "2025-02-01"

    def test_admin_in_district_can_view(self, client, admin, active_loan):
        request, loan = active_loan
        assert client.get(f"/loans/{loan.id}", headers=headers_for(admin)).status_code == 200

    def test_other_customer_cannot_view(self, client, other_customer, active_loan):
        request, loan = active_loan
        response = client.get(f"/loans/{loan.id}/schedule", headers=headers_for(other_customer))
        assert response.status_code == 403

    def test_dues(self, client, system, customer, active_loan):
        request, loan = active_loan
        first = system.loans.installments(loan.id)[0]

        response = client.get(f"/loans/{loan.id}/dues", headers=headers_for(customer), params={
            "installment_id": first.id, "as_of": "2025-02-11",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["expected_amount"] == "4002.20"
        assert data["installments"][0]["days_late"] == 10

    def test_payments_empty(self, client, customer, active_loan):
        request, loan = active_loan
        data = client.get(f"/loans/{loan.id}/payments", headers=headers_for(customer)).json()
        assert data["payments"] == []


class TestPayments:

    def _order(self, client, system, customer, loan):
        first = system.loans.installments(loan.id)[0]
        dues = client.get(f"/loans/{loan.id}/dues", headers=headers_for(customer),
                          params={"installment_id": first.id}).json()
        response = client.post("/payments/orders", headers=headers_for(customer), json={
            "loan_id": loan.id,
            "installment_id": first.id,
            "amount": dues["expected_amount"],
        })
        assert response.status_code == 201
        return response.json()

    def _callback(self, signer, order):
        paise = int(order["expected_amount"].replace(".", ""))
        payload = {
            "success": True,
            "code": "PAYMENT_SUCCESS",
            "data": {"merchantTransactionId": order["id"], "transactionId": "T100", "amount": paise},
        }
        encoded = base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")
        return {"response": encoded}, {"X-VERIFY": signer.generate_checksum(encoded)}

    def test_create_order(self, client, system, customer, active_loan):
        request, loan = active_loan
        order = self._order(client, system, customer, loan)

        assert order["status"] == "CREATED"
        assert order["redirect_url"].startswith("http://localhost:3000/payments/mock-gateway")

    def test_amount_mismatch(self, client, system, customer, active_loan):
        request, loan = active_loan
        first = system.loans.installments(loan.id)[0]

        response = client.post("/payments/orders", headers=headers_for(customer), json={
            "loan_id": loan.id, "installment_id": first.id, "amount": "1.00",
        })

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "amount_mismatch"

    def test_only_customers_pay(self, client, system, admin, active_loan):
        request, loan = active_loan
        first = system.loans.installments(loan.id)[0]
        response = client.post("/payments/orders", headers=headers_for(admin), json={
            "loan_id": loan.id, "installment_id": first.id, "amount": "3998.20",
        })
        assert response.status_code == 403

    def test_webhook_applies_payment(self, client, system, customer, active_loan):
        request, loan = active_loan
        order = self._order(client, system, customer, loan)
        body, headers = self._callback(PhonePeSigner("test-salt-key", "1"), order)

        response = client.post("/payments/phonepe/webhook", json=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "paid"
        assert len(system.loans.payments_for_loan(loan.id)) == 1

    def test_webhook_bad_signature(self, client, system, customer, active_loan):
        request, loan = active_loan
        order = self._order(client, system, customer, loan)
        body, headers = self._callback(PhonePeSigner("forged-key", "1"), order)

        response = client.post("/payments/phonepe/webhook", json=body, headers=headers)

        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "signature_invalid"
        assert system.loans.payments_for_loan(loan.id) == []

    def test_webhook_requires_json_object(self, client):
        response = client.post("/payments/phonepe/webhook", content=b"not json",
                               headers={"Content-Type": "application/json"})
        assert response.status_code == 400

        response = client.post("/payments/phonepe/webhook", json=[1, 2])
        assert response.status_code == 400


class TestAdmin:

    def test_sweep_requires_admin(self, client, customer):
        response = client.post("/admin/sweeps/overdue", headers=headers_for(customer))
        assert response.status_code == 403

    def test_sweep(self, client, system, admin, active_loan):
        request, loan = active_loan
        response = client.post("/admin/sweeps/overdue", headers=headers_for(admin),
                               params={"now": "2025-03-15T00:00:00+00:00"})

        assert response.status_code == 200
        assert response.json()["updated"] == 1
        assert system.requests.get(request.id).status == RequestStatus.PAYMENT_OVERDUE

    def test_process_notifications(self, client, admin, pending_request, sink):
        response = client.post("/admin/notifications/process", headers=headers_for(admin))

        assert response.status_code == 200
        assert response.json()["sent"] >= 1
        sink.deliver.assert_called()

    def test_scheduler_status(self, client, admin):
        data = client.get("/admin/scheduler", headers=headers_for(admin)).json()
        assert data == {
            "running": False,
            "last_result": None,
            "notifications": {"running": False, "last_result": None},
        }


class TestTools:

    def test_emi_calculator(self, client):
        response = client.post("/tools/emi-calculator", json={
            "principal": "45000",
            "annual_rate": "12",
            "tenure_months": 12,
            "first_payment_date": "2025-02-01",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["emi_amount"] == "3998.20"
        assert len(data["rows"]) == 12
        assert data["rows"][0]["interest"] == "450.00"
        assert data["rows"][0]["payment_date"] == "2025-02-01"

    def test_default_first_payment_date(self, client):
        response = client.post("/tools/emi-calculator", json={
            "principal": "10000", "annual_rate": "0", "tenure_months": 4,
        })
        assert response.status_code == 200
        assert response.json()["emi_amount"] == "2500.00"

    def test_invalid_date(self, client):
        response = client.post("/tools/emi-calculator", json={
            "principal": "45000", "annual_rate": "12", "tenure_months": 12, "first_payment_date": "soon",
        })
        assert response.status_code == 400

    @pytest.mark.parametrize("principal,rate", [("Infinity", "12"), ("45000", "NaN")])
    def test_non_finite_terms(self, client, principal, rate):
        response = client.post("/tools/emi-calculator", json={
            "principal": principal, "annual_rate": rate, "tenure_months": 12,
        })
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "validation_error"

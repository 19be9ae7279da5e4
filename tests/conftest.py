"""
Shared fixtures: an in-memory lending system and helpers that walk a loan
request through the workflow to an active loan.
"""

from datetime import date
from decimal import Decimal
from unittest.mock import Mock

import pytest

from lending_core.config import LendingConfig
from lending_core.currency import Money
from lending_core.storage import InMemoryStorage
from lending_core.system import LendingSystem
from lending_core.workflow_policy import Actor, UserRole


DISTRICT = "Pune"
FIRST_DUE = date(2025, 2, 1)


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def sink():
    """Notification sink that records deliveries"""
    return Mock()


@pytest.fixture
def config():
    return LendingConfig(
        database_url="memory://",
        phonepe_merchant_id="MERCHANTUAT",
        phonepe_salt_key="test-salt-key",
        phonepe_salt_index="1",
        phonepe_mock_mode=True,
        company_name="FundifyHub",
        support_url="https://support.example",
    )


@pytest.fixture
def system(config, storage, sink):
    return LendingSystem(config=config, storage=storage, sink=sink)


@pytest.fixture
def customer():
    return Actor(id="cust-1", role=UserRole.CUSTOMER)


@pytest.fixture
def other_customer():
    return Actor(id="cust-2", role=UserRole.CUSTOMER)


@pytest.fixture
def admin():
    return Actor(id="admin-1", role=UserRole.DISTRICT_ADMIN, districts=frozenset({DISTRICT}))


@pytest.fixture
def agent():
    return Actor(id="agent-1", role=UserRole.AGENT)


OFFER = {"amount": "45000", "tenure_months": 12, "interest_rate": "12"}

BANK_DETAILS = {
    "account_holder_name": "Asha Patil",
    "account_number": "123456789012",
    "ifsc_code": "sbin0001234",
}


def apply_ok(system, request_id, action_id, actor, inputs=None):
    result = system.workflow.apply(request_id, action_id, actor, inputs or {})
    assert result.success, f"{action_id}: {result.error} {result.message}"
    return result


def submit(system, customer, amount="50000"):
    return system.workflow.submit_request(
        customer_id=customer.id,
        district=DISTRICT,
        requested_amount=Money(Decimal(amount)),
        asset_description="Gold necklace, 22 carat, 40g",
        asset_type="gold",
    )


def drive_to_disbursed(system, request_id, customer, admin, agent, offer=None):
    """PENDING through AMOUNT_DISBURSED along the happy path"""
    apply_ok(system, request_id, "start-review", admin)
    apply_ok(system, request_id, "make-offer", admin, offer or OFFER)
    apply_ok(system, request_id, "accept-offer", customer)
    apply_ok(system, request_id, "assign-agent", admin, {"agent_id": agent.id})
    apply_ok(system, request_id, "start-inspection", agent)
    apply_ok(system, request_id, "complete-inspection", agent, {"notes": "Asset verified"})
    apply_ok(system, request_id, "approve", agent)
    apply_ok(system, request_id, "auto-request-signature", Actor.system())
    apply_ok(system, request_id, "sign-agreement", customer)
    apply_ok(system, request_id, "submit-bank-details", customer, BANK_DETAILS)
    apply_ok(system, request_id, "process-loan", admin)
    apply_ok(system, request_id, "transfer-amount", admin)
    apply_ok(system, request_id, "confirm-transfer", admin, {"transaction_reference": "UTR123456"})


def open_active_loan(system, customer, admin, agent, offer=None):
    """Submit a request and walk it to ACTIVE; returns (request, loan)"""
    request = submit(system, customer)
    drive_to_disbursed(system, request.id, customer, admin, agent, offer)
    result = apply_ok(system, request.id, "create-emi-schedule", admin, {
        "disbursed_date": "2025-01-01",
        "first_payment_date": FIRST_DUE.isoformat(),
    })
    return system.requests.get(request.id), result.loan


@pytest.fixture
def active_loan(system, customer, admin, agent):
    return open_active_loan(system, customer, admin, agent)

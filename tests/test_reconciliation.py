"""
Test suite for payment reconciliation

Tests whole-installment allocation, idempotency on the external reference,
aggregate recomputation and the request status cascade.
"""

import threading
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from lending_core.config import LendingConfig
from lending_core.currency import Money
from lending_core.errors import NotFoundError, ValidationError
from lending_core.events import DomainEvent
from lending_core.loans import InstallmentStatus, LoanStatus, PaymentMethod
from lending_core.notifications import EMI_PAYMENT_RECEIVED
from lending_core.reconciliation import ReconciliationOutcome
from lending_core.storage import SQLiteStorage
from lending_core.system import LendingSystem
from lending_core.workflow_policy import RequestStatus

from conftest import open_active_loan


EMI = Money(Decimal("3998.20"))


def total_scheduled(system, loan_id):
    return sum((i.scheduled_amount for i in system.loans.installments(loan_id)), Money.zero())


class TestAllocation:

    def test_single_installment(self, system, active_loan):
        request, loan = active_loan
        result = system.reconciler.apply_payment(loan.id, "TXN-1", EMI)

        assert result.outcome == ReconciliationOutcome.APPLIED
        assert len(result.applied_payments) == 1
        assert result.unallocated is None

        installments = system.loans.installments(loan.id)
        assert installments[0].status == InstallmentStatus.PAID
        assert installments[0].paid_amount == EMI
        assert all(i.status == InstallmentStatus.PENDING for i in installments[1:])

        stored = system.loans.get_loan(loan.id)
        assert stored.paid_count == 1
        assert stored.total_paid == EMI
        assert stored.remaining_balance == loan.total_amount - EMI

    def test_earliest_due_first(self, system, active_loan):
        request, loan = active_loan
        result = system.reconciler.apply_payment(loan.id, "TXN-2", EMI * 2, up_to_installments_count=2)

        installments = system.loans.installments(loan.id)
        assert [p.installment_id for p in result.applied_payments] == [installments[0].id, installments[1].id]
        assert [i.status for i in installments[:3]] == [
            InstallmentStatus.PAID, InstallmentStatus.PAID, InstallmentStatus.PENDING
        ]

    def test_count_limits_allocation(self, system, active_loan):
        request, loan = active_loan
        result = system.reconciler.apply_payment(loan.id, "TXN-3", EMI * 3, up_to_installments_count=1)

        assert len(result.applied_payments) == 1
        assert result.unallocated == EMI * 2
        assert system.loans.get_loan(loan.id).paid_count == 1

    def test_partial_amount_applies_nothing(self, system, active_loan):
        request, loan = active_loan
        result = system.reconciler.apply_payment(loan.id, "TXN-4", Money(Decimal("2000")))

        assert result.outcome == ReconciliationOutcome.NOTHING_TO_APPLY
        assert not result.success
        assert result.unallocated == Money(Decimal("2000"))
        assert system.loans.payments_for_loan(loan.id) == []
        assert system.loans.get_loan(loan.id).paid_count == 0

    def test_remainder_below_next_installment_is_not_applied(self, system, active_loan):
        request, loan = active_loan
        result = system.reconciler.apply_payment(loan.id, "TXN-5", Money(Decimal("5000")))

        assert len(result.applied_payments) == 1
        assert result.unallocated == Money(Decimal("1001.80"))

    def test_payment_records(self, system, active_loan):
        request, loan = active_loan
        system.reconciler.apply_payment(loan.id, "TXN-6", EMI, payment_method=PaymentMethod.CASH,
                                        processed_by="admin-1")

        payment = system.loans.payments_for_loan(loan.id)[0]
        assert payment.external_reference == "TXN-6"
        assert payment.payment_method == PaymentMethod.CASH
        assert payment.processed_by == "admin-1"
        assert payment.amount == EMI

    def test_string_amount_accepted(self, system, active_loan):
        request, loan = active_loan
        result = system.reconciler.apply_payment(loan.id, "TXN-7", "3998.20")
        assert result.outcome == ReconciliationOutcome.APPLIED

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-10")])
    def test_non_positive_amount(self, system, active_loan, amount):
        request, loan = active_loan
        with pytest.raises(ValidationError):
            system.reconciler.apply_payment(loan.id, "TXN-8", Money(amount))

    @pytest.mark.parametrize("amount", ["Infinity", "NaN"])
    def test_non_finite_amount(self, system, active_loan, amount):
        request, loan = active_loan
        with pytest.raises(ValidationError):
            system.reconciler.apply_payment(loan.id, "TXN-NF", amount)
        assert system.loans.payments_for_loan(loan.id) == []

    def test_unknown_loan(self, system):
        with pytest.raises(NotFoundError):
            system.reconciler.apply_payment("no-such-loan", "TXN-9", EMI)

    def test_empty_reference(self, system, active_loan):
        request, loan = active_loan
        with pytest.raises(ValidationError):
            system.reconciler.apply_payment(loan.id, "", EMI)


class TestIdempotency:

    def test_replay_returns_original_payments(self, system, active_loan):
        request, loan = active_loan
        first = system.reconciler.apply_payment(loan.id, "TXN-R", EMI)
        loan_after_first = system.loans.get_loan(loan.id).to_dict()
        installments_after_first = [i.to_dict() for i in system.loans.installments(loan.id)]

        second = system.reconciler.apply_payment(loan.id, "TXN-R", EMI)

        assert second.outcome == ReconciliationOutcome.ALREADY_PROCESSED
        assert [p.id for p in second.applied_payments] == [p.id for p in first.applied_payments]
        assert len(system.loans.payments_for_loan(loan.id)) == 1
        assert system.loans.get_loan(loan.id).to_dict() == loan_after_first
        assert [i.to_dict() for i in system.loans.installments(loan.id)] == installments_after_first

    def test_distinct_references_apply_separately(self, system, active_loan):
        request, loan = active_loan
        system.reconciler.apply_payment(loan.id, "TXN-A", EMI)
        system.reconciler.apply_payment(loan.id, "TXN-B", EMI)

        assert system.loans.get_loan(loan.id).paid_count == 2

    def test_concurrent_deliveries_apply_once(self, system, active_loan):
        request, loan = active_loan
        outcomes = []

        def deliver():
            outcomes.append(system.reconciler.apply_payment(loan.id, "TXN-C", EMI).outcome)

        threads = [threading.Thread(target=deliver) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(ReconciliationOutcome.APPLIED) == 1
        assert outcomes.count(ReconciliationOutcome.ALREADY_PROCESSED) == 9
        assert len(system.loans.payments_for_loan(loan.id)) == 1

    def test_idempotent_on_sqlite(self, config, sink, customer, admin, agent):
        system = LendingSystem(config=config, storage=SQLiteStorage(), sink=sink)
        request, loan = open_active_loan(system, customer, admin, agent)

        system.reconciler.apply_payment(loan.id, "TXN-S", EMI)
        replay = system.reconciler.apply_payment(loan.id, "TXN-S", EMI)

        assert replay.outcome == ReconciliationOutcome.ALREADY_PROCESSED
        assert system.loans.get_loan(loan.id).paid_count == 1
        system.shutdown()


class TestCascade:

    def test_full_repayment_completes_loan_and_request(self, system, active_loan):
        request, loan = active_loan
        completed = []
        system.dispatcher.subscribe(DomainEvent.LOAN_COMPLETED, completed.append)

        result = system.reconciler.apply_payment(loan.id, "TXN-ALL", total_scheduled(system, loan.id))

        assert len(result.applied_payments) == 12
        assert result.loan.status == LoanStatus.COMPLETED
        assert result.loan.remaining_balance.is_zero()
        assert system.requests.get(request.id).status == RequestStatus.COMPLETED
        assert [e.entity_id for e in completed] == [loan.id]

    def test_payment_event_and_receipt(self, system, active_loan):
        request, loan = active_loan
        received = []
        system.dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, received.append)

        system.reconciler.apply_payment(loan.id, "TXN-E", EMI)

        assert received[0].data['external_reference'] == "TXN-E"
        receipts = [j for j in system.notifications.pending_jobs() if j.template_name == EMI_PAYMENT_RECEIVED]
        assert receipts[0].variables['amount'] == "3998.20"
        assert receipts[0].variables['installments_paid'] == 1

    def test_replay_does_not_publish_again(self, system, active_loan):
        request, loan = active_loan
        received = []
        system.dispatcher.subscribe(DomainEvent.PAYMENT_APPLIED, received.append)

        system.reconciler.apply_payment(loan.id, "TXN-P", EMI)
        system.reconciler.apply_payment(loan.id, "TXN-P", EMI)

        assert len(received) == 1

    def test_clearing_overdue_returns_request_to_active(self, system, active_loan):
        request, loan = active_loan
        system.sweeper.run(now=datetime(2025, 3, 15, tzinfo=timezone.utc))
        assert system.requests.get(request.id).status == RequestStatus.PAYMENT_OVERDUE

        overdue_amount = system.loans.unpaid_installments(loan.id)[0].amount_due
        result = system.reconciler.apply_payment(loan.id, "TXN-O", overdue_amount, up_to_installments_count=1)

        assert result.loan.overdue_count == 0
        assert system.requests.get(request.id).status == RequestStatus.ACTIVE

    def test_overdue_installments_paid_before_pending(self, system, active_loan):
        request, loan = active_loan
        system.sweeper.run(now=datetime(2025, 3, 15, tzinfo=timezone.utc))

        result = system.reconciler.apply_payment(loan.id, "TXN-OD", EMI)

        paid = system.loans.installments(loan.id)[0]
        assert result.applied_payments[0].installment_id == paid.id
        assert paid.sequence == 1


class TestWithoutWorkflow:

    def test_reconciler_without_cascade(self, storage, customer, admin, agent):
        system = LendingSystem(config=LendingConfig(database_url="memory://"), storage=storage)
        request, loan = open_active_loan(system, customer, admin, agent)
        system.reconciler.workflow = None

        result = system.reconciler.apply_payment(loan.id, "TXN-ALL", total_scheduled(system, loan.id))

        assert result.loan.status == LoanStatus.COMPLETED
        assert system.requests.get(request.id).status == RequestStatus.ACTIVE

"""
Overdue Sweep Module

Periodic reclassification of pending installments whose due date has passed
the grace period. One sweep runs at a time per sweeper; overdue counts are
re-derived from the installment rows inside the sweep's transaction.
"""

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional
import logging
import threading

from .events import DomainEvent, EventDispatcher
from .loan_requests import RequestRepository
from .loans import InstallmentStatus, LoanBook, LoanRepository
from .logging_config import log_action
from .notifications import NotificationQueue, EMI_OVERDUE
from .storage import StorageInterface, run_in_transaction
from .workflow_policy import RequestStatus
from .workflows import WorkflowEngine


logger = logging.getLogger("lending.sweeper")


@dataclass
class SweepResult:
    checked: int = 0
    updated: int = 0
    loans_updated: List[str] = field(default_factory=list)
    skipped: bool = False
    cutoff: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'checked': self.checked,
            'updated': self.updated,
            'loans_updated': list(self.loans_updated),
            'skipped': self.skipped,
            'cutoff': self.cutoff.isoformat() if self.cutoff else None,
        }


class OverdueSweeper:
    """Marks installments overdue once they are past the grace period"""

    def __init__(self, storage: StorageInterface,
                 workflow: Optional[WorkflowEngine] = None,
                 queue: Optional[NotificationQueue] = None,
                 dispatcher: Optional[EventDispatcher] = None,
                 grace_period_days: int = 30,
                 company_name: str = "FundifyHub",
                 support_url: str = "",
                 transaction_retries: int = 3):
        self.storage = storage
        self.loans = LoanRepository(storage)
        self.loan_book = LoanBook(self.loans)
        self.requests = RequestRepository(storage)
        self.workflow = workflow
        self.queue = queue
        self.dispatcher = dispatcher
        self.grace_period_days = grace_period_days
        self.company_name = company_name
        self.support_url = support_url
        self.transaction_retries = transaction_retries
        self._running = threading.Lock()

    def cutoff_for(self, now: datetime) -> datetime:
        """Start of day, grace_period_days before now"""
        start = (now - timedelta(days=self.grace_period_days)).date()
        return datetime.combine(start, time.min, tzinfo=now.tzinfo or timezone.utc)

    def run(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Run one sweep.

        Returns skipped=True without touching storage when another sweep on
        this sweeper is still in flight.
        """
        if not self._running.acquire(blocking=False):
            logger.info("Overdue sweep already running, skipping")
            return SweepResult(skipped=True)
        try:
            return self._sweep(now or datetime.now(timezone.utc))
        finally:
            self._running.release()

    def _sweep(self, now: datetime) -> SweepResult:
        cutoff = self.cutoff_for(now)

        def sweep() -> SweepResult:
            result = SweepResult(cutoff=cutoff)
            candidates = self.loans.pending_installments_due_before(cutoff.date())
            result.checked = len(candidates)

            affected = []
            for installment in candidates:
                installment.status = InstallmentStatus.OVERDUE
                installment.touch()
                self.loans.save_installment(installment)
                result.updated += 1
                if installment.loan_id not in affected:
                    affected.append(installment.loan_id)

            for loan_id in affected:
                self.loan_book.recompute_aggregates(loan_id)
            result.loans_updated = affected
            return result

        result = run_in_transaction(self.storage, sweep, self.transaction_retries)
        log_action(logger, "info",
                   f"Overdue sweep marked {result.updated} installment(s) across {len(result.loans_updated)} loan(s)",
                   action="overdue-sweep", extra={'cutoff': cutoff.isoformat(), 'checked': result.checked})

        for loan_id in result.loans_updated:
            self._after_commit(loan_id)
        return result

    def _after_commit(self, loan_id: str) -> None:
        loan = self.loans.find_loan(loan_id)
        if loan is None:
            return

        if self.workflow:
            request = self.requests.find(loan.request_id)
            if request and request.status == RequestStatus.ACTIVE and loan.overdue_count > 0:
                self.workflow.apply_system_action(request.id, "auto-overdue")

        if self.dispatcher:
            self.dispatcher.emit(DomainEvent.INSTALLMENTS_OVERDUE, "loan", loan.id, {
                'request_id': loan.request_id,
                'overdue_count': loan.overdue_count,
            })

        if self.queue:
            try:
                self.queue.enqueue(EMI_OVERDUE, {
                    'recipient_id': loan.customer_id,
                    'loan_id': loan.id,
                    'overdue_count': loan.overdue_count,
                    'company_name': self.company_name,
                    'support_url': self.support_url,
                })
            except Exception as e:
                logger.error(f"Failed to enqueue overdue reminder for loan {loan.id}: {e}")


class OverdueSweepScheduler:
    """Runs a sweeper on a fixed interval in a daemon thread"""

    def __init__(self, sweeper: OverdueSweeper, interval_hours: float = 6):
        self.sweeper = sweeper
        self.interval_seconds = interval_hours * 3600
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_result: Optional[SweepResult] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="overdue-sweep", daemon=True)
        self._thread.start()
        logger.info(f"Overdue sweep scheduled every {self.interval_seconds / 3600:g}h")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.last_result = self.sweeper.run()
            except Exception:
                logger.exception("Overdue sweep failed")
            self._stop.wait(self.interval_seconds)

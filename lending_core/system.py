"""
Service wiring.

Builds every lending-core service around one storage backend, one
notification queue and one event dispatcher, all passed explicitly.
"""

from decimal import Decimal
from typing import Optional
import logging

from .config import LendingConfig, get_config
from .currency import Currency
from .events import EventDispatcher
from .gateway import PaymentCallbackHandler, PhonePeClient, PhonePeSigner
from .loan_requests import RequestRepository
from .loans import LoanRepository
from .notifications import JobSink, LogJobSink, NotificationQueue, NotificationWorker, WebhookJobSink
from .payment_orders import PaymentOrderService
from .reconciliation import PaymentReconciler
from .storage import StorageInterface, create_storage
from .sweeper import OverdueSweeper, OverdueSweepScheduler
from .workflows import WorkflowEngine


logger = logging.getLogger("lending.system")


class LendingSystem:
    """All lending-core components initialized from one configuration"""

    def __init__(self, config: Optional[LendingConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 sink: Optional[JobSink] = None,
                 dispatcher: Optional[EventDispatcher] = None):
        self.config = config or get_config()
        cfg = self.config
        self.currency = Currency[cfg.currency]

        self.storage = storage or create_storage(cfg.database_url)
        self.dispatcher = dispatcher or EventDispatcher()

        if sink is None:
            sink = WebhookJobSink(cfg.notification_webhook_url, cfg.notification_timeout) \
                if cfg.notification_webhook_url else LogJobSink()
        self.notifications = NotificationQueue(
            self.storage, sink,
            max_attempts=cfg.notification_max_attempts,
            backoff_seconds=cfg.notification_backoff_seconds,
        )
        self.notification_worker = NotificationWorker(self.notifications, cfg.notification_poll_seconds)

        self.requests = RequestRepository(self.storage)
        self.loans = LoanRepository(self.storage)

        self.workflow = WorkflowEngine(
            self.storage, self.notifications, self.dispatcher,
            company_name=cfg.company_name,
            transaction_retries=cfg.transaction_retries,
        )
        self.reconciler = PaymentReconciler(
            self.storage, self.workflow, self.notifications, self.dispatcher,
            company_name=cfg.company_name,
            transaction_retries=cfg.transaction_retries,
        )
        self.sweeper = OverdueSweeper(
            self.storage, self.workflow, self.notifications, self.dispatcher,
            grace_period_days=cfg.overdue_grace_period_days,
            company_name=cfg.company_name,
            support_url=cfg.support_url,
            transaction_retries=cfg.transaction_retries,
        )
        self.scheduler = OverdueSweepScheduler(self.sweeper, cfg.sweep_interval_hours)

        self.signer = PhonePeSigner(cfg.phonepe_salt_key, cfg.phonepe_salt_index)
        self.gateway_client = PhonePeClient(
            merchant_id=cfg.phonepe_merchant_id,
            signer=self.signer,
            env=cfg.phonepe_env,
            mock_mode=cfg.phonepe_mock_mode,
            timeout=cfg.gateway_timeout_seconds,
            frontend_url=cfg.frontend_url,
            api_base_url=cfg.api_base_url,
        )
        self.payment_orders = PaymentOrderService(
            self.storage,
            client=self.gateway_client if (cfg.phonepe_merchant_id or cfg.phonepe_mock_mode) else None,
            penalty_rate_percent=Decimal(cfg.penalty_rate_percent),
            late_fee_daily_rate_percent=Decimal(cfg.late_fee_daily_rate_percent),
            grace_period_days=cfg.overdue_grace_period_days,
            amount_tolerance=Decimal(cfg.amount_tolerance),
            transaction_retries=cfg.transaction_retries,
        )
        self.callbacks = PaymentCallbackHandler(self.storage, self.signer, self.reconciler)

        logger.info(f"Lending system initialized ({cfg.database_url})")

    def start_background_jobs(self) -> None:
        self.scheduler.start()
        self.notification_worker.start()

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.notification_worker.stop()
        self.storage.close()

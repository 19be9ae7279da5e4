"""
Notification Queue Module

Durable job queue between the lending core and the notification service.
The core only validates and enqueues `{template_name, variables}` jobs;
rendering and delivery belong to whatever sits behind the JobSink.

Delivery is at-least-once: failed jobs are retried with exponential backoff
until `max_attempts`, then marked FAILED.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import threading
import uuid

import requests

from .errors import NotificationValidationError
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("lending.notifications")


class NotificationChannel(Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    WHATSAPP = "whatsapp"


# Variable each channel needs to address its recipient
CHANNEL_REQUIRED_FIELDS: Dict[NotificationChannel, str] = {
    NotificationChannel.IN_APP: "recipient_id",
    NotificationChannel.EMAIL: "email",
    NotificationChannel.WHATSAPP: "phone_number",
}


class JobStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class NotificationTemplate:
    name: str
    required_variables: Tuple[str, ...]
    supported_channels: Tuple[NotificationChannel, ...]
    default_channels: Tuple[NotificationChannel, ...] = (NotificationChannel.IN_APP,)


REQUEST_STATUS_CHANGED = "requestStatusChanged"
REQUEST_SUBMITTED = "requestSubmitted"
EMI_OVERDUE = "emiOverdue"
EMI_PAYMENT_RECEIVED = "emiPaymentReceived"

_ALL_CHANNELS = (NotificationChannel.IN_APP, NotificationChannel.EMAIL, NotificationChannel.WHATSAPP)

DEFAULT_TEMPLATES: Dict[str, NotificationTemplate] = {
    t.name: t for t in (
        NotificationTemplate(
            name=REQUEST_STATUS_CHANGED,
            required_variables=("request_id", "request_number", "previous_status", "new_status",
                                "status_description", "company_name"),
            supported_channels=_ALL_CHANNELS,
        ),
        NotificationTemplate(
            name=REQUEST_SUBMITTED,
            required_variables=("request_id", "request_number", "amount", "district", "company_name"),
            supported_channels=(NotificationChannel.IN_APP, NotificationChannel.EMAIL),
        ),
        NotificationTemplate(
            name=EMI_OVERDUE,
            required_variables=("loan_id", "overdue_count", "company_name", "support_url"),
            supported_channels=_ALL_CHANNELS,
        ),
        NotificationTemplate(
            name=EMI_PAYMENT_RECEIVED,
            required_variables=("loan_id", "amount", "installments_paid", "company_name"),
            supported_channels=_ALL_CHANNELS,
        ),
    )
}


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


@dataclass
class NotificationJob(StorageRecord):
    template_name: str
    channel: NotificationChannel
    variables: Dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        """Wire shape handed to the notification service"""
        return {
            'job_id': self.id,
            'template_name': self.template_name,
            'channel': self.channel.value,
            'variables': self.variables,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'template_name': self.template_name,
            'channel': self.channel.value,
            'variables': self.variables,
            'status': self.status.value,
            'attempts': self.attempts,
            'max_attempts': self.max_attempts,
            'next_attempt_at': self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            'last_error': self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationJob':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            template_name=data['template_name'],
            channel=NotificationChannel(data['channel']),
            variables=data.get('variables') or {},
            status=JobStatus(data['status']),
            attempts=data['attempts'],
            max_attempts=data['max_attempts'],
            next_attempt_at=datetime.fromisoformat(data['next_attempt_at']) if data.get('next_attempt_at') else None,
            last_error=data.get('last_error'),
        )


class JobSink(ABC):
    """Hands a job to the notification service; raises on failure"""

    @abstractmethod
    def deliver(self, job: NotificationJob) -> None:
        pass


class LogJobSink(JobSink):
    """Sink that only logs; used when no notification service is configured"""

    def __init__(self, log=None):
        self.logger = log or logger

    def deliver(self, job: NotificationJob) -> None:
        self.logger.info(f"Notification job {job.id} ({job.template_name} via {job.channel.value})")


class WebhookJobSink(JobSink):
    """POSTs job payloads to the notification service"""

    def __init__(self, url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def deliver(self, job: NotificationJob) -> None:
        response = self.session.post(
            self.url,
            json=job.payload(),
            timeout=self.timeout,
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()


@dataclass
class ProcessResult:
    sent: int = 0
    retried: int = 0
    failed: int = 0
    job_ids: List[str] = field(default_factory=list)


class NotificationQueue:
    """Validates and stores notification jobs, and drains them into a sink"""

    def __init__(self, storage: StorageInterface, sink: Optional[JobSink] = None,
                 max_attempts: int = 3, backoff_seconds: int = 30,
                 templates: Optional[Dict[str, NotificationTemplate]] = None):
        self.storage = storage
        self.sink = sink or LogJobSink()
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.templates = dict(templates or DEFAULT_TEMPLATES)
        self.table = "notification_jobs"

    def register_template(self, template: NotificationTemplate) -> None:
        self.templates[template.name] = template

    def validate(self, template_name: str, variables: Dict[str, Any],
                 channels: Optional[Sequence[NotificationChannel]] = None) -> List[NotificationChannel]:
        """Resolve channels and check every template and channel field is present"""
        template = self.templates.get(template_name)
        if template is None:
            raise NotificationValidationError(f"Unknown notification template: {template_name}",
                                              missing=[template_name])

        resolved = list(channels) if channels else list(template.default_channels)
        unsupported = [c.value for c in resolved if c not in template.supported_channels]
        if unsupported:
            raise NotificationValidationError(
                f"Template {template_name} does not support channel(s): {', '.join(unsupported)}"
            )

        missing = [name for name in template.required_variables if not _is_present(variables.get(name))]
        for channel in resolved:
            required = CHANNEL_REQUIRED_FIELDS[channel]
            if not _is_present(variables.get(required)) and required not in missing:
                missing.append(required)
        if missing:
            raise NotificationValidationError(
                f"Missing required field(s) for {template_name}: {', '.join(missing)}", missing=missing
            )
        return resolved

    def enqueue(self, template_name: str, variables: Dict[str, Any],
                channels: Optional[Sequence[NotificationChannel]] = None) -> List[NotificationJob]:
        """
        Store one job per channel.

        Raises:
            NotificationValidationError: naming the first missing field(s).
        """
        resolved = self.validate(template_name, variables, channels)
        now = datetime.now(timezone.utc)
        jobs = []
        for channel in resolved:
            job = NotificationJob(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                template_name=template_name,
                channel=channel,
                variables=dict(variables),
                max_attempts=self.max_attempts,
                next_attempt_at=now,
            )
            self.storage.save(self.table, job.id, job.to_dict())
            jobs.append(job)
        logger.debug(f"Enqueued {template_name} on {[c.value for c in resolved]}")
        return jobs

    def get(self, job_id: str) -> Optional[NotificationJob]:
        data = self.storage.load(self.table, job_id)
        return NotificationJob.from_dict(data) if data else None

    def pending_jobs(self) -> List[NotificationJob]:
        rows = self.storage.find(self.table, {'status': JobStatus.PENDING.value})
        return sorted((NotificationJob.from_dict(r) for r in rows), key=lambda j: j.created_at)

    def backoff_for(self, attempts: int) -> timedelta:
        return timedelta(seconds=self.backoff_seconds * (2 ** (attempts - 1)))

    def process_due(self, now: Optional[datetime] = None, limit: int = 100) -> ProcessResult:
        """Deliver due jobs; failures are rescheduled or marked FAILED"""
        now = now or datetime.now(timezone.utc)
        result = ProcessResult()

        due = [j for j in self.pending_jobs() if j.next_attempt_at is None or j.next_attempt_at <= now]
        for job in due[:limit]:
            job.attempts += 1
            try:
                self.sink.deliver(job)
            except Exception as e:
                job.last_error = str(e)
                if job.attempts >= job.max_attempts:
                    job.status = JobStatus.FAILED
                    result.failed += 1
                    logger.error(f"Notification job {job.id} failed permanently after {job.attempts} attempts: {e}")
                else:
                    job.next_attempt_at = now + self.backoff_for(job.attempts)
                    result.retried += 1
                    logger.warning(f"Notification job {job.id} attempt {job.attempts} failed, "
                                   f"retrying at {job.next_attempt_at.isoformat()}: {e}")
            else:
                job.status = JobStatus.SENT
                job.last_error = None
                result.sent += 1
            job.touch()
            self.storage.save(self.table, job.id, job.to_dict())
            result.job_ids.append(job.id)

        return result


class NotificationWorker:
    """Drains a queue's due jobs on a fixed interval in a daemon thread"""

    def __init__(self, queue: NotificationQueue, interval_seconds: float = 30, batch_size: int = 100):
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_result: Optional[ProcessResult] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="notification-worker", daemon=True)
        self._thread.start()
        logger.info(f"Notification queue drained every {self.interval_seconds:g}s")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.last_result = self.queue.process_due(limit=self.batch_size)
            except Exception:
                logger.exception("Notification dispatch failed")
            self._stop.wait(self.interval_seconds)

"""
Notification Outbox Module

Transitions enqueue an outbox message inside their own transaction; the
message is handed to a NotificationSender only after commit. A failed send
is logged, marked failed and retried later. It never undoes the transition.
With notifications disabled, messages are marked suppressed and never sent.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from abc import ABC, abstractmethod
import uuid
import logging

import requests

from .storage import StorageInterface, StorageRecord
from .errors import NotFoundError


logger = logging.getLogger("approval_engine.notifications")


class NotificationStatus(Enum):
    """Delivery status of an outbox message"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SUPPRESSED = "suppressed"


class NotificationEvent(Enum):
    """What happened to the instance"""
    STEP_PENDING = "step_pending"
    RETURNED_TO_TIER = "returned_to_tier"
    RETURNED_TO_REQUESTOR = "returned_to_requestor"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    DELEGATED = "delegated"


@dataclass
class OutboxMessage(StorageRecord):
    """Notification waiting for (or past) delivery"""
    tenant_id: str
    instance_id: str
    event: NotificationEvent
    category: str
    summary: str
    target_tier: Optional[int] = None
    target_user_id: Optional[str] = None
    status: NotificationStatus = NotificationStatus.PENDING
    sent_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event'] = self.event.value
        result['status'] = self.status.value
        result['sent_at'] = self.sent_at.isoformat() if self.sent_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OutboxMessage':
        data = dict(data)
        data['event'] = NotificationEvent(data['event'])
        data['status'] = NotificationStatus(data['status'])
        if data.get('sent_at'):
            data['sent_at'] = datetime.fromisoformat(data['sent_at'])
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


class NotificationSender(ABC):
    """Delivers outbox messages to the outside world"""

    @abstractmethod
    def send(self, message: OutboxMessage) -> bool:
        """Send the message. Returns True if successful."""
        pass


class LogNotificationSender(NotificationSender):
    """Writes notifications to the log instead of sending them"""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger
        self.sent: List[OutboxMessage] = []

    def send(self, message: OutboxMessage) -> bool:
        target = (f"tier {message.target_tier}" if message.target_tier is not None
                  else f"user {message.target_user_id}")
        self.log.info("[NOTIFICATION] %s to %s: %s", message.event.value, target, message.summary)
        self.sent.append(message)
        return True


class WebhookNotificationSender(NotificationSender):
    """POSTs notifications as JSON to a webhook"""

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def send(self, message: OutboxMessage) -> bool:
        payload = {
            "notification_id": message.id,
            "tenant_id": message.tenant_id,
            "event": message.event.value,
            "instance_id": message.instance_id,
            "category": message.category,
            "summary": message.summary,
            "target_tier": message.target_tier,
            "target_user_id": message.target_user_id,
            "timestamp": message.created_at.isoformat(),
            "metadata": message.metadata
        }

        try:
            response = requests.post(
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            logger.error("Webhook send failed for %s: %s", message.id, e)
            return False

        if response.status_code >= 300:
            logger.error("Webhook returned %s for %s", response.status_code, message.id)
            return False
        return True


class NotificationOutbox:
    """Transactional outbox for workflow notifications"""

    TABLE = "notification_outbox"

    def __init__(self, storage: StorageInterface, sender: Optional[NotificationSender] = None,
                 max_retries: int = 3, enabled: bool = True):
        self.storage = storage
        self.sender = sender or LogNotificationSender()
        self.max_retries = max_retries
        self.enabled = enabled

    def enqueue(
        self,
        tenant_id: str,
        instance_id: str,
        event: NotificationEvent,
        category: str,
        summary: str,
        target_tier: Optional[int] = None,
        target_user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> OutboxMessage:
        """Store a pending message; call inside the transition's transaction"""
        now = datetime.now(timezone.utc)
        message = OutboxMessage(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            instance_id=instance_id,
            event=event,
            category=category,
            summary=summary,
            target_tier=target_tier,
            target_user_id=target_user_id,
            max_retries=self.max_retries,
            metadata=metadata or {}
        )
        self.storage.insert(self.TABLE, message.id, message.to_dict())
        return message

    def get_message(self, message_id: str) -> OutboxMessage:
        data = self.storage.load(self.TABLE, message_id)
        if not data:
            raise NotFoundError("Outbox message", message_id)
        return OutboxMessage.from_dict(data)

    def list_messages(self, instance_id: Optional[str] = None,
                      status: Optional[NotificationStatus] = None) -> List[OutboxMessage]:
        filters: Dict[str, Any] = {}
        if instance_id:
            filters['instance_id'] = instance_id
        if status:
            filters['status'] = status.value
        messages = [OutboxMessage.from_dict(data) for data in self.storage.find(self.TABLE, filters)]
        return sorted(messages, key=lambda m: m.created_at)

    def dispatch(self, message_id: str) -> bool:
        """Try to deliver one message; returns True when it is (now) sent"""
        message = self.get_message(message_id)
        if message.status == NotificationStatus.SENT:
            return True
        if message.status == NotificationStatus.SUPPRESSED:
            return False
        if not self.enabled:
            message.status = NotificationStatus.SUPPRESSED
            message.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.TABLE, message.id, message.to_dict())
            return False

        try:
            success = self.sender.send(message)
            error = None if success else "sender reported failure"
        except Exception as e:
            logger.exception("Notification %s raised during send", message.id)
            success, error = False, str(e)

        now = datetime.now(timezone.utc)
        message.updated_at = now
        if success:
            message.status = NotificationStatus.SENT
            message.sent_at = now
            message.failed_reason = None
        else:
            message.status = NotificationStatus.FAILED
            message.retry_count += 1
            message.failed_reason = error
            logger.error("Notification %s for instance %s failed (attempt %d): %s",
                         message.id, message.instance_id, message.retry_count, error)

        self.storage.save(self.TABLE, message.id, message.to_dict())
        return success

    def dispatch_pending(self) -> Dict[str, int]:
        """Deliver pending messages and retry failed ones under the retry limit"""
        results = {"attempted": 0, "succeeded": 0, "failed": 0}
        candidates = (self.list_messages(status=NotificationStatus.PENDING) +
                      self.list_messages(status=NotificationStatus.FAILED))

        for message in candidates:
            if message.status == NotificationStatus.FAILED and message.retry_count >= message.max_retries:
                continue
            results["attempted"] += 1
            if self.dispatch(message.id):
                results["succeeded"] += 1
            else:
                results["failed"] += 1

        return results

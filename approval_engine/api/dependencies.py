"""
Shared API dependencies: the wired-up approval system, caller identity
headers and error mapping.
"""

from typing import Optional

from fastapi import Header, HTTPException

from ..storage import StorageInterface, create_storage
from ..templates import TemplateCatalog
from ..ledger import HistoryLedger
from ..delegation import DelegationManager
from ..approvers import ApproverDirectory
from ..notifications import (
    NotificationOutbox, NotificationSender, LogNotificationSender, WebhookNotificationSender
)
from ..workflows import WorkflowEngine
from ..inbox import ApprovalInbox
from ..config import ApprovalEngineConfig, get_config
from ..errors import (
    WorkflowError, NotFoundError, AuthorizationError, StateConflictError, PersistenceError
)


class ApprovalSystem:
    """Approval engine with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[ApprovalEngineConfig] = None,
                 sender: Optional[NotificationSender] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)

        if sender is None:
            if self.config.notification_webhook_url:
                sender = WebhookNotificationSender(self.config.notification_webhook_url,
                                                   timeout=self.config.notification_timeout)
            else:
                sender = LogNotificationSender()

        self.templates = TemplateCatalog(self.storage, self.config.max_tier_level)
        self.ledger = HistoryLedger(self.storage)
        self.delegations = DelegationManager(self.storage)
        self.directory = ApproverDirectory(self.storage)
        self.outbox = NotificationOutbox(self.storage, sender,
                                         max_retries=self.config.notification_max_retries,
                                         enabled=self.config.enable_notifications)
        self.engine = WorkflowEngine(
            self.storage,
            templates=self.templates,
            ledger=self.ledger,
            delegations=self.delegations,
            directory=self.directory,
            outbox=self.outbox,
            config=self.config
        )
        self.inbox = ApprovalInbox(self.engine)


_system: Optional[ApprovalSystem] = None


def get_approval_system() -> ApprovalSystem:
    global _system
    if _system is None:
        _system = ApprovalSystem()
    return _system


def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-ID")) -> str:
    if not x_tenant_id.strip():
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    return x_tenant_id


def get_actor_id(x_actor_id: str = Header(..., alias="X-Actor-ID")) -> str:
    if not x_actor_id.strip():
        raise HTTPException(status_code=400, detail="X-Actor-ID header is required")
    return x_actor_id


def http_error(error: Exception) -> HTTPException:
    """Map an engine error to the HTTP status callers should see"""
    if isinstance(error, NotFoundError):
        status_code = 404
    elif isinstance(error, AuthorizationError):
        status_code = 403
    elif isinstance(error, StateConflictError):
        status_code = 409
    elif isinstance(error, PersistenceError):
        status_code = 503
    else:
        status_code = 400

    detail = {
        "code": getattr(error, "code", "VALIDATION_ERROR"),
        "message": str(error)
    }
    if isinstance(error, StateConflictError):
        detail["current_status"] = error.current_status
        detail["current_version"] = error.current_version
    return HTTPException(status_code=status_code, detail=detail)


# Errors a route converts with http_error
API_ERRORS = (WorkflowError, ValueError)

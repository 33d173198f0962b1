"""
Workflow Engine Module

Drives a request through its template's chain of approval tiers.

A rejection does not end the request: it is handed one tier down
(``returned``) and the tier holding it may reject again, cascading until the
request reaches its requestor, who can then resubmit, appeal or cancel.
Only ``hard_reject`` ends a request as ``rejected``.

Every mutation runs in one storage transaction: read the instance, check
preconditions against that snapshot, append the ledger entry and outbox
message, then write the instance conditionally on its version. Outbox
messages are dispatched after commit.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Any, Union
from enum import Enum
import uuid
import logging

from .storage import StorageInterface, StorageRecord
from .templates import TemplateCatalog, WorkflowCategory, WorkflowStep
from .ledger import HistoryLedger, HistoryAction, StepHistoryEntry
from .cascade import CascadeTarget, cascade_target, validate_tier
from .metadata import CategoryMetadata, metadata_from_dict, metadata_to_dict, merge_metadata
from .delegation import DelegationManager
from .approvers import ApproverDirectory
from .notifications import NotificationOutbox, NotificationEvent, OutboxMessage
from .config import ApprovalEngineConfig, get_config
from .logging_config import log_action
from .errors import (
    WorkflowError, ValidationError, PolicyLimitError, NotFoundError,
    AuthorizationError, StateConflictError
)


logger = logging.getLogger("approval_engine.workflows")


class WorkflowStatus(Enum):
    """Status of workflow instances"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    ESCALATED = "escalated"


TERMINAL_STATUSES = {WorkflowStatus.APPROVED, WorkflowStatus.REJECTED, WorkflowStatus.CANCELLED}
OPEN_STATUSES = {WorkflowStatus.PENDING, WorkflowStatus.IN_PROGRESS}


class Priority(Enum):
    """Request priority, lowest first"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return list(Priority).index(self)


class RequestorAction(Enum):
    """Actions a requestor may take on their own request"""
    RESUBMIT = "resubmit"
    CANCEL = "cancel"
    APPEAL = "appeal"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dump(record: Any) -> Dict[str, Any]:
    data = asdict(record)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data


@dataclass(frozen=True)
class RejectionHistoryEntry:
    """One rejection (initial or cascade hop)"""
    tier_level: int
    rejected_by: str
    reason: str
    returned_to_tier: Optional[int]
    returned_to_requestor: bool
    previous_status: str
    step_id: Optional[str]
    is_cascade: bool
    cascade_from_tier: Optional[int]
    round: int
    rejected_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RejectionHistoryEntry':
        return cls(**{**data, 'rejected_at': _parse_dt(data['rejected_at'])})


@dataclass(frozen=True)
class CascadeChainEntry:
    """One hop of a rejection; ``to_tier`` None means the requestor"""
    from_tier: int
    to_tier: Optional[int]
    rejected_by: str
    reason: str
    round: int
    timestamp: datetime

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CascadeChainEntry':
        return cls(**{**data, 'timestamp': _parse_dt(data['timestamp'])})


@dataclass(frozen=True)
class ResubmitRecord:
    resubmitted_by: str
    changes: Optional[Dict[str, Any]]
    comments: Optional[str]
    previous_rejection_count: int
    timestamp: datetime

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ResubmitRecord':
        return cls(**{**data, 'timestamp': _parse_dt(data['timestamp'])})


@dataclass(frozen=True)
class AppealRecord:
    appealed_by: str
    appeal_reason: str
    previous_rejection_count: int
    timestamp: datetime

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AppealRecord':
        return cls(**{**data, 'timestamp': _parse_dt(data['timestamp'])})


@dataclass
class Reference:
    """The business record an instance approves"""
    reference_type: str = ""
    reference_id: str = ""
    title: str = ""


@dataclass
class WorkflowInstance(StorageRecord):
    """Running workflow instance with a snapshot of its template"""
    tenant_id: str
    template_id: str
    template_name: str
    template_version: int
    steps: List[WorkflowStep]
    category: WorkflowCategory
    started_by: str
    metadata: CategoryMetadata
    reference: Reference = field(default_factory=Reference)
    status: WorkflowStatus = WorkflowStatus.PENDING
    priority: Priority = Priority.MEDIUM
    current_step_id: Optional[str] = None
    current_step_order: int = 1
    current_tier: Optional[int] = None
    assigned_approver_id: Optional[str] = None
    rejection_history: List[RejectionHistoryEntry] = field(default_factory=list)
    cascade_chain: List[CascadeChainEntry] = field(default_factory=list)
    resubmit_history: List[ResubmitRecord] = field(default_factory=list)
    appeal_history: List[AppealRecord] = field(default_factory=list)
    resubmit_count: int = 0
    appeal_count: int = 0
    awaiting_requestor_action: bool = False
    awaiting_cascade_action: bool = False
    cascade_pending_tier: Optional[int] = None
    can_cascade_further: bool = False
    returned_from_tier: Optional[int] = None
    returned_at: Optional[datetime] = None
    returned_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def round(self) -> int:
        """Submission round: how many times the request was restarted"""
        return self.resubmit_count + self.appeal_count

    @property
    def current_step(self) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == self.current_step_id:
                return step
        return None

    def step_at(self, step_order: int) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.step_order == step_order:
                return step
        return None

    def last_step_of_tier(self, tier: int) -> Optional[WorkflowStep]:
        candidates = [step for step in self.steps if step.tier_level == tier]
        return max(candidates, key=lambda s: s.step_order) if candidates else None

    def current_round_chain(self) -> List[CascadeChainEntry]:
        return [entry for entry in self.cascade_chain if entry.round == self.round]

    def to_dict(self) -> Dict[str, Any]:
        now = self.updated_at
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': now.isoformat(),
            'tenant_id': self.tenant_id,
            'template_id': self.template_id,
            'template_name': self.template_name,
            'template_version': self.template_version,
            'steps': [step.to_dict() for step in self.steps],
            'category': self.category.value,
            'started_by': self.started_by,
            'metadata': metadata_to_dict(self.metadata),
            'reference': asdict(self.reference),
            'status': self.status.value,
            'priority': self.priority.value,
            'current_step_id': self.current_step_id,
            'current_step_order': self.current_step_order,
            'current_tier': self.current_tier,
            'assigned_approver_id': self.assigned_approver_id,
            'rejection_history': [_dump(e) for e in self.rejection_history],
            'cascade_chain': [_dump(e) for e in self.cascade_chain],
            'resubmit_history': [_dump(r) for r in self.resubmit_history],
            'appeal_history': [_dump(a) for a in self.appeal_history],
            'resubmit_count': self.resubmit_count,
            'appeal_count': self.appeal_count,
            'awaiting_requestor_action': self.awaiting_requestor_action,
            'awaiting_cascade_action': self.awaiting_cascade_action,
            'cascade_pending_tier': self.cascade_pending_tier,
            'can_cascade_further': self.can_cascade_further,
            'returned_from_tier': self.returned_from_tier,
            'returned_at': self.returned_at.isoformat() if self.returned_at else None,
            'returned_by': self.returned_by,
            'rejection_reason': self.rejection_reason,
            'cancellation_reason': self.cancellation_reason,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowInstance':
        data = dict(data)
        category = WorkflowCategory(data['category'])
        data['category'] = category
        data['steps'] = [WorkflowStep.from_dict(s) for s in data.get('steps', [])]
        data['metadata'] = metadata_from_dict(category, data.get('metadata'))
        data['reference'] = Reference(**(data.get('reference') or {}))
        data['status'] = WorkflowStatus(data['status'])
        data['priority'] = Priority(data['priority'])
        data['rejection_history'] = [RejectionHistoryEntry.from_dict(e) for e in data.get('rejection_history', [])]
        data['cascade_chain'] = [CascadeChainEntry.from_dict(e) for e in data.get('cascade_chain', [])]
        data['resubmit_history'] = [ResubmitRecord.from_dict(r) for r in data.get('resubmit_history', [])]
        data['appeal_history'] = [AppealRecord.from_dict(a) for a in data.get('appeal_history', [])]
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['returned_at'] = _parse_dt(data.get('returned_at'))
        data['completed_at'] = _parse_dt(data.get('completed_at'))
        return cls(**data)


@dataclass(frozen=True)
class TransitionResult:
    """What a caller needs to refresh its view after a transition"""
    instance_id: str
    status: WorkflowStatus
    tier: Optional[int]
    target_tier: Optional[int]
    returned_to_requestor: bool
    current_step_id: Optional[str]
    current_step_order: int
    version: int
    ledger_entry_id: str


@dataclass(frozen=True)
class AvailableActions:
    can_act: bool
    reason: str
    actions: List[RequestorAction]


class WorkflowEngine:
    """Instance state machine and requestor action handler"""

    TABLE = "workflow_instances"

    def __init__(
        self,
        storage: StorageInterface,
        templates: Optional[TemplateCatalog] = None,
        ledger: Optional[HistoryLedger] = None,
        delegations: Optional[DelegationManager] = None,
        directory: Optional[ApproverDirectory] = None,
        outbox: Optional[NotificationOutbox] = None,
        config: Optional[ApprovalEngineConfig] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        self.templates = templates or TemplateCatalog(storage, self.config.max_tier_level)
        self.ledger = ledger or HistoryLedger(storage)
        self.delegations = delegations or DelegationManager(storage)
        self.directory = directory or ApproverDirectory(storage)
        self.outbox = outbox or NotificationOutbox(
            storage,
            max_retries=self.config.notification_max_retries,
            enabled=self.config.enable_notifications
        )

    # Instance lifecycle

    def start_workflow(
        self,
        tenant_id: str,
        template_id: str,
        started_by: str,
        reference: Optional[Union[Reference, Dict[str, Any]]] = None,
        metadata: Optional[Union[CategoryMetadata, Dict[str, Any]]] = None,
        priority: Union[Priority, str] = Priority.MEDIUM
    ) -> WorkflowInstance:
        """Create an instance at step 1 of an active template"""
        self._require(started_by, "started_by")
        if isinstance(reference, dict):
            reference = Reference(**reference)
        try:
            priority = Priority(priority)
        except ValueError as e:
            raise ValidationError(f"Unknown priority {priority!r}", field="priority") from e

        with self.storage.atomic():
            template = self.templates.get_template(tenant_id, template_id)
            if not template.is_active:
                raise ValidationError(f"Template {template_id} is not active", field="template_id")

            if metadata is None or isinstance(metadata, dict):
                metadata = metadata_from_dict(template.category, metadata)

            first = template.first_step()
            now = _now()
            instance = WorkflowInstance(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                tenant_id=tenant_id,
                template_id=template.id,
                template_name=template.name,
                template_version=template.version,
                steps=template.steps,
                category=template.category,
                started_by=started_by,
                metadata=metadata,
                reference=reference or Reference(),
                priority=priority,
                current_step_id=first.id,
                current_step_order=first.step_order,
                current_tier=first.tier_level
            )
            self.storage.insert(self.TABLE, instance.id, instance.to_dict())
            message = self._notify_tier(instance, NotificationEvent.STEP_PENDING, first.tier_level,
                                        f"{instance.template_name}: awaiting tier {first.tier_level} approval")

        self._dispatch([message])
        log_action(logger, "info", f"Workflow {instance.id} started from template {template.id}",
                   user_id=started_by, action="workflow_started",
                   resource=f"workflow_instance:{instance.id}", tenant_id=tenant_id,
                   extra={'category': instance.category.value, 'tier': first.tier_level})
        return instance

    def get_instance(self, tenant_id: str, instance_id: str) -> WorkflowInstance:
        """Get an instance owned by ``tenant_id`` or raise NotFoundError"""
        data = self.storage.load(self.TABLE, instance_id)
        if not data or data.get('tenant_id') != tenant_id:
            raise NotFoundError("Workflow instance", instance_id)
        return WorkflowInstance.from_dict(data)

    def list_instances(
        self,
        tenant_id: str,
        status: Optional[WorkflowStatus] = None,
        started_by: Optional[str] = None,
        category: Optional[WorkflowCategory] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None
    ) -> List[WorkflowInstance]:
        """List a tenant's instances, newest first"""
        filters: Dict[str, Any] = {'tenant_id': tenant_id}
        if status is not None:
            filters['status'] = WorkflowStatus(status).value
        if started_by:
            filters['started_by'] = started_by
        if category is not None:
            filters['category'] = WorkflowCategory(category).value

        instances = [WorkflowInstance.from_dict(d) for d in self.storage.find(self.TABLE, filters)]
        if reference_type:
            instances = [i for i in instances if i.reference.reference_type == reference_type]
        if reference_id:
            instances = [i for i in instances if i.reference.reference_id == reference_id]
        return sorted(instances, key=lambda i: i.created_at, reverse=True)

    def get_history(self, tenant_id: str, instance_id: str) -> List[StepHistoryEntry]:
        """Ledger entries of an instance in order"""
        self.get_instance(tenant_id, instance_id)
        return self.ledger.get_history(instance_id)

    def verify_history(self, tenant_id: str, instance_id: str) -> Dict[str, Any]:
        self.get_instance(tenant_id, instance_id)
        return self.ledger.verify_integrity(instance_id)

    # Approver transitions

    def approve_step(self, tenant_id: str, instance_id: str, step_id: str, actor_id: str,
                     comments: Optional[str] = None,
                     expected_version: Optional[int] = None) -> TransitionResult:
        """Approve the current step and advance to the next (or complete)"""
        self._require(actor_id, "actor_id")
        self._require(step_id, "step_id")

        with self.storage.atomic():
            instance = self._load_for_update(tenant_id, instance_id, expected_version)
            loaded_version = instance.version
            step = self._require_open_step(instance, step_id)
            delegated_from = self._authorize_approver(instance, step, actor_id)

            entry = self.ledger.append(
                tenant_id, instance.id, HistoryAction.APPROVED, actor_id,
                step_id=step.id, step_order=step.step_order, tier_level=step.tier_level,
                comments=comments, delegated_from=delegated_from
            )

            next_step = instance.step_at(step.step_order + 1)
            now = _now()
            instance.assigned_approver_id = None
            if next_step is None:
                instance.status = WorkflowStatus.APPROVED
                instance.current_step_id = None
                instance.completed_at = now
                message = self._notify_requestor(instance, NotificationEvent.APPROVED,
                                                 f"{instance.template_name}: approved")
            else:
                instance.status = WorkflowStatus.IN_PROGRESS
                instance.current_step_id = next_step.id
                instance.current_step_order = next_step.step_order
                instance.current_tier = next_step.tier_level
                message = self._notify_tier(instance, NotificationEvent.STEP_PENDING, next_step.tier_level,
                                            f"{instance.template_name}: awaiting tier {next_step.tier_level} approval")

            self._commit(instance, loaded_version)

        self._dispatch([message])
        self._log_transition(instance, actor_id, "step_approved", step.tier_level, delegated_from)
        return self._result(instance, step.tier_level, instance.current_tier if next_step else None,
                            False, entry)

    def hard_reject(self, tenant_id: str, instance_id: str, step_id: str, actor_id: str,
                    reason: str, expected_version: Optional[int] = None) -> TransitionResult:
        """Terminally reject the request without a cascade"""
        reason = self._require_reason(reason)
        self._require(actor_id, "actor_id")

        with self.storage.atomic():
            instance = self._load_for_update(tenant_id, instance_id, expected_version)
            loaded_version = instance.version
            step = self._require_open_step(instance, step_id)
            delegated_from = self._authorize_approver(instance, step, actor_id)

            entry = self.ledger.append(
                tenant_id, instance.id, HistoryAction.REJECTED, actor_id,
                step_id=step.id, step_order=step.step_order, tier_level=step.tier_level,
                comments=reason, delegated_from=delegated_from, metadata={'hard_reject': True}
            )

            instance.status = WorkflowStatus.REJECTED
            instance.rejection_reason = reason
            instance.current_step_id = None
            instance.assigned_approver_id = None
            instance.completed_at = _now()
            message = self._notify_requestor(instance, NotificationEvent.REJECTED,
                                             f"{instance.template_name}: rejected ({reason})")
            self._commit(instance, loaded_version)

        self._dispatch([message])
        self._log_transition(instance, actor_id, "workflow_rejected", step.tier_level, delegated_from)
        return self._result(instance, step.tier_level, None, False, entry)

    def delegate_step(self, tenant_id: str, instance_id: str, step_id: str, actor_id: str,
                      delegate_to: str, comments: Optional[str] = None,
                      expected_version: Optional[int] = None) -> TransitionResult:
        """Hand the current step to another user"""
        self._require(actor_id, "actor_id")
        self._require(delegate_to, "delegate_to")
        if delegate_to == actor_id:
            raise ValidationError("Cannot delegate a step to yourself", field="delegate_to")

        with self.storage.atomic():
            instance = self._load_for_update(tenant_id, instance_id, expected_version)
            loaded_version = instance.version
            self._require_known_step(instance, step_id)
            holds_step = (instance.status in OPEN_STATUSES or
                          (instance.status == WorkflowStatus.RETURNED and instance.awaiting_cascade_action))
            if not holds_step:
                raise self._conflict(instance, f"Instance is {instance.status.value}; no step to delegate")
            step = self._require_current_step(instance, step_id)
            delegated_from = self._authorize_approver(instance, step, actor_id)
            if not step.allow_delegation:
                raise ValidationError(f"Step {step.name} does not allow delegation", field="step_id")

            entry = self.ledger.append(
                tenant_id, instance.id, HistoryAction.DELEGATED, actor_id,
                step_id=step.id, step_order=step.step_order, tier_level=step.tier_level,
                comments=comments, delegated_from=delegated_from,
                metadata={'delegate_to': delegate_to}
            )
            instance.assigned_approver_id = delegate_to
            message = self.outbox.enqueue(
                tenant_id, instance.id, NotificationEvent.DELEGATED, instance.category.value,
                f"{instance.template_name}: step {step.name} delegated to you",
                target_user_id=delegate_to
            )
            self._commit(instance, loaded_version)

        self._dispatch([message])
        self._log_transition(instance, actor_id, "step_delegated", step.tier_level, delegated_from)
        return self._result(instance, step.tier_level, step.tier_level, False, entry)

    # Rejection cascade

    def reject(self, tenant_id: str, instance_id: str, step_id: str, tier: int, actor_id: str,
               reason: str, expected_version: Optional[int] = None) -> TransitionResult:
        """
        Reject at ``tier``, choosing between an initial rejection and a cascade hop.

        It is a cascade hop when the current round's chain already handed the
        request down to ``tier``.
        """
        self._require_reason(reason)
        validate_tier(tier, self.config.max_tier_level)

        instance = self.get_instance(tenant_id, instance_id)
        is_hop = (instance.status == WorkflowStatus.RETURNED and
                  any(entry.to_tier == tier for entry in instance.current_round_chain()))
        if is_hop:
            return self.cascade_rejection(tenant_id, instance_id, step_id, tier, actor_id,
                                          reason, expected_version)
        return self.reject_approval(tenant_id, instance_id, step_id, tier, actor_id,
                                    reason, expected_version)

    def reject_approval(self, tenant_id: str, instance_id: str, step_id: str, tier: int,
                        actor_id: str, reason: str,
                        expected_version: Optional[int] = None) -> TransitionResult:
        """Initial rejection of an open request: hand it one tier down"""
        reason = self._require_reason(reason)
        validate_tier(tier, self.config.max_tier_level)
        self._require(actor_id, "actor_id")

        with self.storage.atomic():
            instance = self._load_for_update(tenant_id, instance_id, expected_version)
            loaded_version = instance.version
            step = self._require_open_step(instance, step_id)
            if step.tier_level != tier:
                raise self._conflict(instance, f"Current step is at tier {step.tier_level}, not tier {tier}")
            delegated_from = self._authorize_approver(instance, step, actor_id)

            target = cascade_target(tier)
            entry, message = self._apply_rejection(instance, step, tier, target, actor_id, reason,
                                                   delegated_from, cascade_from_tier=None)
            self._commit(instance, loaded_version)

        self._dispatch([message])
        self._log_transition(instance, actor_id, "approval_rejected", tier, delegated_from)
        return self._result(instance, tier, target.target_tier, target.returned_to_requestor, entry)

    def cascade_rejection(self, tenant_id: str, instance_id: str, step_id: str, tier: int,
                          actor_id: str, reason: str,
                          expected_version: Optional[int] = None) -> TransitionResult:
        """The tier holding a returned request rejects it again"""
        reason = self._require_reason(reason)
        validate_tier(tier, self.config.max_tier_level)
        self._require(actor_id, "actor_id")

        with self.storage.atomic():
            instance = self._load_for_update(tenant_id, instance_id, expected_version)
            loaded_version = instance.version
            self._require_known_step(instance, step_id)
            if (instance.status != WorkflowStatus.RETURNED or not instance.awaiting_cascade_action
                    or instance.cascade_pending_tier != tier):
                raise self._conflict(instance, f"Instance is not awaiting a cascade decision at tier {tier}")
            step = self._require_current_step(instance, step_id)

            handed_down = [e for e in instance.current_round_chain() if e.to_tier == tier]
            if not handed_down:
                raise self._conflict(instance, f"No rejection was cascaded to tier {tier} in this round")
            delegated_from = self._authorize_approver(instance, step, actor_id)

            target = cascade_target(tier)
            entry, message = self._apply_rejection(instance, step, tier, target, actor_id, reason,
                                                   delegated_from,
                                                   cascade_from_tier=handed_down[-1].from_tier)
            self._commit(instance, loaded_version)

        self._dispatch([message])
        self._log_transition(instance, actor_id, "rejection_cascaded", tier, delegated_from)
        return self._result(instance, tier, target.target_tier, target.returned_to_requestor, entry)

    # Requestor actions

    def resubmit(self, tenant_id: str, instance_id: str, actor_id: str,
                 changes: Optional[Dict[str, Any]] = None, comments: Optional[str] = None,
                 expected_version: Optional[int] = None) -> TransitionResult:
        """Restart a returned request at step 1, optionally amending its metadata"""
        self._require(actor_id, "actor_id")

        with self.storage.atomic():
            instance = self._load_for_update(tenant_id, instance_id, expected_version)
            loaded_version = instance.version
            self._authorize_requestor(instance, actor_id)
            self._require_awaiting_requestor(instance)
            limit = self.config.max_resubmits
            if limit is not None and instance.resubmit_count >= limit:
                raise PolicyLimitError("max_resubmits", limit)

            if changes:
                instance.metadata = merge_metadata(instance.metadata, changes)
            instance.resubmit_history.append(ResubmitRecord(
                resubmitted_by=actor_id,
                changes=changes,
                comments=comments,
                previous_rejection_count=len(instance.rejection_history),
                timestamp=_now()
            ))
            instance.resubmit_count += 1

            entry = self.ledger.append(
                tenant_id, instance.id, HistoryAction.RESUBMITTED, actor_id,
                comments=f"[RESUBMITTED] {comments}" if comments else "[RESUBMITTED] Request resubmitted after rejection",
                metadata={'resubmit_count': instance.resubmit_count, 'changes': changes or {}}
            )
            message = self._restart(instance)
            self._commit(instance, loaded_version)

        self._dispatch([message])
        self._log_transition(instance, actor_id, "request_resubmitted", None, None)
        return self._result(instance, None, instance.current_tier, False, entry)

    def appeal(self, tenant_id: str, instance_id: str, actor_id: str, appeal_reason: str,
               expected_version: Optional[int] = None) -> TransitionResult:
        """Contest the rejection: restart at step 1 unchanged, with a reason"""
        appeal_reason = self._require_reason(appeal_reason, field_name="appeal_reason")
        self._require(actor_id, "actor_id")

        with self.storage.atomic():
            instance = self._load_for_update(tenant_id, instance_id, expected_version)
            loaded_version = instance.version
            self._authorize_requestor(instance, actor_id)
            self._require_awaiting_requestor(instance)
            limit = self.config.max_appeals
            if limit is not None and instance.appeal_count >= limit:
                raise PolicyLimitError("max_appeals", limit)

            instance.appeal_history.append(AppealRecord(
                appealed_by=actor_id,
                appeal_reason=appeal_reason,
                previous_rejection_count=len(instance.rejection_history),
                timestamp=_now()
            ))
            instance.appeal_count += 1

            entry = self.ledger.append(
                tenant_id, instance.id, HistoryAction.RESUBMITTED, actor_id,
                comments=f"[APPEAL] {appeal_reason}",
                metadata={'appeal': True, 'appeal_count': instance.appeal_count}
            )
            message = self._restart(instance)
            self._commit(instance, loaded_version)

        self._dispatch([message])
        self._log_transition(instance, actor_id, "request_appealed", None, None)
        return self._result(instance, None, instance.current_tier, False, entry)

    def cancel(self, tenant_id: str, instance_id: str, actor_id: str, reason: Optional[str] = None,
               expected_version: Optional[int] = None) -> TransitionResult:
        """Requestor withdraws a non-terminal request"""
        self._require(actor_id, "actor_id")

        with self.storage.atomic():
            instance = self._load_for_update(tenant_id, instance_id, expected_version)
            loaded_version = instance.version
            self._authorize_requestor(instance, actor_id)
            if instance.is_terminal:
                raise self._conflict(instance, f"Cannot cancel a {instance.status.value} request")

            held_by_tier = instance.current_tier if instance.current_step_id else None
            entry = self.ledger.append(
                tenant_id, instance.id, HistoryAction.CANCELLED, actor_id,
                comments=f"[CANCELLED] {reason}" if reason else "[CANCELLED] Request cancelled by requestor",
                metadata={'previous_status': instance.status.value}
            )

            instance.status = WorkflowStatus.CANCELLED
            instance.cancellation_reason = reason
            instance.completed_at = _now()
            instance.current_step_id = None
            instance.assigned_approver_id = None
            instance.awaiting_requestor_action = False
            instance.awaiting_cascade_action = False
            instance.cascade_pending_tier = None
            instance.can_cascade_further = False

            messages = []
            if held_by_tier is not None:
                messages.append(self._notify_tier(instance, NotificationEvent.CANCELLED, held_by_tier,
                                                  f"{instance.template_name}: cancelled by requestor"))
            self._commit(instance, loaded_version)

        self._dispatch(messages)
        self._log_transition(instance, actor_id, "request_cancelled", None, None)
        return self._result(instance, None, None, False, entry)

    def available_actions(self, tenant_id: str, instance_id: str, actor_id: str) -> AvailableActions:
        """What the requestor can currently do with their request"""
        instance = self.get_instance(tenant_id, instance_id)
        if instance.started_by != actor_id:
            return AvailableActions(False, "Not the original requestor", [])

        if instance.status == WorkflowStatus.RETURNED and instance.awaiting_requestor_action:
            actions = [RequestorAction.CANCEL]
            if self.config.max_resubmits is None or instance.resubmit_count < self.config.max_resubmits:
                actions.insert(0, RequestorAction.RESUBMIT)
            if self.config.max_appeals is None or instance.appeal_count < self.config.max_appeals:
                actions.append(RequestorAction.APPEAL)
            return AvailableActions(True, "Awaiting requestor action", actions)

        if not instance.is_terminal:
            return AvailableActions(True, "Request is active", [RequestorAction.CANCEL])

        return AvailableActions(False, f"Request is {instance.status.value}", [])

    # Approver resolution

    def assigned_approvers(self, tenant_id: str, instance: WorkflowInstance,
                           step: Optional[WorkflowStep] = None,
                           on_date: Optional[datetime] = None) -> Dict[str, Optional[str]]:
        """
        Users allowed to act on a step, mapped to the primary they act for.

        Primaries map to None. A user acting through a delegation rule maps
        to the primary who delegated.
        """
        step = step or instance.current_step
        if step is None:
            return {}

        if instance.assigned_approver_id and step.id == instance.current_step_id:
            primaries = [instance.assigned_approver_id]
        elif step.approver_user_id:
            primaries = [step.approver_user_id]
        else:
            primaries = self.directory.users_with_role(tenant_id, step.approver_role)

        allowed: Dict[str, Optional[str]] = {user: None for user in primaries}
        if step.allow_delegation:
            for primary in primaries:
                rule = self.delegations.active_rule(tenant_id, primary, on_date,
                                                    instance.category.value, step.tier_level)
                if rule and rule.to_user_id not in allowed:
                    allowed[rule.to_user_id] = primary
        return allowed

    # Private helpers

    @staticmethod
    def _require(value: Optional[str], field_name: str) -> str:
        if not value or not str(value).strip():
            raise ValidationError(f"{field_name} is required", field=field_name)
        return value

    @staticmethod
    def _require_reason(reason: Optional[str], field_name: str = "reason") -> str:
        if reason is None or not reason.strip():
            raise ValidationError("A non-empty reason is required", field=field_name)
        return reason.strip()

    @staticmethod
    def _conflict(instance: WorkflowInstance, message: str) -> StateConflictError:
        return StateConflictError(instance.id, message, current_status=instance.status.value,
                                  current_version=instance.version)

    def _load_for_update(self, tenant_id: str, instance_id: str,
                         expected_version: Optional[int]) -> WorkflowInstance:
        instance = self.get_instance(tenant_id, instance_id)
        if expected_version is not None and instance.version != expected_version:
            raise self._conflict(
                instance, f"Instance is at version {instance.version}, expected {expected_version}"
            )
        return instance

    @staticmethod
    def _require_known_step(instance: WorkflowInstance, step_id: str) -> None:
        if not any(step.id == step_id for step in instance.steps):
            raise NotFoundError("Workflow step", step_id)

    def _require_current_step(self, instance: WorkflowInstance, step_id: str) -> WorkflowStep:
        self._require_known_step(instance, step_id)
        if step_id != instance.current_step_id:
            raise self._conflict(instance, f"Step {step_id} is not the current step")
        return instance.current_step

    def _require_open_step(self, instance: WorkflowInstance, step_id: str) -> WorkflowStep:
        self._require_known_step(instance, step_id)
        if instance.status not in OPEN_STATUSES:
            raise self._conflict(instance, f"Instance is {instance.status.value}, not open for approval")
        return self._require_current_step(instance, step_id)

    def _require_awaiting_requestor(self, instance: WorkflowInstance) -> None:
        if instance.status != WorkflowStatus.RETURNED or not instance.awaiting_requestor_action:
            raise self._conflict(instance, "This request is not awaiting requestor action")

    def _authorize_approver(self, instance: WorkflowInstance, step: WorkflowStep,
                            actor_id: str) -> Optional[str]:
        allowed = self.assigned_approvers(instance.tenant_id, instance, step)
        if actor_id not in allowed:
            raise AuthorizationError(actor_id, f"{actor_id} is not an approver for step {step.name}")
        return allowed[actor_id]

    @staticmethod
    def _authorize_requestor(instance: WorkflowInstance, actor_id: str) -> None:
        if instance.started_by != actor_id:
            raise AuthorizationError(actor_id, "Only the original requestor can perform this action")

    def _apply_rejection(self, instance: WorkflowInstance, step: WorkflowStep, tier: int,
                         target: CascadeTarget, actor_id: str, reason: str,
                         delegated_from: Optional[str],
                         cascade_from_tier: Optional[int]):
        is_cascade = cascade_from_tier is not None
        now = _now()
        destination = "REQUESTOR" if target.returned_to_requestor else f"TIER {target.target_tier}"
        label = "CASCADE" if is_cascade else "RETURNED"

        instance.rejection_history.append(RejectionHistoryEntry(
            tier_level=tier,
            rejected_by=actor_id,
            reason=reason,
            returned_to_tier=target.target_tier,
            returned_to_requestor=target.returned_to_requestor,
            previous_status=instance.status.value,
            step_id=step.id,
            is_cascade=is_cascade,
            cascade_from_tier=cascade_from_tier,
            round=instance.round,
            rejected_at=now
        ))
        instance.cascade_chain.append(CascadeChainEntry(
            from_tier=tier,
            to_tier=target.target_tier,
            rejected_by=actor_id,
            reason=reason,
            round=instance.round,
            timestamp=now
        ))

        entry = self.ledger.append(
            instance.tenant_id, instance.id, HistoryAction.REJECTED, actor_id,
            step_id=step.id, step_order=step.step_order, tier_level=tier,
            comments=f"[{label} FROM TIER {tier} TO {destination}] {reason}",
            delegated_from=delegated_from,
            metadata={
                'target_tier': target.target_tier,
                'returned_to_requestor': target.returned_to_requestor,
                'is_cascade': is_cascade,
                'round': instance.round
            }
        )

        instance.status = WorkflowStatus.RETURNED
        instance.returned_from_tier = tier
        instance.returned_at = now
        instance.returned_by = actor_id
        instance.rejection_reason = reason
        instance.assigned_approver_id = None
        instance.can_cascade_further = target.can_cascade_further

        if target.returned_to_requestor:
            instance.awaiting_requestor_action = True
            instance.awaiting_cascade_action = False
            instance.cascade_pending_tier = None
            instance.current_step_id = None
            instance.current_step_order = 0
            instance.current_tier = None
            message = self._notify_requestor(instance, NotificationEvent.RETURNED_TO_REQUESTOR,
                                             f"{instance.template_name}: returned to you ({reason})")
        else:
            target_step = instance.last_step_of_tier(target.target_tier)
            instance.awaiting_requestor_action = False
            instance.awaiting_cascade_action = True
            instance.cascade_pending_tier = target.target_tier
            instance.current_step_id = target_step.id
            instance.current_step_order = target_step.step_order
            instance.current_tier = target.target_tier
            message = self._notify_tier(instance, NotificationEvent.RETURNED_TO_TIER, target.target_tier,
                                        f"{instance.template_name}: returned from tier {tier} ({reason})")
        return entry, message

    def _restart(self, instance: WorkflowInstance) -> OutboxMessage:
        first = instance.step_at(1)
        instance.status = WorkflowStatus.PENDING
        instance.current_step_id = first.id
        instance.current_step_order = first.step_order
        instance.current_tier = first.tier_level
        instance.assigned_approver_id = None
        instance.awaiting_requestor_action = False
        instance.awaiting_cascade_action = False
        instance.cascade_pending_tier = None
        instance.can_cascade_further = False
        instance.returned_from_tier = None
        instance.returned_at = None
        instance.returned_by = None
        return self._notify_tier(instance, NotificationEvent.STEP_PENDING, first.tier_level,
                                 f"{instance.template_name}: resubmitted, awaiting tier {first.tier_level}")

    def _commit(self, instance: WorkflowInstance, loaded_version: int) -> None:
        instance.version = loaded_version + 1
        instance.updated_at = _now()
        if not self.storage.save_if_version(self.TABLE, instance.id, instance.to_dict(), loaded_version):
            raise StateConflictError(instance.id,
                                     f"Instance {instance.id} was modified concurrently",
                                     current_version=loaded_version)

    def _notify_tier(self, instance: WorkflowInstance, event: NotificationEvent, tier: int,
                     summary: str) -> OutboxMessage:
        return self.outbox.enqueue(instance.tenant_id, instance.id, event, instance.category.value,
                                   summary, target_tier=tier)

    def _notify_requestor(self, instance: WorkflowInstance, event: NotificationEvent,
                          summary: str) -> OutboxMessage:
        return self.outbox.enqueue(instance.tenant_id, instance.id, event, instance.category.value,
                                   summary, target_user_id=instance.started_by)

    def _dispatch(self, messages: List[OutboxMessage]) -> None:
        # The transition is already committed; undelivered messages stay for dispatch_pending
        for message in messages:
            try:
                self.outbox.dispatch(message.id)
            except WorkflowError:
                logger.exception("Dispatch of notification %s for instance %s failed",
                                 message.id, message.instance_id)

    def _log_transition(self, instance: WorkflowInstance, actor_id: str, action: str,
                        tier: Optional[int], delegated_from: Optional[str]) -> None:
        log_action(logger, "info", f"Workflow {instance.id} {action.replace('_', ' ')}",
                   user_id=actor_id, action=action,
                   resource=f"workflow_instance:{instance.id}", tenant_id=instance.tenant_id,
                   extra={
                       'status': instance.status.value,
                       'tier': tier,
                       'current_tier': instance.current_tier,
                       'version': instance.version,
                       'delegated_from': delegated_from
                   })

    @staticmethod
    def _result(instance: WorkflowInstance, tier: Optional[int], target_tier: Optional[int],
                returned_to_requestor: bool, entry: StepHistoryEntry) -> TransitionResult:
        return TransitionResult(
            instance_id=instance.id,
            status=instance.status,
            tier=tier,
            target_tier=target_tier,
            returned_to_requestor=returned_to_requestor,
            current_step_id=instance.current_step_id,
            current_step_order=instance.current_step_order,
            version=instance.version,
            ledger_entry_id=entry.id
        )

"""
Aggregation View Module

Read-only fan-in of everything waiting on someone: open engine instances
plus items from approval sources that predate or bypass the engine (legacy
purchase requests, PO tier approvals, ...). Also hosts the requestor-side
queries and workflow statistics.
"""

from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Iterable
from abc import ABC, abstractmethod
import logging

from .workflows import WorkflowEngine, WorkflowInstance, WorkflowStatus, Priority
from .templates import WorkflowCategory
from .cascade import validate_tier


logger = logging.getLogger("approval_engine.inbox")

ENGINE_SOURCE = "workflow_engine"
INBOX_STATUSES = (WorkflowStatus.PENDING, WorkflowStatus.IN_PROGRESS,
                  WorkflowStatus.RETURNED, WorkflowStatus.ESCALATED)


@dataclass
class InboxItem:
    """One row of the unified pending-approvals list"""
    instance_id: str
    source: str
    category: WorkflowCategory
    title: str
    status: str
    urgency: Priority
    requestor_id: str
    submitted_at: datetime
    current_step_order: int = 0
    total_steps: int = 0
    current_tier: Optional[int] = None
    approver_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'instance_id': self.instance_id,
            'source': self.source,
            'category': self.category.value,
            'title': self.title,
            'status': self.status,
            'urgency': self.urgency.value,
            'requestor_id': self.requestor_id,
            'submitted_at': self.submitted_at.isoformat(),
            'current_step_order': self.current_step_order,
            'total_steps': self.total_steps,
            'current_tier': self.current_tier,
            'approver_ids': list(self.approver_ids),
        }


class ApprovalSource(ABC):
    """A provider of approval items that live outside the engine"""

    name: str = "external"

    @abstractmethod
    def pending_items(self, tenant_id: str) -> List[InboxItem]:
        """Items currently waiting for a decision"""
        pass


@dataclass
class WorkflowStats:
    total_templates: int
    active_templates: int
    pending_instances: int
    avg_completion_hours: float
    approval_rate: float
    escalation_rate: float
    by_category: List[Dict[str, Any]]


class ApprovalInbox:
    """Unified pending-approval list and instance queries"""

    def __init__(self, engine: WorkflowEngine, sources: Optional[Iterable[ApprovalSource]] = None,
                 stale_return_hours: Optional[int] = None):
        self.engine = engine
        self.sources: List[ApprovalSource] = list(sources or [])
        self.stale_return_hours = (engine.config.stale_return_hours
                                   if stale_return_hours is None else stale_return_hours)

    def register_source(self, source: ApprovalSource) -> None:
        self.sources.append(source)

    def urgency(self, instance: WorkflowInstance, now: Optional[datetime] = None) -> Priority:
        """Instance priority raised for stale returns and escalations"""
        now = now or datetime.now(timezone.utc)
        urgency = instance.priority
        if (instance.status == WorkflowStatus.RETURNED and instance.awaiting_requestor_action
                and instance.returned_at is not None
                and now - instance.returned_at > timedelta(hours=self.stale_return_hours)):
            return Priority.URGENT
        if instance.status == WorkflowStatus.ESCALATED and urgency.rank < Priority.HIGH.rank:
            return Priority.HIGH
        return urgency

    def _item_for(self, tenant_id: str, instance: WorkflowInstance, now: datetime) -> InboxItem:
        approvers = self.engine.assigned_approvers(tenant_id, instance) if instance.current_step_id else {}
        return InboxItem(
            instance_id=instance.id,
            source=ENGINE_SOURCE,
            category=instance.category,
            title=instance.reference.title or instance.template_name,
            status=instance.status.value,
            urgency=self.urgency(instance, now),
            requestor_id=instance.started_by,
            submitted_at=instance.created_at,
            current_step_order=instance.current_step_order,
            total_steps=instance.total_steps,
            current_tier=instance.current_tier,
            approver_ids=sorted(approvers)
        )

    def pending_approvals(self, tenant_id: str, approver_id: Optional[str] = None,
                          categories: Optional[Iterable[WorkflowCategory]] = None) -> List[InboxItem]:
        """
        Merge open engine instances with source items.

        An instance id appears once; the engine's row wins over a source's.
        Sorted most urgent first, then oldest first.
        """
        now = datetime.now(timezone.utc)
        wanted = {WorkflowCategory(c) for c in categories} if categories else None

        items: Dict[str, InboxItem] = {}
        for status in INBOX_STATUSES:
            for instance in self.engine.list_instances(tenant_id, status=status):
                items[instance.id] = self._item_for(tenant_id, instance, now)

        for source in self.sources:
            for item in source.pending_items(tenant_id):
                if item.instance_id in items:
                    logger.debug("Skipping duplicate %s from source %s", item.instance_id, source.name)
                    continue
                items[item.instance_id] = item

        result = list(items.values())
        if wanted is not None:
            result = [item for item in result if item.category in wanted]
        if approver_id is not None:
            result = [item for item in result if approver_id in item.approver_ids]

        result.sort(key=lambda item: (-item.urgency.rank, item.submitted_at))
        return result

    def awaiting_requestor(self, tenant_id: str, requestor_id: str) -> List[WorkflowInstance]:
        """Returned requests the requestor must resubmit, appeal or cancel"""
        return [
            instance for instance in self.engine.list_instances(
                tenant_id, status=WorkflowStatus.RETURNED, started_by=requestor_id)
            if instance.awaiting_requestor_action
        ]

    def returned_to_tier(self, tenant_id: str, tier: int) -> List[WorkflowInstance]:
        """Returned requests waiting on a cascade decision at ``tier``"""
        validate_tier(tier)
        return [
            instance for instance in self.engine.list_instances(tenant_id, status=WorkflowStatus.RETURNED)
            if instance.awaiting_cascade_action and instance.cascade_pending_tier == tier
        ]

    def requestor_rejected_items(self, tenant_id: str, requestor_id: str) -> List[WorkflowInstance]:
        """A requestor's returned or rejected requests, most recently returned first"""
        instances = [
            instance for instance in self.engine.list_instances(tenant_id, started_by=requestor_id)
            if instance.status in (WorkflowStatus.RETURNED, WorkflowStatus.REJECTED)
        ]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(instances, key=lambda i: i.returned_at or epoch, reverse=True)

    def rejection_history(self, tenant_id: str, instance_id: str) -> Dict[str, List[Any]]:
        instance = self.engine.get_instance(tenant_id, instance_id)
        return {
            'rejection_history': list(instance.rejection_history),
            'cascade_chain': list(instance.cascade_chain),
            'resubmit_history': list(instance.resubmit_history),
            'appeal_history': list(instance.appeal_history),
        }

    def workflow_stats(self, tenant_id: str) -> WorkflowStats:
        templates = self.engine.templates.list_templates(tenant_id)
        instances = self.engine.list_instances(tenant_id)

        pending = [i for i in instances if i.status in (WorkflowStatus.PENDING,
                                                         WorkflowStatus.IN_PROGRESS,
                                                         WorkflowStatus.ESCALATED)]
        completed = [i for i in instances if i.status == WorkflowStatus.APPROVED and i.completed_at]
        avg_hours = 0.0
        if completed:
            total = sum((i.completed_at - i.created_at).total_seconds() / 3600 for i in completed)
            avg_hours = total / len(completed)

        approved = sum(1 for i in instances if i.status == WorkflowStatus.APPROVED)
        rejected = sum(1 for i in instances if i.status == WorkflowStatus.REJECTED)
        escalated = sum(1 for i in instances if i.status == WorkflowStatus.ESCALATED)
        decided = approved + rejected

        by_category = [
            {
                'category': category.value,
                'templates': sum(1 for t in templates if t.category == category),
                'pending': sum(1 for i in instances if i.category == category
                               and i.status in (WorkflowStatus.PENDING, WorkflowStatus.IN_PROGRESS)),
            }
            for category in WorkflowCategory
        ]

        return WorkflowStats(
            total_templates=len(templates),
            active_templates=sum(1 for t in templates if t.is_active),
            pending_instances=len(pending),
            avg_completion_hours=round(avg_hours, 1),
            approval_rate=round(approved / decided * 100, 1) if decided else 0.0,
            escalation_rate=round(escalated / len(instances) * 100, 1) if instances else 0.0,
            by_category=by_category
        )

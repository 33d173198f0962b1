"""
Pydantic schemas for API requests and responses
"""

from datetime import date
from typing import Dict, List, Optional, Any
from dataclasses import asdict
from pydantic import BaseModel, Field

from ..templates import WorkflowStep, WorkflowTemplate
from ..workflows import Reference, TransitionResult, AvailableActions
from ..ledger import StepHistoryEntry
from ..delegation import DelegationRule


class StepModel(BaseModel):
    step_order: int
    tier_level: int = Field(..., description="Approval tier, 1 (lowest) to 5")
    name: str
    approver_role: str
    approver_user_id: Optional[str] = None
    step_type: str = "approval"
    allow_delegation: bool = True
    timeout_days: Optional[int] = None

    def to_step(self) -> WorkflowStep:
        return WorkflowStep(
            step_order=self.step_order,
            tier_level=self.tier_level,
            name=self.name,
            approver_role=self.approver_role,
            approver_user_id=self.approver_user_id,
            step_type=self.step_type,
            allow_delegation=self.allow_delegation,
            timeout_days=self.timeout_days
        )


# Template schemas
class CreateTemplateRequest(BaseModel):
    name: str
    category: str
    steps: List[StepModel]
    description: str = ""
    is_default: bool = False


class ReviseTemplateRequest(BaseModel):
    steps: List[StepModel]
    name: Optional[str] = None
    description: Optional[str] = None


# Instance schemas
class ReferenceModel(BaseModel):
    reference_type: str = ""
    reference_id: str = ""
    title: str = ""

    def to_reference(self) -> Reference:
        return Reference(**self.model_dump())


class StartWorkflowRequest(BaseModel):
    template_id: str
    reference: Optional[ReferenceModel] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    priority: str = "medium"


class ApproveStepRequest(BaseModel):
    step_id: str
    comments: Optional[str] = None
    expected_version: Optional[int] = None


class RejectRequest(BaseModel):
    step_id: str
    tier: int
    reason: str
    expected_version: Optional[int] = None


class HardRejectRequest(BaseModel):
    step_id: str
    reason: str
    expected_version: Optional[int] = None


class DelegateStepRequest(BaseModel):
    step_id: str
    delegate_to: str
    comments: Optional[str] = None
    expected_version: Optional[int] = None


class ResubmitRequest(BaseModel):
    changes: Optional[Dict[str, Any]] = None
    comments: Optional[str] = None
    expected_version: Optional[int] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None
    expected_version: Optional[int] = None


class AppealRequest(BaseModel):
    appeal_reason: str
    expected_version: Optional[int] = None


# Delegation schemas
class CreateDelegationRequest(BaseModel):
    to_user_id: str
    start_date: date
    end_date: date
    from_user_id: Optional[str] = None  # defaults to the caller
    reason: str = ""
    categories: List[str] = Field(default_factory=list)
    max_tier_level: Optional[int] = None


class RevokeDelegationRequest(BaseModel):
    reason: Optional[str] = None


class CheckConflictsRequest(BaseModel):
    from_user_id: str
    start_date: date
    end_date: date
    exclude_rule_id: Optional[str] = None


# Approver directory schemas
class AssignRoleRequest(BaseModel):
    role: str


# Response helpers

def template_to_dict(template: WorkflowTemplate) -> Dict[str, Any]:
    return template.to_dict()


def transition_to_dict(result: TransitionResult) -> Dict[str, Any]:
    data = asdict(result)
    data['status'] = result.status.value
    return data


def history_to_dict(entry: StepHistoryEntry) -> Dict[str, Any]:
    return entry.to_dict()


def delegation_to_dict(rule: DelegationRule) -> Dict[str, Any]:
    data = rule.to_dict()
    data['status'] = rule.status_on().value
    return data


def actions_to_dict(actions: AvailableActions) -> Dict[str, Any]:
    return {
        "can_act": actions.can_act,
        "reason": actions.reason,
        "actions": [action.value for action in actions.actions]
    }

"""
Workflow instance endpoints: start, inspect and drive instances through
their tiers
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import (
    ApprovalSystem, get_approval_system, get_tenant_id, get_actor_id, http_error, API_ERRORS
)
from .schemas import (
    StartWorkflowRequest, ApproveStepRequest, RejectRequest, HardRejectRequest,
    DelegateStepRequest, ResubmitRequest, CancelRequest, AppealRequest,
    transition_to_dict, history_to_dict, actions_to_dict
)
from ..workflows import WorkflowStatus
from ..templates import WorkflowCategory


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def start_workflow(
    request: StartWorkflowRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Start a workflow instance from a template"""
    try:
        instance = system.engine.start_workflow(
            tenant_id,
            request.template_id,
            started_by=actor_id,
            reference=request.reference.to_reference() if request.reference else None,
            metadata=request.metadata,
            priority=request.priority
        )
    except API_ERRORS as e:
        raise http_error(e)

    return instance.to_dict()


@router.get("")
async def list_instances(
    status: Optional[str] = None,
    started_by: Optional[str] = None,
    category: Optional[str] = None,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    """List workflow instances"""
    try:
        instances = system.engine.list_instances(
            tenant_id,
            status=WorkflowStatus(status) if status else None,
            started_by=started_by,
            category=WorkflowCategory(category) if category else None
        )
    except API_ERRORS as e:
        raise http_error(e)

    return {"instances": [i.to_dict() for i in instances]}


@router.get("/{instance_id}")
async def get_instance(
    instance_id: str,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        return system.engine.get_instance(tenant_id, instance_id).to_dict()
    except API_ERRORS as e:
        raise http_error(e)


@router.get("/{instance_id}/history")
async def get_history(
    instance_id: str,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Ledger entries of an instance with the chain check"""
    try:
        entries = system.engine.get_history(tenant_id, instance_id)
        integrity = system.engine.verify_history(tenant_id, instance_id)
    except API_ERRORS as e:
        raise http_error(e)

    return {
        "history": [history_to_dict(entry) for entry in entries],
        "integrity": integrity
    }


@router.get("/{instance_id}/rejections")
async def get_rejection_history(
    instance_id: str,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        instance = system.engine.get_instance(tenant_id, instance_id)
    except API_ERRORS as e:
        raise http_error(e)

    data = instance.to_dict()
    return {
        key: data[key]
        for key in ("rejection_history", "cascade_chain", "resubmit_history", "appeal_history")
    }


@router.get("/{instance_id}/actions")
async def get_available_actions(
    instance_id: str,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    """What the caller, as requestor, can do with the instance"""
    try:
        return actions_to_dict(system.engine.available_actions(tenant_id, instance_id, actor_id))
    except API_ERRORS as e:
        raise http_error(e)


@router.post("/{instance_id}/approve")
async def approve_step(
    instance_id: str,
    request: ApproveStepRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        result = system.engine.approve_step(
            tenant_id, instance_id, request.step_id, actor_id,
            comments=request.comments, expected_version=request.expected_version
        )
    except API_ERRORS as e:
        raise http_error(e)

    return transition_to_dict(result)


@router.post("/{instance_id}/reject")
async def reject(
    instance_id: str,
    request: RejectRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Reject at a tier; routed to an initial rejection or a cascade hop"""
    try:
        result = system.engine.reject(
            tenant_id, instance_id, request.step_id, request.tier, actor_id,
            request.reason, expected_version=request.expected_version
        )
    except API_ERRORS as e:
        raise http_error(e)

    return transition_to_dict(result)


@router.post("/{instance_id}/cascade")
async def cascade_rejection(
    instance_id: str,
    request: RejectRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        result = system.engine.cascade_rejection(
            tenant_id, instance_id, request.step_id, request.tier, actor_id,
            request.reason, expected_version=request.expected_version
        )
    except API_ERRORS as e:
        raise http_error(e)

    return transition_to_dict(result)


@router.post("/{instance_id}/hard-reject")
async def hard_reject(
    instance_id: str,
    request: HardRejectRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        result = system.engine.hard_reject(
            tenant_id, instance_id, request.step_id, actor_id, request.reason,
            expected_version=request.expected_version
        )
    except API_ERRORS as e:
        raise http_error(e)

    return transition_to_dict(result)


@router.post("/{instance_id}/delegate")
async def delegate_step(
    instance_id: str,
    request: DelegateStepRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        result = system.engine.delegate_step(
            tenant_id, instance_id, request.step_id, actor_id, request.delegate_to,
            comments=request.comments, expected_version=request.expected_version
        )
    except API_ERRORS as e:
        raise http_error(e)

    return transition_to_dict(result)


@router.post("/{instance_id}/resubmit")
async def resubmit(
    instance_id: str,
    request: ResubmitRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        result = system.engine.resubmit(
            tenant_id, instance_id, actor_id, changes=request.changes,
            comments=request.comments, expected_version=request.expected_version
        )
    except API_ERRORS as e:
        raise http_error(e)

    return transition_to_dict(result)


@router.post("/{instance_id}/cancel")
async def cancel(
    instance_id: str,
    request: CancelRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        result = system.engine.cancel(
            tenant_id, instance_id, actor_id, reason=request.reason,
            expected_version=request.expected_version
        )
    except API_ERRORS as e:
        raise http_error(e)

    return transition_to_dict(result)


@router.post("/{instance_id}/appeal")
async def appeal(
    instance_id: str,
    request: AppealRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        result = system.engine.appeal(
            tenant_id, instance_id, actor_id, request.appeal_reason,
            expected_version=request.expected_version
        )
    except API_ERRORS as e:
        raise http_error(e)

    return transition_to_dict(result)

"""
Pending-approval inbox and statistics endpoints
"""

from dataclasses import asdict
from typing import List, Optional
from fastapi import APIRouter, Depends, Query

from .dependencies import (
    ApprovalSystem, get_approval_system, get_tenant_id, get_actor_id, http_error, API_ERRORS
)
from ..templates import WorkflowCategory


router = APIRouter()


@router.get("/pending")
async def pending_approvals(
    approver_id: Optional[str] = None,
    category: Optional[List[str]] = Query(None),
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Everything waiting on an approver, most urgent first"""
    try:
        items = system.inbox.pending_approvals(
            tenant_id,
            approver_id=approver_id,
            categories=[WorkflowCategory(c) for c in category] if category else None
        )
    except API_ERRORS as e:
        raise http_error(e)

    return {"items": [item.to_dict() for item in items], "count": len(items)}


@router.get("/awaiting-requestor")
async def awaiting_requestor(
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    """The caller's returned requests needing a resubmit, appeal or cancel"""
    try:
        instances = system.inbox.awaiting_requestor(tenant_id, actor_id)
    except API_ERRORS as e:
        raise http_error(e)

    return {"instances": [i.to_dict() for i in instances]}


@router.get("/returned-to-tier/{tier}")
async def returned_to_tier(
    tier: int,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        instances = system.inbox.returned_to_tier(tenant_id, tier)
    except API_ERRORS as e:
        raise http_error(e)

    return {"instances": [i.to_dict() for i in instances]}


@router.get("/rejected-items")
async def rejected_items(
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        instances = system.inbox.requestor_rejected_items(tenant_id, actor_id)
    except API_ERRORS as e:
        raise http_error(e)

    return {"instances": [i.to_dict() for i in instances]}


@router.get("/stats")
async def workflow_stats(
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        return asdict(system.inbox.workflow_stats(tenant_id))
    except API_ERRORS as e:
        raise http_error(e)

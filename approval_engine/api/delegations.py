"""
Delegation rule endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import (
    ApprovalSystem, get_approval_system, get_tenant_id, get_actor_id, http_error, API_ERRORS
)
from .schemas import (
    CreateDelegationRequest, RevokeDelegationRequest, CheckConflictsRequest, delegation_to_dict
)
from ..delegation import DelegationStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_delegation(
    request: CreateDelegationRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Create a delegation rule; overlapping rules are reported back"""
    from_user_id = request.from_user_id or actor_id
    try:
        conflicts = system.delegations.check_conflicts(
            tenant_id, from_user_id, request.start_date, request.end_date
        )
        rule = system.delegations.create_rule(
            tenant_id,
            from_user_id=from_user_id,
            to_user_id=request.to_user_id,
            start_date=request.start_date,
            end_date=request.end_date,
            reason=request.reason,
            categories=request.categories,
            max_tier_level=request.max_tier_level,
            created_by=actor_id
        )
    except API_ERRORS as e:
        raise http_error(e)

    data = delegation_to_dict(rule)
    data["conflicts"] = [r.id for r in conflicts]
    return data


@router.get("")
async def list_delegations(
    from_user_id: Optional[str] = None,
    to_user_id: Optional[str] = None,
    status: Optional[str] = None,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        rules = system.delegations.list_rules(
            tenant_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            status=DelegationStatus(status) if status else None
        )
    except API_ERRORS as e:
        raise http_error(e)

    return {"delegations": [delegation_to_dict(r) for r in rules]}


@router.post("/check-conflicts")
async def check_conflicts(
    request: CheckConflictsRequest,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        conflicts = system.delegations.check_conflicts(
            tenant_id, request.from_user_id, request.start_date, request.end_date,
            exclude_rule_id=request.exclude_rule_id
        )
    except API_ERRORS as e:
        raise http_error(e)

    return {
        "has_conflict": bool(conflicts),
        "conflicts": [delegation_to_dict(r) for r in conflicts]
    }


@router.post("/expire")
async def expire_delegations(
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Deactivate rules whose end date has passed"""
    try:
        expired = system.delegations.expire_rules(tenant_id)
    except API_ERRORS as e:
        raise http_error(e)

    return {"expired": expired}


@router.get("/users/{user_id}")
async def get_user_delegations(
    user_id: str,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Active rules a user acts under and has handed out"""
    try:
        rules = system.delegations.delegations_for_user(tenant_id, user_id)
    except API_ERRORS as e:
        raise http_error(e)

    return {key: [delegation_to_dict(r) for r in value] for key, value in rules.items()}


@router.get("/{rule_id}")
async def get_delegation(
    rule_id: str,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        return delegation_to_dict(system.delegations.get_rule(tenant_id, rule_id))
    except API_ERRORS as e:
        raise http_error(e)


@router.post("/{rule_id}/revoke")
async def revoke_delegation(
    rule_id: str,
    request: RevokeDelegationRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        rule = system.delegations.revoke_rule(tenant_id, rule_id, actor_id, reason=request.reason)
    except API_ERRORS as e:
        raise http_error(e)

    return delegation_to_dict(rule)

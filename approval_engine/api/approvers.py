"""
Approver role directory endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import (
    ApprovalSystem, get_approval_system, get_tenant_id, http_error, API_ERRORS
)
from .schemas import AssignRoleRequest


router = APIRouter()


@router.get("")
async def list_assignments(
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    return {"assignments": system.directory.list_assignments(tenant_id)}


@router.post("/{user_id}/roles")
async def assign_role(
    user_id: str,
    request: AssignRoleRequest,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        added = system.directory.assign_role(tenant_id, user_id, request.role)
    except API_ERRORS as e:
        raise http_error(e)

    return {"user_id": user_id, "role": request.role, "assigned": added,
            "roles": system.directory.roles_for(tenant_id, user_id)}


@router.delete("/{user_id}/roles/{role}")
async def remove_role(
    user_id: str,
    role: str,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    removed = system.directory.remove_role(tenant_id, user_id, role)
    return {"user_id": user_id, "role": role, "removed": removed,
            "roles": system.directory.roles_for(tenant_id, user_id)}


@router.get("/{user_id}/roles")
async def get_roles(
    user_id: str,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    return {"user_id": user_id, "roles": system.directory.roles_for(tenant_id, user_id)}

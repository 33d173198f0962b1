"""
Workflow template endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import (
    ApprovalSystem, get_approval_system, get_tenant_id, get_actor_id, http_error, API_ERRORS
)
from .schemas import CreateTemplateRequest, ReviseTemplateRequest, template_to_dict
from ..templates import WorkflowCategory


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_template(
    request: CreateTemplateRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Create a new workflow template"""
    try:
        template = system.templates.create_template(
            tenant_id=tenant_id,
            name=request.name,
            category=WorkflowCategory(request.category),
            steps=[step.to_step() for step in request.steps],
            description=request.description,
            is_default=request.is_default,
            created_by=actor_id
        )
    except API_ERRORS as e:
        raise http_error(e)

    return template_to_dict(template)


@router.get("")
async def list_templates(
    category: Optional[str] = None,
    active_only: bool = False,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    """List workflow templates"""
    try:
        templates = system.templates.list_templates(
            tenant_id, WorkflowCategory(category) if category else None, active_only
        )
    except API_ERRORS as e:
        raise http_error(e)

    return {"templates": [template_to_dict(t) for t in templates]}


@router.get("/default/{category}")
async def get_default_template(
    category: str,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Get the default template for a category"""
    try:
        template = system.templates.get_default(tenant_id, WorkflowCategory(category))
    except API_ERRORS as e:
        raise http_error(e)

    if not template:
        raise HTTPException(status_code=404, detail="No default template for this category")
    return template_to_dict(template)


@router.get("/{template_id}")
async def get_template(
    template_id: str,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Get template by ID"""
    try:
        return template_to_dict(system.templates.get_template(tenant_id, template_id))
    except API_ERRORS as e:
        raise http_error(e)


@router.post("/{template_id}/activate")
async def activate_template(
    template_id: str,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        return template_to_dict(system.templates.activate_template(tenant_id, template_id))
    except API_ERRORS as e:
        raise http_error(e)


@router.post("/{template_id}/deactivate")
async def deactivate_template(
    template_id: str,
    tenant_id: str = Depends(get_tenant_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    try:
        return template_to_dict(system.templates.deactivate_template(tenant_id, template_id))
    except API_ERRORS as e:
        raise http_error(e)


@router.post("/{template_id}/revise", status_code=status.HTTP_201_CREATED)
async def revise_template(
    template_id: str,
    request: ReviseTemplateRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str = Depends(get_actor_id),
    system: ApprovalSystem = Depends(get_approval_system)
):
    """Create the next version of a template"""
    try:
        revision = system.templates.revise_template(
            tenant_id, template_id,
            steps=[step.to_step() for step in request.steps],
            revised_by=actor_id,
            name=request.name,
            description=request.description
        )
    except API_ERRORS as e:
        raise http_error(e)

    return template_to_dict(revision)

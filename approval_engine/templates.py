"""
Template Catalog Module

Workflow templates: ordered chains of approval steps, each bound to a tier.
Templates are versioned; revising one creates a new version and retires the
old so running instances keep the snapshot they started with.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid
import logging

from .storage import StorageInterface, StorageRecord
from .cascade import MIN_TIER, MAX_TIER
from .errors import ValidationError, NotFoundError


logger = logging.getLogger("approval_engine.templates")


class WorkflowCategory(Enum):
    """Kinds of requests routed through approval workflows"""
    PURCHASE = "purchase"
    TIME_OFF = "time_off"
    PERMIT = "permit"
    EXPENSE = "expense"
    CONTRACT = "contract"
    CUSTOM = "custom"


class StepType(Enum):
    """Types of workflow steps"""
    APPROVAL = "approval"
    REVIEW = "review"
    NOTIFICATION = "notification"
    CONDITION = "condition"
    PARALLEL = "parallel"


@dataclass
class WorkflowStep:
    """A single step of a template"""
    step_order: int
    tier_level: int
    name: str
    approver_role: str
    approver_user_id: Optional[str] = None
    step_type: StepType = StepType.APPROVAL
    allow_delegation: bool = True
    timeout_days: Optional[int] = None
    id: str = ""

    def __post_init__(self):
        if not self.id:
            self.id = str(uuid.uuid4())
        if isinstance(self.step_type, str):
            self.step_type = StepType(self.step_type)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['step_type'] = self.step_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowStep':
        return cls(**data)


@dataclass
class WorkflowTemplate(StorageRecord):
    """Versioned workflow template"""
    tenant_id: str
    name: str
    category: WorkflowCategory
    steps: List[WorkflowStep]
    description: str = ""
    version: int = 1
    is_active: bool = True
    is_default: bool = False
    created_by: str = ""
    previous_version_id: Optional[str] = None

    @property
    def step_count(self) -> int:
        return len(self.steps)

    @property
    def tiers(self) -> List[int]:
        return sorted({step.tier_level for step in self.steps})

    def first_step(self) -> WorkflowStep:
        return self.step_at(1)

    def step_at(self, step_order: int) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.step_order == step_order:
                return step
        return None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['category'] = self.category.value
        result['steps'] = [step.to_dict() for step in self.steps]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowTemplate':
        data = dict(data)
        data['category'] = WorkflowCategory(data['category'])
        data['steps'] = [WorkflowStep.from_dict(step) for step in data.get('steps', [])]
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


def validate_steps(steps: List[WorkflowStep], max_tier: int = MAX_TIER) -> None:
    """
    Validate a step chain.

    Steps must be numbered 1..n without gaps, every tier must lie in
    1..max_tier, tiers must not decrease along the chain and the tiers used
    must form a contiguous range starting at 1 so every cascade target exists.
    """
    if not steps:
        raise ValidationError("Workflow must have at least one step", field="steps")

    step_orders = [step.step_order for step in steps]
    if len(set(step_orders)) != len(step_orders):
        raise ValidationError("Step orders must be unique", field="steps")

    if min(step_orders) != 1:
        raise ValidationError("First step must be numbered 1", field="steps")

    for i, num in enumerate(sorted(step_orders)):
        if num != i + 1:
            raise ValidationError("Step orders must be consecutive", field="steps")

    ordered = sorted(steps, key=lambda s: s.step_order)
    for step in ordered:
        if isinstance(step.tier_level, bool) or not MIN_TIER <= step.tier_level <= max_tier:
            raise ValidationError(
                f"Step {step.step_order} tier must be between {MIN_TIER} and {max_tier}",
                field="tier_level"
            )
        if not step.name or not step.name.strip():
            raise ValidationError(f"Step {step.step_order} must have a name", field="name")

    for previous, current in zip(ordered, ordered[1:]):
        if current.tier_level < previous.tier_level:
            raise ValidationError("Tier levels must not decrease along the step order",
                                  field="tier_level")

    tiers = sorted({step.tier_level for step in ordered})
    if tiers != list(range(1, len(tiers) + 1)):
        raise ValidationError("Tiers must be contiguous starting at tier 1", field="tier_level")


class TemplateCatalog:
    """Storage-backed catalog of workflow templates"""

    TABLE = "workflow_templates"

    def __init__(self, storage: StorageInterface, max_tier: int = MAX_TIER):
        self.storage = storage
        self.max_tier = max_tier

    def create_template(
        self,
        tenant_id: str,
        name: str,
        category: WorkflowCategory,
        steps: List[WorkflowStep],
        description: str = "",
        is_default: bool = False,
        created_by: str = ""
    ) -> WorkflowTemplate:
        """Validate and store a new template (version 1)"""
        if not name or not name.strip():
            raise ValidationError("Template name is required", field="name")
        if isinstance(category, str):
            category = WorkflowCategory(category)
        validate_steps(steps, self.max_tier)

        now = datetime.now(timezone.utc)
        template = WorkflowTemplate(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            name=name.strip(),
            category=category,
            steps=sorted(steps, key=lambda s: s.step_order),
            description=description,
            is_default=is_default,
            created_by=created_by
        )

        with self.storage.atomic():
            if is_default:
                self._clear_default(tenant_id, category)
            self.storage.insert(self.TABLE, template.id, template.to_dict())

        logger.info("Created template %s (%s) for tenant %s", template.id, template.name, tenant_id)
        return template

    def get_template(self, tenant_id: str, template_id: str) -> WorkflowTemplate:
        """Get a template owned by ``tenant_id`` or raise NotFoundError"""
        data = self.storage.load(self.TABLE, template_id)
        if not data or data.get('tenant_id') != tenant_id:
            raise NotFoundError("Template", template_id)
        return WorkflowTemplate.from_dict(data)

    def list_templates(
        self,
        tenant_id: str,
        category: Optional[WorkflowCategory] = None,
        active_only: bool = False
    ) -> List[WorkflowTemplate]:
        """List a tenant's templates, optionally filtered"""
        filters: Dict[str, Any] = {'tenant_id': tenant_id}
        if category is not None:
            filters['category'] = WorkflowCategory(category).value
        if active_only:
            filters['is_active'] = True

        templates = [WorkflowTemplate.from_dict(data) for data in self.storage.find(self.TABLE, filters)]
        return sorted(templates, key=lambda t: (t.name, t.version))

    def get_default(self, tenant_id: str, category: WorkflowCategory) -> Optional[WorkflowTemplate]:
        """Active default template for a category, if any"""
        for template in self.list_templates(tenant_id, category, active_only=True):
            if template.is_default:
                return template
        return None

    def activate_template(self, tenant_id: str, template_id: str) -> WorkflowTemplate:
        return self._set_active(tenant_id, template_id, True)

    def deactivate_template(self, tenant_id: str, template_id: str) -> WorkflowTemplate:
        return self._set_active(tenant_id, template_id, False)

    def revise_template(
        self,
        tenant_id: str,
        template_id: str,
        steps: List[WorkflowStep],
        revised_by: str = "",
        name: Optional[str] = None,
        description: Optional[str] = None
    ) -> WorkflowTemplate:
        """
        Create the next version of a template.

        The new version takes over the default flag and the old version is
        deactivated. Instances started from the old version are unaffected.
        """
        validate_steps(steps, self.max_tier)

        with self.storage.atomic():
            current = self.get_template(tenant_id, template_id)
            now = datetime.now(timezone.utc)
            revision = WorkflowTemplate(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                tenant_id=tenant_id,
                name=name.strip() if name else current.name,
                category=current.category,
                steps=sorted(steps, key=lambda s: s.step_order),
                description=current.description if description is None else description,
                version=current.version + 1,
                is_active=True,
                is_default=current.is_default,
                created_by=revised_by or current.created_by,
                previous_version_id=current.id
            )

            current.is_active = False
            current.is_default = False
            current.updated_at = now
            self.storage.save(self.TABLE, current.id, current.to_dict())
            self.storage.insert(self.TABLE, revision.id, revision.to_dict())

        logger.info("Revised template %s to version %d (%s)", current.id, revision.version, revision.id)
        return revision

    def _set_active(self, tenant_id: str, template_id: str, active: bool) -> WorkflowTemplate:
        with self.storage.atomic():
            template = self.get_template(tenant_id, template_id)
            template.is_active = active
            template.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.TABLE, template.id, template.to_dict())
        logger.info("Template %s %s", template_id, "activated" if active else "deactivated")
        return template

    def _clear_default(self, tenant_id: str, category: WorkflowCategory) -> None:
        for data in self.storage.find(self.TABLE, {'tenant_id': tenant_id,
                                                   'category': category.value,
                                                   'is_default': True}):
            data['is_default'] = False
            self.storage.save(self.TABLE, data['id'], data)

"""
Category Metadata Module

Typed request details per workflow category. Stored as a plain dict with a
``kind`` tag; converted to and from these dataclasses at the store boundary.
Keys a category does not know are kept in ``extra``.
"""

from dataclasses import dataclass, field, fields, asdict
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Any, Union

from .templates import WorkflowCategory
from .errors import ValidationError


@dataclass
class PurchaseMetadata:
    amount: Optional[Decimal] = None
    currency: str = "USD"
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    department: Optional[str] = None
    cost_center: Optional[str] = None
    justification: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TimeOffMetadata:
    time_off_type: str = "vacation"
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    hours: Optional[Decimal] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PermitMetadata:
    permit_type: Optional[str] = None
    location: Optional[str] = None
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None
    hazards: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExpenseMetadata:
    amount: Optional[Decimal] = None
    currency: str = "USD"
    expense_type: Optional[str] = None
    incurred_on: Optional[date] = None
    receipt_count: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ContractMetadata:
    counterparty: Optional[str] = None
    contract_value: Optional[Decimal] = None
    currency: str = "USD"
    term_months: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CustomMetadata:
    extra: Dict[str, Any] = field(default_factory=dict)


CategoryMetadata = Union[PurchaseMetadata, TimeOffMetadata, PermitMetadata,
                         ExpenseMetadata, ContractMetadata, CustomMetadata]

METADATA_TYPES = {
    WorkflowCategory.PURCHASE: PurchaseMetadata,
    WorkflowCategory.TIME_OFF: TimeOffMetadata,
    WorkflowCategory.PERMIT: PermitMetadata,
    WorkflowCategory.EXPENSE: ExpenseMetadata,
    WorkflowCategory.CONTRACT: ContractMetadata,
    WorkflowCategory.CUSTOM: CustomMetadata,
}

DECIMAL_FIELDS = {'amount', 'hours', 'contract_value'}
DATE_FIELDS = {'start_date', 'end_date', 'valid_from', 'valid_to', 'incurred_on'}


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    try:
        if name in DECIMAL_FIELDS:
            value = Decimal(str(value))
        elif name in DATE_FIELDS and not isinstance(value, date):
            value = date.fromisoformat(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid value for {name}: {value!r}", field=name) from e

    if name in DECIMAL_FIELDS and value < 0:
        raise ValidationError(f"{name} cannot be negative", field=name)
    return value


def metadata_from_dict(category: WorkflowCategory, data: Optional[Dict[str, Any]]) -> CategoryMetadata:
    """Build the category's metadata object from a plain dict"""
    cls = METADATA_TYPES[WorkflowCategory(category)]
    data = dict(data or {})
    data.pop('kind', None)

    known = {f.name for f in fields(cls)} - {'extra'}
    extra = dict(data.pop('extra', None) or {})
    kwargs = {}
    for key, value in data.items():
        if key in known:
            kwargs[key] = _coerce(key, value)
        else:
            extra[key] = value

    return cls(extra=extra, **kwargs)


def metadata_to_dict(metadata: CategoryMetadata) -> Dict[str, Any]:
    """Flatten metadata into a JSON-ready dict tagged with its category"""
    kind = next(cat for cat, cls in METADATA_TYPES.items() if isinstance(metadata, cls))
    result = {'kind': kind.value}
    for key, value in asdict(metadata).items():
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, date):
            value = value.isoformat()
        result[key] = value
    return result


def merge_metadata(metadata: CategoryMetadata, changes: Optional[Dict[str, Any]]) -> CategoryMetadata:
    """Return a copy of ``metadata`` with ``changes`` applied on top"""
    if not changes:
        return metadata
    kind = WorkflowCategory(metadata_to_dict(metadata)['kind'])
    current = metadata_to_dict(metadata)
    extra = dict(current.pop('extra'))
    current.update(extra)
    current.update(changes)
    return metadata_from_dict(kind, current)

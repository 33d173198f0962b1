"""
Delegation Resolver Module

Time-boxed delegation of approval authority from one user to another.
A rule applies on a given date when it is active, not revoked and the date
falls inside its window (the end date counts through 23:59:59 UTC).
Rules can be limited to some categories and to a maximum tier.
"""

from datetime import datetime, timezone, date, time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Union
from enum import Enum
import threading
import uuid
import logging

from .storage import StorageInterface, StorageRecord
from .cascade import validate_tier
from .errors import ValidationError, NotFoundError
from .logging_config import log_action


logger = logging.getLogger("approval_engine.delegation")


class DelegationStatus(Enum):
    """Computed lifecycle status of a delegation rule"""
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


def _as_datetime(moment: Optional[Union[datetime, date]]) -> datetime:
    if moment is None:
        return datetime.now(timezone.utc)
    if isinstance(moment, datetime):
        return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)
    return datetime.combine(moment, time(12, 0), tzinfo=timezone.utc)


@dataclass
class DelegationRule(StorageRecord):
    """Delegation of approval authority for a date window"""
    tenant_id: str
    from_user_id: str
    to_user_id: str
    start_date: date
    end_date: date
    is_active: bool = True
    reason: str = ""
    categories: List[str] = field(default_factory=list)  # empty = all categories
    max_tier_level: Optional[int] = None
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None
    created_by: str = ""

    @property
    def window_start(self) -> datetime:
        return datetime.combine(self.start_date, time.min, tzinfo=timezone.utc)

    @property
    def window_end(self) -> datetime:
        return datetime.combine(self.end_date, time.max, tzinfo=timezone.utc)

    def status_on(self, moment: Optional[Union[datetime, date]] = None) -> DelegationStatus:
        if self.revoked_at:
            return DelegationStatus.REVOKED
        moment = _as_datetime(moment)
        if moment < self.window_start:
            return DelegationStatus.SCHEDULED
        if moment > self.window_end or not self.is_active:
            return DelegationStatus.EXPIRED
        return DelegationStatus.ACTIVE

    def admits(self, category: Optional[str] = None, tier: Optional[int] = None) -> bool:
        """Whether the rule's limits allow acting on a request of this category and tier"""
        if category is not None and self.categories and category not in self.categories:
            return False
        if tier is not None and self.max_tier_level is not None and tier > self.max_tier_level:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['start_date'] = self.start_date.isoformat()
        result['end_date'] = self.end_date.isoformat()
        result['revoked_at'] = self.revoked_at.isoformat() if self.revoked_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DelegationRule':
        data = dict(data)
        data['start_date'] = date.fromisoformat(data['start_date'])
        data['end_date'] = date.fromisoformat(data['end_date'])
        if data.get('revoked_at'):
            data['revoked_at'] = datetime.fromisoformat(data['revoked_at'])
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


class DelegationManager:
    """Storage-backed delegation rules and approver resolution"""

    TABLE = "delegation_rules"

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self._lock = threading.Lock()
        self.conflict_count = 0

    def create_rule(
        self,
        tenant_id: str,
        from_user_id: str,
        to_user_id: str,
        start_date: date,
        end_date: date,
        reason: str = "",
        categories: Optional[List[str]] = None,
        max_tier_level: Optional[int] = None,
        created_by: str = ""
    ) -> DelegationRule:
        """Create a delegation rule; overlapping rules are allowed but logged"""
        if not from_user_id or not to_user_id:
            raise ValidationError("Both delegating and receiving users are required", field="to_user_id")
        if from_user_id == to_user_id:
            raise ValidationError("Cannot delegate to yourself", field="to_user_id")
        if end_date < start_date:
            raise ValidationError("End date must not be before start date", field="end_date")
        if max_tier_level is not None:
            validate_tier(max_tier_level)

        conflicts = self.check_conflicts(tenant_id, from_user_id, start_date, end_date)
        if conflicts:
            logger.warning("Delegation for %s overlaps %d existing rule(s): %s",
                           from_user_id, len(conflicts), [r.id for r in conflicts])

        now = datetime.now(timezone.utc)
        rule = DelegationRule(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            start_date=start_date,
            end_date=end_date,
            reason=reason,
            categories=[c.value if isinstance(c, Enum) else c for c in (categories or [])],
            max_tier_level=max_tier_level,
            created_by=created_by or from_user_id
        )
        self.storage.insert(self.TABLE, rule.id, rule.to_dict())

        log_action(logger, "info", f"Delegation {from_user_id} -> {to_user_id} created",
                   user_id=rule.created_by, action="delegation_created",
                   resource=f"delegation:{rule.id}", tenant_id=tenant_id)
        return rule

    def get_rule(self, tenant_id: str, rule_id: str) -> DelegationRule:
        data = self.storage.load(self.TABLE, rule_id)
        if not data or data.get('tenant_id') != tenant_id:
            raise NotFoundError("Delegation rule", rule_id)
        return DelegationRule.from_dict(data)

    def revoke_rule(self, tenant_id: str, rule_id: str, revoked_by: str,
                    reason: Optional[str] = None) -> DelegationRule:
        """Revoke a rule immediately"""
        with self.storage.atomic():
            rule = self.get_rule(tenant_id, rule_id)
            if rule.revoked_at:
                raise ValidationError(f"Delegation rule {rule_id} is already revoked")

            now = datetime.now(timezone.utc)
            rule.revoked_at = now
            rule.revoke_reason = reason
            rule.is_active = False
            rule.updated_at = now
            self.storage.save(self.TABLE, rule.id, rule.to_dict())

        log_action(logger, "info", f"Delegation {rule_id} revoked",
                   user_id=revoked_by, action="delegation_revoked",
                   resource=f"delegation:{rule_id}", tenant_id=tenant_id)
        return rule

    def list_rules(
        self,
        tenant_id: str,
        from_user_id: Optional[str] = None,
        to_user_id: Optional[str] = None,
        status: Optional[DelegationStatus] = None,
        on: Optional[Union[datetime, date]] = None
    ) -> List[DelegationRule]:
        filters: Dict[str, Any] = {'tenant_id': tenant_id}
        if from_user_id:
            filters['from_user_id'] = from_user_id
        if to_user_id:
            filters['to_user_id'] = to_user_id

        rules = [DelegationRule.from_dict(data) for data in self.storage.find(self.TABLE, filters)]
        if status is not None:
            rules = [r for r in rules if r.status_on(on) == status]
        return sorted(rules, key=lambda r: r.created_at, reverse=True)

    def check_conflicts(
        self,
        tenant_id: str,
        from_user_id: str,
        start_date: date,
        end_date: date,
        exclude_rule_id: Optional[str] = None
    ) -> List[DelegationRule]:
        """Live rules of the same user whose window overlaps the given one"""
        conflicts = []
        for rule in self.list_rules(tenant_id, from_user_id=from_user_id):
            if rule.id == exclude_rule_id:
                continue
            if rule.status_on() in (DelegationStatus.REVOKED, DelegationStatus.EXPIRED):
                continue
            if start_date <= rule.end_date and end_date >= rule.start_date:
                conflicts.append(rule)
        return conflicts

    def expire_rules(self, tenant_id: str, now: Optional[datetime] = None) -> int:
        """Deactivate rules whose window has passed; returns how many changed"""
        moment = _as_datetime(now)
        expired = 0
        with self.storage.atomic():
            for rule in self.list_rules(tenant_id):
                if rule.is_active and not rule.revoked_at and moment > rule.window_end:
                    rule.is_active = False
                    rule.updated_at = datetime.now(timezone.utc)
                    self.storage.save(self.TABLE, rule.id, rule.to_dict())
                    expired += 1
        if expired:
            logger.info("Auto-expired %d delegation rule(s) for tenant %s", expired, tenant_id)
        return expired

    def delegations_for_user(self, tenant_id: str, user_id: str,
                             on: Optional[Union[datetime, date]] = None) -> Dict[str, List[DelegationRule]]:
        """
        Active rules touching a user.

        ``acting_for`` holds rules delegating to the user, ``delegated_away``
        the user's own outgoing rules.
        """
        return {
            'acting_for': self.list_rules(tenant_id, to_user_id=user_id,
                                          status=DelegationStatus.ACTIVE, on=on),
            'delegated_away': self.list_rules(tenant_id, from_user_id=user_id,
                                              status=DelegationStatus.ACTIVE, on=on),
        }

    def active_rule(
        self,
        tenant_id: str,
        user_id: str,
        on_date: Optional[Union[datetime, date]] = None,
        category: Optional[str] = None,
        tier: Optional[int] = None
    ) -> Optional[DelegationRule]:
        """
        The rule currently delegating ``user_id``'s authority, if any.

        When several rules apply the most recently created one wins; the
        overlap is logged and counted.
        """
        candidates = [
            rule for rule in self.list_rules(tenant_id, from_user_id=user_id,
                                             status=DelegationStatus.ACTIVE, on=on_date)
            if rule.admits(category, tier)
        ]
        if not candidates:
            return None

        if len(candidates) > 1:
            with self._lock:
                self.conflict_count += 1
            logger.warning("Overlapping delegations for %s: %s; using %s",
                           user_id, [r.id for r in candidates], candidates[0].id)
        return candidates[0]

    def resolve_approver(
        self,
        tenant_id: str,
        user_id: str,
        on_date: Optional[Union[datetime, date]] = None,
        category: Optional[str] = None,
        tier: Optional[int] = None
    ) -> str:
        """Return the user who should act for ``user_id``: a delegate or the user"""
        rule = self.active_rule(tenant_id, user_id, on_date, category, tier)
        return rule.to_user_id if rule else user_id

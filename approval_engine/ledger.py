"""
History Ledger Module

Append-only, per-instance hash-chained record of every workflow transition.
Each entry stores the SHA-256 hash of the previous entry of the same instance
so tampering with any row breaks the chain.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord


class HistoryAction(Enum):
    """Actions recorded in the step history"""
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    ESCALATED = "escalated"
    DELEGATED = "delegated"
    REASSIGNED = "reassigned"
    RESUBMITTED = "resubmitted"
    CANCELLED = "cancelled"
    RETURNED = "returned"


@dataclass
class StepHistoryEntry(StorageRecord):
    """
    Immutable history row with hash chaining for tamper detection
    """
    tenant_id: str
    instance_id: str
    action: HistoryAction
    actor_id: str
    sequence: int  # 1-based position within the instance's chain
    previous_hash: str
    current_hash: str
    step_id: Optional[str] = None
    step_order: int = 0
    tier_level: Optional[int] = None
    comments: Optional[str] = None
    delegated_from: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this entry
        Hash includes all fields except current_hash
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'tenant_id': self.tenant_id,
            'instance_id': self.instance_id,
            'action': self.action.value,
            'actor_id': self.actor_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'step_id': self.step_id,
            'step_order': self.step_order,
            'tier_level': self.tier_level,
            'comments': self.comments,
            'delegated_from': self.delegated_from,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['action'] = self.action.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StepHistoryEntry':
        data = dict(data)
        if isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        if isinstance(data['action'], str):
            data['action'] = HistoryAction(data['action'])
        return cls(**data)


class HistoryLedger:
    """
    Per-instance hash-chained step history.

    ``append`` is meant to run inside the caller's ``storage.atomic()`` block
    so the ledger row and the instance update commit or roll back together.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "workflow_step_history"):
        self.storage = storage
        self.table_name = table_name

    def _entries(self, instance_id: str) -> List[StepHistoryEntry]:
        entries = [
            StepHistoryEntry.from_dict(data)
            for data in self.storage.find(self.table_name, {'instance_id': instance_id})
        ]
        entries.sort(key=lambda e: e.sequence)
        return entries

    def append(
        self,
        tenant_id: str,
        instance_id: str,
        action: HistoryAction,
        actor_id: str,
        step_id: Optional[str] = None,
        step_order: int = 0,
        tier_level: Optional[int] = None,
        comments: Optional[str] = None,
        delegated_from: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> StepHistoryEntry:
        """
        Append a history entry chained to the instance's latest entry

        Args:
            tenant_id: Owning tenant
            instance_id: Workflow instance the transition applies to
            action: Transition performed
            actor_id: User who performed it
            step_id: Step acted on (None for requestor actions)
            step_order: Order of that step (0 when no step)
            tier_level: Tier of that step
            comments: Free text (reason, appeal text, ...)
            delegated_from: Primary approver when acting through a delegation
            metadata: Extra structured data (cascade target, ...)

        Returns:
            Created StepHistoryEntry
        """
        existing = self._entries(instance_id)
        previous_hash = existing[-1].current_hash if existing else ""
        now = datetime.now(timezone.utc)

        entry = StepHistoryEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            instance_id=instance_id,
            action=action,
            actor_id=actor_id,
            sequence=len(existing) + 1,
            previous_hash=previous_hash,
            current_hash="",
            step_id=step_id,
            step_order=step_order,
            tier_level=tier_level,
            comments=comments,
            delegated_from=delegated_from,
            metadata=metadata or {}
        )
        entry.current_hash = entry.calculate_hash()

        self.storage.insert(self.table_name, entry.id, entry.to_dict())
        return entry

    def get_history(self, instance_id: str, action: Optional[HistoryAction] = None) -> List[StepHistoryEntry]:
        """Get the instance's entries in chain order, optionally filtered by action"""
        entries = self._entries(instance_id)
        if action is not None:
            entries = [e for e in entries if e.action == action]
        return entries

    def verify_integrity(self, instance_id: str) -> Dict[str, Any]:
        """
        Verify the hash chain of one instance

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        entries = self._entries(instance_id)
        result['total_entries'] = len(entries)

        previous_hash = ""
        for i, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': i,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash or entry.sequence != i + 1:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result

"""
Approver Directory Module

Per-tenant assignment of users to approver roles. A workflow step names a
role; the users holding that role are the step's primary approvers.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Any

from .storage import StorageInterface, StorageRecord
from .errors import ValidationError


@dataclass
class ApproverAssignment(StorageRecord):
    """Roles held by one user within a tenant"""
    tenant_id: str
    user_id: str
    roles: List[str] = field(default_factory=list)


class ApproverDirectory:
    """Storage-backed user to approver-role mapping"""

    TABLE = "approver_roles"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    @staticmethod
    def _key(tenant_id: str, user_id: str) -> str:
        return f"{tenant_id}:{user_id}"

    def _load(self, tenant_id: str, user_id: str) -> ApproverAssignment:
        data = self.storage.load(self.TABLE, self._key(tenant_id, user_id))
        if data:
            return ApproverAssignment.from_dict(data)
        now = datetime.now(timezone.utc)
        return ApproverAssignment(id=self._key(tenant_id, user_id), created_at=now,
                                  updated_at=now, tenant_id=tenant_id, user_id=user_id)

    def assign_role(self, tenant_id: str, user_id: str, role: str) -> bool:
        """Give ``user_id`` the approver role; False if already held"""
        if not role or not role.strip():
            raise ValidationError("Role is required", field="role")
        if not user_id:
            raise ValidationError("User is required", field="user_id")

        assignment = self._load(tenant_id, user_id)
        if role in assignment.roles:
            return False

        assignment.roles.append(role)
        assignment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.TABLE, assignment.id, assignment.to_dict())
        return True

    def remove_role(self, tenant_id: str, user_id: str, role: str) -> bool:
        """Remove the approver role; False if it was not held"""
        assignment = self._load(tenant_id, user_id)
        if role not in assignment.roles:
            return False

        assignment.roles.remove(role)
        assignment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.TABLE, assignment.id, assignment.to_dict())
        return True

    def roles_for(self, tenant_id: str, user_id: str) -> List[str]:
        return list(self._load(tenant_id, user_id).roles)

    def users_with_role(self, tenant_id: str, role: str) -> List[str]:
        users = [
            data['user_id'] for data in self.storage.find(self.TABLE, {'tenant_id': tenant_id})
            if role in data.get('roles', [])
        ]
        return sorted(users)

    def list_assignments(self, tenant_id: str) -> Dict[str, List[str]]:
        return {
            data['user_id']: list(data.get('roles', []))
            for data in self.storage.find(self.TABLE, {'tenant_id': tenant_id})
        }

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from orgcore.domain.errors import (
    FinancialAccessDenied,
    InternalError,
    PermissionDeniedError,
    ValidationError,
    WorkItemNotFound,
)
from orgcore.domain.models import FinancialAccessAudit, PermissionSummaryRead, Role
from orgcore.domain.permissions import (
    CAP_VIEW_FINANCIAL_AUDIT,
    FINANCIAL_ACCESS_LEVELS,
    allowed_capabilities,
    has_capability,
    has_financial_permission,
    hidden_financial_fields,
)
from orgcore.services.assignment_service import AssignmentService
from orgcore.services.audit_service import AuditService
from orgcore.services.hierarchy_service import HierarchyService

logger = logging.getLogger(__name__)

RESOURCE_USER = "user"
RESOURCE_WORK_ITEM = "work_item"
RESOURCE_ALIASES = {"user": RESOURCE_USER, "work_item": RESOURCE_WORK_ITEM, "project": RESOURCE_WORK_ITEM}


class PermissionService:
    def __init__(
        self,
        *,
        hierarchy_service: HierarchyService | None = None,
        assignment_service: AssignmentService | None = None,
        audit_service: AuditService | None = None,
    ) -> None:
        self._hierarchy = hierarchy_service or HierarchyService()
        self._audit = audit_service or AuditService()
        self._assignments = assignment_service or AssignmentService(
            hierarchy_service=self._hierarchy,
            audit_service=self._audit,
        )

    def check(self, caller_role: Role, capability: str) -> bool:
        return has_capability(caller_role, capability)

    def can_access_user(self, caller_id: str, target_user_id: str) -> bool:
        return self._hierarchy.is_self_or_ancestor(caller_id, target_user_id)

    def can_access_project(self, caller_id: str, caller_role: Role, project_id: str) -> bool:
        try:
            work_item = self._assignments.get_work_item(project_id)
        except WorkItemNotFound:
            logger.debug("access check on unknown work item %s by %s (%s)", project_id, caller_id, caller_role)
            return False
        participants = [work_item.client_id]
        current = self._assignments.current_assignment(work_item.id)
        if current is not None:
            participants.append(current.assigned_to_id)
        return any(self._hierarchy.is_self_or_ancestor(caller_id, item) for item in participants)

    def can_access(self, caller_id: str, caller_role: Role, resource_type: str, resource_id: str) -> bool:
        kind = RESOURCE_ALIASES.get(resource_type)
        if kind is None:
            raise ValidationError(f"unknown resource type: {resource_type}")
        if kind == RESOURCE_USER:
            return self.can_access_user(caller_id, resource_id)
        return self.can_access_project(caller_id, caller_role, resource_id)

    def ensure_can_access_user(self, caller_id: str, target_user_id: str) -> None:
        if not self.can_access_user(caller_id, target_user_id):
            raise PermissionDeniedError("user is outside the caller's network")

    def filter_financial_fields(
        self,
        caller_id: str,
        caller_role: Role,
        record: Mapping[str, Any],
        *,
        resource_type: str = RESOURCE_WORK_ITEM,
    ) -> dict[str, Any]:
        resource_id = record.get("id")
        try:
            hidden = hidden_financial_fields(caller_role, record, caller_id)
        except KeyError as exc:
            self._audit.record_financial_access(
                caller_id=caller_id,
                caller_role=caller_role,
                access_type="filter",
                resource_id=None if resource_id is None else str(resource_id),
                resource_type=resource_type,
                success=False,
                error_message=f"no financial rules for role {caller_role}",
            )
            raise InternalError("financial filtering failed") from exc
        filtered = {key: value for key, value in record.items() if key not in hidden}
        self._audit.record_financial_access(
            caller_id=caller_id,
            caller_role=caller_role,
            access_type="filter",
            resource_id=None if resource_id is None else str(resource_id),
            resource_type=resource_type,
            success=True,
        )
        return filtered

    def filter_financial_records(
        self,
        caller_id: str,
        caller_role: Role,
        records: list[Mapping[str, Any]],
        *,
        resource_type: str = RESOURCE_WORK_ITEM,
    ) -> list[dict[str, Any]]:
        try:
            filtered: list[dict[str, Any]] = []
            for record in records:
                hidden = hidden_financial_fields(caller_role, record, caller_id)
                filtered.append({key: value for key, value in record.items() if key not in hidden})
        except KeyError as exc:
            self._audit.record_financial_access(
                caller_id=caller_id,
                caller_role=caller_role,
                access_type="filter_batch",
                resource_type=resource_type,
                success=False,
                error_message=f"no financial rules for role {caller_role}",
            )
            raise InternalError("financial filtering failed") from exc
        self._audit.record_financial_access(
            caller_id=caller_id,
            caller_role=caller_role,
            access_type="filter_batch",
            resource_type=resource_type,
            success=True,
        )
        return filtered

    def require_financial_access(
        self,
        caller_id: str,
        caller_role: Role,
        permission: str,
        *,
        resource_id: str | None = None,
        resource_type: str | None = None,
    ) -> None:
        allowed = has_financial_permission(caller_role, permission)
        self._audit.record_financial_access(
            caller_id=caller_id,
            caller_role=caller_role,
            access_type=permission,
            resource_id=resource_id,
            resource_type=resource_type,
            success=allowed,
            error_message=None if allowed else f"missing financial permission: {permission}",
        )
        if not allowed:
            raise FinancialAccessDenied(f"missing financial permission: {permission}")

    def permission_summary(self, role: Role) -> PermissionSummaryRead:
        return PermissionSummaryRead(
            role=role,
            capabilities=sorted(allowed_capabilities(role)),
            financial=dict(FINANCIAL_ACCESS_LEVELS[role]),
        )

    def financial_access_audit(self, caller_id: str, caller_role: Role, limit: int = 100) -> list[FinancialAccessAudit]:
        allowed = has_capability(caller_role, CAP_VIEW_FINANCIAL_AUDIT)
        self._audit.record_financial_access(
            caller_id=caller_id,
            caller_role=caller_role,
            access_type="audit_read",
            resource_type="financial_access_audit",
            success=allowed,
            error_message=None if allowed else "financial audit is restricted to top admins",
        )
        if not allowed:
            raise FinancialAccessDenied("financial audit is restricted to top admins")
        return self._audit.financial_access_entries(limit)

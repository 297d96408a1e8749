from __future__ import annotations

import logging

from sqlmodel import Session, col, select

from orgcore.domain.models import (
    AssignmentRecord,
    FinancialAccessAudit,
    HierarchyChangeLog,
    HierarchyChangeType,
    Role,
)
from orgcore.infra.db import get_engine

logger = logging.getLogger(__name__)


class AuditService:
    """Append-only trails for hierarchy changes and financial reads.

    Nothing here updates or deletes a row once written.
    """

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def record_hierarchy_change(
        self,
        session: Session,
        *,
        user_id: str,
        change_type: HierarchyChangeType,
        old_parent_id: str | None,
        new_parent_id: str | None,
        old_level: int | None,
        new_level: int,
        changed_by: str | None,
        reason: str | None = None,
        affected_count: int = 1,
    ) -> HierarchyChangeLog:
        # Written in the caller's session so it commits or rolls back with the mutation.
        entry = HierarchyChangeLog(
            user_id=user_id,
            change_type=change_type,
            old_parent_id=old_parent_id,
            new_parent_id=new_parent_id,
            old_level=old_level,
            new_level=new_level,
            changed_by=changed_by,
            reason=reason,
            affected_count=affected_count,
        )
        session.add(entry)
        return entry

    def record_financial_access(
        self,
        *,
        caller_id: str,
        caller_role: Role,
        access_type: str,
        success: bool,
        resource_id: str | None = None,
        resource_type: str | None = None,
        error_message: str | None = None,
    ) -> FinancialAccessAudit:
        entry = FinancialAccessAudit(
            caller_id=caller_id,
            caller_role=caller_role,
            access_type=access_type,
            resource_id=resource_id,
            resource_type=resource_type,
            success=success,
            error_message=error_message,
        )
        with self._session() as session:
            session.add(entry)
            session.commit()
            session.refresh(entry)
        if not success:
            logger.warning(
                "financial access denied: caller=%s role=%s type=%s resource=%s",
                caller_id,
                caller_role,
                access_type,
                resource_id,
            )
        return entry

    def hierarchy_changes(self, user_id: str, limit: int = 100) -> list[HierarchyChangeLog]:
        with self._session() as session:
            statement = (
                select(HierarchyChangeLog)
                .where(HierarchyChangeLog.user_id == user_id)
                .order_by(col(HierarchyChangeLog.created_at).desc())
                .limit(limit)
            )
            return list(session.exec(statement).all())

    def financial_access_entries(self, limit: int = 100) -> list[FinancialAccessAudit]:
        with self._session() as session:
            statement = (
                select(FinancialAccessAudit)
                .order_by(col(FinancialAccessAudit.created_at).desc())
                .limit(limit)
            )
            return list(session.exec(statement).all())

    def assignment_trail(self, work_item_id: str) -> list[AssignmentRecord]:
        with self._session() as session:
            statement = (
                select(AssignmentRecord)
                .where(AssignmentRecord.work_item_id == work_item_id)
                .order_by(col(AssignmentRecord.assigned_at).asc())
            )
            return list(session.exec(statement).all())

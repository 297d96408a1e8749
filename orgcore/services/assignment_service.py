from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from orgcore.domain.errors import (
    AssignmentStateConflict,
    ConcurrencyConflict,
    CoreError,
    InvalidRoleAssignment,
    NotInHierarchy,
    PermissionDeniedError,
    UserNotFound,
    ValidationError,
    WorkItemNotFound,
)
from orgcore.domain.hierarchy_rules import AssignmentReach, assignment_reach
from orgcore.domain.models import (
    AssignmentCheckRead,
    AssignmentRecord,
    AssignmentRecordRead,
    AssignmentStatisticsRead,
    AssignmentType,
    BulkAssignItem,
    BulkAssignRead,
    BulkAssignResult,
    BulkAssignSummary,
    HierarchyEdge,
    Role,
    User,
    WorkItem,
    WorkItemCreate,
    now_utc,
)
from orgcore.infra.db import get_engine
from orgcore.infra.events import EVENT_ASSIGNMENT_CREATED, EventBus, event_bus
from orgcore.services.audit_service import AuditService
from orgcore.services.hierarchy_service import HierarchyService

logger = logging.getLogger(__name__)


class AssignmentService:
    def __init__(
        self,
        *,
        hierarchy_service: HierarchyService | None = None,
        audit_service: AuditService | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._hierarchy = hierarchy_service or HierarchyService()
        self._audit = audit_service or AuditService()
        self._bus = bus or event_bus

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _current(self, session: Session, work_item_id: str, *, lock: bool = False) -> AssignmentRecord | None:
        statement = (
            select(AssignmentRecord)
            .where(AssignmentRecord.work_item_id == work_item_id)
            .where(col(AssignmentRecord.is_valid).is_(True))
        )
        if lock:
            statement = statement.with_for_update()
        return session.exec(statement).first()

    def _validate_pair(self, session: Session, assigner: User, assignee: User) -> HierarchyEdge:
        """Check the assigner may hand work to the assignee; returns the assignee's edge."""
        reach = assignment_reach(assigner.role, assignee.role)
        if reach is None:
            raise InvalidRoleAssignment(f"{assigner.role} cannot assign work to {assignee.role}")
        if not assignee.is_active:
            raise ValidationError("assignee is not active")
        edge = session.get(HierarchyEdge, assignee.id)
        if edge is None:
            raise NotInHierarchy("assignee is not in the hierarchy")
        if reach == AssignmentReach.DIRECT:
            if edge.parent_id != assigner.id:
                raise NotInHierarchy("assignee is not a direct subordinate of the assigner")
            return edge
        if assigner.id not in self._hierarchy.path_ids_in(session, assignee.id)[1:]:
            raise NotInHierarchy("assignee is not within the assigner's network")
        return edge

    def _get_user(self, session: Session, user_id: str) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise UserNotFound("user not found")
        return user

    def create_work_item(self, payload: WorkItemCreate, *, created_by: str, creator_role: Role) -> WorkItem:
        with self._session() as session:
            client = session.get(User, payload.client_id)
            if client is None or client.role != Role.CLIENT:
                raise ValidationError("client_id must reference a client")
            if creator_role == Role.CLIENT and client.id != created_by:
                raise PermissionDeniedError("clients can only create their own work items")
            if not self._hierarchy.is_self_or_ancestor(created_by, client.id):
                raise PermissionDeniedError("client is outside the caller's network")
            work_item = WorkItem(title=payload.title, client_id=client.id, created_by=created_by)
            session.add(work_item)
            session.commit()
            session.refresh(work_item)
            return work_item

    def get_work_item(self, work_item_id: str) -> WorkItem:
        with self._session() as session:
            work_item = session.get(WorkItem, work_item_id)
            if work_item is None:
                raise WorkItemNotFound("work item not found")
            return work_item

    def current_assignment(self, work_item_id: str) -> AssignmentRecord | None:
        with self._session() as session:
            return self._current(session, work_item_id)

    def assign(
        self,
        work_item_id: str,
        assigned_to_id: str,
        assigned_by_id: str,
        assigned_by_role: Role,
        assignment_type: AssignmentType = AssignmentType.INITIAL,
        notes: str | None = None,
    ) -> AssignmentRecord:
        with self._session() as session:
            work_item = session.exec(select(WorkItem).where(WorkItem.id == work_item_id).with_for_update()).first()
            if work_item is None:
                raise WorkItemNotFound("work item not found")
            assigner = self._get_user(session, assigned_by_id)
            if assigner.role != assigned_by_role:
                raise PermissionDeniedError("caller role does not match the stored role")
            assignee = self._get_user(session, assigned_to_id)
            assignee_edge = self._validate_pair(session, assigner, assignee)

            current = self._current(session, work_item_id, lock=True)
            if assignment_type == AssignmentType.INITIAL and current is not None:
                raise AssignmentStateConflict("work item is already assigned, use a reassignment")
            if assignment_type == AssignmentType.REASSIGNMENT:
                if current is None:
                    raise AssignmentStateConflict("work item has no assignment to replace")
                if current.assigned_to_id == assignee.id:
                    raise AssignmentStateConflict("work item is already assigned to that user")

            now = now_utc()
            if current is not None:
                current.is_valid = False
                current.superseded_at = now
                session.add(current)
                session.flush()

            result = session.execute(
                update(WorkItem)
                .where(col(WorkItem.id) == work_item.id)
                .where(col(WorkItem.version) == work_item.version)
                .values(version=work_item.version + 1, updated_at=now)
            )
            if getattr(result, "rowcount", 0) != 1:
                raise ConcurrencyConflict("work item changed concurrently, retry the request")

            record = AssignmentRecord(
                work_item_id=work_item.id,
                assigned_to_id=assignee.id,
                assigned_to_role=assignee.role,
                assigned_by_id=assigner.id,
                assigned_by_role=assigner.role,
                assignment_type=assignment_type,
                previous_assigned_to_id=current.assigned_to_id if current is not None else None,
                notes=notes,
                validation_notes=f"{assigner.role} -> {assignee.role} at level {assignee_edge.level}",
                hierarchy_level=assignee_edge.level,
                assigned_at=now,
            )
            session.add(record)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConcurrencyConflict("another assignment was recorded concurrently, retry the request") from exc
            session.refresh(record)

        logger.info(
            "work item %s assigned to %s by %s (%s)",
            record.work_item_id,
            record.assigned_to_id,
            record.assigned_by_id,
            record.assignment_type,
        )
        self._bus.notify(
            EVENT_ASSIGNMENT_CREATED,
            {
                "work_item_id": record.work_item_id,
                "assignment_id": record.id,
                "assigned_to_id": record.assigned_to_id,
                "assigned_by_id": record.assigned_by_id,
                "assignment_type": str(record.assignment_type),
                "previous_assigned_to_id": record.previous_assigned_to_id,
            },
            actor_id=record.assigned_by_id,
        )
        return record

    def bulk_assign(
        self,
        items: list[BulkAssignItem],
        assigned_by_id: str,
        assigned_by_role: Role,
        *,
        can_access: Callable[[str], bool] | None = None,
    ) -> BulkAssignRead:
        """Assign each item in its own transaction; one failure never undoes the others."""
        results: list[BulkAssignResult] = []
        for item in items:
            try:
                if can_access is not None and not can_access(item.work_item_id):
                    raise WorkItemNotFound("work item not found")
                record = self.assign(
                    item.work_item_id,
                    item.assigned_to_id,
                    assigned_by_id,
                    assigned_by_role,
                    item.assignment_type,
                    item.notes,
                )
            except CoreError as exc:
                results.append(
                    BulkAssignResult(
                        work_item_id=item.work_item_id,
                        assigned_to_id=item.assigned_to_id,
                        success=False,
                        error_code=exc.code,
                        error=exc.message,
                    )
                )
                continue
            results.append(
                BulkAssignResult(
                    work_item_id=item.work_item_id,
                    assigned_to_id=item.assigned_to_id,
                    success=True,
                    assignment=AssignmentRecordRead.model_validate(record),
                )
            )
        successful = sum(1 for result in results if result.success)
        if successful < len(results):
            logger.info("bulk assignment by %s: %d of %d failed", assigned_by_id, len(results) - successful, len(results))
        return BulkAssignRead(
            results=results,
            summary=BulkAssignSummary(total=len(results), successful=successful, failed=len(results) - successful),
        )

    def assignment_statistics(self, caller_id: str) -> AssignmentStatisticsRead:
        """Counts over the work items the caller can see: its clients' items and items held by its network."""
        scope = [caller_id, *(user.id for user in self._hierarchy.subordinates(caller_id))]
        with self._session() as session:
            client_items = select(WorkItem.id).where(col(WorkItem.client_id).in_(scope))
            current = session.exec(
                select(AssignmentRecord)
                .where(col(AssignmentRecord.is_valid).is_(True))
                .where(
                    or_(
                        col(AssignmentRecord.assigned_to_id).in_(scope),
                        col(AssignmentRecord.work_item_id).in_(client_items),
                    )
                )
            ).all()
            visible = set(session.exec(client_items).all()) | {record.work_item_id for record in current}
            reassignments = 0
            if visible:
                reassignments = session.exec(
                    select(func.count())
                    .select_from(AssignmentRecord)
                    .where(col(AssignmentRecord.work_item_id).in_(visible))
                    .where(AssignmentRecord.assignment_type == AssignmentType.REASSIGNMENT)
                ).one()
        roles: Counter[str] = Counter(str(record.assigned_to_role) for record in current)
        return AssignmentStatisticsRead(
            total_work_items=len(visible),
            assigned_work_items=len(current),
            unassigned_work_items=len(visible) - len(current),
            reassignments=int(reassignments),
            distinct_assignees=len({record.assigned_to_id for record in current}),
            by_assignee_role=dict(roles),
        )

    def history(self, work_item_id: str) -> list[AssignmentRecord]:
        self.get_work_item(work_item_id)
        return self._audit.assignment_trail(work_item_id)

    def check_assignment(self, assigner_id: str, assigned_to_id: str) -> AssignmentCheckRead:
        with self._session() as session:
            try:
                assigner = self._get_user(session, assigner_id)
                assignee = self._get_user(session, assigned_to_id)
                self._validate_pair(session, assigner, assignee)
            except CoreError as exc:
                return AssignmentCheckRead(is_valid=False, message=exc.message)
        return AssignmentCheckRead(is_valid=True, message="assignment is allowed")

    def available_assignees(self, assigner_id: str) -> list[User]:
        assigner = self._hierarchy.get_user(assigner_id)
        candidates = self._hierarchy.subordinates(assigner_id)
        if not candidates:
            return []
        with self._session() as session:
            edges = {
                edge.user_id: edge
                for edge in session.exec(
                    select(HierarchyEdge).where(col(HierarchyEdge.user_id).in_([item.id for item in candidates]))
                ).all()
            }
        available: list[User] = []
        for candidate in candidates:
            reach = assignment_reach(assigner.role, candidate.role)
            if reach is None or not candidate.is_active:
                continue
            edge = edges.get(candidate.id)
            if reach == AssignmentReach.DIRECT and (edge is None or edge.parent_id != assigner.id):
                continue
            available.append(candidate)
        return available

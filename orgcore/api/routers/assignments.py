from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, status

from orgcore.api.deps import (
    get_current_claims,
    handle_core_error,
    require_any_capability,
    require_capability,
)
from orgcore.domain.errors import CoreError, WorkItemNotFound
from orgcore.domain.models import (
    AssignmentCheckRead,
    AssignmentCheckRequest,
    AssignmentRecordRead,
    AssignRequest,
    AssignmentStatisticsRead,
    BulkAssignRead,
    BulkAssignRequest,
    UserRead,
    WorkItemCreate,
    WorkItemRead,
)
from orgcore.domain.permissions import (
    CAP_ASSIGN_PROJECTS,
    CAP_CREATE_PROJECTS,
    CAP_VIEW_ASSIGNED_PROJECTS,
    CAP_VIEW_OWN_PROJECTS,
    CAP_VIEW_PROJECT_ASSIGNMENTS,
)
from orgcore.infra.audit import set_audit_context
from orgcore.services.assignment_service import AssignmentService
from orgcore.services.permission_service import PermissionService

router = APIRouter()


def get_assignment_service() -> AssignmentService:
    return AssignmentService()


def get_permission_service() -> PermissionService:
    return PermissionService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[AssignmentService, Depends(get_assignment_service)]
Permissions = Annotated[PermissionService, Depends(get_permission_service)]


def _ensure_project_access(permissions: PermissionService, claims: dict[str, Any], work_item_id: str) -> None:
    # Unreachable work items look exactly like missing ones.
    if not permissions.can_access_project(claims["sub"], claims["role"], work_item_id):
        raise WorkItemNotFound("work item not found")


@router.post(
    "/work-items",
    response_model=WorkItemRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_capability(CAP_CREATE_PROJECTS))],
)
def create_work_item(payload: WorkItemCreate, request: Request, claims: Claims, service: Service) -> WorkItemRead:
    try:
        work_item = service.create_work_item(payload, created_by=claims["sub"], creator_role=claims["role"])
    except CoreError as exc:
        handle_core_error(exc)
    set_audit_context(request, action="assignment.create_work_item", resource=f"work_item:{work_item.id}")
    return WorkItemRead.model_validate(work_item)


@router.post(
    "/assign",
    response_model=AssignmentRecordRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_capability(CAP_ASSIGN_PROJECTS))],
)
def assign(
    payload: AssignRequest,
    request: Request,
    claims: Claims,
    service: Service,
    permissions: Permissions,
) -> AssignmentRecordRead:
    set_audit_context(
        request,
        action="assignment.assign",
        resource=f"work_item:{payload.work_item_id}",
        assigned_to_id=payload.assigned_to_id,
        assignment_type=str(payload.assignment_type),
    )
    try:
        _ensure_project_access(permissions, claims, payload.work_item_id)
        record = service.assign(
            payload.work_item_id,
            payload.assigned_to_id,
            claims["sub"],
            claims["role"],
            payload.assignment_type,
            payload.notes,
        )
    except CoreError as exc:
        handle_core_error(exc)
    return AssignmentRecordRead.model_validate(record)


@router.post(
    "/bulk-assign",
    response_model=BulkAssignRead,
    dependencies=[Depends(require_capability(CAP_ASSIGN_PROJECTS))],
)
def bulk_assign(
    payload: BulkAssignRequest,
    request: Request,
    claims: Claims,
    service: Service,
    permissions: Permissions,
) -> BulkAssignRead:
    try:
        result = service.bulk_assign(
            payload.items,
            claims["sub"],
            claims["role"],
            can_access=lambda work_item_id: permissions.can_access_project(claims["sub"], claims["role"], work_item_id),
        )
    except CoreError as exc:
        handle_core_error(exc)
    set_audit_context(
        request,
        action="assignment.bulk_assign",
        work_item_ids=[item.work_item_id for item in payload.items],
        successful=result.summary.successful,
        failed=result.summary.failed,
    )
    return result


@router.post(
    "/check",
    response_model=AssignmentCheckRead,
    dependencies=[Depends(require_capability(CAP_ASSIGN_PROJECTS))],
)
def check_assignment(payload: AssignmentCheckRequest, claims: Claims, service: Service) -> AssignmentCheckRead:
    return service.check_assignment(claims["sub"], payload.assigned_to_id)


@router.get(
    "/work-items/{work_item_id}/history",
    response_model=list[AssignmentRecordRead],
    dependencies=[
        Depends(
            require_any_capability(
                CAP_VIEW_PROJECT_ASSIGNMENTS,
                CAP_VIEW_ASSIGNED_PROJECTS,
                CAP_VIEW_OWN_PROJECTS,
            )
        )
    ],
)
def assignment_history(
    work_item_id: str,
    claims: Claims,
    service: Service,
    permissions: Permissions,
) -> list[AssignmentRecordRead]:
    try:
        _ensure_project_access(permissions, claims, work_item_id)
        records = service.history(work_item_id)
    except CoreError as exc:
        handle_core_error(exc)
    return [AssignmentRecordRead.model_validate(item) for item in records]


@router.get(
    "/available-assignees",
    response_model=list[UserRead],
    dependencies=[Depends(require_capability(CAP_ASSIGN_PROJECTS))],
)
def available_assignees(claims: Claims, service: Service) -> list[UserRead]:
    try:
        users = service.available_assignees(claims["sub"])
    except CoreError as exc:
        handle_core_error(exc)
    return [UserRead.model_validate(item) for item in users]


@router.get(
    "/statistics",
    response_model=AssignmentStatisticsRead,
    dependencies=[
        Depends(
            require_any_capability(
                CAP_VIEW_PROJECT_ASSIGNMENTS,
                CAP_VIEW_ASSIGNED_PROJECTS,
                CAP_VIEW_OWN_PROJECTS,
            )
        )
    ],
)
def assignment_statistics(claims: Claims, service: Service) -> AssignmentStatisticsRead:
    try:
        return service.assignment_statistics(claims["sub"])
    except CoreError as exc:
        handle_core_error(exc)

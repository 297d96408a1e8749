from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Request, status

from orgcore.api.deps import (
    get_current_claims,
    handle_core_error,
    require_any_capability,
    require_capability,
)
from orgcore.domain.errors import CoreError
from orgcore.domain.models import (
    BootstrapAdminRequest,
    HierarchyChangeRead,
    HierarchyEdgeRead,
    HierarchySearchHit,
    HierarchyStatsRead,
    HierarchyTreeNode,
    IntegrityReportRead,
    MoveUserRequest,
    RegisterRead,
    RegisterRequest,
    Role,
    UserRead,
)
from orgcore.domain.permissions import (
    CAP_MANAGE_HIERARCHY,
    CAP_REASSIGN_USERS,
    CAP_SYSTEM_ADMIN,
    CAP_VIEW_HIERARCHY,
)
from orgcore.infra.audit import set_audit_context
from orgcore.services.hierarchy_service import HierarchyService
from orgcore.services.permission_service import PermissionService

router = APIRouter()


def get_hierarchy_service() -> HierarchyService:
    return HierarchyService()


def get_permission_service() -> PermissionService:
    return PermissionService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[HierarchyService, Depends(get_hierarchy_service)]
Permissions = Annotated[PermissionService, Depends(get_permission_service)]


def _register_read(user: Any, edge: Any) -> RegisterRead:
    return RegisterRead(user=UserRead.model_validate(user), edge=HierarchyEdgeRead.model_validate(edge))


@router.post("/bootstrap-admin", response_model=RegisterRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, request: Request, service: Service) -> RegisterRead:
    try:
        user, edge = service.bootstrap_admin(payload.display_name)
    except CoreError as exc:
        handle_core_error(exc)
    set_audit_context(request, action="hierarchy.bootstrap_admin", resource=f"user:{user.id}")
    return _register_read(user, edge)


@router.post(
    "/top-admins",
    response_model=RegisterRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_capability(CAP_SYSTEM_ADMIN))],
)
def create_top_admin(
    payload: BootstrapAdminRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> RegisterRead:
    try:
        user, edge = service.create_top_admin(payload.display_name, changed_by=claims["sub"])
    except CoreError as exc:
        handle_core_error(exc)
    set_audit_context(request, action="hierarchy.create_top_admin", resource=f"user:{user.id}")
    return _register_read(user, edge)


@router.post("/register", response_model=RegisterRead, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, request: Request, service: Service) -> RegisterRead:
    try:
        user, edge = service.register(payload.display_name, payload.reference_code)
    except CoreError as exc:
        set_audit_context(
            request,
            action="hierarchy.register",
            reason=exc.code,
        )
        handle_core_error(exc)
    set_audit_context(
        request,
        action="hierarchy.register",
        resource=f"user:{user.id}",
        role=str(user.role),
        parent_id=edge.parent_id,
    )
    return _register_read(user, edge)


@router.post(
    "/move-user",
    response_model=HierarchyEdgeRead,
    dependencies=[Depends(require_any_capability(CAP_MANAGE_HIERARCHY, CAP_REASSIGN_USERS))],
)
def move_user(
    payload: MoveUserRequest,
    request: Request,
    claims: Claims,
    service: Service,
    permissions: Permissions,
) -> HierarchyEdgeRead:
    set_audit_context(
        request,
        action="hierarchy.move_user",
        resource=f"user:{payload.user_id}",
        new_parent_id=payload.new_parent_id,
        reason=payload.reason,
    )
    try:
        permissions.ensure_can_access_user(claims["sub"], payload.user_id)
        permissions.ensure_can_access_user(claims["sub"], payload.new_parent_id)
        edge = service.move_user(
            payload.user_id,
            payload.new_parent_id,
            payload.reason,
            changed_by=claims["sub"],
        )
    except CoreError as exc:
        handle_core_error(exc)
    return HierarchyEdgeRead.model_validate(edge)


@router.get(
    "/integrity",
    response_model=IntegrityReportRead,
    dependencies=[Depends(require_capability(CAP_SYSTEM_ADMIN))],
)
def integrity(service: Service) -> IntegrityReportRead:
    return service.validate_integrity()


@router.get(
    "/users/{user_id}",
    response_model=HierarchyEdgeRead,
    dependencies=[Depends(require_capability(CAP_VIEW_HIERARCHY))],
)
def get_user_edge(user_id: str, claims: Claims, service: Service, permissions: Permissions) -> HierarchyEdgeRead:
    try:
        edge = service.get_edge(user_id)
        permissions.ensure_can_access_user(claims["sub"], user_id)
    except CoreError as exc:
        handle_core_error(exc)
    return HierarchyEdgeRead.model_validate(edge)


@router.get(
    "/users/{user_id}/path",
    response_model=list[UserRead],
    dependencies=[Depends(require_capability(CAP_VIEW_HIERARCHY))],
)
def get_path(user_id: str, claims: Claims, service: Service, permissions: Permissions) -> list[UserRead]:
    try:
        path = service.path_to_root(user_id)
        permissions.ensure_can_access_user(claims["sub"], user_id)
    except CoreError as exc:
        handle_core_error(exc)
    return [UserRead.model_validate(item) for item in path]


@router.get(
    "/users/{user_id}/subordinates",
    response_model=list[UserRead],
    dependencies=[Depends(require_capability(CAP_VIEW_HIERARCHY))],
)
def get_subordinates(user_id: str, claims: Claims, service: Service, permissions: Permissions) -> list[UserRead]:
    try:
        permissions.ensure_can_access_user(claims["sub"], user_id)
        subordinates = service.subordinates(user_id)
    except CoreError as exc:
        handle_core_error(exc)
    return [UserRead.model_validate(item) for item in subordinates]


@router.get(
    "/users/{user_id}/stats",
    response_model=HierarchyStatsRead,
    dependencies=[Depends(require_capability(CAP_VIEW_HIERARCHY))],
)
def get_stats(user_id: str, claims: Claims, service: Service, permissions: Permissions) -> HierarchyStatsRead:
    try:
        permissions.ensure_can_access_user(claims["sub"], user_id)
        return service.hierarchy_stats(user_id)
    except CoreError as exc:
        handle_core_error(exc)


@router.get(
    "/users/{user_id}/changes",
    response_model=list[HierarchyChangeRead],
    dependencies=[Depends(require_capability(CAP_VIEW_HIERARCHY))],
)
def get_changes(
    user_id: str,
    claims: Claims,
    service: Service,
    permissions: Permissions,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> list[HierarchyChangeRead]:
    try:
        permissions.ensure_can_access_user(claims["sub"], user_id)
        changes = service.changes(user_id, limit=limit)
    except CoreError as exc:
        handle_core_error(exc)
    return [HierarchyChangeRead.model_validate(item) for item in changes]


@router.get(
    "/users/{user_id}/tree",
    response_model=HierarchyTreeNode,
    dependencies=[Depends(require_capability(CAP_VIEW_HIERARCHY))],
)
def get_tree(
    user_id: str,
    claims: Claims,
    service: Service,
    permissions: Permissions,
    include_inactive: bool = False,
) -> HierarchyTreeNode:
    try:
        permissions.ensure_can_access_user(claims["sub"], user_id)
        return service.tree(user_id, include_inactive=include_inactive)
    except CoreError as exc:
        handle_core_error(exc)


@router.get(
    "/search",
    response_model=list[HierarchySearchHit],
    dependencies=[Depends(require_capability(CAP_VIEW_HIERARCHY))],
)
def search_users(
    claims: Claims,
    service: Service,
    query: Annotated[str, Query(min_length=2, max_length=100)],
    role: Role | None = None,
    level: Annotated[int | None, Query(ge=1, le=5)] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> list[HierarchySearchHit]:
    try:
        return service.search(claims["sub"], query, role=role, level=level, limit=limit)
    except CoreError as exc:
        handle_core_error(exc)

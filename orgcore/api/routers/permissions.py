from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Request

from orgcore.api.deps import get_current_claims, handle_core_error
from orgcore.domain.errors import CoreError
from orgcore.domain.models import (
    AccessCheckRead,
    FinancialAccessAuditRead,
    FinancialFilterRead,
    FinancialFilterRequest,
    PermissionSummaryRead,
)
from orgcore.infra.audit import set_audit_context
from orgcore.services.permission_service import PermissionService

router = APIRouter()


def get_permission_service() -> PermissionService:
    return PermissionService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[PermissionService, Depends(get_permission_service)]


@router.get("/me", response_model=PermissionSummaryRead)
def my_permissions(claims: Claims, service: Service) -> PermissionSummaryRead:
    return service.permission_summary(claims["role"])


@router.get("/can-access", response_model=AccessCheckRead)
def can_access(
    claims: Claims,
    service: Service,
    resource_type: Annotated[str, Query(min_length=1)],
    resource_id: Annotated[str, Query(min_length=1)],
) -> AccessCheckRead:
    try:
        allowed = service.can_access(claims["sub"], claims["role"], resource_type, resource_id)
    except CoreError as exc:
        handle_core_error(exc)
    return AccessCheckRead(resource_type=resource_type, resource_id=resource_id, allowed=allowed)


@router.get("/financial/check", response_model=AccessCheckRead)
def financial_check(
    request: Request,
    claims: Claims,
    service: Service,
    permission: Annotated[str, Query(min_length=1)],
) -> AccessCheckRead:
    set_audit_context(request, action="permissions.financial_check", permission=permission)
    try:
        service.require_financial_access(claims["sub"], claims["role"], permission)
    except CoreError as exc:
        handle_core_error(exc)
    return AccessCheckRead(resource_type="financial_permission", resource_id=permission, allowed=True)


@router.post("/financial/filter", response_model=FinancialFilterRead)
def financial_filter(
    payload: FinancialFilterRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> FinancialFilterRead:
    set_audit_context(
        request,
        action="permissions.financial_filter",
        resource_type=payload.resource_type,
        records=len(payload.records),
    )
    try:
        if len(payload.records) == 1:
            records = [
                service.filter_financial_fields(
                    claims["sub"],
                    claims["role"],
                    payload.records[0],
                    resource_type=payload.resource_type,
                )
            ]
        else:
            records = service.filter_financial_records(
                claims["sub"],
                claims["role"],
                list(payload.records),
                resource_type=payload.resource_type,
            )
    except CoreError as exc:
        handle_core_error(exc)
    return FinancialFilterRead(records=records)


@router.get("/financial/audit", response_model=list[FinancialAccessAuditRead])
def financial_audit(
    claims: Claims,
    service: Service,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> list[FinancialAccessAuditRead]:
    try:
        entries = service.financial_access_audit(claims["sub"], claims["role"], limit=limit)
    except CoreError as exc:
        handle_core_error(exc)
    return [FinancialAccessAuditRead.model_validate(item) for item in entries]
